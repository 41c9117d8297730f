from functools import partial

from fastapi import APIRouter, Body, Depends, HTTPException, status

from dashops.api.deps import get_actions, get_catalog, get_store
from dashops.client.actions import DashboardActions, entity_key
from dashops.errors import AlreadyActive
from dashops.models.operation import OperationState
from dashops.schemas.operations import (
    ActionDescriptor,
    ActionListResponse,
    OperationListResponse,
    OperationStartRequest,
    OperationView,
)
from dashops.services.catalog import CatalogCache
from dashops.services.operation_store import OperationStore
from dashops.services.presenter import to_view_flags

router = APIRouter(prefix="/operations", tags=["operations"])


def _view(state: OperationState) -> OperationView:
    return OperationView(state=state, flags=to_view_flags(state))


@router.get("", response_model=OperationListResponse)
async def list_operations(store: OperationStore = Depends(get_store)) -> OperationListResponse:
    return OperationListResponse(items=[_view(state) for state in store.states()])


@router.get("/actions", response_model=ActionListResponse)
async def list_actions(actions: DashboardActions = Depends(get_actions)) -> ActionListResponse:
    return ActionListResponse(items=[ActionDescriptor(domain=domain, kind=kind) for domain, kind in actions.supported()])


@router.post("/{domain}/{entity_id}/{kind}", response_model=OperationView, status_code=status.HTTP_202_ACCEPTED)
async def start_operation(
    domain: str,
    entity_id: str,
    kind: str,
    payload: OperationStartRequest | None = Body(default=None),
    store: OperationStore = Depends(get_store),
    actions: DashboardActions = Depends(get_actions),
    catalog: CatalogCache = Depends(get_catalog),
) -> OperationView:
    try:
        spec = actions.resolve(domain, kind, entity_id)
    except KeyError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc.args[0])) from exc

    request = payload or OperationStartRequest()
    options = spec.options(params=request.params, optimistic=request.optimistic)
    if spec.returns_entity:
        options.update_catalog = partial(catalog.put, domain)
        options.current_entity = partial(catalog.get, domain, entity_id)

    key = entity_key(domain, entity_id)
    try:
        store.start(key, kind, spec.executor, options)
    except AlreadyActive as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return _view(store.snapshot(key, kind))


@router.get("/{domain}/{entity_id}/{kind}", response_model=OperationView)
async def get_operation(
    domain: str,
    entity_id: str,
    kind: str,
    store: OperationStore = Depends(get_store),
) -> OperationView:
    return _view(store.snapshot(entity_key(domain, entity_id), kind))


@router.delete("/{domain}/{entity_id}/{kind}", response_model=OperationView)
async def cancel_operation(
    domain: str,
    entity_id: str,
    kind: str,
    store: OperationStore = Depends(get_store),
) -> OperationView:
    key = entity_key(domain, entity_id)
    if not store.cancel(key, kind):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Operation is not in progress")
    return _view(store.snapshot(key, kind))


@router.post("/{domain}/{entity_id}/{kind}/ack", response_model=OperationView)
async def acknowledge_operation(
    domain: str,
    entity_id: str,
    kind: str,
    store: OperationStore = Depends(get_store),
) -> OperationView:
    key = entity_key(domain, entity_id)
    if not store.acknowledge(key, kind):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No finished operation to acknowledge")
    return _view(store.snapshot(key, kind))


@router.post("/{domain}/{entity_id}/{kind}/retry", response_model=OperationView, status_code=status.HTTP_202_ACCEPTED)
async def retry_operation(
    domain: str,
    entity_id: str,
    kind: str,
    store: OperationStore = Depends(get_store),
) -> OperationView:
    key = entity_key(domain, entity_id)
    try:
        store.retry(key, kind)
    except KeyError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc.args[0])) from exc
    except AlreadyActive as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return _view(store.snapshot(key, kind))
