from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel

from dashops.core.logging import get_logger, operation_extra
from dashops.models.operation import OperationId, OperationPhase, OperationState, ViewState

if TYPE_CHECKING:
    from dashops.services.operation_store import OperationStore


def _canonical(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, Mapping):
        return {str(key): _canonical(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_canonical(item) for item in value]
    return value


def entities_equal(left: Any, right: Any) -> bool:
    return _canonical(left) == _canonical(right)


def _entity_key(entity: Any, key: str) -> Any:
    if isinstance(entity, Mapping):
        return entity.get(key)
    return getattr(entity, key, None)


def splice_entity(items: list[Any], entity: Any, key: str = "id") -> list[Any]:
    """Return a copy of ``items`` with ``entity`` replacing the element sharing its key."""

    entity_key = _entity_key(entity, key)
    spliced: list[Any] = []
    replaced = False
    for item in items:
        if not replaced and entity_key is not None and _entity_key(item, key) == entity_key:
            spliced.append(entity)
            replaced = True
        else:
            spliced.append(item)
    if not replaced:
        spliced.append(entity)
    return spliced


class Reconciler:
    """
    Decides what a view renders while local operation state and
    parent-owned props disagree, and pushes confirmed entities back into the
    owning catalog once an operation completes.
    """

    def __init__(self) -> None:
        self._delivered: dict[OperationId, int] = {}
        self._logger = get_logger("dashops.reconciler")

    def merge_view_state(self, base_props: Mapping[str, Any] | None, state: OperationState) -> ViewState:
        props = dict(base_props or {})

        if state.is_active:
            progress = state.progress if state.phase == OperationPhase.polling else None
            props.update({"is_busy": True, "error": None, "progress": progress})
            return ViewState(is_busy=True, error=None, progress=progress, props=props)

        if state.phase == OperationPhase.failed:
            message = state.error.message if state.error else "operation failed"
            props.update({"is_busy": False, "error": message})
            return ViewState(is_busy=False, error=message, progress=props.get("progress"), props=props)

        if state.phase == OperationPhase.completed:
            props.update({"is_busy": False, "error": None})
            return ViewState(is_busy=False, error=None, progress=props.get("progress"), props=props)

        # Idle: nothing local left, the parent's refreshed props win.
        return ViewState(
            is_busy=bool(props.get("is_busy", props.get("is_loading", False))),
            error=props.get("error"),
            progress=props.get("progress"),
            props=props,
        )

    def on_completed(
        self,
        operation_id: OperationId,
        generation: int,
        result: Any,
        update_catalog: Callable[[Any], None],
        current: Any = None,
    ) -> bool:
        if self._delivered.get(operation_id) == generation:
            return False
        self._delivered[operation_id] = generation

        if result is None:
            return False
        if current is not None and entities_equal(result, current):
            self._logger.debug(
                "catalog_update_skipped_unchanged",
                extra=operation_extra(operation_id, generation, "catalog.unchanged"),
            )
            return False

        update_catalog(result)
        self._logger.info(
            "catalog_updated",
            extra=operation_extra(operation_id, generation, "catalog.updated"),
        )
        return True

    def forget(self, operation_id: OperationId) -> None:
        self._delivered.pop(operation_id, None)

    def watch(
        self,
        store: OperationStore,
        entity_id: str,
        kind: str,
        base_props: Callable[[], Mapping[str, Any]] | Mapping[str, Any] | None,
        render: Callable[[ViewState], None],
    ) -> Callable[[], None]:
        def props() -> Mapping[str, Any] | None:
            return base_props() if callable(base_props) else base_props

        def listener(state: OperationState) -> None:
            render(self.merge_view_state(props(), state))

        render(self.merge_view_state(props(), store.snapshot(entity_id, kind)))
        return store.subscribe(entity_id, kind, listener)
