import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse

from dashops.api.deps import get_hub, get_store
from dashops.api.routes import catalog_router, operations_router
from dashops.client.actions import DOMAIN_KEYS, DashboardActions, entity_key
from dashops.client.dashboard_client import DashboardClient
from dashops.core.config import Settings, get_settings
from dashops.core.logging import configure_logging, get_logger
from dashops.models.operation import OperationState
from dashops.services.catalog import CatalogCache
from dashops.services.operation_store import OperationStore
from dashops.services.presenter import to_view_flags
from dashops.ws.hub import OperationHub

logger = get_logger("dashops.main")


def operation_payload(state: OperationState) -> dict:
    return {
        "event": "operation_update",
        "state": state.model_dump(mode="json"),
        "flags": to_view_flags(state).model_dump(mode="json"),
    }


async def operation_publisher(app: FastAPI) -> None:
    queue: asyncio.Queue[OperationState] = app.state.transitions
    while True:
        state = await queue.get()
        await app.state.ws_hub.broadcast(str(state.operation_id), operation_payload(state))


def create_app(settings: Settings | None = None, actions: DashboardActions | None = None) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        configure_logging(settings.log_level)

        client: DashboardClient | None = None
        if actions is None:
            client = DashboardClient(
                base_url=settings.backend_url,
                api_token=settings.api_token,
                timeout=settings.request_timeout_sec,
                retries=settings.request_retries,
                tls_verify=settings.tls_verify,
                tls_ca_cert_path=settings.tls_ca_cert_path,
            )
        store = OperationStore(
            poll_interval_ms=settings.poll_interval_ms,
            max_poll_failures=settings.poll_failure_limit,
            auto_retries=settings.auto_retries,
            retry_delay_sec=settings.retry_delay_sec,
        )
        transitions: asyncio.Queue[OperationState] = asyncio.Queue()

        app.state.settings = settings
        app.state.store = store
        app.state.actions = actions or DashboardActions(client)
        app.state.catalog = CatalogCache(DOMAIN_KEYS)
        app.state.ws_hub = OperationHub()
        app.state.transitions = transitions

        unsubscribe = store.subscribe_all(transitions.put_nowait)
        app.state.publisher_task = asyncio.create_task(operation_publisher(app))
        logger.info("service_started", extra={"event": "service.started"})

        try:
            yield
        finally:
            unsubscribe()
            app.state.publisher_task.cancel()
            try:
                await app.state.publisher_task
            except asyncio.CancelledError:
                pass
            await store.aclose()
            if client is not None:
                await client.close()
            logger.info("service_stopped", extra={"event": "service.stopped"})

    app = FastAPI(
        title=settings.app_name,
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(operations_router, prefix=settings.api_v1_prefix)
    app.include_router(catalog_router, prefix=settings.api_v1_prefix)

    @app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    @app.websocket("/ws/operations")
    async def all_operation_updates(
        websocket: WebSocket,
        store: OperationStore = Depends(get_store),
        hub: OperationHub = Depends(get_hub),
    ) -> None:
        await hub.connect(websocket)
        for state in store.states():
            await websocket.send_json(operation_payload(state))
        try:
            while True:
                # Keep socket alive and allow ping/pong frames from clients.
                await websocket.receive_text()
        except WebSocketDisconnect:
            hub.disconnect(websocket)

    @app.websocket("/ws/operations/{domain}/{entity_id}/{kind}")
    async def operation_updates(
        websocket: WebSocket,
        domain: str,
        entity_id: str,
        kind: str,
        store: OperationStore = Depends(get_store),
        hub: OperationHub = Depends(get_hub),
    ) -> None:
        state = store.snapshot(entity_key(domain, entity_id), kind)
        operation_key = str(state.operation_id)
        await hub.connect(websocket, operation_key)
        await websocket.send_json(operation_payload(state))
        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            hub.disconnect(websocket, operation_key)

    return app


app = create_app()
