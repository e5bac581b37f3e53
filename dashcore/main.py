# dashcore/main.py
from dotenv import load_dotenv

# load .env before anything reads the environment
load_dotenv()

import asyncio
import logging
from typing import Callable, Optional
from datetime import datetime

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from dashcore.api.notifications import router as notifications_router
from dashcore.api.records import router as records_router
from dashcore.api.websocket import router as ws_router
from dashcore.config import Settings, load_settings, lookahead_policy
from dashcore.errors import (
    Conflict,
    DashboardError,
    NotFound,
    PartialFailure,
    StoreUnavailable,
    ValidationError,
)
from dashcore.infra.memory_store import MemoryStoreBackend
from dashcore.infra.servicebus_consumer import ServiceBusChangePublisher, consume_changes
from dashcore.infra.store import StoreAdapter, StoreBackend
from dashcore.infra.table_client import TableStoreBackend
from dashcore.services.notification_generator import (
    GeneratorPolicy,
    NotificationGenerator,
    run_periodic_generation,
    utc_now,
)
from dashcore.services.urgency import get_timezone
from dashcore.services.websocket_manager import WebSocketManager

logger = logging.getLogger(__name__)

ERROR_STATUS = (
    (NotFound, 404),
    (Conflict, 409),
    (ValidationError, 422),
    (PartialFailure, 207),
    (StoreUnavailable, 503),
)


def build_store(settings: Settings, backend: Optional[StoreBackend] = None) -> StoreAdapter:
    if backend is None:
        if settings.store_backend == "table":
            backend = TableStoreBackend(settings.storage_connection_string, settings.table_name)
        else:
            backend = MemoryStoreBackend()
    publisher = None
    if settings.relay_enabled:
        publisher = ServiceBusChangePublisher(
            settings.servicebus_connection_string, settings.servicebus_queue_name
        )
    return StoreAdapter(backend, publisher=publisher)


async def dashboard_error_handler(request: Request, exc: DashboardError):
    status_code = next((code for kind, code in ERROR_STATUS if isinstance(exc, kind)), 500)
    body = {"detail": exc.message}
    headers = {}
    if isinstance(exc, PartialFailure):
        body["results"] = [
            {"index": r.index, "id": r.id, "ok": r.ok, "error": r.error.message if r.error else None}
            for r in exc.results
        ]
    if isinstance(exc, StoreUnavailable):
        headers["Retry-After"] = "5"
    return JSONResponse(status_code=status_code, content=body, headers=headers)


def create_app(
    settings: Optional[Settings] = None,
    backend: Optional[StoreBackend] = None,
    clock: Callable[[], datetime] = utc_now,
) -> FastAPI:
    settings = settings or load_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = FastAPI(title="Dashboard Data Core")

    # CORS (restrict origins in production)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    store = build_store(settings, backend)
    app.state.settings = settings
    app.state.store = store
    app.state.generator = NotificationGenerator(
        store,
        policy=GeneratorPolicy.from_days(lookahead_policy(settings)),
        clock=clock,
        tz=get_timezone(settings.timezone),
        role=settings.admin_role,
    )
    app.state.connections = WebSocketManager()
    app.state.tasks = []

    app.include_router(notifications_router)
    app.include_router(records_router)
    app.include_router(ws_router)
    app.add_exception_handler(DashboardError, dashboard_error_handler)

    @app.on_event("startup")
    async def startup_event():
        await store.init()
        if settings.relay_enabled:
            app.state.tasks.append(asyncio.create_task(consume_changes(
                store, settings.servicebus_connection_string, settings.servicebus_queue_name
            )))
        if settings.generation_interval_seconds > 0 and settings.generation_targets:
            app.state.tasks.append(asyncio.create_task(run_periodic_generation(
                app.state.generator,
                settings.generation_targets,
                settings.generation_interval_seconds,
            )))
        logger.info("Store ready (%s backend)", settings.store_backend)

    @app.on_event("shutdown")
    async def shutdown_event():
        for task in app.state.tasks:
            task.cancel()
        app.state.connections.close_all()
        await store.close()

    return app


app = create_app()
