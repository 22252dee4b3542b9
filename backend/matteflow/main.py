import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
import sys

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse

from matteflow.api.routes import accounts_router, admin_router, tasks_router, workers_router
from matteflow.core.config import Settings, get_settings
from matteflow.core.logging import configure_logging, get_logger
from matteflow.db.session import Database
from matteflow.services.callbacks import CallbackReceiver
from matteflow.services.dispatcher import TaskDispatcher
from matteflow.services.heartbeat import HeartbeatMonitor
from matteflow.services.ledger import Ledger
from matteflow.services.orchestrator import TaskOrchestrator
from matteflow.services.pricing import TaskPricing
from matteflow.services.task_store import TaskStore
from matteflow.services.worker_client import WorkerClient
from matteflow.services.worker_registry import WorkerRegistry

logger = get_logger("matteflow.main")

if sys.platform.startswith("win"):
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())


def create_app(settings: Settings | None = None, worker_transport: httpx.AsyncBaseTransport | None = None) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        configure_logging(settings.log_level)

        db = Database(settings.database_url)
        db.init()
        task_store = TaskStore(db)
        worker_registry = WorkerRegistry(
            db,
            heartbeat_timeout_sec=settings.heartbeat_timeout_sec,
            lease_sec=settings.dispatch_lease_sec,
        )
        heartbeat = HeartbeatMonitor(db, worker_registry, timeout_sec=settings.heartbeat_timeout_sec)
        ledger = Ledger(db)
        pricing = TaskPricing(settings.default_task_price, settings.model_prices)
        worker_client = WorkerClient(
            settings.callback_url,
            segment_path=settings.worker_segment_path,
            timeout=settings.worker_request_timeout_sec,
            worker_token=settings.worker_token if settings.worker_auth_enabled else "",
            transport=worker_transport,
        )
        dispatcher = TaskDispatcher(
            db,
            task_store,
            worker_registry,
            heartbeat,
            worker_client,
            interval_sec=settings.scheduler_interval_sec,
            batch_size=settings.scheduler_batch_size,
        )

        app.state.settings = settings
        app.state.db = db
        app.state.task_store = task_store
        app.state.worker_registry = worker_registry
        app.state.heartbeat = heartbeat
        app.state.ledger = ledger
        app.state.pricing = pricing
        app.state.orchestrator = TaskOrchestrator(task_store, ledger, pricing)
        app.state.callbacks = CallbackReceiver(db, task_store, worker_registry, ledger, pricing)
        app.state.dispatcher = dispatcher

        if settings.scheduler_enabled:
            dispatcher.start()
        logger.info("service_started", extra={"event": "service.started"})

        try:
            yield
        finally:
            await dispatcher.stop()
            await worker_client.close()
            db.dispose()
            logger.info("service_stopped", extra={"event": "service.stopped"})

    app = FastAPI(
        title=settings.app_name,
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
    )
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(tasks_router, prefix=settings.api_prefix)
    app.include_router(workers_router, prefix=settings.api_prefix)
    app.include_router(accounts_router, prefix=settings.api_prefix)
    app.include_router(admin_router, prefix=settings.api_prefix)

    @app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    return app


app = create_app()
