import logging
from datetime import datetime
from typing import Callable, Optional

import uvicorn
from fastapi import Depends, FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import schemas
from .broadcast import BroadcastHub
from .config import Settings, get_settings
from .core.logging import setup_logging
from .dependencies import get_storage
from .exceptions import CareQueueError
from .models import PrescriptionStatus, TokenStatus
from .routers import (
    alerts, appointments, auth, departments, drugs, health, patients,
    prescriptions, realtime, staff, theatres, tokens, users,
)
from .routers.drugs import is_low_stock
from .sample_data import load_sample_data
from .security import get_current_user
from .services.queue_service import QueueService
from .sql_storage import SqlStorage
from .storage import Entity, MemStorage, Storage

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1"


def build_storage(settings: Settings, clock: Optional[Callable[[], datetime]] = None) -> Storage:
    if settings.storage_backend == "sql":
        return SqlStorage.from_url(settings.database_url, clock=clock)
    return MemStorage(clock=clock)


def _validation_message(exc: RequestValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ()) if item != "body")
        parts.append(f"{location}: {error.get('msg')}" if location else error.get("msg", "Invalid value"))
    return "; ".join(parts) or "Invalid request data"


def register_exception_handlers(app: FastAPI):
    @app.exception_handler(CareQueueError)
    async def carequeue_error_handler(request: Request, exc: CareQueueError):
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": _validation_message(exc)})

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                            content={"detail": "Internal server error"})


def create_app(settings: Optional[Settings] = None, storage: Optional[Storage] = None,
               clock: Optional[Callable[[], datetime]] = None) -> FastAPI:
    settings = settings or get_settings()
    setup_logging(settings.log_level, settings.json_logs)

    app = FastAPI(title=settings.app_name, version=settings.app_version, debug=settings.debug)
    app.state.settings = settings
    app.state.storage = storage or build_storage(settings, clock=clock)
    app.state.hub = BroadcastHub()
    app.state.queue_service = QueueService(app.state.storage, clock=clock)

    @app.on_event("startup")
    def on_startup():
        if settings.seed_sample_data:
            load_sample_data(app.state.storage, settings)
        logger.info("%s started with %s storage", settings.app_name, settings.storage_backend)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
        allow_headers=["*"],
    )
    register_exception_handlers(app)

    for module in (auth, users, departments, staff, patients, appointments, tokens,
                   prescriptions, drugs, theatres, alerts, health):
        app.include_router(module.router, prefix=API_PREFIX)
    app.include_router(realtime.router)

    @app.get("/health", tags=["Health Checks"])
    def liveness():
        return {"status": "ok", "subscribers": app.state.hub.connection_count}

    @app.get(f"{API_PREFIX}/dashboard/stats", response_model=schemas.DashboardStatsResponse, tags=["Dashboard"])
    def get_dashboard_stats(storage: Storage = Depends(get_storage),
                            current_user: schemas.User = Depends(get_current_user)):
        token_counts = {token_status: 0 for token_status in TokenStatus}
        for token in storage.list(Entity.tokens):
            token_counts[token.status] += 1
        today = storage.clock().date()
        return schemas.DashboardStatsResponse(
            waiting_tokens=token_counts[TokenStatus.waiting],
            called_tokens=token_counts[TokenStatus.called],
            serving_tokens=token_counts[TokenStatus.serving],
            appointments_today=sum(1 for a in storage.list(Entity.appointments)
                                   if a.appointment_date.date() == today),
            pending_prescriptions=len(storage.list(Entity.prescriptions, status=PrescriptionStatus.pending)),
            low_stock_drugs=sum(1 for d in storage.list(Entity.drugs, is_active=True) if is_low_stock(d)),
            active_alerts=len(storage.list(Entity.emergency_alerts, is_active=True)),
        )

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run("carequeue.main:app", host="0.0.0.0", port=8000, reload=get_settings().debug)
