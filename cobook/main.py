import os
from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
import structlog

from .config import settings
from .db import Base, engine, SessionLocal, get_db
from .errors import (
    BookingError,
    ConfigurationError,
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    TransientPersistenceError,
    ValidationError,
)
from .logging import setup_logging, RequestIdMiddleware
from .routes.bookings import router as bookings_router
from .routes.vehicles import router as vehicles_router
from .routes.recurring import router as recurring_router
from .routes.templates import router as templates_router
from .routes.late_fees import router as late_fees_router
from .routes.integration import router as integration_router

logger = structlog.get_logger(__name__)

# Most specific first
ERROR_STATUS = (
    (NotFoundError, 404),
    (PermissionDeniedError, 403),
    (ValidationError, 422),
    (ConflictError, 409),
    (ConfigurationError, 500),
    (TransientPersistenceError, 503),
)


def _booking_error_handler(request: Request, exc: BookingError) -> JSONResponse:
    status_code = next((code for cls, code in ERROR_STATUS if isinstance(exc, cls)), 400)
    body = {"detail": getattr(exc, "message", None) or str(exc)}
    if isinstance(exc, ValidationError) and exc.field:
        body["field"] = exc.field
    if isinstance(exc, ConflictError):
        body["conflicting_booking_ids"] = [str(i) for i in exc.conflicting_ids]
    if status_code >= 500:
        logger.error("request_failed", path=request.url.path, error=body["detail"], error_type=type(exc).__name__)
    return JSONResponse(status_code=status_code, content=body)


def create_app() -> FastAPI:
    setup_logging()
    app = FastAPI(title=settings.app_name)

    # Middlewares
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    limiter = Limiter(key_func=get_remote_address, default_limits=[settings.rate_limit])
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)

    app.add_exception_handler(BookingError, _booking_error_handler)

    # Routers
    app.include_router(bookings_router)
    app.include_router(vehicles_router)
    app.include_router(recurring_router)
    app.include_router(templates_router)
    app.include_router(late_fees_router)
    app.include_router(integration_router)

    # Metrics
    Instrumentator().instrument(app).expose(app)

    @app.get("/health")
    def health(db: Session = Depends(get_db)):
        try:
            db.execute(text("SELECT 1"))
        except SQLAlchemyError as exc:
            logger.error("health_check_failed", error=str(exc))
            return JSONResponse(status_code=503, content={"status": "unavailable"})
        return {"status": "ok"}

    @app.on_event("startup")
    def _startup():
        logger.info("startup", environment=settings.environment)
        # Ensure local SQLite directory exists
        if settings.database_url.startswith("sqlite:///./"):
            os.makedirs("var", exist_ok=True)
        if settings.auto_create_db:
            Base.metadata.create_all(bind=engine)
            logger.info("tables_verified", tables=len(Base.metadata.tables))
        if settings.scheduler_enabled:
            from .scheduler import build_scheduler
            scheduler = build_scheduler(SessionLocal)
            scheduler.start()
            app.state.scheduler = scheduler
            logger.info("scheduler_started", interval_hours=settings.recurrence_interval_hours)

    @app.on_event("shutdown")
    def _shutdown():
        scheduler = getattr(app.state, "scheduler", None)
        if scheduler is not None:
            scheduler.shutdown(wait=False)
            logger.info("scheduler_stopped")

    return app


app = create_app()
