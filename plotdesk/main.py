import os
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from .config import settings
from .db import Base, engine, SessionLocal
from .errors import AppError
from .logging import setup_logging, get_logger, RequestIdMiddleware
from .routes.visit_requests import router as visit_requests_router
from .routes.notifications import router as notifications_router
from .routes.users import router as users_router
from .routes.webhooks import router as webhooks_router
from .routes.plots import router as plots_router
from .routes.attendance import router as attendance_router
from .routes.leave_requests import router as leave_requests_router
from .routes.buy_requests import router as buy_requests_router
from .routes.lands import router as lands_router
from .services.notifications import start_dispatcher


logger = get_logger(__name__)


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

    @app.exception_handler(AppError)
    async def _app_error_handler(request: Request, exc: AppError):
        if exc.status_code >= 500:
            logger.error("request_failed", code=exc.code.value, error=exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    # Routers
    app.include_router(visit_requests_router)
    app.include_router(notifications_router)
    app.include_router(users_router)
    app.include_router(webhooks_router)
    app.include_router(plots_router)
    app.include_router(attendance_router)
    app.include_router(leave_requests_router)
    app.include_router(buy_requests_router)
    app.include_router(lands_router)

    # Metrics
    Instrumentator().instrument(app).expose(app)

    @app.get("/healthz")
    def healthz():
        return {"status": "ok"}

    @app.on_event("startup")
    def _startup():
        # Ensure local SQLite directory exists
        if settings.database_url.startswith("sqlite:///./"):
            os.makedirs("var", exist_ok=True)
        if settings.auto_create_db:
            Base.metadata.create_all(bind=engine)
            logger.info("startup_tables_verified")
        if settings.enable_notification_dispatcher:
            app.state.dispatcher_stop = start_dispatcher(SessionLocal)
            logger.info("notification_dispatcher_started", interval_s=settings.notification_dispatch_interval_s)

    @app.on_event("shutdown")
    def _shutdown():
        stop = getattr(app.state, "dispatcher_stop", None)
        if stop is not None:
            stop.set()

    return app


app = create_app()
