import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address
import structlog

from .config import settings
from .db import Base, SessionLocal, engine
from .errors import install_exception_handlers
from .logging import RequestIdMiddleware, setup_logging
from .auth.router import router as auth_router
from .routes.users import router as users_router
from .routes.companies import router as companies_router
from .routes.machines import router as machines_router
from .routes.machine_documents import router as machine_documents_router
from .routes.machine_parts import router as machine_parts_router
from .routes.inventory_transactions import router as inventory_router
from .routes.pm_templates import router as pm_templates_router
from .routes.pm_schedules import router as pm_schedules_router
from .routes.repair_works import router as repair_works_router
from .routes.history import router as history_router
from .routes.uploads import router as uploads_router
from .routes.notifications import router as notifications_router
from .jobs import daily_summary
from .services.users import ensure_roles


log = structlog.get_logger(__name__)


def create_app() -> FastAPI:
    setup_logging()
    app = FastAPI(title=settings.app_name)

    # Middlewares
    app.add_middleware(RequestIdMiddleware)
    origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()] or ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    limiter = Limiter(key_func=get_remote_address, default_limits=[settings.rate_limit])
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)

    install_exception_handlers(app)

    # Routers
    app.include_router(auth_router)
    app.include_router(users_router)
    app.include_router(companies_router)
    app.include_router(machines_router)
    app.include_router(machine_documents_router)
    app.include_router(machine_parts_router)
    app.include_router(inventory_router)
    app.include_router(pm_templates_router)
    app.include_router(pm_schedules_router)
    app.include_router(repair_works_router)
    app.include_router(history_router)
    app.include_router(uploads_router)
    app.include_router(notifications_router)

    # Locally stored evidence files
    uploads_dir = os.path.join(settings.storage_dir, "uploads")
    os.makedirs(uploads_dir, exist_ok=True)
    app.mount("/uploads", StaticFiles(directory=uploads_dir), name="uploads")

    # Metrics
    Instrumentator().instrument(app).expose(app)

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.on_event("startup")
    def _startup():
        if settings.database_url.startswith("sqlite:///./"):
            os.makedirs("var", exist_ok=True)
        if settings.auto_create_db:
            Base.metadata.create_all(bind=engine)
        db = SessionLocal()
        try:
            ensure_roles(db)
            db.commit()
        finally:
            db.close()
        if settings.enable_scheduler:
            daily_summary.start_scheduler()
        log.info("app_started", environment=settings.environment)

    @app.on_event("shutdown")
    def _shutdown():
        daily_summary.stop_scheduler()

    return app


app = create_app()
