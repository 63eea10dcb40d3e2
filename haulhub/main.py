import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import Limiter
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address

from .auth.router import router as auth_router
from .config import settings
from .db import Base, SessionLocal, engine
from .errors import register_error_handlers
from .logging import RequestIdMiddleware, get_logger, setup_logging
from .routes.admin import router as admin_router
from .routes.executor import router as executor_router
from .routes.files import router as files_router
from .routes.integrations import router as integrations_router
from .routes.notifications import router as notifications_router
from .routes.orders import router as orders_router
from .routes.payments import router as payments_router
from .routes.profile import router as profile_router
from .routes.support import router as support_router
from .services.accounts import ALL_ROLES, ensure_role
from .services.watchdog import InactivityWatchdog


log = get_logger(__name__)


def init_db() -> None:
    # Ensure local SQLite directory exists
    if settings.database_url.startswith("sqlite:///./"):
        os.makedirs(os.path.dirname(settings.database_url[len("sqlite:///"):]) or ".", exist_ok=True)
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        for name in ALL_ROLES:
            ensure_role(db, name)
        db.commit()
    finally:
        db.close()
    log.info("database_ready", url=engine.url.render_as_string(hide_password=True))


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.auto_create_db:
        init_db()
    watchdog = None
    if settings.enable_watchdog:
        watchdog = InactivityWatchdog()
        watchdog.start()
    app.state.watchdog = watchdog
    yield
    if watchdog is not None:
        watchdog.stop()


def create_app() -> FastAPI:
    setup_logging()
    app = FastAPI(title=settings.app_name, lifespan=lifespan)

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
    app.add_middleware(SlowAPIMiddleware)
    register_error_handlers(app)

    # Routers
    app.include_router(auth_router)
    app.include_router(profile_router)
    app.include_router(orders_router)
    app.include_router(executor_router)
    app.include_router(payments_router)
    app.include_router(support_router)
    app.include_router(notifications_router)
    app.include_router(files_router)
    app.include_router(admin_router)
    app.include_router(integrations_router)

    # Metrics
    Instrumentator().instrument(app).expose(app)

    return app


app = create_app()
