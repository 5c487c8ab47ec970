import logging
import warnings
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from consenthub import __version__
from consenthub.config import settings
from consenthub.core.errors import register_error_handlers
from consenthub.core.middleware import RequestContextMiddleware
from consenthub.routers import auth, consent, user
from consenthub.services.notifier import get_notifier

# Validate session secret in production
if settings.is_production and settings.secret_key == "change-me-in-production":
    raise RuntimeError(
        "SECRET_KEY must be set to a secure random value in production. "
        "Generate one with: python -c \"import secrets; print(secrets.token_hex(32))\""
    )

if not settings.is_production and settings.secret_key == "change-me-in-production":
    warnings.warn("SECRET_KEY is using default value. Set it for production.", stacklevel=1)

logging.getLogger("consenthub").setLevel(settings.log_level.upper())
logger = logging.getLogger("consenthub")


@asynccontextmanager
async def lifespan(application: FastAPI):
    """Create tables, start the change-feed listener, tear both down on exit."""
    from consenthub.dependencies import engine
    from consenthub.models.base import Base
    import consenthub.models  # noqa: F401  (populates Base.metadata)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables verified/created")

    notifier = get_notifier()
    bridge = None
    if settings.uses_postgres_feed:
        from consenthub.services.pg_bridge import PostgresChangeBridge

        bridge = PostgresChangeBridge(settings.listener_dsn, settings.change_feed_channel, notifier)
        await bridge.start()
    try:
        yield
    finally:
        if bridge is not None:
            await bridge.stop()
        notifier.close()
        await engine.dispose()


app = FastAPI(
    title=settings.app_name,
    version=__version__,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
    lifespan=lifespan,
)

# Middleware: order matters (last added = outermost = first to execute)
cors_kwargs = {
    "allow_origins": settings.cors_origins_list,
    "allow_credentials": True,
    "allow_methods": ["*"],
    "allow_headers": ["*"],
    "expose_headers": ["x-request-id"],
}
if settings.cors_allow_origin_regex:
    cors_kwargs["allow_origin_regex"] = settings.cors_allow_origin_regex
app.add_middleware(RequestContextMiddleware)
app.add_middleware(CORSMiddleware, **cors_kwargs)

# Error handlers
register_error_handlers(app)

# Routers
app.include_router(auth.router)
app.include_router(consent.router)
app.include_router(user.router)


@app.get("/health")
async def health_check():
    return {"status": "ok", "app": settings.app_name, "version": __version__}
