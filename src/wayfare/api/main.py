"""FastAPI application factory and main entry point."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from wayfare import __version__
from wayfare.api.middleware.exception_handler import setup_exception_handlers
from wayfare.api.middleware.logging import LoggingMiddleware
from wayfare.api.routes import health_router, webhooks_router
from wayfare.billing.service import BillingEngine
from wayfare.core.config import Settings, get_settings
from wayfare.core.database import create_engine_from_settings, create_session_factory
from wayfare.core.logging import configure_logging, get_logger

logger = get_logger(__name__)


def create_app(
    settings: Settings | None = None,
    *,
    engine: BillingEngine | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        settings: Application settings, loaded from the environment when omitted
        engine: Pre-built billing engine; composed from settings when omitted
    """
    settings = settings or get_settings()

    configure_logging(
        json_logs=settings.is_production,
        log_level="DEBUG" if settings.debug else "INFO",
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        db_engine = create_engine_from_settings(settings)
        app.state.db_engine = db_engine
        app.state.engine = engine or BillingEngine.from_settings(
            settings,
            session_factory=create_session_factory(db_engine),
        )
        logger.info("application_startup", app_name=settings.app_name, env=settings.app_env)
        yield
        logger.info("application_shutdown")
        await db_engine.dispose()

    app = FastAPI(
        title=settings.app_name,
        version=__version__,
        description="Subscription billing lifecycle engine",
        docs_url="/docs" if not settings.is_production else None,
        redoc_url="/redoc" if not settings.is_production else None,
        lifespan=lifespan,
    )

    app.add_middleware(LoggingMiddleware)
    setup_exception_handlers(app)

    app.include_router(health_router, tags=["Health"])
    app.include_router(webhooks_router, prefix="/webhooks", tags=["Webhooks"])

    return app
