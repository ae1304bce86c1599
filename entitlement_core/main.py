"""
Entitlement service API.

Run locally:
    python -m entitlement_core.main
"""

import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from sqlalchemy.orm import sessionmaker

from entitlement_core import __version__
from entitlement_core.api.dependencies.components import AppComponents, build_components
from entitlement_core.api.error_handlers import register_exception_handlers
from entitlement_core.api.routes import health, subscriptions, webhooks_app_store, webhooks_stripe
from entitlement_core.config.settings import Settings
from entitlement_core.database.session import build_engine, build_session_factory
from entitlement_core.models import Base

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=LOG_FORMAT)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    settings = app.state.settings
    logger.info("Starting entitlement service", extra={"env": settings.env, "version": __version__})

    config_status = {
        "STRIPE_WEBHOOK_SECRET": bool(settings.stripe_webhook_secret),
        "STRIPE_SECRET_KEY": bool(settings.stripe_secret_key),
        "APP_STORE_ROOT_CERT_PATHS": bool(settings.app_store_root_cert_paths),
        "APP_STORE_JWKS_URL": bool(settings.app_store_jwks_url),
        "AUTH_JWT_SECRET": bool(settings.auth_jwt_secret),
    }
    missing = [name for name, present in config_status.items() if not present]
    if missing:
        logger.warning("Optional configuration missing", extra={"missing": missing})

    yield

    logger.info("Shutting down entitlement service")
    engine = getattr(app.state, "engine", None)
    if engine is not None:
        engine.dispose()


def create_app(
    settings: Optional[Settings] = None,
    components: Optional[AppComponents] = None,
    session_factory: Optional[sessionmaker] = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Defaults to Settings.from_env()
        components: Pre-built component graph (tests); built from settings otherwise
        session_factory: Pre-built session factory (tests); an engine is
            created from settings.database_url otherwise

    Returns:
        Configured FastAPI application
    """
    settings = settings or Settings.from_env()

    app = FastAPI(
        title="Entitlement Service",
        description="Derives one authoritative subscription tier per account from App Store and Stripe",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.components = components or build_components(settings)

    if session_factory is None:
        engine = build_engine(settings.database_url)
        Base.metadata.create_all(bind=engine)
        app.state.engine = engine
        session_factory = build_session_factory(engine)
    app.state.session_factory = session_factory

    register_exception_handlers(app)

    # Include health route (bypasses authentication)
    app.include_router(health.router)

    # Provider webhooks (signature-verified, no bearer token)
    app.include_router(webhooks_app_store.router)
    app.include_router(webhooks_stripe.router)

    # Account routes (bearer token)
    app.include_router(subscriptions.router)

    return app


if __name__ == "__main__":
    import uvicorn

    settings = Settings.from_env()
    configure_logging(settings.log_level)
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(
        create_app(settings),
        host="0.0.0.0",
        port=port,
    )
