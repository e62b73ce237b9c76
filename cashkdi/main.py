"""
Cashkdi Payments - FastAPI Application

Payment orchestration over Orange Money, MTN Mobile Money and card
processors: one payment API, provider webhooks and admin tooling.

Run with:
    uvicorn cashkdi.main:app
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm.exc import StaleDataError

from . import __version__
from .api.admin import router as admin_router
from .api.payments import router as payments_router
from .api.webhooks import router as webhooks_router
from .config import Settings, get_settings
from .db.session import create_engine, create_session_factory, initialize_database
from .exceptions import CashkdiError
from .providers.registry import build_registry
from .services.api_key_service import ApiKeyRateLimiter
from .services.scheduler import create_scheduler
from .services.signature_service import SignatureVerifier

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Settings to use; defaults to the environment

    Returns:
        Configured FastAPI app. Engine, registry and scheduler are created
        by the lifespan and exposed on app.state.
    """
    settings = settings or get_settings()
    configure_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Application lifespan manager.

        - Startup: database schema, provider registry, scheduler
        - Shutdown: scheduler, provider HTTP clients, engine
        """
        logger.info(f"Starting {settings.app_name} ({settings.environment})...")

        engine = create_engine(settings)
        await initialize_database(engine)

        signer = SignatureVerifier(settings.providers, settings.webhooks)
        registry = build_registry(settings, signer)
        session_factory = create_session_factory(engine)

        app.state.settings = settings
        app.state.engine = engine
        app.state.session_factory = session_factory
        app.state.signer = signer
        app.state.registry = registry
        app.state.rate_limiter = ApiKeyRateLimiter(settings.rate_limit_window_seconds)

        scheduler = create_scheduler(settings, session_factory, registry, signer)
        if scheduler is not None:
            scheduler.start()
        app.state.scheduler = scheduler

        logger.info(f"Server startup complete. Providers: {', '.join(registry.names())}")

        yield

        logger.info(f"Shutting down {settings.app_name}...")
        if scheduler is not None:
            try:
                scheduler.shutdown(wait=True)
            except Exception as e:
                logger.error(f"Error during scheduler shutdown: {e}")
        await registry.close()
        await engine.dispose()

    app = FastAPI(
        title=settings.app_name,
        description="Payment orchestration for Orange Money, MTN MoMo and cards",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings

    @app.exception_handler(CashkdiError)
    async def cashkdi_error_handler(request: Request, exc: CashkdiError):
        """
        Handle domain errors with the standard envelope.

        The HTTP status comes from the exception class.
        """
        log = logger.error if exc.status_code >= 500 else logger.warning
        log(f"{exc.error_code} on {request.method} {request.url.path}: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_dict()))

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        logger.warning(f"Validation error on {request.url.path}: {exc.errors()}")
        return JSONResponse(
            status_code=422,
            content={
                "error_code": "validation_error",
                "message": "Request validation failed",
                "details": {"errors": jsonable_encoder(exc.errors())},
            },
        )

    @app.exception_handler(StaleDataError)
    async def stale_data_handler(request: Request, exc: StaleDataError):
        logger.warning(f"Concurrent update on {request.url.path}: {exc}")
        return JSONResponse(
            status_code=409,
            content={
                "error_code": "concurrent_update",
                "message": "The payment was modified concurrently, retry the request",
                "details": {},
            },
        )

    @app.exception_handler(Exception)
    async def general_error_handler(request: Request, exc: Exception):
        """
        Catch-all handler for unexpected errors.

        Logs full exception for debugging but returns generic message to client.
        """
        logger.error(f"Unexpected error: {str(exc)}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={
                "error_code": "internal_error",
                "message": "An unexpected error occurred",
                "details": {"error_type": type(exc).__name__} if settings.environment == "sandbox" else {},
            },
        )

    @app.get("/api/health")
    async def health_check(request: Request):
        """
        Health check endpoint for monitoring and load balancers.

        Returns:
            Server status, version and registered providers
        """
        registry = getattr(request.app.state, "registry", None)
        scheduler = getattr(request.app.state, "scheduler", None)
        return {
            "status": "healthy",
            "version": __version__,
            "environment": settings.environment,
            "providers": registry.names() if registry else [],
            "scheduler_running": bool(scheduler and scheduler.running),
        }

    app.include_router(payments_router, prefix="/api", tags=["payments"])
    app.include_router(webhooks_router, prefix="/webhooks", tags=["webhooks"])
    app.include_router(admin_router, prefix="/api/admin", tags=["admin"])

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    _settings = get_settings()
    uvicorn.run("cashkdi.main:app", host=_settings.host, port=_settings.port)
