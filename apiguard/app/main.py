from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from apiguard import __version__
from apiguard.app.api.admin import router as admin_router
from apiguard.app.core.logging import get_logger, setup_logging
from apiguard.app.exceptions import BackendFailureError, ConfigurationError, GuardException
from apiguard.app.store import close_store


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application instance
    """
    setup_logging()
    logger = get_logger(__name__)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        logger.info("Application startup complete")
        yield
        await close_store()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="apiguard",
        description="Rate limiting, idempotent execution and duplicate submission suppression",
        version=__version__,
        lifespan=lifespan,
    )

    app.include_router(admin_router)

    @app.exception_handler(GuardException)
    async def guard_exception_handler(request: Request, exc: GuardException) -> JSONResponse:
        """Map guard exceptions to JSON responses with retry metadata headers."""
        if isinstance(exc, BackendFailureError):
            logger.error(f"Storage backend failure: {exc.message}")
        elif isinstance(exc, ConfigurationError):
            logger.error(f"Configuration error: {exc.message}")
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_response(),
            headers=exc.headers(),
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Log unhandled exceptions; never return a traceback to the client."""
        logger.exception(
            "Unhandled exception",
            extra={"exception_type": type(exc).__name__},
        )
        return JSONResponse(
            status_code=500,
            content={"error": "internal_error", "message": "Internal server error"},
        )

    return app


# Create the application instance
app = create_app()
