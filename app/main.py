"""
FastAPI application: service container lifecycle, error rendering and request logging.
"""

import time
from collections.abc import Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from app.config import Settings, settings
from app.container import ServiceContainer, build_container, close_container, start_container
from app.errors import AppError, ErrorKind
from app.infrastructure.observability.logging import get_logger, log_request, setup_logging
from app.middleware import RequestContextMiddleware
from app.routes import health, webhooks

# Setup logging before creating the app
setup_logging(log_level=settings.log_level)
logger = get_logger(__name__)


def create_app(
    app_settings: Settings = settings,
    container_factory: Callable[[Settings], ServiceContainer] = build_container,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Build the container on startup and close it in reverse order on shutdown."""
        logger.info("Application starting", environment=app_settings.environment, debug=app_settings.debug)

        container = container_factory(app_settings)
        try:
            await start_container(container)
        except Exception as e:
            logger.error("Failed to initialize services", error=str(e), error_type=type(e).__name__)
            await close_container(container)
            raise

        app.state.container = container
        logger.info("All services initialized successfully")

        yield

        logger.info("Application shutting down")
        await close_container(container)

    app = FastAPI(
        title="Bounty Review Service",
        description="GitHub webhook processing, AI pull request review and bounty payouts",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.include_router(health.router)
    app.include_router(webhooks.router)

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        log = logger.warning if exc.status_code < 500 else logger.error
        log("Request failed", path=request.url.path, code=exc.code, error=exc.message)
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "error": exc.message, "code": exc.code},
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        problems = []
        for problem in exc.errors():
            field = ".".join(str(part) for part in problem["loc"] if part not in ("body", "query"))
            problems.append(f"{field}: {problem['msg']}")
        error = AppError(ErrorKind.VALIDATION, f"Invalid request: {'; '.join(problems)}", {"problems": problems})
        return await app_error_handler(request, error)

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.error(
            "Unhandled error",
            path=request.url.path,
            error=str(exc),
            error_type=type(exc).__name__,
        )
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": "Internal server error", "code": "UNEXPECTED_ERROR"},
        )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log HTTP requests with timing."""
        start_time = time.time()
        response = await call_next(request)
        log_request(
            request.method,
            request.url.path,
            response.status_code,
            round((time.time() - start_time) * 1000, 2),
        )
        return response

    app.add_middleware(RequestContextMiddleware)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
