"""FastAPI application: logging, middleware, error mapping, routes."""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from deepsearch.api.v1.router import api_router
from deepsearch.core.errors import AdmissionDenied, OwnershipViolation, StorageUnavailable
from deepsearch.core.logging import get_logger, setup_logging
from deepsearch.core.middleware import ObservabilityMiddleware
from deepsearch.core.streams import close_redis
from deepsearch.database import engine

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    setup_logging()
    logger.info("app_started")
    yield
    await close_redis()
    await engine.dispose()
    logger.info("app_stopped")


def setup_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(AdmissionDenied)
    async def admission_denied_handler(request: Request, exc: AdmissionDenied) -> JSONResponse:
        headers = {
            "X-RateLimit-Limit": str(exc.limit),
            "X-RateLimit-Remaining": str(max(0, exc.limit - exc.requests_today)),
        }
        if exc.reset_at is not None:
            headers["X-RateLimit-Reset"] = exc.reset_at.isoformat()
        return JSONResponse(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            content={
                "error": "Rate limit exceeded",
                "message": exc.reason,
                "requests_today": exc.requests_today,
                "limit": exc.limit,
            },
            headers=headers,
        )

    @app.exception_handler(OwnershipViolation)
    async def ownership_violation_handler(
        request: Request, exc: OwnershipViolation
    ) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_403_FORBIDDEN,
            content={"error": "Forbidden", "message": "Chat does not belong to the current user"},
        )

    @app.exception_handler(StorageUnavailable)
    async def storage_unavailable_handler(
        request: Request, exc: StorageUnavailable
    ) -> JSONResponse:
        logger.error("storage_unavailable", operation=exc.operation, error=str(exc.cause))
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"error": "Service unavailable", "message": "Please retry shortly"},
            headers={"Retry-After": "5"},
        )


def create_app() -> FastAPI:
    app = FastAPI(title="deepsearch", version="0.1.0", lifespan=lifespan)
    app.add_middleware(ObservabilityMiddleware)
    setup_exception_handlers(app)
    app.include_router(api_router, prefix="/api/v1")

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    return app


app = create_app()
