"""FastAPI middleware for observability context injection."""

import uuid

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from deepsearch.core.logging import get_logger, request_id_var, user_id_var

logger = get_logger(__name__)


class ObservabilityMiddleware(BaseHTTPMiddleware):
    """Binds request_id and user_id into context vars for structured logging."""

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request_id_var.set(request_id)

        # Set by the upstream auth proxy
        raw_user = request.headers.get("x-user-id")
        if raw_user:
            user_id_var.set(raw_user)

        logger.debug(
            "request_started",
            method=request.method,
            path=request.url.path,
        )

        response = await call_next(request)
        response.headers["x-request-id"] = request_id

        logger.debug(
            "request_finished",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
        )

        return response
