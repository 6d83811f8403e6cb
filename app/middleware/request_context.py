"""
RequestContext Middleware - Adds request tracking to all requests.

Adds to request.state:
- request_id: Unique ID for request tracing
- delivery_id: GitHub's X-GitHub-Delivery header, when present

Both are bound into structlog's context variables for the duration of the
request, so every log line emitted while handling it carries them.
"""

import uuid

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Attach a request id (and the webhook delivery id) to the request and its logs."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        delivery_id = request.headers.get("x-github-delivery")
        request.state.request_id = request_id
        request.state.delivery_id = delivery_id

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)
        if delivery_id:
            structlog.contextvars.bind_contextvars(delivery_id=delivery_id)

        logger.debug("Request started", method=request.method, path=request.url.path)

        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.clear_contextvars()

        # Add request ID to response headers (for client-side tracing)
        response.headers["X-Request-ID"] = request_id
        return response
