"""
Body size limit for inbound requests.

The webhook endpoint reads the whole body into memory to verify the Stripe
signature, so bodies above the limit are refused from their declared
Content-Length before anything is read.
"""

import logging
from collections.abc import Callable

from fastapi import Request, Response, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

logger = logging.getLogger(__name__)


class RequestSizeLimitMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: ASGIApp, max_body_size: int = 1024 * 1024):
        super().__init__(app)
        self.max_body_size = max_body_size

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        raw_length = request.headers.get("content-length")
        if raw_length is None:
            return await call_next(request)

        if not raw_length.isdigit():
            return JSONResponse(
                status_code=status.HTTP_400_BAD_REQUEST,
                content={"detail": "Malformed Content-Length header"},
            )

        body_size = int(raw_length)
        if body_size <= self.max_body_size:
            return await call_next(request)

        logger.warning(
            "Rejected oversized request body",
            extra={
                "path": request.url.path,
                "body_size": body_size,
                "limit": self.max_body_size,
            },
        )
        return JSONResponse(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            content={"detail": "Request body exceeds the size limit", "limit_bytes": self.max_body_size},
        )
