"""
Observability middleware for automatic HTTP metric tracking.
"""

import logging
import time
from collections.abc import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from payment_reconciler.observability.metrics import track_request

logger = logging.getLogger(__name__)


class PrometheusMiddleware(BaseHTTPMiddleware):
    """
    Tracks request latency and count per route.

    Routes are labelled by their template (/api/v1/billing/users/{user_id}/...)
    so metric cardinality stays bounded.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        method = request.method
        start_time = time.perf_counter()
        status_code = 500

        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            track_request(
                method=method,
                endpoint=self._endpoint_label(request),
                status_code=status_code,
                duration_seconds=time.perf_counter() - start_time,
            )

    @staticmethod
    def _endpoint_label(request: Request) -> str:
        route = request.scope.get("route")
        path = getattr(route, "path", None)
        return path or "unmatched"
