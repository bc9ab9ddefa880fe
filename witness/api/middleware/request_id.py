"""
Request correlation.

Every request gets an id: the caller's X-Request-ID when present, a fresh uuid
otherwise. It is echoed back on the response, stamped on each log line and
copied into every EventLog row written while the request is in flight.
"""

import time
import uuid

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from witness.logging_config import get_logger, request_id_var

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
SLOW_REQUEST_SECONDS = 1.0


class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        request.state.request_id = request_id
        token = request_id_var.set(request_id)
        started = time.monotonic()
        try:
            response = await call_next(request)
            elapsed = time.monotonic() - started
            if elapsed > SLOW_REQUEST_SECONDS:
                logger.warning(
                    "Slow request %s %s",
                    request.method,
                    request.url.path,
                    extra={"elapsed_ms": int(elapsed * 1000)},
                )
        finally:
            request_id_var.reset(token)

        response.headers[REQUEST_ID_HEADER] = request_id
        return response
