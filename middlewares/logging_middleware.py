"""
Middleware logging every HTTP request and any exception it raises.

Goals:
- see every request and who sent it
- get the full traceback with context when a handler fails anywhere
"""

import logging
import time
from typing import Optional

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response


logger = logging.getLogger(__name__)


def _truncate(text: Optional[str], limit: int = 200) -> Optional[str]:
    if text is None:
        return None
    text = text.replace("\n", "\\n")
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


class LoggingMiddleware(BaseHTTPMiddleware):
    """Logs start/finish of each request plus exceptions with context."""

    def __init__(self, app, log_success: bool = True):
        super().__init__(app)
        self.log_success = log_success

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        started = time.monotonic()
        client = request.client.host if request.client else None

        # Correlation id for one request
        trace_id = f"{int(time.time() * 1000)}:{client or 'na'}"
        request.state.trace_id = trace_id

        logger.info(
            "IN  trace=%s method=%s path=%s query=%s client=%s",
            trace_id,
            request.method,
            request.url.path,
            _truncate(request.url.query or None),
            client,
        )

        try:
            response = await call_next(request)
        except Exception as e:
            ms = (time.monotonic() - started) * 1000
            logger.error(
                "ERR trace=%s method=%s path=%s user=%s time_ms=%.1f err=%s",
                trace_id,
                request.method,
                request.url.path,
                getattr(request.state, "user_id", None),
                ms,
                repr(e),
                exc_info=True,
            )
            raise

        ms = (time.monotonic() - started) * 1000
        if self.log_success:
            logger.info(
                "OUT trace=%s method=%s path=%s user=%s status=%s time_ms=%.1f",
                trace_id,
                request.method,
                request.url.path,
                getattr(request.state, "user_id", None),
                response.status_code,
                ms,
            )
        response.headers["X-Trace-Id"] = trace_id
        return response
