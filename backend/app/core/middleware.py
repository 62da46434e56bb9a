"""
Request middleware: correlation id, admin attribution and one log line
per request.

    X-Request-ID    echoed when the client sends a well-formed id
                    (1-64 chars of [A-Za-z0-9._-]), otherwise generated
    X-Process-Time  wall-clock handling time

Admin calls also bind X-Admin-Id into the log context, so review and
alert log lines can be traced back to the reviewer.
"""

from __future__ import annotations

import logging
import re
import time
import uuid
from typing import Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from backend.app.core.logging_config import log_context

logger = logging.getLogger(__name__)

_QUIET_PREFIXES = ("/docs", "/redoc", "/openapi", "/favicon", "/health/live")
_REQUEST_ID_RE = re.compile(r"[A-Za-z0-9._-]{1,64}")


def resolve_request_id(header_value: Optional[str]) -> str:
    if header_value and _REQUEST_ID_RE.fullmatch(header_value):
        return header_value
    return uuid.uuid4().hex[:16]


class RequestLoggingMiddleware(BaseHTTPMiddleware):

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = resolve_request_id(request.headers.get("X-Request-ID"))
        client_ip = request.client.host if request.client else "unknown"
        path = request.url.path
        admin_id = request.headers.get("X-Admin-Id")

        with log_context(
            request_id=request_id,
            client_ip=client_ip,
            method=request.method,
            admin_id=admin_id[:64] if admin_id else None,
        ):
            start = time.perf_counter()
            try:
                response = await call_next(request)
            except Exception:
                logger.exception(
                    "%s %s → 500 (%.1fms)",
                    request.method, path, (time.perf_counter() - start) * 1000,
                    extra={"status_code": 500, "endpoint": path},
                )
                raise

            duration_ms = (time.perf_counter() - start) * 1000
            response.headers["X-Request-ID"] = request_id
            response.headers["X-Process-Time"] = f"{duration_ms:.1f}ms"

            if not path.startswith(_QUIET_PREFIXES):
                logger.log(
                    logging.WARNING if response.status_code >= 400 else logging.INFO,
                    "%s %s → %d (%.1fms)",
                    request.method, path, response.status_code, duration_ms,
                    extra={
                        "duration_ms": round(duration_ms, 1),
                        "status_code": response.status_code,
                        "endpoint": path,
                    },
                )
        return response
