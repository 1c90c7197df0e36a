from __future__ import annotations

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.context import get_build_id
from app.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("app.request")


def _request_build_id(request: Request) -> str | None:
    build_id = request.path_params.get("build_id")
    return str(build_id) if build_id else get_build_id()


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        started = time.perf_counter()
        status_code = 500
        failed = True
        try:
            response = await call_next(request)
            status_code = response.status_code
            failed = False
        finally:
            duration_ms = round((time.perf_counter() - started) * 1000, 2)
            path = resolve_http_path_label(request)
            observe_http_request(method=request.method, path=path, status=status_code, duration=duration_ms / 1000)
            fields = {
                "method": request.method,
                "path": path,
                "status_code": status_code,
                "duration_ms": duration_ms,
                "build_id": _request_build_id(request),
            }
            if failed:
                logger.error("http.error", exc_info=True, extra=fields)
            else:
                logger.info("http.request", extra=fields)
        return response
