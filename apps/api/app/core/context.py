import re
from dataclasses import dataclass

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.context import reset_build_id, set_build_id

_BUILD_PATH_RE = re.compile(r"/builds/([0-9a-fA-F-]{36})(?:/|$)")


@dataclass
class RequestContext:
    request_id: str
    correlation_id: str
    user_id: str | None
    build_id: str | None
    manager_name: str | None
    region: str


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = getattr(request.state, "correlation_id", None)
        match = _BUILD_PATH_RE.search(request.url.path)
        build_id = match.group(1).lower() if match else None
        request.state.context = RequestContext(
            request_id=correlation_id or "",
            correlation_id=correlation_id or "",
            user_id=None,
            build_id=build_id,
            manager_name=request.headers.get("x-manager-name"),
            region=request.headers.get("x-region", "global"),
        )
        token = set_build_id(build_id)
        try:
            response = await call_next(request)
        finally:
            reset_build_id(token)
        response.headers["x-request-id"] = request.state.context.request_id
        return response
