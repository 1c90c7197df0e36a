from dataclasses import dataclass
from typing import Any

from jose import JWTError, jwt
from starlette.requests import Request

from app.core.config import get_settings

ANONYMOUS = "anonymous"


@dataclass
class AuthUser:
    sub: str
    roles: list[str]
    manager_name: str | None = None


def _claims_from_header(request: Request) -> dict[str, Any] | None:
    auth_header = request.headers.get("authorization", "")
    if not auth_header.startswith("Bearer "):
        return None
    settings = get_settings()
    try:
        return jwt.decode(auth_header[len("Bearer ") :], settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None


async def get_current_user(request: Request) -> AuthUser:
    claims = _claims_from_header(request)
    if claims is None:
        # TODO: reject invalid tokens with 401 once the identity provider issues bookops role claims.
        return AuthUser(sub=ANONYMOUS, roles=["guest"])

    subject = str(claims.get("sub", ANONYMOUS))
    roles = claims.get("roles")
    if not isinstance(roles, list):
        roles = [roles] if isinstance(roles, str) else ["user"]
    manager_name = claims.get("manager_name")

    context = getattr(request.state, "context", None)
    if context is not None:
        context.user_id = subject
        region = claims.get("region")
        if isinstance(region, str) and region:
            context.region = region
        if manager_name and not context.manager_name:
            context.manager_name = str(manager_name)

    return AuthUser(
        sub=subject,
        roles=[str(role) for role in roles],
        manager_name=str(manager_name) if manager_name else None,
    )
