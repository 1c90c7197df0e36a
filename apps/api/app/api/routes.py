from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from app.bookops.api import routers as bookops_routers
from app.core.auth import AuthUser, get_current_user
from app.core.config import get_settings
from app.core.rbac import Role, capabilities_for, resolve_role
from app.metrics import generate_metrics_payload, metrics_content_type

router = APIRouter()
for bookops_router in bookops_routers:
    router.include_router(bookops_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/me", tags=["auth"])
async def me(user: AuthUser = Depends(get_current_user)) -> dict[str, str | list[str] | None]:
    role = resolve_role(user.roles)
    return {
        "sub": user.sub,
        "roles": user.roles,
        "role": role.value,
        "manager_name": user.manager_name,
        "capabilities": sorted(capability.value for capability in capabilities_for(role)),
    }


@router.get("/metrics", tags=["system"])
def metrics(user: AuthUser = Depends(get_current_user)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if "system.metrics.read" not in user.roles and resolve_role(user.roles) is not Role.REVOPS:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Missing permission: system.metrics.read")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
