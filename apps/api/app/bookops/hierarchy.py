"""Manager hierarchy visibility.

Reps roll up to an FLM and an SLM by name. RevOps and leadership see every
rep; an SLM sees the reps whose ``slm`` is their manager name; an FLM sees the
reps whose ``flm`` is their manager name. Everyone else sees nothing.
"""

from __future__ import annotations

import uuid
from collections import defaultdict
from collections.abc import Iterable
from typing import Any

from sqlalchemy import ColumnElement, false, func, or_, select
from sqlalchemy.orm import Session

from app.bookops.models import SalesRep
from app.core.rbac import Capability, Role, has_capability


def _normalize(name: str | None) -> str | None:
    if name is None:
        return None
    cleaned = name.strip().lower()
    return cleaned or None


def visible_rep_ids(session: Session, actor_user: Any, build_id: uuid.UUID) -> set[str] | None:
    """Rep ids whose books the actor can see; None means unrestricted."""
    if has_capability(actor_user.role, Capability.VIEW_ALL_DATA):
        return None
    if not has_capability(actor_user.role, Capability.VIEW_OWN_HIERARCHY):
        return set()

    manager_name = _normalize(actor_user.manager_name)
    if manager_name is None:
        return set()

    column = SalesRep.slm if actor_user.role == Role.SLM else SalesRep.flm
    rows = session.scalars(
        select(SalesRep.rep_id).where(
            SalesRep.build_id == build_id,
            func.lower(func.trim(column)) == manager_name,
        )
    ).all()
    return set(rows)


def can_see_owner(visible: set[str] | None, owner_id: str | None) -> bool:
    if visible is None:
        return True
    return owner_id is not None and owner_id in visible


def owner_filter(visible: set[str] | None, *columns: Any) -> ColumnElement[bool] | None:
    """SQL clause restricting rows to visible owners, or None when unrestricted."""
    if visible is None:
        return None
    if not visible:
        return false()
    return or_(*(column.in_(visible) for column in columns))


def flm_slm_conflicts(reps: Iterable[Any]) -> dict[str, list[str]]:
    """FLMs that roll up to more than one SLM."""
    slms_by_flm: dict[str, set[str]] = defaultdict(set)
    for rep in reps:
        flm = (getattr(rep, "flm", None) or "").strip()
        slm = (getattr(rep, "slm", None) or "").strip()
        if flm and slm:
            slms_by_flm[flm].add(slm)
    return {flm: sorted(slms) for flm, slms in slms_by_flm.items() if len(slms) > 1}
