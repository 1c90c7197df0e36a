from __future__ import annotations

import uuid
from collections import defaultdict
from collections.abc import Iterable

from sqlalchemy import and_, func, select
from sqlalchemy.orm import Session

from app.bookops.hierarchy import can_see_owner
from app.bookops.models import PENDING_STATUSES, ManagerReassignment
from app.bookops.schemas import ConflictRead


def same_build_conflict_accounts(session: Session, build_id: uuid.UUID) -> set[str]:
    """Accounts with two or more pending proposals in the build."""
    rows = session.execute(
        select(ManagerReassignment.sfdc_account_id)
        .where(
            and_(
                ManagerReassignment.build_id == build_id,
                ManagerReassignment.approval_status.in_(PENDING_STATUSES),
            )
        )
        .group_by(ManagerReassignment.sfdc_account_id)
        .having(func.count(ManagerReassignment.id) > 1)
    ).all()
    return {row[0] for row in rows}


def cross_build_conflicts(
    session: Session,
    build_id: uuid.UUID,
    sfdc_account_ids: Iterable[str] | None = None,
) -> dict[str, set[uuid.UUID]]:
    """Map of account id -> other builds that hold a pending proposal for it.

    Only accounts that also have a pending proposal in ``build_id`` are reported.
    """
    local_stmt = select(ManagerReassignment.sfdc_account_id).where(
        and_(
            ManagerReassignment.build_id == build_id,
            ManagerReassignment.approval_status.in_(PENDING_STATUSES),
        )
    )
    if sfdc_account_ids is not None:
        wanted = set(sfdc_account_ids)
        if not wanted:
            return {}
        local_stmt = local_stmt.where(ManagerReassignment.sfdc_account_id.in_(wanted))
    local_accounts = set(session.scalars(local_stmt).all())
    if not local_accounts:
        return {}

    rows = session.execute(
        select(ManagerReassignment.sfdc_account_id, ManagerReassignment.build_id).where(
            and_(
                ManagerReassignment.build_id != build_id,
                ManagerReassignment.sfdc_account_id.in_(local_accounts),
                ManagerReassignment.approval_status.in_(PENDING_STATUSES),
            )
        )
    ).all()
    result: dict[str, set[uuid.UUID]] = defaultdict(set)
    for sfdc_account_id, other_build_id in rows:
        result[sfdc_account_id].add(other_build_id)
    return dict(result)


def detect_conflicts(session: Session, build_id: uuid.UUID, visible: set[str] | None) -> list[ConflictRead]:
    pending = session.scalars(
        select(ManagerReassignment)
        .where(
            and_(
                ManagerReassignment.build_id == build_id,
                ManagerReassignment.approval_status.in_(PENDING_STATUSES),
            )
        )
        .order_by(ManagerReassignment.sfdc_account_id, ManagerReassignment.created_at)
    ).all()
    by_account: dict[str, list[ManagerReassignment]] = defaultdict(list)
    for proposal in pending:
        if can_see_owner(visible, proposal.current_owner_id):
            by_account[proposal.sfdc_account_id].append(proposal)

    cross = cross_build_conflicts(session, build_id, by_account.keys())
    conflicts: list[ConflictRead] = []
    for sfdc_account_id, proposals in by_account.items():
        if len(proposals) > 1:
            conflicts.append(
                ConflictRead(
                    sfdc_account_id=sfdc_account_id,
                    account_name=proposals[0].account_name,
                    conflict_type="same_build",
                    proposal_ids=[item.id for item in proposals],
                    proposed_owner_ids=[item.proposed_owner_id for item in proposals],
                )
            )
        if sfdc_account_id in cross:
            conflicts.append(
                ConflictRead(
                    sfdc_account_id=sfdc_account_id,
                    account_name=proposals[0].account_name,
                    conflict_type="cross_build",
                    proposal_ids=[item.id for item in proposals],
                    proposed_owner_ids=[item.proposed_owner_id for item in proposals],
                    other_build_ids=sorted(cross[sfdc_account_id], key=str),
                )
            )
    return conflicts
