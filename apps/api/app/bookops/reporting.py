from __future__ import annotations

import uuid
from collections import defaultdict
from typing import Any

from sqlalchemy import Select, and_, func, select
from sqlalchemy.orm import Session

from app.bookops.calculations import effective_arr, effective_owner, is_customer
from app.bookops.conflicts import cross_build_conflicts, same_build_conflict_accounts
from app.bookops.hierarchy import owner_filter, visible_rep_ids
from app.bookops.models import (
    PENDING_STATUSES,
    Account,
    ManagerNote,
    ManagerReassignment,
    Opportunity,
    SalesRep,
)
from app.bookops.schemas import BuildSummaryRead, ManagerSummaryRead, OwnerReportResponse, OwnerRollupRead
from app.bookops.service import ActorUser, get_build_or_404, require_capability
from app.core.rbac import Capability


def _rollup(accounts: list[Account], *, after: bool) -> list[OwnerRollupRead]:
    buckets: dict[str | None, dict[str, Any]] = {}
    for account in accounts:
        owner_id, owner_name = effective_owner(account) if after else (account.owner_id, account.owner_name)
        bucket = buckets.setdefault(
            owner_id,
            {
                "owner_id": owner_id,
                "owner_name": owner_name,
                "account_count": 0,
                "customer_count": 0,
                "prospect_count": 0,
                "total_arr": 0.0,
                "total_atr": 0.0,
            },
        )
        bucket["account_count"] += 1
        if is_customer(account):
            bucket["customer_count"] += 1
        else:
            bucket["prospect_count"] += 1
        bucket["total_arr"] += effective_arr(account)
        bucket["total_atr"] += float(account.atr or 0.0)
    ordered = sorted(buckets.values(), key=lambda item: (-item["total_arr"], item["owner_id"] or ""))
    return [OwnerRollupRead(**item) for item in ordered]


class ReportingService:
    """Read-only rollups over a build."""

    def owner_report(self, session: Session, actor_user: ActorUser, build_id: uuid.UUID) -> OwnerReportResponse:
        require_capability(actor_user, Capability.VIEW_REPORTS)
        get_build_or_404(session, build_id)
        stmt: Select[tuple[Account]] = select(Account).where(Account.build_id == build_id)
        clause = owner_filter(visible_rep_ids(session, actor_user, build_id), Account.owner_id, Account.new_owner_id)
        if clause is not None:
            stmt = stmt.where(clause)
        accounts = list(session.scalars(stmt).all())
        return OwnerReportResponse(before=_rollup(accounts, after=False), after=_rollup(accounts, after=True))

    def manager_summary(self, session: Session, actor_user: ActorUser, build_id: uuid.UUID) -> list[ManagerSummaryRead]:
        require_capability(actor_user, Capability.VIEW_REPORTS)
        get_build_or_404(session, build_id)
        restricted = not actor_user.can(Capability.VIEW_ALL_DATA)

        proposal_stmt = select(ManagerReassignment.manager_user_id, ManagerReassignment.approval_status).where(
            ManagerReassignment.build_id == build_id
        )
        note_stmt = select(ManagerNote.manager_user_id, ManagerNote.status, ManagerNote.category).where(
            ManagerNote.build_id == build_id
        )
        if restricted:
            proposal_stmt = proposal_stmt.where(ManagerReassignment.manager_user_id == actor_user.user_id)
            note_stmt = note_stmt.where(ManagerNote.manager_user_id == actor_user.user_id)

        summaries: dict[str, dict[str, Any]] = defaultdict(
            lambda: {
                "total_proposals": 0,
                "pending": 0,
                "approved": 0,
                "rejected": 0,
                "total_notes": 0,
                "open_notes": 0,
                "concerns": 0,
            }
        )
        for manager_user_id, approval_status in session.execute(proposal_stmt).all():
            summary = summaries[manager_user_id]
            summary["total_proposals"] += 1
            if approval_status in PENDING_STATUSES:
                summary["pending"] += 1
            elif approval_status == "approved":
                summary["approved"] += 1
            elif approval_status == "rejected":
                summary["rejected"] += 1
        for manager_user_id, note_status, category in session.execute(note_stmt).all():
            summary = summaries[manager_user_id]
            summary["total_notes"] += 1
            if note_status == "open":
                summary["open_notes"] += 1
            if category == "concern":
                summary["concerns"] += 1

        return [
            ManagerSummaryRead(manager_user_id=manager_user_id, **values)
            for manager_user_id, values in sorted(summaries.items())
        ]

    def build_summary(self, session: Session, actor_user: ActorUser, build_id: uuid.UUID) -> BuildSummaryRead:
        require_capability(actor_user, Capability.VIEW_REPORTS)
        build = get_build_or_404(session, build_id)

        accounts = list(session.scalars(select(Account).where(Account.build_id == build_id)).all())
        opportunity_count = session.scalar(
            select(func.count()).select_from(Opportunity).where(Opportunity.build_id == build_id)
        )
        rep_count = session.scalar(select(func.count()).select_from(SalesRep).where(SalesRep.build_id == build_id))
        status_rows = session.execute(
            select(ManagerReassignment.approval_status, func.count(ManagerReassignment.id))
            .where(ManagerReassignment.build_id == build_id)
            .group_by(ManagerReassignment.approval_status)
        ).all()
        pending_accounts = session.scalars(
            select(ManagerReassignment.sfdc_account_id)
            .where(
                and_(
                    ManagerReassignment.build_id == build_id,
                    ManagerReassignment.approval_status.in_(PENDING_STATUSES),
                )
            )
            .distinct()
        ).all()

        return BuildSummaryRead(
            build_id=build.id,
            status=build.status,
            account_count=len(accounts),
            customer_count=sum(1 for account in accounts if is_customer(account)),
            opportunity_count=opportunity_count or 0,
            rep_count=rep_count or 0,
            assigned_account_count=sum(1 for account in accounts if account.new_owner_id),
            proposals_by_status={row[0]: row[1] for row in status_rows},
            same_build_conflicts=len(same_build_conflict_accounts(session, build_id)),
            cross_build_conflicts=len(cross_build_conflicts(session, build_id, pending_accounts)),
        )
