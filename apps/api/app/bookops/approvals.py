"""Reassignment proposals and their approval chain.

Standard builds route ``pending_slm -> pending_revops -> approved``; EMEA builds
start at ``pending_flm`` instead, and an FLM proposing on an EMEA build goes
straight to ``pending_revops``. Managers never approve their own proposals.
RevOps may approve from either pending state.
Any pending proposal can be rejected. Final approval writes the new owner onto
the account and its opportunities and rejects every other pending proposal
for the same account in the same transaction.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any

from fastapi import HTTPException, status
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from sqlalchemy import Select, and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app import audit
from app.bookops.calculations import capacity_warnings, effective_arr, effective_owner
from app.bookops.conflicts import cross_build_conflicts, same_build_conflict_accounts
from app.bookops.hierarchy import can_see_owner, visible_rep_ids
from app.bookops.models import (
    PENDING_STATUSES,
    Account,
    Build,
    ManagerReassignment,
    Opportunity,
    SalesRep,
    utcnow,
)
from app.bookops.schemas import (
    BulkApproveResponse,
    ReassignmentCreate,
    ReassignmentDecision,
    ReassignmentRead,
    ReassignmentReject,
)
from app.bookops.service import (
    ActorUser,
    build_event,
    ensure_build_mutable,
    get_build_or_404,
    publish_all,
    set_build_status,
)
from app.core.rbac import Capability, Role
from app.metrics import observe_proposal_transition
from app.otel import set_span_attributes

logger = logging.getLogger("app.bookops.approvals")
tracer = trace.get_tracer("app.bookops.approvals")

SUPERSEDED_TAG = "[Superseded]"
REJECTION_TAGS = {
    Role.REVOPS: "[RevOps Rejected]",
    Role.SLM: "[SLM Rejected]",
    Role.FLM: "[FLM Rejected]",
}


def is_emea(build: Build) -> bool:
    return (build.region or "").strip().upper() == "EMEA"


def first_level_status(build: Build) -> str:
    return "pending_flm" if is_emea(build) else "pending_slm"


def first_level_role(build: Build) -> Role:
    return Role.FLM if is_emea(build) else Role.SLM


def initial_status(build: Build, proposer_role: Role, source: str) -> str:
    if source == "engine":
        return first_level_status(build)
    if proposer_role in (Role.SLM, Role.REVOPS):
        return "pending_revops"
    if proposer_role == first_level_role(build):
        # the proposer already holds the first-level approval
        return "pending_revops"
    return first_level_status(build)


def append_rationale(rationale: str | None, addition: str) -> str:
    if rationale and rationale.strip():
        return f"{rationale.strip()}\n{addition}"
    return addition


class ApprovalService:
    entity_type = "bookops.reassignment"

    def create_reassignment(
        self,
        session: Session,
        actor_user: ActorUser,
        build_id: uuid.UUID,
        dto: ReassignmentCreate,
    ) -> ReassignmentRead:
        build = get_build_or_404(session, build_id)
        ensure_build_mutable(build)
        account = session.scalar(
            select(Account).where(
                and_(Account.build_id == build_id, Account.sfdc_account_id == dto.sfdc_account_id)
            )
        )
        if account is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="account not found")

        current_owner_id, _ = effective_owner(account)
        visible = visible_rep_ids(session, actor_user, build_id)
        if not can_see_owner(visible, current_owner_id):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="account not found")

        rep = session.scalar(
            select(SalesRep).where(and_(SalesRep.build_id == build_id, SalesRep.rep_id == dto.proposed_owner_id))
        )
        envelopes: list[dict[str, Any]] = []
        proposal = self.stage_proposal(
            session,
            actor_user,
            build,
            account,
            rep,
            rationale=dto.rationale,
            source="manager",
            rule_applied=None,
            envelopes=envelopes,
        )
        if build.status in ("IMPORTED", "ASSIGNED"):
            status_event = set_build_status(session, actor_user, build, "IN_REVIEW")
            if status_event is not None:
                envelopes.append(status_event)

        session.commit()
        publish_all(envelopes)
        observe_proposal_transition("new", proposal.approval_status)
        logger.info(
            "proposal.created",
            extra={
                "proposal_id": str(proposal.id),
                "build_id": str(build_id),
                "sfdc_account_id": proposal.sfdc_account_id,
                "status": proposal.approval_status,
                "user_id": actor_user.user_id,
            },
        )
        return self._to_read_with_flags(session, proposal)

    def stage_proposal(
        self,
        session: Session,
        actor_user: ActorUser,
        build: Build,
        account: Account,
        rep: SalesRep | None,
        *,
        rationale: str | None,
        source: str,
        rule_applied: str | None,
        envelopes: list[dict[str, Any]],
    ) -> ManagerReassignment:
        """Validate and insert a proposal without committing."""
        if account.exclude_from_reassignment:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="account is locked")
        if self._approved_exists(session, build.id, account.sfdc_account_id):
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="account already has an approved reassignment",
            )
        if rep is None:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="proposed owner not found in build")

        current_owner_id, current_owner_name = effective_owner(account)
        if rep.rep_id == current_owner_id:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="proposed owner is already the current owner",
            )

        projected_arr = self._projected_arr(session, build.id, rep.rep_id, exclude_account_id=account.id)
        projected_arr += effective_arr(account)
        warnings = capacity_warnings(
            rep_name=rep.name,
            projected_arr=projected_arr,
            target_arr=build.customer_target_arr,
            max_arr=build.customer_max_arr,
        )

        proposal = ManagerReassignment(
            build_id=build.id,
            sfdc_account_id=account.sfdc_account_id,
            account_name=account.account_name,
            current_owner_id=current_owner_id,
            current_owner_name=current_owner_name,
            proposed_owner_id=rep.rep_id,
            proposed_owner_name=rep.name,
            rationale=rationale,
            approval_status=initial_status(build, actor_user.role, source),
            manager_user_id=actor_user.user_id,
            proposer_role=actor_user.role.value,
            source=source,
            rule_applied=rule_applied,
            capacity_warnings=warnings or None,
        )
        session.add(proposal)
        session.flush()

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(proposal.id),
            action="create",
            before=None,
            after=self._snapshot(proposal),
            correlation_id=actor_user.correlation_id,
            build_id=str(build.id),
        )
        envelopes.append(
            build_event(
                actor_user,
                "bookops.proposal.created",
                build.id,
                {
                    "proposal_id": str(proposal.id),
                    "build_name": build.name,
                    "sfdc_account_id": proposal.sfdc_account_id,
                    "account_name": proposal.account_name,
                    "proposed_owner_name": proposal.proposed_owner_name,
                    "approval_status": proposal.approval_status,
                    "source": source,
                    "capacity_warnings": warnings,
                },
            )
        )
        return proposal

    def list_reassignments(
        self,
        session: Session,
        actor_user: ActorUser,
        build_id: uuid.UUID,
        *,
        status_filter: str | None = None,
        sfdc_account_id: str | None = None,
    ) -> list[ReassignmentRead]:
        get_build_or_404(session, build_id)
        stmt: Select[tuple[ManagerReassignment]] = select(ManagerReassignment).where(
            ManagerReassignment.build_id == build_id
        )
        visible = visible_rep_ids(session, actor_user, build_id)
        if visible is not None:
            conditions = [ManagerReassignment.manager_user_id == actor_user.user_id]
            if visible:
                conditions.append(ManagerReassignment.current_owner_id.in_(visible))
            stmt = stmt.where(or_(*conditions))
        if status_filter == "pending":
            stmt = stmt.where(ManagerReassignment.approval_status.in_(PENDING_STATUSES))
        elif status_filter:
            stmt = stmt.where(ManagerReassignment.approval_status == status_filter)
        if sfdc_account_id:
            stmt = stmt.where(ManagerReassignment.sfdc_account_id == sfdc_account_id)

        rows = session.scalars(stmt.order_by(ManagerReassignment.created_at, ManagerReassignment.id)).all()
        same_build = same_build_conflict_accounts(session, build_id)
        cross = cross_build_conflicts(session, build_id, {row.sfdc_account_id for row in rows})
        return [self._to_read(row, same_build, cross) for row in rows]

    def get_reassignment(self, session: Session, actor_user: ActorUser, proposal_id: uuid.UUID) -> ReassignmentRead:
        proposal = self._get_visible(session, actor_user, proposal_id)
        return self._to_read_with_flags(session, proposal)

    def approve(
        self,
        session: Session,
        actor_user: ActorUser,
        proposal_id: uuid.UUID,
        dto: ReassignmentDecision,
    ) -> ReassignmentRead:
        with tracer.start_as_current_span("bookops.proposal.approve") as span:
            set_span_attributes(span, proposal_id=str(proposal_id), user_id=actor_user.user_id, role=actor_user.role.value)
            try:
                proposal = self._get_visible(session, actor_user, proposal_id)
                build = get_build_or_404(session, proposal.build_id)
                ensure_build_mutable(build)
                from_status = proposal.approval_status

                envelopes: list[dict[str, Any]] = []
                if self._is_final_step(actor_user, build, proposal):
                    superseded = self.stage_final_approval(
                        session, actor_user, build, proposal, expected_row_version=dto.row_version, envelopes=envelopes
                    )
                else:
                    superseded = []
                    self._stage_first_level_approval(
                        session, actor_user, build, proposal, expected_row_version=dto.row_version, envelopes=envelopes
                    )
                session.commit()
            except HTTPException as exc:
                span.set_status(Status(StatusCode.ERROR, str(exc.detail)))
                raise

            publish_all(envelopes)
            session.refresh(proposal)
            observe_proposal_transition(from_status, proposal.approval_status)
            for sibling in superseded:
                observe_proposal_transition(sibling["from_status"], "rejected")
            set_span_attributes(span, to_status=proposal.approval_status, superseded_count=len(superseded))
            logger.info(
                "proposal.approved",
                extra={
                    "proposal_id": str(proposal.id),
                    "build_id": str(proposal.build_id),
                    "sfdc_account_id": proposal.sfdc_account_id,
                    "status": proposal.approval_status,
                    "user_id": actor_user.user_id,
                },
            )
            return self._to_read_with_flags(session, proposal)

    def reject(
        self,
        session: Session,
        actor_user: ActorUser,
        proposal_id: uuid.UUID,
        dto: ReassignmentReject,
    ) -> ReassignmentRead:
        with tracer.start_as_current_span("bookops.proposal.reject") as span:
            set_span_attributes(span, proposal_id=str(proposal_id), user_id=actor_user.user_id, role=actor_user.role.value)
            proposal = self._get_visible(session, actor_user, proposal_id)
            build = get_build_or_404(session, proposal.build_id)
            ensure_build_mutable(build)
            from_status = proposal.approval_status
            if from_status not in PENDING_STATUSES:
                raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="reassignment is not pending")
            if not self._can_decide(actor_user, build, proposal):
                raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="not allowed to reject at this stage")

            before = self._snapshot(proposal)
            tag = REJECTION_TAGS.get(actor_user.role, "[Rejected]")
            reason = (dto.reason or "").strip()
            rejected_at = utcnow()
            result = session.execute(
                update(ManagerReassignment)
                .where(
                    and_(
                        ManagerReassignment.id == proposal.id,
                        ManagerReassignment.row_version == dto.row_version,
                        ManagerReassignment.approval_status == from_status,
                    )
                )
                .values(
                    approval_status="rejected",
                    rejected_by=actor_user.user_id,
                    rejected_at=rejected_at,
                    rationale=append_rationale(proposal.rationale, f"{tag} {reason}" if reason else tag),
                    updated_at=rejected_at,
                    row_version=ManagerReassignment.row_version + 1,
                )
            )
            if result.rowcount == 0:
                session.rollback()
                span.set_status(Status(StatusCode.ERROR, "row_version conflict"))
                raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="row_version conflict")

            session.expire(proposal)
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=str(proposal.id),
                action="reject",
                before=before,
                after=self._snapshot(proposal),
                correlation_id=actor_user.correlation_id,
                build_id=str(build.id),
            )
            envelope = build_event(
                actor_user,
                "bookops.proposal.rejected",
                build.id,
                {
                    "proposal_id": str(proposal.id),
                    "build_name": build.name,
                    "sfdc_account_id": proposal.sfdc_account_id,
                    "account_name": proposal.account_name,
                    "recipient_user_id": proposal.manager_user_id,
                    "reason": reason or None,
                    "rejected_by": actor_user.user_id,
                },
            )
            session.commit()
            publish_all([envelope])
            observe_proposal_transition(from_status, "rejected")
            set_span_attributes(span, to_status="rejected")
            logger.info(
                "proposal.rejected",
                extra={
                    "proposal_id": str(proposal.id),
                    "build_id": str(build.id),
                    "sfdc_account_id": proposal.sfdc_account_id,
                    "status": "rejected",
                    "user_id": actor_user.user_id,
                },
            )
            return self._to_read_with_flags(session, proposal)

    def approve_all(self, session: Session, actor_user: ActorUser, build_id: uuid.UUID) -> BulkApproveResponse:
        build = get_build_or_404(session, build_id)
        ensure_build_mutable(build)
        if actor_user.role == Role.REVOPS:
            queue_status = "pending_revops"
        elif actor_user.role == first_level_role(build):
            queue_status = first_level_status(build)
        else:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="no approval queue for this role")

        queue = self.list_reassignments(session, actor_user, build_id, status_filter=queue_status)
        approved: list[ReassignmentRead] = []
        failed: list[dict[str, Any]] = []
        for item in queue:
            current = session.get(ManagerReassignment, item.id)
            if current is None or current.approval_status != queue_status:
                failed.append({"id": str(item.id), "status_code": status.HTTP_409_CONFLICT, "detail": "no longer pending"})
                continue
            try:
                approved.append(
                    self.approve(session, actor_user, item.id, ReassignmentDecision(row_version=current.row_version))
                )
            except HTTPException as exc:
                failed.append({"id": str(item.id), "status_code": exc.status_code, "detail": exc.detail})
        return BulkApproveResponse(approved=approved, failed=failed)

    def stage_final_approval(
        self,
        session: Session,
        actor_user: ActorUser,
        build: Build,
        proposal: ManagerReassignment,
        *,
        expected_row_version: int,
        envelopes: list[dict[str, Any]],
    ) -> list[dict[str, Any]]:
        """Approve, write the new owner and supersede pending siblings without committing.

        Returns one ``{"id", "from_status", "manager_user_id"}`` entry per superseded sibling.
        """
        from_status = proposal.approval_status
        if from_status not in PENDING_STATUSES:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="reassignment is not pending")
        if self._approved_exists(session, build.id, proposal.sfdc_account_id):
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="account already has an approved reassignment",
            )
        account = session.scalar(
            select(Account)
            .where(and_(Account.build_id == build.id, Account.sfdc_account_id == proposal.sfdc_account_id))
            .execution_options(populate_existing=True)
        )
        if account is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="account not found")

        before = self._snapshot(proposal)
        approved_at = utcnow()
        result = session.execute(
            update(ManagerReassignment)
            .where(
                and_(
                    ManagerReassignment.id == proposal.id,
                    ManagerReassignment.row_version == expected_row_version,
                    ManagerReassignment.approval_status == from_status,
                )
            )
            .values(
                approval_status="approved",
                revops_approved_by=actor_user.user_id,
                revops_approved_at=approved_at,
                updated_at=approved_at,
                row_version=ManagerReassignment.row_version + 1,
            )
        )
        if result.rowcount == 0:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="row_version conflict")

        account_result = session.execute(
            update(Account)
            .where(and_(Account.id == account.id, Account.row_version == account.row_version))
            .values(
                new_owner_id=proposal.proposed_owner_id,
                new_owner_name=proposal.proposed_owner_name,
                updated_at=approved_at,
                row_version=Account.row_version + 1,
            )
        )
        if account_result.rowcount == 0:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="account row_version conflict")

        session.execute(
            update(Opportunity)
            .where(and_(Opportunity.build_id == build.id, Opportunity.sfdc_account_id == proposal.sfdc_account_id))
            .values(
                new_owner_id=proposal.proposed_owner_id,
                new_owner_name=proposal.proposed_owner_name,
                updated_at=approved_at,
            )
        )

        superseded = self._stage_supersede(session, actor_user, build, proposal, approved_at, envelopes)
        try:
            session.flush()
        except IntegrityError:
            session.rollback()
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="account already has an approved reassignment",
            ) from None

        session.expire(proposal)
        session.expire(account)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(proposal.id),
            action="approve",
            before=before,
            after=self._snapshot(proposal),
            correlation_id=actor_user.correlation_id,
            build_id=str(build.id),
        )
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type="bookops.account",
            entity_id=str(account.id),
            action="owner_change",
            before={"new_owner_id": None},
            after={"new_owner_id": proposal.proposed_owner_id, "new_owner_name": proposal.proposed_owner_name},
            correlation_id=actor_user.correlation_id,
            build_id=str(build.id),
        )
        envelopes.append(
            build_event(
                actor_user,
                "bookops.proposal.approved",
                build.id,
                {
                    "proposal_id": str(proposal.id),
                    "build_name": build.name,
                    "sfdc_account_id": proposal.sfdc_account_id,
                    "account_name": proposal.account_name,
                    "proposed_owner_id": proposal.proposed_owner_id,
                    "proposed_owner_name": proposal.proposed_owner_name,
                    "recipient_user_id": proposal.manager_user_id,
                    "superseded_ids": [item["id"] for item in superseded],
                    "bypassed_first_level": from_status != "pending_revops",
                    "source": proposal.source,
                },
            )
        )
        return superseded

    def _stage_first_level_approval(
        self,
        session: Session,
        actor_user: ActorUser,
        build: Build,
        proposal: ManagerReassignment,
        *,
        expected_row_version: int,
        envelopes: list[dict[str, Any]],
    ) -> None:
        from_status = proposal.approval_status
        before = self._snapshot(proposal)
        approved_at = utcnow()
        result = session.execute(
            update(ManagerReassignment)
            .where(
                and_(
                    ManagerReassignment.id == proposal.id,
                    ManagerReassignment.row_version == expected_row_version,
                    ManagerReassignment.approval_status == from_status,
                )
            )
            .values(
                approval_status="pending_revops",
                slm_approved_by=actor_user.user_id,
                slm_approved_at=approved_at,
                updated_at=approved_at,
                row_version=ManagerReassignment.row_version + 1,
            )
        )
        if result.rowcount == 0:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="row_version conflict")

        session.expire(proposal)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(proposal.id),
            action="approve_first_level",
            before=before,
            after=self._snapshot(proposal),
            correlation_id=actor_user.correlation_id,
            build_id=str(build.id),
        )
        envelopes.append(
            build_event(
                actor_user,
                "bookops.proposal.advanced",
                build.id,
                {
                    "proposal_id": str(proposal.id),
                    "build_name": build.name,
                    "sfdc_account_id": proposal.sfdc_account_id,
                    "account_name": proposal.account_name,
                    "approval_status": "pending_revops",
                },
            )
        )

    def _stage_supersede(
        self,
        session: Session,
        actor_user: ActorUser,
        build: Build,
        approved: ManagerReassignment,
        decided_at: datetime,
        envelopes: list[dict[str, Any]],
    ) -> list[dict[str, Any]]:
        siblings = session.scalars(
            select(ManagerReassignment)
            .where(
                and_(
                    ManagerReassignment.build_id == build.id,
                    ManagerReassignment.sfdc_account_id == approved.sfdc_account_id,
                    ManagerReassignment.id != approved.id,
                    ManagerReassignment.approval_status.in_(PENDING_STATUSES),
                )
            )
            .execution_options(populate_existing=True)
        ).all()
        note = f"{SUPERSEDED_TAG} Superseded by approved reassignment {approved.id}"
        superseded: list[dict[str, Any]] = []
        for sibling in siblings:
            from_status = sibling.approval_status
            result = session.execute(
                update(ManagerReassignment)
                .where(
                    and_(
                        ManagerReassignment.id == sibling.id,
                        ManagerReassignment.row_version == sibling.row_version,
                        ManagerReassignment.approval_status == from_status,
                    )
                )
                .values(
                    approval_status="rejected",
                    rejected_by=actor_user.user_id,
                    rejected_at=decided_at,
                    superseded_by_id=approved.id,
                    rationale=append_rationale(sibling.rationale, note),
                    updated_at=decided_at,
                    row_version=ManagerReassignment.row_version + 1,
                )
            )
            if result.rowcount == 0:
                session.rollback()
                raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="sibling reassignment changed concurrently")

            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=str(sibling.id),
                action="supersede",
                before={"approval_status": from_status},
                after={"approval_status": "rejected", "superseded_by_id": str(approved.id)},
                correlation_id=actor_user.correlation_id,
                build_id=str(build.id),
            )
            envelopes.append(
                build_event(
                    actor_user,
                    "bookops.proposal.superseded",
                    build.id,
                    {
                        "proposal_id": str(sibling.id),
                        "superseded_by_id": str(approved.id),
                        "build_name": build.name,
                        "sfdc_account_id": sibling.sfdc_account_id,
                        "account_name": sibling.account_name,
                        "recipient_user_id": sibling.manager_user_id,
                        "proposed_owner_name": sibling.proposed_owner_name,
                        "approved_owner_name": approved.proposed_owner_name,
                    },
                )
            )
            superseded.append(
                {"id": str(sibling.id), "from_status": from_status, "manager_user_id": sibling.manager_user_id}
            )
        return superseded

    def _is_final_step(self, actor_user: ActorUser, build: Build, proposal: ManagerReassignment) -> bool:
        if proposal.approval_status not in PENDING_STATUSES:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="reassignment is not pending")
        if actor_user.can(Capability.FINALIZE_REASSIGNMENTS):
            return True
        if proposal.approval_status == "pending_revops":
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="RevOps approval required")
        if not self._can_decide(actor_user, build, proposal):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="not allowed to approve at this stage")
        if proposal.manager_user_id == actor_user.user_id:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="cannot approve your own proposal")
        return False

    def _can_decide(self, actor_user: ActorUser, build: Build, proposal: ManagerReassignment) -> bool:
        if actor_user.can(Capability.FINALIZE_REASSIGNMENTS):
            return True
        if not actor_user.can(Capability.APPROVE_REASSIGNMENTS):
            return False
        return proposal.approval_status == first_level_status(build) and actor_user.role == first_level_role(build)

    def _get_visible(self, session: Session, actor_user: ActorUser, proposal_id: uuid.UUID) -> ManagerReassignment:
        proposal = session.get(ManagerReassignment, proposal_id)
        if proposal is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="reassignment not found")
        if proposal.manager_user_id == actor_user.user_id:
            return proposal
        visible = visible_rep_ids(session, actor_user, proposal.build_id)
        if not can_see_owner(visible, proposal.current_owner_id):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="reassignment not found")
        return proposal

    def _approved_exists(self, session: Session, build_id: uuid.UUID, sfdc_account_id: str) -> bool:
        count = session.scalar(
            select(func.count(ManagerReassignment.id)).where(
                and_(
                    ManagerReassignment.build_id == build_id,
                    ManagerReassignment.sfdc_account_id == sfdc_account_id,
                    ManagerReassignment.approval_status == "approved",
                )
            )
        )
        return bool(count)

    def _projected_arr(
        self,
        session: Session,
        build_id: uuid.UUID,
        rep_id: str,
        *,
        exclude_account_id: uuid.UUID | None = None,
    ) -> float:
        stmt = select(Account).where(
            and_(
                Account.build_id == build_id,
                func.coalesce(Account.new_owner_id, Account.owner_id) == rep_id,
            )
        )
        if exclude_account_id is not None:
            stmt = stmt.where(Account.id != exclude_account_id)
        return sum(effective_arr(account) for account in session.scalars(stmt).all())

    def _snapshot(self, proposal: ManagerReassignment) -> dict[str, Any]:
        return {
            "approval_status": proposal.approval_status,
            "proposed_owner_id": proposal.proposed_owner_id,
            "rationale": proposal.rationale,
            "row_version": proposal.row_version,
        }

    def _to_read_with_flags(self, session: Session, proposal: ManagerReassignment) -> ReassignmentRead:
        same_build = same_build_conflict_accounts(session, proposal.build_id)
        cross = cross_build_conflicts(session, proposal.build_id, [proposal.sfdc_account_id])
        return self._to_read(proposal, same_build, cross)

    def _to_read(
        self,
        proposal: ManagerReassignment,
        same_build: set[str],
        cross: dict[str, set[uuid.UUID]],
    ) -> ReassignmentRead:
        pending = proposal.approval_status in PENDING_STATUSES
        return ReassignmentRead.model_validate(proposal).model_copy(
            update={
                "has_conflict": pending and proposal.sfdc_account_id in same_build,
                "has_cross_build_conflict": pending and proposal.sfdc_account_id in cross,
            }
        )
