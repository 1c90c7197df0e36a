"""Rule-based owner assignment.

``evaluate`` is a pure function over accounts and reps: it walks parent and
standalone accounts by descending ARR, tries the configured rules in order and
takes the first rule with a non-empty candidate set. Child accounts follow their
parent. ``AssignmentEngine.generate`` wraps it for a build without side effects;
``AssignmentEngine.apply`` persists the changed owners as engine proposals.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections import Counter
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from fastapi import HTTPException, status
from opentelemetry import trace
from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from app.bookops import geography
from app.bookops.approvals import ApprovalService
from app.bookops.calculations import effective_arr, effective_owner
from app.bookops.models import PENDING_STATUSES, Account, ManagerReassignment, SalesRep
from app.bookops.rules import (
    ARR_BALANCE,
    CONTINUITY,
    GEOGRAPHY,
    MANUAL_HOLDOVER,
    OUT_OF_SCOPE,
    OUT_OF_SCOPE_OWNER_NAME,
    PARENT_ALIGNMENT,
    PE_FIRM,
    resolve_priority_order,
)
from app.bookops.schemas import (
    AssignmentApplyRequest,
    AssignmentApplyResponse,
    AssignmentGenerateResponse,
    ProposalRead,
    RepLoadRead,
)
from app.bookops.service import (
    ActorUser,
    build_event,
    ensure_build_mutable,
    get_build_or_404,
    publish_all,
    set_build_status,
)
from app.core.rbac import Capability
from app.metrics import observe_proposal_transition, observe_proposals_generated
from app.otel import set_span_attributes

logger = logging.getLogger("app.bookops.engine")
tracer = trace.get_tracer("app.bookops.engine")


@dataclass(slots=True)
class RepState:
    rep_id: str
    name: str
    region: str | None
    is_strategic: bool
    pe_firms: frozenset[str]
    projected_arr: float = 0.0
    account_count: int = 0


@dataclass(slots=True)
class Decision:
    rep: RepState | None
    rule: str
    rationale: str
    owner_id: str | None = None
    owner_name: str | None = None


@dataclass(slots=True)
class EngineResult:
    priority_order: list[str]
    proposals: list[ProposalRead] = field(default_factory=list)
    warnings: list[dict[str, Any]] = field(default_factory=list)
    rule_counts: dict[str, int] = field(default_factory=dict)
    rep_loads: list[RepLoadRead] = field(default_factory=list)


def _parse_pe_firms(raw: str | None) -> frozenset[str]:
    if not raw:
        return frozenset()
    normalized = raw.replace(";", ",").replace("|", ",")
    return frozenset(item.strip().lower() for item in normalized.split(",") if item.strip())


def _rep_states(reps: Sequence[Any]) -> list[RepState]:
    return [
        RepState(
            rep_id=rep.rep_id,
            name=rep.name,
            region=rep.region,
            is_strategic=bool(rep.is_strategic_rep),
            pe_firms=_parse_pe_firms(rep.pe_firms),
        )
        for rep in sorted(reps, key=lambda item: item.rep_id)
        if rep.is_active and rep.include_in_assignments
    ]


def _pool_for(account: Any, reps: list[RepState]) -> list[RepState]:
    if account.is_strategic:
        strategic = [rep for rep in reps if rep.is_strategic]
        return strategic or reps
    return [rep for rep in reps if not rep.is_strategic]


def _has_headroom(rep: RepState, arr: float, max_arr: float) -> bool:
    return arr <= 0 or rep.projected_arr + arr <= max_arr


def _pick(candidates: list[RepState], current_owner_id: str | None) -> RepState:
    for rep in candidates:
        if rep.rep_id == current_owner_id:
            return rep
    return min(candidates, key=lambda rep: (rep.projected_arr, rep.rep_id))


def _manual_holdover(account: Any, pool: list[RepState], ctx: dict[str, Any]) -> Decision | None:
    if not account.exclude_from_reassignment:
        return None
    owner_id, owner_name = effective_owner(account)
    if not owner_id:
        return None
    reason = f": {account.lock_reason}" if account.lock_reason else ""
    rep = ctx["reps_by_id"].get(owner_id)
    return Decision(rep, MANUAL_HOLDOVER, f"Locked account retained by current owner{reason}", owner_id, owner_name)


def _pe_firm(account: Any, pool: list[RepState], ctx: dict[str, Any]) -> Decision | None:
    firm = (account.pe_firm or "").strip().lower()
    if not firm:
        return None
    candidates = [rep for rep in pool if firm in rep.pe_firms]
    if not candidates:
        return None
    rep = _pick(candidates, ctx["current_owner_id"])
    return Decision(rep, PE_FIRM, f"PE firm {account.pe_firm} is covered by {rep.name}")


def _geography(account: Any, pool: list[RepState], ctx: dict[str, Any]) -> Decision | None:
    account_geo = ctx["geography"]
    if account_geo is None:
        return None
    scored = [
        (geography.match_score(account_geo, rep.region), rep)
        for rep in pool
        if _has_headroom(rep, ctx["arr"], ctx["max_arr"])
    ]
    scored = [(score, rep) for score, rep in scored if score > geography.SCORE_CROSS_REGION]
    if not scored:
        return None
    best = max(score for score, _ in scored)
    rep = _pick([rep for score, rep in scored if score == best], ctx["current_owner_id"])
    return Decision(
        rep,
        GEOGRAPHY,
        f"{geography.describe_score(best).capitalize()}: {account_geo} -> {rep.region}",
    )


def _arr_balance(account: Any, pool: list[RepState], ctx: dict[str, Any]) -> Decision | None:
    account_geo = ctx["geography"]
    if account_geo is None:
        return None
    candidates = [
        rep
        for rep in pool
        if geography.match_score(account_geo, rep.region) >= geography.GEO_COMPATIBLE_THRESHOLD
        and _has_headroom(rep, ctx["arr"], ctx["max_arr"])
    ]
    if not candidates:
        return None
    rep = _pick(candidates, ctx["current_owner_id"])
    return Decision(rep, ARR_BALANCE, f"Balanced to {rep.name} at {rep.projected_arr:,.0f} projected ARR")


def _continuity(account: Any, pool: list[RepState], ctx: dict[str, Any]) -> Decision | None:
    current_owner_id = ctx["current_owner_id"]
    for rep in pool:
        if rep.rep_id == current_owner_id:
            return Decision(rep, CONTINUITY, f"Current owner {rep.name} retained")
    return None


RULE_HANDLERS: dict[str, Callable[[Any, list[RepState], dict[str, Any]], Decision | None]] = {
    MANUAL_HOLDOVER: _manual_holdover,
    PE_FIRM: _pe_firm,
    GEOGRAPHY: _geography,
    ARR_BALANCE: _arr_balance,
    CONTINUITY: _continuity,
}


def _is_child(account: Any, account_ids: set[str]) -> bool:
    parent_id = account.ultimate_parent_id
    return (
        not account.is_parent
        and bool(parent_id)
        and parent_id != account.sfdc_account_id
        and parent_id in account_ids
    )


def evaluate(
    accounts: Sequence[Any],
    reps: Sequence[Any],
    priority_order: list[str],
    *,
    max_arr: float,
) -> EngineResult:
    rep_states = _rep_states(reps)
    reps_by_id = {rep.rep_id: rep for rep in rep_states}
    account_ids = {account.sfdc_account_id for account in accounts}
    parents = sorted(
        (account for account in accounts if not _is_child(account, account_ids)),
        key=lambda account: (-effective_arr(account), account.sfdc_account_id),
    )
    children = sorted(
        (account for account in accounts if _is_child(account, account_ids)),
        key=lambda account: account.sfdc_account_id,
    )

    result = EngineResult(priority_order=list(priority_order))
    rule_counts: Counter[str] = Counter()
    decided: dict[str, Decision] = {}

    def _record(account: Any, decision: Decision | None) -> None:
        current_owner_id, current_owner_name = effective_owner(account)
        arr = effective_arr(account)
        if decision is None:
            decision = Decision(None, OUT_OF_SCOPE, "No assignment rule matched")
            result.warnings.append(
                {
                    "type": "out_of_scope",
                    "severity": "high",
                    "sfdc_account_id": account.sfdc_account_id,
                    "account_name": account.account_name,
                    "message": f"{account.account_name} matched no assignment rule",
                }
            )
        decided[account.sfdc_account_id] = decision
        rule_counts[decision.rule] += 1

        if decision.rule == OUT_OF_SCOPE:
            proposed_id, proposed_name = None, OUT_OF_SCOPE_OWNER_NAME
        elif decision.rep is not None:
            proposed_id, proposed_name = decision.rep.rep_id, decision.rep.name
        else:
            proposed_id, proposed_name = decision.owner_id, decision.owner_name

        if decision.rep is not None:
            decision.rep.projected_arr += arr
            decision.rep.account_count += 1

        result.proposals.append(
            ProposalRead(
                account_id=account.id,
                sfdc_account_id=account.sfdc_account_id,
                account_name=account.account_name,
                current_owner_id=current_owner_id,
                current_owner_name=current_owner_name,
                proposed_owner_id=proposed_id,
                proposed_owner_name=proposed_name,
                rationale=decision.rationale,
                rule_applied=decision.rule,
                arr=arr,
            )
        )

    for account in accounts:
        if geography.effective_geography(account) is None:
            result.warnings.append(
                {
                    "type": "missing_geography",
                    "severity": "medium",
                    "sfdc_account_id": account.sfdc_account_id,
                    "account_name": account.account_name,
                    "message": f"{account.account_name} has no sales territory, HQ country or geo",
                }
            )

    def _decide(account: Any) -> Decision | None:
        pool = _pool_for(account, rep_states)
        ctx = {
            "arr": effective_arr(account),
            "max_arr": max_arr,
            "geography": geography.effective_geography(account),
            "current_owner_id": effective_owner(account)[0],
            "reps_by_id": reps_by_id,
        }
        decision: Decision | None = None
        for rule in priority_order:
            decision = RULE_HANDLERS[rule](account, pool, ctx)
            if decision is not None:
                break
        return decision

    for account in parents:
        _record(account, _decide(account))

    for account in children:
        holdover = (
            _manual_holdover(account, [], {"reps_by_id": reps_by_id}) if MANUAL_HOLDOVER in priority_order else None
        )
        if holdover is not None:
            _record(account, holdover)
            continue
        parent_decision = decided.get(account.ultimate_parent_id)
        if parent_decision is None or parent_decision.rule == OUT_OF_SCOPE:
            _record(account, None)
            continue
        if parent_decision.rep is None:
            # parent held by an owner outside the assignable roster
            _record(account, _decide(account))
            continue
        rep = parent_decision.rep
        _record(
            account,
            Decision(
                rep,
                PARENT_ALIGNMENT,
                f"Aligned with parent account {account.ultimate_parent_name or account.ultimate_parent_id}",
                parent_decision.owner_id,
                parent_decision.owner_name,
            ),
        )

    for rep in rep_states:
        if rep.projected_arr > max_arr:
            result.warnings.append(
                {
                    "type": "capacity_exceeded",
                    "severity": "high",
                    "rep_id": rep.rep_id,
                    "message": f"{rep.name} would carry {rep.projected_arr:,.0f} ARR, above the {max_arr:,.0f} maximum",
                }
            )

    result.rule_counts = dict(rule_counts)
    result.rep_loads = [
        RepLoadRead(rep_id=rep.rep_id, name=rep.name, projected_arr=rep.projected_arr, account_count=rep.account_count)
        for rep in rep_states
    ]
    return result


class AssignmentEngine:
    def __init__(self) -> None:
        self.approval_service = ApprovalService()

    def generate(self, session: Session, actor_user: ActorUser, build_id: uuid.UUID) -> AssignmentGenerateResponse:
        build = get_build_or_404(session, build_id)
        result = self._run(session, actor_user, build)
        return AssignmentGenerateResponse(
            build_id=build.id,
            priority_order=result.priority_order,
            proposals=result.proposals,
            warnings=result.warnings,
            rule_counts=result.rule_counts,
            rep_loads=result.rep_loads,
        )

    def apply(
        self,
        session: Session,
        actor_user: ActorUser,
        build_id: uuid.UUID,
        dto: AssignmentApplyRequest,
    ) -> AssignmentApplyResponse:
        if dto.auto_approve and not actor_user.can(Capability.FINALIZE_REASSIGNMENTS):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="auto_approve requires RevOps")

        build = get_build_or_404(session, build_id)
        ensure_build_mutable(build)
        result = self._run(session, actor_user, build)

        accounts = {
            account.sfdc_account_id: account
            for account in session.scalars(select(Account).where(Account.build_id == build.id)).all()
        }
        reps = {rep.rep_id: rep for rep in session.scalars(select(SalesRep).where(SalesRep.build_id == build.id)).all()}
        existing = session.execute(
            select(ManagerReassignment.sfdc_account_id, ManagerReassignment.proposed_owner_id).where(
                and_(
                    ManagerReassignment.build_id == build.id,
                    ManagerReassignment.approval_status.in_((*PENDING_STATUSES, "approved")),
                )
            )
        ).all()
        approved_accounts = {
            row[0]
            for row in session.execute(
                select(ManagerReassignment.sfdc_account_id).where(
                    and_(ManagerReassignment.build_id == build.id, ManagerReassignment.approval_status == "approved")
                )
            ).all()
        }
        existing_pairs = {(row[0], row[1]) for row in existing}

        envelopes: list[dict[str, Any]] = []
        staged: list[ManagerReassignment] = []
        skipped_out_of_scope = 0
        skipped_unchanged = 0
        skipped_existing = 0
        skipped_unknown_owner = 0
        for proposal in result.proposals:
            if proposal.rule_applied == OUT_OF_SCOPE or proposal.proposed_owner_id is None:
                skipped_out_of_scope += 1
                continue
            if (
                proposal.proposed_owner_id == proposal.current_owner_id
                or accounts[proposal.sfdc_account_id].exclude_from_reassignment
            ):
                skipped_unchanged += 1
                continue
            if (
                proposal.sfdc_account_id in approved_accounts
                or (proposal.sfdc_account_id, proposal.proposed_owner_id) in existing_pairs
            ):
                skipped_existing += 1
                continue
            rep = reps.get(proposal.proposed_owner_id)
            if rep is None:
                skipped_unknown_owner += 1
                result.warnings.append(
                    {
                        "type": "unknown_owner",
                        "severity": "medium",
                        "sfdc_account_id": proposal.sfdc_account_id,
                        "account_name": proposal.account_name,
                        "message": f"Proposed owner {proposal.proposed_owner_id} is not in the build roster",
                    }
                )
                continue
            staged.append(
                self.approval_service.stage_proposal(
                    session,
                    actor_user,
                    build,
                    accounts[proposal.sfdc_account_id],
                    rep,
                    rationale=proposal.rationale,
                    source="engine",
                    rule_applied=proposal.rule_applied,
                    envelopes=envelopes,
                )
            )

        approved_count = 0
        transitions: list[tuple[str, str]] = [("new", item.approval_status) for item in staged]
        if dto.auto_approve:
            for item in staged:
                from_status = item.approval_status
                superseded = self.approval_service.stage_final_approval(
                    session,
                    actor_user,
                    build,
                    item,
                    expected_row_version=item.row_version,
                    envelopes=envelopes,
                )
                transitions.append((from_status, "approved"))
                transitions.extend((entry["from_status"], "rejected") for entry in superseded)
                approved_count += 1

        if build.status != "IN_REVIEW":
            status_event = set_build_status(session, actor_user, build, "ASSIGNED")
            if status_event is not None:
                envelopes.append(status_event)
        envelopes.append(
            build_event(
                actor_user,
                "bookops.assignments.applied",
                build.id,
                {
                    "build_id": str(build.id),
                    "build_name": build.name,
                    "created_count": len(staged),
                    "approved_count": approved_count,
                    "skipped_out_of_scope": skipped_out_of_scope,
                    "rule_counts": result.rule_counts,
                },
            )
        )
        session.commit()
        publish_all(envelopes)
        for from_status, to_status in transitions:
            observe_proposal_transition(from_status, to_status)
        logger.info(
            "engine.applied",
            extra={"build_id": str(build.id), "processed": len(staged), "user_id": actor_user.user_id},
        )
        return AssignmentApplyResponse(
            build_id=build.id,
            created_count=len(staged),
            skipped_out_of_scope=skipped_out_of_scope,
            skipped_unchanged=skipped_unchanged,
            skipped_existing=skipped_existing,
            skipped_unknown_owner=skipped_unknown_owner,
            approved_count=approved_count,
            warnings=result.warnings,
            build_status=build.status,
        )

    def _run(self, session: Session, actor_user: ActorUser, build: Any) -> EngineResult:
        priority_order = resolve_priority_order(build.priority_config)
        started = time.perf_counter()
        with tracer.start_as_current_span("bookops.engine.generate") as span:
            accounts = session.scalars(select(Account).where(Account.build_id == build.id)).all()
            reps = session.scalars(select(SalesRep).where(SalesRep.build_id == build.id)).all()
            result = evaluate(accounts, reps, priority_order, max_arr=build.customer_max_arr)
            set_span_attributes(
                span,
                build_id=str(build.id),
                account_count=len(accounts),
                rep_count=len(reps),
                out_of_scope=result.rule_counts.get(OUT_OF_SCOPE, 0),
            )
        observe_proposals_generated(result.rule_counts)
        logger.info(
            "engine.generated",
            extra={
                "build_id": str(build.id),
                "total": len(result.proposals),
                "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                "user_id": actor_user.user_id,
            },
        )
        return result
