from __future__ import annotations

from datetime import date, datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


BuildStatus = Literal["DRAFT", "IMPORTED", "ASSIGNED", "IN_REVIEW", "FINALIZED"]
ApprovalStatus = Literal["pending_flm", "pending_slm", "pending_revops", "approved", "rejected"]
ImportEntity = Literal["accounts", "opportunities", "sales_reps"]
NoteCategory = Literal["concern", "question", "approval", "general"]
NoteStatus = Literal["open", "resolved", "escalated"]


class BuildCreate(BaseModel):
    name: str = Field(min_length=1)
    description: str | None = None
    region: str | None = None
    priority_config: list[str] | None = None
    customer_target_arr: float | None = Field(default=None, gt=0)
    customer_max_arr: float | None = Field(default=None, gt=0)


class BuildUpdate(BaseModel):
    row_version: int = Field(ge=1)
    name: str | None = None
    description: str | None = None
    region: str | None = None
    status: BuildStatus | None = None
    priority_config: list[str] | None = None
    customer_target_arr: float | None = Field(default=None, gt=0)
    customer_max_arr: float | None = Field(default=None, gt=0)


class BuildRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    description: str | None
    region: str | None
    status: str
    owner_user_id: str | None
    priority_config: list[str] | None
    customer_target_arr: float
    customer_max_arr: float
    created_at: datetime
    updated_at: datetime
    row_version: int


class AccountRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    build_id: UUID
    sfdc_account_id: str
    account_name: str
    owner_id: str | None
    owner_name: str | None
    new_owner_id: str | None
    new_owner_name: str | None
    is_customer: bool
    is_parent: bool
    ultimate_parent_id: str | None
    ultimate_parent_name: str | None
    sales_territory: str | None
    hq_country: str | None
    geo: str | None
    arr: float | None
    hierarchy_bookings_arr_converted: float | None
    atr: float | None
    employees: int | None
    renewal_date: date | None
    risk_flag: bool
    cre_risk: bool
    pe_firm: str | None
    is_strategic: bool
    exclude_from_reassignment: bool
    lock_reason: str | None
    row_version: int


class SalesRepRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    build_id: UUID
    rep_id: str
    name: str
    team: str | None
    region: str | None
    flm: str | None
    slm: str | None
    team_tier: str | None
    is_strategic_rep: bool
    is_active: bool
    include_in_assignments: bool
    pe_firms: str | None


class OpportunityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    build_id: UUID
    sfdc_opportunity_id: str
    sfdc_account_id: str
    opportunity_name: str | None
    opportunity_type: str | None
    owner_id: str | None
    owner_name: str | None
    new_owner_id: str | None
    new_owner_name: str | None
    net_arr: float | None
    available_to_renew: float | None
    cre_status: str | None
    renewal_event_date: date | None


class MappingSuggestionRequest(BaseModel):
    entity: ImportEntity
    headers: list[str] = Field(min_length=1)


class MappingSuggestionRead(BaseModel):
    header: str
    schema_field: str
    confidence: float
    match_type: str


class MappingSuggestionResponse(BaseModel):
    entity: ImportEntity
    suggestions: list[MappingSuggestionRead]
    mapping: dict[str, str]
    summary: dict[str, Any]


class ProposalRead(BaseModel):
    """One engine output row. ``proposed_owner_id`` is None for out-of-scope accounts."""

    account_id: UUID
    sfdc_account_id: str
    account_name: str
    current_owner_id: str | None
    current_owner_name: str | None
    proposed_owner_id: str | None
    proposed_owner_name: str | None
    rationale: str
    rule_applied: str
    arr: float


class RepLoadRead(BaseModel):
    rep_id: str
    name: str
    projected_arr: float
    account_count: int


class AssignmentGenerateResponse(BaseModel):
    build_id: UUID
    priority_order: list[str]
    proposals: list[ProposalRead]
    warnings: list[dict[str, Any]]
    rule_counts: dict[str, int]
    rep_loads: list[RepLoadRead]


class AssignmentApplyRequest(BaseModel):
    auto_approve: bool = False


class AssignmentApplyResponse(BaseModel):
    build_id: UUID
    created_count: int
    skipped_out_of_scope: int
    skipped_unchanged: int
    skipped_existing: int
    skipped_unknown_owner: int = 0
    approved_count: int
    warnings: list[dict[str, Any]]
    build_status: str


class ReassignmentCreate(BaseModel):
    sfdc_account_id: str = Field(min_length=1)
    proposed_owner_id: str = Field(min_length=1)
    rationale: str | None = None


class ReassignmentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    build_id: UUID
    sfdc_account_id: str
    account_name: str | None
    current_owner_id: str | None
    current_owner_name: str | None
    proposed_owner_id: str
    proposed_owner_name: str | None
    rationale: str | None
    approval_status: ApprovalStatus
    manager_user_id: str
    proposer_role: str
    source: str
    rule_applied: str | None
    capacity_warnings: list[dict[str, Any]] | None
    slm_approved_by: str | None
    slm_approved_at: datetime | None
    revops_approved_by: str | None
    revops_approved_at: datetime | None
    rejected_by: str | None
    rejected_at: datetime | None
    superseded_by_id: UUID | None
    created_at: datetime
    updated_at: datetime
    row_version: int
    has_conflict: bool = False
    has_cross_build_conflict: bool = False


class ReassignmentDecision(BaseModel):
    row_version: int = Field(ge=1)


class ReassignmentReject(BaseModel):
    row_version: int = Field(ge=1)
    reason: str | None = None


class BulkApproveResponse(BaseModel):
    approved: list[ReassignmentRead]
    failed: list[dict[str, Any]]


class ConflictRead(BaseModel):
    sfdc_account_id: str
    account_name: str | None
    conflict_type: Literal["same_build", "cross_build"]
    proposal_ids: list[UUID]
    proposed_owner_ids: list[str]
    other_build_ids: list[UUID] = Field(default_factory=list)


class NoteCreate(BaseModel):
    note_text: str = Field(min_length=1)
    category: NoteCategory = "general"
    status: NoteStatus = "open"
    tags: list[str] | None = None
    reassignment_id: UUID | None = None


class NoteUpdate(BaseModel):
    row_version: int = Field(ge=1)
    note_text: str | None = None
    category: NoteCategory | None = None
    status: NoteStatus | None = None
    tags: list[str] | None = None


class NoteRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    build_id: UUID
    sfdc_account_id: str
    manager_user_id: str
    note_text: str
    category: str
    status: str
    tags: list[str] | None
    reassignment_id: UUID | None
    created_at: datetime
    updated_at: datetime
    row_version: int


class OwnerRollupRead(BaseModel):
    owner_id: str | None
    owner_name: str | None
    account_count: int
    customer_count: int
    prospect_count: int
    total_arr: float
    total_atr: float


class OwnerReportResponse(BaseModel):
    before: list[OwnerRollupRead]
    after: list[OwnerRollupRead]


class ManagerSummaryRead(BaseModel):
    manager_user_id: str
    total_proposals: int
    pending: int
    approved: int
    rejected: int
    total_notes: int
    open_notes: int
    concerns: int


class BuildSummaryRead(BaseModel):
    build_id: UUID
    status: str
    account_count: int
    customer_count: int
    opportunity_count: int
    rep_count: int
    assigned_account_count: int
    proposals_by_status: dict[str, int]
    same_build_conflicts: int
    cross_build_conflicts: int
