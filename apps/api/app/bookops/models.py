from __future__ import annotations

import json
import uuid
from datetime import date, datetime, timezone

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


BUILD_STATUSES = ("DRAFT", "IMPORTED", "ASSIGNED", "IN_REVIEW", "FINALIZED")
PENDING_STATUSES = ("pending_flm", "pending_slm", "pending_revops")
APPROVAL_STATUSES = (*PENDING_STATUSES, "approved", "rejected")


class Build(Base):
    __tablename__ = "builds"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    region: Mapped[str | None] = mapped_column(String(32), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="DRAFT", server_default="DRAFT")
    owner_user_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    priority_config: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    customer_target_arr: Mapped[float] = mapped_column(Float, nullable=False, default=1_300_000.0)
    customer_max_arr: Mapped[float] = mapped_column(Float, nullable=False, default=3_000_000.0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )
    row_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")


class Account(Base):
    __tablename__ = "accounts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    build_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("builds.id", ondelete="CASCADE"),
        nullable=False,
    )
    sfdc_account_id: Mapped[str] = mapped_column(String(64), nullable=False)
    account_name: Mapped[str] = mapped_column(Text, nullable=False)
    owner_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    owner_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    new_owner_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    new_owner_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_customer: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    is_parent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    ultimate_parent_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    ultimate_parent_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    sales_territory: Mapped[str | None] = mapped_column(String(128), nullable=True)
    hq_country: Mapped[str | None] = mapped_column(String(128), nullable=True)
    geo: Mapped[str | None] = mapped_column(String(64), nullable=True)
    arr: Mapped[float | None] = mapped_column(Float, nullable=True)
    hierarchy_bookings_arr_converted: Mapped[float | None] = mapped_column(Float, nullable=True)
    atr: Mapped[float | None] = mapped_column(Float, nullable=True)
    employees: Mapped[int | None] = mapped_column(Integer, nullable=True)
    renewal_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    risk_flag: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    cre_risk: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    pe_firm: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_strategic: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    exclude_from_reassignment: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default="false"
    )
    lock_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )
    row_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")

    __table_args__ = (
        UniqueConstraint("build_id", "sfdc_account_id", name="uq_accounts_build_sfdc_account_id"),
        Index("ix_accounts_build_owner", "build_id", "owner_id"),
        Index("ix_accounts_build_new_owner", "build_id", "new_owner_id"),
    )


class SalesRep(Base):
    __tablename__ = "sales_reps"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    build_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("builds.id", ondelete="CASCADE"),
        nullable=False,
    )
    rep_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    team: Mapped[str | None] = mapped_column(String(128), nullable=True)
    region: Mapped[str | None] = mapped_column(String(128), nullable=True)
    flm: Mapped[str | None] = mapped_column(String(255), nullable=True)
    slm: Mapped[str | None] = mapped_column(String(255), nullable=True)
    team_tier: Mapped[str | None] = mapped_column(String(64), nullable=True)
    is_strategic_rep: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    include_in_assignments: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True, server_default="true"
    )
    pe_firms: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    __table_args__ = (
        UniqueConstraint("build_id", "rep_id", name="uq_sales_reps_build_rep_id"),
        Index("ix_sales_reps_build_flm", "build_id", "flm"),
        Index("ix_sales_reps_build_slm", "build_id", "slm"),
    )


class Opportunity(Base):
    __tablename__ = "opportunities"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    build_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("builds.id", ondelete="CASCADE"),
        nullable=False,
    )
    sfdc_opportunity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    sfdc_account_id: Mapped[str] = mapped_column(String(64), nullable=False)
    opportunity_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    opportunity_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    owner_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    owner_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    new_owner_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    new_owner_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    net_arr: Mapped[float | None] = mapped_column(Float, nullable=True)
    available_to_renew: Mapped[float | None] = mapped_column(Float, nullable=True)
    cre_status: Mapped[str | None] = mapped_column(String(64), nullable=True)
    renewal_event_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    __table_args__ = (
        UniqueConstraint("build_id", "sfdc_opportunity_id", name="uq_opportunities_build_sfdc_opportunity_id"),
        Index("ix_opportunities_build_account", "build_id", "sfdc_account_id"),
    )


class ManagerReassignment(Base):
    __tablename__ = "manager_reassignments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    build_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("builds.id", ondelete="CASCADE"),
        nullable=False,
    )
    sfdc_account_id: Mapped[str] = mapped_column(String(64), nullable=False)
    account_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    current_owner_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    current_owner_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    proposed_owner_id: Mapped[str] = mapped_column(String(64), nullable=False)
    proposed_owner_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    rationale: Mapped[str | None] = mapped_column(Text, nullable=True)
    approval_status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending_slm")
    manager_user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    proposer_role: Mapped[str] = mapped_column(String(32), nullable=False, default="DEFAULT")
    source: Mapped[str] = mapped_column(String(16), nullable=False, default="manager", server_default="manager")
    rule_applied: Mapped[str | None] = mapped_column(String(64), nullable=True)
    capacity_warnings: Mapped[list[dict] | None] = mapped_column(JSON, nullable=True)
    slm_approved_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    slm_approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    revops_approved_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    revops_approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rejected_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    rejected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    superseded_by_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )
    row_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")

    __table_args__ = (
        Index("ix_manager_reassignments_build_account", "build_id", "sfdc_account_id"),
        Index("ix_manager_reassignments_build_status", "build_id", "approval_status"),
        Index(
            "uq_manager_reassignments_one_approved",
            "build_id",
            "sfdc_account_id",
            unique=True,
            postgresql_where=text("approval_status = 'approved'"),
            sqlite_where=text("approval_status = 'approved'"),
        ),
    )


class ManagerNote(Base):
    __tablename__ = "manager_notes"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    build_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("builds.id", ondelete="CASCADE"),
        nullable=False,
    )
    sfdc_account_id: Mapped[str] = mapped_column(String(64), nullable=False)
    manager_user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    note_text: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(String(32), nullable=False, default="general", server_default="general")
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="open", server_default="open")
    tags: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    reassignment_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("manager_reassignments.id", ondelete="SET NULL"),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )
    row_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")

    __table_args__ = (Index("ix_manager_notes_build_account", "build_id", "sfdc_account_id"),)


class BookOpsJob(Base):
    __tablename__ = "bookops_job"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    job_type: Mapped[str] = mapped_column(String(32), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    build_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="Queued", server_default="Queued")
    cancel_requested: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    requested_by_user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    correlation_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    params_json: Mapped[str] = mapped_column(Text, nullable=False, default=lambda: json.dumps({}))
    result_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    artifacts: Mapped[list[BookOpsJobArtifact]] = relationship(
        "BookOpsJobArtifact",
        back_populates="job",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        Index("ix_bookops_job_type_status_created", "job_type", "status", "created_at"),
        Index("ix_bookops_job_build_created", "build_id", "created_at"),
    )


class BookOpsJobArtifact(Base):
    __tablename__ = "bookops_job_artifact"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    job_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("bookops_job.id", ondelete="CASCADE"),
        nullable=False,
    )
    artifact_type: Mapped[str] = mapped_column(String(32), nullable=False)
    file_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    job: Mapped[BookOpsJob] = relationship("BookOpsJob", back_populates="artifacts")
