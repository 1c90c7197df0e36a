"""create bookops tables

Revision ID: 202610190001
Revises:
Create Date: 2026-10-19 00:01:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610190001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "builds",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("region", sa.String(length=32), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="DRAFT"),
        sa.Column("owner_user_id", sa.String(length=128), nullable=True),
        sa.Column("priority_config", sa.JSON(), nullable=True),
        sa.Column("customer_target_arr", sa.Float(), nullable=False),
        sa.Column("customer_max_arr", sa.Float(), nullable=False),
        *_timestamps(),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("name"),
    )

    op.create_table(
        "accounts",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("build_id", sa.Uuid(), nullable=False),
        sa.Column("sfdc_account_id", sa.String(length=64), nullable=False),
        sa.Column("account_name", sa.Text(), nullable=False),
        sa.Column("owner_id", sa.String(length=64), nullable=True),
        sa.Column("owner_name", sa.String(length=255), nullable=True),
        sa.Column("new_owner_id", sa.String(length=64), nullable=True),
        sa.Column("new_owner_name", sa.String(length=255), nullable=True),
        sa.Column("is_customer", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_parent", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("ultimate_parent_id", sa.String(length=64), nullable=True),
        sa.Column("ultimate_parent_name", sa.Text(), nullable=True),
        sa.Column("sales_territory", sa.String(length=128), nullable=True),
        sa.Column("hq_country", sa.String(length=128), nullable=True),
        sa.Column("geo", sa.String(length=64), nullable=True),
        sa.Column("arr", sa.Float(), nullable=True),
        sa.Column("hierarchy_bookings_arr_converted", sa.Float(), nullable=True),
        sa.Column("atr", sa.Float(), nullable=True),
        sa.Column("employees", sa.Integer(), nullable=True),
        sa.Column("renewal_date", sa.Date(), nullable=True),
        sa.Column("risk_flag", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("cre_risk", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("pe_firm", sa.String(length=255), nullable=True),
        sa.Column("is_strategic", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("exclude_from_reassignment", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("lock_reason", sa.Text(), nullable=True),
        *_timestamps(),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.ForeignKeyConstraint(["build_id"], ["builds.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("build_id", "sfdc_account_id", name="uq_accounts_build_sfdc_account_id"),
    )
    op.create_index("ix_accounts_build_owner", "accounts", ["build_id", "owner_id"], unique=False)
    op.create_index("ix_accounts_build_new_owner", "accounts", ["build_id", "new_owner_id"], unique=False)

    op.create_table(
        "sales_reps",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("build_id", sa.Uuid(), nullable=False),
        sa.Column("rep_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("team", sa.String(length=128), nullable=True),
        sa.Column("region", sa.String(length=128), nullable=True),
        sa.Column("flm", sa.String(length=255), nullable=True),
        sa.Column("slm", sa.String(length=255), nullable=True),
        sa.Column("team_tier", sa.String(length=64), nullable=True),
        sa.Column("is_strategic_rep", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("include_in_assignments", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("pe_firms", sa.Text(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["build_id"], ["builds.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("build_id", "rep_id", name="uq_sales_reps_build_rep_id"),
    )
    op.create_index("ix_sales_reps_build_flm", "sales_reps", ["build_id", "flm"], unique=False)
    op.create_index("ix_sales_reps_build_slm", "sales_reps", ["build_id", "slm"], unique=False)

    op.create_table(
        "opportunities",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("build_id", sa.Uuid(), nullable=False),
        sa.Column("sfdc_opportunity_id", sa.String(length=64), nullable=False),
        sa.Column("sfdc_account_id", sa.String(length=64), nullable=False),
        sa.Column("opportunity_name", sa.Text(), nullable=True),
        sa.Column("opportunity_type", sa.String(length=64), nullable=True),
        sa.Column("owner_id", sa.String(length=64), nullable=True),
        sa.Column("owner_name", sa.String(length=255), nullable=True),
        sa.Column("new_owner_id", sa.String(length=64), nullable=True),
        sa.Column("new_owner_name", sa.String(length=255), nullable=True),
        sa.Column("net_arr", sa.Float(), nullable=True),
        sa.Column("available_to_renew", sa.Float(), nullable=True),
        sa.Column("cre_status", sa.String(length=64), nullable=True),
        sa.Column("renewal_event_date", sa.Date(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["build_id"], ["builds.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "build_id",
            "sfdc_opportunity_id",
            name="uq_opportunities_build_sfdc_opportunity_id",
        ),
    )
    op.create_index(
        "ix_opportunities_build_account",
        "opportunities",
        ["build_id", "sfdc_account_id"],
        unique=False,
    )

    op.create_table(
        "manager_reassignments",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("build_id", sa.Uuid(), nullable=False),
        sa.Column("sfdc_account_id", sa.String(length=64), nullable=False),
        sa.Column("account_name", sa.Text(), nullable=True),
        sa.Column("current_owner_id", sa.String(length=64), nullable=True),
        sa.Column("current_owner_name", sa.String(length=255), nullable=True),
        sa.Column("proposed_owner_id", sa.String(length=64), nullable=False),
        sa.Column("proposed_owner_name", sa.String(length=255), nullable=True),
        sa.Column("rationale", sa.Text(), nullable=True),
        sa.Column("approval_status", sa.String(length=32), nullable=False),
        sa.Column("manager_user_id", sa.String(length=128), nullable=False),
        sa.Column("proposer_role", sa.String(length=32), nullable=False),
        sa.Column("source", sa.String(length=16), nullable=False, server_default="manager"),
        sa.Column("rule_applied", sa.String(length=64), nullable=True),
        sa.Column("capacity_warnings", sa.JSON(), nullable=True),
        sa.Column("slm_approved_by", sa.String(length=128), nullable=True),
        sa.Column("slm_approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revops_approved_by", sa.String(length=128), nullable=True),
        sa.Column("revops_approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rejected_by", sa.String(length=128), nullable=True),
        sa.Column("rejected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("superseded_by_id", sa.Uuid(), nullable=True),
        *_timestamps(),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.ForeignKeyConstraint(["build_id"], ["builds.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_manager_reassignments_build_account",
        "manager_reassignments",
        ["build_id", "sfdc_account_id"],
        unique=False,
    )
    op.create_index(
        "ix_manager_reassignments_build_status",
        "manager_reassignments",
        ["build_id", "approval_status"],
        unique=False,
    )
    op.create_index(
        "uq_manager_reassignments_one_approved",
        "manager_reassignments",
        ["build_id", "sfdc_account_id"],
        unique=True,
        postgresql_where=sa.text("approval_status = 'approved'"),
        sqlite_where=sa.text("approval_status = 'approved'"),
    )

    op.create_table(
        "manager_notes",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("build_id", sa.Uuid(), nullable=False),
        sa.Column("sfdc_account_id", sa.String(length=64), nullable=False),
        sa.Column("manager_user_id", sa.String(length=128), nullable=False),
        sa.Column("note_text", sa.Text(), nullable=False),
        sa.Column("category", sa.String(length=32), nullable=False, server_default="general"),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="open"),
        sa.Column("tags", sa.JSON(), nullable=True),
        sa.Column("reassignment_id", sa.Uuid(), nullable=True),
        *_timestamps(),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.ForeignKeyConstraint(["build_id"], ["builds.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["reassignment_id"], ["manager_reassignments.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_manager_notes_build_account",
        "manager_notes",
        ["build_id", "sfdc_account_id"],
        unique=False,
    )

    op.create_table(
        "bookops_job",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("job_type", sa.String(length=32), nullable=False),
        sa.Column("entity_type", sa.String(length=32), nullable=False),
        sa.Column("build_id", sa.Uuid(), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="Queued"),
        sa.Column("cancel_requested", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("requested_by_user_id", sa.String(length=128), nullable=False),
        sa.Column("correlation_id", sa.String(length=128), nullable=True),
        sa.Column("params_json", sa.Text(), nullable=False),
        sa.Column("result_json", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_bookops_job_type_status_created",
        "bookops_job",
        ["job_type", "status", "created_at"],
        unique=False,
    )
    op.create_index("ix_bookops_job_build_created", "bookops_job", ["build_id", "created_at"], unique=False)

    op.create_table(
        "bookops_job_artifact",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("job_id", sa.Uuid(), nullable=False),
        sa.Column("artifact_type", sa.String(length=32), nullable=False),
        sa.Column("file_id", sa.Uuid(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["bookops_job.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )


def downgrade() -> None:
    op.drop_table("bookops_job_artifact")
    op.drop_index("ix_bookops_job_build_created", table_name="bookops_job")
    op.drop_index("ix_bookops_job_type_status_created", table_name="bookops_job")
    op.drop_table("bookops_job")

    op.drop_index("ix_manager_notes_build_account", table_name="manager_notes")
    op.drop_table("manager_notes")

    op.drop_index("uq_manager_reassignments_one_approved", table_name="manager_reassignments")
    op.drop_index("ix_manager_reassignments_build_status", table_name="manager_reassignments")
    op.drop_index("ix_manager_reassignments_build_account", table_name="manager_reassignments")
    op.drop_table("manager_reassignments")

    op.drop_index("ix_opportunities_build_account", table_name="opportunities")
    op.drop_table("opportunities")

    op.drop_index("ix_sales_reps_build_slm", table_name="sales_reps")
    op.drop_index("ix_sales_reps_build_flm", table_name="sales_reps")
    op.drop_table("sales_reps")

    op.drop_index("ix_accounts_build_new_owner", table_name="accounts")
    op.drop_index("ix_accounts_build_owner", table_name="accounts")
    op.drop_table("accounts")

    op.drop_table("builds")
