"""Create alert and alert job run tables."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None

_ACTIVE_STATUSES = sa.text("status IN ('pending', 'snoozed')")


def upgrade() -> None:
    op.create_table(
        "alerts",
        sa.Column("alert_id", sa.String(length=64), nullable=False),
        sa.Column("student_id", sa.String(length=128), nullable=False),
        sa.Column("application_id", sa.String(length=128), nullable=True),
        sa.Column("scope_key", sa.String(length=160), nullable=False),
        sa.Column("kind", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("cause", sa.String(length=160), nullable=False, server_default=""),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("snooze_until", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("alert_id"),
        sa.CheckConstraint("status IN ('pending', 'snoozed', 'dismissed')", name="ck_alerts_status"),
        sa.CheckConstraint(
            "(status = 'snoozed') = (snooze_until IS NOT NULL)",
            name="ck_alerts_snooze_until_iff_snoozed",
        ),
    )
    op.create_index(
        "uq_alerts_active_scope_kind_cause",
        "alerts",
        ["scope_key", "kind", "cause"],
        unique=True,
        postgresql_where=_ACTIVE_STATUSES,
        sqlite_where=_ACTIVE_STATUSES,
    )
    op.create_index("ix_alerts_student_status", "alerts", ["student_id", "status"], unique=False)

    op.create_table(
        "alert_job_runs",
        sa.Column("run_id", sa.String(length=64), nullable=False),
        sa.Column("job", sa.String(length=64), nullable=False),
        sa.Column("trigger", sa.String(length=16), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("run_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("scanned_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("sent_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("skipped_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("failures_json", sa.Text(), nullable=False, server_default="[]"),
        sa.PrimaryKeyConstraint("run_id"),
    )
    op.create_index("ix_alert_job_runs_job", "alert_job_runs", ["job"], unique=False)
    op.create_index("ix_alert_job_runs_run_at", "alert_job_runs", ["run_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_alert_job_runs_run_at", table_name="alert_job_runs")
    op.drop_index("ix_alert_job_runs_job", table_name="alert_job_runs")
    op.drop_table("alert_job_runs")
    op.drop_index("ix_alerts_student_status", table_name="alerts")
    op.drop_index("uq_alerts_active_scope_kind_cause", table_name="alerts")
    op.drop_table("alerts")
