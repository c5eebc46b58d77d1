"""Initial schema with jobs and job_events tables

Revision ID: 001
Revises: 
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JOB_STATUSES = ("queued", "running", "done", "failed", "canceled")
EVENT_TYPES = ("enqueue", "claim", "ack", "retry", "fail", "cancel")


def upgrade() -> None:
    op.create_table(
        "jobs",
        sa.Column("job_id", sa.String(36), nullable=False),
        sa.Column("kind", sa.Text, nullable=False),
        sa.Column("payload_json", sa.Text, nullable=False),
        sa.Column("requester", sa.Text, nullable=False),
        sa.Column("idempotency_key", sa.Text, nullable=False),
        sa.Column(
            "status",
            sa.Enum(*JOB_STATUSES, name="job_status", native_enum=False, create_constraint=True, length=16),
            nullable=False,
        ),
        sa.Column("priority", sa.Integer, nullable=False),
        sa.Column("run_at", sa.BigInteger, nullable=False),
        sa.Column("created_at", sa.BigInteger, nullable=False),
        sa.Column("updated_at", sa.BigInteger, nullable=False),
        sa.Column("attempt", sa.Integer, nullable=False),
        sa.Column("max_attempts", sa.Integer, nullable=False),
        sa.Column("locked_by", sa.Text, nullable=True),
        sa.Column("lease_until", sa.BigInteger, nullable=True),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.Column("result_json", sa.Text, nullable=True),
        sa.PrimaryKeyConstraint("job_id"),
    )

    # Idempotency constraint, only for non-empty keys
    op.create_index(
        "jobs_by_idempotency",
        "jobs",
        ["requester", "idempotency_key"],
        unique=True,
        sqlite_where=sa.text("idempotency_key != ''"),
        postgresql_where=sa.text("idempotency_key != ''"),
    )
    # Claim path
    op.create_index("jobs_by_status_run_at", "jobs", ["status", "run_at"])
    op.create_index("jobs_by_status_lease_until", "jobs", ["status", "lease_until"])
    # Listing
    op.create_index("jobs_by_requester", "jobs", ["requester", "created_at"])
    op.create_index("jobs_by_kind", "jobs", ["kind", "created_at"])

    op.create_table(
        "job_events",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("job_id", sa.String(36), nullable=False),
        sa.Column("at", sa.BigInteger, nullable=False),
        sa.Column(
            "type",
            sa.Enum(*EVENT_TYPES, name="job_event_type", native_enum=False, create_constraint=True, length=16),
            nullable=False,
        ),
        sa.Column("message", sa.Text, nullable=False),
        sa.Column("attempt", sa.Integer, nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["jobs.job_id"], ondelete="CASCADE"),
    )
    op.create_index("job_events_by_job_id", "job_events", ["job_id", "at"])


def downgrade() -> None:
    op.drop_index("job_events_by_job_id", table_name="job_events")
    op.drop_table("job_events")

    op.drop_index("jobs_by_kind", table_name="jobs")
    op.drop_index("jobs_by_requester", table_name="jobs")
    op.drop_index("jobs_by_status_lease_until", table_name="jobs")
    op.drop_index("jobs_by_status_run_at", table_name="jobs")
    op.drop_index("jobs_by_idempotency", table_name="jobs")
    op.drop_table("jobs")
