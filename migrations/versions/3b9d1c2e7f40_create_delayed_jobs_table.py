"""create delayed_jobs table

Revision ID: 3b9d1c2e7f40
Revises:
Create Date: 2026-10-19 09:12:31.418203

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "3b9d1c2e7f40"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        "delayed_jobs",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column(
            "payload",
            sa.JSON,
            nullable=False,
            comment="Tagged unit of work {kind, args}",
        ),
        # Polymorphic owner
        sa.Column(
            "owner_type", sa.Text, nullable=True, comment="Type tag of the owning entity"
        ),
        sa.Column(
            "owner_id", sa.Text, nullable=True, comment="Identifier of the owning entity"
        ),
        # Scheduling
        sa.Column(
            "queue_name",
            sa.Text,
            nullable=False,
            server_default="default",
            comment="Routing partition",
        ),
        sa.Column(
            "priority",
            sa.Integer,
            nullable=False,
            server_default="0",
            comment="Lower is dequeued first",
        ),
        sa.Column(
            "run_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            comment="Earliest time to run job",
        ),
        # Worker coordination fields
        sa.Column(
            "locked_at",
            sa.TIMESTAMP(timezone=True),
            nullable=True,
            comment="When job was locked by worker",
        ),
        sa.Column(
            "locked_by", sa.Text, nullable=True, comment="Worker ID that locked the job"
        ),
        # Outcome tracking
        sa.Column(
            "attempts",
            sa.Integer,
            nullable=False,
            server_default="0",
            comment="Number of attempts made",
        ),
        sa.Column(
            "max_attempts",
            sa.Integer,
            nullable=True,
            comment="Per-job retry budget override",
        ),
        sa.Column("last_error", sa.Text, nullable=True, comment="Last error message"),
        sa.Column(
            "failed_at",
            sa.TIMESTAMP(timezone=True),
            nullable=True,
            comment="Set when retries are exhausted",
        ),
        # Timestamps
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), nullable=False),
        # Constraints
        sa.CheckConstraint(
            "(owner_type IS NULL) = (owner_id IS NULL)",
            name="delayed_jobs_owner_check",
        ),
        sa.CheckConstraint("attempts >= 0", name="delayed_jobs_attempts_check"),
    )

    # Claim scans and owner lookups
    op.create_index(
        "ix_delayed_jobs_priority_run_at", "delayed_jobs", ["priority", "run_at"]
    )
    op.create_index("ix_delayed_jobs_owner", "delayed_jobs", ["owner_type", "owner_id"])
    op.create_index("ix_delayed_jobs_queue_name", "delayed_jobs", ["queue_name"])
    op.create_index("ix_delayed_jobs_locked_at", "delayed_jobs", ["locked_at"])


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table("delayed_jobs")
