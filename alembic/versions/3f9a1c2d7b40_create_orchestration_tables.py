"""create_orchestration_tables

Revision ID: 3f9a1c2d7b40
Revises:
Create Date: 2026-10-19 09:12:41.208113

"""

from typing import Sequence, Union

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3f9a1c2d7b40"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

task_status = sa.Enum("PROCESSING", "UPLOADING", "COMPLETED", "FAILED", name="taskstatus")
task_kind = sa.Enum(
    "UPSCALE", "BACKGROUND_REMOVAL", "TEXT_TO_IMAGE", "IMAGE_EDIT", name="taskkind"
)
credit_entry_kind = sa.Enum("DEBIT", "REFUND", "GRANT", name="creditentrykind")


def upgrade() -> None:
    """Create provider keys, tasks, credit ledger and trial usage tables."""
    op.create_table(
        "provider_keys",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("provider", sa.String(length=50), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=True),
        sa.Column("secret", sa.String(length=512), nullable=False),
        sa.Column("daily_limit", sa.Integer(), nullable=False),
        sa.Column("used_today", sa.Integer(), nullable=False),
        sa.Column("last_reset_date", sa.Date(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_provider_keys_provider", "provider_keys", ["provider"])
    op.create_index("ix_provider_keys_is_active", "provider_keys", ["is_active"])

    op.create_table(
        "tasks",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("provider_task_id", sa.String(length=255), nullable=True),
        sa.Column("owner", sa.String(length=255), nullable=False),
        sa.Column("is_trial", sa.Boolean(), nullable=False),
        sa.Column("kind", task_kind, nullable=False),
        sa.Column("provider", sa.String(length=50), nullable=False),
        sa.Column("engine", sa.String(length=100), nullable=False),
        sa.Column("status", task_status, nullable=False),
        sa.Column("parameters", sa.JSON(), nullable=False),
        sa.Column("credits_consumed", sa.Integer(), nullable=False),
        sa.Column("provider_key_id", sa.Uuid(), nullable=True),
        sa.Column("source_object_ref", sa.String(length=1024), nullable=True),
        sa.Column("result_object_ref", sa.String(length=1024), nullable=True),
        sa.Column("result_url", sa.String(length=2048), nullable=True),
        sa.Column("error", sa.JSON(), nullable=True),
        sa.Column("poll_attempts", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["provider_key_id"], ["provider_keys.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_tasks_provider_task_id", "tasks", ["provider_task_id"], unique=True)
    op.create_index("ix_tasks_owner", "tasks", ["owner"])
    op.create_index("ix_tasks_kind", "tasks", ["kind"])
    op.create_index("ix_tasks_status", "tasks", ["status"])
    op.create_index("ix_tasks_created_at", "tasks", ["created_at"])

    op.create_table(
        "credit_accounts",
        sa.Column("owner", sa.String(length=255), nullable=False),
        sa.Column("balance", sa.Integer(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("balance >= 0", name="ck_credit_accounts_balance_non_negative"),
        sa.PrimaryKeyConstraint("owner"),
    )

    op.create_table(
        "credit_log",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("owner", sa.String(length=255), nullable=False),
        sa.Column("kind", credit_entry_kind, nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("balance_after", sa.Integer(), nullable=False),
        sa.Column("memo", sa.String(length=500), nullable=True),
        sa.Column("task_id", sa.Uuid(), nullable=True),
        sa.Column("related_order", sa.String(length=255), nullable=True),
        sa.Column("idempotency_key", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("idempotency_key"),
    )
    op.create_index("ix_credit_log_owner", "credit_log", ["owner"])
    op.create_index("ix_credit_log_task_id", "credit_log", ["task_id"])
    op.create_index("ix_credit_log_created_at", "credit_log", ["created_at"])

    op.create_table(
        "trial_usage",
        sa.Column("fingerprint", sa.String(length=256), nullable=False),
        sa.Column("task_id", sa.Uuid(), nullable=True),
        sa.Column("used_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("fingerprint"),
    )


def downgrade() -> None:
    """Drop all orchestration tables."""
    op.drop_table("trial_usage")
    op.drop_index("ix_credit_log_created_at", table_name="credit_log")
    op.drop_index("ix_credit_log_task_id", table_name="credit_log")
    op.drop_index("ix_credit_log_owner", table_name="credit_log")
    op.drop_table("credit_log")
    op.drop_table("credit_accounts")
    op.drop_index("ix_tasks_created_at", table_name="tasks")
    op.drop_index("ix_tasks_status", table_name="tasks")
    op.drop_index("ix_tasks_kind", table_name="tasks")
    op.drop_index("ix_tasks_owner", table_name="tasks")
    op.drop_index("ix_tasks_provider_task_id", table_name="tasks")
    op.drop_table("tasks")
    op.drop_index("ix_provider_keys_is_active", table_name="provider_keys")
    op.drop_index("ix_provider_keys_provider", table_name="provider_keys")
    op.drop_table("provider_keys")
    credit_entry_kind.drop(op.get_bind(), checkfirst=True)
    task_status.drop(op.get_bind(), checkfirst=True)
    task_kind.drop(op.get_bind(), checkfirst=True)
