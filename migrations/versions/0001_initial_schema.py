"""initial schema

Revision ID: 0001
Revises:
Create Date: 2026-10-16 09:00:00

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _created_at(index: bool = False) -> sa.Column:
    return sa.Column(
        "created_at",
        sa.TIMESTAMP(timezone=True),
        server_default=sa.text("now()"),
        nullable=False,
        index=index,
    )


def upgrade() -> None:
    op.create_table(
        "firms",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(), nullable=False),
        _created_at(),
    )

    op.create_table(
        "users_table",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("password", sa.String(), nullable=False),
        sa.Column("full_name", sa.String(), nullable=False, server_default=""),
        sa.Column("role", sa.String(), nullable=False, server_default="employee"),
        sa.Column("department", sa.String(), nullable=True),
        sa.Column(
            "firm_id",
            sa.Integer(),
            sa.ForeignKey("firms.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("last_active", sa.TIMESTAMP(timezone=True), nullable=True),
        _created_at(),
    )
    op.create_index("ix_users_table_email", "users_table", ["email"], unique=True)
    op.create_index("ix_users_table_firm_id", "users_table", ["firm_id"])

    op.create_table(
        "clients",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "firm_id",
            sa.Integer(),
            sa.ForeignKey("firms.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column("name", sa.String(), nullable=False, index=True),
        sa.Column("email", sa.String()),
        sa.Column("phone", sa.String()),
        sa.Column("status", sa.String(), nullable=False, server_default="active"),
        sa.Column("industry", sa.String()),
        sa.Column("business_type", sa.String()),
        sa.Column("gstin", sa.String(15), index=True),
        sa.Column("pan", sa.String(10)),
        sa.Column("address", sa.Text()),
        sa.Column("notes", sa.Text()),
        sa.Column(
            "is_deleted", sa.Boolean(), nullable=False, server_default=sa.false(), index=True
        ),
        sa.Column(
            "created_by",
            sa.Integer(),
            sa.ForeignKey("users_table.id", ondelete="SET NULL"),
            nullable=True,
            index=True,
        ),
        _created_at(),
    )

    op.create_table(
        "tasks",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "firm_id",
            sa.Integer(),
            sa.ForeignKey("firms.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column(
            "client_id",
            sa.Integer(),
            sa.ForeignKey("clients.id", ondelete="SET NULL"),
            nullable=True,
            index=True,
        ),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("status", sa.String(), nullable=False, server_default="todo"),
        sa.Column("priority", sa.String(), nullable=False, server_default="medium"),
        sa.Column("due_date", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column(
            "assigned_to",
            sa.Integer(),
            sa.ForeignKey("users_table.id", ondelete="SET NULL"),
            nullable=True,
            index=True,
        ),
        sa.Column(
            "assigned_by",
            sa.Integer(),
            sa.ForeignKey("users_table.id", ondelete="SET NULL"),
            nullable=True,
            index=True,
        ),
        sa.Column(
            "is_archived", sa.Boolean(), nullable=False, server_default=sa.false(), index=True
        ),
        _created_at(),
    )

    op.create_table(
        "task_collaborators",
        sa.Column(
            "task_id",
            sa.Integer(),
            sa.ForeignKey("tasks.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column(
            "user_id",
            sa.Integer(),
            sa.ForeignKey("users_table.id", ondelete="CASCADE"),
            primary_key=True,
        ),
    )

    op.create_table(
        "invoices",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "firm_id",
            sa.Integer(),
            sa.ForeignKey("firms.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column(
            "client_id",
            sa.Integer(),
            sa.ForeignKey("clients.id", ondelete="SET NULL"),
            nullable=True,
            index=True,
        ),
        sa.Column("invoice_number", sa.String(), nullable=False),
        sa.Column("client_name", sa.String()),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("status", sa.String(), nullable=False, server_default="draft"),
        sa.Column("due_date", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column(
            "created_by",
            sa.Integer(),
            sa.ForeignKey("users_table.id", ondelete="SET NULL"),
            nullable=True,
            index=True,
        ),
        sa.Column(
            "related_task_id",
            sa.Integer(),
            sa.ForeignKey("tasks.id", ondelete="SET NULL"),
            nullable=True,
            index=True,
        ),
        _created_at(),
    )

    op.create_table(
        "assistant_channels",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "user_id",
            sa.Integer(),
            sa.ForeignKey("users_table.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column(
            "firm_id",
            sa.Integer(),
            sa.ForeignKey("firms.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        _created_at(),
    )

    op.create_table(
        "assistant_messages",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "channel_id",
            sa.Integer(),
            sa.ForeignKey("assistant_channels.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column("role", sa.String(), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        _created_at(),
    )

    op.create_table(
        "ai_usage",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "user_id",
            sa.Integer(),
            sa.ForeignKey("users_table.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column(
            "firm_id",
            sa.Integer(),
            sa.ForeignKey("firms.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column("prompt_excerpt", sa.Text(), nullable=False),
        sa.Column("response_excerpt", sa.Text(), nullable=True),
        sa.Column("query_type", sa.String(), nullable=False, server_default="chat", index=True),
        sa.Column("status", sa.String(), nullable=True, index=True),
        sa.Column("latency_ms", sa.Integer(), nullable=True),
        sa.Column("tools_invoked", sa.JSON(), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("continuity", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("cancelled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column(
            "iteration_exhausted", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("model", sa.String(), nullable=True),
        sa.Column("endpoint", sa.String(), nullable=True),
        _created_at(index=True),
        sa.Column("finalized_at", sa.TIMESTAMP(timezone=True), nullable=True),
    )


def downgrade() -> None:
    op.drop_table("ai_usage")
    op.drop_table("assistant_messages")
    op.drop_table("assistant_channels")
    op.drop_table("invoices")
    op.drop_table("task_collaborators")
    op.drop_table("tasks")
    op.drop_table("clients")
    op.drop_index("ix_users_table_firm_id", table_name="users_table")
    op.drop_index("ix_users_table_email", table_name="users_table")
    op.drop_table("users_table")
    op.drop_table("firms")
