"""initial research router schema

Revision ID: 0001
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op


revision: str = "0001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create research_jobs, conversations and messages."""
    bind = op.get_bind()
    inspector = sa.inspect(bind)

    if not inspector.has_table("research_jobs"):
        op.create_table(
            "research_jobs",
            sa.Column("id", sa.String(), nullable=False),
            sa.Column("queue_job_id", sa.Text(), nullable=True),
            sa.Column("query", sa.Text(), nullable=False),
            sa.Column("options_json", sa.Text(), nullable=False, server_default="{}"),
            sa.Column("status", sa.Text(), nullable=False, server_default="queued"),
            sa.Column("progress", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("result_json", sa.Text(), nullable=True),
            sa.Column("error", sa.Text(), nullable=True),
            sa.Column("stage", sa.Text(), nullable=False, server_default=""),
            sa.Column("checkpoint_json", sa.Text(), nullable=False, server_default="{}"),
            sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("created_at", sa.Float(), nullable=False),
            sa.Column("updated_at", sa.Float(), nullable=False),
            sa.Column("started_at", sa.Float(), nullable=True),
            sa.Column("finished_at", sa.Float(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_research_jobs_created_at", "research_jobs", ["created_at"], unique=False)
        op.create_index("idx_research_jobs_status", "research_jobs", ["status"], unique=False)

    if not inspector.has_table("conversations"):
        op.create_table(
            "conversations",
            sa.Column("id", sa.String(), nullable=False),
            sa.Column("title", sa.Text(), nullable=False, server_default=""),
            sa.Column("created_at", sa.Float(), nullable=False),
            sa.Column("updated_at", sa.Float(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )

    if not inspector.has_table("messages"):
        op.create_table(
            "messages",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("conversation_id", sa.String(), nullable=False),
            sa.Column("role", sa.Text(), nullable=False),
            sa.Column("content", sa.Text(), nullable=False, server_default=""),
            sa.Column("service", sa.Text(), nullable=True),
            sa.Column("citations_json", sa.Text(), nullable=False, server_default="[]"),
            sa.Column("visualization_json", sa.Text(), nullable=True),
            sa.Column("created_at", sa.Float(), nullable=False),
            sa.ForeignKeyConstraint(["conversation_id"], ["conversations.id"]),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_messages_conversation", "messages", ["conversation_id", "id"], unique=False)


def downgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)
    if inspector.has_table("messages"):
        op.drop_index("idx_messages_conversation", table_name="messages")
        op.drop_table("messages")
    if inspector.has_table("conversations"):
        op.drop_table("conversations")
    if inspector.has_table("research_jobs"):
        op.drop_index("idx_research_jobs_status", table_name="research_jobs")
        op.drop_index("idx_research_jobs_created_at", table_name="research_jobs")
        op.drop_table("research_jobs")
