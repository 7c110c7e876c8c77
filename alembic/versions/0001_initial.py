"""Initial schema - boards, tickets, comments, activities, attachments, workflows, snapshots.

Revision ID: 0001
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSON = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
    # Boards table
    op.create_table(
        "boards",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), server_default=""),
        sa.Column("workflow_id", sa.String(64), server_default="kanban"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # Tickets table
    op.create_table(
        "tickets",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("board_id", sa.String(64), sa.ForeignKey("boards.id", ondelete="CASCADE")),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), server_default=""),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("priority", sa.String(), server_default="medium"),
        sa.Column("labels", JSON, nullable=True),
        sa.Column("assignees", JSON, nullable=True),
        sa.Column("parent_id", sa.String(64), nullable=True),
        sa.Column("custom_fields", JSON, nullable=True),
        sa.Column("position", sa.Integer(), server_default="0"),
        sa.Column("due_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("idx_tickets_board", "tickets", ["board_id"])
    op.create_index("idx_tickets_status", "tickets", ["status"])
    op.create_index("idx_tickets_parent", "tickets", ["parent_id"])

    # Comments table
    op.create_table(
        "comments",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("ticket_id", sa.String(64), sa.ForeignKey("tickets.id", ondelete="CASCADE")),
        sa.Column("author", sa.String(), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("parent_id", sa.String(64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("idx_comments_ticket", "comments", ["ticket_id"])

    # Activities table (append-only audit trail)
    op.create_table(
        "activities",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("ticket_id", sa.String(64), sa.ForeignKey("tickets.id", ondelete="CASCADE")),
        sa.Column("actor", sa.String(), nullable=False),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("changes", JSON, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("idx_activities_ticket", "activities", ["ticket_id"])

    # Attachments table
    op.create_table(
        "attachments",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("ticket_id", sa.String(64), sa.ForeignKey("tickets.id", ondelete="CASCADE")),
        sa.Column("filename", sa.String(), nullable=False),
        sa.Column("original_filename", sa.String(), nullable=False),
        sa.Column("mime_type", sa.String(), nullable=False),
        sa.Column("size_bytes", sa.Integer(), nullable=False),
        sa.Column("storage_path", sa.String(), nullable=False),
        sa.Column("uploaded_by", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("idx_attachments_ticket", "attachments", ["ticket_id"])

    # Workflows table (built-ins live in code)
    op.create_table(
        "workflows",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("states", JSON, nullable=False),
        sa.Column("transitions", JSON, nullable=False),
    )

    # Status snapshots table (CFD)
    op.create_table(
        "status_snapshots",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("board_id", sa.String(64), sa.ForeignKey("boards.id", ondelete="CASCADE")),
        sa.Column("snapshot_date", sa.Date(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("board_id", "snapshot_date", "status", name="uq_snapshot_board_date_status"),
    )
    op.create_index("idx_snapshots_board_date", "status_snapshots", ["board_id", "snapshot_date"])


def downgrade() -> None:
    op.drop_table("status_snapshots")
    op.drop_table("workflows")
    op.drop_table("attachments")
    op.drop_table("activities")
    op.drop_table("comments")
    op.drop_table("tickets")
    op.drop_table("boards")
