"""SQLAlchemy models for the ticket engine database."""

from __future__ import annotations

from datetime import UTC, date, datetime
from enum import StrEnum
from typing import Any, TypedDict
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

JSONType = JSON().with_variant(JSONB(), "postgresql")


def _new_id() -> str:
    return str(uuid4())


def utcnow() -> datetime:
    return datetime.now(UTC)


class Priority(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class ActivityAction(StrEnum):
    CREATED = "created"
    UPDATED = "updated"
    STATUS_CHANGED = "status_changed"
    ASSIGNED = "assigned"
    COMMENTED = "commented"
    ATTACHMENT_ADDED = "attachment_added"
    ATTACHMENT_DELETED = "attachment_deleted"


# =============================================================================
# Activity payloads, one shape per action
# =============================================================================


class FieldChange(TypedDict):
    old: Any
    new: Any


class CreatedPayload(TypedDict):
    ticket: dict[str, Any]


class AssignedPayload(TypedDict):
    assignees: list[str]


class CommentedPayload(TypedDict):
    comment_id: str


class AttachmentPayload(TypedDict):
    attachment_id: str
    filename: str


# updated / status_changed carry a field -> {old, new} map
ActivityChanges = (
    dict[str, FieldChange] | CreatedPayload | AssignedPayload | CommentedPayload | AttachmentPayload
)


class Base(DeclarativeBase):
    """Base class for all models."""

    type_annotation_map = {
        dict[str, Any]: JSONType,
        list[str]: JSONType,
    }


# =============================================================================
# BOARD-SCOPED TABLES
# =============================================================================


class Board(Base):
    """A named collection of tickets governed by one workflow."""

    __tablename__ = "boards"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    workflow_id: Mapped[str] = mapped_column(String(64), default="kanban")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    tickets: Mapped[list[Ticket]] = relationship(
        back_populates="board", cascade="all, delete-orphan", passive_deletes=True
    )
    snapshots: Mapped[list[StatusSnapshot]] = relationship(
        back_populates="board", cascade="all, delete-orphan", passive_deletes=True
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "workflow_id": self.workflow_id,
            "created_at": self.created_at,
        }


class Ticket(Base):
    """A unit of work whose status is constrained by its board's workflow."""

    __tablename__ = "tickets"
    __table_args__ = (
        Index("idx_tickets_board", "board_id"),
        Index("idx_tickets_status", "status"),
        Index("idx_tickets_parent", "parent_id"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    board_id: Mapped[str] = mapped_column(String(64), ForeignKey("boards.id", ondelete="CASCADE"))
    title: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    status: Mapped[str] = mapped_column(String, nullable=False)
    priority: Mapped[str] = mapped_column(String, default=Priority.MEDIUM.value)
    labels: Mapped[list[str]] = mapped_column(default=list)
    assignees: Mapped[list[str]] = mapped_column(default=list)
    parent_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    custom_fields: Mapped[dict[str, Any]] = mapped_column(default=dict)
    position: Mapped[int] = mapped_column(Integer, default=0)
    due_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    board: Mapped[Board] = relationship(back_populates="tickets")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "board_id": self.board_id,
            "title": self.title,
            "description": self.description,
            "status": self.status,
            "priority": self.priority,
            "labels": list(self.labels or []),
            "assignees": list(self.assignees or []),
            "parent_id": self.parent_id,
            "custom_fields": dict(self.custom_fields or {}),
            "position": self.position,
            "due_date": self.due_date,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


class Comment(Base):
    """A comment on a ticket, optionally replying to another comment."""

    __tablename__ = "comments"
    __table_args__ = (Index("idx_comments_ticket", "ticket_id"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    ticket_id: Mapped[str] = mapped_column(String(64), ForeignKey("tickets.id", ondelete="CASCADE"))
    author: Mapped[str] = mapped_column(String, nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    parent_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "ticket_id": self.ticket_id,
            "author": self.author,
            "content": self.content,
            "parent_id": self.parent_id,
            "created_at": self.created_at,
        }


class Activity(Base):
    """Append-only audit record of a single ticket mutation."""

    __tablename__ = "activities"
    __table_args__ = (Index("idx_activities_ticket", "ticket_id"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    ticket_id: Mapped[str] = mapped_column(String(64), ForeignKey("tickets.id", ondelete="CASCADE"))
    actor: Mapped[str] = mapped_column(String, nullable=False)
    action: Mapped[str] = mapped_column(String, nullable=False)
    changes: Mapped[dict[str, Any]] = mapped_column(default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "ticket_id": self.ticket_id,
            "actor": self.actor,
            "action": self.action,
            "changes": self.changes,
            "created_at": self.created_at,
        }


class Attachment(Base):
    """File metadata attached to a ticket; the bytes live elsewhere."""

    __tablename__ = "attachments"
    __table_args__ = (Index("idx_attachments_ticket", "ticket_id"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    ticket_id: Mapped[str] = mapped_column(String(64), ForeignKey("tickets.id", ondelete="CASCADE"))
    filename: Mapped[str] = mapped_column(String, nullable=False)
    original_filename: Mapped[str] = mapped_column(String, nullable=False)
    mime_type: Mapped[str] = mapped_column(String, nullable=False)
    size_bytes: Mapped[int] = mapped_column(Integer, nullable=False)
    storage_path: Mapped[str] = mapped_column(String, nullable=False)
    uploaded_by: Mapped[str] = mapped_column(String, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "ticket_id": self.ticket_id,
            "filename": self.filename,
            "original_filename": self.original_filename,
            "mime_type": self.mime_type,
            "size_bytes": self.size_bytes,
            "storage_path": self.storage_path,
            "uploaded_by": self.uploaded_by,
            "created_at": self.created_at,
        }


class Workflow(Base):
    """Persisted (non built-in) workflow definition."""

    __tablename__ = "workflows"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String, nullable=False)
    states: Mapped[list[str]] = mapped_column(nullable=False)
    transitions: Mapped[dict[str, Any]] = mapped_column(nullable=False)


class StatusSnapshot(Base):
    """Per-date, per-status ticket count for a board."""

    __tablename__ = "status_snapshots"
    __table_args__ = (
        UniqueConstraint("board_id", "snapshot_date", "status", name="uq_snapshot_board_date_status"),
        Index("idx_snapshots_board_date", "board_id", "snapshot_date"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    board_id: Mapped[str] = mapped_column(String(64), ForeignKey("boards.id", ondelete="CASCADE"))
    snapshot_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False)
    count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    board: Mapped[Board] = relationship(back_populates="snapshots")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "board_id": self.board_id,
            "snapshot_date": self.snapshot_date.isoformat(),
            "status": self.status,
            "count": self.count,
        }
