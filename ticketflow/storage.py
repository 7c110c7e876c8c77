"""Storage contract consumed by the engine, and its async SQLAlchemy implementation."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping, Sequence
from datetime import UTC, date, datetime
from typing import Any

from sqlalchemy import String, cast, delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from .db import create_session_factory, session_scope
from .models import (
    Activity,
    Attachment,
    Board,
    Comment,
    StatusSnapshot,
    Ticket,
    Workflow,
    utcnow,
)
from .search import TicketQuery

BOARD_FIELDS = ("name", "description", "workflow_id")
TICKET_FIELDS = (
    "title",
    "description",
    "status",
    "priority",
    "labels",
    "assignees",
    "parent_id",
    "custom_fields",
    "position",
    "due_date",
)
ATTACHMENT_FIELDS = (
    "filename",
    "original_filename",
    "mime_type",
    "size_bytes",
    "storage_path",
    "uploaded_by",
)


class StorageBackend(ABC):
    """Everything the engine needs from persistence. All operations are async."""

    async def close(self) -> None:
        return None

    # Boards
    @abstractmethod
    async def create_board(self, data: Mapping[str, Any]) -> Board: ...

    @abstractmethod
    async def get_board(self, board_id: str) -> Board | None: ...

    @abstractmethod
    async def list_boards(self) -> list[Board]: ...

    @abstractmethod
    async def update_board(self, board_id: str, updates: Mapping[str, Any]) -> Board | None: ...

    @abstractmethod
    async def delete_board(self, board_id: str) -> None: ...

    # Tickets
    @abstractmethod
    async def create_ticket(self, data: Mapping[str, Any]) -> Ticket: ...

    @abstractmethod
    async def get_ticket(self, ticket_id: str) -> Ticket | None: ...

    @abstractmethod
    async def list_tickets(self, query: TicketQuery) -> list[Ticket]: ...

    @abstractmethod
    async def update_ticket(self, ticket_id: str, updates: Mapping[str, Any]) -> Ticket | None: ...

    @abstractmethod
    async def delete_ticket(self, ticket_id: str) -> None: ...

    async def bulk_update_tickets(
        self, ticket_ids: Iterable[str], updates: Mapping[str, Any]
    ) -> list[Ticket | None]:
        return [await self.update_ticket(ticket_id, updates) for ticket_id in ticket_ids]

    @abstractmethod
    async def count_tickets_by_status(self, board_id: str) -> dict[str, int]: ...

    # Comments
    @abstractmethod
    async def create_comment(self, data: Mapping[str, Any]) -> Comment: ...

    @abstractmethod
    async def get_comment(self, comment_id: str) -> Comment | None: ...

    @abstractmethod
    async def list_comments(self, ticket_id: str) -> list[Comment]: ...

    @abstractmethod
    async def delete_comment(self, comment_id: str) -> None: ...

    # Activities
    @abstractmethod
    async def create_activity(self, data: Mapping[str, Any]) -> Activity: ...

    @abstractmethod
    async def list_activities(self, ticket_id: str, limit: int = 50) -> list[Activity]: ...

    @abstractmethod
    async def query_activity(
        self,
        board_id: str,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
        actors: Sequence[str] | None = None,
        actions: Sequence[str] | None = None,
        limit: int | None = None,
    ) -> list[Activity]: ...

    # Workflows
    @abstractmethod
    async def get_workflow(self, workflow_id: str) -> Workflow | None: ...

    @abstractmethod
    async def create_workflow(self, data: Mapping[str, Any]) -> Workflow: ...

    @abstractmethod
    async def list_workflows(self) -> list[Workflow]: ...

    # Attachments
    @abstractmethod
    async def create_attachment(self, data: Mapping[str, Any]) -> Attachment: ...

    @abstractmethod
    async def get_attachment(self, attachment_id: str) -> Attachment | None: ...

    @abstractmethod
    async def list_attachments(self, ticket_id: str) -> list[Attachment]: ...

    @abstractmethod
    async def delete_attachment(self, attachment_id: str) -> None: ...

    # Status snapshots
    @abstractmethod
    async def upsert_snapshots(
        self, board_id: str, snapshot_date: date, counts: Mapping[str, int]
    ) -> list[StatusSnapshot]: ...

    @abstractmethod
    async def list_snapshots(
        self, board_id: str, *, start: date | None = None, end: date | None = None
    ) -> list[StatusSnapshot]: ...


# =============================================================================
# Value coercion
# =============================================================================


def _unique(values: Iterable[str] | None) -> list[str]:
    return list(dict.fromkeys(values or []))


def _to_datetime(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    elif isinstance(value, date) and not isinstance(value, datetime):
        value = datetime(value.year, value.month, value.day)
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _like_escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _ticket_value(key: str, value: Any) -> Any:
    if key in ("labels", "assignees"):
        return _unique(value)
    if key == "custom_fields":
        return dict(value or {})
    if key == "due_date":
        return _to_datetime(value)
    if key == "position":
        return int(value or 0)
    if key == "description":
        return value or ""
    return value


class SqlAlchemyStorage(StorageBackend):
    """Relational storage over SQLAlchemy's async ORM; one session per operation."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        engine: AsyncEngine | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._engine = engine

    @classmethod
    def from_engine(cls, engine: AsyncEngine) -> SqlAlchemyStorage:
        return cls(create_session_factory(engine), engine=engine)

    def _session(self):
        return session_scope(self._session_factory)

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()

    # =========================================================================
    # Boards
    # =========================================================================

    async def create_board(self, data: Mapping[str, Any]) -> Board:
        board = Board(
            name=data["name"],
            description=data.get("description") or "",
            workflow_id=data.get("workflow_id") or "kanban",
        )
        if data.get("id"):
            board.id = data["id"]
        if data.get("created_at"):
            board.created_at = _to_datetime(data["created_at"])
        async with self._session() as session:
            session.add(board)
            await session.flush()
        return board

    async def get_board(self, board_id: str) -> Board | None:
        async with self._session() as session:
            return await session.get(Board, board_id)

    async def list_boards(self) -> list[Board]:
        async with self._session() as session:
            result = await session.execute(select(Board).order_by(Board.created_at.desc()))
            return list(result.scalars().all())

    async def update_board(self, board_id: str, updates: Mapping[str, Any]) -> Board | None:
        async with self._session() as session:
            board = await session.get(Board, board_id)
            if board is None:
                return None
            for key in BOARD_FIELDS:
                if key in updates:
                    setattr(board, key, updates[key])
            await session.flush()
            return board

    async def delete_board(self, board_id: str) -> None:
        async with self._session() as session:
            await session.execute(delete(Board).where(Board.id == board_id))

    # =========================================================================
    # Tickets
    # =========================================================================

    async def create_ticket(self, data: Mapping[str, Any]) -> Ticket:
        now = utcnow()
        ticket = Ticket(
            board_id=data["board_id"],
            title=data["title"],
            description=data.get("description") or "",
            status=data.get("status") or "backlog",
            priority=data.get("priority") or "medium",
            labels=_unique(data.get("labels")),
            assignees=_unique(data.get("assignees")),
            parent_id=data.get("parent_id"),
            custom_fields=dict(data.get("custom_fields") or {}),
            position=int(data.get("position") or 0),
            due_date=_to_datetime(data.get("due_date")),
            created_at=_to_datetime(data.get("created_at")) or now,
            updated_at=_to_datetime(data.get("updated_at")) or now,
        )
        if data.get("id"):
            ticket.id = data["id"]
        async with self._session() as session:
            session.add(ticket)
            await session.flush()
        return ticket

    async def get_ticket(self, ticket_id: str) -> Ticket | None:
        async with self._session() as session:
            return await session.get(Ticket, ticket_id)

    async def list_tickets(self, query: TicketQuery) -> list[Ticket]:
        stmt = select(Ticket)
        if query.board_id:
            stmt = stmt.where(Ticket.board_id == query.board_id)
        if query.status:
            stmt = stmt.where(Ticket.status == query.status)
        if query.priority:
            stmt = stmt.where(Ticket.priority == query.priority)
        if query.assignee:
            pattern = f'%"{_like_escape(query.assignee)}"%'
            stmt = stmt.where(cast(Ticket.assignees, String).like(pattern, escape="\\"))
        if query.label:
            pattern = f'%"{_like_escape(query.label)}"%'
            stmt = stmt.where(cast(Ticket.labels, String).like(pattern, escape="\\"))
        if query.top_level_only:
            stmt = stmt.where(Ticket.parent_id.is_(None))
        elif query.parent_id:
            stmt = stmt.where(Ticket.parent_id == query.parent_id)
        if query.search:
            pattern = f"%{_like_escape(query.search)}%"
            stmt = stmt.where(
                or_(Ticket.title.ilike(pattern, escape="\\"), Ticket.description.ilike(pattern, escape="\\"))
            )

        stmt = stmt.order_by(Ticket.position.asc(), Ticket.created_at.desc())
        if query.limit:
            stmt = stmt.limit(query.limit)
        if query.offset:
            stmt = stmt.offset(query.offset)

        async with self._session() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def update_ticket(self, ticket_id: str, updates: Mapping[str, Any]) -> Ticket | None:
        async with self._session() as session:
            ticket = await session.get(Ticket, ticket_id)
            if ticket is None:
                return None
            touched = False
            for key in TICKET_FIELDS:
                if key in updates:
                    setattr(ticket, key, _ticket_value(key, updates[key]))
                    touched = True
            if touched:
                ticket.updated_at = utcnow()
            await session.flush()
            return ticket

    async def delete_ticket(self, ticket_id: str) -> None:
        async with self._session() as session:
            await session.execute(delete(Ticket).where(Ticket.id == ticket_id))

    async def count_tickets_by_status(self, board_id: str) -> dict[str, int]:
        stmt = (
            select(Ticket.status, func.count(Ticket.id))
            .where(Ticket.board_id == board_id)
            .group_by(Ticket.status)
        )
        async with self._session() as session:
            result = await session.execute(stmt)
            return {status: int(count) for status, count in result.all()}

    # =========================================================================
    # Comments
    # =========================================================================

    async def create_comment(self, data: Mapping[str, Any]) -> Comment:
        comment = Comment(
            ticket_id=data["ticket_id"],
            author=data["author"],
            content=data["content"],
            parent_id=data.get("parent_id"),
        )
        async with self._session() as session:
            session.add(comment)
            await session.flush()
        return comment

    async def get_comment(self, comment_id: str) -> Comment | None:
        async with self._session() as session:
            return await session.get(Comment, comment_id)

    async def list_comments(self, ticket_id: str) -> list[Comment]:
        async with self._session() as session:
            result = await session.execute(
                select(Comment).where(Comment.ticket_id == ticket_id).order_by(Comment.created_at.asc())
            )
            return list(result.scalars().all())

    async def delete_comment(self, comment_id: str) -> None:
        async with self._session() as session:
            await session.execute(delete(Comment).where(Comment.id == comment_id))

    # =========================================================================
    # Activities
    # =========================================================================

    async def create_activity(self, data: Mapping[str, Any]) -> Activity:
        activity = Activity(
            ticket_id=data["ticket_id"],
            actor=data["actor"],
            action=str(data["action"]),
            changes=dict(data.get("changes") or {}),
        )
        async with self._session() as session:
            session.add(activity)
            await session.flush()
        return activity

    async def list_activities(self, ticket_id: str, limit: int = 50) -> list[Activity]:
        async with self._session() as session:
            result = await session.execute(
                select(Activity)
                .where(Activity.ticket_id == ticket_id)
                .order_by(Activity.created_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def query_activity(
        self,
        board_id: str,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
        actors: Sequence[str] | None = None,
        actions: Sequence[str] | None = None,
        limit: int | None = None,
    ) -> list[Activity]:
        stmt = (
            select(Activity)
            .join(Ticket, Activity.ticket_id == Ticket.id)
            .where(Ticket.board_id == board_id)
        )
        if start is not None:
            stmt = stmt.where(Activity.created_at >= _to_datetime(start))
        if end is not None:
            stmt = stmt.where(Activity.created_at <= _to_datetime(end))
        if actors:
            stmt = stmt.where(Activity.actor.in_(list(actors)))
        if actions:
            stmt = stmt.where(Activity.action.in_([str(a) for a in actions]))
        stmt = stmt.order_by(Activity.created_at.desc())
        if limit:
            stmt = stmt.limit(limit)

        async with self._session() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    # =========================================================================
    # Workflows
    # =========================================================================

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        async with self._session() as session:
            return await session.get(Workflow, workflow_id)

    async def create_workflow(self, data: Mapping[str, Any]) -> Workflow:
        # Re-registering an id replaces the stored definition.
        async with self._session() as session:
            workflow = await session.get(Workflow, data["id"])
            if workflow is None:
                workflow = Workflow(id=data["id"])
                session.add(workflow)
            workflow.name = data["name"]
            workflow.states = list(data["states"])
            workflow.transitions = {k: list(v) for k, v in data["transitions"].items()}
            await session.flush()
            return workflow

    async def list_workflows(self) -> list[Workflow]:
        async with self._session() as session:
            result = await session.execute(select(Workflow).order_by(Workflow.id))
            return list(result.scalars().all())

    # =========================================================================
    # Attachments
    # =========================================================================

    async def create_attachment(self, data: Mapping[str, Any]) -> Attachment:
        attachment = Attachment(ticket_id=data["ticket_id"], **{k: data[k] for k in ATTACHMENT_FIELDS})
        async with self._session() as session:
            session.add(attachment)
            await session.flush()
        return attachment

    async def get_attachment(self, attachment_id: str) -> Attachment | None:
        async with self._session() as session:
            return await session.get(Attachment, attachment_id)

    async def list_attachments(self, ticket_id: str) -> list[Attachment]:
        async with self._session() as session:
            result = await session.execute(
                select(Attachment)
                .where(Attachment.ticket_id == ticket_id)
                .order_by(Attachment.created_at.desc())
            )
            return list(result.scalars().all())

    async def delete_attachment(self, attachment_id: str) -> None:
        async with self._session() as session:
            await session.execute(delete(Attachment).where(Attachment.id == attachment_id))

    # =========================================================================
    # Status snapshots
    # =========================================================================

    async def upsert_snapshots(
        self, board_id: str, snapshot_date: date, counts: Mapping[str, int]
    ) -> list[StatusSnapshot]:
        async with self._session() as session:
            result = await session.execute(
                select(StatusSnapshot).where(
                    StatusSnapshot.board_id == board_id,
                    StatusSnapshot.snapshot_date == snapshot_date,
                )
            )
            existing = {row.status: row for row in result.scalars().all()}

            rows: list[StatusSnapshot] = []
            for status, count in counts.items():
                row = existing.get(status)
                if row is None:
                    row = StatusSnapshot(
                        board_id=board_id,
                        snapshot_date=snapshot_date,
                        status=status,
                        count=count,
                    )
                    session.add(row)
                else:
                    row.count = count
                rows.append(row)
            await session.flush()
            return rows

    async def list_snapshots(
        self, board_id: str, *, start: date | None = None, end: date | None = None
    ) -> list[StatusSnapshot]:
        stmt = select(StatusSnapshot).where(StatusSnapshot.board_id == board_id)
        if start is not None:
            stmt = stmt.where(StatusSnapshot.snapshot_date >= start)
        if end is not None:
            stmt = stmt.where(StatusSnapshot.snapshot_date <= end)
        stmt = stmt.order_by(StatusSnapshot.snapshot_date.asc(), StatusSnapshot.status.asc())

        async with self._session() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())
