"""
Ticket orchestration: workflow-checked mutations with an audit trail and events.

Every mutating call follows the same order: storage write, change diff,
activity write, event emission. Storage calls are separate units of work, so
a call is not transactionally atomic; a failure part-way through leaves the
earlier writes in place and propagates to the caller unchanged.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

from .analytics import CFDEngine
from .config import Settings, settings
from .db import create_engine, init_db
from .diff import compute_changes, jsonable
from .errors import (
    InvalidFieldError,
    InvalidTransitionError,
    InvalidWorkflowError,
    NotFoundError,
    TicketFlowError,
)
from .events import ALL_EVENTS, DomainEvent, EventBus, EventType, RedisEventPublisher
from .export import ActivityExport, export_activities
from .models import (
    Activity,
    ActivityAction,
    Attachment,
    Board,
    Comment,
    Priority,
    StatusSnapshot,
    Ticket,
)
from .search import TicketQuery, parse_query
from .storage import SqlAlchemyStorage, StorageBackend
from .workflows import WorkflowDefinition, WorkflowRegistry

logger = logging.getLogger(__name__)

EXPORT_VERSION = "1.0.0"
PRIORITIES = frozenset(p.value for p in Priority)


@dataclass
class KanbanView:
    board: Board
    workflow: WorkflowDefinition
    columns: dict[str, list[Ticket]] = field(default_factory=dict)


@dataclass
class BulkUpdateResult:
    ticket_id: str
    ticket: Ticket | None = None
    error: TicketFlowError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class TicketEngine:
    """Façade over boards, tickets, comments, attachments, views and analytics."""

    def __init__(
        self,
        storage: StorageBackend,
        *,
        workflows: WorkflowRegistry | None = None,
        events: EventBus | None = None,
        config: Settings | None = None,
    ) -> None:
        self.config = config or settings
        self.storage = storage
        self.workflows = workflows or WorkflowRegistry(storage)
        self.events = events or EventBus(propagate_errors=self.config.propagate_event_errors)
        self.cfd = CFDEngine(storage, self.workflows)

    @classmethod
    async def create(cls, config: Settings | None = None, *, create_tables: bool = False) -> TicketEngine:
        """Build an engine over SQLAlchemy storage from settings."""
        config = config or settings
        engine = create_engine(config.async_database_url, echo=config.db_echo)
        if create_tables:
            await init_db(engine)
        instance = cls(SqlAlchemyStorage.from_engine(engine), config=config)

        if config.redis_publish_enabled:
            from .redis_client import get_redis_client

            publisher = RedisEventPublisher(
                get_redis_client(config.redis_url), channel_prefix=config.redis_channel_prefix
            )
            instance.subscribe(ALL_EVENTS, publisher)
        return instance

    async def close(self) -> None:
        await self.storage.close()

    # =========================================================================
    # Events
    # =========================================================================

    def subscribe(self, event_name: str, handler: Any) -> None:
        self.events.subscribe(event_name, handler)

    def unsubscribe(self, event_name: str, handler: Any) -> None:
        self.events.unsubscribe(event_name, handler)

    async def _emit(
        self,
        event_type: EventType,
        data: dict[str, Any],
        *,
        board_id: str | None = None,
        ticket_id: str | None = None,
    ) -> None:
        await self.events.emit(
            DomainEvent(type=event_type, data=data, board_id=board_id, ticket_id=ticket_id)
        )

    async def _record(self, ticket_id: str, actor: str, action: ActivityAction, changes: Mapping[str, Any]) -> Activity:
        return await self.storage.create_activity(
            {"ticket_id": ticket_id, "actor": actor, "action": action, "changes": jsonable(changes)}
        )

    # =========================================================================
    # Lookups
    # =========================================================================

    async def _require_board(self, board_id: str) -> Board:
        board = await self.storage.get_board(board_id)
        if board is None:
            raise NotFoundError("board", board_id)
        return board

    async def _require_ticket(self, ticket_id: str) -> Ticket:
        ticket = await self.storage.get_ticket(ticket_id)
        if ticket is None:
            raise NotFoundError("ticket", ticket_id)
        return ticket

    async def _board_workflow(self, board: Board) -> WorkflowDefinition:
        return await self.workflows.resolve(board.workflow_id)

    # =========================================================================
    # Boards
    # =========================================================================

    async def create_board(self, data: Mapping[str, Any]) -> Board:
        data = dict(data)
        data["workflow_id"] = data.get("workflow_id") or self.config.default_workflow
        await self.workflows.resolve(data["workflow_id"])

        board = await self.storage.create_board(data)
        logger.debug("Created board %s (%s)", board.id, board.workflow_id)
        await self._emit(EventType.BOARD_CREATED, {"board": board}, board_id=board.id)
        return board

    async def get_board(self, board_id: str) -> Board | None:
        return await self.storage.get_board(board_id)

    async def list_boards(self) -> list[Board]:
        return await self.storage.list_boards()

    async def update_board(self, board_id: str, updates: Mapping[str, Any]) -> Board:
        current = await self._require_board(board_id)
        if updates.get("workflow_id") and updates["workflow_id"] != current.workflow_id:
            workflow = await self.workflows.resolve(updates["workflow_id"])
            counts = await self.storage.count_tickets_by_status(board_id)
            orphaned = sorted(s for s, n in counts.items() if n and not workflow.has_state(s))
            if orphaned:
                raise InvalidWorkflowError(
                    f"Workflow {workflow.id} lacks status(es) {', '.join(orphaned)} "
                    f"used by tickets on board {board_id}"
                )

        board = await self.storage.update_board(board_id, updates)
        if board is None:
            raise NotFoundError("board", board_id)
        await self._emit(EventType.BOARD_UPDATED, {"board": board}, board_id=board.id)
        return board

    async def delete_board(self, board_id: str) -> None:
        board = await self._require_board(board_id)
        await self.storage.delete_board(board_id)
        logger.debug("Deleted board %s", board_id)
        await self._emit(EventType.BOARD_DELETED, {"id": board_id, "board": board}, board_id=board_id)

    # =========================================================================
    # Tickets
    # =========================================================================

    def _check_fields(self, fields: Mapping[str, Any], ticket_id: str | None = None) -> None:
        priority = fields.get("priority")
        if priority is not None and priority not in PRIORITIES:
            raise InvalidFieldError(
                f"Invalid priority '{priority}'. Allowed: {', '.join(p.value for p in Priority)}"
            )
        if ticket_id is not None and fields.get("parent_id") == ticket_id:
            raise InvalidFieldError(f"Ticket {ticket_id} cannot be its own parent")

    async def create_ticket(self, data: Mapping[str, Any], actor: str = "system") -> Ticket:
        data = dict(data)
        board_id = data.get("board_id")
        if not board_id:
            raise InvalidFieldError("board_id is required")
        if not data.get("title"):
            raise InvalidFieldError("title is required")
        self._check_fields(data)

        board = await self._require_board(board_id)
        workflow = await self._board_workflow(board)
        if not data.get("status"):
            data["status"] = workflow.initial_state
        elif not workflow.has_state(data["status"]):
            raise InvalidFieldError(
                f"Status '{data['status']}' is not a state of workflow {workflow.id}: "
                f"{', '.join(workflow.states)}"
            )

        ticket = await self.storage.create_ticket(data)
        await self._record(ticket.id, actor, ActivityAction.CREATED, {"ticket": ticket.to_dict()})
        logger.debug("Created ticket %s on board %s in %s", ticket.id, board_id, ticket.status)
        await self._emit(EventType.TICKET_CREATED, {"ticket": ticket}, board_id=board_id, ticket_id=ticket.id)
        return ticket

    async def get_ticket(self, ticket_id: str) -> Ticket | None:
        return await self.storage.get_ticket(ticket_id)

    async def list_tickets(self, query: TicketQuery | str | Mapping[str, Any] | None = None) -> list[Ticket]:
        """Accepts a ``TicketQuery``, a board id, or a mapping of query fields."""
        if query is None:
            query = TicketQuery()
        elif isinstance(query, str):
            query = TicketQuery(board_id=query)
        elif not isinstance(query, TicketQuery):
            query = TicketQuery(**query)
        return await self.storage.list_tickets(query)

    async def update_ticket(self, ticket_id: str, updates: Mapping[str, Any], actor: str = "system") -> Ticket:
        old = await self._require_ticket(ticket_id)
        self._check_fields(updates, ticket_id)

        target = updates.get("status", old.status)
        if not target:
            raise InvalidFieldError("status must not be empty")
        if target != old.status:
            board = await self._require_board(old.board_id)
            workflow = await self._board_workflow(board)
            if not workflow.can_transition(old.status, target):
                allowed = workflow.allowed_transitions(old.status)
                logger.info(
                    "Rejected transition %s -> %s for ticket %s", old.status, target, ticket_id
                )
                raise InvalidTransitionError(old.status, target, allowed)

        before = old.to_dict()
        ticket = await self.storage.update_ticket(ticket_id, updates)
        if ticket is None:
            raise NotFoundError("ticket", ticket_id)

        changes = compute_changes(before, ticket.to_dict(), updates.keys())
        if changes:
            action = ActivityAction.STATUS_CHANGED if "status" in changes else ActivityAction.UPDATED
            await self._record(ticket_id, actor, action, changes)
            await self._emit(
                EventType.TICKET_UPDATED,
                {"ticket": ticket, "changes": changes},
                board_id=ticket.board_id,
                ticket_id=ticket_id,
            )
        return ticket

    async def move_ticket(self, ticket_id: str, status: str, actor: str = "system") -> Ticket:
        return await self.update_ticket(ticket_id, {"status": status}, actor)

    async def delete_ticket(self, ticket_id: str, actor: str = "system") -> None:
        ticket = await self._require_ticket(ticket_id)
        await self.storage.delete_ticket(ticket_id)
        logger.debug("Ticket %s deleted by %s", ticket_id, actor)
        await self._emit(
            EventType.TICKET_DELETED,
            {"id": ticket_id, "ticket": ticket},
            board_id=ticket.board_id,
            ticket_id=ticket_id,
        )

    async def bulk_update_tickets(
        self,
        ticket_ids: Iterable[str],
        updates: Mapping[str, Any],
        actor: str = "system",
        *,
        stop_on_error: bool = True,
    ) -> list[BulkUpdateResult]:
        """Apply ``update_ticket`` to each id in turn. Not atomic.

        Tickets updated before a failure stay updated. With ``stop_on_error``
        the failure is raised; otherwise it is recorded in that id's result and
        the remaining ids are still processed.
        """
        results: list[BulkUpdateResult] = []
        for ticket_id in ticket_ids:
            try:
                ticket = await self.update_ticket(ticket_id, updates, actor)
            except TicketFlowError as exc:
                if stop_on_error:
                    raise
                logger.warning("Bulk update skipped ticket %s: %s", ticket_id, exc)
                results.append(BulkUpdateResult(ticket_id, error=exc))
            else:
                results.append(BulkUpdateResult(ticket_id, ticket=ticket))
        return results

    async def assign_ticket(self, ticket_id: str, assignees: Sequence[str], actor: str = "system") -> Ticket:
        ticket = await self.update_ticket(ticket_id, {"assignees": list(assignees)}, actor)
        await self._record(ticket_id, actor, ActivityAction.ASSIGNED, {"assignees": list(assignees)})
        return ticket

    # =========================================================================
    # Comments
    # =========================================================================

    async def add_comment(self, ticket_id: str, content: str, author: str) -> Comment:
        ticket = await self._require_ticket(ticket_id)
        comment = await self.storage.create_comment(
            {"ticket_id": ticket_id, "author": author, "content": content}
        )
        await self._record(ticket_id, author, ActivityAction.COMMENTED, {"comment_id": comment.id})
        await self._emit(
            EventType.COMMENT_CREATED, {"comment": comment}, board_id=ticket.board_id, ticket_id=ticket_id
        )
        return comment

    async def reply_to_comment(self, ticket_id: str, parent_id: str, content: str, author: str) -> Comment:
        """Threaded reply; unlike ``add_comment`` this writes no ticket activity."""
        parent = await self.storage.get_comment(parent_id)
        if parent is None:
            raise NotFoundError("comment", parent_id)
        ticket = await self._require_ticket(ticket_id)

        comment = await self.storage.create_comment(
            {"ticket_id": ticket_id, "author": author, "content": content, "parent_id": parent_id}
        )
        await self._emit(
            EventType.COMMENT_CREATED, {"comment": comment}, board_id=ticket.board_id, ticket_id=ticket_id
        )
        return comment

    async def list_comments(self, ticket_id: str) -> list[Comment]:
        return await self.storage.list_comments(ticket_id)

    async def delete_comment(self, comment_id: str) -> None:
        if await self.storage.get_comment(comment_id) is None:
            raise NotFoundError("comment", comment_id)
        await self.storage.delete_comment(comment_id)

    # =========================================================================
    # Activity feed
    # =========================================================================

    async def get_activity(self, ticket_id: str, limit: int | None = None) -> list[Activity]:
        return await self.storage.list_activities(ticket_id, limit or self.config.activity_limit)

    async def export_activity_log(
        self,
        board_id: str,
        *,
        fmt: str = "json",
        timezone: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        actors: Sequence[str] | None = None,
        actions: Sequence[str] | None = None,
        limit: int | None = None,
    ) -> ActivityExport:
        activities = await self.storage.query_activity(
            board_id, start=start, end=end, actors=actors, actions=actions, limit=limit
        )

        titles: dict[str, str] = {}
        for ticket_id in dict.fromkeys(a.ticket_id for a in activities):
            ticket = await self.storage.get_ticket(ticket_id)
            if ticket is not None:
                titles[ticket_id] = ticket.title
        return export_activities(activities, titles, fmt=fmt, timezone=timezone)

    # =========================================================================
    # Workflows
    # =========================================================================

    async def get_workflow(self, workflow_id: str) -> WorkflowDefinition:
        return await self.workflows.resolve(workflow_id)

    async def create_workflow(self, data: WorkflowDefinition | Mapping[str, Any]) -> WorkflowDefinition:
        return await self.workflows.register(data)

    async def list_workflows(self) -> list[WorkflowDefinition]:
        return await self.workflows.list_workflows()

    # =========================================================================
    # Attachments
    # =========================================================================

    async def create_attachment(self, data: Mapping[str, Any], actor: str = "system") -> Attachment:
        attachment = await self.storage.create_attachment(data)

        ticket = await self.storage.get_ticket(attachment.ticket_id)
        if ticket is not None:
            await self._record(
                ticket.id,
                actor,
                ActivityAction.ATTACHMENT_ADDED,
                {"attachment_id": attachment.id, "filename": attachment.original_filename},
            )
        await self._emit(
            EventType.ATTACHMENT_CREATED,
            {"attachment": attachment},
            board_id=ticket.board_id if ticket else None,
            ticket_id=attachment.ticket_id,
        )
        return attachment

    async def add_attachment(self, ticket_id: str, file_data: Mapping[str, Any], uploaded_by: str) -> Attachment:
        await self._require_ticket(ticket_id)
        return await self.create_attachment(
            {**file_data, "ticket_id": ticket_id, "uploaded_by": uploaded_by}, actor=uploaded_by
        )

    async def get_attachment(self, attachment_id: str) -> Attachment | None:
        return await self.storage.get_attachment(attachment_id)

    async def list_attachments(self, ticket_id: str) -> list[Attachment]:
        return await self.storage.list_attachments(ticket_id)

    async def delete_attachment(self, attachment_id: str, actor: str = "system") -> None:
        attachment = await self.storage.get_attachment(attachment_id)
        if attachment is None:
            raise NotFoundError("attachment", attachment_id)
        ticket = await self._require_ticket(attachment.ticket_id)

        await self.storage.delete_attachment(attachment_id)
        await self._record(
            ticket.id,
            actor,
            ActivityAction.ATTACHMENT_DELETED,
            {"attachment_id": attachment_id, "filename": attachment.original_filename},
        )
        await self._emit(
            EventType.ATTACHMENT_DELETED,
            {"id": attachment_id, "attachment": attachment},
            board_id=ticket.board_id,
            ticket_id=ticket.id,
        )

    # =========================================================================
    # Views
    # =========================================================================

    async def get_kanban_view(self, board_id: str, *, include_subtasks: bool = True) -> KanbanView:
        board = await self._require_board(board_id)
        workflow = await self._board_workflow(board)
        tickets = await self.storage.list_tickets(
            TicketQuery(board_id=board_id, top_level_only=not include_subtasks)
        )

        columns: dict[str, list[Ticket]] = {state: [] for state in workflow.states}
        for ticket in tickets:
            if ticket.status in columns:
                columns[ticket.status].append(ticket)
        return KanbanView(board=board, workflow=workflow, columns=columns)

    async def get_backlog(self, board_id: str) -> list[Ticket]:
        board = await self._require_board(board_id)
        workflow = await self._board_workflow(board)
        return await self.storage.list_tickets(
            TicketQuery(board_id=board_id, status=workflow.initial_state)
        )

    # =========================================================================
    # Subtasks
    # =========================================================================

    async def get_subtasks(self, parent_id: str) -> list[Ticket]:
        return await self.storage.list_tickets(TicketQuery(parent_id=parent_id))

    async def create_subtask(self, parent_id: str, data: Mapping[str, Any], actor: str = "system") -> Ticket:
        parent = await self.storage.get_ticket(parent_id)
        if parent is None:
            raise NotFoundError("ticket", parent_id)
        return await self.create_ticket(
            {**data, "board_id": parent.board_id, "parent_id": parent_id}, actor
        )

    # =========================================================================
    # Search
    # =========================================================================

    async def search(self, board_id: str, query: str) -> list[Ticket]:
        return await self.storage.list_tickets(parse_query(query, board_id=board_id))

    # =========================================================================
    # Export / import
    # =========================================================================

    async def export_data(self) -> dict[str, Any]:
        boards = await self.storage.list_boards()
        tickets = await self.storage.list_tickets(TicketQuery())
        return {
            "boards": [jsonable(b) for b in boards],
            "tickets": [jsonable(t) for t in tickets],
            "version": EXPORT_VERSION,
        }

    async def import_data(self, data: Mapping[str, Any]) -> None:
        """Write boards, then tickets, straight through storage: no activities, no events."""
        for board in data.get("boards") or []:
            await self.storage.create_board(board)
        for ticket in data.get("tickets") or []:
            await self.storage.create_ticket(ticket)

    # =========================================================================
    # Cumulative flow
    # =========================================================================

    async def take_snapshot(self, board_id: str, snapshot_date: date | str | None = None) -> list[StatusSnapshot]:
        return await self.cfd.take_snapshot(board_id, snapshot_date)

    async def get_cfd_data(
        self, board_id: str, start: date | str | None = None, end: date | str | None = None
    ) -> list[dict[str, Any]]:
        return await self.cfd.get_cfd_data(board_id, start, end)

    async def backfill_snapshots(
        self, board_id: str, start: date | str | None = None, end: date | str | None = None
    ) -> list[StatusSnapshot]:
        return await self.cfd.backfill_snapshots(board_id, start, end)
