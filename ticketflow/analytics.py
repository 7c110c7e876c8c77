"""
Cumulative-flow-diagram (CFD) snapshots for boards.

A snapshot is the number of tickets per workflow status on a board for one
calendar day. Snapshots are derived data: re-taking one for the same day
overwrites the stored counts.
"""

from __future__ import annotations

import logging
from datetime import UTC, date, datetime
from typing import Any

from .errors import InvalidFieldError, NotFoundError
from .models import ActivityAction, StatusSnapshot
from .storage import StorageBackend
from .workflows import WorkflowRegistry

logger = logging.getLogger(__name__)


def today_utc() -> date:
    return datetime.now(UTC).date()


def coerce_date(value: date | datetime | str | None) -> date | None:
    """Accept a ``date``, a ``datetime`` or a ``YYYY-MM-DD`` string."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(value[:10])
    except ValueError as exc:
        raise InvalidFieldError(f"Invalid date '{value}', expected YYYY-MM-DD") from exc


def _activity_date(created_at: datetime) -> date:
    if created_at.tzinfo is not None:
        created_at = created_at.astimezone(UTC)
    return created_at.date()


class CFDEngine:
    """Takes, reads and backfills per-status snapshots."""

    def __init__(self, storage: StorageBackend, workflows: WorkflowRegistry) -> None:
        self._storage = storage
        self._workflows = workflows

    async def take_snapshot(
        self, board_id: str, snapshot_date: date | str | None = None
    ) -> list[StatusSnapshot]:
        day = coerce_date(snapshot_date) or today_utc()

        board = await self._storage.get_board(board_id)
        if board is None:
            raise NotFoundError("board", board_id)
        workflow = await self._workflows.resolve(board.workflow_id)

        current = await self._storage.count_tickets_by_status(board_id)
        counts = {state: current.get(state, 0) for state in workflow.states}

        snapshots = await self._storage.upsert_snapshots(board_id, day, counts)
        logger.debug("Snapshot for board %s on %s: %s", board_id, day.isoformat(), counts)
        return snapshots

    async def get_cfd_data(
        self,
        board_id: str,
        start: date | str | None = None,
        end: date | str | None = None,
    ) -> list[dict[str, Any]]:
        """One record per date, ``{"date": ..., <status>: count}``, sparse and date-ascending."""
        rows = await self._storage.list_snapshots(
            board_id, start=coerce_date(start), end=coerce_date(end)
        )
        rows.sort(key=lambda r: (r.snapshot_date, r.status))

        grouped: dict[date, dict[str, Any]] = {}
        for row in rows:
            record = grouped.setdefault(row.snapshot_date, {"date": row.snapshot_date.isoformat()})
            record[row.status] = row.count
        return list(grouped.values())

    async def backfill_snapshots(
        self,
        board_id: str,
        start: date | str | None = None,
        end: date | str | None = None,
    ) -> list[StatusSnapshot]:
        """Take a snapshot for every day on which a ticket on the board changed status.

        Known limitation: each snapshot counts tickets by their *current* status,
        not the status they had on that day, so backfilled history is an
        approximation rather than a replay of the activity log.
        """
        start_day, end_day = coerce_date(start), coerce_date(end)

        board = await self._storage.get_board(board_id)
        if board is None:
            raise NotFoundError("board", board_id)

        activities = await self._storage.query_activity(
            board_id, actions=[ActivityAction.STATUS_CHANGED]
        )
        days: set[date] = set()
        for activity in activities:
            day = _activity_date(activity.created_at)
            if start_day is not None and day < start_day:
                continue
            if end_day is not None and day > end_day:
                continue
            days.add(day)

        snapshots: list[StatusSnapshot] = []
        for day in sorted(days):
            snapshots.extend(await self.take_snapshot(board_id, day))
        logger.info("Backfilled %d day(s) of snapshots for board %s", len(days), board_id)
        return snapshots
