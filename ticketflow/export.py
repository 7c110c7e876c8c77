"""Activity log export in JSON and CSV."""

from __future__ import annotations

import csv
import io
import json
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .diff import jsonable
from .models import Activity, ActivityAction

CSV_HEADER = ("timestamp", "ticket_id", "ticket_title", "actor", "action", "details")


@dataclass
class ActivityExport:
    data: str
    count: int
    format: str


def format_timestamp(value: datetime, timezone: str | None = None) -> str:
    """UTC as ``YYYY-MM-DD HH:MM:SS.mmm UTC``; a valid IANA zone as ``MM/DD/YYYY, HH:MM:SS (zone)``."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)

    if timezone:
        try:
            local = value.astimezone(ZoneInfo(timezone))
        except (ZoneInfoNotFoundError, ValueError):
            local = None
        if local is not None:
            return f"{local:%m/%d/%Y, %H:%M:%S} ({timezone})"

    utc = value.astimezone(UTC)
    return f"{utc:%Y-%m-%d %H:%M:%S}.{utc.microsecond // 1000:03d} UTC"


def format_activity_details(action: str, changes: Mapping[str, Any]) -> str:
    """Short human description of one activity for the CSV export."""
    if action == ActivityAction.STATUS_CHANGED and "status" in changes:
        return f"{changes['status']['old']} → {changes['status']['new']}"
    if action == ActivityAction.COMMENTED and "comment_id" in changes:
        return ""
    if action == ActivityAction.ATTACHMENT_ADDED and changes.get("filename"):
        return f"Added: {changes['filename']}"
    if action == ActivityAction.ATTACHMENT_DELETED and changes.get("filename"):
        return f"Deleted: {changes['filename']}"
    if action == ActivityAction.CREATED:
        return ""
    if action == ActivityAction.ASSIGNED and "assignees" in changes:
        return f"Assigned to: {', '.join(changes['assignees'])}"
    return json.dumps(jsonable(changes), separators=(",", ":"), ensure_ascii=False)


def export_activities(
    activities: Sequence[Activity],
    titles: Mapping[str, str],
    *,
    fmt: str = "json",
    timezone: str | None = None,
) -> ActivityExport:
    if fmt == "csv":
        buffer = io.StringIO()
        writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
        writer.writerow(CSV_HEADER)
        for activity in activities:
            writer.writerow(
                [
                    format_timestamp(activity.created_at, timezone),
                    activity.ticket_id,
                    titles.get(activity.ticket_id, ""),
                    activity.actor,
                    activity.action,
                    format_activity_details(activity.action, activity.changes or {}),
                ]
            )
        return ActivityExport(data=buffer.getvalue().rstrip("\n"), count=len(activities), format="csv")

    if fmt != "json":
        raise ValueError(f"Unsupported export format: {fmt}")

    records = []
    for activity in activities:
        record = jsonable(activity.to_dict())
        record["created_at"] = format_timestamp(activity.created_at, timezone)
        record["ticket_title"] = titles.get(activity.ticket_id, "")
        records.append(record)
    return ActivityExport(
        data=json.dumps(records, indent=2, ensure_ascii=False), count=len(activities), format="json"
    )
