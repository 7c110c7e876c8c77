"""
Compact query language for ticket search.

    status:in_progress assignee:alice label:bug login timeout

``key:value`` tokens with a known key filter that field exactly (the last
occurrence of a key wins); every other token is free text matched as a
substring of title or description.
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from typing import Any

FIELD_KEYS = ("status", "priority", "assignee", "label")


@dataclass
class TicketQuery:
    """Structured ticket filter understood by the storage listing operation."""

    board_id: str | None = None
    status: str | None = None
    priority: str | None = None
    assignee: str | None = None
    label: str | None = None
    parent_id: str | None = None
    top_level_only: bool = False
    search: str | None = None
    limit: int | None = None
    offset: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self) if getattr(self, f.name) not in (None, False)}


def parse_query(text: str, board_id: str | None = None) -> TicketQuery:
    query = TicketQuery(board_id=board_id)
    words: list[str] = []

    for token in text.split():
        key, sep, value = token.partition(":")
        if sep and key in FIELD_KEYS and value:
            setattr(query, key, value)
        else:
            words.append(token)

    search = " ".join(words).strip()
    query.search = search or None
    return query
