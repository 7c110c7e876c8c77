"""Error types and helpers for the ticket engine."""

from __future__ import annotations

import re
from collections.abc import Iterable

import click


class TicketFlowError(Exception):
    """Base class for every error raised by the engine."""


class NotFoundError(TicketFlowError):
    """A board, ticket, workflow, comment or attachment does not exist."""

    def __init__(self, kind: str, identifier: str) -> None:
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind.capitalize()} {identifier} not found")


class InvalidTransitionError(TicketFlowError):
    """A status change is not permitted by the board's workflow."""

    def __init__(self, current: str, target: str, allowed: Iterable[str]) -> None:
        self.current = current
        self.target = target
        self.allowed = list(allowed)
        super().__init__(
            f"Invalid status transition: {current} -> {target}. "
            f"Allowed: {', '.join(self.allowed) or 'none'}"
        )


class InvalidWorkflowError(TicketFlowError):
    """A workflow definition is malformed."""


class InvalidFieldError(TicketFlowError, ValueError):
    """A ticket field carries a value the engine refuses to store."""


class StorageError(TicketFlowError):
    """Opaque failure raised by the persistence layer."""


class SchemaNotInitializedError(StorageError, click.ClickException):
    """Raised when the database schema/migrations have not been applied."""


_PG_MISSING_RELATION_RE = re.compile(r'relation "(?P<table>[^"]+)" does not exist', re.IGNORECASE)
_SQLITE_MISSING_TABLE_RE = re.compile(r"no such table:\s*(?P<table>[A-Za-z0-9_]+)", re.IGNORECASE)


def _unwrap_exception_chain(exc: BaseException) -> list[BaseException]:
    chain: list[BaseException] = []
    current: BaseException | None = exc
    while current is not None and current not in chain:
        chain.append(current)
        current = current.__cause__ or current.__context__
    return chain


def missing_table_name(exc: BaseException) -> str | None:
    """Best-effort extraction of the missing table name from a DB exception."""
    for e in _unwrap_exception_chain(exc):
        message = str(e)
        match = _PG_MISSING_RELATION_RE.search(message) or _SQLITE_MISSING_TABLE_RE.search(message)
        if match:
            return match.group("table")
    return None


def is_schema_missing_error(exc: BaseException) -> bool:
    """Return True if the exception looks like a missing-table / missing-schema error."""
    if missing_table_name(exc):
        return True

    # Fallback for drivers that don't format errors consistently.
    for e in _unwrap_exception_chain(exc):
        message = str(e).lower()
        if "undefinedtableerror" in message:
            return True
    return False


def schema_not_initialized_message(exc: BaseException) -> str:
    table = missing_table_name(exc)
    table_hint = f" (missing table `{table}`)" if table else ""

    lines: list[str] = [
        f"Database schema is not initialized{table_hint}.",
        "Run: `alembic upgrade head`",
        "Or for a throwaway database: `ticketflow init-db`",
    ]
    return "\n".join(lines)
