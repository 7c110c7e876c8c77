"""
ticketflow

Workflow-governed ticket engine: boards with state-machine workflows, an
append-only activity trail, kanban and cumulative-flow views, and a compact
search language, on top of async SQLAlchemy storage.
"""

__version__ = "0.1.0"

# Configuration
from ticketflow.config import Settings

# Analytics
from ticketflow.analytics import CFDEngine

# Orchestration
from ticketflow.engine import BulkUpdateResult, KanbanView, TicketEngine

# Errors
from ticketflow.errors import (
    InvalidFieldError,
    InvalidTransitionError,
    InvalidWorkflowError,
    NotFoundError,
    StorageError,
    TicketFlowError,
)

# Events
from ticketflow.events import DomainEvent, EventBus, EventType
from ticketflow.export import ActivityExport

# Models
from ticketflow.models import (
    Activity,
    ActivityAction,
    Attachment,
    Board,
    Comment,
    Priority,
    StatusSnapshot,
    Ticket,
)

# Search
from ticketflow.search import TicketQuery, parse_query

# Storage
from ticketflow.storage import SqlAlchemyStorage, StorageBackend

# Workflows
from ticketflow.workflows import BUILTIN_WORKFLOWS, WorkflowDefinition, WorkflowRegistry

__all__ = [
    # Version
    "__version__",
    # Config
    "Settings",
    # Engine
    "TicketEngine",
    "KanbanView",
    "BulkUpdateResult",
    "CFDEngine",
    "ActivityExport",
    # Models
    "Board",
    "Ticket",
    "Comment",
    "Activity",
    "ActivityAction",
    "Attachment",
    "Priority",
    "StatusSnapshot",
    # Workflows
    "WorkflowDefinition",
    "WorkflowRegistry",
    "BUILTIN_WORKFLOWS",
    # Events
    "EventBus",
    "EventType",
    "DomainEvent",
    # Search
    "TicketQuery",
    "parse_query",
    # Storage
    "StorageBackend",
    "SqlAlchemyStorage",
    # Errors
    "TicketFlowError",
    "NotFoundError",
    "InvalidTransitionError",
    "InvalidWorkflowError",
    "InvalidFieldError",
    "StorageError",
]
