"""
Workflow state machines and the registry that resolves them for boards.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

from .errors import InvalidWorkflowError, NotFoundError

if TYPE_CHECKING:
    from .models import Workflow
    from .storage import StorageBackend

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WorkflowDefinition:
    """A named state machine: ordered states plus legal transitions."""

    id: str
    name: str
    states: tuple[str, ...]
    transitions: Mapping[str, tuple[str, ...]] = field(default_factory=dict)

    @classmethod
    def build(
        cls,
        id: str,
        name: str,
        states: Iterable[str],
        transitions: Mapping[str, Iterable[str]],
    ) -> WorkflowDefinition:
        return cls(
            id=id,
            name=name,
            states=tuple(states),
            transitions=MappingProxyType(
                {state: tuple(targets) for state, targets in transitions.items()}
            ),
        )

    @classmethod
    def from_record(cls, record: Workflow) -> WorkflowDefinition:
        return cls.build(record.id, record.name, record.states, record.transitions)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> WorkflowDefinition:
        try:
            return cls.build(
                data["id"], data.get("name") or data["id"], data["states"], data.get("transitions") or {}
            )
        except (KeyError, TypeError) as exc:
            raise InvalidWorkflowError(f"Malformed workflow definition: {exc}") from exc

    @property
    def initial_state(self) -> str:
        return self.states[0]

    @property
    def terminal_states(self) -> tuple[str, ...]:
        return tuple(s for s in self.states if not self.transitions.get(s))

    def has_state(self, state: str) -> bool:
        return state in self.states

    def allowed_transitions(self, state: str) -> tuple[str, ...]:
        return self.transitions.get(state, ())

    def can_transition(self, current: str, target: str) -> bool:
        return target in self.allowed_transitions(current)

    def validate(self) -> None:
        """Raise InvalidWorkflowError unless every referenced state is declared."""
        if not self.id:
            raise InvalidWorkflowError("Workflow id must not be empty")
        if not self.states:
            raise InvalidWorkflowError(f"Workflow {self.id} declares no states")
        if len(set(self.states)) != len(self.states):
            raise InvalidWorkflowError(f"Workflow {self.id} declares duplicate states")

        declared = set(self.states)
        for source, targets in self.transitions.items():
            if source not in declared:
                raise InvalidWorkflowError(
                    f"Workflow {self.id}: transition source '{source}' is not a declared state"
                )
            undeclared = [t for t in targets if t not in declared]
            if undeclared:
                raise InvalidWorkflowError(
                    f"Workflow {self.id}: transition {source} -> {', '.join(undeclared)} "
                    "targets undeclared states"
                )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "states": list(self.states),
            "transitions": {state: list(targets) for state, targets in self.transitions.items()},
        }


BUILTIN_WORKFLOWS: Mapping[str, WorkflowDefinition] = MappingProxyType(
    {
        "kanban": WorkflowDefinition.build(
            "kanban",
            "Kanban",
            ["backlog", "todo", "in_progress", "review", "done"],
            {
                "backlog": ["todo"],
                "todo": ["backlog", "in_progress"],
                "in_progress": ["todo", "review"],
                "review": ["in_progress", "done"],
                "done": ["review"],
            },
        ),
        "scrum": WorkflowDefinition.build(
            "scrum",
            "Scrum",
            ["backlog", "sprint_backlog", "in_progress", "testing", "done"],
            {
                "backlog": ["sprint_backlog"],
                "sprint_backlog": ["backlog", "in_progress"],
                "in_progress": ["sprint_backlog", "testing"],
                "testing": ["in_progress", "done"],
                "done": ["testing"],
            },
        ),
        "support": WorkflowDefinition.build(
            "support",
            "Support (Zendesk-style)",
            ["new", "open", "pending", "on_hold", "solved", "closed"],
            {
                "new": ["open"],
                "open": ["pending", "on_hold", "solved"],
                "pending": ["open", "solved"],
                "on_hold": ["open"],
                "solved": ["open", "closed"],
                "closed": [],
            },
        ),
        "simple": WorkflowDefinition.build(
            "simple",
            "Simple (Trello-style)",
            ["todo", "doing", "done"],
            {
                "todo": ["doing"],
                "doing": ["todo", "done"],
                "done": ["doing"],
            },
        ),
    }
)


class WorkflowRegistry:
    """Resolves workflow ids to definitions: registered, then persisted, then NotFound.

    The registry is seeded with the built-in workflows at construction; the seed
    itself is immutable and shared, the per-registry cache is not.
    """

    def __init__(
        self,
        storage: StorageBackend | None = None,
        seed: Mapping[str, WorkflowDefinition] = BUILTIN_WORKFLOWS,
    ) -> None:
        self._storage = storage
        self._workflows: dict[str, WorkflowDefinition] = dict(seed)

    async def resolve(self, workflow_id: str) -> WorkflowDefinition:
        cached = self._workflows.get(workflow_id)
        if cached is not None:
            return cached

        if self._storage is not None:
            record = await self._storage.get_workflow(workflow_id)
            if record is not None:
                workflow = WorkflowDefinition.from_record(record)
                self._workflows[workflow.id] = workflow
                return workflow

        raise NotFoundError("workflow", workflow_id)

    async def register(self, workflow: WorkflowDefinition | Mapping[str, Any]) -> WorkflowDefinition:
        if not isinstance(workflow, WorkflowDefinition):
            workflow = WorkflowDefinition.from_dict(workflow)
        workflow.validate()
        if workflow.id in BUILTIN_WORKFLOWS:
            raise InvalidWorkflowError(f"Workflow {workflow.id} is built in and cannot be redefined")

        if self._storage is not None:
            if await self._storage.get_workflow(workflow.id) is not None:
                in_use = [b.id for b in await self._storage.list_boards() if b.workflow_id == workflow.id]
                if in_use:
                    raise InvalidWorkflowError(
                        f"Workflow {workflow.id} is used by board(s) {', '.join(in_use)} and cannot be redefined"
                    )
            await self._storage.create_workflow(workflow.to_dict())
        self._workflows[workflow.id] = workflow
        logger.debug("Registered workflow %s with states %s", workflow.id, workflow.states)
        return workflow

    async def list_workflows(self) -> list[WorkflowDefinition]:
        if self._storage is not None:
            for record in await self._storage.list_workflows():
                self._workflows.setdefault(record.id, WorkflowDefinition.from_record(record))
        return list(self._workflows.values())
