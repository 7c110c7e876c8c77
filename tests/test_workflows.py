import pytest

from ticketflow.errors import InvalidWorkflowError, NotFoundError
from ticketflow.storage import SqlAlchemyStorage
from ticketflow.workflows import BUILTIN_WORKFLOWS, WorkflowDefinition, WorkflowRegistry


def _review_flow(**overrides: object) -> dict:
    data = {
        "id": "review",
        "name": "Code review",
        "states": ["draft", "in_review", "merged"],
        "transitions": {"draft": ["in_review"], "in_review": ["draft", "merged"], "merged": []},
    }
    data.update(overrides)
    return data


def test_builtin_workflows_are_valid() -> None:
    assert set(BUILTIN_WORKFLOWS) == {"kanban", "scrum", "support", "simple"}
    for workflow in BUILTIN_WORKFLOWS.values():
        workflow.validate()


def test_kanban_shape() -> None:
    kanban = BUILTIN_WORKFLOWS["kanban"]
    assert kanban.initial_state == "backlog"
    assert kanban.allowed_transitions("backlog") == ("todo",)
    assert kanban.can_transition("review", "done")
    assert not kanban.can_transition("backlog", "done")
    assert kanban.terminal_states == ()


def test_support_closed_is_terminal() -> None:
    assert BUILTIN_WORKFLOWS["support"].terminal_states == ("closed",)


def test_builtin_seed_cannot_be_mutated() -> None:
    with pytest.raises(TypeError):
        BUILTIN_WORKFLOWS["custom"] = BUILTIN_WORKFLOWS["simple"]  # type: ignore[index]
    with pytest.raises(TypeError):
        BUILTIN_WORKFLOWS["simple"].transitions["todo"] = ("done",)  # type: ignore[index]


def test_validate_rejects_undeclared_target() -> None:
    workflow = WorkflowDefinition.from_dict(
        _review_flow(transitions={"draft": ["shipped"]})
    )
    with pytest.raises(InvalidWorkflowError, match="shipped"):
        workflow.validate()


def test_validate_rejects_undeclared_source() -> None:
    workflow = WorkflowDefinition.from_dict(_review_flow(transitions={"ghost": ["draft"]}))
    with pytest.raises(InvalidWorkflowError, match="ghost"):
        workflow.validate()


def test_validate_rejects_empty_and_duplicate_states() -> None:
    with pytest.raises(InvalidWorkflowError):
        WorkflowDefinition.from_dict(_review_flow(states=[], transitions={})).validate()
    with pytest.raises(InvalidWorkflowError):
        WorkflowDefinition.from_dict(
            _review_flow(states=["draft", "draft"], transitions={})
        ).validate()


def test_from_dict_requires_states() -> None:
    with pytest.raises(InvalidWorkflowError):
        WorkflowDefinition.from_dict({"id": "broken"})


@pytest.mark.asyncio
async def test_resolve_builtin_without_storage() -> None:
    registry = WorkflowRegistry()
    assert (await registry.resolve("scrum")).states[1] == "sprint_backlog"


@pytest.mark.asyncio
async def test_resolve_unknown_raises_not_found(storage: SqlAlchemyStorage) -> None:
    registry = WorkflowRegistry(storage)
    with pytest.raises(NotFoundError) as excinfo:
        await registry.resolve("nope")
    assert excinfo.value.kind == "workflow"


@pytest.mark.asyncio
async def test_register_persists_and_resolves_from_fresh_registry(storage: SqlAlchemyStorage) -> None:
    await WorkflowRegistry(storage).register(_review_flow())

    fresh = WorkflowRegistry(storage)
    workflow = await fresh.resolve("review")
    assert workflow.states == ("draft", "in_review", "merged")
    assert workflow.allowed_transitions("in_review") == ("draft", "merged")
    assert "review" in {w.id for w in await fresh.list_workflows()}


@pytest.mark.asyncio
async def test_register_invalid_workflow_is_not_persisted(storage: SqlAlchemyStorage) -> None:
    registry = WorkflowRegistry(storage)
    with pytest.raises(InvalidWorkflowError):
        await registry.register(_review_flow(transitions={"draft": ["nowhere"]}))
    assert await storage.get_workflow("review") is None


@pytest.mark.asyncio
async def test_register_rejects_builtin_ids(storage: SqlAlchemyStorage) -> None:
    registry = WorkflowRegistry(storage)
    with pytest.raises(InvalidWorkflowError, match="built in"):
        await registry.register(_review_flow(id="kanban"))

    assert (await registry.resolve("kanban")).states == BUILTIN_WORKFLOWS["kanban"].states
    assert await storage.get_workflow("kanban") is None


@pytest.mark.asyncio
async def test_unreferenced_workflow_can_be_redefined(storage: SqlAlchemyStorage) -> None:
    registry = WorkflowRegistry(storage)
    await registry.register(_review_flow())
    await registry.register(_review_flow(name="Review v2"))

    assert (await WorkflowRegistry(storage).resolve("review")).name == "Review v2"
