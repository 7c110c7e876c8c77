from datetime import UTC, datetime

from ticketflow.diff import compute_changes, jsonable, values_differ


def test_only_changed_keys_are_reported() -> None:
    before = {"title": "Old", "priority": "low", "position": 1}
    after = {"title": "New", "priority": "low", "position": 1}

    changes = compute_changes(before, after, ["title", "priority", "position"])

    assert changes == {"title": {"old": "Old", "new": "New"}}


def test_untracked_keys_are_ignored() -> None:
    changes = compute_changes({"title": "a", "status": "x"}, {"title": "a", "status": "y"}, ["title"])
    assert changes == {}


def test_label_order_is_not_a_change() -> None:
    assert not values_differ("labels", ["bug", "ui"], ["ui", "bug"])
    assert not values_differ("assignees", ["bob", "alice", "bob"], ["alice", "bob"])
    assert values_differ("labels", ["bug"], ["bug", "ui"])


def test_nested_maps_compare_by_value() -> None:
    before = {"custom_fields": {"sprint": 4, "meta": {"team": "core", "tags": ["a"]}}}
    after = {"custom_fields": {"meta": {"tags": ["a"], "team": "core"}, "sprint": 4}}
    assert compute_changes(before, after, ["custom_fields"]) == {}

    after["custom_fields"]["meta"]["team"] = "edge"
    changes = compute_changes(before, after, ["custom_fields"])
    assert changes["custom_fields"]["new"]["meta"]["team"] == "edge"


def test_naive_and_aware_timestamps_for_same_instant_are_equal() -> None:
    aware = datetime(2025, 3, 1, 12, 0, tzinfo=UTC)
    naive = datetime(2025, 3, 1, 12, 0)
    assert not values_differ("due_date", naive, aware)


def test_changes_are_json_safe() -> None:
    due = datetime(2025, 3, 1, 9, 30, tzinfo=UTC)
    changes = compute_changes({"due_date": None}, {"due_date": due}, ["due_date"])
    assert changes == {"due_date": {"old": None, "new": "2025-03-01T09:30:00+00:00"}}


def test_jsonable_sorts_sets() -> None:
    assert jsonable({"x": {"b", "a"}}) == {"x": ["a", "b"]}
