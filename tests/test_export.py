import json
from datetime import UTC, datetime

import pytest

from ticketflow.engine import TicketEngine
from ticketflow.export import export_activities, format_activity_details, format_timestamp
from ticketflow.models import Activity, Board

STAMP = datetime(2025, 3, 1, 12, 5, 9, 123456, tzinfo=UTC)


def _activity(**kwargs: object) -> Activity:
    values = {"ticket_id": "t1", "actor": "alice", "action": "commented", "changes": {}, "created_at": STAMP}
    values.update(kwargs)
    return Activity(**values)


def test_format_timestamp_utc() -> None:
    assert format_timestamp(STAMP) == "2025-03-01 12:05:09.123 UTC"
    assert format_timestamp(STAMP.replace(tzinfo=None)) == "2025-03-01 12:05:09.123 UTC"


def test_format_timestamp_in_zone() -> None:
    assert format_timestamp(STAMP, "America/New_York") == "03/01/2025, 07:05:09 (America/New_York)"


def test_format_timestamp_unknown_zone_falls_back_to_utc() -> None:
    assert format_timestamp(STAMP, "Mars/Olympus_Mons") == "2025-03-01 12:05:09.123 UTC"


def test_activity_details() -> None:
    assert format_activity_details("status_changed", {"status": {"old": "todo", "new": "done"}}) == "todo → done"
    assert format_activity_details("assigned", {"assignees": ["a", "b"]}) == "Assigned to: a, b"
    assert format_activity_details("attachment_added", {"filename": "x.png"}) == "Added: x.png"
    assert format_activity_details("attachment_deleted", {"filename": "x.png"}) == "Deleted: x.png"
    assert format_activity_details("created", {"ticket": {"title": "t"}}) == ""
    assert format_activity_details("commented", {"comment_id": "c1"}) == ""
    assert (
        format_activity_details("updated", {"title": {"old": "a", "new": "b"}})
        == '{"title":{"old":"a","new":"b"}}'
    )


def test_csv_export_quotes_every_field() -> None:
    result = export_activities(
        [_activity(actor='al"ice', action="assigned", changes={"assignees": ["bob"]})],
        {"t1": "Fix, login"},
        fmt="csv",
    )

    lines = result.data.split("\n")
    assert result.count == 1
    assert lines[0] == '"timestamp","ticket_id","ticket_title","actor","action","details"'
    assert lines[1] == (
        '"2025-03-01 12:05:09.123 UTC","t1","Fix, login","al""ice","assigned","Assigned to: bob"'
    )


def test_json_export_adds_title_and_formats_time() -> None:
    result = export_activities([_activity()], {}, fmt="json", timezone="UTC")

    [record] = json.loads(result.data)
    assert record["ticket_title"] == ""
    assert record["created_at"] == "03/01/2025, 12:05:09 (UTC)"
    assert record["action"] == "commented"


def test_unsupported_format() -> None:
    with pytest.raises(ValueError):
        export_activities([], {}, fmt="xml")


@pytest.mark.asyncio
async def test_board_activity_export(engine: TicketEngine, board: Board) -> None:
    ticket = await engine.create_ticket({"board_id": board.id, "title": "Fix login"}, "alice")
    await engine.move_ticket(ticket.id, "todo", "bob")
    await engine.add_comment(ticket.id, "on it", "bob")

    everything = await engine.export_activity_log(board.id, fmt="csv")
    assert everything.count == 3
    assert len(everything.data.split("\n")) == 4
    assert '"Fix login"' in everything.data

    moves = await engine.export_activity_log(board.id, actions=["status_changed"])
    [record] = json.loads(moves.data)
    assert record["changes"] == {"status": {"old": "backlog", "new": "todo"}}

    by_alice = await engine.export_activity_log(board.id, actors=["alice"])
    assert by_alice.count == 1
