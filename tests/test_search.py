from ticketflow.search import TicketQuery, parse_query


def test_field_tokens_and_free_text() -> None:
    query = parse_query("status:in_progress bug", board_id="b1")
    assert query == TicketQuery(board_id="b1", status="in_progress", search="bug")


def test_all_field_keys() -> None:
    query = parse_query("priority:high assignee:alice label:ui")
    assert (query.priority, query.assignee, query.label) == ("high", "alice", "ui")
    assert query.search is None


def test_last_occurrence_wins() -> None:
    query = parse_query("status:todo status:done")
    assert query.status == "done"


def test_bare_words_concatenate() -> None:
    query = parse_query("  login   page  timeout ")
    assert query.search == "login page timeout"


def test_malformed_pairs_fall_through_to_free_text() -> None:
    query = parse_query("status: :value crash")
    assert query.status is None
    assert query.search == "status: :value crash"


def test_unknown_keys_are_free_text() -> None:
    query = parse_query("owner:bob crash")
    assert query.search == "owner:bob crash"


def test_only_first_colon_splits() -> None:
    assert parse_query("label:area:auth").label == "area:auth"


def test_empty_query() -> None:
    assert parse_query("").to_dict() == {}
