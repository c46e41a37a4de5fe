from __future__ import annotations

import psycopg
import pytest

from archive.errors import InvalidTagSet, StorageFailure
from archive.store.results import StatementResult, first_error
from archive.store.tags import list_tags, parse_tags, replace_tags


def test_replacing_twice_leaves_exactly_the_target_set(fake_db) -> None:
    replace_tags(fake_db, 7, ["a", "b"])
    replace_tags(fake_db, 7, ["a", "b"])
    assert fake_db.tags_for(7) == ["a", "b"]
    assert len(fake_db.tags) == 2


def test_replacement_drops_previous_members(fake_db) -> None:
    replace_tags(fake_db, 7, ["old", "keep"])
    replace_tags(fake_db, 7, ["keep", "new"])
    assert fake_db.tags_for(7) == ["keep", "new"]


def test_empty_list_clears_all_tags(fake_db) -> None:
    replace_tags(fake_db, 7, ["a", "b"])
    replace_tags(fake_db, 8, ["other"])
    replace_tags(fake_db, 7, [])
    assert fake_db.tags_for(7) == []
    assert fake_db.tags_for(8) == ["other"]


def test_statements_run_delete_first_then_one_insert_per_tag(fake_db) -> None:
    replace_tags(fake_db, 7, ["a", "b"])
    assert [sql.split()[0] for sql, _ in fake_db.executed] == ["DELETE", "INSERT", "INSERT"]
    assert fake_db.statements("INSERT INTO tags") == [("a", 7), ("b", 7)]


def test_baseline_reports_first_error_and_keeps_issuing_statements(fake_db) -> None:
    replace_tags(fake_db, 7, ["x", "y"])
    fake_db.executed.clear()
    first = psycopg.OperationalError("first")
    fake_db.fail_on("INSERT INTO tags", ("b", 7), exc=first)
    fake_db.fail_on("INSERT INTO tags", ("c", 7), exc=psycopg.OperationalError("second"))

    with pytest.raises(StorageFailure) as e:
        replace_tags(fake_db, 7, ["a", "b", "c", "d"])

    assert e.value.cause is first
    # Every statement was still issued; the set is partially applied.
    assert len(fake_db.executed) == 5
    assert fake_db.tags_for(7) == ["a", "d"]


def test_atomic_mode_rolls_back_the_whole_change(fake_db) -> None:
    replace_tags(fake_db, 7, ["x", "y"])
    fake_db.fail_on("INSERT INTO tags", ("b", 7))

    with pytest.raises(StorageFailure):
        replace_tags(fake_db, 7, ["a", "b", "c"], atomic=True)

    assert fake_db.transactions == 1
    assert fake_db.tags_for(7) == ["x", "y"]
    # Statements after the failing one are never issued inside the transaction.
    assert ("c", 7) not in fake_db.statements("INSERT INTO tags")


def test_atomic_mode_success(fake_db) -> None:
    replace_tags(fake_db, 7, ["x"], atomic=True)
    replace_tags(fake_db, 7, ["a", "b"], atomic=True)
    assert fake_db.tags_for(7) == ["a", "b"]


def test_parse_tags_collapses_duplicates_in_order() -> None:
    assert parse_tags(["b", "a", "b", "c", "a"]) == ["b", "a", "c"]
    assert parse_tags([]) == []


@pytest.mark.parametrize("payload", [None, {"tags": ["a"]}, "a,b", ["a", 1], [None]])
def test_parse_tags_rejects_malformed_input(payload) -> None:  # type: ignore[no-untyped-def]
    with pytest.raises(InvalidTagSet):
        parse_tags(payload)


def test_list_tags_is_sorted(fake_db) -> None:
    replace_tags(fake_db, 3, ["zeta", "alpha"])
    assert list_tags(fake_db, 3) == ["alpha", "zeta"]


def test_first_error_wins() -> None:
    e1 = psycopg.OperationalError("one")
    e2 = psycopg.OperationalError("two")
    results = [
        StatementResult(sql="DELETE"),
        StatementResult(sql="INSERT a", error=e1),
        StatementResult(sql="INSERT b"),
        StatementResult(sql="INSERT c", error=e2),
    ]
    failed = first_error(results)
    assert failed is not None and failed.error is e1
    assert first_error([StatementResult(sql="DELETE")]) is None
    assert first_error([]) is None
