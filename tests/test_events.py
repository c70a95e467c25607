"""
Tests for change event normalization into history rows.
"""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from history_mirror.events import ChangeEvent, HistoryRow, Operation, build_history_row


def test_build_row_from_update(user_schema, event_factory):
    event = event_factory(
        "u1",
        Operation.UPDATE,
        data={"user_id": "u1", "name": "Ada", "age": 36, "address": {"city": "London", "zip": "N1"}},
        insert_id="u1-v2",
    )

    row = build_history_row(user_schema, event)

    assert isinstance(row, HistoryRow)
    assert row.identifier == (("user_id", "u1"),)
    assert row.identifier_values == ("u1",)
    assert row.operation is Operation.UPDATE
    assert row.data["address"] == {"city": "London", "zip": "N1"}


def test_to_record_flattens_with_system_columns(user_schema, event_factory, base_time):
    event = event_factory("u1", "CREATE", data={"user_id": "stale", "name": "Ada"}, insert_id="i-1")

    record = build_history_row(user_schema, event).to_record()

    assert record == {
        "user_id": "u1",
        "name": "Ada",
        "insert_id": "i-1",
        "operation": "CREATE",
        "timestamp": base_time,
    }


def test_delete_carries_no_snapshot(user_schema, event_factory):
    event = event_factory("u1", Operation.DELETE, data={"user_id": "u1", "name": "gone"})

    row = build_history_row(user_schema, event)

    assert row.data is None
    assert set(row.to_record()) == {"user_id", "insert_id", "operation", "timestamp"}


def test_non_delete_requires_snapshot(user_schema, event_factory):
    with pytest.raises(ValueError, match="no document snapshot"):
        build_history_row(user_schema, event_factory("u1", Operation.IMPORT))


def test_identifier_tuple_length_must_match(user_schema, base_time):
    event = ChangeEvent(("u1", "extra"), "i-1", Operation.CREATE, base_time, {"name": "x"})
    with pytest.raises(ValueError, match="identifier value"):
        build_history_row(user_schema, event)


def test_scalar_identifier_is_wrapped(user_schema, base_time):
    event = ChangeEvent("u1", "i-1", "UPDATE", base_time, {"name": "x"})
    assert event.identifier_values == ("u1",)
    assert event.operation is Operation.UPDATE


def test_unknown_operation_rejected(base_time):
    with pytest.raises(ValueError):
        ChangeEvent(("u1",), "i-1", "UPSERT", base_time, {})


def test_undeclared_snapshot_keys_dropped(user_schema, event_factory):
    event = event_factory("u1", Operation.CREATE, data={"name": "Ada", "Age": 3, "nickname": "A"})

    row = build_history_row(user_schema, event)

    assert row.data == {"name": "Ada", "age": 3}


def test_naive_timestamp_treated_as_utc(user_schema):
    event = ChangeEvent(("u1",), "i-1", Operation.CREATE, datetime(2024, 5, 1, 8, 30), {"name": "x"})

    row = build_history_row(user_schema, event)

    assert row.timestamp == datetime(2024, 5, 1, 8, 30, tzinfo=timezone.utc)


def test_required_field_enforced_for_writes():
    from history_mirror.schema import DocumentSchema, make_field

    schema = DocumentSchema(
        (make_field("id", "STRING"), make_field("email", "STRING", "REQUIRED")),
        ("id",),
    )
    event = ChangeEvent(("a",), "i-1", Operation.CREATE, datetime(2024, 1, 1, tzinfo=timezone.utc), {"id": "a"})

    with pytest.raises(ValueError, match="required field"):
        build_history_row(schema, event)
