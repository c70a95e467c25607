"""
Tests for the latest-state view query.

The generated query is executed against SQLite (window functions, backtick
identifiers) with the dataset attached as a database, so view semantics are
checked without a Spark session.
"""

from __future__ import annotations

import sqlite3
from typing import Any, Dict, List, Tuple

import pytest

from history_mirror.schema import DocumentSchema, make_field
from history_mirror.views import build_latest_view_query, normalize_query, view_definition_matches

DATASET = "mirror"
RAW_TABLE = "docs_raw"


@pytest.fixture
def schema() -> DocumentSchema:
    return DocumentSchema(
        (make_field("doc_id", "STRING"), make_field("title", "STRING"), make_field("version", "INTEGER")),
        ("doc_id",),
    )


@pytest.fixture
def db():
    conn = sqlite3.connect(":memory:")
    conn.execute(f"ATTACH DATABASE ':memory:' AS {DATASET}")
    conn.execute(
        f"CREATE TABLE {DATASET}.{RAW_TABLE} "
        "(doc_id TEXT, insert_id TEXT, operation TEXT, timestamp TEXT, title TEXT, version INTEGER)"
    )
    yield conn
    conn.close()


def _insert(conn: sqlite3.Connection, rows: List[Tuple[Any, ...]]) -> None:
    conn.executemany(
        f"INSERT INTO {DATASET}.{RAW_TABLE} (doc_id, insert_id, operation, timestamp, title, version) "
        "VALUES (?, ?, ?, ?, ?, ?)",
        rows,
    )


def _latest(conn: sqlite3.Connection, schema: DocumentSchema) -> Dict[str, Dict[str, Any]]:
    cursor = conn.execute(build_latest_view_query(DATASET, RAW_TABLE, schema))
    columns = [d[0] for d in cursor.description]
    return {row[0]: dict(zip(columns, row)) for row in cursor.fetchall()}


def test_query_selects_identifiers_fields_and_timestamp(schema):
    query = build_latest_view_query(DATASET, RAW_TABLE, schema)

    assert query.startswith("SELECT `doc_id`, `title`, `version`, `timestamp`")
    assert "PARTITION BY `doc_id`" in query
    assert "ORDER BY `timestamp` DESC, `insert_id` DESC" in query
    assert "FROM `mirror`.`docs_raw`" in query


def test_deleted_document_excluded(db, schema):
    _insert(
        db,
        [
            ("doc1", "a", "CREATE", "2024-01-01T00:00:01", "v1", 1),
            ("doc1", "b", "UPDATE", "2024-01-01T00:00:02", "v2", 2),
            ("doc1", "c", "DELETE", "2024-01-01T00:00:03", None, None),
        ],
    )
    assert "doc1" not in _latest(db, schema)


def test_latest_update_visible(db, schema):
    _insert(
        db,
        [
            ("doc1", "a", "CREATE", "2024-01-01T00:00:01", "v1", 1),
            ("doc1", "b", "UPDATE", "2024-01-01T00:00:02", "v2", 2),
            ("doc1", "c", "UPDATE", "2024-01-01T00:00:03", "v3", 3),
        ],
    )

    latest = _latest(db, schema)

    assert latest["doc1"] == {"doc_id": "doc1", "title": "v3", "version": 3, "timestamp": "2024-01-01T00:00:03"}


def test_delete_does_not_resurrect_previous_version(db, schema):
    _insert(
        db,
        [
            ("doc1", "a", "CREATE", "2024-01-01T00:00:01", "v1", 1),
            ("doc1", "b", "DELETE", "2024-01-01T00:00:02", None, None),
            ("doc2", "c", "IMPORT", "2024-01-01T00:00:01", "other", 1),
        ],
    )
    assert set(_latest(db, schema)) == {"doc2"}


def test_recreated_after_delete_is_visible(db, schema):
    _insert(
        db,
        [
            ("doc1", "a", "CREATE", "2024-01-01T00:00:01", "v1", 1),
            ("doc1", "b", "DELETE", "2024-01-01T00:00:02", None, None),
            ("doc1", "c", "CREATE", "2024-01-01T00:00:03", "again", 1),
        ],
    )
    assert _latest(db, schema)["doc1"]["title"] == "again"


def test_equal_timestamps_prefer_greater_insert_id(db, schema):
    _insert(
        db,
        [
            ("doc1", "write-0002", "UPDATE", "2024-01-01T00:00:05", "second", 2),
            ("doc1", "write-0001", "UPDATE", "2024-01-01T00:00:05", "first", 1),
        ],
    )
    assert _latest(db, schema)["doc1"]["title"] == "second"


def test_equal_timestamps_tie_break_applies_to_delete(db, schema):
    _insert(
        db,
        [
            ("doc1", "write-0001", "UPDATE", "2024-01-01T00:00:05", "kept?", 1),
            ("doc1", "write-0002", "DELETE", "2024-01-01T00:00:05", None, None),
        ],
    )
    assert "doc1" not in _latest(db, schema)


def test_duplicate_delivery_yields_single_row(db, schema):
    row = ("doc1", "write-0001", "CREATE", "2024-01-01T00:00:01", "v1", 1)
    _insert(db, [row, row])

    cursor = db.execute(build_latest_view_query(DATASET, RAW_TABLE, schema))

    assert len(cursor.fetchall()) == 1


def test_composite_identifier_partitions_on_all_fields(db):
    schema = DocumentSchema(
        (make_field("doc_id", "STRING"), make_field("title", "STRING"), make_field("version", "INTEGER")),
        ("doc_id", "version"),
    )
    _insert(
        db,
        [
            ("doc1", "a", "CREATE", "2024-01-01T00:00:01", "v1", 1),
            ("doc1", "b", "CREATE", "2024-01-01T00:00:02", "v2", 2),
        ],
    )

    rows = db.execute(build_latest_view_query(DATASET, RAW_TABLE, schema)).fetchall()

    assert sorted(r[2] for r in rows) == ["v1", "v2"]


def test_definition_comparison_ignores_whitespace(schema):
    query = build_latest_view_query(DATASET, RAW_TABLE, schema)
    assert view_definition_matches("  " + query.replace("\n", "\n\n   ") + "\n", query)
    assert normalize_query(query) != normalize_query(query.replace("`title`, ", ""))


def test_definition_changes_when_fields_added(schema):
    widened = DocumentSchema(schema.fields + (make_field("summary", "STRING"),), schema.id_field_names)
    assert not view_definition_matches(
        build_latest_view_query(DATASET, RAW_TABLE, schema),
        build_latest_view_query(DATASET, RAW_TABLE, widened),
    )
