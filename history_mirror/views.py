"""history_mirror.views

Latest-state view definition.

The view is a query over the raw history table that keeps, per identifier
tuple, only the most recent row, and hides the tuple entirely when that row is
a DELETE:

    rank rows within each identifier tuple by (timestamp DESC, insert_id DESC)
    keep rank 1
    drop it if its operation is DELETE

Ranking happens before the DELETE filter; filtering first would resurrect the
previous version of a deleted document.

Tie-break: rows with equal timestamps are ordered by `insert_id`, the greater
value wins. Duplicate deliveries of the same physical write share an insert_id
and carry identical content, so whichever copy ranks first is equivalent.

The generated text only uses window functions and backtick-quoted
identifiers, so the same query runs unchanged on Spark SQL and SQLite.
"""

from __future__ import annotations

import re

from .config import (
    INSERT_ID_COLUMN,
    LATEST_RANK_COLUMN,
    OPERATION_COLUMN,
    TIMESTAMP_COLUMN,
    qualified_name,
    quote_identifier,
)
from .events import Operation
from .schema import DocumentSchema


def build_latest_view_query(dataset_id: str, raw_table: str, schema: DocumentSchema) -> str:
    """Return the SELECT statement defining the latest-state view.

    Args:
        dataset_id: Dataset holding the raw table.
        raw_table: Raw history table name (unqualified).
        schema: Current document schema; selected columns follow its field order.

    Returns:
        Query text, deterministic for a given schema.
    """
    partition_by = ", ".join(quote_identifier(name) for name in schema.id_field_names)
    selected = [quote_identifier(f.name) for f in schema.id_fields]
    selected += [quote_identifier(f.name) for f in schema.data_fields]
    selected.append(quote_identifier(TIMESTAMP_COLUMN))

    return (
        f"SELECT {', '.join(selected)}\n"
        f"FROM (\n"
        f"  SELECT *, ROW_NUMBER() OVER (\n"
        f"    PARTITION BY {partition_by}\n"
        f"    ORDER BY {quote_identifier(TIMESTAMP_COLUMN)} DESC, {quote_identifier(INSERT_ID_COLUMN)} DESC\n"
        f"  ) AS {quote_identifier(LATEST_RANK_COLUMN)}\n"
        f"  FROM {qualified_name(dataset_id, raw_table)}\n"
        f") AS latest\n"
        f"WHERE {quote_identifier(LATEST_RANK_COLUMN)} = 1\n"
        f"  AND {quote_identifier(OPERATION_COLUMN)} <> '{Operation.DELETE.value}'"
    )


def normalize_query(query: str) -> str:
    """Collapse whitespace so stored and generated query text compare equal."""
    return re.sub(r"\s+", " ", query or "").strip()


def view_definition_matches(existing: str, expected: str) -> bool:
    return normalize_query(existing) == normalize_query(expected)
