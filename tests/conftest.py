"""Pytest configuration and fixtures."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import pytest
from pyspark.sql.types import ArrayType, StructField, StructType

from history_mirror.errors import DestinationUnreachable, InsertPartialFailure, RowError
from history_mirror.events import ChangeEvent, Operation
from history_mirror.schema import ColumnAddition, DocumentSchema, make_field
from history_mirror.store import DestinationStore


def _add_nested(struct: StructType, path: Tuple[str, ...], new_field: StructField) -> StructType:
    if len(path) == 1:
        if any(f.name.lower() == path[0].lower() for f in struct.fields):
            return struct
        return StructType(list(struct.fields) + [new_field])

    fields = []
    for f in struct.fields:
        if f.name.lower() == path[0].lower():
            data_type = f.dataType
            if isinstance(data_type, ArrayType) and path[1] == "element":
                data_type = ArrayType(_add_nested(data_type.elementType, path[2:], new_field), data_type.containsNull)
            else:
                data_type = _add_nested(data_type, path[1:], new_field)
            f = StructField(f.name, data_type, f.nullable)
        fields.append(f)
    return StructType(fields)


class FakeDestinationStore(DestinationStore):
    """In-memory destination that records every mutating call."""

    def __init__(self) -> None:
        self.datasets: set = set()
        self.tables: Dict[Tuple[str, str], StructType] = {}
        self.views: Dict[Tuple[str, str], str] = {}
        self.rows: Dict[Tuple[str, str], List[Dict[str, Any]]] = {}
        self.mutations: List[Tuple[str, ...]] = []
        self.unreachable = False
        self.reject: Optional[Callable[[Mapping[str, Any]], Optional[str]]] = None

    def _check(self) -> None:
        if self.unreachable:
            raise DestinationUnreachable("fake store is offline")

    def dataset_exists(self, dataset_id: str) -> bool:
        self._check()
        return dataset_id in self.datasets

    def create_dataset(self, dataset_id: str) -> None:
        self._check()
        self.mutations.append(("create_dataset", dataset_id))
        self.datasets.add(dataset_id)

    def table_exists(self, dataset_id: str, table_name: str) -> bool:
        self._check()
        return (dataset_id, table_name) in self.tables

    def create_table(self, dataset_id: str, table_name: str, schema: StructType) -> None:
        self._check()
        self.mutations.append(("create_table", dataset_id, table_name))
        self.tables.setdefault((dataset_id, table_name), schema)
        self.rows.setdefault((dataset_id, table_name), [])

    def get_table_schema(self, dataset_id: str, table_name: str) -> StructType:
        self._check()
        return self.tables[(dataset_id, table_name)]

    def add_table_columns(self, dataset_id: str, table_name: str, additions: Sequence[ColumnAddition]) -> None:
        self._check()
        for addition in additions:
            self.mutations.append(("add_column", dataset_id, table_name, addition.dotted_path))
            key = (dataset_id, table_name)
            self.tables[key] = _add_nested(self.tables[key], addition.path, addition.field)

    def view_exists(self, dataset_id: str, view_name: str) -> bool:
        self._check()
        return (dataset_id, view_name) in self.views

    def create_view(self, dataset_id: str, view_name: str, query: str) -> None:
        self._check()
        self.mutations.append(("create_view", dataset_id, view_name))
        self.views.setdefault((dataset_id, view_name), query)

    def get_view_definition(self, dataset_id: str, view_name: str) -> str:
        self._check()
        return self.views[(dataset_id, view_name)]

    def update_view_definition(self, dataset_id: str, view_name: str, query: str) -> None:
        self._check()
        self.mutations.append(("update_view", dataset_id, view_name))
        self.views[(dataset_id, view_name)] = query

    def insert_rows(self, dataset_id: str, table_name: str, rows: Sequence[Mapping[str, Any]]) -> int:
        self._check()
        self.mutations.append(("insert_rows", dataset_id, table_name, str(len(rows))))
        rejected = []
        stored = self.rows.setdefault((dataset_id, table_name), [])
        for index, row in enumerate(rows):
            reason = self.reject(row) if self.reject else None
            if reason:
                rejected.append(RowError(index, reason))
            else:
                stored.append(dict(row))
        inserted = len(rows) - len(rejected)
        if rejected:
            raise InsertPartialFailure(f"{dataset_id}.{table_name}", rejected, inserted_count=inserted)
        return inserted


@pytest.fixture
def store() -> FakeDestinationStore:
    return FakeDestinationStore()


@pytest.fixture
def user_schema() -> DocumentSchema:
    """Collection keyed by `user_id` with a nested address record."""
    return DocumentSchema(
        fields=(
            make_field("user_id", "STRING", "REQUIRED"),
            make_field("name", "STRING"),
            make_field("age", "INTEGER"),
            make_field("tags", "STRING", "REPEATED"),
            make_field("address", [make_field("city", "STRING"), make_field("zip", "STRING")]),
        ),
        id_field_names=("user_id",),
    )


@pytest.fixture
def base_time() -> datetime:
    return datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


def make_event(
    doc_id: str,
    operation: Operation,
    ts: datetime,
    data: Optional[Mapping[str, Any]] = None,
    insert_id: Optional[str] = None,
) -> ChangeEvent:
    return ChangeEvent(
        identifier_values=(doc_id,),
        insert_id=insert_id or f"{doc_id}-{int(ts.timestamp())}",
        operation=operation,
        timestamp=ts,
        data=data,
    )


@pytest.fixture
def event_factory(base_time: datetime) -> Callable[..., ChangeEvent]:
    def factory(doc_id: str, operation: Operation, offset_seconds: int = 0, **kwargs: Any) -> ChangeEvent:
        return make_event(doc_id, operation, base_time + timedelta(seconds=offset_seconds), **kwargs)

    return factory
