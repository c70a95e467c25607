"""history_mirror.events

Change events and the history rows recorded for them.

A `ChangeEvent` is what the change trigger hands us for one document write.
`build_history_row` normalizes it against the collection's `DocumentSchema`
into a `HistoryRow`, whose `to_record` form is the flat dict appended to the
raw table (one column per declared field plus the system columns).

Normalization rules:
- The identifier tuple must have one value per identifier field; those values
    win over same-named keys in the snapshot.
- DELETE rows carry no snapshot; any snapshot passed with a DELETE is ignored.
- Every other operation needs a snapshot containing all REQUIRED fields.
- Snapshot keys that are not declared fields are dropped.
- Naive timestamps are treated as UTC.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple

from .config import INSERT_ID_COLUMN, OPERATION_COLUMN, TIMESTAMP_COLUMN, log_message
from .schema import DocumentSchema


class Operation(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    IMPORT = "IMPORT"


@dataclass(frozen=True)
class ChangeEvent:
    identifier_values: Tuple[Any, ...]
    insert_id: str
    operation: Operation
    timestamp: datetime
    data: Optional[Mapping[str, Any]] = None

    def __post_init__(self) -> None:
        values = self.identifier_values
        if not isinstance(values, (tuple, list)):
            values = (values,)
        object.__setattr__(self, "identifier_values", tuple(values))
        object.__setattr__(self, "operation", Operation(self.operation))


@dataclass(frozen=True)
class HistoryRow:
    """One append-only row of the raw history table."""

    identifier: Tuple[Tuple[str, Any], ...]
    insert_id: str
    operation: Operation
    timestamp: datetime
    data: Optional[Dict[str, Any]] = None

    @property
    def identifier_values(self) -> Tuple[Any, ...]:
        return tuple(value for _, value in self.identifier)

    def to_record(self) -> Dict[str, Any]:
        """Flatten into the column layout of the raw table."""
        record: Dict[str, Any] = dict(self.data or {})
        record.update(dict(self.identifier))
        record[INSERT_ID_COLUMN] = self.insert_id
        record[OPERATION_COLUMN] = self.operation.value
        record[TIMESTAMP_COLUMN] = self.timestamp
        return record


def _to_utc(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def build_history_row(schema: DocumentSchema, event: ChangeEvent) -> HistoryRow:
    """Normalize a `ChangeEvent` into a `HistoryRow` for `schema`.

    Raises:
        ValueError: If the identifier tuple does not match the schema, an
            identifier value is missing, or a non-DELETE event lacks a snapshot
            or a REQUIRED field.
    """
    id_names = schema.id_field_names
    if len(event.identifier_values) != len(id_names):
        raise ValueError(
            f"Event {event.insert_id} has {len(event.identifier_values)} identifier value(s); "
            f"schema expects {len(id_names)} ({', '.join(id_names)})."
        )
    if any(value is None for value in event.identifier_values):
        raise ValueError(f"Event {event.insert_id} has a null identifier value.")
    if not event.insert_id:
        raise ValueError("Events must carry a non-empty insert_id.")
    if not isinstance(event.timestamp, datetime):
        raise ValueError(f"Event {event.insert_id} timestamp must be a datetime, got {type(event.timestamp).__name__}.")

    data: Optional[Dict[str, Any]] = None
    if event.operation is not Operation.DELETE:
        if event.data is None:
            raise ValueError(f"{event.operation.value} event {event.insert_id} has no document snapshot.")
        data = _project_snapshot(schema, event.data, event.insert_id)

        missing = [f.name for f in schema.fields if f.required and f.name not in data and f.name not in id_names]
        if missing:
            raise ValueError(f"Event {event.insert_id} is missing required field(s): {', '.join(missing)}")

    return HistoryRow(
        identifier=tuple(zip(id_names, event.identifier_values)),
        insert_id=event.insert_id,
        operation=event.operation,
        timestamp=_to_utc(event.timestamp),
        data=data,
    )


def build_history_rows(schema: DocumentSchema, events: Sequence[ChangeEvent]) -> list:
    return [build_history_row(schema, event) for event in events]


def _project_snapshot(schema: DocumentSchema, snapshot: Mapping[str, Any], insert_id: str) -> Dict[str, Any]:
    """Keep declared fields only, using the declared spelling of each name."""
    declared = {name.lower(): name for name in schema.field_names}
    projected: Dict[str, Any] = {}
    dropped = []
    for key, value in snapshot.items():
        name = declared.get(str(key).lower())
        if name is None:
            dropped.append(str(key))
        else:
            projected[name] = value

    if dropped:
        log_message(
            f"Event {insert_id}: dropping undeclared field(s) {', '.join(sorted(dropped))}",
            level="DEBUG",
            depth=2,
        )
    return projected
