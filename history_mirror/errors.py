"""history_mirror.errors

Failure taxonomy for the mirror.

- `DestinationUnreachable`: the store could not be reached or refused the
    credentials. Not retried here; retry policy belongs to the trigger
    infrastructure that invoked us.
- `SchemaConflict`: an existing table or view cannot be brought to the
    requested shape without a destructive change.
- `InsertPartialFailure`: some rows of a batch append were rejected.

Invalid caller input (malformed schemas or events) is reported with plain
`ValueError` before any store call is made.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Sequence


class MirrorError(Exception):
    """Base class for failures surfaced by the mirror."""


class DestinationUnreachable(MirrorError):
    """Connectivity or authorization failure talking to the destination store."""


class SchemaConflict(MirrorError):
    """An existing destination object cannot be reconciled additively.

    Attributes:
        object_name: Fully-qualified name of the conflicting table or view.
        conflicts: One human-readable line per incompatible field.
    """

    def __init__(self, object_name: str, conflicts: Sequence[str]):
        self.object_name = object_name
        self.conflicts: List[str] = list(conflicts)
        super().__init__(f"Schema conflict on {object_name}: " + "; ".join(self.conflicts))


@dataclass(frozen=True)
class RowError:
    """A single rejected row within a batch append."""

    index: int
    reason: str


class InsertPartialFailure(MirrorError):
    """Some rows of a batch append were rejected by the store.

    Attributes:
        table_name: Fully-qualified raw table name.
        row_errors: Rejected rows, by position in the submitted batch.
        inserted_count: Number of rows that were written.
    """

    def __init__(self, table_name: str, row_errors: Sequence[RowError], inserted_count: int = 0, message: Optional[str] = None):
        self.table_name = table_name
        self.row_errors: List[RowError] = list(row_errors)
        self.inserted_count = inserted_count
        detail = ", ".join(f"row {e.index}: {e.reason}" for e in self.row_errors)
        super().__init__(
            message
            or f"{len(self.row_errors)} row(s) rejected by {table_name} ({inserted_count} inserted): {detail}"
        )

    @property
    def failed_indexes(self) -> List[int]:
        return [e.index for e in self.row_errors]
