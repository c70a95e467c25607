"""history_mirror.recorder

Append change history rows to the raw table.

Rows are only ever appended: there is no update or delete path, so the raw
table is a complete log of every write the trigger delivered. A batch goes to
the store in a single call; the store decides how atomic that call is and
reports rejected rows through `InsertPartialFailure`.

Duplicate delivery of the same physical write produces duplicate rows with the
same `insert_id`. They are recorded as-is; the latest-state view ranks them
deterministically.
"""

from __future__ import annotations

from typing import Sequence, Union

from . import logs
from .config import log_message, raw_table_name
from .errors import InsertPartialFailure
from .events import HistoryRow
from .store import DestinationStore


class EventRecorder:
    def __init__(self, store: DestinationStore):
        self.store = store

    def record(self, dataset_id: str, table_name: str, rows: Union[HistoryRow, Sequence[HistoryRow]]) -> int:
        """Append one row or a batch of rows to `<table_name>_raw`.

        Args:
            dataset_id: Dataset holding the raw table.
            table_name: Public collection name (the view name).
            rows: A `HistoryRow` or a sequence of them.

        Returns:
            Number of rows appended.

        Raises:
            InsertPartialFailure: Some rows were rejected; the error lists them
                by position in `rows`.
            DestinationUnreachable: The store could not be reached.
        """
        batch = [rows] if isinstance(rows, HistoryRow) else list(rows)
        if not batch:
            log_message("No rows to record.", level="DEBUG", depth=1)
            return 0

        records = [row.to_record() for row in batch]
        table = raw_table_name(table_name)

        logs.data_inserting(len(records))
        try:
            inserted = self.store.insert_rows(dataset_id, table, records)
        except InsertPartialFailure as e:
            log_message(
                f"{len(e.row_errors)} of {len(records)} row(s) rejected by {dataset_id}.{table}; "
                f"failed indexes: {e.failed_indexes}",
                level="ERROR",
                depth=1,
            )
            raise
        logs.data_inserted(inserted)
        return inserted
