"""history_mirror.orchestrator

Document Change-History Mirror

This module is the entrypoint the change trigger calls. It wires together:
- schema reconciliation (dataset, raw history table, latest-state view)
- event normalization (ChangeEvent -> HistoryRow)
- append-only recording into the raw history table

Execution environment
--------------------
- Designed to run inside Databricks where `spark` is available; the default
  store is built from `databricks.sdk.runtime.spark`.
- Any other `DestinationStore` can be passed in explicitly (tests use an
  in-memory fake).

DATA FLOW (conceptual)
======================
Document write --> change trigger --> ChangeEvent(s)
                                          |
                          ensure_schema (dataset / <table>_raw / <table> view)
                                          |
                          build_history_row --> append to <table>_raw
                                                      |
                                   <table> view: latest non-deleted row per identifier

SECTION 1: INVOCATION CONTRACT
==============================
Each invocation is reconcile-then-record:
- Reconciliation runs on every call. It is idempotent and only reads from the
  store when nothing needs to change.
- Recording runs only if reconciliation succeeded. History is never appended
  against an unverified schema.
- Malformed events are rejected with `ValueError` before the store is touched.

SECTION 2: FAILURES
===================
- `DestinationUnreachable`: not retried here; the trigger infrastructure owns
  retry policy.
- `SchemaConflict`: fatal for the invocation; needs an operator decision.
- `InsertPartialFailure`: carries the indexes of rejected rows so the caller can
  retry just those.
Every failure is logged at ERROR and re-raised.

SECTION 3: OPERATIONAL NOTES
============================
- Timestamps are stored in UTC; naive event timestamps are treated as UTC.
- Duplicate deliveries are recorded twice. The view ranks by
  (timestamp, insert_id), so duplicates never change what it shows.
"""

from __future__ import annotations

from typing import Iterable, Optional, Union

from . import config
from .config import DEFAULT_DATASET_ID, DEFAULT_TABLE_NAME, log_message
from .events import ChangeEvent, build_history_rows
from .reconciler import DestinationDescriptor, SchemaReconciler
from .recorder import EventRecorder
from .schema import DocumentSchema
from .store import DestinationStore, default_store


class EventHistoryTracker:
    """Record change events for one mirrored collection.

    Args:
        store: Destination store shared by the reconciler and recorder.
        dataset_id: Dataset holding the collection's objects.
        table_name: Public collection name (view name).
        schema: Declared document schema.
    """

    def __init__(self, store: DestinationStore, dataset_id: str, table_name: str, schema: DocumentSchema):
        self.store = store
        self.dataset_id = dataset_id
        self.table_name = table_name
        self.schema = schema
        self.reconciler = SchemaReconciler(store)
        self.recorder = EventRecorder(store)

    def ensure_schema(self) -> DestinationDescriptor:
        return self.reconciler.ensure_schema(self.dataset_id, self.table_name, self.schema)

    def record(self, events: Union[ChangeEvent, Iterable[ChangeEvent]]) -> int:
        """Reconcile the destination, then append `events` to its history.

        Returns:
            Number of history rows appended.
        """
        batch = [events] if isinstance(events, ChangeEvent) else list(events)
        rows = build_history_rows(self.schema, batch)

        self.ensure_schema()
        return self.recorder.record(self.dataset_id, self.table_name, rows)


def mirror_change_events(
    events: Union[ChangeEvent, Iterable[ChangeEvent]],
    schema: DocumentSchema,
    dataset_id: Optional[str] = None,
    table_name: Optional[str] = None,
    store: Optional[DestinationStore] = None,
    verbose_logging: Optional[bool] = None,
) -> int:
    """Mirror one invocation's change events into the warehouse.

    Args:
        events: One event or a batch delivered by the change trigger.
        schema: Declared document schema for the collection.
        dataset_id: Defaults to `config.DEFAULT_DATASET_ID`.
        table_name: Defaults to `config.DEFAULT_TABLE_NAME`.
        store: Defaults to `default_store()` (Databricks runtime session).
        verbose_logging: Overrides `config.LOGGING_VERBOSE` when given.

    Returns:
        Number of history rows appended.

    Raises:
        Propagates every failure after logging it.
    """
    if verbose_logging is not None:
        config.LOGGING_VERBOSE = verbose_logging

    dataset_id = dataset_id or DEFAULT_DATASET_ID
    table_name = table_name or DEFAULT_TABLE_NAME
    batch = [events] if isinstance(events, ChangeEvent) else list(events)

    log_message(f"Mirroring {len(batch):,} change event(s) into {dataset_id}.{table_name}")
    timer = config.Stopwatch()

    try:
        tracker = EventHistoryTracker(store or default_store(), dataset_id, table_name, schema)
        recorded = tracker.record(batch)
    except Exception as e:
        log_message(f"Failed to mirror change events into {dataset_id}.{table_name}: {e}", level="ERROR")
        raise

    log_message(f"Recorded {recorded:,} history row(s) in {timer.format()}.")
    return recorded
