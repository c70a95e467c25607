"""Document change-history mirror package (Databricks).

Overview
--------
This package mirrors a document database's change-event stream into a Spark /
Delta Lake warehouse. History is kept in full; current state is exposed as a
view.

For every invocation the mirror:
1) Ensures the destination objects exist and match the declared schema:
	- the dataset (catalog schema),
	- a `<table>_raw` Delta table holding every recorded change,
	- a `<table>` view exposing the latest non-deleted row per identifier.
	Missing fields are added to the raw table; existing ones are never altered.
2) Normalizes each change event into a history row.
3) Appends the rows to the raw table. Rows are never updated or deleted.

Runtime assumptions
-------------------
- The default store uses the Databricks runtime's `spark` session with Delta
	Lake (`delta.tables.DeltaTable`).
- Any `DestinationStore` implementation can be injected instead.

Public entrypoints
------------------
`mirror_change_events(events, schema, dataset_id=None, table_name=None, store=None) -> int`
	 Reconcile-then-record for one invocation.
`EventHistoryTracker(store, dataset_id, table_name, schema)`
	 The same flow bound to one collection.
"""

from .errors import DestinationUnreachable, InsertPartialFailure, MirrorError, RowError, SchemaConflict
from .events import ChangeEvent, HistoryRow, Operation, build_history_row
from .orchestrator import EventHistoryTracker, mirror_change_events
from .reconciler import DestinationDescriptor, SchemaReconciler
from .recorder import EventRecorder
from .schema import DocumentSchema, FieldMode, Primitive, Record, SchemaField, load_schema_file, make_field
from .store import DestinationStore, SparkDestinationStore, default_store

__all__ = [
    "ChangeEvent",
    "DestinationDescriptor",
    "DestinationStore",
    "DestinationUnreachable",
    "DocumentSchema",
    "EventHistoryTracker",
    "EventRecorder",
    "FieldMode",
    "HistoryRow",
    "InsertPartialFailure",
    "MirrorError",
    "Operation",
    "Primitive",
    "Record",
    "RowError",
    "SchemaConflict",
    "SchemaField",
    "SchemaReconciler",
    "SparkDestinationStore",
    "build_history_row",
    "default_store",
    "load_schema_file",
    "make_field",
    "mirror_change_events",
]
