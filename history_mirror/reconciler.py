"""history_mirror.reconciler

Ensure the destination objects for a mirrored collection exist and match the
declared schema.

For a collection published as `<dataset>.<table>` this checks, in order:
1) That the dataset exists.
2) That a `<table>_raw` Delta table exists to store how the data changes over
    time, and that it has every declared field. Missing fields are added as
    nullable columns; nothing is ever removed or retyped.
3) That a `<table>` view exists to expose the current state of the data, and
    that its query matches the one generated for the current field set.

Every call re-derives its decisions from the store, so the check is safe to run
on every cold start and from several process instances at once. All conflicts
are detected before any column is added; an irreconcilable table is left
untouched.
"""

from __future__ import annotations

from dataclasses import dataclass

from pyspark.sql.types import StructType

from . import logs
from .config import Stopwatch, log_message, raw_table_name
from .errors import SchemaConflict
from .schema import DocumentSchema, SchemaDiff, diff_schema
from .store import DestinationStore
from .views import build_latest_view_query, view_definition_matches


@dataclass(frozen=True)
class DestinationDescriptor:
    """Where a collection's history table and latest-state view live."""

    dataset_id: str
    table_name: str

    @property
    def raw_table_name(self) -> str:
        return raw_table_name(self.table_name)

    @property
    def view_name(self) -> str:
        return self.table_name

    @property
    def raw_table_fqn(self) -> str:
        return f"{self.dataset_id}.{self.raw_table_name}"

    @property
    def view_fqn(self) -> str:
        return f"{self.dataset_id}.{self.view_name}"


class SchemaReconciler:
    """Create or widen the dataset, raw table and view for a collection."""

    def __init__(self, store: DestinationStore):
        self.store = store

    def ensure_schema(self, dataset_id: str, table_name: str, schema: DocumentSchema) -> DestinationDescriptor:
        """Bring the destination objects in line with `schema`.

        Args:
            dataset_id: Dataset (catalog schema) holding the objects.
            table_name: Public name of the collection; the view is published
                under it and the history table under `<table_name>_raw`.
            schema: Declared document schema.

        Returns:
            The `DestinationDescriptor` for the validated objects.

        Raises:
            DestinationUnreachable: The store could not be reached.
            SchemaConflict: An existing table or view cannot be reconciled
                without a destructive change.
        """
        timer = Stopwatch()
        logs.schema_initializing(dataset_id, table_name)
        descriptor = DestinationDescriptor(dataset_id, table_name)

        self._ensure_dataset(dataset_id)
        self._ensure_table(descriptor, schema)
        self._ensure_view(descriptor, schema)

        logs.schema_initialized(dataset_id, table_name, timer.format())
        return descriptor

    def _ensure_dataset(self, dataset_id: str) -> None:
        if self.store.dataset_exists(dataset_id):
            logs.dataset_exists(dataset_id)
            return

        logs.dataset_creating(dataset_id)
        self.store.create_dataset(dataset_id)
        logs.dataset_created(dataset_id)

    def _ensure_table(self, descriptor: DestinationDescriptor, schema: DocumentSchema) -> None:
        dataset_id, table = descriptor.dataset_id, descriptor.raw_table_name
        declared = schema.history_struct()

        if self.store.table_exists(dataset_id, table):
            logs.table_exists(table)
        else:
            if self.store.view_exists(dataset_id, table):
                raise SchemaConflict(descriptor.raw_table_fqn, [f"{table} exists as a view, expected a table"])
            logs.table_creating(table)
            self.store.create_table(dataset_id, table, declared)
            logs.table_created(table)

        # Re-validated after a create as well: a concurrent instance may have
        # created the table from an older field set.
        diff = self._diff(dataset_id, table, declared, schema)
        if diff.conflicts:
            raise SchemaConflict(descriptor.raw_table_fqn, diff.conflicts)
        if not diff.additions:
            logs.table_valid(table)
            return

        column_paths = [a.dotted_path for a in diff.additions]
        logs.table_widening(table, column_paths)
        self.store.add_table_columns(dataset_id, table, diff.additions)

        residual = self._diff(dataset_id, table, declared, schema)
        if not residual.is_current:
            problems = residual.conflicts + [f"{a.dotted_path}: column still missing after widening" for a in residual.additions]
            raise SchemaConflict(descriptor.raw_table_fqn, problems)
        logs.table_widened(table)

    def _diff(self, dataset_id: str, table: str, declared: StructType, schema: DocumentSchema) -> SchemaDiff:
        live = self.store.get_table_schema(dataset_id, table)
        diff = diff_schema(live, declared, required_columns=schema.required_columns)
        log_message(
            f"Schema diff for '{table}': {len(diff.additions)} addition(s), {len(diff.conflicts)} conflict(s)",
            level="DEBUG",
            depth=2,
        )
        return diff

    def _ensure_view(self, descriptor: DestinationDescriptor, schema: DocumentSchema) -> None:
        dataset_id, view = descriptor.dataset_id, descriptor.view_name
        expected = build_latest_view_query(dataset_id, descriptor.raw_table_name, schema)

        if not self.store.view_exists(dataset_id, view):
            if self.store.table_exists(dataset_id, view):
                raise SchemaConflict(descriptor.view_fqn, [f"{view} exists as a table, expected a view"])
            logs.view_creating(view)
            self.store.create_view(dataset_id, view, expected)
            logs.view_created(view)
        else:
            logs.view_exists(view)

        current = self.store.get_view_definition(dataset_id, view)
        if view_definition_matches(current, expected):
            logs.view_valid(view)
            return

        logs.view_updating(view)
        self.store.update_view_definition(dataset_id, view, expected)
        logs.view_updated(view)
