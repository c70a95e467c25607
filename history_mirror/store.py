"""history_mirror.store

Destination store capability and its Spark / Delta Lake implementation.

`DestinationStore` is the narrow contract the reconciler and recorder use:
existence checks, idempotent creates, additive column changes, view
definitions and row appends. Components receive a store instance explicitly;
nothing here is cached at module level.

`SparkDestinationStore` maps the contract onto Databricks:
- dataset -> catalog schema (`CREATE SCHEMA IF NOT EXISTS`)
- raw table -> managed Delta table (`DeltaTable.createIfNotExists`)
- view -> Spark SQL view (`CREATE VIEW IF NOT EXISTS` / `CREATE OR REPLACE VIEW`)

Concurrency notes:
- Creates rely on `IF NOT EXISTS`; a concurrent creator makes ours a no-op.
- Columns are added one statement at a time; "already exists" from a racing
    writer is treated as success. The reconciler re-reads the schema afterwards.
- Appends are plain Delta appends and need no coordination.

Error translation:
- py4j network failures and `ConnectionError` -> `DestinationUnreachable`
- Spark permission failures -> `DestinationUnreachable`
- anything else propagates unchanged
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

from delta.tables import DeltaTable
from py4j.protocol import Py4JNetworkError
from pyspark.sql import SparkSession
from pyspark.sql.types import (
    ArrayType,
    BinaryType,
    BooleanType,
    DataType,
    DateType,
    DecimalType,
    DoubleType,
    FloatType,
    IntegerType,
    LongType,
    StringType,
    StructType,
    TimestampType,
)

from .config import log_message, qualified_name, quote_identifier
from .errors import DestinationUnreachable, InsertPartialFailure, RowError
from .schema import ColumnAddition


class DestinationStore(ABC):
    """Operations the mirror needs from the analytical warehouse."""

    @abstractmethod
    def dataset_exists(self, dataset_id: str) -> bool: ...

    @abstractmethod
    def create_dataset(self, dataset_id: str) -> None: ...

    @abstractmethod
    def table_exists(self, dataset_id: str, table_name: str) -> bool:
        """True only for tables; a view under the same name reports False."""

    @abstractmethod
    def create_table(self, dataset_id: str, table_name: str, schema: StructType) -> None:
        """Create the table if it does not exist; a no-op when it does."""

    @abstractmethod
    def get_table_schema(self, dataset_id: str, table_name: str) -> StructType: ...

    @abstractmethod
    def add_table_columns(self, dataset_id: str, table_name: str, additions: Sequence[ColumnAddition]) -> None:
        """Add nullable columns; a column that already exists is not an error."""

    @abstractmethod
    def view_exists(self, dataset_id: str, view_name: str) -> bool:
        """True only for views; a table under the same name reports False."""

    @abstractmethod
    def create_view(self, dataset_id: str, view_name: str, query: str) -> None:
        """Create the view if it does not exist; a no-op when it does."""

    @abstractmethod
    def get_view_definition(self, dataset_id: str, view_name: str) -> str: ...

    @abstractmethod
    def update_view_definition(self, dataset_id: str, view_name: str, query: str) -> None: ...

    @abstractmethod
    def insert_rows(self, dataset_id: str, table_name: str, rows: Sequence[Mapping[str, Any]]) -> int:
        """Append rows and return how many were written.

        Raises:
            InsertPartialFailure: If any row was rejected.
        """


# =====================================================================================
# SPARK / DELTA IMPLEMENTATION
# =====================================================================================

_UNREACHABLE_MARKERS = ("PERMISSION_DENIED", "INSUFFICIENT_PERMISSIONS", "Connection refused", "UNAUTHENTICATED")
_ALREADY_EXISTS_MARKERS = ("FIELDS_ALREADY_EXISTS", "already exists", "Found duplicate column")


@contextmanager
def _store_call(action: str) -> Iterator[None]:
    """Translate Spark / py4j failures raised by `action` into the mirror's errors."""
    try:
        yield
    except (Py4JNetworkError, ConnectionError) as e:
        log_message(f"Destination unreachable while trying to {action}: {e}", level="ERROR", depth=2)
        raise DestinationUnreachable(f"Could not {action}: {e}") from e
    except Exception as e:
        message = str(e)
        if any(marker in message for marker in _UNREACHABLE_MARKERS):
            log_message(f"Destination refused access while trying to {action}: {e}", level="ERROR", depth=2)
            raise DestinationUnreachable(f"Could not {action}: {e}") from e
        raise


class SparkDestinationStore(DestinationStore):
    """`DestinationStore` backed by a Spark session with Delta Lake enabled."""

    def __init__(self, spark: SparkSession):
        self.spark = spark

    # ---- datasets -------------------------------------------------------------------

    def dataset_exists(self, dataset_id: str) -> bool:
        with _store_call(f"check dataset {dataset_id}"):
            return bool(self.spark.catalog.databaseExists(dataset_id))

    def create_dataset(self, dataset_id: str) -> None:
        with _store_call(f"create dataset {dataset_id}"):
            self.spark.sql(f"CREATE SCHEMA IF NOT EXISTS {quote_identifier(dataset_id)}")

    # ---- tables ---------------------------------------------------------------------

    def _table_type(self, dataset_id: str, name: str) -> Optional[str]:
        if not self.spark.catalog.tableExists(name, dataset_id):
            return None
        return str(self.spark.catalog.getTable(f"{dataset_id}.{name}").tableType).upper()

    def table_exists(self, dataset_id: str, table_name: str) -> bool:
        with _store_call(f"check table {dataset_id}.{table_name}"):
            table_type = self._table_type(dataset_id, table_name)
            return table_type is not None and table_type != "VIEW"

    def create_table(self, dataset_id: str, table_name: str, schema: StructType) -> None:
        with _store_call(f"create table {dataset_id}.{table_name}"):
            (
                DeltaTable.createIfNotExists(self.spark)
                .tableName(f"{dataset_id}.{table_name}")
                .addColumns(schema)
                .comment("Append-only change history. Rows are never updated or deleted.")
                .execute()
            )

    def get_table_schema(self, dataset_id: str, table_name: str) -> StructType:
        with _store_call(f"read schema of {dataset_id}.{table_name}"):
            return DeltaTable.forName(self.spark, f"{dataset_id}.{table_name}").toDF().schema

    def add_table_columns(self, dataset_id: str, table_name: str, additions: Sequence[ColumnAddition]) -> None:
        target = qualified_name(dataset_id, table_name)
        for addition in additions:
            with _store_call(f"add column {addition.dotted_path} to {dataset_id}.{table_name}"):
                try:
                    self.spark.sql(f"ALTER TABLE {target} ADD COLUMNS ({addition.ddl()})")
                except Exception as e:
                    if not any(marker in str(e) for marker in _ALREADY_EXISTS_MARKERS):
                        raise
                    log_message(
                        f"Column {addition.dotted_path} was added concurrently; skipping.",
                        level="DEBUG",
                        depth=2,
                    )

    # ---- views ----------------------------------------------------------------------

    def view_exists(self, dataset_id: str, view_name: str) -> bool:
        with _store_call(f"check view {dataset_id}.{view_name}"):
            return self._table_type(dataset_id, view_name) == "VIEW"

    def create_view(self, dataset_id: str, view_name: str, query: str) -> None:
        with _store_call(f"create view {dataset_id}.{view_name}"):
            self.spark.sql(f"CREATE VIEW IF NOT EXISTS {qualified_name(dataset_id, view_name)} AS {query}")

    def get_view_definition(self, dataset_id: str, view_name: str) -> str:
        with _store_call(f"read definition of {dataset_id}.{view_name}"):
            rows = self.spark.sql(f"DESCRIBE TABLE EXTENDED {qualified_name(dataset_id, view_name)}").collect()
        for row in rows:
            if row["col_name"] == "View Text":
                return row["data_type"] or ""
        return ""

    def update_view_definition(self, dataset_id: str, view_name: str, query: str) -> None:
        with _store_call(f"replace view {dataset_id}.{view_name}"):
            self.spark.sql(f"CREATE OR REPLACE VIEW {qualified_name(dataset_id, view_name)} AS {query}")

    # ---- rows -----------------------------------------------------------------------

    def insert_rows(self, dataset_id: str, table_name: str, rows: Sequence[Mapping[str, Any]]) -> int:
        table_schema = self.get_table_schema(dataset_id, table_name)

        accepted: List[Tuple[Any, ...]] = []
        rejected: List[RowError] = []
        for index, row in enumerate(rows):
            reason = row_rejection_reason(row, table_schema)
            if reason is None:
                accepted.append(to_spark_row(row, table_schema))
            else:
                rejected.append(RowError(index, reason))

        if accepted:
            with _store_call(f"append to {dataset_id}.{table_name}"):
                (
                    self.spark.createDataFrame(accepted, schema=table_schema)
                    .write.format("delta")
                    .mode("append")
                    .saveAsTable(f"{dataset_id}.{table_name}")
                )

        if rejected:
            raise InsertPartialFailure(f"{dataset_id}.{table_name}", rejected, inserted_count=len(accepted))
        return len(accepted)


def default_store() -> SparkDestinationStore:
    """Build a store on the Databricks runtime's active Spark session."""
    from databricks.sdk.runtime import spark

    return SparkDestinationStore(spark)


# =====================================================================================
# ROW VALIDATION
# =====================================================================================


def _lookup(row: Mapping[str, Any], name: str) -> Any:
    if name in row:
        return row[name]
    key = name.lower()
    for k, v in row.items():
        if k.lower() == key:
            return v
    return None


def row_rejection_reason(row: Mapping[str, Any], schema: StructType) -> Optional[str]:
    """Return why `row` cannot be stored in a table with `schema`, or None if it can."""
    known = {f.name.lower() for f in schema.fields}
    unknown = sorted(k for k in row if k.lower() not in known)
    if unknown:
        return f"unknown column(s) {', '.join(unknown)}"

    for struct_field in schema.fields:
        value = _lookup(row, struct_field.name)
        reason = _value_rejection_reason(value, struct_field.dataType, struct_field.nullable, struct_field.name)
        if reason is not None:
            return reason
    return None


_INTEGER_RANGES: Dict[type, Tuple[int, int]] = {
    LongType: (-(2**63), 2**63 - 1),
    IntegerType: (-(2**31), 2**31 - 1),
}

_PYTHON_TYPES: Dict[type, Tuple[type, ...]] = {
    StringType: (str,),
    LongType: (int,),
    IntegerType: (int,),
    DoubleType: (float, int),
    FloatType: (float, int),
    BooleanType: (bool,),
    TimestampType: (datetime,),
    DateType: (date,),
    BinaryType: (bytes, bytearray),
    DecimalType: (Decimal, int),
}


def _value_rejection_reason(value: Any, data_type: DataType, nullable: bool, path: str) -> Optional[str]:
    if value is None:
        return None if nullable else f"{path}: null value for non-nullable column"

    if isinstance(data_type, StructType):
        if not isinstance(value, Mapping):
            return f"{path}: expected a record, got {type(value).__name__}"
        known = {f.name.lower() for f in data_type.fields}
        unknown = sorted(str(k) for k in value if str(k).lower() not in known)
        if unknown:
            return f"{path}: unknown field(s) {', '.join(unknown)}"
        for struct_field in data_type.fields:
            reason = _value_rejection_reason(
                _lookup(value, struct_field.name),
                struct_field.dataType,
                struct_field.nullable,
                f"{path}.{struct_field.name}",
            )
            if reason is not None:
                return reason
        return None

    if isinstance(data_type, ArrayType):
        if isinstance(value, (str, bytes, Mapping)) or not isinstance(value, (list, tuple)):
            return f"{path}: expected a list, got {type(value).__name__}"
        for i, item in enumerate(value):
            reason = _value_rejection_reason(item, data_type.elementType, data_type.containsNull, f"{path}[{i}]")
            if reason is not None:
                return reason
        return None

    expected = _PYTHON_TYPES.get(type(data_type))
    if expected is None:
        return None
    # bool is an int subclass; only BooleanType accepts it.
    if isinstance(value, bool) and not isinstance(data_type, BooleanType):
        return f"{path}: expected {data_type.simpleString()}, got bool"
    # datetime is a date subclass; a DATE column takes plain dates only.
    if isinstance(data_type, DateType) and isinstance(value, datetime):
        return f"{path}: expected date, got datetime"
    if not isinstance(value, expected):
        return f"{path}: expected {data_type.simpleString()}, got {type(value).__name__}"
    bounds = _INTEGER_RANGES.get(type(data_type))
    if bounds is not None and not bounds[0] <= value <= bounds[1]:
        return f"{path}: {value} is out of range for {data_type.simpleString()}"
    return None


# =====================================================================================
# ROW CONVERSION
# =====================================================================================


def to_spark_row(row: Mapping[str, Any], schema: StructType) -> Tuple[Any, ...]:
    """Convert a validated row into a tuple `createDataFrame` accepts for `schema`.

    Records become tuples in the table's field order, so nested keys are matched
    case-insensitively like top-level ones. Integers are widened to float or
    Decimal where the column requires it.
    """
    return tuple(_to_spark_value(_lookup(row, f.name), f.dataType) for f in schema.fields)


def _to_spark_value(value: Any, data_type: DataType) -> Any:
    if value is None:
        return None
    if isinstance(data_type, StructType):
        return to_spark_row(value, data_type)
    if isinstance(data_type, ArrayType):
        return [_to_spark_value(item, data_type.elementType) for item in value]
    if isinstance(data_type, (DoubleType, FloatType)) and isinstance(value, int):
        return float(value)
    if isinstance(data_type, DecimalType) and isinstance(value, int):
        return Decimal(value)
    return value
