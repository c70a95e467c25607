from __future__ import annotations

"""Central configuration for the history mirror.

Why this file exists
--------------------
This module is the single source of truth for:
- Deployment defaults (dataset and table names) read from the environment
- Naming rules for the raw history table and the latest-state view
- System column names shared by the raw table, the view query and the recorder
- The mapping from document field kinds to Spark SQL types
- The `log_message` helper every module uses for run logs

Maintenance rules
-----------------
1) Prefer changing values here rather than scattering constants across modules.
2) Treat `SYSTEM_COLUMNS` and `SPARK_TYPE_MAPPING` as "contracts" with other
   modules: `schema.py`, `views.py` and `events.py` read these keys.
3) Renaming a system column is a breaking change for every existing raw table.

Runtime assumptions
-------------------
The production store runs inside Databricks where `spark` is available via
`databricks.sdk.runtime`; nothing in this module touches Spark.
"""

import inspect
import os
import time
from datetime import datetime
from typing import Dict

from pyspark.sql.types import (
    BinaryType,
    BooleanType,
    DataType,
    DateType,
    DecimalType,
    DoubleType,
    LongType,
    StringType,
    TimestampType,
)

# =====================================================================================
# LOGGING CONFIGURATION
# =====================================================================================
LOGGING_VERBOSE = os.environ.get("MIRROR_VERBOSE_LOGGING", "false").strip().lower() in ("1", "true", "yes")

PY_DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"


def log_message(message: str, level: str = "INFO", depth: int = 0) -> None:
    """Print a structured, readable log line.

    This helper provides consistent formatting across modules and supports a
    simple verbosity toggle via `LOGGING_VERBOSE`.

    Args:
        message: Human-readable message.
        level: One of "INFO", "DEBUG", "WARN", "ERROR".
        depth: Indentation level (each level adds two leading spaces).
    """
    if level in ("INFO", "WARN", "ERROR") or (level == "DEBUG" and LOGGING_VERBOSE):
        timestamp = datetime.now().strftime(PY_DATETIME_FORMAT)
        caller = inspect.stack()[1].function
        indent = "  " * depth
        caller_str = "" if caller == "<module>" else caller
        if caller_str:
            print(f"[{level:5}] | {timestamp} | {caller_str:40} | {indent}{message}")
        else:
            print(f"[{level:5}] | {timestamp} | {indent}{message}")


class Stopwatch:
    """Wall-clock timer for run logs."""

    def __init__(self) -> None:
        self.start = time.monotonic()

    def elapsed(self) -> float:
        return time.monotonic() - self.start

    def format(self) -> str:
        seconds = self.elapsed()
        if seconds < 60:
            return f"{seconds:.2f} seconds"
        return f"{seconds / 60:.2f} minutes"


# =====================================================================================
# DEPLOYMENT DEFAULTS
# =====================================================================================
# The change trigger is configured per document collection; these are only used
# when the caller does not pass explicit names.
DEFAULT_DATASET_ID = os.environ.get("MIRROR_DATASET_ID", "document_mirror")
DEFAULT_TABLE_NAME = os.environ.get("MIRROR_TABLE_NAME", "documents")

# =====================================================================================
# DESTINATION NAMING
# =====================================================================================
RAW_TABLE_SUFFIX = "_raw"


def raw_table_name(table_name: str) -> str:
    """Return the history table name backing the view `table_name`."""
    return f"{table_name}{RAW_TABLE_SUFFIX}"


def quote_identifier(name: str) -> str:
    """Backtick-quote a Spark SQL identifier."""
    return "`" + name.replace("`", "``") + "`"


def qualified_name(dataset_id: str, object_name: str) -> str:
    """Return the fully-qualified, quoted `dataset.object` name."""
    return f"{quote_identifier(dataset_id)}.{quote_identifier(object_name)}"


# =====================================================================================
# SYSTEM COLUMNS
# =====================================================================================
INSERT_ID_COLUMN = "insert_id"
OPERATION_COLUMN = "operation"
TIMESTAMP_COLUMN = "timestamp"

SYSTEM_COLUMNS = (INSERT_ID_COLUMN, OPERATION_COLUMN, TIMESTAMP_COLUMN)

# Window rank column used inside the view query only; never stored.
LATEST_RANK_COLUMN = "_latest_rank"

RESERVED_COLUMN_NAMES = frozenset(name.lower() for name in SYSTEM_COLUMNS + (LATEST_RANK_COLUMN,))

# =====================================================================================
# TYPE MAPPING
# =====================================================================================
SPARK_TYPE_MAPPING: Dict[str, DataType] = {
    "STRING": StringType(),
    "INTEGER": LongType(),
    "FLOAT": DoubleType(),
    "BOOLEAN": BooleanType(),
    "TIMESTAMP": TimestampType(),
    "DATE": DateType(),
    "BYTES": BinaryType(),
    "NUMERIC": DecimalType(38, 9),
}

# Schema files written for other warehouses use these spellings.
TYPE_ALIASES: Dict[str, str] = {
    "INT64": "INTEGER",
    "LONG": "INTEGER",
    "FLOAT64": "FLOAT",
    "DOUBLE": "FLOAT",
    "BOOL": "BOOLEAN",
    "DATETIME": "TIMESTAMP",
    "BIGNUMERIC": "NUMERIC",
    "DECIMAL": "NUMERIC",
}
