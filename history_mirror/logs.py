"""history_mirror.logs

Named lifecycle notifications.

Every step of reconciliation and recording reports through one of these
helpers so the run log reads the same regardless of which module emitted it.
All of them delegate to `config.log_message`; they carry no behavior.
"""

from __future__ import annotations

from .config import log_message


def schema_initializing(dataset_id: str, table_name: str) -> None:
    log_message(f"Initializing mirror schema for {dataset_id}.{table_name}...")


def schema_initialized(dataset_id: str, table_name: str, elapsed: str) -> None:
    log_message(f"Mirror schema for {dataset_id}.{table_name} is ready ({elapsed}).")


def dataset_exists(dataset_id: str) -> None:
    log_message(f"Dataset '{dataset_id}' already exists.", level="DEBUG", depth=1)


def dataset_creating(dataset_id: str) -> None:
    log_message(f"Creating dataset '{dataset_id}'...", depth=1)


def dataset_created(dataset_id: str) -> None:
    log_message(f"Created dataset '{dataset_id}'.", depth=1)


def table_exists(table_name: str) -> None:
    log_message(f"Table '{table_name}' already exists, validating schema...", level="DEBUG", depth=1)


def table_creating(table_name: str) -> None:
    log_message(f"Creating table '{table_name}'...", depth=1)


def table_created(table_name: str) -> None:
    log_message(f"Created table '{table_name}'.", depth=1)


def table_widening(table_name: str, column_paths: list) -> None:
    log_message(f"Adding {len(column_paths)} column(s) to '{table_name}': {', '.join(column_paths)}", depth=1)


def table_widened(table_name: str) -> None:
    log_message(f"Table '{table_name}' schema updated.", depth=1)


def table_valid(table_name: str) -> None:
    log_message(f"Table '{table_name}' schema is up to date.", level="DEBUG", depth=1)


def view_exists(view_name: str) -> None:
    log_message(f"View '{view_name}' already exists, validating definition...", level="DEBUG", depth=1)


def view_creating(view_name: str) -> None:
    log_message(f"Creating view '{view_name}'...", depth=1)


def view_created(view_name: str) -> None:
    log_message(f"Created view '{view_name}'.", depth=1)


def view_updating(view_name: str) -> None:
    log_message(f"View '{view_name}' definition is stale, replacing...", depth=1)


def view_updated(view_name: str) -> None:
    log_message(f"View '{view_name}' definition replaced.", depth=1)


def view_valid(view_name: str) -> None:
    log_message(f"View '{view_name}' definition is up to date.", level="DEBUG", depth=1)


def data_inserting(row_count: int) -> None:
    log_message(f"Inserting {row_count:,} row(s) of data into the history table...", level="DEBUG", depth=1)


def data_inserted(row_count: int) -> None:
    log_message(f"Inserted {row_count:,} row(s) of data into the history table.", depth=1)
