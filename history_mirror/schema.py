"""history_mirror.schema

Document schemas and their mapping onto the raw history table.

This module owns three things:
- The caller-facing schema model: `SchemaField` with a tagged `FieldType`
    (`Primitive` or nested `Record`) and a `FieldMode`, grouped into a
    `DocumentSchema` that also names the identifier fields.
- The raw table layout derived from a schema (`DocumentSchema.history_struct`):
    identifier columns, the system columns from `config.SYSTEM_COLUMNS`, then
    the remaining document fields.
- The field diff used by the reconciler (`diff_schema`): which columns are
    missing from a live table (additive, safe) and which declared fields cannot
    be reconciled without a destructive change (conflicts).

Spark semantics:
- Column names are compared case-insensitively, matching Spark's default
    `spark.sql.caseSensitive = false`.
- Nullability is not compared; every document column in the raw table is
    nullable because DELETE rows carry no snapshot.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from pyspark.sql.types import ArrayType, DataType, StringType, StructField, StructType, TimestampType

from .config import (
    INSERT_ID_COLUMN,
    OPERATION_COLUMN,
    RESERVED_COLUMN_NAMES,
    SPARK_TYPE_MAPPING,
    SYSTEM_COLUMNS,
    TIMESTAMP_COLUMN,
    TYPE_ALIASES,
    quote_identifier,
)


class FieldMode(str, Enum):
    NULLABLE = "NULLABLE"
    REQUIRED = "REQUIRED"
    REPEATED = "REPEATED"


@dataclass(frozen=True)
class Primitive:
    """A scalar field type. `kind` is one of the keys of `SPARK_TYPE_MAPPING`."""

    kind: str

    def __post_init__(self) -> None:
        kind = self.kind.strip().upper()
        kind = TYPE_ALIASES.get(kind, kind)
        if kind not in SPARK_TYPE_MAPPING:
            raise ValueError(f"Unsupported field type '{self.kind}'. Expected one of {sorted(SPARK_TYPE_MAPPING)}.")
        object.__setattr__(self, "kind", kind)


@dataclass(frozen=True)
class Record:
    """A nested document type."""

    fields: Tuple["SchemaField", ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "fields", tuple(self.fields))
        if not self.fields:
            raise ValueError("Record types must declare at least one field.")
        _check_unique_names(self.fields)


FieldType = Union[Primitive, Record]


@dataclass(frozen=True)
class SchemaField:
    name: str
    type: FieldType
    mode: FieldMode = FieldMode.NULLABLE

    def __post_init__(self) -> None:
        if not self.name or not self.name.strip():
            raise ValueError("Field names must be non-empty.")
        if not isinstance(self.type, (Primitive, Record)):
            raise TypeError(f"Field '{self.name}' has unsupported type {self.type!r}.")
        object.__setattr__(self, "mode", FieldMode(self.mode))

    @property
    def repeated(self) -> bool:
        return self.mode is FieldMode.REPEATED

    @property
    def required(self) -> bool:
        return self.mode is FieldMode.REQUIRED


def make_field(name: str, type_: Union[str, FieldType, Sequence[SchemaField]], mode: str = "NULLABLE") -> SchemaField:
    """Shorthand constructor.

    `type_` may be a primitive kind name ("STRING"), a `FieldType`, or a
    sequence of `SchemaField` for a nested record.
    """
    if isinstance(type_, str):
        field_type: FieldType = Primitive(type_)
    elif isinstance(type_, (Primitive, Record)):
        field_type = type_
    else:
        field_type = Record(tuple(type_))
    return SchemaField(name, field_type, FieldMode(mode.upper()))


def _check_unique_names(fields: Sequence[SchemaField]) -> None:
    seen: Dict[str, str] = {}
    for f in fields:
        key = f.name.lower()
        if key in seen:
            raise ValueError(f"Duplicate field name '{f.name}' (conflicts with '{seen[key]}').")
        seen[key] = f.name


# =====================================================================================
# SPARK TYPE CONVERSION
# =====================================================================================


def spark_type(field_type: FieldType) -> DataType:
    """Map a `FieldType` onto a Spark `DataType`."""
    if isinstance(field_type, Primitive):
        return SPARK_TYPE_MAPPING[field_type.kind]
    if isinstance(field_type, Record):
        return StructType([to_struct_field(f) for f in field_type.fields])
    raise TypeError(f"Unsupported field type {field_type!r}")


def to_struct_field(schema_field: SchemaField, nullable: bool = True) -> StructField:
    data_type = spark_type(schema_field.type)
    if schema_field.repeated:
        data_type = ArrayType(data_type, True)
    return StructField(schema_field.name, data_type, nullable)


def ddl_type(data_type: DataType) -> str:
    """Render a Spark `DataType` as a Spark SQL DDL type string with quoted field names."""
    if isinstance(data_type, StructType):
        members = ", ".join(f"{quote_identifier(f.name)}: {ddl_type(f.dataType)}" for f in data_type.fields)
        return f"STRUCT<{members}>"
    if isinstance(data_type, ArrayType):
        return f"ARRAY<{ddl_type(data_type.elementType)}>"
    return data_type.simpleString().upper()


# =====================================================================================
# DOCUMENT SCHEMA
# =====================================================================================


@dataclass(frozen=True)
class DocumentSchema:
    """Declared fields of a mirrored collection plus its identifier fields.

    Identifier fields key a logical document across its history; the
    latest-state view partitions on them. They must be declared top-level,
    non-repeated primitive fields.
    """

    fields: Tuple[SchemaField, ...]
    id_field_names: Tuple[str, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "fields", tuple(self.fields))
        object.__setattr__(self, "id_field_names", tuple(self.id_field_names))

        if not self.fields:
            raise ValueError("A document schema must declare at least one field.")
        _check_unique_names(self.fields)

        reserved = [f.name for f in self.fields if f.name.lower() in RESERVED_COLUMN_NAMES]
        if reserved:
            raise ValueError(f"Field name(s) {reserved} are reserved for system columns {list(SYSTEM_COLUMNS)}.")

        if not self.id_field_names:
            raise ValueError("A document schema must name at least one identifier field.")
        if len({n.lower() for n in self.id_field_names}) != len(self.id_field_names):
            raise ValueError(f"Identifier fields {list(self.id_field_names)} contain duplicates.")

        for name in self.id_field_names:
            declared = self.get_field(name)
            if declared is None:
                raise ValueError(f"Identifier field '{name}' is not a declared field.")
            if not isinstance(declared.type, Primitive) or declared.repeated:
                raise ValueError(f"Identifier field '{name}' must be a non-repeated primitive field.")

    @property
    def field_names(self) -> List[str]:
        return [f.name for f in self.fields]

    def get_field(self, name: str) -> Optional[SchemaField]:
        key = name.lower()
        for f in self.fields:
            if f.name.lower() == key:
                return f
        return None

    @property
    def id_fields(self) -> List[SchemaField]:
        by_name = {f.name.lower(): f for f in self.fields}
        return [by_name[name.lower()] for name in self.id_field_names]

    @property
    def data_fields(self) -> List[SchemaField]:
        """Declared fields that are not identifier fields, in declared order."""
        id_keys = {n.lower() for n in self.id_field_names}
        return [f for f in self.fields if f.name.lower() not in id_keys]

    def history_struct(self) -> StructType:
        """Return the raw history table layout for this schema."""
        columns = [to_struct_field(f, nullable=False) for f in self.id_fields]
        columns += [
            StructField(INSERT_ID_COLUMN, StringType(), False),
            StructField(OPERATION_COLUMN, StringType(), False),
            StructField(TIMESTAMP_COLUMN, TimestampType(), False),
        ]
        columns += [to_struct_field(f) for f in self.data_fields]
        return StructType(columns)

    @property
    def required_columns(self) -> List[str]:
        """Columns an existing raw table must already have; they cannot be added later."""
        return list(self.id_field_names) + list(SYSTEM_COLUMNS)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "DocumentSchema":
        """Build a schema from its JSON form.

        Expected shape::

            {
              "fields": [{"name": "title", "type": "STRING", "mode": "NULLABLE"},
                         {"name": "address", "type": "RECORD", "fields": [...]}],
              "idFields": ["document_id"]
            }

        `idField` (a single name) is accepted in place of `idFields`.
        """
        raw_fields = payload.get("fields")
        if not isinstance(raw_fields, list):
            raise ValueError("Schema payload must contain a 'fields' list.")

        id_fields = payload.get("idFields")
        if id_fields is None and payload.get("idField") is not None:
            id_fields = [payload["idField"]]
        if isinstance(id_fields, str):
            id_fields = [id_fields]

        return cls(tuple(_field_from_dict(f) for f in raw_fields), tuple(id_fields or ()))


def _field_from_dict(payload: Mapping[str, Any]) -> SchemaField:
    name = payload.get("name")
    if not name:
        raise ValueError(f"Schema field is missing a name: {payload!r}")
    type_name = str(payload.get("type", "STRING")).upper()
    mode = str(payload.get("mode", "NULLABLE")).upper()

    if type_name in ("RECORD", "STRUCT"):
        nested = payload.get("fields")
        if not isinstance(nested, list):
            raise ValueError(f"Record field '{name}' must contain a 'fields' list.")
        field_type: FieldType = Record(tuple(_field_from_dict(f) for f in nested))
    else:
        field_type = Primitive(type_name)
    return SchemaField(name, field_type, FieldMode(mode))


def load_schema_file(path: Union[str, Path]) -> DocumentSchema:
    """Read a `DocumentSchema` from a JSON schema file."""
    with open(path, "r", encoding="utf-8") as handle:
        return DocumentSchema.from_dict(json.load(handle))


# =====================================================================================
# SCHEMA DIFF
# =====================================================================================


@dataclass(frozen=True)
class ColumnAddition:
    """A column (possibly nested) missing from a live table."""

    path: Tuple[str, ...]
    field: StructField

    @property
    def dotted_path(self) -> str:
        return ".".join(self.path)

    def ddl(self) -> str:
        """Column definition for `ALTER TABLE ... ADD COLUMNS (...)`."""
        column = ".".join(quote_identifier(p) for p in self.path)
        return f"{column} {ddl_type(self.field.dataType)}"


@dataclass
class SchemaDiff:
    additions: List[ColumnAddition] = field(default_factory=list)
    conflicts: List[str] = field(default_factory=list)

    @property
    def is_current(self) -> bool:
        return not self.additions and not self.conflicts


def diff_schema(live: StructType, declared: StructType, required_columns: Sequence[str] = ()) -> SchemaDiff:
    """Compare a live table schema with the declared layout.

    Args:
        live: Schema read from the existing table.
        declared: Layout the table should have (`DocumentSchema.history_struct`).
        required_columns: Top-level columns that must already exist; a missing
            one is a conflict rather than an addition.

    Returns:
        A `SchemaDiff`. Live fields that are not declared are ignored; they are
        never removed.
    """
    diff = SchemaDiff()
    required = {name.lower() for name in required_columns}

    live_by_name = {f.name.lower(): f for f in live.fields}
    for declared_field in declared.fields:
        live_field = live_by_name.get(declared_field.name.lower())
        if live_field is None:
            if declared_field.name.lower() in required:
                diff.conflicts.append(
                    f"{declared_field.name}: column is missing from the existing table and cannot be added"
                )
            else:
                diff.additions.append(ColumnAddition((declared_field.name,), _as_nullable(declared_field)))
            continue
        _diff_type(live_field.dataType, declared_field.dataType, (live_field.name,), diff)

    return diff


def _diff_struct(live: StructType, declared: StructType, path: Tuple[str, ...], diff: SchemaDiff) -> None:
    live_by_name = {f.name.lower(): f for f in live.fields}
    for declared_field in declared.fields:
        live_field = live_by_name.get(declared_field.name.lower())
        if live_field is None:
            diff.additions.append(ColumnAddition(path + (declared_field.name,), _as_nullable(declared_field)))
        else:
            _diff_type(live_field.dataType, declared_field.dataType, path + (live_field.name,), diff)


def _diff_type(live: DataType, declared: DataType, path: Tuple[str, ...], diff: SchemaDiff) -> None:
    if isinstance(live, StructType) and isinstance(declared, StructType):
        _diff_struct(live, declared, path, diff)
    elif isinstance(live, ArrayType) and isinstance(declared, ArrayType):
        _diff_type(live.elementType, declared.elementType, path + ("element",), diff)
    elif live != declared:
        diff.conflicts.append(
            f"{'.'.join(path)}: existing type {live.simpleString()} is incompatible with declared type "
            f"{declared.simpleString()}"
        )


def _as_nullable(struct_field: StructField) -> StructField:
    return StructField(struct_field.name, struct_field.dataType, True)
