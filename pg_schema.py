"""Derive PostgreSQL tables from Salesforce object descriptions."""

from __future__ import annotations

import dataclasses
import logging
import re
from typing import Iterable, Mapping

logger = logging.getLogger(__name__)

CUSTOM_SUFFIXES: tuple[str, ...] = ("__c",)

TYPE_MAP: dict[str, str] = {
    "string": "TEXT",
    "textarea": "TEXT",
    "boolean": "BOOLEAN",
    "double": "NUMERIC",
    "currency": "NUMERIC",
    "date": "DATE",
    "datetime": "TIMESTAMP",
    "email": "TEXT",
    "phone": "TEXT",
    "url": "TEXT",
    "reference": "UUID",
}

DEFAULT_TYPE = "TEXT"
PICKLIST = "picklist"
MULTIPICKLIST = "multipicklist"
REFERENCE = "reference"


@dataclasses.dataclass(frozen=True)
class PicklistEntry:
    value: str
    label: str = ""


@dataclasses.dataclass(frozen=True)
class FieldDescriptor:
    name: str
    source_type: str
    label: str = ""
    picklist_values: tuple[PicklistEntry, ...] = ()
    reference_to: tuple[str, ...] = ()

    @classmethod
    def from_describe(cls, raw: Mapping) -> "FieldDescriptor":
        entries = tuple(
            PicklistEntry(value=str(p.get("value", "")), label=str(p.get("label") or p.get("value", "")))
            for p in raw.get("picklistValues") or []
        )
        return cls(
            name=str(raw.get("name", "")),
            source_type=str(raw.get("type", "")),
            label=str(raw.get("label") or ""),
            picklist_values=entries,
            reference_to=tuple(str(r) for r in raw.get("referenceTo") or []),
        )

    def is_lookup_enumeration(self) -> bool:
        """Enumerations with more than two values live in their own lookup table."""
        return self.source_type in (PICKLIST, MULTIPICKLIST) and len(self.picklist_values) > 2


@dataclasses.dataclass(frozen=True)
class ObjectDescriptor:
    name: str
    fields: tuple[FieldDescriptor, ...] = ()

    @classmethod
    def from_describe(cls, raw: Mapping) -> "ObjectDescriptor":
        return cls(
            name=str(raw.get("name", "")),
            fields=tuple(FieldDescriptor.from_describe(f) for f in raw.get("fields") or []),
        )


@dataclasses.dataclass
class Column:
    name: str
    col_type: str
    primary_key: bool = False
    references: str | None = None
    suffix: str = ""

    @property
    def is_foreign_key(self) -> bool:
        return self.references is not None


@dataclasses.dataclass
class Table:
    name: str
    columns: list[Column] = dataclasses.field(default_factory=list)
    primary_key: tuple[str, ...] = ()
    values: tuple[str, ...] = ()

    def column(self, name: str) -> Column | None:
        for col in self.columns:
            if col.name == name:
                return col
        return None

    def column_names(self) -> list[str]:
        return [c.name for c in self.columns]

    def referenced_tables(self) -> set[str]:
        return {c.references for c in self.columns if c.references}


Schema = dict[str, Table]


@dataclasses.dataclass
class ValueLedger:
    """Append-only value -> id mapping for one lookup table.

    Ids are handed out once and never reused. Deleted values move to
    ``retired`` and keep their id in case they come back.
    """

    table: str
    active: dict[str, int] = dataclasses.field(default_factory=dict)
    retired: dict[str, int] = dataclasses.field(default_factory=dict)

    def next_id(self) -> int:
        ids = list(self.active.values()) + list(self.retired.values())
        return max(ids, default=0) + 1

    def values(self) -> list[str]:
        return [v for v, _ in sorted(self.active.items(), key=lambda kv: kv[1])]

    def copy(self) -> "ValueLedger":
        return ValueLedger(table=self.table, active=dict(self.active), retired=dict(self.retired))


EnumeratedValueSet = dict[str, ValueLedger]


def strip_suffix(name: str, suffixes: Iterable[str] = CUSTOM_SUFFIXES) -> str:
    for suffix in suffixes:
        if suffix and name.lower().endswith(suffix.lower()):
            return name[: -len(suffix)]
    return name


def derive_name(name: str, suffixes: Iterable[str] = CUSTOM_SUFFIXES) -> str:
    """Table/column name for a Salesforce API name: ``Custom_Deal__c`` -> ``custom_deal``."""
    return strip_suffix(name.lower(), suffixes)


def map_type(field: FieldDescriptor, type_map: Mapping[str, str] | None = None) -> str:
    if field.source_type == PICKLIST and len(field.picklist_values) == 2:
        return "BOOLEAN"
    return (type_map or TYPE_MAP).get(field.source_type, DEFAULT_TYPE)


def merged_type_map(overrides: Mapping[str, str] | None) -> dict[str, str]:
    merged = dict(TYPE_MAP)
    for source_type, pg_type in (overrides or {}).items():
        merged[str(source_type)] = str(pg_type).upper()
    return merged


def _add_main_column(table: Table, col: Column) -> None:
    if table.column(col.name) is not None:
        logger.warning("Skipping column %s.%s: name already in use", table.name, col.name)
        return
    table.columns.append(col)


def build_schema(
    obj: ObjectDescriptor,
    known_objects: Iterable[str],
    type_map: Mapping[str, str] | None = None,
    suffixes: Iterable[str] = CUSTOM_SUFFIXES,
) -> Schema:
    suffixes = tuple(suffixes)
    known = set(known_objects)
    table_name = derive_name(obj.name, suffixes)
    main = Table(name=table_name, columns=[Column(name="id", col_type="UUID", primary_key=True)])
    schema: Schema = {table_name: main}

    for field in obj.fields:
        column_name = derive_name(field.name, suffixes)

        if field.is_lookup_enumeration():
            lookup_name = f"{table_name}_{column_name}"
            if field.source_type == PICKLIST:
                _add_main_column(main, Column(name=f"{column_name}_id", col_type="INTEGER", references=lookup_name))
            schema[lookup_name] = Table(
                name=lookup_name,
                columns=[
                    Column(name="id", col_type="SERIAL", primary_key=True),
                    Column(name="value", col_type="TEXT", suffix="NOT NULL UNIQUE"),
                ],
                values=tuple(dict.fromkeys(p.value for p in field.picklist_values)),
            )
            if field.source_type == MULTIPICKLIST:
                junction_name = f"{lookup_name}_junction"
                schema[junction_name] = Table(
                    name=junction_name,
                    columns=[
                        Column(name=f"{table_name}_id", col_type="UUID", references=table_name),
                        Column(name=f"{column_name}_id", col_type="INTEGER", references=lookup_name),
                    ],
                    primary_key=(f"{table_name}_id", f"{column_name}_id"),
                )
            continue

        if field.source_type == MULTIPICKLIST:
            # Two or fewer options: no column and no lookup table.
            continue

        references = None
        if field.source_type == REFERENCE and field.reference_to:
            target = field.reference_to[0]
            if target in known:
                references = derive_name(target, suffixes)
        _add_main_column(main, Column(name=column_name, col_type=map_type(field, type_map), references=references))

    return schema


def main_table(schema: Schema) -> Table:
    return next(iter(schema.values()))


def lookup_tables(schema: Schema) -> list[Table]:
    return [t for t in schema.values() if t.values]


def build_value_ledgers(schema: Schema, baseline: Mapping[str, ValueLedger] | None = None) -> EnumeratedValueSet:
    baseline = baseline or {}
    ledgers: EnumeratedValueSet = {}

    for table in lookup_tables(schema):
        prior = baseline.get(table.name)
        ledger = prior.copy() if prior else ValueLedger(table=table.name)
        current = set(table.values)

        for value in list(ledger.active):
            if value not in current:
                ledger.retired[value] = ledger.active.pop(value)

        for value in table.values:
            if value in ledger.active:
                continue
            if value in ledger.retired:
                ledger.active[value] = ledger.retired.pop(value)
            else:
                ledger.active[value] = ledger.next_id()
        ledgers[table.name] = ledger

    for name, prior in baseline.items():
        if name not in ledgers:
            ledgers[name] = prior.copy()
    return ledgers


def normalize_type(col_type: str) -> str:
    """``numeric ( 5, 2 )`` -> ``NUMERIC(5,2)``; multi-word types keep single spaces."""
    text = " ".join(col_type.upper().split())
    return re.sub(r"\s*([(),])\s*", r"\1", text)


def sql_literal(value: str) -> str:
    """Quote a value so it stays on one line; control characters use an ``E''`` string."""
    quoted = value.replace("'", "''")
    if any(ch in value for ch in "\\\n\r\t"):
        escaped = quoted.replace("\\", "\\\\").replace("\n", "\\n").replace("\r", "\\r").replace("\t", "\\t")
        return f"E'{escaped}'"
    return f"'{quoted}'"


def dependency_order(schema: Schema) -> list[Table]:
    """Tables ordered so each follows the tables of this schema it references."""
    ordered: list[Table] = []
    placed: set[str] = set()
    pending = list(schema.values())
    while pending:
        for table in pending:
            deps = {t for t in table.referenced_tables() if t in schema and t != table.name}
            if deps <= placed:
                break
        else:
            table = pending[0]
        pending.remove(table)
        ordered.append(table)
        placed.add(table.name)
    return ordered


def render_column(col: Column) -> str:
    parts = [col.name, col.col_type]
    if col.primary_key:
        parts.append("PRIMARY KEY")
    if col.suffix:
        parts.append(col.suffix)
    if col.references:
        parts.append(f"REFERENCES {col.references}(id)")
    return " ".join(parts)


def render_table_sql(table: Table, if_not_exists: bool = False) -> str:
    guard = "IF NOT EXISTS " if if_not_exists else ""
    body = [f"  {render_column(col)}" for col in table.columns]
    if table.primary_key:
        body.append(f"  PRIMARY KEY ({', '.join(table.primary_key)})")
    lines = [f"CREATE TABLE {guard}{table.name} ("]
    lines.append(",\n".join(body))
    lines.append(");")
    return "\n".join(lines)


def render_create_sql(schema: Schema) -> str:
    return "\n\n".join(render_table_sql(t) for t in dependency_order(schema)) + "\n"


def render_insert(table: str, value: str, value_id: int) -> str:
    return f"INSERT INTO {table} (id, value) VALUES ({value_id}, {sql_literal(value)});"


def render_picklist_sql(ledgers: Mapping[str, ValueLedger]) -> str:
    blocks: list[str] = []
    for name in ledgers:
        ledger = ledgers[name]
        lines = [render_insert(name, v, i) for v, i in sorted(ledger.active.items(), key=lambda kv: kv[1])]
        lines.extend(
            f"-- retired: {render_insert(name, v, i)}" for v, i in sorted(ledger.retired.items(), key=lambda kv: kv[1])
        )
        if lines:
            blocks.append("\n".join(lines))
    if not blocks:
        return ""
    return "\n\n".join(blocks) + "\n"
