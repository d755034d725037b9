#!/usr/bin/env python3
"""Generate PostgreSQL DDL, picklist data and incremental migrations from dumped Salesforce metadata."""

from __future__ import annotations

import argparse
import copy
import dataclasses
import difflib
import json
import logging
import re
import shutil
import sys
import time
from pathlib import Path
from typing import Iterable, Mapping, Union

try:
    import yaml
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required. Install with: pip install pyyaml") from exc

from pg_schema import (
    CUSTOM_SUFFIXES,
    Column,
    EnumeratedValueSet,
    ObjectDescriptor,
    Schema,
    Table,
    ValueLedger,
    build_schema,
    build_value_ledgers,
    derive_name,
    main_table,
    map_type,
    merged_type_map,
    normalize_type,
    render_column,
    render_create_sql,
    render_picklist_sql,
    render_table_sql,
    sql_literal,
    strip_suffix,
)
from snapshot_parser import load_baseline_table, load_value_ledgers

logger = logging.getLogger(__name__)

DEFAULT_CONFIG: dict = {
    "output_dir": "outputs",
    "readme": "README.md",
    "objects": [],
    "naming": {"suffixes": list(CUSTOM_SUFFIXES)},
    "types": {"overrides": {}},
    "salesforce": {"login_url": "https://login.salesforce.com", "api_version": "59.0"},
    "rendering": {"header_comment": ""},
}

MAX_DIFF_LINES = 200
README_SECTION_RE = re.compile(r"## Generated Tables\n\n[\s\S]*?\n\n")
EMPTY_README_TABLE = (
    "| Salesforce Object | PostgreSQL Tables |\n"
    "|-------------------|-------------------|\n"
    "| (No tables generated yet) |"
)


@dataclasses.dataclass(frozen=True)
class AddColumn:
    table: str
    column: Column


@dataclasses.dataclass(frozen=True)
class AlterColumnType:
    table: str
    column: str
    old_type: str
    new_type: str


@dataclasses.dataclass(frozen=True)
class AddForeignKeyConstraint:
    table: str
    column: str
    references: str
    constraint: str


@dataclasses.dataclass(frozen=True)
class DropColumn:
    table: str
    column: str


@dataclasses.dataclass(frozen=True)
class InsertEnumeratedValue:
    table: str
    value: str
    value_id: int


@dataclasses.dataclass(frozen=True)
class DeleteEnumeratedValue:
    table: str
    value: str


MigrationStatement = Union[
    AddColumn,
    AlterColumnType,
    AddForeignKeyConstraint,
    DropColumn,
    InsertEnumeratedValue,
    DeleteEnumeratedValue,
]

STATEMENT_ORDER = (
    AddColumn,
    AlterColumnType,
    AddForeignKeyConstraint,
    DropColumn,
    InsertEnumeratedValue,
    DeleteEnumeratedValue,
)


@dataclasses.dataclass
class MigrationPlan:
    table: str
    statements: list = dataclasses.field(default_factory=list)

    def __bool__(self) -> bool:
        return bool(self.statements)

    def __len__(self) -> int:
        return len(self.statements)

    def kinds(self) -> list[str]:
        return [type(s).__name__ for s in self.statements]

    def of(self, kind: type) -> list:
        return [s for s in self.statements if isinstance(s, kind)]


def constraint_name(table: str, column: str) -> str:
    return f"fk_{table}_{column}"


def diff_columns(current: Table, baseline: Table | None) -> list:
    base_cols = {c.name: c for c in baseline.columns} if baseline else {}
    current_names = set(current.column_names())

    adds: list = []
    alters: list = []
    constraints: list = []
    for col in current.columns:
        old = base_cols.get(col.name)
        if old is None:
            adds.append(AddColumn(current.name, col))
            continue
        if normalize_type(old.col_type) != normalize_type(col.col_type):
            alters.append(AlterColumnType(current.name, col.name, old.col_type, col.col_type))
        if col.references and old.references != col.references:
            constraints.append(
                AddForeignKeyConstraint(current.name, col.name, col.references, constraint_name(current.name, col.name))
            )

    drops = [DropColumn(current.name, name) for name in base_cols if name not in current_names]
    return adds + alters + constraints + drops


def diff_values(
    current_values: Mapping[str, ValueLedger],
    baseline_values: Mapping[str, Iterable[str]],
    tables: Iterable[str],
) -> list:
    inserts: list = []
    deletes: list = []
    for name in tables:
        ledger = current_values.get(name)
        current = ledger.values() if ledger else []
        previous = baseline_values.get(name)
        if isinstance(previous, ValueLedger):
            previous = previous.values()
        elif isinstance(previous, (set, frozenset)):
            previous = sorted(previous)
        previous = list(previous or [])
        for value in current:
            if value not in previous:
                inserts.append(InsertEnumeratedValue(name, value, ledger.active[value]))
        for value in previous:
            if value not in current:
                deletes.append(DeleteEnumeratedValue(name, value))
    return inserts + deletes


def diff(
    schema: Schema,
    baseline: Table | None,
    current_values: Mapping[str, ValueLedger],
    baseline_values: Mapping[str, Iterable[str]] | None = None,
) -> MigrationPlan:
    """Compute the ordered migration from ``baseline`` to ``schema``.

    Column changes come first (add, alter type, add constraint, drop), then
    value inserts and deletes for every lookup table of ``schema``.
    """
    current = main_table(schema)
    statements = diff_columns(current, baseline)
    lookups = [t.name for t in schema.values() if t.values]
    statements += diff_values(current_values, baseline_values or {}, lookups)
    statements.sort(key=lambda s: STATEMENT_ORDER.index(type(s)))
    return MigrationPlan(table=current.name, statements=statements)


def render_statement(stmt) -> str:
    if isinstance(stmt, AddColumn):
        if stmt.column.primary_key:
            return f"CREATE TABLE IF NOT EXISTS {stmt.table} (\n  {render_column(stmt.column)}\n);"
        return f"ALTER TABLE {stmt.table} ADD COLUMN IF NOT EXISTS {render_column(stmt.column)};"
    if isinstance(stmt, AlterColumnType):
        return (
            f"ALTER TABLE {stmt.table} ALTER COLUMN {stmt.column} TYPE {stmt.new_type} "
            f"USING {stmt.column}::{stmt.new_type};"
        )
    if isinstance(stmt, AddForeignKeyConstraint):
        return "\n".join(
            [
                "DO $$",
                "BEGIN",
                f"  IF NOT EXISTS (SELECT 1 FROM pg_constraint WHERE conname = '{stmt.constraint}') THEN",
                f"    ALTER TABLE {stmt.table} ADD CONSTRAINT {stmt.constraint} "
                f"FOREIGN KEY ({stmt.column}) REFERENCES {stmt.references}(id);",
                "  END IF;",
                "END $$;",
            ]
        )
    if isinstance(stmt, DropColumn):
        return f"ALTER TABLE {stmt.table} DROP COLUMN IF EXISTS {stmt.column};"
    if isinstance(stmt, InsertEnumeratedValue):
        return (
            f"INSERT INTO {stmt.table} (id, value) VALUES ({stmt.value_id}, {sql_literal(stmt.value)}) "
            "ON CONFLICT (value) DO NOTHING;"
        )
    if isinstance(stmt, DeleteEnumeratedValue):
        return f"DELETE FROM {stmt.table} WHERE value = {sql_literal(stmt.value)};"
    raise TypeError(f"Unsupported statement: {stmt!r}")


def auxiliary_tables_for(plan: MigrationPlan, schema: Schema) -> list[Table]:
    touched: set[str] = set()
    for stmt in plan.statements:
        if isinstance(stmt, AddColumn) and stmt.column.references:
            touched.add(stmt.column.references)
        elif isinstance(stmt, InsertEnumeratedValue):
            touched.add(stmt.table)
    touched.discard(plan.table)

    tables: list[Table] = []
    for table in schema.values():
        if table.name == plan.table:
            continue
        if table.name in touched or (table.referenced_tables() & touched and not table.values):
            tables.append(table)
    return tables


def render_plan_sql(plan: MigrationPlan, schema: Schema | None = None) -> str:
    if not plan:
        return ""
    lines: list[str] = [f"-- {plan.table}"]
    aux = auxiliary_tables_for(plan, schema) if schema else []
    lookups = [t for t in aux if t.values]
    junctions = [t for t in aux if not t.values]

    for table in lookups:
        lines.append(render_table_sql(table, if_not_exists=True))
    for stmt in plan.statements:
        if isinstance(stmt, (InsertEnumeratedValue, DeleteEnumeratedValue)) and junctions:
            for table in junctions:
                lines.append(render_table_sql(table, if_not_exists=True))
            junctions = []
        lines.append(render_statement(stmt))
    for table in junctions:
        lines.append(render_table_sql(table, if_not_exists=True))
    return "\n".join(lines) + "\n"


def render_object_markdown(
    obj: ObjectDescriptor,
    known_objects: Iterable[str],
    type_map: Mapping[str, str] | None = None,
    suffixes: Iterable[str] = CUSTOM_SUFFIXES,
    values: Mapping[str, ValueLedger] | None = None,
) -> str:
    suffixes = tuple(suffixes)
    known = set(known_objects)
    values = values or {}
    table_name = derive_name(obj.name, suffixes)
    lines: list[str] = [f"# {obj.name}", "", "## Attributes", ""]
    lines.append("| Field Name | Type | Description | Reference |")
    lines.append("|------------|------|-------------|-----------|")
    for field in obj.fields:
        col_type = map_type(field, type_map)
        reference = ""
        if field.is_lookup_enumeration():
            col_type = "Picklist (see below)" if field.source_type == "picklist" else "Multipicklist (see below)"
        elif field.source_type == "reference" and field.reference_to and field.reference_to[0] in known:
            target = field.reference_to[0]
            reference = f"[{target}](../{target}/{target.lower()}.md)"
        lines.append(f"| {strip_suffix(field.name, suffixes)} | {col_type} | {field.label} | {reference} |")

    enumerations = [f for f in obj.fields if f.is_lookup_enumeration()]
    if enumerations:
        lines.extend(["", "## Picklists"])
        for field in enumerations:
            column_name = derive_name(field.name, suffixes)
            ledger = values.get(f"{table_name}_{column_name}")
            lines.extend(["", f"### {strip_suffix(field.name, suffixes)}", ""])
            lines.append("| Value | Label |")
            lines.append("|-------|-------|")
            for idx, entry in enumerate(field.picklist_values, 1):
                value_id = ledger.active.get(entry.value, idx) if ledger else idx
                lines.append(f"| {value_id} | {entry.label} |")
    lines.append("")
    return "\n".join(lines)


def readme_table(schemas: Mapping[str, Schema]) -> str:
    lines = ["| Salesforce Object | PostgreSQL Tables |", "|-------------------|-------------------|"]
    for object_name, schema in schemas.items():
        tables = list(schema)
        lines.append(f"| {object_name} | {tables[0]} |")
        for name in tables[1:]:
            lines.append(f"|                   | {name} |")
    return "\n".join(lines)


def update_readme(text: str, table: str) -> str:
    section = f"## Generated Tables\n\n{table}\n\n"
    if README_SECTION_RE.search(text):
        return README_SECTION_RE.sub(lambda _: section, text, count=1)
    return text.rstrip("\n") + "\n\n" + section


def load_config(path: Path | None) -> dict:
    config = copy.deepcopy(DEFAULT_CONFIG)
    if path is None or not path.exists():
        return config
    loaded = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(loaded, dict):
        raise ValueError(f"Config {path} must be a mapping")
    unknown = set(loaded) - set(DEFAULT_CONFIG)
    if unknown:
        raise ValueError(f"Unknown config keys in {path}: {sorted(unknown)}")
    for key, value in loaded.items():
        if isinstance(config[key], dict):
            if not isinstance(value, dict):
                raise ValueError(f"Config key {key!r} must be a mapping")
            config[key].update(value)
        else:
            config[key] = value
    if not isinstance(config["types"].get("overrides") or {}, dict):
        raise ValueError("types.overrides must be a mapping")
    return config


def object_dir(output_dir: Path, object_name: str) -> Path:
    return output_dir / object_name


def artifact_path(output_dir: Path, object_name: str, kind: str) -> Path:
    suffix = {"create": "_create.sql", "picklist": "_picklist.sql", "metadata": "_metadata.json", "markdown": ".md"}[kind]
    return object_dir(output_dir, object_name) / f"{object_name.lower()}{suffix}"


@dataclasses.dataclass
class ObjectResult:
    name: str
    schema: Schema
    values: EnumeratedValueSet
    plan: MigrationPlan
    create_sql: str
    picklist_sql: str
    updates_sql: str
    markdown: str


def process_object(obj: ObjectDescriptor, known_objects: Iterable[str], output_dir: Path, config: dict) -> ObjectResult:
    known = list(known_objects)
    suffixes = tuple(config["naming"].get("suffixes") or CUSTOM_SUFFIXES)
    type_map = merged_type_map(config["types"].get("overrides"))

    schema = build_schema(obj, known, type_map=type_map, suffixes=suffixes)
    table_name = main_table(schema).name
    baseline = load_baseline_table(artifact_path(output_dir, obj.name, "create"), table_name)
    baseline_values = load_value_ledgers(artifact_path(output_dir, obj.name, "picklist"))
    if baseline is None:
        logger.info("No previous schema for %s, planning full creation", obj.name)

    values = build_value_ledgers(schema, baseline_values)
    plan = diff(schema, baseline, values, baseline_values)
    return ObjectResult(
        name=obj.name,
        schema=schema,
        values=values,
        plan=plan,
        create_sql=render_create_sql(schema),
        picklist_sql=render_picklist_sql(values),
        updates_sql=render_plan_sql(plan, schema),
        markdown=render_object_markdown(obj, known, type_map=type_map, suffixes=suffixes, values=values),
    )


def load_descriptor(output_dir: Path, object_name: str) -> ObjectDescriptor:
    path = artifact_path(output_dir, object_name, "metadata")
    if not path.exists():
        raise ValueError(f"Missing metadata for {object_name}: {path} (run dump_objects.py first)")
    return ObjectDescriptor.from_describe(json.loads(path.read_text(encoding="utf-8")))


def load_known_objects(output_dir: Path) -> list[str]:
    path = output_dir / "objects.json"
    if not path.exists():
        return sorted(p.name for p in output_dir.iterdir() if p.is_dir()) if output_dir.exists() else []
    return [str(name) for name in json.loads(path.read_text(encoding="utf-8"))]


def generate_outputs(object_names: Iterable[str], output_dir: Path, config: dict) -> list[ObjectResult]:
    known = load_known_objects(output_dir)
    results: list[ObjectResult] = []
    for name in object_names:
        results.append(process_object(load_descriptor(output_dir, name), known, output_dir, config))
    return results


def combined_updates(results: Iterable[ObjectResult], header: str = "") -> str:
    chunks = [r.updates_sql for r in results if r.updates_sql]
    if not chunks:
        return ""
    header = header.strip()
    prefix = f"{header}\n\n" if header else ""
    return prefix + "\n".join(chunks)


def write_text(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


def write_outputs(results: list[ObjectResult], output_dir: Path, readme: Path, header: str = "") -> Path | None:
    for result in results:
        write_text(artifact_path(output_dir, result.name, "create"), result.create_sql)
        write_text(artifact_path(output_dir, result.name, "markdown"), result.markdown)
        picklist_path = artifact_path(output_dir, result.name, "picklist")
        if result.picklist_sql:
            write_text(picklist_path, result.picklist_sql)

    updates_path = None
    updates = combined_updates(results, header)
    if updates:
        updates_path = output_dir / f"updates_{int(time.time() * 1000)}.sql"
        write_text(updates_path, updates)

    if readme.exists():
        table = readme_table({r.name: r.schema for r in results})
        write_text(readme, update_readme(readme.read_text(encoding="utf-8"), table))
    return updates_path


def check_equal(path: Path, generated: str | None) -> bool:
    """Compare one artifact with freshly rendered text; ``None`` means the file must be absent."""
    existing = path.read_text(encoding="utf-8") if path.exists() else None
    if existing == generated:
        return True
    if existing is None:
        print(f"[check] missing file: {path}", file=sys.stderr)
        return False
    if generated is None:
        print(f"[check] stale file: {path}", file=sys.stderr)
        return False

    print(f"[check] drift detected: {path}", file=sys.stderr)
    shown = 0
    for line in difflib.unified_diff(
        existing.splitlines(), generated.splitlines(), fromfile=str(path), tofile=f"generated:{path}", lineterm=""
    ):
        if shown == MAX_DIFF_LINES:
            print("... (diff truncated)", file=sys.stderr)
            break
        print(line, file=sys.stderr)
        shown += 1
    return False


def check_outputs(results: Iterable[ObjectResult], output_dir: Path) -> bool:
    ok = True
    for result in results:
        expected = {
            "create": result.create_sql,
            "picklist": result.picklist_sql or None,
            "markdown": result.markdown,
        }
        for kind, generated in expected.items():
            ok = check_equal(artifact_path(output_dir, result.name, kind), generated) and ok
        if result.plan:
            print(f"[check] {result.name}: {len(result.plan)} pending changes ({', '.join(result.plan.kinds())})", file=sys.stderr)
            ok = False
    return ok


def cleanup(output_dir: Path, readme: Path) -> None:
    shutil.rmtree(output_dir, ignore_errors=True)
    if readme.exists():
        write_text(readme, update_readme(readme.read_text(encoding="utf-8"), EMPTY_README_TABLE))


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Generate PostgreSQL DDL and migrations from Salesforce metadata")
    parser.add_argument("objects", nargs="*", help="Salesforce object names to process")
    parser.add_argument("--all", action="store_true", help="Process every dumped object")
    parser.add_argument("--config", default="force2pg.yaml", help="YAML configuration file")
    parser.add_argument("--output-dir", help="Artifact directory (default from config)")
    parser.add_argument("--readme", help="README whose 'Generated Tables' section is refreshed")
    parser.add_argument("--check", action="store_true", help="Verify artifacts are up-to-date without writing")
    parser.add_argument("--cleanup", action="store_true", help="Remove the output directory and reset README")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    config = load_config(Path(args.config))
    output_dir = Path(args.output_dir or config["output_dir"])
    readme = Path(args.readme or config["readme"])

    if args.cleanup:
        cleanup(output_dir, readme)
        print(f"Removed {output_dir}")
        return 0

    object_names = args.objects or list(config.get("objects") or [])
    if args.all:
        object_names = load_known_objects(output_dir)
    if not object_names:
        print("Please specify object names, use --all, or use --cleanup.", file=sys.stderr)
        return 1

    results = generate_outputs(object_names, output_dir, config)

    if args.check:
        return 0 if check_outputs(results, output_dir) else 1

    header = config["rendering"].get("header_comment", "")
    updates_path = write_outputs(results, output_dir, readme, header)
    for result in results:
        print(f"Generated {object_dir(output_dir, result.name)} ({len(result.plan)} changes)")
    if updates_path:
        print(f"Generated {updates_path}")
    else:
        print("No schema changes")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
