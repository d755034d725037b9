"""Recover baseline tables and value ledgers from previously written artifacts.

Parsing is deliberately forgiving: anything that does not look like a column
is dropped, which makes the differ add that column again on the next run.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path

from pg_schema import Column, EnumeratedValueSet, Table, ValueLedger, normalize_type

logger = logging.getLogger(__name__)

CREATE_RE = re.compile(r"^\s*CREATE TABLE\s+(?:IF NOT EXISTS\s+)?(\w+)", flags=re.I)
REFERENCES_RE = re.compile(r"\bREFERENCES\s+(\w+)", flags=re.I)
INSERT_RE = re.compile(
    r"^\s*(?P<retired>--\s*retired:\s*)?INSERT INTO\s+(?P<table>\w+)\s*\(id,\s*value\)\s*"
    r"VALUES\s*\((?P<id>\d+),\s*(?P<escaped>E)?'(?P<value>(?:[^'\\]|''|\\.)*)'\)",
    flags=re.I,
)

TABLE_CONSTRAINT_RE = re.compile(
    r"^\s*(?:(?:PRIMARY|FOREIGN)\s+KEY\s*\(|(?:UNIQUE|CHECK)\s*\(|CONSTRAINT\s+\w+\s+(?:PRIMARY|FOREIGN|UNIQUE|CHECK)\b)",
    flags=re.I,
)
COLUMN_RE = re.compile(r"^\s*(?P<name>\w+)\s+(?P<rest>[A-Za-z].*?)\s*,?\s*$")
CONSTRAINT_KEYWORD_RE = re.compile(r"\s+(?:PRIMARY\s+KEY|NOT\s+NULL|NULL|UNIQUE|REFERENCES|DEFAULT|CHECK)\b", flags=re.I)
BACKSLASH_ESCAPES = {"n": "\n", "r": "\r", "t": "\t"}


def classify_line(line: str) -> str:
    stripped = line.strip()
    if not stripped or stripped.startswith("--"):
        return "blank"
    if stripped.startswith(")"):
        return "end"
    if TABLE_CONSTRAINT_RE.match(stripped):
        return "constraint"
    if COLUMN_RE.match(stripped):
        return "column"
    return "unknown"


def split_column_definition(rest: str) -> tuple[str, str]:
    """Split ``NUMERIC(5,2) NOT NULL`` into type and trailing constraints."""
    m = CONSTRAINT_KEYWORD_RE.search(rest)
    if not m:
        return rest, ""
    return rest[: m.start()], rest[m.start() :]


def parse_column_line(line: str) -> Column:
    m = COLUMN_RE.match(line.strip())
    col_type, constraints = split_column_definition(m.group("rest"))
    ref = REFERENCES_RE.search(constraints)
    return Column(
        name=m.group("name"),
        col_type=normalize_type(col_type),
        primary_key=re.search(r"\bPRIMARY\s+KEY\b", constraints, flags=re.I) is not None,
        references=ref.group(1) if ref else None,
    )


def parse_create_table(text: str, table_name: str | None = None) -> Table | None:
    """Return the named (or first) CREATE TABLE found in ``text``, or None."""
    lines = text.splitlines()
    start = None
    name = ""
    for idx, line in enumerate(lines):
        m = CREATE_RE.match(line)
        if m and (table_name is None or m.group(1).lower() == table_name.lower()):
            start = idx
            name = m.group(1).lower()
            break
    if start is None:
        return None

    table = Table(name=name)
    for line in lines[start + 1 :]:
        kind = classify_line(line)
        if kind == "end":
            break
        if kind == "column":
            table.columns.append(parse_column_line(line))
        elif kind == "constraint":
            m = re.match(r"\s*PRIMARY KEY\s*\(([^)]*)\)", line, flags=re.I)
            if m:
                table.primary_key = tuple(k.strip() for k in m.group(1).split(",") if k.strip())
        elif kind == "unknown":
            logger.debug("Ignoring unrecognised line in %s: %r", name, line)
    return table


def parse_value_ledgers(text: str) -> EnumeratedValueSet:
    ledgers: EnumeratedValueSet = {}
    for line in text.splitlines():
        m = INSERT_RE.match(line)
        if not m:
            continue
        table = m.group("table").lower()
        ledger = ledgers.setdefault(table, ValueLedger(table=table))
        value = m.group("value").replace("''", "'")
        if m.group("escaped"):
            value = re.sub(r"\\(.)", lambda e: BACKSLASH_ESCAPES.get(e.group(1), e.group(1)), value)
        target = ledger.retired if m.group("retired") else ledger.active
        target[value] = int(m.group("id"))
    return ledgers


def parse_enumerated_baseline(text: str | None, table_name: str) -> set[str]:
    if not text:
        return set()
    ledger = parse_value_ledgers(text).get(table_name.lower())
    return set(ledger.active) if ledger else set()


def read_artifact(path: Path) -> str | None:
    if not path.exists():
        return None
    return path.read_text(encoding="utf-8")


def load_baseline_table(path: Path, table_name: str | None = None) -> Table | None:
    text = read_artifact(path)
    if text is None:
        return None
    return parse_create_table(text, table_name)


def load_value_ledgers(path: Path) -> EnumeratedValueSet:
    text = read_artifact(path)
    if text is None:
        return {}
    return parse_value_ledgers(text)
