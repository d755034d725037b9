import tempfile
import unittest
from pathlib import Path

from pg_schema import Column, Table, ValueLedger, render_picklist_sql, render_table_sql
from snapshot_parser import (
    classify_line,
    load_baseline_table,
    load_value_ledgers,
    parse_create_table,
    parse_enumerated_baseline,
    parse_value_ledgers,
)


class TestParseCreateTable(unittest.TestCase):
    def test_recovers_rendered_table(self) -> None:
        table = Table(
            name="ticket",
            columns=[
                Column("id", "UUID", primary_key=True),
                Column("name", "TEXT"),
                Column("status_id", "INTEGER", references="ticket_status"),
            ],
        )
        parsed = parse_create_table(render_table_sql(table))
        self.assertEqual(parsed.name, "ticket")
        self.assertEqual(parsed.columns, table.columns)
        self.assertTrue(parsed.column("id").primary_key)
        self.assertFalse(parsed.column("name").is_foreign_key)
        self.assertEqual(parsed.column("status_id").references, "ticket_status")

    def test_picks_named_table(self) -> None:
        sql = (
            "CREATE TABLE deal_stage (\n"
            "  id SERIAL PRIMARY KEY,\n"
            "  value TEXT NOT NULL UNIQUE\n"
            ");\n"
            "\n"
            "CREATE TABLE deal (\n"
            "  id UUID PRIMARY KEY,\n"
            "  stage_id INTEGER REFERENCES deal_stage(id)\n"
            ");\n"
        )
        self.assertEqual(parse_create_table(sql).name, "deal_stage")
        deal = parse_create_table(sql, "deal")
        self.assertEqual(deal.column_names(), ["id", "stage_id"])
        self.assertIsNone(parse_create_table(sql, "missing"))

    def test_tolerates_malformed_lines(self) -> None:
        sql = (
            "create table if not exists Account (\n"
            "  id uuid primary key,\n"
            "  ???\n"
            "  lonely\n"
            "\n"
            "  -- a comment\n"
            "  name text,\n"
            "  PRIMARY KEY (id)\n"
            ");\n"
            "  after_close TEXT\n"
        )
        table = parse_create_table(sql)
        self.assertEqual(table.name, "account")
        self.assertEqual(table.columns, [Column("id", "UUID", primary_key=True), Column("name", "TEXT")])
        self.assertEqual(table.primary_key, ("id",))

    def test_unterminated_table_keeps_what_was_read(self) -> None:
        table = parse_create_table("CREATE TABLE account (\n  id UUID PRIMARY KEY,\n  name TEXT,")
        self.assertEqual(table.column_names(), ["id", "name"])

    def test_not_found(self) -> None:
        self.assertIsNone(parse_create_table(""))
        self.assertIsNone(parse_create_table("INSERT INTO account VALUES (1);"))

    def test_columns_named_like_constraint_keywords(self) -> None:
        sql = (
            "CREATE TABLE contact (\n"
            "  id UUID PRIMARY KEY,\n"
            "  primary BOOLEAN,\n"
            "  check TEXT,\n"
            "  unique TEXT,\n"
            "  foreign TEXT,\n"
            "  constraint TEXT,\n"
            "  references UUID REFERENCES account(id),\n"
            "  CONSTRAINT contact_pk PRIMARY KEY (id)\n"
            ");\n"
        )
        table = parse_create_table(sql)
        self.assertEqual(table.column_names(), ["id", "primary", "check", "unique", "foreign", "constraint", "references"])
        self.assertEqual(table.column("primary"), Column("primary", "BOOLEAN"))
        self.assertEqual(table.column("references").references, "account")
        self.assertEqual(table.column("references").col_type, "UUID")

    def test_multi_word_and_parameterised_types(self) -> None:
        sql = (
            "CREATE TABLE deal (\n"
            "  score DOUBLE PRECISION,\n"
            "  rate numeric( 5, 2 ) NOT NULL,\n"
            "  seen TIMESTAMP WITH TIME ZONE,\n"
            "  code VARCHAR(10) UNIQUE\n"
            ");\n"
        )
        table = parse_create_table(sql)
        self.assertEqual(
            [c.col_type for c in table.columns],
            ["DOUBLE PRECISION", "NUMERIC(5,2)", "TIMESTAMP WITH TIME ZONE", "VARCHAR(10)"],
        )

    def test_classify_line(self) -> None:
        self.assertEqual(classify_line("  name TEXT,"), "column")
        self.assertEqual(classify_line("  PRIMARY KEY (a, b)"), "constraint")
        self.assertEqual(classify_line(");"), "end")
        self.assertEqual(classify_line("   "), "blank")
        self.assertEqual(classify_line("  ???"), "unknown")
        self.assertEqual(classify_line("  primary BOOLEAN,"), "column")
        self.assertEqual(classify_line("  check TEXT"), "column")
        self.assertEqual(classify_line("  constraint TEXT,"), "column")
        self.assertEqual(classify_line("  CONSTRAINT pk PRIMARY KEY (id)"), "constraint")
        self.assertEqual(classify_line("  UNIQUE (value)"), "constraint")


class TestValueBaseline(unittest.TestCase):
    SQL = (
        "INSERT INTO deal_stage (id, value) VALUES (1, 'Open');\n"
        "INSERT INTO deal_stage (id, value) VALUES (2, 'Won');\n"
        "-- retired: INSERT INTO deal_stage (id, value) VALUES (3, 'Lost');\n"
        "\n"
        "INSERT INTO deal_type (id, value) VALUES (1, 'Partner''s');\n"
        "garbage line\n"
    )

    def test_parse_enumerated_baseline(self) -> None:
        self.assertEqual(parse_enumerated_baseline(self.SQL, "deal_stage"), {"Open", "Won"})
        self.assertEqual(parse_enumerated_baseline(self.SQL, "deal_type"), {"Partner's"})
        self.assertEqual(parse_enumerated_baseline(self.SQL, "deal_other"), set())
        self.assertEqual(parse_enumerated_baseline(None, "deal_stage"), set())

    def test_parse_value_ledgers(self) -> None:
        ledgers = parse_value_ledgers(self.SQL)
        self.assertEqual(set(ledgers), {"deal_stage", "deal_type"})
        self.assertEqual(ledgers["deal_stage"].active, {"Open": 1, "Won": 2})
        self.assertEqual(ledgers["deal_stage"].retired, {"Lost": 3})

    def test_ledger_survives_rendering(self) -> None:
        ledger = ValueLedger("deal_stage", active={"Open": 1, "It's": 5}, retired={"Lost": 3})
        parsed = parse_value_ledgers(render_picklist_sql({"deal_stage": ledger}))
        self.assertEqual(parsed["deal_stage"], ledger)

    def test_control_characters_stay_on_one_line(self) -> None:
        ledger = ValueLedger("deal_stage", active={"A": 1, "B\nC": 2, "tab\there": 3, "back\\slash": 4, "D": 5})
        sql = render_picklist_sql({"deal_stage": ledger})
        self.assertEqual(len(sql.strip().splitlines()), 5)
        self.assertIn("VALUES (2, E'B\\nC');", sql)
        self.assertEqual(parse_value_ledgers(sql)["deal_stage"], ledger)


class TestLoaders(unittest.TestCase):
    def test_missing_artifacts_are_not_errors(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            self.assertIsNone(load_baseline_table(Path(td) / "create.sql"))
            self.assertEqual(load_value_ledgers(Path(td) / "picklist.sql"), {})

    def test_loads_from_disk(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            create = Path(td) / "account_create.sql"
            create.write_text("CREATE TABLE account (\n  id UUID PRIMARY KEY\n);\n", encoding="utf-8")
            picklist = Path(td) / "account_picklist.sql"
            picklist.write_text("INSERT INTO account_rating (id, value) VALUES (7, 'Hot');\n", encoding="utf-8")
            self.assertEqual(load_baseline_table(create, "account").column_names(), ["id"])
            self.assertEqual(load_value_ledgers(picklist)["account_rating"].active, {"Hot": 7})


if __name__ == "__main__":
    unittest.main()
