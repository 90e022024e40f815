import sys
import unittest
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import List, Optional

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from pgcrud import statements  # noqa: E402
from pgcrud.coercion import Instant, Int32  # noqa: E402
from pgcrud.entity import describe, entity, id_field, indexed_field  # noqa: E402


class Mood(Enum):
    HAPPY = 1
    SAD = 2


@entity(schema="test")
@dataclass
class DummyModel3:
    name: str = id_field()
    data: str = indexed_field()
    anint: Int32 = 0


@entity(schema="test")
@dataclass
class DummyModel4:
    name: str = id_field()
    data: str = indexed_field()
    anint: Int32 = id_field()
    dob: Optional[Instant] = None


@dataclass
class Note:
    body: str
    mood: Optional[Mood] = None
    tags: Optional[List[str]] = None


@dataclass
class TwoIndexes:
    a: str = indexed_field(default="")
    b: str = indexed_field(default="")


def render(statement) -> str:
    return statement.query.as_string(None)


class TestCreateTable(unittest.TestCase):
    def test_primary_key_and_index(self):
        table, index = statements.create_table(describe(DummyModel3))
        self.assertEqual(
            render(table),
            "CREATE TABLE IF NOT EXISTS test.DummyModel3 "
            "(name VARCHAR, data VARCHAR, anint INTEGER, PRIMARY KEY (name))",
        )
        self.assertEqual(
            render(index),
            "CREATE INDEX IF NOT EXISTS IDX_TEST_DUMMYMODEL3 ON test.DummyModel3 (data)",
        )
        self.assertEqual(table.params, ())

    def test_composite_primary_key_in_declaration_order(self):
        table, _ = statements.create_table(describe(DummyModel4))
        text = render(table)
        self.assertIn("dob TIMESTAMPTZ", text)
        self.assertTrue(text.endswith("PRIMARY KEY (name, anint))"))

    def test_no_keys_no_index(self):
        created = statements.create_table(describe(Note))
        self.assertEqual(len(created), 1)
        self.assertEqual(
            render(created[0]),
            "CREATE TABLE IF NOT EXISTS Note (body VARCHAR, mood VARCHAR, tags VARCHAR)",
        )

    def test_more_than_one_indexed_field_rejected(self):
        with self.assertRaisesRegex(ValueError, "Only one indexed field"):
            statements.create_table(describe(TwoIndexes))


class TestWrites(unittest.TestCase):
    def test_insert_binds_every_field(self):
        stmt = statements.insert(
            describe(Note),
            {"body": "", "mood": Mood.SAD, "tags": ["a", "b"]},
        )
        self.assertEqual(render(stmt), "INSERT INTO Note (body, mood, tags) VALUES (%s, %s, %s)")
        self.assertEqual(stmt.params, (None, "SAD", "[a, b]"))

    def test_insert_rejects_unknown_fields(self):
        with self.assertRaisesRegex(ValueError, "Unknown fields"):
            statements.insert(describe(Note), {"body": "x", "nope": 1})

    def test_update_partitions_identity_and_values(self):
        stmt = statements.update(
            describe(DummyModel4),
            {"name": "n", "data": "d", "anint": 5},
        )
        self.assertEqual(
            render(stmt),
            "UPDATE test.DummyModel4 SET data = %s WHERE name = %s AND anint = %s",
        )
        self.assertEqual(stmt.params, ("d", "n", 5))

    def test_update_without_identity_is_rejected(self):
        with self.assertRaisesRegex(ValueError, "without identity values"):
            statements.update(describe(Note), {"body": "x"})
        with self.assertRaisesRegex(ValueError, "without identity values"):
            statements.update(describe(DummyModel3), {"data": "x"})

    def test_update_with_nothing_to_set_is_rejected(self):
        with self.assertRaisesRegex(ValueError, "Nothing to update"):
            statements.update(describe(DummyModel3), {"name": "x"})


class TestReads(unittest.TestCase):
    def test_select_all_and_filtered(self):
        d = describe(DummyModel3)
        self.assertEqual(render(statements.select(d)), "SELECT * FROM test.DummyModel3")
        self.assertEqual(render(statements.select(d, {})), "SELECT * FROM test.DummyModel3")

        stmt = statements.select(d, {"name": "a", "anint": "3"})
        self.assertEqual(render(stmt), "SELECT * FROM test.DummyModel3 WHERE name = %s AND anint = %s")
        self.assertEqual(stmt.params, ("a", "3"))

    def test_select_by_id_uses_first_identity_field(self):
        stmt = statements.select_by_id(describe(DummyModel4), "someone")
        self.assertEqual(render(stmt), "SELECT * FROM test.DummyModel4 WHERE name = %s")
        self.assertEqual(stmt.params, ("someone",))

        with self.assertRaisesRegex(ValueError, "no identity field"):
            statements.select_by_id(describe(Note), 1)


class TestSchemaStatements(unittest.TestCase):
    def test_templates(self):
        d = describe(DummyModel3)
        self.assertEqual(render(statements.drop_table(d)), "DROP TABLE IF EXISTS test.DummyModel3")
        self.assertEqual(render(statements.truncate_table(d)), "TRUNCATE TABLE test.DummyModel3")
        self.assertEqual(render(statements.create_schema("test")), "CREATE SCHEMA IF NOT EXISTS test")
        self.assertEqual(render(statements.drop_schema("test")), "DROP SCHEMA IF EXISTS test CASCADE")
        self.assertEqual(render(statements.drop_table_named("public.t")), "DROP TABLE IF EXISTS public.t")
        self.assertEqual(render(statements.truncate_table_named("public.t")), "TRUNCATE TABLE public.t")

        listing = statements.list_tables()
        self.assertIn("information_schema.tables", render(listing))
        self.assertEqual(listing.params, ("public",))

    def test_identifier_validation(self):
        self.assertEqual(statements.ident("a.b_1").as_string(None), "a.b_1")
        for bad in ("", "a b", "x;DROP TABLE y", "a..b", "1abc", 'q"uote'):
            with self.subTest(name=bad):
                with self.assertRaises(ValueError):
                    statements.ident(bad)
        with self.assertRaises(ValueError):
            statements.drop_schema("bad schema")


if __name__ == "__main__":
    unittest.main()
