import sys
import unittest
from collections import deque
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from pathlib import Path
from typing import List, Optional, Set

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from pgcrud.coercion import Instant, Int32  # noqa: E402
from pgcrud.entity import (  # noqa: E402
    EntityOptions,
    describe,
    entity,
    field_values,
    id_field,
    indexed_field,
)


class Status(Enum):
    ACTIVE = 1
    RETIRED = 2


@entity(schema="test")
@dataclass
class Account:
    name: str = id_field()
    data: str = indexed_field(default="")
    anint: Int32 = 0


@entity(schema="test")
@dataclass
class Membership:
    name: str = id_field()
    data: str = indexed_field()
    anint: int = id_field()
    dob: Optional[Instant] = None


@dataclass
class Plain:
    title: str
    tags: List[str] = field(default_factory=list)
    labels: Set[str] = field(default_factory=set)
    history: deque = field(default_factory=deque)
    status: Optional[Status] = None
    born: Optional[date] = None


@entity(name="renamed_things")
@dataclass
class Renamed:
    key: int = id_field()


class Outer:
    @dataclass
    class Inner:
        value: str = ""


class TestDescribe(unittest.TestCase):
    def test_schema_prefix_and_declaration_order(self):
        d = describe(Account)
        self.assertEqual(d.table_name, "Account")
        self.assertEqual(d.schema, "test")
        self.assertEqual(d.qualified_table_name, "test.Account")
        self.assertEqual(d.field_names, ("name", "data", "anint"))
        self.assertEqual([f.semantic_type for f in d.fields], [str, str, Int32])
        self.assertEqual(d.identity_fields, ("name",))
        self.assertEqual(d.indexed_fields, ("data",))

    def test_composite_identity_keeps_declaration_order(self):
        d = describe(Membership)
        self.assertEqual(d.identity_fields, ("name", "anint"))
        self.assertEqual(d.field("dob").semantic_type, Instant)

    def test_plain_dataclass_has_no_keys_and_resolves_generic_types(self):
        d = describe(Plain)
        self.assertEqual(d.qualified_table_name, "Plain")
        self.assertIsNone(d.schema)
        self.assertEqual(d.identity_fields, ())
        self.assertEqual(d.indexed_fields, ())
        types = {f.name: f.semantic_type for f in d.fields}
        self.assertEqual(types["tags"], list)
        self.assertEqual(types["labels"], set)
        self.assertEqual(types["history"], deque)
        self.assertEqual(types["status"], Status)
        self.assertEqual(types["born"], date)

    def test_explicit_name_and_nested_class_name(self):
        self.assertEqual(describe(Renamed).qualified_table_name, "renamed_things")
        self.assertEqual(describe(Outer.Inner).table_name, "Inner")

    def test_descriptor_is_cached(self):
        self.assertIs(describe(Account), describe(Account))

    def test_rejects_non_dataclasses(self):
        class NotAnEntity:
            pass

        with self.assertRaises(TypeError):
            describe(NotAnEntity)

    def test_unresolvable_local_annotation_keeps_raw_type(self):
        class LocalLevel(Enum):
            LOW = 1

        @dataclass
        class Local:
            name: "str" = ""
            level: "LocalLevel" = None

        with self.assertLogs("pgcrud.entity", level="WARNING"):
            d = describe(Local)
        self.assertEqual(d.field("name").semantic_type, str)
        self.assertEqual(d.field("level").semantic_type, "LocalLevel")

    def test_unknown_field_lookup(self):
        with self.assertRaises(KeyError):
            describe(Account).field("missing")


class TestDecorators(unittest.TestCase):
    def test_entity_usable_bare(self):
        @entity
        @dataclass
        class Bare:
            x: int = 0

        self.assertEqual(Bare.__pgcrud_entity__, EntityOptions())

    def test_blank_name_rejected(self):
        with self.assertRaises(ValueError):
            entity(name="  ")(Plain)

    def test_id_field_can_also_be_indexed(self):
        @dataclass
        class Keyed:
            code: str = id_field(indexed=True, default="x")

        d = describe(Keyed)
        self.assertEqual(d.identity_fields, ("code",))
        self.assertEqual(d.indexed_fields, ("code",))


class TestFieldValues(unittest.TestCase):
    def test_values_in_declaration_order(self):
        acc = Account(name="n", data="d", anint=Int32(3))
        self.assertEqual(list(field_values(acc).items()), [("name", "n"), ("data", "d"), ("anint", 3)])

    def test_skip_nulls(self):
        m = Membership(name="n", data="d", anint=1)
        self.assertIn("dob", field_values(m))
        self.assertNotIn("dob", field_values(m, skip_nulls=True))


if __name__ == "__main__":
    unittest.main()
