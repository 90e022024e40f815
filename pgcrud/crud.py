from __future__ import annotations

import dataclasses
import logging
from collections.abc import Mapping
from typing import Any, Iterable, Optional, TypeVar

import psycopg2
from psycopg2 import errors

from pgcrud import statements
from pgcrud.config import DataSourceSettings, load_settings
from pgcrud.entity import describe, field_values
from pgcrud.mapper import map_rows, map_scalars
from pgcrud.psql_client import PSQLClient, ResultSet

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _is_missing_schema(exc: Exception, schema: str) -> bool:
    if isinstance(exc, errors.InvalidSchemaName):
        return True
    message = str(exc).lower()
    name = schema.lower()
    return f'schema "{name}" does not exist' in message or f'schema "{name}" not found' in message


class Crud:
    """
    Entity-level CRUD on top of a PSQLClient.

        crud = Crud.from_settings(load_settings())
        crud.save(Person(name="ada", age=36))
        people = crud.find(Person)

    Writes raise on failure (``execute`` can opt into a silent False instead).
    Reads through ``find*`` return an empty list when the query itself fails;
    mapping problems always raise.
    """

    def __init__(self, client: PSQLClient, *, create_missing_tables: bool = True):
        self.client = client
        self.create_missing_tables = create_missing_tables

    @classmethod
    def from_settings(cls, settings: DataSourceSettings | None = None, **kwargs) -> "Crud":
        return cls(PSQLClient.from_settings(settings or load_settings()), **kwargs)

    def _run(self, statement: statements.Statement, *, silent: bool = False) -> bool:
        return self.client.execute(statement.query, statement.params, silent=silent)

    # ---------- Raw statements ----------
    def execute(self, query, params: Optional[Iterable] = None, silent: bool = False) -> bool:
        return self.client.execute(query, params, silent=silent)

    def query(self, query, params: Optional[Iterable] = None) -> ResultSet:
        return self.client.query(query, params)

    # ---------- DDL ----------
    def create_table(self, entity_type: type) -> bool:
        """
        Create the entity's table and index if missing. When the table's schema
        does not exist yet it is created and the statement retried once.
        """
        descriptor = describe(entity_type)
        table_stmt, *index_stmts = statements.create_table(descriptor)
        try:
            self._run(table_stmt)
        except psycopg2.Error as exc:
            if not descriptor.schema or not _is_missing_schema(exc, descriptor.schema):
                raise
            logger.info("Schema %s missing, creating it for %s", descriptor.schema, descriptor.qualified_table_name)
            self._run(statements.create_schema(descriptor.schema))
            self._run(table_stmt)
        for stmt in index_stmts:
            self._run(stmt)
        return True

    def drop_table(self, entity_type: type) -> bool:
        return self._run(statements.drop_table(describe(entity_type)))

    def truncate_table(self, entity_type: type) -> bool:
        return self._run(statements.truncate_table(describe(entity_type)), silent=True)

    def drop_schema(self, schema: str) -> bool:
        return self._run(statements.drop_schema(schema))

    def list_tables(self, schema: str = "public") -> list[str]:
        stmt = statements.list_tables(schema)
        return self.find_list(str, stmt.query, stmt.params)

    def _for_each_table(self, schema: str, build) -> bool:
        # Every table name is validated before the first statement runs.
        stmts = [build(f"{schema}.{table}") for table in self.list_tables(schema)]
        for stmt in stmts:
            self._run(stmt)
        return True

    def truncate_all_tables(self, schema: str = "public") -> bool:
        return self._for_each_table(schema, statements.truncate_table_named)

    def drop_all_tables(self, schema: str = "public") -> bool:
        return self._for_each_table(schema, statements.drop_table_named)

    # ---------- Writes ----------
    def save(self, entity: Any) -> bool:
        """
        Insert ``entity``. If the insert fails and missing tables may be
        created, the table is created and the insert retried exactly once.
        """
        descriptor = describe(type(entity))
        stmt = statements.insert(descriptor, field_values(entity))
        try:
            return self._run(stmt)
        except psycopg2.Error:
            if not self.create_missing_tables:
                raise
            logger.info("Insert into %s failed, creating table and retrying", descriptor.qualified_table_name)
        self.create_table(type(entity))
        return self._run(stmt)

    def update(self, entity: Any) -> bool:
        """Update the row identified by the entity's identity fields; None fields are left untouched."""
        return self.update_values(type(entity), field_values(entity, skip_nulls=True))

    def update_values(self, entity_type: type, data: Mapping[str, Any]) -> bool:
        """
        Update from a field -> value mapping. Identity fields select the row,
        every other entry is written.
        """
        descriptor = describe(entity_type)
        return self._run(statements.update(descriptor, dict(data)))

    def update_from(self, entity_type: type, data: Any) -> bool:
        """
        Update from an arbitrary object carrying field-named attributes
        (dataclass or plain object). Mappings belong to update_values().
        """
        if isinstance(data, Mapping):
            raise TypeError("update_from() expects an object; pass mappings to update_values().")
        if dataclasses.is_dataclass(data) and not isinstance(data, type):
            raw = {f.name: getattr(data, f.name) for f in dataclasses.fields(data)}
        else:
            raw = {k: v for k, v in vars(data).items() if not k.startswith("_")}
        return self.update_values(entity_type, {k: v for k, v in raw.items() if v is not None})

    # ---------- Reads ----------
    def _soft_query(self, query, params: Optional[Iterable] = None) -> ResultSet | None:
        try:
            return self.client.query(query, params)
        except psycopg2.Error as exc:
            logger.warning("Query failed, returning no rows: %s", str(exc).strip())
            return None

    def find(self, entity_type: type[T], query=None, params: Optional[Iterable] = None) -> list[T]:
        """
        Map the rows of ``query`` (default: the whole table) onto ``entity_type``.
        """
        if query is None:
            stmt = statements.select(describe(entity_type))
            query, params = stmt.query, stmt.params
        result = self._soft_query(query, params)
        if result is None:
            return []
        return map_rows(entity_type, result)

    def find_where(self, entity_type: type[T], filters: Mapping[str, Any]) -> list[T]:
        """Rows whose columns equal every value in ``filters``."""
        stmt = statements.select(describe(entity_type), filters)
        return self.find(entity_type, stmt.query, stmt.params)

    def find_by_id(self, entity_type: type[T], value: Any) -> T | None:
        """
        Look up by the first identity field. Composite keys are not supported
        here; use find_where() with every key column instead.
        """
        stmt = statements.select_by_id(describe(entity_type), value)
        found = self.find(entity_type, stmt.query, stmt.params)
        return found[0] if found else None

    def find_list(self, value_type: Any, query, params: Optional[Iterable] = None) -> list:
        """Decode the first column of every row into ``value_type``."""
        result = self._soft_query(query, params)
        if result is None:
            return []
        return map_scalars(value_type, result)
