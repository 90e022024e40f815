"""
Statement builders driven by an EntityDescriptor.

Identifiers are validated and emitted unquoted so PostgreSQL folds them the
same way it folds hand-written SQL. Values never enter the statement text:
each one is a ``%s`` placeholder with its converted value in ``params``.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Mapping

from psycopg2 import sql

from pgcrud.coercion import sql_type, to_param
from pgcrud.entity import EntityDescriptor

_IDENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_$]*$")


@dataclass(frozen=True)
class Statement:
	"""A composed query and the parameters bound to its placeholders."""
	query: sql.Composable
	params: tuple[Any, ...] = ()


def ident(name: str) -> sql.SQL:
	"""
	Unquoted identifier, optionally schema-qualified ('schema.table').
	Raises ValueError for anything that is not a plain SQL name.
	"""
	parts = str(name).split(".")
	for part in parts:
		if not _IDENT_RE.match(part):
			raise ValueError(f"Invalid SQL identifier: {name!r}")
	return sql.SQL(".".join(parts))


def _validate_known_fields(descriptor: EntityDescriptor, names, label: str) -> None:
	known = set(descriptor.field_names)
	invalid = [n for n in names if n not in known]
	if invalid:
		raise ValueError(f"Unknown fields for {label} on {descriptor.qualified_table_name}: {invalid}")


def _equalities(descriptor: EntityDescriptor, items) -> tuple[list[sql.Composable], list[Any]]:
	parts: list[sql.Composable] = []
	params: list[Any] = []
	for name, value in items:
		parts.append(sql.SQL("{} = {}").format(ident(name), sql.Placeholder()))
		params.append(to_param(value, descriptor.field(name).semantic_type))
	return parts, params


def index_name(descriptor: EntityDescriptor) -> str:
	return "IDX_" + descriptor.qualified_table_name.replace(".", "_").upper()


# ---------- DDL ----------
def create_table(descriptor: EntityDescriptor) -> list[Statement]:
	"""
	CREATE TABLE IF NOT EXISTS for the entity, followed by CREATE INDEX IF NOT
	EXISTS when a field is marked indexed. Only a single indexed field is
	supported.
	"""
	if len(descriptor.indexed_fields) > 1:
		raise ValueError(
			f"Only one indexed field is supported, {descriptor.qualified_table_name} "
			f"declares {list(descriptor.indexed_fields)}."
		)

	table = ident(descriptor.qualified_table_name)
	col_bits: list[sql.Composable] = [
		sql.SQL("{} {}").format(ident(f.name), sql.SQL(sql_type(f.semantic_type)))
		for f in descriptor.fields
	]
	if descriptor.identity_fields:
		col_bits.append(
			sql.SQL("PRIMARY KEY ({})").format(
				sql.SQL(", ").join(ident(c) for c in descriptor.identity_fields)
			)
		)

	statements = [
		Statement(
			sql.SQL("CREATE TABLE IF NOT EXISTS {tbl} ({cols})").format(
				tbl=table,
				cols=sql.SQL(", ").join(col_bits),
			)
		)
	]

	if descriptor.indexed_fields:
		statements.append(
			Statement(
				sql.SQL("CREATE INDEX IF NOT EXISTS {idx} ON {tbl} ({col})").format(
					idx=ident(index_name(descriptor)),
					tbl=table,
					col=ident(descriptor.indexed_fields[0]),
				)
			)
		)
	return statements


def drop_table(descriptor: EntityDescriptor) -> Statement:
	return Statement(sql.SQL("DROP TABLE IF EXISTS {}").format(ident(descriptor.qualified_table_name)))


def truncate_table(descriptor: EntityDescriptor) -> Statement:
	return Statement(sql.SQL("TRUNCATE TABLE {}").format(ident(descriptor.qualified_table_name)))


def create_schema(schema: str) -> Statement:
	return Statement(sql.SQL("CREATE SCHEMA IF NOT EXISTS {}").format(ident(schema)))


def drop_schema(schema: str) -> Statement:
	return Statement(sql.SQL("DROP SCHEMA IF EXISTS {} CASCADE").format(ident(schema)))


def list_tables(schema: str = "public") -> Statement:
	return Statement(
		sql.SQL(
			"SELECT table_name FROM information_schema.tables "
			"WHERE table_schema = {} AND table_type = 'BASE TABLE' ORDER BY table_name"
		).format(sql.Placeholder()),
		(schema,),
	)


def drop_table_named(table: str) -> Statement:
	return Statement(sql.SQL("DROP TABLE IF EXISTS {}").format(ident(table)))


def truncate_table_named(table: str) -> Statement:
	return Statement(sql.SQL("TRUNCATE TABLE {}").format(ident(table)))


# ---------- DML ----------
def insert(descriptor: EntityDescriptor, values: Mapping[str, Any]) -> Statement:
	"""INSERT covering every declared field; missing, None or '' values bind NULL."""
	_validate_known_fields(descriptor, values.keys(), "insert")
	params = tuple(to_param(values.get(f.name), f.semantic_type) for f in descriptor.fields)
	query = sql.SQL("INSERT INTO {tbl} ({fields}) VALUES ({placeholders})").format(
		tbl=ident(descriptor.qualified_table_name),
		fields=sql.SQL(", ").join(ident(f.name) for f in descriptor.fields),
		placeholders=sql.SQL(", ").join(sql.Placeholder() for _ in descriptor.fields),
	)
	return Statement(query, params)


def update(descriptor: EntityDescriptor, values: Mapping[str, Any]) -> Statement:
	"""
	UPDATE keyed by the identity fields present in ``values``; every other
	entry goes to the SET clause. Missing identity values raise ValueError.
	"""
	_validate_known_fields(descriptor, values.keys(), "update")
	identity = set(descriptor.identity_fields)
	where_items = [(k, v) for k, v in values.items() if k in identity]
	set_items = [(k, v) for k, v in values.items() if k not in identity]

	if not where_items:
		raise ValueError(
			f"Cannot update {descriptor.qualified_table_name} without identity values "
			f"(identity fields: {list(descriptor.identity_fields)})."
		)
	if not set_items:
		raise ValueError(f"Nothing to update on {descriptor.qualified_table_name}.")

	set_parts, set_params = _equalities(descriptor, set_items)
	where_parts, where_params = _equalities(descriptor, where_items)
	query = sql.SQL("UPDATE {tbl} SET {sets} WHERE {conds}").format(
		tbl=ident(descriptor.qualified_table_name),
		sets=sql.SQL(", ").join(set_parts),
		conds=sql.SQL(" AND ").join(where_parts),
	)
	return Statement(query, tuple(set_params + where_params))


def select(descriptor: EntityDescriptor, filters: Mapping[str, Any] | None = None) -> Statement:
	"""SELECT * with an optional AND-joined list of equality filters."""
	query = sql.SQL("SELECT * FROM {}").format(ident(descriptor.qualified_table_name))
	if not filters:
		return Statement(query)
	_validate_known_fields(descriptor, filters.keys(), "filter")
	where_parts, params = _equalities(descriptor, filters.items())
	query = query + sql.SQL(" WHERE ") + sql.SQL(" AND ").join(where_parts)
	return Statement(query, tuple(params))


def select_by_id(descriptor: EntityDescriptor, value: Any) -> Statement:
	"""
	SELECT keyed by the first identity field only; composite keys cannot be
	looked up by value.
	"""
	if not descriptor.identity_fields:
		raise ValueError(f"{descriptor.qualified_table_name} declares no identity field.")
	return select(descriptor, {descriptor.identity_fields[0]: value})
