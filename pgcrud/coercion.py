"""
Two-way type table between Python field types and PostgreSQL columns.

Every entry carries the column keyword used by CREATE TABLE, the conversion
applied before a value is bound as a statement parameter, and the conversion
applied to a raw value read back from a cursor.
"""
from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Callable, NewType

logger = logging.getLogger(__name__)

Int32 = NewType("Int32", int)
Instant = NewType("Instant", datetime)


class UnmappedTypeError(LookupError):
	"""Raised when a column value has no conversion for its destination type."""


@dataclass(frozen=True)
class Coercion:
	sql_type: str
	to_param: Callable[[Any], Any]
	from_column: Callable[[Any], Any]


def encode_collection(values) -> str:
	"""
	Render a collection of strings as ``[a, b, c]``.
	Sets are sorted so the stored text does not depend on hash order.
	"""
	items = sorted(values) if isinstance(values, (set, frozenset)) else list(values)
	return "[" + ", ".join(str(v) for v in items) + "]"


def decode_collection(raw: str) -> list[str]:
	text = str(raw)
	if text.startswith("["):
		text = text[1:]
	if text.endswith("]"):
		text = text[:-1]
	if not text:
		return []
	return text.split(", ")


def _to_instant(raw) -> datetime:
	value = raw if isinstance(raw, datetime) else datetime.fromisoformat(str(raw))
	if value.tzinfo is None:
		return value.replace(tzinfo=timezone.utc)
	return value.astimezone(timezone.utc)


def _to_local_datetime(raw) -> datetime:
	value = raw if isinstance(raw, datetime) else datetime.fromisoformat(str(raw))
	if value.tzinfo is not None:
		return value.replace(tzinfo=None)
	return value


def _to_date(raw) -> date:
	if isinstance(raw, datetime):
		return raw.date()
	if isinstance(raw, date):
		return raw
	return date.fromisoformat(str(raw))


def _to_bool(raw) -> bool:
	if isinstance(raw, str):
		return raw.strip().lower() in {"true", "t", "1", "yes", "y"}
	return bool(raw)


def _same(value):
	return value


# Text passes through untouched so map-shaped updates can carry pre-rendered values.
def _collection_param(value):
	return value if isinstance(value, str) else encode_collection(value)


def _instant_param(value):
	return value if isinstance(value, str) else _to_instant(value)


def _enum_param(value):
	return value.name if isinstance(value, Enum) else value


_COERCIONS: dict[Any, Coercion] = {
	str: Coercion("VARCHAR", _same, str),
	int: Coercion("BIGINT", _same, int),
	Int32: Coercion("INTEGER", _same, int),
	float: Coercion("DOUBLE PRECISION", _same, float),
	bool: Coercion("BOOLEAN", _same, _to_bool),
	Instant: Coercion("TIMESTAMPTZ", _instant_param, _to_instant),
	datetime: Coercion("TIMESTAMP", _same, _to_local_datetime),
	date: Coercion("DATE", _same, _to_date),
	list: Coercion("VARCHAR", _collection_param, decode_collection),
	deque: Coercion("VARCHAR", _collection_param, lambda raw: deque(decode_collection(raw))),
	set: Coercion("VARCHAR", _collection_param, lambda raw: set(decode_collection(raw))),
	frozenset: Coercion("VARCHAR", _collection_param, lambda raw: frozenset(decode_collection(raw))),
}

_ENUM = Coercion("VARCHAR", _enum_param, _same)


def coercion_for(tp) -> Coercion | None:
	"""Return the table entry for ``tp`` (enums share one entry), or None."""
	try:
		entry = _COERCIONS.get(tp)
	except TypeError:
		return None
	if entry is not None:
		return entry
	if isinstance(tp, type) and issubclass(tp, Enum):
		return _ENUM
	return None


def sql_type(tp) -> str:
	"""
	Column keyword for a field type.

	Types missing from the table fall back to the upper-cased type name. The
	caller must make sure that name is a valid PostgreSQL type keyword, or add
	the type to the table.
	"""
	entry = coercion_for(tp)
	if entry is not None:
		return entry.sql_type
	name = getattr(tp, "__name__", str(tp)).upper()
	logger.debug("No column type mapped for %r, using %s", tp, name)
	return name


def to_param(value: Any, tp=None) -> Any:
	"""
	Convert a field value into the object bound to a ``%s`` placeholder.

	None and the empty string both bind as NULL. When the field type is known
	its table entry decides, otherwise the value's own type does.
	"""
	if value is None or (isinstance(value, str) and value == ""):
		return None
	entry = coercion_for(tp) if tp is not None else None
	if entry is not None:
		return entry.to_param(value)
	if isinstance(value, Enum):
		return value.name
	if isinstance(value, (list, tuple, deque, set, frozenset)):
		return encode_collection(value)
	return value


def from_column(tp, raw: Any) -> Any:
	"""
	Convert a raw cursor value into ``tp``.

	NULL stays None. Enum columns hold the member name and are resolved with
	``tp[name]``, so an unknown name raises KeyError.
	"""
	if raw is None:
		return None
	if isinstance(tp, type) and issubclass(tp, Enum):
		if isinstance(raw, tp):
			return raw
		return tp[str(raw)]
	entry = coercion_for(tp)
	if entry is None:
		raise UnmappedTypeError(f"No column conversion for type {tp!r}")
	return entry.from_column(raw)
