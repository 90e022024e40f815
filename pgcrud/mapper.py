from __future__ import annotations

import dataclasses
import logging
from typing import Any, TypeVar

from pgcrud.coercion import from_column
from pgcrud.entity import EntityDescriptor, describe
from pgcrud.psql_client import ResultSet

logger = logging.getLogger(__name__)

T = TypeVar("T")


class UnknownColumnError(LookupError):
    """Raised when a result column matches no declared field of the target entity."""


def _column_fields(descriptor: EntityDescriptor, result: ResultSet) -> list[tuple[int, str, Any]]:
    by_upper = {f.name.upper(): f for f in descriptor.fields}
    plan = []
    for index, column in enumerate(result.columns):
        spec = by_upper.get(str(column).upper())
        if spec is None:
            raise UnknownColumnError(
                f"Column '{column}' has no matching field on {descriptor.entity_type.__qualname__}."
            )
        plan.append((index, spec.name, spec.semantic_type))
    return plan


def build_instance(cls: type[T], values: dict[str, Any]) -> T:
    """
    Finalize an instance from decoded field values.

    The constructor is tried first. When it cannot accept the values (no usable
    initializer, or a partial column set without defaults) the instance is
    allocated without running ``__init__`` and populated directly, which also
    works for frozen dataclasses.
    """
    try:
        return cls(**values)
    except TypeError as exc:
        logger.debug("Constructor of %s rejected row values (%s), populating directly", cls.__qualname__, exc)
    instance = object.__new__(cls)
    for f in dataclasses.fields(cls):
        if f.name in values:
            continue
        if f.default is not dataclasses.MISSING:
            object.__setattr__(instance, f.name, f.default)
        elif f.default_factory is not dataclasses.MISSING:
            object.__setattr__(instance, f.name, f.default_factory())
    for name, value in values.items():
        object.__setattr__(instance, name, value)
    return instance


def map_rows(cls: type[T], result: ResultSet) -> list[T]:
    """
    Turn every row of ``result`` into an instance of ``cls``.

    Columns are matched to fields case-insensitively; a column without a field
    raises UnknownColumnError instead of being dropped.
    """
    descriptor = describe(cls)
    plan = _column_fields(descriptor, result)
    instances = []
    for row in result.rows:
        values = {name: from_column(tp, row[index]) for index, name, tp in plan}
        instances.append(build_instance(cls, values))
    return instances


def map_scalars(value_type: Any, result: ResultSet) -> list:
    """Decode the first column of every row into ``value_type``."""
    if result.column_count == 0:
        return []
    return [from_column(value_type, row[0]) for row in result.rows]
