from __future__ import annotations

import dataclasses
import logging
import sys
import types
import typing
from collections import deque
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Optional

logger = logging.getLogger(__name__)

_ENTITY_ATTR = "__pgcrud_entity__"
ID_KEY = "pgcrud.id"
INDEXED_KEY = "pgcrud.indexed"


@dataclass(frozen=True)
class EntityOptions:
    name: Optional[str] = None
    schema: Optional[str] = None


@dataclass(frozen=True)
class FieldSpec:
    name: str
    semantic_type: Any


@dataclass(frozen=True)
class EntityDescriptor:
    """
    Table metadata derived from an entity class.

    ``fields`` keeps declaration order. ``identity_fields`` lists the primary
    key columns in declaration order; ``indexed_fields`` the columns marked for
    a secondary index. Both may be empty.
    """
    entity_type: type
    table_name: str
    schema: Optional[str]
    fields: tuple[FieldSpec, ...]
    identity_fields: tuple[str, ...]
    indexed_fields: tuple[str, ...]

    @property
    def qualified_table_name(self) -> str:
        if self.schema:
            return f"{self.schema}.{self.table_name}"
        return self.table_name

    @property
    def field_names(self) -> tuple[str, ...]:
        return tuple(f.name for f in self.fields)

    def field(self, name: str) -> FieldSpec:
        for f in self.fields:
            if f.name == name:
                return f
        raise KeyError(f"{self.entity_type.__name__} has no field '{name}'")


def entity(cls=None, *, name: str | None = None, schema: str | None = None):
    """
    Attach table metadata to a dataclass.

        @entity(schema="test")
        @dataclass
        class Person:
            name: str = id_field()
            age: int = 0

    ``name`` replaces the table name derived from the class name; ``schema``
    is prefixed onto it. Usable bare (``@entity``) or with arguments.
    """
    def wrap(target):
        if name is not None and not name.strip():
            raise ValueError("entity name cannot be blank.")
        setattr(target, _ENTITY_ATTR, EntityOptions(name=name, schema=schema))
        return target

    if cls is None:
        return wrap
    return wrap(cls)


def id_field(*, indexed: bool = False, **kwargs) -> Any:
    """``dataclasses.field`` marking the column as part of the primary key."""
    metadata = dict(kwargs.pop("metadata", None) or {})
    metadata[ID_KEY] = True
    if indexed:
        metadata[INDEXED_KEY] = True
    return dataclasses.field(metadata=metadata, **kwargs)


def indexed_field(**kwargs) -> Any:
    """``dataclasses.field`` marking the column for a secondary index."""
    metadata = dict(kwargs.pop("metadata", None) or {})
    metadata[INDEXED_KEY] = True
    return dataclasses.field(metadata=metadata, **kwargs)


def _unwrap_optional(tp):
    origin = typing.get_origin(tp)
    if origin is typing.Union or (hasattr(types, "UnionType") and origin is types.UnionType):
        args = [a for a in typing.get_args(tp) if a is not type(None)]
        if len(args) == 1:
            return args[0]
    return tp


def _semantic_type(tp):
    tp = _unwrap_optional(tp)
    origin = typing.get_origin(tp)
    if origin in (list, set, frozenset, deque):
        return origin
    if origin is typing.Annotated:
        return _semantic_type(typing.get_args(tp)[0])
    return tp


def _table_name(cls: type, options: EntityOptions | None) -> str:
    if options is not None and options.name:
        return options.name
    return cls.__qualname__.rsplit(".", 1)[-1]


def _type_hints(cls: type) -> dict[str, Any]:
    """
    Resolved field annotations. Names that cannot be resolved from the class's
    module (for example types local to a function) leave that field with its
    raw annotation string; every other field is still resolved.
    """
    try:
        return typing.get_type_hints(cls, include_extras=True)
    except NameError as exc:
        logger.warning("Unresolved annotation on %s: %s", cls.__qualname__, exc)
    module = sys.modules.get(cls.__module__)
    globalns = dict(vars(module)) if module is not None else {}
    localns = dict(vars(cls))
    hints = {}
    for f in dataclasses.fields(cls):
        if not isinstance(f.type, str):
            hints[f.name] = f.type
            continue
        try:
            hints[f.name] = eval(f.type, globalns, localns)
        except NameError:
            hints[f.name] = f.type
    return hints


@lru_cache(maxsize=None)
def describe(cls: type) -> EntityDescriptor:
    """Resolve (and cache) the descriptor for an entity class."""
    if not isinstance(cls, type) or not dataclasses.is_dataclass(cls):
        raise TypeError(f"{cls!r} is not a dataclass and cannot be mapped to a table.")

    options = getattr(cls, _ENTITY_ATTR, None)
    hints = _type_hints(cls)

    specs = []
    identity = []
    indexed = []
    for f in dataclasses.fields(cls):
        specs.append(FieldSpec(f.name, _semantic_type(hints.get(f.name, f.type))))
        if f.metadata.get(ID_KEY):
            identity.append(f.name)
        if f.metadata.get(INDEXED_KEY):
            indexed.append(f.name)

    descriptor = EntityDescriptor(
        entity_type=cls,
        table_name=_table_name(cls, options),
        schema=options.schema if options is not None else None,
        fields=tuple(specs),
        identity_fields=tuple(identity),
        indexed_fields=tuple(indexed),
    )
    logger.debug("Described %s as table %s", cls.__qualname__, descriptor.qualified_table_name)
    return descriptor


def field_values(instance: Any, *, skip_nulls: bool = False) -> dict[str, Any]:
    """
    Map every declared field of ``instance`` to its current value, in
    declaration order. With ``skip_nulls`` fields holding None are left out.
    """
    descriptor = describe(type(instance))
    values: dict[str, Any] = {}
    for name in descriptor.field_names:
        value = getattr(instance, name, None)
        if skip_nulls and value is None:
            continue
        values[name] = value
    return values
