"""
Conditionals used by the ConditionalAPI.

A Conditional answers two questions about one table:
- matches(entity): does a cached entity satisfy it (used by List)
- generate(): the wire condition lists it stands for, one list per
  operation to emit

Kinds:
    EqualityConditional   equality on explicit fields or the best index
    ExplicitConditional   caller conditions; any-of, or all-of when merged
    PredicateConditional  caller function over cached rows; one "_uuid"
                          equality per matching row
    ErrorConditional      carries a construction error until first use
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Protocol

from .mapper import Info
from .notation import (
    COND_EQ,
    COND_EXCLUDES,
    COND_GE,
    COND_GT,
    COND_INCLUDES,
    COND_LE,
    COND_LT,
    COND_NE,
    new_condition,
    uuid_atom,
)
from .schema import UUID_COLUMN, ColumnSchema, validate_condition
from .updates import difference

if TYPE_CHECKING:
    from .cache import TableCache


@dataclass
class Condition:
    """An explicit condition on one field.

    Attributes:
        field: Attribute name or FieldRef of the model passed to where()
        function: Condition function ("==", "<", "includes", ...)
        value: Native value to compare with
    """

    field: Any
    function: str
    value: Any


@dataclass
class Mutation:
    """A mutation of one field.

    Attributes:
        field: Attribute name or FieldRef of the model passed to mutate()
        mutator: Mutator ("+=", "insert", "delete", ...)
        value: Native mutation value
    """

    field: Any
    mutator: str
    value: Any


class Conditional(Protocol):
    def table(self) -> str: ...

    def matches(self, entity: Any) -> bool: ...

    def generate(self) -> list[list[list[Any]]]: ...


_MISSING = object()


def _as_list(column: ColumnSchema, value: Any) -> list[Any]:
    if column.is_optional:
        return [] if value is None else [value]
    return list(value)


def evaluate(column: ColumnSchema, function: str, actual: Any, expected: Any) -> bool:
    """Evaluate a condition function natively against a field value."""
    if function in (COND_EQ, COND_NE):
        _, differs = difference(column, actual, expected)
        return differs if function == COND_NE else not differs
    if function in (COND_LT, COND_LE, COND_GT, COND_GE):
        if actual is None or expected is None:
            return False
        if function == COND_LT:
            return actual < expected
        if function == COND_LE:
            return actual <= expected
        if function == COND_GT:
            return actual > expected
        return actual >= expected
    if function in (COND_INCLUDES, COND_EXCLUDES):
        if column.is_map:
            present = [actual.get(k, _MISSING) == v for k, v in expected.items()]
        elif column.is_set or column.is_optional:
            held = _as_list(column, actual)
            present = [e in held for e in _as_list(column, expected)]
        else:
            present = [actual == expected]
        if function == COND_INCLUDES:
            return all(present)
        return not any(present)
    return False


class EqualityConditional:
    """Equality on the selected fields, or on the model's best index."""

    def __init__(self, cache: TableCache, table: str, model: Any, fields: tuple[Any, ...] = ()) -> None:
        self._cache = cache
        self._table = table
        self._info = Info(model, cache.db_model.metadata_for_table(table))
        self._fields = fields

    def table(self) -> str:
        return self._table

    def matches(self, entity: Any) -> bool:
        other = Info(entity, self._info.metadata)
        return self._cache.mapper.equal_fields(self._info, other, *self._fields)

    def generate(self) -> list[list[list[Any]]]:
        return [self._cache.mapper.new_equality_condition(self._info, *self._fields)]


class ExplicitConditional:
    """Caller-supplied conditions: any-of, or all-of when single_op is set."""

    def __init__(
        self,
        cache: TableCache,
        table: str,
        model: Any,
        conditions: tuple[Condition, ...],
        single_op: bool = False,
    ) -> None:
        self._cache = cache
        self._table = table
        self._info = Info(model, cache.db_model.metadata_for_table(table))
        self._single_op = single_op
        self._conditions: list[tuple[str, Condition]] = []
        table_schema = self._info.metadata.table_schema
        for cond in conditions:
            column = self._info.column_by_field(cond.field)
            validate_condition(table_schema.columns[column], cond.function, cond.value)
            self._conditions.append((column, cond))

    def table(self) -> str:
        return self._table

    def matches(self, entity: Any) -> bool:
        other = Info(entity, self._info.metadata)
        table_schema = self._info.metadata.table_schema
        results = (
            evaluate(table_schema.columns[column], cond.function, other.field_by_column(column), cond.value)
            for column, cond in self._conditions
        )
        if self._single_op:
            return all(results)
        return any(results)

    def generate(self) -> list[list[list[Any]]]:
        wire = [
            self._cache.mapper.new_condition(self._info, cond.field, cond.function, cond.value)
            for _, cond in self._conditions
        ]
        if self._single_op:
            return [wire]
        return [[c] for c in wire]


class PredicateConditional:
    """A caller function evaluated against every cached row of one table.

    The function receives the live cached entity under the shared lock; it
    must not call back into the SDK (ReentrantAccess) and must copy the
    entity before changing it.
    """

    def __init__(self, cache: TableCache, table: str, predicate: Callable[[Any], bool]) -> None:
        self._cache = cache
        self._table = table
        self._predicate = predicate

    def table(self) -> str:
        return self._table

    def matches(self, entity: Any) -> bool:
        with self._cache.predicate_scope():
            return bool(self._predicate(entity))

    def generate(self) -> list[list[list[Any]]]:
        conditions = []
        with self._cache.read():
            rows = self._cache.table(self._table)
            if rows is None:
                return []
            for uuid in rows.rows():
                entity = rows.row(uuid)
                if entity is None or not self.matches(entity):
                    continue
                conditions.append([new_condition(UUID_COLUMN, COND_EQ, uuid_atom(uuid))])
        return conditions


class ErrorConditional:
    """Holds an error raised while building a conditional."""

    def __init__(self, error: Exception) -> None:
        self._error = error

    def table(self) -> str:
        raise self._error

    def matches(self, entity: Any) -> bool:
        raise self._error

    def generate(self) -> list[list[list[Any]]]:
        raise self._error
