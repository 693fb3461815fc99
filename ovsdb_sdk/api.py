"""
Query and mutation front-end over the table cache.

API reads the cache and builds insert operations; where(), where_all() and
where_cache() return a ConditionalAPI that additionally builds update,
mutate and delete operations, one per condition list.

Example:
    >>> api = client.api()
    >>> ops = api.create(Bridge(uuid="br", name="br0"))
    >>> ops += api.where(Bridge(name="br0")).mutate(
    ...     Bridge(name="br0"),
    ...     Mutation(field="external_ids", mutator="insert", value={"k": "v"}),
    ... )
    >>> results = await client.transact(*ops)

Reads return deep copies; the cache's own entities are only handed out to
where_cache() predicates.
"""

from __future__ import annotations

import copy
import dataclasses
import inspect
import logging
import typing
from typing import Any, Callable

from .cache import TableCache
from .conditions import (
    Condition,
    Conditional,
    EqualityConditional,
    ErrorConditional,
    ExplicitConditional,
    Mutation,
    PredicateConditional,
)
from .errors import (
    InvalidMutation,
    ModelNotRegistered,
    NotFound,
    OvsdbError,
    WrongType,
)
from .mapper import Info, field_values
from .notation import OP_DELETE, OP_INSERT, OP_MUTATE, OP_UPDATE, Operation, is_uuid
from .schema import UUID_COLUMN

logger = logging.getLogger(__name__)


class API:
    """Cache reads and insert construction."""

    def __init__(self, cache: TableCache) -> None:
        self._cache = cache

    def _table_of(self, model: Any) -> str:
        if not dataclasses.is_dataclass(model) or isinstance(model, type):
            raise WrongType("model", "registered dataclass instance", model)
        return self._cache.db_model.table_name(type(model))

    def _info(self, model: Any) -> Info:
        return Info(model, self._cache.db_model.metadata(type(model)))

    def _conditional(self) -> Conditional | None:
        return None

    def list(self, model_type: type, limit: int | None = None) -> list[Any]:
        """Copies of the cached entities of model_type that satisfy the conditions.

        Args:
            model_type: Registered entity type
            limit: Stop after this many entities

        Raises:
            ModelNotRegistered: If model_type is not part of the model
            WrongType: If the conditions target a different table
        """
        self._cache.check_reentrancy()
        table = self._cache.db_model.table_name(model_type)
        conditional = self._conditional()
        if conditional is not None and conditional.table() != table:
            raise WrongType(
                "list",
                f"entity type of table '{conditional.table()}'",
                model_type,
            )
        result: list[Any] = []
        with self._cache.read():
            rows = self._cache.table(table)
            if rows is None:
                raise NotFound(f"table '{table}' is not cached", table=table)
            for uuid in rows.rows():
                if limit is not None and len(result) >= limit:
                    break
                entity = rows.row(uuid)
                if entity is None:
                    continue
                if conditional is not None and not conditional.matches(entity):
                    continue
                result.append(copy.deepcopy(entity))
        return result

    def where(self, model: Any, *conditions: Condition) -> ConditionalAPI:
        """Select rows matching any of conditions, or model's index if none."""
        return ConditionalAPI(self._cache, self._condition_from_model(False, model, conditions))

    def where_all(self, model: Any, *conditions: Condition) -> ConditionalAPI:
        """Select rows matching every one of conditions."""
        return ConditionalAPI(self._cache, self._condition_from_model(True, model, conditions))

    def where_cache(self, predicate: Callable[[Any], bool], model: type | None = None) -> ConditionalAPI:
        """Select cached rows for which predicate returns True.

        The table is inferred from the annotation of the predicate's single
        parameter; pass model= for unannotated callables such as lambdas.
        """
        try:
            model_type = model if model is not None else _predicate_model(predicate)
            table = self._cache.db_model.table_name(model_type)
            conditional: Conditional = PredicateConditional(self._cache, table, predicate)
        except OvsdbError as err:
            conditional = ErrorConditional(err)
        return ConditionalAPI(self._cache, conditional)

    def _condition_from_model(
        self, single_op: bool, model: Any, conditions: tuple[Condition, ...]
    ) -> Conditional:
        try:
            table = self._table_of(model)
            if not conditions:
                return EqualityConditional(self._cache, table, model)
            return ExplicitConditional(self._cache, table, model, conditions, single_op)
        except OvsdbError as err:
            return ErrorConditional(err)

    def get(self, model: Any) -> Any:
        """Copy the cached row matching model's populated index into model.

        Returns:
            model, updated in place

        Raises:
            NotFound: If no cached row matches
        """
        self._cache.check_reentrancy()
        table = self._table_of(model)
        info = self._info(model)
        found = None
        with self._cache.read():
            rows = self._cache.table(table)
            if rows is None:
                raise NotFound(table=table)
            for idx in info.valid_indexes():
                if idx == (UUID_COLUMN,):
                    found = rows.row(info.field_by_column(UUID_COLUMN))
                elif idx in rows.indexes:
                    found = rows.row_by_index(idx, field_values(info, idx))
                if found is not None:
                    break
            if found is None:
                raise NotFound(table=table)
            for f in dataclasses.fields(model):
                setattr(model, f.name, copy.deepcopy(getattr(found, f.name)))
        return model

    def create(self, *models: Any) -> list[Operation]:
        """One insert operation per model.

        A populated "_uuid" field becomes the insert's uuid-name, or its uuid
        when it already is a real uuid.
        """
        self._cache.check_reentrancy()
        operations = []
        for model in models:
            table = self._table_of(model)
            info = self._info(model)
            row = self._cache.mapper.new_row(info)
            uuid = info.field_by_column(UUID_COLUMN)
            op = Operation(op=OP_INSERT, table=table, row=row)
            if is_uuid(uuid):
                op.uuid = uuid
            elif uuid:
                op.uuid_name = uuid
            operations.append(op)
        return operations


class ConditionalAPI(API):
    """API bound to a condition set."""

    def __init__(self, cache: TableCache, conditional: Conditional) -> None:
        super().__init__(cache)
        self._cond = conditional

    def _conditional(self) -> Conditional:
        return self._cond

    def _checked_table(self, model: Any, where: str) -> str:
        table = self._table_of(model)
        if table != self._cond.table():
            raise WrongType(where, f"entity of table '{self._cond.table()}'", model)
        return table

    def mutate(self, model: Any, *mutations: Mutation) -> list[Operation]:
        """One mutate operation per condition list, each carrying every mutation.

        Raises:
            InvalidMutation: If no mutation is given or one is not legal
        """
        self._cache.check_reentrancy()
        if not mutations:
            raise InvalidMutation("", "", "at least one mutation must be provided")
        table = self._checked_table(model, "mutate")
        conditions = self._cond.generate()
        info = self._info(model)
        wire = [
            self._cache.mapper.new_mutation(info, info.column_by_field(m.field), m.mutator, m.value)
            for m in mutations
        ]
        return [
            Operation(op=OP_MUTATE, table=table, mutations=list(wire), where=where)
            for where in conditions
        ]

    def update(self, model: Any, *fields: Any) -> list[Operation]:
        """One update operation per condition list.

        Without fields the row holds every non-default mutable field; with
        fields it holds exactly those.
        """
        self._cache.check_reentrancy()
        table = self._checked_table(model, "update")
        conditions = self._cond.generate()
        row = self._cache.mapper.new_update_row(self._info(model), *fields)
        return [Operation(op=OP_UPDATE, table=table, row=dict(row), where=where) for where in conditions]

    def delete(self) -> list[Operation]:
        """One delete operation per condition list."""
        self._cache.check_reentrancy()
        table = self._cond.table()
        return [Operation(op=OP_DELETE, table=table, where=where) for where in self._cond.generate()]


def _predicate_model(predicate: Callable[[Any], bool]) -> type:
    if not callable(predicate):
        raise WrongType("where_cache", "callable", predicate)
    params = list(inspect.signature(predicate).parameters.values())
    if len(params) != 1:
        raise WrongType("where_cache", "predicate taking exactly one argument", predicate)
    try:
        hints = typing.get_type_hints(predicate)
    except (NameError, TypeError):
        hints = {}
    model_type = hints.get(params[0].name)
    if model_type is None:
        raise WrongType("where_cache", "predicate with an annotated parameter, or model=", predicate)
    if not isinstance(model_type, type) or not dataclasses.is_dataclass(model_type):
        raise ModelNotRegistered(model_type)
    return model_type
