"""
Named-UUID resolution.

Insert operations may carry a ``uuid-name`` placeholder that later
operations of the same transaction reference as ["named-uuid", name].
expand_named_uuids() binds every placeholder to a real uuid (the one the
insert already carries, or a freshly allocated one) and rewrites every
["named-uuid", name] inside rows, conditions and mutations of uuid-typed
columns to ["uuid", real].

Invariants:
    - One placeholder is bound to exactly one real uuid per transaction
    - Placeholders with no binding are left untouched
    - The input operations are never modified
"""

from __future__ import annotations

import copy
import uuid as uuidlib
from typing import Any, Callable, Sequence

from .errors import DuplicateUUIDName, TypeMismatch, UnknownTable
from .notation import OP_INSERT, Operation, is_tagged, is_uuid
from .schema import TYPE_UUID, DatabaseSchema, TableSchema


def _expand_value(value: Any, uuid_map: dict[str, str]) -> Any:
    if is_tagged(value, "named-uuid") and isinstance(value[1], str):
        real = uuid_map.get(value[1])
        if real is None:
            return value
        return ["uuid", real]
    if is_tagged(value, "set") and isinstance(value[1], list):
        return ["set", [_expand_value(v, uuid_map) for v in value[1]]]
    if is_tagged(value, "map") and isinstance(value[1], list):
        return ["map", [[_expand_value(k, uuid_map), _expand_value(v, uuid_map)] for k, v in value[1]]]
    return value


def _holds_uuids(table_schema: TableSchema, column: str) -> bool:
    column_schema = table_schema.column(column)
    if column_schema is None:
        return False
    if column_schema.key.type == TYPE_UUID:
        return True
    return column_schema.value is not None and column_schema.value.type == TYPE_UUID


def _expand_row(table_schema: TableSchema, row: dict[str, Any], uuid_map: dict[str, str]) -> dict[str, Any]:
    return {
        col: _expand_value(val, uuid_map) if _holds_uuids(table_schema, col) else val
        for col, val in row.items()
    }


def _expand_triples(
    table_schema: TableSchema, triples: list[list[Any]], uuid_map: dict[str, str]
) -> list[list[Any]]:
    result = []
    for triple in triples:
        col, func, val = triple
        if _holds_uuids(table_schema, col):
            val = _expand_value(val, uuid_map)
        result.append([col, func, val])
    return result


def expand_named_uuids(
    operations: Sequence[Operation],
    schema: DatabaseSchema,
    allocate: Callable[[], str] = lambda: str(uuidlib.uuid4()),
) -> list[Operation]:
    """Bind named inserts to real uuids and substitute their references.

    Args:
        operations: Operations of one transaction
        schema: Database schema
        allocate: Source of fresh uuids for inserts without one

    Returns:
        New operations with every bound placeholder replaced

    Raises:
        DuplicateUUIDName: If one placeholder is bound to two different uuids
        TypeMismatch: If an insert carries a malformed uuid
        UnknownTable: If an operation names a table missing from the schema
    """
    ops = [copy.deepcopy(op) for op in operations]
    uuid_map: dict[str, str] = {}

    for op in ops:
        if op.op != OP_INSERT:
            continue
        if op.uuid and not is_uuid(op.uuid):
            raise TypeMismatch(
                f"Insert into '{op.table}' carries malformed uuid {op.uuid!r}",
                expected="36 character uuid",
                got=op.uuid,
            )
        if not op.uuid_name:
            continue
        bound = uuid_map.get(op.uuid_name)
        if bound is not None:
            if op.uuid != bound:
                raise DuplicateUUIDName(
                    f"uuid-name '{op.uuid_name}' bound to both {bound} and "
                    f"{op.uuid or 'a second insert'}",
                    operation=op,
                )
        else:
            if not op.uuid:
                op.uuid = allocate()
            uuid_map[op.uuid_name] = op.uuid
        op.uuid_name = None

    for op in ops:
        if not op.table:
            continue
        table_schema = schema.table(op.table)
        if table_schema is None:
            raise UnknownTable(op.table, f"Table '{op.table}' not found in schema '{schema.name}'")
        if op.where:
            op.where = _expand_triples(table_schema, op.where, uuid_map)
        if op.mutations:
            op.mutations = _expand_triples(table_schema, op.mutations, uuid_map)
        if op.rows:
            op.rows = [_expand_row(table_schema, row, uuid_map) for row in op.rows]
        if op.row is not None:
            op.row = _expand_row(table_schema, op.row, uuid_map)
    return ops
