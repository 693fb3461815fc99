"""
Update engine for the OVSDB SDK.

This module turns row deltas of either monitor dialect into RowChange
records and combines successive changes to the same row:

- difference(): native diff between two values of a column
- apply_difference(): fold a differential change into a value
- merge(): compose two successive RowChanges into one
- translate_row_update(): one wire row update -> RowChange

Differential semantics:
    scalar   change is the new value
    set      change is the symmetric difference (elements to toggle)
    map      for each (k, v): add if k is absent, remove if current[k] == v,
             otherwise replace

Merge state machine (a then b):
    none    + x       -> x
    insert  + update  -> insert of b's post-image
    insert  + delete  -> no-op
    update  + update  -> update from a's pre-image to b's post-image; columns
                         that return to their pre-image drop out, and an
                         empty diff is a no-op
    any     + delete  -> delete carrying a's pre-image
    insert  + insert, update + insert, delete + insert,
    delete  + update  -> IllegalSequence

Invariants:
    - apply_difference(apply_difference(v, d), d) == v for sets and maps
    - A RowChange never holds an entity that is also held by the cache
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from typing import Any

from . import codec
from .errors import CacheInconsistent, IllegalSequence
from .mapper import Info, Mapper
from .model import DatabaseModel, Metadata
from .notation import row_update_kind
from .schema import UUID_COLUMN, ColumnSchema

logger = logging.getLogger(__name__)

KIND_INSERT = "insert"
KIND_UPDATE = "update"
KIND_DELETE = "delete"
KIND_NONE = "none"


def _as_list(column: ColumnSchema, value: Any) -> list[Any]:
    if column.is_optional:
        return [] if value is None else [value]
    return list(value or [])


def _from_list(column: ColumnSchema, values: list[Any]) -> Any:
    if column.is_optional:
        if len(values) > 1:
            raise CacheInconsistent(
                f"Column '{column.name}' would hold {len(values)} values but allows at most one"
            )
        return values[0] if values else None
    return values


def _dedupe(values: Any) -> list[Any]:
    result: list[Any] = []
    for v in values:
        if v not in result:
            result.append(v)
    return result


def difference(column: ColumnSchema, a: Any, b: Any) -> tuple[Any, bool]:
    """Differential change that turns a into b.

    Returns:
        (change, changed) where changed is False when a equals b
    """
    if column.is_map:
        a = a or {}
        b = b or {}
        diff: dict[Any, Any] = {}
        for k, v in a.items():
            if k not in b:
                diff[k] = v
            elif b[k] != v:
                diff[k] = b[k]
        for k, v in b.items():
            if k not in a:
                diff[k] = v
        return diff, bool(diff)
    if column.is_set or column.is_optional:
        left = _as_list(column, a)
        right = _as_list(column, b)
        diff_list = [e for e in left if e not in right] + [e for e in right if e not in left]
        return diff_list, bool(diff_list)
    return b, a != b


def apply_difference(column: ColumnSchema, current: Any, change: Any) -> tuple[Any, bool]:
    """Fold a differential change into the current value.

    Returns:
        (new_value, changed)
    """
    if column.is_map:
        result = dict(current or {})
        for k, v in (change or {}).items():
            if k not in result:
                result[k] = v
            elif result[k] == v:
                del result[k]
            else:
                result[k] = v
        return result, result != (current or {})
    if column.is_set or column.is_optional:
        values = _as_list(column, current)
        if isinstance(change, (list, tuple, set, frozenset)):
            toggles = _dedupe(change)
        elif change is None:
            toggles = []
        else:
            toggles = [change]
        result_list = [e for e in values if e not in toggles] + [e for e in toggles if e not in values]
        return _from_list(column, result_list), bool(toggles)
    return change, change != current


@dataclass
class RowChange:
    """A logical change to one row.

    Attributes:
        table: Table name
        uuid: Row identifier
        old: Entity pre-image, None for inserts
        new: Entity post-image, None for deletes
        modify: Column -> differential change, for updates
    """

    table: str
    uuid: str
    old: Any = None
    new: Any = None
    modify: dict[str, Any] | None = None

    @property
    def kind(self) -> str:
        if self.old is None and self.new is not None:
            return KIND_INSERT
        if self.old is not None and self.new is not None:
            return KIND_UPDATE
        if self.old is not None:
            return KIND_DELETE
        return KIND_NONE


def model_difference(metadata: Metadata, old: Any, new: Any) -> dict[str, Any]:
    """Per-column differential changes between two entities of one type."""
    diff: dict[str, Any] = {}
    for column, attr in metadata.fields.items():
        if column == UUID_COLUMN:
            continue
        column_schema = metadata.table_schema.columns[column]
        change, changed = difference(column_schema, getattr(old, attr), getattr(new, attr))
        if changed:
            diff[column] = change
    return diff


def merge(metadata: Metadata, a: RowChange | None, b: RowChange | None) -> RowChange | None:
    """Compose two successive changes to the same row.

    Args:
        metadata: Metadata of the row's entity type
        a: The earlier change, or None
        b: The later change, or None

    Returns:
        The combined change, or None if the two cancel out

    Raises:
        IllegalSequence: If b cannot follow a
    """
    if a is None or a.kind == KIND_NONE:
        return b
    if b is None or b.kind == KIND_NONE:
        return a

    first, second = a.kind, b.kind
    if second == KIND_INSERT:
        raise IllegalSequence(
            f"Row {b.uuid} of table '{b.table}': insert after {first}",
            details={"table": b.table, "uuid": b.uuid},
        )
    if first == KIND_DELETE and second == KIND_UPDATE:
        raise IllegalSequence(
            f"Row {b.uuid} of table '{b.table}': update after delete",
            details={"table": b.table, "uuid": b.uuid},
        )

    if second == KIND_DELETE:
        if first == KIND_INSERT:
            return None
        return RowChange(table=a.table, uuid=a.uuid, old=a.old)

    # second is an update
    if first == KIND_INSERT:
        return RowChange(table=a.table, uuid=a.uuid, new=b.new)
    diff = model_difference(metadata, a.old, b.new)
    if not diff:
        return None
    return RowChange(table=a.table, uuid=a.uuid, old=a.old, new=b.new, modify=diff)


def _new_entity(db_model: DatabaseModel, mapper: Mapper, table: str, uuid: str, row: dict[str, Any]) -> Any:
    entity = db_model.new_model(table)
    info = Info(entity, db_model.metadata_for_table(table))
    mapper.get_row_data(row, info)
    info.set_field(UUID_COLUMN, uuid)
    return entity


def translate_row_update(
    db_model: DatabaseModel,
    mapper: Mapper,
    table: str,
    uuid: str,
    update: dict[str, Any],
    current: Any,
) -> RowChange | None:
    """Translate one wire row update against the row currently held.

    Args:
        db_model: Bound database model
        mapper: Mapper of the same schema
        table: Table name
        uuid: Row identifier
        update: {old?, new?} or {initial|insert|modify|delete}
        current: The entity currently held for uuid, or None

    Returns:
        The logical change, or None for no-ops and deletes of unknown rows

    Raises:
        CacheInconsistent: If the update disagrees with the held state
    """
    metadata = db_model.metadata_for_table(table)
    kind = row_update_kind(update)
    differential = any(tag in update for tag in ("initial", "insert", "modify", "delete"))

    if kind == "empty":
        raise CacheInconsistent(
            "Row update carries neither old nor new contents", table=table, uuid=uuid
        )

    if kind == "insert" and current is not None and not differential and "old" in update:
        # Legacy dialect: an empty "old" alongside a full "new" for a held row
        kind = "modify"

    if kind == "insert":
        if current is not None:
            raise CacheInconsistent("Insert of a row that is already cached", table=table, uuid=uuid)
        row = update.get("initial") or update.get("insert") or update.get("new") or {}
        return RowChange(table=table, uuid=uuid, new=_new_entity(db_model, mapper, table, uuid, row))

    if kind == "delete":
        if current is None:
            logger.warning(
                "Ignoring delete of a row that is not cached",
                extra={"table": table, "uuid": uuid},
            )
            return None
        return RowChange(table=table, uuid=uuid, old=current)

    if current is None:
        raise CacheInconsistent("Modify of a row that is not cached", table=table, uuid=uuid)

    new = copy.deepcopy(current)
    info = Info(new, metadata)
    if differential:
        for column, wire in (update.get("modify") or {}).items():
            if not info.has_column(column):
                continue
            column_schema = metadata.table_schema.columns[column]
            change = codec.decode_difference(wire, column_schema)
            value, _ = apply_difference(column_schema, info.field_by_column(column), change)
            info.set_field(column, value)
    else:
        held = Info(current, metadata)
        for column, wire in (update.get("old") or {}).items():
            if not info.has_column(column) or column == UUID_COLUMN:
                continue
            column_schema = metadata.table_schema.columns[column]
            _, differs = difference(
                column_schema, codec.decode(wire, column_schema), held.field_by_column(column)
            )
            if differs:
                raise CacheInconsistent(
                    f"Old value of column '{column}' does not match the cached row",
                    table=table,
                    uuid=uuid,
                )
        mapper.get_row_data(update.get("new") or {}, info)

    diff = model_difference(metadata, current, new)
    if not diff:
        logger.debug("Ignoring no-op row update", extra={"table": table, "uuid": uuid})
        return None
    return RowChange(table=table, uuid=uuid, old=current, new=new, modify=diff)
