"""
Mapper between entities and wire rows.

Info wraps one entity with its Metadata; Mapper uses the DatabaseSchema and
the value codec to:
- Build wire rows from entities (new_row), omitting default values unless a
  field is explicitly selected
- Populate entities from wire rows (get_row_data), ignoring unknown columns
- Derive equality conditions from populated indexes
- Build validated wire mutations and conditions
- Build monitor requests

Field selectors are attribute names ("external_ids") or FieldRefs obtained
with ``ref(entity).external_ids``.

Invariants:
    - Rows built by new_row never carry "_uuid" or "_version"
    - Index preference is: explicit fields, "_uuid", then schema indexes in
      declaration order
"""

from __future__ import annotations

from typing import Any, Sequence

from . import codec
from .errors import (
    ColumnOmitted,
    IndexUnavailable,
    InvalidFieldReference,
    SchemaViolation,
    UnknownColumn,
    WrongType,
)
from .model import FieldRef, Metadata
from .notation import COND_EQ, MUTATE_DELETE, MUTATE_INSERT, MonitorRequest, MonitorSelect
from .notation import new_condition as wire_condition
from .notation import new_mutation as wire_mutation
from .schema import (
    UUID_COLUMN,
    VERSION_COLUMN,
    ColumnSchema,
    DatabaseSchema,
    check_domain,
    validate_condition,
    validate_mutation,
)

IMPLICIT_COLUMNS = (UUID_COLUMN, VERSION_COLUMN)


class Info:
    """An entity together with its Metadata.

    Attributes:
        obj: The wrapped entity
        metadata: Column/field mapping of the entity's type
    """

    def __init__(self, obj: Any, metadata: Metadata) -> None:
        self.obj = obj
        self.metadata = metadata

    @property
    def table_name(self) -> str:
        return self.metadata.table_name

    def has_column(self, column: str) -> bool:
        return column in self.metadata.fields

    def field_by_column(self, column: str) -> Any:
        """Value of the field bound to column.

        Raises:
            ColumnOmitted: If the column was omitted from the runtime schema
            UnknownColumn: If no field is bound to the column
        """
        if column in self.metadata.omitted_fields:
            raise ColumnOmitted(self.metadata.table_name, column)
        attr = self.metadata.fields.get(column)
        if attr is None:
            raise UnknownColumn(self.metadata.table_name, column)
        return getattr(self.obj, attr)

    def set_field(self, column: str, value: Any) -> None:
        if column in self.metadata.omitted_fields:
            raise ColumnOmitted(self.metadata.table_name, column)
        attr = self.metadata.fields.get(column)
        if attr is None:
            raise UnknownColumn(self.metadata.table_name, column)
        setattr(self.obj, attr, value)

    def column_by_field(self, selector: Any) -> str:
        """Resolve a field selector to its column name.

        Args:
            selector: Attribute name or FieldRef

        Raises:
            InvalidFieldReference: If the selector does not name a tagged
                field of this very entity
            ColumnOmitted: If the field's column is not in the runtime schema
        """
        if isinstance(selector, FieldRef):
            if selector.entity is not self.obj:
                raise InvalidFieldReference(
                    f"Field reference {selector!r} does not belong to this "
                    f"'{type(self.obj).__name__}' instance"
                )
            attr = selector.attr
        elif isinstance(selector, str):
            attr = selector
        else:
            raise WrongType("column_by_field", "attribute name or FieldRef", selector)

        column = self.metadata.column_of(attr)
        if column is not None:
            return column
        omitted = self.metadata.omitted_column_of(attr)
        if omitted is not None:
            raise ColumnOmitted(self.metadata.table_name, omitted)
        raise InvalidFieldReference(
            f"'{type(self.obj).__name__}' has no column-tagged field '{attr}'"
        )

    def valid_indexes(self) -> list[tuple[str, ...]]:
        """Indexes ("_uuid" first) whose every field holds a non-default value."""
        table_schema = self.metadata.table_schema
        candidates: list[tuple[str, ...]] = [(UUID_COLUMN,)] + list(table_schema.indexes)
        result = []
        for idx in candidates:
            usable = True
            for col in idx:
                column_schema = table_schema.column(col)
                if column_schema is None or not self.has_column(col):
                    usable = False
                    break
                if column_schema.is_default(self.field_by_column(col)):
                    usable = False
                    break
            if usable:
                result.append(idx)
        return result


class Mapper:
    """Schema-driven conversion between entities and wire values."""

    def __init__(self, schema: DatabaseSchema) -> None:
        self.schema = schema

    def _column(self, info: Info, column: str) -> ColumnSchema:
        column_schema = info.metadata.table_schema.column(column)
        if column_schema is None:
            raise UnknownColumn(info.table_name, column)
        return column_schema

    def new_row(self, info: Info, *fields: Any) -> dict[str, Any]:
        """Build a wire row from an entity.

        Without fields, every column whose value is not the schema default is
        included. With fields, exactly the selected columns are included.

        Raises:
            InvalidFieldReference: If a selector is not a field of the entity
            SchemaViolation: If a value is outside its column's domain
            TypeMismatch: If a value does not have its column's native shape
        """
        selected = {info.column_by_field(f) for f in fields}
        row: dict[str, Any] = {}
        for column, attr in info.metadata.fields.items():
            if column in IMPLICIT_COLUMNS:
                continue
            if selected and column not in selected:
                continue
            column_schema = self._column(info, column)
            value = getattr(info.obj, attr)
            if not selected and column_schema.is_default(value):
                continue
            check_domain(column_schema, value)
            row[column] = codec.encode(value, column_schema)
        return row

    def new_update_row(self, info: Info, *fields: Any) -> dict[str, Any]:
        """Build the row of an update operation.

        Immutable columns are dropped from implicit rows; selecting one
        explicitly raises SchemaViolation.
        """
        table_schema = info.metadata.table_schema
        for f in fields:
            column = info.column_by_field(f)
            column_schema = table_schema.column(column)
            if column in IMPLICIT_COLUMNS or (column_schema is not None and not column_schema.mutable):
                raise SchemaViolation(
                    f"Unable to update field '{column}' of table '{info.table_name}': "
                    "column is not mutable",
                    details={"table": info.table_name, "column": column},
                )
        row = self.new_row(info, *fields)
        for column in list(row):
            column_schema = table_schema.column(column)
            if column_schema is not None and not column_schema.mutable:
                del row[column]
        return row

    def get_row_data(self, row: dict[str, Any], info: Info) -> None:
        """Populate info.obj from a wire row; unknown columns are ignored."""
        for column, wire in row.items():
            attr = info.metadata.fields.get(column)
            if attr is None:
                continue
            column_schema = self._column(info, column)
            setattr(info.obj, attr, codec.decode(wire, column_schema))

    def equal_fields(self, one: Info, other: Info, *fields: Any) -> bool:
        """Whether two entities agree on the selected fields or a common index.

        Without fields, the first index valid for both entities whose
        columns are all equal decides.
        """
        if fields:
            columns = [one.column_by_field(f) for f in fields]
            return all(
                one.field_by_column(col) == other.field_by_column(col) for col in columns
            )
        other_indexes = other.valid_indexes()
        for idx in one.valid_indexes():
            if idx not in other_indexes:
                continue
            if all(one.field_by_column(col) == other.field_by_column(col) for col in idx):
                return True
        return False

    def new_equality_condition(self, info: Info, *fields: Any) -> list[list[Any]]:
        """Equality conditions on the selected fields or the best index.

        Raises:
            IndexUnavailable: If no field is selected and no index is populated
        """
        if fields:
            columns = [info.column_by_field(f) for f in fields]
        else:
            indexes = info.valid_indexes()
            if not indexes:
                raise IndexUnavailable(info.table_name)
            columns = list(indexes[0])
        conditions = []
        for column in columns:
            column_schema = self._column(info, column)
            value = info.field_by_column(column)
            conditions.append(wire_condition(column, COND_EQ, codec.encode(value, column_schema)))
        return conditions

    def new_condition(self, info: Info, field: Any, function: str, value: Any) -> list[Any]:
        """Validate and encode one explicit condition.

        Raises:
            InvalidCondition: If function or value is not legal for the column
        """
        column = info.column_by_field(field)
        column_schema = self._column(info, column)
        validate_condition(column_schema, function, value)
        return wire_condition(column, function, codec.encode(value, column_schema))

    def new_mutation(self, info: Info, column: str, mutator: str, value: Any) -> list[Any]:
        """Validate and encode one mutation.

        Raises:
            InvalidMutation: If mutator or value is not legal for the column
        """
        column_schema = self._column(info, column)
        validate_mutation(column_schema, mutator, value)
        return wire_mutation(column, mutator, encode_mutation_value(column_schema, mutator, value))

    def new_monitor_request(self, info: Info, *fields: Any) -> MonitorRequest:
        """Monitor request for the selected fields, or every modeled column."""
        if fields:
            columns = [info.column_by_field(f) for f in fields]
        else:
            columns = list(info.metadata.fields)
        columns = [col for col in columns if col not in IMPLICIT_COLUMNS]
        return MonitorRequest(columns=sorted(columns), select=MonitorSelect.all())


def encode_mutation_value(column: ColumnSchema, mutator: str, value: Any) -> Any:
    """Encode a mutation value whose shape depends on the mutator."""
    if column.is_map:
        if mutator == MUTATE_DELETE and not isinstance(value, dict):
            return codec.encode_set(column.key, list(value), column)
        return codec.encode(value, column)
    if column.is_set or column.is_optional:
        if mutator in (MUTATE_INSERT, MUTATE_DELETE):
            elements = list(value) if isinstance(value, (list, tuple, set, frozenset)) else [value]
            return codec.encode_set(column.key, elements, column)
        return codec.encode_atom(column.key, value, column)
    return codec.encode_atom(column.key, value, column)


def field_values(info: Info, columns: Sequence[str]) -> tuple[Any, ...]:
    return tuple(info.field_by_column(col) for col in columns)
