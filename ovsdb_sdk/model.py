"""
Model registry for the OVSDB SDK.

Entities are plain dataclasses whose fields carry a column tag:

    >>> from dataclasses import dataclass
    >>> from ovsdb_sdk.model import column, ClientDBModel
    >>>
    >>> @dataclass
    ... class Bridge:
    ...     uuid: str = column("_uuid", default="")
    ...     name: str = column("name", default="")
    ...     ports: list[str] = column("ports", default_factory=list)
    ...     external_ids: dict[str, str] = column("external_ids", default_factory=dict)
    >>>
    >>> client_model = ClientDBModel("Open_vSwitch", {"Bridge": Bridge})

A ClientDBModel is the caller's table -> entity mapping. Once the schema is
known it is bound into a DatabaseModel, which validates every tagged field
against the schema and records, per entity type, a Metadata describing
which attribute holds which column.

Invariants:
    - Every entity has a str field tagged "_uuid"
    - Every tagged column exists in the schema (unless omit_unsupported)
    - Every tagged field's type equals the column's native type
    - No two fields of an entity share a column tag
    - The registry is immutable after construction

How to change safely:
    - Add new tag options to ColumnTag, never to the metadata key name
    - Keep validation errors collected, not raised on first failure
"""

from __future__ import annotations

import copy
import dataclasses
import logging
import typing
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any

from .errors import (
    InvalidFieldReference,
    ModelNotRegistered,
    SchemaViolation,
    TypeMismatch,
    UnknownColumn,
    UnknownTable,
    WrongType,
    combine_errors,
)
from .schema import (
    UUID_COLUMN,
    DatabaseSchema,
    TableSchema,
    type_name,
    types_equal,
)

logger = logging.getLogger(__name__)

OVSDB_TAG = "ovsdb"


@dataclass(frozen=True)
class ColumnTag:
    """Column tag carried in dataclass field metadata.

    Attributes:
        name: Column name
        omit_unsupported: Ignore the field if the runtime schema lacks the column
    """

    name: str
    omit_unsupported: bool = False


def column(
    name: str,
    *,
    omit_unsupported: bool = False,
    default: Any = dataclasses.MISSING,
    default_factory: Any = dataclasses.MISSING,
    **kwargs: Any,
) -> Any:
    """Declare a dataclass field bound to a database column.

    Args:
        name: Column name in the schema
        omit_unsupported: Tolerate the column missing from the runtime schema
        default: Field default
        default_factory: Field default factory
        **kwargs: Passed through to dataclasses.field

    Returns:
        A dataclasses.Field carrying the column tag
    """
    metadata = dict(kwargs.pop("metadata", None) or {})
    metadata[OVSDB_TAG] = ColumnTag(name=name, omit_unsupported=omit_unsupported)
    if default is not dataclasses.MISSING:
        kwargs["default"] = default
    if default_factory is not dataclasses.MISSING:
        kwargs["default_factory"] = default_factory
    return field(metadata=metadata, **kwargs)


def column_tags(model_type: type) -> dict[str, ColumnTag]:
    """Return attribute name -> ColumnTag for every tagged field."""
    return {
        f.name: f.metadata[OVSDB_TAG]
        for f in dataclasses.fields(model_type)
        if OVSDB_TAG in f.metadata
    }


class FieldRef:
    """Identity of one field of one entity instance.

    Obtained with ``ref(entity).attr``; resolving it against a different
    instance fails with InvalidFieldReference.
    """

    __slots__ = ("entity", "attr")

    def __init__(self, entity: Any, attr: str) -> None:
        self.entity = entity
        self.attr = attr

    def __repr__(self) -> str:
        return f"FieldRef({type(self.entity).__name__}.{self.attr})"


class _FieldRefBuilder:
    __slots__ = ("_entity", "_tags")

    def __init__(self, entity: Any) -> None:
        self._entity = entity
        self._tags = column_tags(type(entity))

    def __getattr__(self, attr: str) -> FieldRef:
        if attr not in self._tags:
            raise InvalidFieldReference(
                f"'{type(self._entity).__name__}' has no column-tagged field '{attr}'"
            )
        return FieldRef(self._entity, attr)


def ref(entity: Any) -> Any:
    """Return a builder whose attributes are FieldRefs of entity's fields.

    Example:
        >>> proto = Bridge()
        >>> Mutation(field=ref(proto).external_ids, mutator="insert", value={"k": "v"})
    """
    if not dataclasses.is_dataclass(entity) or isinstance(entity, type):
        raise WrongType("ref", "dataclass instance", entity)
    return _FieldRefBuilder(entity)


@dataclass
class Metadata:
    """How the fields of one entity type map onto the columns of one table.

    Attributes:
        table_name: Table the entity represents
        table_schema: Schema of that table
        fields: Column name -> attribute name
        omitted_fields: Column name -> attribute name, for omit_unsupported
            columns missing from the runtime schema
        hints: Attribute name -> resolved type annotation
    """

    table_name: str
    table_schema: TableSchema
    fields: dict[str, str] = field(default_factory=dict)
    omitted_fields: dict[str, str] = field(default_factory=dict)
    hints: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self._columns_by_attr = {attr: col for col, attr in self.fields.items()}
        self._omitted_by_attr = {attr: col for col, attr in self.omitted_fields.items()}

    def column_of(self, attr: str) -> str | None:
        return self._columns_by_attr.get(attr)

    def omitted_column_of(self, attr: str) -> str | None:
        return self._omitted_by_attr.get(attr)

    @property
    def indexes(self) -> list[tuple[str, ...]]:
        """Every unique index declared by the table schema."""
        return list(self.table_schema.indexes)

    @property
    def usable_indexes(self) -> list[tuple[str, ...]]:
        """Indexes whose every column is held by a field of the entity."""
        return [idx for idx in self.indexes if all(col in self.fields for col in idx)]


class ClientDBModel:
    """The caller's mapping from table name to entity type.

    Example:
        >>> model = ClientDBModel("Open_vSwitch", {"Bridge": Bridge, "Port": Port})
        >>> model.table_name(Bridge)
        'Bridge'
    """

    def __init__(self, name: str, models: Mapping[str, type]) -> None:
        """Create a client model.

        Raises:
            WrongType: If a model is not a dataclass type
            SchemaViolation: If a model lacks a str field tagged "_uuid",
                or one type is registered for two tables
        """
        self._name = name
        self._types: dict[str, type] = {}
        self._tables: dict[type, str] = {}
        self._compat = False
        for table, model_type in models.items():
            if not isinstance(model_type, type) or not dataclasses.is_dataclass(model_type):
                raise WrongType("ClientDBModel", "dataclass type", model_type)
            tags = column_tags(model_type)
            uuid_attrs = [attr for attr, tag in tags.items() if tag.name == UUID_COLUMN]
            if not uuid_attrs:
                raise SchemaViolation(
                    f"Model type '{model_type.__name__}' for table '{table}' "
                    f"has no field tagged '{UUID_COLUMN}'"
                )
            hints = typing.get_type_hints(model_type)
            if not types_equal(hints.get(uuid_attrs[0]), str):
                raise SchemaViolation(
                    f"Field '{uuid_attrs[0]}' of '{model_type.__name__}' tagged "
                    f"'{UUID_COLUMN}' must be str"
                )
            if model_type in self._tables:
                raise SchemaViolation(
                    f"Model type '{model_type.__name__}' registered for tables "
                    f"'{self._tables[model_type]}' and '{table}'"
                )
            self._types[table] = model_type
            self._tables[model_type] = table

    @property
    def name(self) -> str:
        return self._name

    @property
    def compatibility(self) -> bool:
        return self._compat

    def set_compatibility(self, enabled: bool) -> None:
        """Tolerate tables missing from the runtime schema."""
        self._compat = enabled

    def tables(self) -> Iterator[str]:
        yield from self._types

    def types(self) -> dict[str, type]:
        return dict(self._types)

    def model_type(self, table: str) -> type | None:
        return self._types.get(table)

    def table_name(self, model_type: type) -> str:
        """Table represented by model_type.

        Raises:
            ModelNotRegistered: If model_type is not part of this model
        """
        table = self._tables.get(model_type)
        if table is None:
            raise ModelNotRegistered(model_type)
        return table

    def validate(self, schema: DatabaseSchema) -> list[Exception]:
        """Return every problem binding this model to schema."""
        errors: list[Exception] = []
        if self._name != schema.name:
            errors.append(
                SchemaViolation(
                    f"Database model name ({self._name}) does not match schema ({schema.name})"
                )
            )
        for table, model_type in self._types.items():
            table_schema = schema.table(table)
            if table_schema is None:
                if self._compat:
                    continue
                errors.append(UnknownTable(table, f"Table '{table}' not found in schema"))
                continue
            _, field_errors = build_metadata(table, table_schema, model_type)
            errors.extend(field_errors)
        return errors


def build_metadata(
    table: str, table_schema: TableSchema, model_type: type
) -> tuple[Metadata, list[Exception]]:
    """Derive the Metadata of model_type for table, collecting field errors."""
    errors: list[Exception] = []
    hints = typing.get_type_hints(model_type)
    fields: dict[str, str] = {}
    omitted: dict[str, str] = {}
    for attr, tag in column_tags(model_type).items():
        if tag.name in fields or tag.name in omitted:
            other = fields.get(tag.name) or omitted.get(tag.name)
            errors.append(
                SchemaViolation(
                    f"Fields '{other}' and '{attr}' of '{model_type.__name__}' "
                    f"share column tag '{tag.name}'"
                )
            )
            continue
        column_schema = table_schema.column(tag.name)
        if column_schema is None:
            if tag.omit_unsupported:
                omitted[tag.name] = attr
                continue
            errors.append(
                UnknownColumn(
                    table,
                    tag.name,
                    f"Field '{attr}' of '{model_type.__name__}': column '{tag.name}' "
                    f"does not exist in table '{table}'",
                )
            )
            continue
        expected = column_schema.native_type()
        actual = hints.get(attr)
        if not types_equal(expected, actual):
            errors.append(
                TypeMismatch(
                    f"Field '{attr}' of '{model_type.__name__}': column '{tag.name}' "
                    f"expects {type_name(expected)}, field is {type_name(actual)}",
                    expected=type_name(expected),
                    got=actual,
                )
            )
            continue
        fields[tag.name] = attr
    metadata = Metadata(
        table_name=table,
        table_schema=table_schema,
        fields=fields,
        omitted_fields=omitted,
        hints=hints,
    )
    return metadata, errors


class DatabaseModel:
    """A ClientDBModel bound to, and validated against, a DatabaseSchema.

    Immutable after construction; safe to share between threads.
    """

    def __init__(self, client_model: ClientDBModel, schema: DatabaseSchema) -> None:
        """Bind client_model to schema.

        Raises:
            MappingError: The single validation error, or a SchemaViolation
                listing all of them
        """
        err = combine_errors(client_model.validate(schema), "database model validation failed")
        if err is not None:
            raise err
        self._client_model = client_model
        self._schema = schema
        self._metadata: dict[type, Metadata] = {}
        self._types: dict[str, type] = {}
        for table, model_type in client_model.types().items():
            table_schema = schema.table(table)
            if table_schema is None:
                logger.warning(
                    "Skipping table missing from schema in compatibility mode",
                    extra={"table": table, "database": schema.name},
                )
                continue
            metadata, _ = build_metadata(table, table_schema, model_type)
            for col in metadata.omitted_fields:
                logger.warning(
                    "Omitting column missing from runtime schema",
                    extra={"table": table, "column": col},
                )
            self._metadata[model_type] = metadata
            self._types[table] = model_type

    @property
    def client_model(self) -> ClientDBModel:
        return self._client_model

    @property
    def schema(self) -> DatabaseSchema:
        return self._schema

    @property
    def name(self) -> str:
        return self._client_model.name

    def tables(self) -> list[str]:
        return list(self._types)

    def types(self) -> dict[str, type]:
        return dict(self._types)

    def model_type(self, table: str) -> type | None:
        return self._types.get(table)

    def table_name(self, model_type: type) -> str:
        """Raises ModelNotRegistered for unknown or unbound types."""
        metadata = self._metadata.get(model_type)
        if metadata is None:
            raise ModelNotRegistered(model_type)
        return metadata.table_name

    def metadata(self, model_type: type) -> Metadata:
        metadata = self._metadata.get(model_type)
        if metadata is None:
            raise ModelNotRegistered(model_type)
        return metadata

    def metadata_for_table(self, table: str) -> Metadata:
        model_type = self._types.get(table)
        if model_type is None:
            raise UnknownTable(table, f"Table '{table}' is not part of the database model")
        return self._metadata[model_type]

    def new_model(self, table: str) -> Any:
        """Create an entity for table with every field at its default value.

        Raises:
            UnknownTable: If table is not part of the model
        """
        model_type = self._types.get(table)
        if model_type is None:
            raise UnknownTable(table, f"Table '{table}' is not part of the database model")
        metadata = self._metadata[model_type]
        kwargs: dict[str, Any] = {}
        for f in dataclasses.fields(model_type):
            if not f.init:
                continue
            if f.default is not dataclasses.MISSING or f.default_factory is not dataclasses.MISSING:
                continue
            col = metadata.column_of(f.name)
            if col is not None:
                kwargs[f.name] = metadata.table_schema.columns[col].zero_value()
            else:
                kwargs[f.name] = None
        return model_type(**kwargs)

    def clone(self, entity: Any) -> Any:
        """Deep copy of an entity."""
        return copy.deepcopy(entity)
