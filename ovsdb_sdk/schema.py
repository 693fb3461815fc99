"""
Database schema types for the OVSDB SDK.

This module parses the JSON schema returned by ``get_schema`` into:
- DatabaseSchema: Name, version and tables
- TableSchema: Columns, indexes and the root-set flag
- ColumnSchema: Column type, mutability and ephemerality
- ColumnType / BaseType: Key/value kinds, cardinality, references and domain

It also computes, per column, the native Python type a model field must
declare, the default value predicate, and whether a mutator or condition
function is legal for the column.

Native type mapping:
    atom of kind K          -> K (int, float, bool, str)
    set, min=1, max=1       -> K
    set, min=0, max=1       -> Optional[K]
    set, max>1              -> list[K]
    map                     -> dict[K, V]
    uuid                    -> str

Invariants:
    - Every table has implicit immutable "_uuid" and "_version" columns
    - If no table declares isRoot, every table is a root table
    - A column with a refTable and no refType holds strong references
"""

from __future__ import annotations

import json
import types
import typing
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from .errors import InvalidCondition, InvalidMutation, SchemaViolation, UnknownTable
from .notation import (
    COND_EQ,
    COND_EXCLUDES,
    COND_GE,
    COND_GT,
    COND_INCLUDES,
    COND_LE,
    COND_LT,
    COND_NE,
    CONDITION_FUNCTIONS,
    MUTATE_ADD,
    MUTATE_DELETE,
    MUTATE_DIVIDE,
    MUTATE_INSERT,
    MUTATE_MODULO,
    MUTATE_MULTIPLY,
    MUTATE_SUBTRACT,
    MUTATORS,
    ZERO_UUID,
    Operation,
)

TYPE_INTEGER = "integer"
TYPE_REAL = "real"
TYPE_BOOLEAN = "boolean"
TYPE_STRING = "string"
TYPE_UUID = "uuid"
TYPE_ENUM = "enum"
TYPE_SET = "set"
TYPE_MAP = "map"

ATOMIC_TYPES = (TYPE_INTEGER, TYPE_REAL, TYPE_BOOLEAN, TYPE_STRING, TYPE_UUID)

REF_STRONG = "strong"
REF_WEAK = "weak"

UNLIMITED = -1

UUID_COLUMN = "_uuid"
VERSION_COLUMN = "_version"

_NATIVE_ATOMIC: dict[str, type] = {
    TYPE_INTEGER: int,
    TYPE_REAL: float,
    TYPE_BOOLEAN: bool,
    TYPE_STRING: str,
    TYPE_UUID: str,
}

_ARITHMETIC = (MUTATE_ADD, MUTATE_SUBTRACT, MUTATE_MULTIPLY, MUTATE_DIVIDE)
_ORDERING = (COND_LT, COND_LE, COND_GT, COND_GE)


def _parse_enum(value: Any) -> tuple[Any, ...]:
    if isinstance(value, list) and len(value) == 2 and value[0] == "set":
        return tuple(value[1])
    return (value,)


@dataclass(frozen=True)
class BaseType:
    """Type of the key or value side of a column.

    Attributes:
        type: Atomic kind (integer, real, boolean, string, uuid)
        enum: Allowed values, if constrained
        min_integer / max_integer: Integer domain
        min_real / max_real: Real domain
        min_length / max_length: String length domain
        ref_table: Referenced table for uuid kinds
        ref_type: Reference strength (strong or weak)
    """

    type: str
    enum: tuple[Any, ...] | None = None
    min_integer: int | None = None
    max_integer: int | None = None
    min_real: float | None = None
    max_real: float | None = None
    min_length: int | None = None
    max_length: int | None = None
    ref_table: str | None = None
    ref_type: str = REF_STRONG

    def __post_init__(self) -> None:
        if self.type not in ATOMIC_TYPES:
            raise SchemaViolation(f"Invalid atomic type '{self.type}'")
        if self.ref_type not in (REF_STRONG, REF_WEAK):
            raise SchemaViolation(f"Invalid refType '{self.ref_type}'")

    @classmethod
    def from_json(cls, data: Any) -> BaseType:
        if isinstance(data, str):
            return cls(type=data)
        return cls(
            type=data["type"],
            enum=_parse_enum(data["enum"]) if "enum" in data else None,
            min_integer=data.get("minInteger"),
            max_integer=data.get("maxInteger"),
            min_real=data.get("minReal"),
            max_real=data.get("maxReal"),
            min_length=data.get("minLength"),
            max_length=data.get("maxLength"),
            ref_table=data.get("refTable"),
            ref_type=data.get("refType", REF_STRONG),
        )

    def to_json(self) -> Any:
        result: dict[str, Any] = {"type": self.type}
        if self.enum is not None:
            result["enum"] = ["set", list(self.enum)]
        for attr, key in (
            ("min_integer", "minInteger"),
            ("max_integer", "maxInteger"),
            ("min_real", "minReal"),
            ("max_real", "maxReal"),
            ("min_length", "minLength"),
            ("max_length", "maxLength"),
            ("ref_table", "refTable"),
        ):
            value = getattr(self, attr)
            if value is not None:
                result[key] = value
        if self.ref_table is not None:
            result["refType"] = self.ref_type
        if len(result) == 1:
            return self.type
        return result

    @property
    def native(self) -> type:
        return _NATIVE_ATOMIC[self.type]

    @property
    def is_reference(self) -> bool:
        return self.type == TYPE_UUID and self.ref_table is not None

    @property
    def is_strong(self) -> bool:
        return self.is_reference and self.ref_type == REF_STRONG

    def check_domain(self, value: Any) -> str | None:
        """Return a reason string if value is outside this type's domain."""
        if self.enum is not None and value not in self.enum:
            return f"{value!r} is not one of {list(self.enum)}"
        if self.type == TYPE_INTEGER:
            if self.min_integer is not None and value < self.min_integer:
                return f"{value} is less than minimum {self.min_integer}"
            if self.max_integer is not None and value > self.max_integer:
                return f"{value} is greater than maximum {self.max_integer}"
        elif self.type == TYPE_REAL:
            if self.min_real is not None and value < self.min_real:
                return f"{value} is less than minimum {self.min_real}"
            if self.max_real is not None and value > self.max_real:
                return f"{value} is greater than maximum {self.max_real}"
        elif self.type == TYPE_STRING:
            if self.min_length is not None and len(value) < self.min_length:
                return f"length of {value!r} is less than {self.min_length}"
            if self.max_length is not None and len(value) > self.max_length:
                return f"length of {value!r} is greater than {self.max_length}"
        return None


@dataclass(frozen=True)
class ColumnType:
    """Full type of a column: key, optional value and cardinality."""

    key: BaseType
    value: BaseType | None = None
    min: int = 1
    max: int = 1

    @classmethod
    def from_json(cls, data: Any) -> ColumnType:
        if isinstance(data, str):
            return cls(key=BaseType.from_json(data))
        max_ = data.get("max", 1)
        return cls(
            key=BaseType.from_json(data["key"]),
            value=BaseType.from_json(data["value"]) if "value" in data else None,
            min=data.get("min", 1),
            max=UNLIMITED if max_ == "unlimited" else max_,
        )

    def to_json(self) -> Any:
        if self.value is None and self.min == 1 and self.max == 1:
            key = self.key.to_json()
            if isinstance(key, str):
                return key
        result: dict[str, Any] = {"key": self.key.to_json()}
        if self.value is not None:
            result["value"] = self.value.to_json()
        if self.min != 1:
            result["min"] = self.min
        if self.max != 1:
            result["max"] = "unlimited" if self.max == UNLIMITED else self.max
        return result


@dataclass(frozen=True)
class ColumnSchema:
    """Schema of a single column."""

    name: str
    type: ColumnType
    mutable: bool = True
    ephemeral: bool = False

    @classmethod
    def from_json(cls, name: str, data: dict[str, Any]) -> ColumnSchema:
        return cls(
            name=name,
            type=ColumnType.from_json(data["type"]),
            mutable=data.get("mutable", True),
            ephemeral=data.get("ephemeral", False),
        )

    def to_json(self) -> dict[str, Any]:
        result: dict[str, Any] = {"type": self.type.to_json()}
        if not self.mutable:
            result["mutable"] = False
        if self.ephemeral:
            result["ephemeral"] = True
        return result

    @property
    def kind(self) -> str:
        """Extended kind: an atomic type, enum, set or map."""
        if self.type.value is not None:
            return TYPE_MAP
        if self.type.min == 1 and self.type.max == 1:
            if self.type.key.enum is not None:
                return TYPE_ENUM
            return self.type.key.type
        return TYPE_SET

    @property
    def key(self) -> BaseType:
        return self.type.key

    @property
    def value(self) -> BaseType | None:
        return self.type.value

    @property
    def map_value(self) -> BaseType:
        """Value type of a map column."""
        if self.type.value is None:
            raise SchemaViolation(f"column '{self.name}' is not a map", details={"column": self.name})
        return self.type.value

    @property
    def is_optional(self) -> bool:
        """A set of at most one element, mapped to Optional[K]."""
        return self.kind == TYPE_SET and self.type.max == 1

    @property
    def is_set(self) -> bool:
        return self.kind == TYPE_SET and self.type.max != 1

    @property
    def is_map(self) -> bool:
        return self.kind == TYPE_MAP

    @property
    def is_atomic(self) -> bool:
        return self.kind in ATOMIC_TYPES or self.kind == TYPE_ENUM

    @property
    def is_numeric(self) -> bool:
        """Atomic or optional integer/real column."""
        if self.is_map or self.is_set:
            return False
        return self.key.type in (TYPE_INTEGER, TYPE_REAL)

    def native_type(self) -> Any:
        """The type a model field bound to this column must declare."""
        key = self.key.native
        if self.is_map:
            return dict[key, self.map_value.native]  # type: ignore[valid-type]
        if self.is_set:
            return list[key]  # type: ignore[valid-type]
        if self.is_optional:
            return Optional[key]
        return key

    def zero_value(self) -> Any:
        """The default value of a field bound to this column."""
        if self.is_map:
            return {}
        if self.is_set:
            return []
        if self.is_optional:
            return None
        return self.key.native()

    def is_default(self, value: Any) -> bool:
        """Whether value is the schema default of this column."""
        if value is None:
            return True
        if self.is_map or self.is_set:
            return len(value) == 0
        if self.is_optional:
            return False
        if self.key.type == TYPE_UUID:
            return value in ("", ZERO_UUID)
        if self.key.type == TYPE_BOOLEAN:
            return value is False
        if self.key.type == TYPE_STRING:
            return value == ""
        return value == 0

    def references(self) -> list[tuple[BaseType, bool]]:
        """Reference-holding sides of this column as (base type, is value side)."""
        result = []
        if self.key.is_reference:
            result.append((self.key, False))
        if self.value is not None and self.value.is_reference:
            result.append((self.value, True))
        return result


def _implicit_columns() -> dict[str, ColumnSchema]:
    uuid_type = ColumnType(key=BaseType(type=TYPE_UUID))
    return {
        UUID_COLUMN: ColumnSchema(name=UUID_COLUMN, type=uuid_type, mutable=False),
        VERSION_COLUMN: ColumnSchema(name=VERSION_COLUMN, type=uuid_type, mutable=False),
    }


@dataclass
class TableSchema:
    """Schema of a single table."""

    name: str
    columns: dict[str, ColumnSchema] = field(default_factory=dict)
    indexes: list[tuple[str, ...]] = field(default_factory=list)
    is_root: bool = False
    max_rows: int | None = None

    def __post_init__(self) -> None:
        for name, column in _implicit_columns().items():
            self.columns.setdefault(name, column)

    @classmethod
    def from_json(cls, name: str, data: dict[str, Any]) -> TableSchema:
        return cls(
            name=name,
            columns={
                col: ColumnSchema.from_json(col, col_data)
                for col, col_data in data.get("columns", {}).items()
            },
            indexes=[tuple(idx) for idx in data.get("indexes", [])],
            is_root=data.get("isRoot", False),
            max_rows=data.get("maxRows"),
        )

    def to_json(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "columns": {
                name: col.to_json()
                for name, col in self.columns.items()
                if name not in (UUID_COLUMN, VERSION_COLUMN)
            }
        }
        if self.indexes:
            result["indexes"] = [list(idx) for idx in self.indexes]
        if self.is_root:
            result["isRoot"] = True
        if self.max_rows is not None:
            result["maxRows"] = self.max_rows
        return result

    def column(self, name: str) -> ColumnSchema | None:
        return self.columns.get(name)

    def reference_columns(self) -> list[ColumnSchema]:
        return [col for col in self.columns.values() if col.references()]


@dataclass
class DatabaseSchema:
    """Schema of a database as returned by get_schema."""

    name: str
    version: str = ""
    tables: dict[str, TableSchema] = field(default_factory=dict)
    cksum: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DatabaseSchema:
        return cls(
            name=data["name"],
            version=data.get("version", ""),
            tables={
                name: TableSchema.from_json(name, table)
                for name, table in data.get("tables", {}).items()
            },
            cksum=data.get("cksum"),
        )

    @classmethod
    def from_json(cls, text: str) -> DatabaseSchema:
        return cls.from_dict(json.loads(text))

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "name": self.name,
            "version": self.version,
            "tables": {name: table.to_json() for name, table in self.tables.items()},
        }
        if self.cksum is not None:
            result["cksum"] = self.cksum
        return result

    def table(self, name: str) -> TableSchema | None:
        return self.tables.get(name)

    def column(self, table: str, column: str) -> ColumnSchema | None:
        table_schema = self.tables.get(table)
        if table_schema is None:
            return None
        return table_schema.column(column)

    def is_root(self, table: str) -> bool:
        """Whether rows of table live regardless of references."""
        if not any(t.is_root for t in self.tables.values()):
            return True
        table_schema = self.tables.get(table)
        return table_schema is not None and table_schema.is_root

    def validate_operations(self, *operations: Operation) -> None:
        """Check that every operation targets a known table.

        Raises:
            UnknownTable: If an operation names a table missing from the schema
        """
        for op in operations:
            if op.table and op.table not in self.tables:
                raise UnknownTable(op.table, f"Operation '{op.op}' targets unknown table '{op.table}'")


# ---------------------------------------------------------------------------
# Native type helpers
# ---------------------------------------------------------------------------


def normalize_type(tp: Any) -> Any:
    """Reduce a type annotation to a comparable shape.

    ``list[str]`` and ``typing.List[str]`` normalize equally, as do
    ``Optional[str]``, ``Union[str, None]`` and ``str | None``.
    """
    origin = typing.get_origin(tp)
    if origin is None:
        return tp
    args = typing.get_args(tp)
    if origin is Union or origin is getattr(types, "UnionType", None):
        non_none = [a for a in args if a is not type(None)]
        if len(non_none) == 1 and len(non_none) != len(args):
            return ("optional", normalize_type(non_none[0]))
        return ("union",) + tuple(normalize_type(a) for a in args)
    if origin in (list, typing.List):
        return ("list",) + tuple(normalize_type(a) for a in args)
    if origin in (dict, typing.Dict):
        return ("dict",) + tuple(normalize_type(a) for a in args)
    return (origin,) + tuple(normalize_type(a) for a in args)


def types_equal(a: Any, b: Any) -> bool:
    return normalize_type(a) == normalize_type(b)


def type_name(tp: Any) -> str:
    if isinstance(tp, type):
        return tp.__name__
    return str(tp).replace("typing.", "")


def _is_atom(native: type, value: Any) -> bool:
    if native is bool:
        return isinstance(value, bool)
    if isinstance(value, bool):
        return False
    if native is float:
        return isinstance(value, (int, float))
    return isinstance(value, native)


def _is_collection(value: Any) -> bool:
    return isinstance(value, (list, tuple, set, frozenset))


def check_native(column: ColumnSchema, value: Any) -> bool:
    """Whether value is a legal native instance of the column's type."""
    key = column.key.native
    if column.is_map:
        val = column.map_value.native
        return isinstance(value, dict) and all(
            _is_atom(key, k) and _is_atom(val, v) for k, v in value.items()
        )
    if column.is_set:
        return _is_collection(value) and all(_is_atom(key, e) for e in value)
    if column.is_optional:
        return value is None or _is_atom(key, value)
    return _is_atom(key, value)


def check_domain(column: ColumnSchema, value: Any) -> None:
    """Validate a native value against the column's domain constraints.

    Raises:
        SchemaViolation: If any element is outside the domain
    """
    if value is None:
        return
    if column.is_map:
        items = [(column.key, k) for k in value] + [(column.map_value, v) for v in value.values()]
    elif column.is_set:
        items = [(column.key, e) for e in value]
    else:
        items = [(column.key, value)]
    for base, elem in items:
        reason = base.check_domain(elem)
        if reason is not None:
            raise SchemaViolation(
                f"Column '{column.name}': {reason}",
                details={"column": column.name},
            )


# ---------------------------------------------------------------------------
# Mutation and condition validation
# ---------------------------------------------------------------------------


def validate_mutation(column: ColumnSchema, mutator: str, value: Any) -> None:
    """Check that a mutation is legal for a column.

    Raises:
        InvalidMutation: If the mutator or value is not legal
    """
    if mutator not in MUTATORS:
        raise InvalidMutation(column.name, mutator, "unknown mutator")
    if not column.mutable:
        raise InvalidMutation(column.name, mutator, "column is not mutable")

    key = column.key
    if column.is_map:
        if mutator == MUTATE_INSERT:
            if not check_native(column, value):
                raise InvalidMutation(
                    column.name, mutator, f"value must be {type_name(column.native_type())}"
                )
            return
        if mutator == MUTATE_DELETE:
            keys_ok = _is_collection(value) and all(_is_atom(key.native, k) for k in value)
            if not check_native(column, value) and not keys_ok:
                raise InvalidMutation(
                    column.name,
                    mutator,
                    f"value must be {type_name(column.native_type())} or a list of keys",
                )
            return
        raise InvalidMutation(column.name, mutator, "only insert and delete apply to maps")

    if column.kind == TYPE_ENUM:
        raise InvalidMutation(column.name, mutator, "enums do not support mutation")

    if column.is_set or column.is_optional:
        if mutator in (MUTATE_INSERT, MUTATE_DELETE):
            elements = value if _is_collection(value) else [value]
            if not all(_is_atom(key.native, e) for e in elements):
                raise InvalidMutation(
                    column.name, mutator, f"elements must be {type_name(key.native)}"
                )
            return
        _validate_arithmetic(column.name, key.type, mutator, value)
        return

    if mutator in (MUTATE_INSERT, MUTATE_DELETE):
        raise InvalidMutation(column.name, mutator, "insert and delete apply to sets and maps only")
    _validate_arithmetic(column.name, key.type, mutator, value)


def _validate_arithmetic(name: str, atomic: str, mutator: str, value: Any) -> None:
    if atomic == TYPE_INTEGER:
        if mutator not in _ARITHMETIC and mutator != MUTATE_MODULO:
            raise InvalidMutation(name, mutator, "wrong mutator for integer")
        if not _is_atom(int, value):
            raise InvalidMutation(name, mutator, "value must be int")
        return
    if atomic == TYPE_REAL:
        if mutator not in _ARITHMETIC:
            raise InvalidMutation(name, mutator, "wrong mutator for real")
        if not _is_atom(float, value):
            raise InvalidMutation(name, mutator, "value must be float")
        return
    raise InvalidMutation(name, mutator, f"atomic type {atomic} does not support mutation")


def validate_condition(column: ColumnSchema, function: str, value: Any) -> None:
    """Check that a condition is legal for a column.

    Raises:
        InvalidCondition: If the function or value is not legal
    """
    if function not in CONDITION_FUNCTIONS:
        raise InvalidCondition(column.name, function, "unknown function")
    if function in _ORDERING and not column.is_numeric:
        raise InvalidCondition(column.name, function, "ordering applies to numeric columns only")
    if function in (COND_EQ, COND_NE, COND_INCLUDES, COND_EXCLUDES) or function in _ORDERING:
        if function in _ORDERING and value is None:
            raise InvalidCondition(column.name, function, "value must be a number")
        if not check_native(column, value):
            raise InvalidCondition(
                column.name, function, f"value must be {type_name(column.native_type())}"
            )
