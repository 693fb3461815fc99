"""
Value codec for the OVSDB SDK.

Converts between native Python values and the wire's tagged JSON forms,
driven by a ColumnSchema:

    atom        int | float | bool | str        <-> bare JSON value
    uuid        str                             <-> ["uuid", s] / ["named-uuid", s]
    optional    None | K                        <-> ["set", []] / bare element
    set         list[K]                         <-> bare element / ["set", [...]]
    map         dict[K, V]                      <-> ["map", [[k, v], ...]]

Invariants:
    - An empty set always encodes as ["set", []]
    - A set of exactly one element encodes as the bare element
    - decode accepts both the bare and the tagged set form
    - Numeric atoms accept any JSON number; inexact coercions fail with
      ConversionOutOfRange rather than silently rounding
"""

from __future__ import annotations

from typing import Any

from .errors import ConversionOutOfRange, TypeMismatch
from .notation import is_tagged, is_uuid_atom, uuid_atom
from .schema import (
    TYPE_BOOLEAN,
    TYPE_INTEGER,
    TYPE_REAL,
    TYPE_STRING,
    TYPE_UUID,
    BaseType,
    ColumnSchema,
    type_name,
)


def _mismatch(column: ColumnSchema | None, expected: str, got: Any) -> TypeMismatch:
    where = f"column '{column.name}'" if column is not None else "value"
    return TypeMismatch(
        f"Type mismatch for {where}: expected {expected}, got {got!r}",
        expected=expected,
        got=got,
    )


def encode_atom(base: BaseType, value: Any, column: ColumnSchema | None = None) -> Any:
    """Encode one native atom of the given base type."""
    kind = base.type
    if kind == TYPE_UUID:
        if not isinstance(value, str):
            raise _mismatch(column, "str (uuid)", value)
        return uuid_atom(value)
    if kind == TYPE_BOOLEAN:
        if not isinstance(value, bool):
            raise _mismatch(column, "bool", value)
        return value
    if kind == TYPE_INTEGER:
        if isinstance(value, bool) or not isinstance(value, int):
            raise _mismatch(column, "int", value)
        return value
    if kind == TYPE_REAL:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise _mismatch(column, "float", value)
        return float(value)
    if kind == TYPE_STRING:
        if not isinstance(value, str):
            raise _mismatch(column, "str", value)
        return value
    raise _mismatch(column, kind, value)


def decode_atom(base: BaseType, wire: Any, column: ColumnSchema | None = None) -> Any:
    """Decode one wire atom of the given base type."""
    kind = base.type
    if kind == TYPE_UUID:
        if not is_uuid_atom(wire):
            raise _mismatch(column, "uuid atom", wire)
        return wire[1]
    if kind == TYPE_BOOLEAN:
        if not isinstance(wire, bool):
            raise _mismatch(column, "boolean", wire)
        return wire
    if kind == TYPE_INTEGER:
        if isinstance(wire, bool) or not isinstance(wire, (int, float)):
            raise _mismatch(column, "integer", wire)
        if isinstance(wire, float):
            if not wire.is_integer():
                raise ConversionOutOfRange(wire, "integer")
            return int(wire)
        return wire
    if kind == TYPE_REAL:
        if isinstance(wire, bool) or not isinstance(wire, (int, float)):
            raise _mismatch(column, "real", wire)
        if isinstance(wire, int):
            try:
                converted = float(wire)
            except OverflowError:
                raise ConversionOutOfRange(wire, "real") from None
            if int(converted) != wire:
                raise ConversionOutOfRange(wire, "real")
            return converted
        return wire
    if kind == TYPE_STRING:
        if not isinstance(wire, str):
            raise _mismatch(column, "string", wire)
        return wire
    raise _mismatch(column, kind, wire)


def encode_set(base: BaseType, elements: list[Any], column: ColumnSchema | None = None) -> Any:
    """Encode a list of atoms, bare when it holds exactly one element."""
    encoded = [encode_atom(base, e, column) for e in elements]
    if len(encoded) == 1:
        return encoded[0]
    return ["set", encoded]


def encode_map(column: ColumnSchema, value: dict[Any, Any]) -> list[Any]:
    value_type = column.map_value
    return [
        "map",
        [
            [encode_atom(column.key, k, column), encode_atom(value_type, v, column)]
            for k, v in value.items()
        ],
    ]


def encode(value: Any, column: ColumnSchema) -> Any:
    """Encode a native value for a column.

    Args:
        value: Native value (see module docstring for shapes)
        column: Target column schema

    Returns:
        JSON-compatible wire value

    Raises:
        TypeMismatch: If value does not have the column's native shape
    """
    if column.is_map:
        if not isinstance(value, dict):
            raise _mismatch(column, type_name(column.native_type()), value)
        return encode_map(column, value)
    if column.is_set:
        if not isinstance(value, (list, tuple, set, frozenset)):
            raise _mismatch(column, type_name(column.native_type()), value)
        return encode_set(column.key, list(value), column)
    if column.is_optional:
        if value is None:
            return ["set", []]
        return encode_atom(column.key, value, column)
    return encode_atom(column.key, value, column)


def set_elements(wire: Any) -> list[Any]:
    """Return the wire elements of a set in either form."""
    if is_tagged(wire, "set"):
        if not isinstance(wire[1], list):
            raise _mismatch(None, "set", wire)
        return wire[1]
    return [wire]


def _decode_elements(column: ColumnSchema, wire: Any) -> list[Any]:
    result: list[Any] = []
    for elem in set_elements(wire):
        native = decode_atom(column.key, elem, column)
        if native not in result:
            result.append(native)
    return result


def _decode_map(column: ColumnSchema, wire: Any) -> dict[Any, Any]:
    value_type = column.map_value
    if not is_tagged(wire, "map") or not isinstance(wire[1], list):
        raise _mismatch(column, "map", wire)
    result: dict[Any, Any] = {}
    for pair in wire[1]:
        if not isinstance(pair, list) or len(pair) != 2:
            raise _mismatch(column, "map pair", pair)
        result[decode_atom(column.key, pair[0], column)] = decode_atom(value_type, pair[1], column)
    return result


def decode(wire: Any, column: ColumnSchema) -> Any:
    """Decode a wire value for a column into its native shape.

    Raises:
        TypeMismatch: If the wire shape does not match the column type
        ConversionOutOfRange: If a number cannot be represented exactly
    """
    if column.is_map:
        return _decode_map(column, wire)
    if column.is_set:
        return _decode_elements(column, wire)
    if column.is_optional:
        elements = _decode_elements(column, wire)
        if not elements:
            return None
        if len(elements) > 1:
            raise _mismatch(column, "at most one element", wire)
        return elements[0]
    if is_tagged(wire, "set"):
        # Tolerate a single element tagged set for an atomic column
        elements = _decode_elements(column, wire)
        if len(elements) != 1:
            raise _mismatch(column, column.key.type, wire)
        return elements[0]
    return decode_atom(column.key, wire, column)


def decode_difference(wire: Any, column: ColumnSchema) -> Any:
    """Decode the per-column change carried by a differential "modify".

    Sets (including optional columns, whose change may hold two elements
    when the value is replaced) decode to a list, maps to a dict and
    atomic columns to a native atom.
    """
    if column.is_map:
        return _decode_map(column, wire)
    if column.is_set or column.is_optional:
        return _decode_elements(column, wire)
    return decode(wire, column)
