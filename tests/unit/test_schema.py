"""
Unit tests for schema types and validation.

Tests cover:
- Schema parsing and serialization
- Implicit columns and root tables
- Native types and default values
- Domain checks
- Mutation and condition validation
"""

from typing import Optional

import pytest

from ovsdb_sdk.errors import InvalidCondition, InvalidMutation, SchemaViolation, UnknownTable
from ovsdb_sdk.notation import Operation
from ovsdb_sdk.schema import (
    UNLIMITED,
    ColumnSchema,
    DatabaseSchema,
    check_domain,
    check_native,
    types_equal,
    validate_condition,
    validate_mutation,
)
from tests.models import C1, FAMILY_SCHEMA, family_schema


class TestDatabaseSchema:
    """Tests for schema parsing."""

    def test_parse_tables(self):
        """Tables, indexes and isRoot are parsed."""
        schema = family_schema()
        assert schema.name == "Family"
        assert schema.version == "1.2.0"
        assert set(schema.tables) == {"Parent", "Child"}
        assert schema.table("Parent").indexes == [("name",)]
        assert schema.table("Parent").is_root is True
        assert schema.table("Child").is_root is False

    def test_implicit_columns(self):
        """Every table has immutable _uuid and _version columns."""
        table = family_schema().table("Child")
        assert table.column("_uuid").mutable is False
        assert table.column("_version").mutable is False
        assert table.column("_uuid").key.type == "uuid"

    def test_unlimited_max(self):
        """"unlimited" parses to UNLIMITED."""
        assert family_schema().column("Parent", "children").type.max == UNLIMITED

    def test_reference_strength(self):
        """refType defaults to strong."""
        schema = family_schema()
        assert schema.column("Parent", "children").key.is_strong
        assert not schema.column("Parent", "backup").key.is_strong
        assert schema.column("Parent", "backup").key.is_reference

    def test_to_dict_round_trip(self):
        """to_dict output parses back to an equal schema."""
        schema = family_schema()
        assert DatabaseSchema.from_dict(schema.to_dict()) == schema

    def test_to_dict_omits_implicit_columns(self):
        """Implicit columns are not serialized."""
        data = family_schema().to_dict()
        assert "_uuid" not in data["tables"]["Parent"]["columns"]
        assert set(data["tables"]["Parent"]["columns"]) == set(FAMILY_SCHEMA["tables"]["Parent"]["columns"])
        assert data["tables"]["Parent"]["columns"]["created"] == {"type": "string", "mutable": False}

    def test_every_table_root_when_none_declared(self):
        """Without any isRoot flag all tables are roots."""
        schema = family_schema(Parent={"isRoot": False})
        assert schema.is_root("Parent")
        assert schema.is_root("Child")

    def test_only_declared_roots(self):
        """With an isRoot flag only flagged tables are roots."""
        schema = family_schema()
        assert schema.is_root("Parent")
        assert not schema.is_root("Child")

    def test_validate_operations_unknown_table(self):
        """Operations must target known tables."""
        schema = family_schema()
        schema.validate_operations(Operation(op="insert", table="Child", row={}))
        with pytest.raises(UnknownTable):
            schema.validate_operations(Operation(op="insert", table="Uncle", row={}))


class TestColumnSchema:
    """Tests for column kinds, native types and defaults."""

    def test_kinds(self):
        """Columns classify as atomic, optional, set or map."""
        schema = family_schema()
        assert schema.column("Parent", "name").is_atomic
        assert schema.column("Parent", "backup").is_optional
        assert schema.column("Parent", "children").is_set
        assert schema.column("Parent", "extras").is_map

    def test_enum_kind(self):
        """A single value column with an enum is an enum."""
        column = ColumnSchema.from_json(
            "state", {"type": {"key": {"type": "string", "enum": ["set", ["up", "down"]]}}}
        )
        assert column.kind == "enum"
        assert column.key.enum == ("up", "down")

    def test_native_types(self):
        """Native types follow the column kind."""
        schema = family_schema()
        assert types_equal(schema.column("Parent", "name").native_type(), str)
        assert types_equal(schema.column("Parent", "backup").native_type(), Optional[str])
        assert types_equal(schema.column("Parent", "backup").native_type(), str | None)
        assert types_equal(schema.column("Parent", "children").native_type(), list[str])
        assert types_equal(schema.column("Parent", "extras").native_type(), dict[str, str])

    def test_zero_values(self):
        """Zero values match the native type."""
        schema = family_schema()
        assert schema.column("Parent", "name").zero_value() == ""
        assert schema.column("Parent", "count").zero_value() == 0
        assert schema.column("Parent", "backup").zero_value() is None
        assert schema.column("Parent", "children").zero_value() == []
        assert schema.column("Parent", "extras").zero_value() == {}

    def test_is_default(self):
        """Empty collections, zero atoms and None are defaults."""
        schema = family_schema()
        assert schema.column("Parent", "name").is_default("")
        assert not schema.column("Parent", "name").is_default("p")
        assert schema.column("Parent", "children").is_default([])
        assert schema.column("Parent", "backup").is_default(None)
        assert not schema.column("Parent", "backup").is_default(C1)
        assert schema.column("Parent", "_uuid").is_default("00000000-0000-0000-0000-000000000000")

    def test_check_native(self):
        """check_native accepts only the native shape."""
        schema = family_schema()
        assert check_native(schema.column("Parent", "extras"), {"a": "b"})
        assert not check_native(schema.column("Parent", "extras"), {"a": 1})
        assert check_native(schema.column("Parent", "backup"), None)
        assert not check_native(schema.column("Parent", "count"), True)

    def test_map_value(self):
        """Only map columns have a value type."""
        schema = family_schema()
        assert schema.column("Parent", "extras").map_value.type == "string"
        with pytest.raises(SchemaViolation):
            schema.column("Parent", "children").map_value


class TestDomain:
    """Tests for domain constraints."""

    def test_integer_range(self):
        """Integers outside the declared range are rejected."""
        column = family_schema().column("Parent", "count")
        check_domain(column, 1000)
        with pytest.raises(SchemaViolation, match="greater than maximum"):
            check_domain(column, 1001)
        with pytest.raises(SchemaViolation, match="less than minimum"):
            check_domain(column, -1)

    def test_enum_domain(self):
        """Enum values must be listed."""
        column = ColumnSchema.from_json(
            "state", {"type": {"key": {"type": "string", "enum": ["set", ["up", "down"]]}}}
        )
        check_domain(column, "up")
        with pytest.raises(SchemaViolation):
            check_domain(column, "sideways")

    def test_string_length(self):
        """String lengths are bounded."""
        column = ColumnSchema.from_json(
            "label", {"type": {"key": {"type": "string", "maxLength": 3}}}
        )
        with pytest.raises(SchemaViolation):
            check_domain(column, "abcd")


class TestValidateMutation:
    """Tests for mutation legality."""

    def test_map_insert_and_delete(self):
        """Maps accept insert of a map and delete by map or keys."""
        column = family_schema().column("Parent", "extras")
        validate_mutation(column, "insert", {"role": "x"})
        validate_mutation(column, "delete", {"role": "x"})
        validate_mutation(column, "delete", ["role"])

    def test_map_arithmetic_rejected(self):
        """Maps do not support arithmetic."""
        column = family_schema().column("Parent", "extras")
        with pytest.raises(InvalidMutation, match="only insert and delete"):
            validate_mutation(column, "+=", 1)

    def test_map_insert_wrong_value_type(self):
        """Map inserts must match the map type."""
        column = family_schema().column("Parent", "extras")
        with pytest.raises(InvalidMutation):
            validate_mutation(column, "insert", {"role": 1})

    def test_set_insert_single_and_list(self):
        """Sets accept one element or a list."""
        column = family_schema().column("Parent", "children")
        validate_mutation(column, "insert", C1)
        validate_mutation(column, "delete", [C1])

    def test_set_insert_wrong_element(self):
        """Set elements must have the key type."""
        column = family_schema().column("Parent", "children")
        with pytest.raises(InvalidMutation):
            validate_mutation(column, "insert", [1])

    def test_integer_arithmetic(self):
        """Integers accept every arithmetic mutator including modulo."""
        column = family_schema().column("Parent", "count")
        for mutator in ("+=", "-=", "*=", "/=", "%="):
            validate_mutation(column, mutator, 2)

    def test_integer_needs_int(self):
        """Integer arithmetic needs an int."""
        column = family_schema().column("Parent", "count")
        with pytest.raises(InvalidMutation, match="value must be int"):
            validate_mutation(column, "+=", 1.5)

    def test_real_rejects_modulo(self):
        """Reals do not support modulo."""
        column = ColumnSchema.from_json("ratio", {"type": "real"})
        validate_mutation(column, "*=", 2)
        with pytest.raises(InvalidMutation):
            validate_mutation(column, "%=", 2.0)

    def test_atomic_insert_rejected(self):
        """insert applies to sets and maps only."""
        column = family_schema().column("Parent", "name")
        with pytest.raises(InvalidMutation):
            validate_mutation(column, "insert", "x")

    def test_string_arithmetic_rejected(self):
        """Strings do not support arithmetic."""
        column = family_schema().column("Parent", "name")
        with pytest.raises(InvalidMutation):
            validate_mutation(column, "+=", "x")

    def test_enum_rejected(self):
        """Enums do not support mutation."""
        column = ColumnSchema.from_json(
            "state", {"type": {"key": {"type": "string", "enum": ["set", ["up", "down"]]}}}
        )
        with pytest.raises(InvalidMutation, match="enums"):
            validate_mutation(column, "+=", "up")

    def test_immutable_rejected(self):
        """Immutable columns cannot be mutated."""
        column = family_schema().column("Parent", "created")
        with pytest.raises(InvalidMutation, match="not mutable"):
            validate_mutation(column, "insert", "x")

    def test_unknown_mutator(self):
        """Unknown mutators are rejected."""
        column = family_schema().column("Parent", "count")
        with pytest.raises(InvalidMutation, match="unknown mutator"):
            validate_mutation(column, "^=", 1)


class TestValidateCondition:
    """Tests for condition legality."""

    def test_equality_on_any_column(self):
        """Equality applies to every column kind."""
        schema = family_schema()
        validate_condition(schema.column("Parent", "name"), "==", "p")
        validate_condition(schema.column("Parent", "extras"), "!=", {"a": "b"})
        validate_condition(schema.column("Parent", "children"), "includes", [C1])

    def test_ordering_needs_numeric(self):
        """Ordering functions apply to numeric columns only."""
        schema = family_schema()
        validate_condition(schema.column("Parent", "count"), "<", 3)
        with pytest.raises(InvalidCondition, match="numeric"):
            validate_condition(schema.column("Parent", "name"), "<", "p")

    def test_value_type_checked(self):
        """Values must have the column's native type."""
        with pytest.raises(InvalidCondition):
            validate_condition(family_schema().column("Parent", "count"), "==", "3")

    def test_unknown_function(self):
        """Unknown functions are rejected."""
        with pytest.raises(InvalidCondition, match="unknown function"):
            validate_condition(family_schema().column("Parent", "count"), "~=", 3)
