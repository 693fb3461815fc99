"""
Wire notation for the OVSDB management protocol.

This module provides the JSON shapes exchanged with the server:
- Operation: One transact operation
- OperationResult: One entry of a transact reply
- MonitorRequest / MonitorSelect: Monitor arguments
- Helpers for conditions, mutations, uuid atoms and row updates

Wire values are plain JSON-compatible Python objects (str, int, float,
bool, list). Tagged forms are two element lists:
    ["uuid", "<36 char uuid>"], ["named-uuid", "<name>"],
    ["set", [...]], ["map", [[k, v], ...]]

Invariants:
    - A real uuid always matches UUID_RE; anything else is a placeholder
    - Operation.to_dict() omits unset members except "where" for select
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

UUID_RE = re.compile(r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$")
ZERO_UUID = "00000000-0000-0000-0000-000000000000"

OP_INSERT = "insert"
OP_SELECT = "select"
OP_UPDATE = "update"
OP_MUTATE = "mutate"
OP_DELETE = "delete"
OP_WAIT = "wait"
OP_COMMIT = "commit"
OP_ABORT = "abort"
OP_COMMENT = "comment"
OP_ASSERT = "assert"

# Condition functions
COND_LT = "<"
COND_LE = "<="
COND_EQ = "=="
COND_NE = "!="
COND_GT = ">"
COND_GE = ">="
COND_INCLUDES = "includes"
COND_EXCLUDES = "excludes"

CONDITION_FUNCTIONS = (
    COND_LT,
    COND_LE,
    COND_EQ,
    COND_NE,
    COND_GT,
    COND_GE,
    COND_INCLUDES,
    COND_EXCLUDES,
)

# Mutators
MUTATE_ADD = "+="
MUTATE_SUBTRACT = "-="
MUTATE_MULTIPLY = "*="
MUTATE_DIVIDE = "/="
MUTATE_MODULO = "%="
MUTATE_INSERT = "insert"
MUTATE_DELETE = "delete"

MUTATORS = (
    MUTATE_ADD,
    MUTATE_SUBTRACT,
    MUTATE_MULTIPLY,
    MUTATE_DIVIDE,
    MUTATE_MODULO,
    MUTATE_INSERT,
    MUTATE_DELETE,
)


def is_uuid(value: Any) -> bool:
    """Whether value is a canonical 36 character uuid string."""
    return isinstance(value, str) and UUID_RE.match(value) is not None


def is_named_uuid(value: Any) -> bool:
    """Whether value is a transaction-local placeholder."""
    return isinstance(value, str) and value != "" and not is_uuid(value)


def uuid_atom(value: str) -> list[str]:
    """Encode a uuid string as ["uuid", v] or ["named-uuid", v]."""
    if is_uuid(value):
        return ["uuid", value]
    return ["named-uuid", value]


def is_uuid_atom(value: Any) -> bool:
    return (
        isinstance(value, list)
        and len(value) == 2
        and value[0] in ("uuid", "named-uuid")
        and isinstance(value[1], str)
    )


def is_tagged(value: Any, tag: str) -> bool:
    return isinstance(value, list) and len(value) == 2 and value[0] == tag


def new_condition(column: str, function: str, value: Any) -> list[Any]:
    """Build a wire condition [column, function, value]."""
    return [column, function, value]


def new_mutation(column: str, mutator: str, value: Any) -> list[Any]:
    """Build a wire mutation [column, mutator, value]."""
    return [column, mutator, value]


@dataclass
class Operation:
    """A transact operation.

    Attributes:
        op: Operation name (insert, select, update, mutate, delete, wait, ...)
        table: Target table
        row: Row for insert/update
        rows: Rows for wait
        columns: Columns for select/wait
        mutations: Wire mutations for mutate
        timeout: Timeout for wait
        where: Wire conditions
        until: Comparison for wait
        uuid_name: Named-uuid placeholder for insert
        uuid: Pre-allocated real uuid for insert
    """

    op: str
    table: str = ""
    row: dict[str, Any] | None = None
    rows: list[dict[str, Any]] | None = None
    columns: list[str] | None = None
    mutations: list[list[Any]] | None = None
    timeout: int | None = None
    where: list[list[Any]] | None = None
    until: str | None = None
    uuid_name: str | None = None
    uuid: str | None = None
    comment: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to the wire JSON object."""
        result: dict[str, Any] = {"op": self.op}
        if self.table:
            result["table"] = self.table
        if self.row is not None:
            result["row"] = self.row
        if self.rows is not None:
            result["rows"] = self.rows
        if self.columns is not None:
            result["columns"] = self.columns
        if self.mutations is not None:
            result["mutations"] = self.mutations
        if self.timeout is not None:
            result["timeout"] = self.timeout
        if self.where is not None:
            result["where"] = self.where
        elif self.op in (OP_SELECT, OP_UPDATE, OP_MUTATE, OP_DELETE, OP_WAIT):
            # "where" is required for these; an empty list matches every row
            result["where"] = []
        if self.until is not None:
            result["until"] = self.until
        if self.uuid_name:
            result["uuid-name"] = self.uuid_name
        if self.uuid:
            result["uuid"] = self.uuid
        if self.comment is not None:
            result["comment"] = self.comment
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Operation:
        return cls(
            op=data["op"],
            table=data.get("table", ""),
            row=data.get("row"),
            rows=data.get("rows"),
            columns=data.get("columns"),
            mutations=data.get("mutations"),
            timeout=data.get("timeout"),
            where=data.get("where"),
            until=data.get("until"),
            uuid_name=data.get("uuid-name"),
            uuid=data.get("uuid"),
            comment=data.get("comment"),
        )


@dataclass
class OperationResult:
    """Result of one operation within a transact reply.

    Attributes:
        count: Rows affected (update, mutate, delete)
        error: Server error string, empty on success
        details: Server error details
        uuid: Identifier of an inserted row
        rows: Rows returned by select
    """

    count: int = 0
    error: str = ""
    details: str = ""
    uuid: str = ""
    rows: list[dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> OperationResult:
        if not data:
            return cls()
        uuid = data.get("uuid", "")
        if is_uuid_atom(uuid):
            uuid = uuid[1]
        return cls(
            count=data.get("count", 0),
            error=data.get("error") or "",
            details=data.get("details") or "",
            uuid=uuid,
            rows=data.get("rows") or [],
        )


@dataclass
class MonitorSelect:
    """Which kinds of changes a monitor reports. Unset means true."""

    initial: bool | None = None
    insert: bool | None = None
    delete: bool | None = None
    modify: bool | None = None

    def to_dict(self) -> dict[str, bool]:
        result = {}
        for name in ("initial", "insert", "delete", "modify"):
            value = getattr(self, name)
            if value is not None:
                result[name] = value
        return result

    @classmethod
    def all(cls) -> MonitorSelect:
        return cls(initial=True, insert=True, delete=True, modify=True)


@dataclass
class MonitorRequest:
    """Monitor request for one table."""

    columns: list[str] | None = None
    select: MonitorSelect | None = None
    where: list[list[Any]] | None = None

    def to_dict(self, conditional: bool = False) -> dict[str, Any]:
        result: dict[str, Any] = {}
        if self.columns is not None:
            result["columns"] = self.columns
        if self.select is not None:
            result["select"] = self.select.to_dict()
        if conditional and self.where is not None:
            result["where"] = self.where
        return result


def row_update_kind(update: dict[str, Any]) -> str:
    """Classify a row update of either monitor dialect.

    Returns one of "insert", "modify", "delete", or "empty" when both old and
    new (or every differential tag) are missing.
    """
    if any(tag in update for tag in ("initial", "insert", "modify", "delete")):
        if "initial" in update or "insert" in update:
            return "insert"
        if "modify" in update:
            return "modify"
        return "delete"
    old = update.get("old")
    new = update.get("new")
    if new and not old:
        return "insert"
    if old and not new:
        return "delete"
    if old and new:
        return "modify"
    return "empty"
