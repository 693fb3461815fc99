"""
Error types for the OVSDB SDK.

This module defines all exception types raised by the SDK, grouped so that
callers can catch a whole family at once:
- OvsdbError: Base exception
- MappingError: Local type and mapping errors (raised before any wire traffic)
- CacheError: Table cache errors
- ReferentialError: Reference integrity and constraint errors
- TransactionError: Per-operation errors mirrored from the server
- ConnectionError: Connection lifecycle errors

Invariants:
    - All errors inherit from OvsdbError
    - Errors include context for debugging in ``details``
    - Server error strings map to exactly one TransactionError subclass
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence

if TYPE_CHECKING:
    from .notation import Operation, OperationResult


class OvsdbError(Exception):
    """Base exception for all OVSDB SDK errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    code_default = "OVSDB_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.code_default
        self.details = details or {}


# ---------------------------------------------------------------------------
# Type and mapping errors
# ---------------------------------------------------------------------------


class MappingError(OvsdbError):
    """Base class for local type and mapping errors."""

    code_default = "MAPPING_ERROR"


class TypeMismatch(MappingError):
    """A value's shape does not match the column type."""

    code_default = "TYPE_MISMATCH"

    def __init__(
        self,
        message: str,
        expected: Optional[str] = None,
        got: Any = None,
    ) -> None:
        super().__init__(
            message,
            details={"expected": expected, "got": repr(got)},
        )
        self.expected = expected
        self.got = got


class WrongType(TypeMismatch):
    """A caller passed an object of the wrong Python type to an API call."""

    code_default = "WRONG_TYPE"

    def __init__(self, where: str, expected: str, got: Any) -> None:
        super().__init__(
            f"Wrong type ({where}): expected {expected} but got {got!r} ({type(got).__name__})",
            expected=expected,
            got=got,
        )
        self.where = where


class ConversionOutOfRange(MappingError):
    """A numeric coercion would lose information."""

    code_default = "CONVERSION_OUT_OF_RANGE"

    def __init__(self, value: Any, kind: str) -> None:
        super().__init__(
            f"Value {value!r} cannot be represented exactly as {kind}",
            details={"value": repr(value), "kind": kind},
        )
        self.value = value
        self.kind = kind


class UnknownTable(MappingError):
    """Table is not present in the schema or the model."""

    code_default = "UNKNOWN_TABLE"

    def __init__(self, table: str, message: Optional[str] = None) -> None:
        super().__init__(message or f"Table '{table}' not found", details={"table": table})
        self.table = table


class UnknownColumn(MappingError):
    """Column is not present in the table schema or in the model."""

    code_default = "UNKNOWN_COLUMN"

    def __init__(self, table: str, column: str, message: Optional[str] = None) -> None:
        super().__init__(
            message or f"Column '{column}' not found in table '{table}'",
            details={"table": table, "column": column},
        )
        self.table = table
        self.column = column


class ColumnOmitted(UnknownColumn):
    """Column was tagged omit_unsupported and is missing from the runtime schema."""

    code_default = "COLUMN_OMITTED"

    def __init__(self, table: str, column: str) -> None:
        super().__init__(
            table,
            column,
            f"Column '{column}' of table '{table}' is not available in the runtime schema",
        )


class SchemaViolation(MappingError):
    """A model or value violates the database schema."""

    code_default = "SCHEMA_VIOLATION"


class IndexUnavailable(MappingError):
    """No index of the table can be populated from the model."""

    code_default = "INDEX_UNAVAILABLE"

    def __init__(self, table: str) -> None:
        super().__init__(
            f"Failed to find a valid index for table '{table}': "
            "no index has all of its fields populated",
            details={"table": table},
        )
        self.table = table


class InvalidMutation(MappingError):
    """Mutator or value is not legal for the column."""

    code_default = "INVALID_MUTATION"

    def __init__(self, column: str, mutator: str, reason: str) -> None:
        super().__init__(
            f"Invalid mutation '{mutator}' on column '{column}': {reason}",
            details={"column": column, "mutator": mutator},
        )
        self.column = column
        self.mutator = mutator
        self.reason = reason


class InvalidCondition(MappingError):
    """Condition function or value is not legal for the column."""

    code_default = "INVALID_CONDITION"

    def __init__(self, column: str, function: str, reason: str) -> None:
        super().__init__(
            f"Invalid condition '{function}' on column '{column}': {reason}",
            details={"column": column, "function": function},
        )
        self.column = column
        self.function = function
        self.reason = reason


class InvalidFieldReference(MappingError):
    """A field selector does not name a tagged field of the given entity."""

    code_default = "INVALID_FIELD_REFERENCE"


class ModelNotRegistered(MappingError):
    """Entity type is not part of the client database model."""

    code_default = "MODEL_NOT_REGISTERED"

    def __init__(self, model_type: Any) -> None:
        name = getattr(model_type, "__name__", repr(model_type))
        super().__init__(
            f"Model type '{name}' is not registered in the database model",
            details={"model": name},
        )
        self.model_type = model_type


# ---------------------------------------------------------------------------
# Cache errors
# ---------------------------------------------------------------------------


class CacheError(OvsdbError):
    """Base class for table cache errors."""

    code_default = "CACHE_ERROR"


class NotFound(CacheError):
    """Object or table was not found in the cache."""

    code_default = "NOT_FOUND"

    def __init__(self, message: str = "object not found", table: Optional[str] = None) -> None:
        super().__init__(message, details={"table": table})
        self.table = table


class IndexClash(CacheError):
    """Two rows would share the same values of a unique index."""

    code_default = "INDEX_CLASH"

    def __init__(self, table: str, index: Sequence[str], new_uuid: str, existing_uuid: str) -> None:
        super().__init__(
            f"Index {list(index)} clash in table '{table}': "
            f"row {new_uuid} collides with existing row {existing_uuid}",
            details={
                "table": table,
                "index": list(index),
                "new_uuid": new_uuid,
                "existing_uuid": existing_uuid,
            },
        )
        self.table = table
        self.index = tuple(index)
        self.new_uuid = new_uuid
        self.existing_uuid = existing_uuid


class CacheInconsistent(CacheError):
    """An incoming update disagrees with the state held by the cache."""

    code_default = "CACHE_INCONSISTENT"

    def __init__(self, message: str, table: Optional[str] = None, uuid: Optional[str] = None) -> None:
        super().__init__(message, details={"table": table, "uuid": uuid})
        self.table = table
        self.uuid = uuid


class IllegalSequence(CacheError):
    """Two successive row operations cannot be combined."""

    code_default = "ILLEGAL_SEQUENCE"


class ReentrantAccess(CacheError):
    """A cache predicate called back into the SDK."""

    code_default = "REENTRANT_ACCESS"


# ---------------------------------------------------------------------------
# Transaction errors (mirrored from the server) and referential errors
# ---------------------------------------------------------------------------


class TransactionError(OvsdbError):
    """Base class for errors reported by the server for one operation.

    Attributes:
        operation: The operation that caused the error, when known
        server_details: The server's ``details`` string
    """

    code_default = "TRANSACTION_ERROR"
    server_error = ""

    def __init__(
        self,
        message: Optional[str] = None,
        operation: Optional[Operation] = None,
        server_details: str = "",
    ) -> None:
        message = message or self.server_error or "transaction error"
        if server_details:
            message = f"{message}: {server_details}"
        super().__init__(
            message,
            details={
                "operation": operation.to_dict() if operation is not None else None,
                "server_details": server_details,
            },
        )
        self.operation = operation
        self.server_details = server_details


class ReferentialError(TransactionError):
    """Base class for reference integrity and constraint errors."""

    code_default = "REFERENTIAL_ERROR"


class ReferentialIntegrityViolation(ReferentialError):
    """A strong reference points to a row that does not exist."""

    code_default = "REFERENTIAL_INTEGRITY_VIOLATION"
    server_error = "referential integrity violation"


class ConstraintViolation(ReferentialError):
    """A column violates its cardinality or required-value constraints."""

    code_default = "CONSTRAINT_VIOLATION"
    server_error = "constraint violation"


class DuplicateUUIDName(TransactionError):
    """The same uuid-name is bound to two different rows."""

    code_default = "DUPLICATE_UUID_NAME"
    server_error = "duplicate uuid-name"


class DomainError(TransactionError):
    """A value is outside the column's domain."""

    code_default = "DOMAIN_ERROR"
    server_error = "domain error"


class RangeError(TransactionError):
    """An arithmetic mutation produced an out of range value."""

    code_default = "RANGE_ERROR"
    server_error = "range error"


class ResourcesExhausted(TransactionError):
    """The server ran out of resources."""

    code_default = "RESOURCES_EXHAUSTED"
    server_error = "resources exhausted"


class TimedOut(TransactionError):
    """A wait operation or a blocking call deadline expired."""

    code_default = "TIMED_OUT"
    server_error = "timed out"


class NotSupported(TransactionError):
    """The server does not support the requested operation."""

    code_default = "NOT_SUPPORTED"
    server_error = "not supported"


class Aborted(TransactionError):
    """The transaction was aborted by an abort operation."""

    code_default = "ABORTED"
    server_error = "aborted"


class NotOwner(TransactionError):
    """The client does not own the lock required by the transaction."""

    code_default = "NOT_OWNER"
    server_error = "not owner"


class IOError(TransactionError):
    """The server failed to commit the transaction to disk."""

    code_default = "IO_ERROR"
    server_error = "I/O error"


class ServerError(TransactionError):
    """Catch-all for server errors without a dedicated type."""

    code_default = "SERVER_ERROR"


_SERVER_ERRORS: Dict[str, type] = {
    cls.server_error: cls
    for cls in (
        ReferentialIntegrityViolation,
        ConstraintViolation,
        DuplicateUUIDName,
        DomainError,
        RangeError,
        ResourcesExhausted,
        TimedOut,
        NotSupported,
        Aborted,
        NotOwner,
        IOError,
    )
}


def error_from_result(
    operation: Optional[Operation], result: OperationResult
) -> Optional[TransactionError]:
    """Map an operation result to its typed error, or None if it succeeded."""
    if not result.error:
        return None
    cls = _SERVER_ERRORS.get(result.error)
    if cls is None:
        return ServerError(result.error, operation=operation, server_details=result.details)
    return cls(operation=operation, server_details=result.details)


def check_operation_results(
    results: Sequence[OperationResult],
    operations: Sequence[Operation],
) -> List[TransactionError]:
    """Collect per-operation errors of a transact reply.

    Args:
        results: Results returned by the server
        operations: Operations that were submitted

    Returns:
        One error per failed operation (empty when all succeeded)

    Raises:
        TransactionError: If the reply does not line up with the operations
            or the server reported a commit failure
    """
    if len(results) < len(operations):
        raise TransactionError(
            f"server returned {len(results)} results for {len(operations)} operations"
        )

    errors: List[TransactionError] = []
    for i, result in enumerate(results):
        operation = operations[i] if i < len(operations) else None
        err = error_from_result(operation, result)
        if err is None:
            continue
        if operation is None:
            # An extra trailing result reports a failure to commit
            raise err
        errors.append(err)
    return errors


# ---------------------------------------------------------------------------
# Connection errors
# ---------------------------------------------------------------------------


class ConnectionError(OvsdbError):
    """Failed to connect to or talk with the OVSDB server.

    Raised when:
    - Server is unreachable
    - The connection drops while a call is pending
    - A cluster member is not the leader and leader-only is requested
    """

    code_default = "CONNECTION_ERROR"

    def __init__(self, message: str, endpoint: Optional[str] = None) -> None:
        super().__init__(message, details={"endpoint": endpoint})
        self.endpoint = endpoint


class NotConnected(ConnectionError):
    """The client is not connected."""

    code_default = "NOT_CONNECTED"

    def __init__(self, message: str = "not connected", endpoint: Optional[str] = None) -> None:
        super().__init__(message, endpoint=endpoint)


class Cancelled(ConnectionError):
    """A blocking call was cancelled by its cancellation token."""

    code_default = "CANCELLED"


class ReconnectFailed(ConnectionError):
    """Automatic reconnection gave up."""

    code_default = "RECONNECT_FAILED"


def combine_errors(errors: Sequence[Exception], msg: str) -> Optional[Exception]:
    """Fold several errors into one.

    Returns None for no errors, the error itself for exactly one, and a
    SchemaViolation listing every message otherwise.
    """
    if not errors:
        return None
    if len(errors) == 1:
        return errors[0]
    combined = ". ".join(str(e) for e in errors)
    return SchemaViolation(f"{msg}: {combined}", details={"errors": [str(e) for e in errors]})
