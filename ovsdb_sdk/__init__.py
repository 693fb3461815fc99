"""
OVSDB Python SDK - Client library for OVSDB servers.

This SDK maps OVSDB tables onto Python dataclasses:
- Entity registration (ClientDBModel, column)
- A replicated, reference-aware table cache fed by monitors
- An API for reads and for building insert/update/mutate/delete operations
- Client for connecting, transacting and monitoring

Example:
    >>> from dataclasses import dataclass, field
    >>> from ovsdb_sdk import Client, ClientDBModel, ClientOptions, column, with_endpoint
    >>>
    >>> @dataclass
    ... class Bridge:
    ...     uuid: str = column("_uuid", default="")
    ...     name: str = column("name", default="")
    ...     external_ids: dict[str, str] = column("external_ids", default_factory=dict)
    >>>
    >>> model = ClientDBModel("Open_vSwitch", {"Bridge": Bridge})
    >>> async with Client(model, ClientOptions.build(with_endpoint("tcp:127.0.0.1:6640"))) as client:
    ...     await client.monitor_all()
    ...     ops = client.api().create(Bridge(uuid="br", name="br0"))
    ...     results = await client.transact(*ops)

Invariants:
    - Every row in the cache is reachable from a root table
    - All local validation happens before anything is sent

Version: 1.0.0
"""

__version__ = "1.0.0"

from .api import API, ConditionalAPI
from .cache import Event, EventHandler, EventHandlerFuncs, TableCache
from .client import Client, MonitorCookie, TableMonitor, with_table
from .conditions import Condition, Mutation
from .config import (
    ClientOptions,
    ClientSettings,
    ObservabilityConfig,
    ReconnectConfig,
    with_client_side_uuids,
    with_endpoint,
    with_inactivity_check,
    with_leader_only,
    with_reconnect,
    with_tls_config,
)
from .errors import (
    CacheError,
    CacheInconsistent,
    Cancelled,
    ConnectionError,
    ConstraintViolation,
    IndexClash,
    IndexUnavailable,
    InvalidCondition,
    InvalidMutation,
    MappingError,
    ModelNotRegistered,
    NotConnected,
    NotFound,
    OvsdbError,
    ReconnectFailed,
    ReferentialIntegrityViolation,
    TimedOut,
    TransactionError,
    TypeMismatch,
    UnknownColumn,
    UnknownTable,
)
from .logs import setup_logging
from .model import ClientDBModel, DatabaseModel, column, ref
from .notation import Operation, OperationResult
from .schema import DatabaseSchema

__all__ = [
    # Version
    "__version__",
    # Model
    "ClientDBModel",
    "DatabaseModel",
    "DatabaseSchema",
    "column",
    "ref",
    # Client
    "Client",
    "MonitorCookie",
    "TableMonitor",
    "with_table",
    "API",
    "ConditionalAPI",
    "Condition",
    "Mutation",
    "Operation",
    "OperationResult",
    # Cache
    "TableCache",
    "Event",
    "EventHandler",
    "EventHandlerFuncs",
    # Configuration
    "ClientOptions",
    "ClientSettings",
    "ObservabilityConfig",
    "ReconnectConfig",
    "with_client_side_uuids",
    "with_endpoint",
    "with_inactivity_check",
    "with_leader_only",
    "with_reconnect",
    "with_tls_config",
    "setup_logging",
    # Errors
    "OvsdbError",
    "MappingError",
    "TypeMismatch",
    "UnknownTable",
    "UnknownColumn",
    "IndexUnavailable",
    "InvalidMutation",
    "InvalidCondition",
    "ModelNotRegistered",
    "CacheError",
    "NotFound",
    "IndexClash",
    "CacheInconsistent",
    "ReferentialIntegrityViolation",
    "ConstraintViolation",
    "TransactionError",
    "TimedOut",
    "ConnectionError",
    "NotConnected",
    "Cancelled",
    "ReconnectFailed",
]
