"""
OVSDB client.

Client ties the pieces together: it dials an endpoint, fetches the schema,
builds the DatabaseModel and TableCache, issues RPCs and feeds monitor
notifications into the cache.

Example:
    >>> model = ClientDBModel("Open_vSwitch", {"Bridge": Bridge})
    >>> options = ClientOptions.build(with_endpoint("tcp:127.0.0.1:6641"))
    >>> async with Client(model, options) as client:
    ...     await client.monitor_all()
    ...     ops = client.api().create(Bridge(uuid="br", name="br0"))
    ...     results = await client.transact(*ops)

Invariants:
    - Initial monitor rows are applied before any notification of that monitor
    - A cache error drops every monitor and rebuilds the cache from scratch;
      readers never observe a partially rebuilt cache
    - After reconnecting every monitor is re-established under its old id

How to change safely:
    - Notifications are applied synchronously in the transport's reader;
      do not await inside _handle_notification
    - New RPCs go through _rpc() so deadlines and cancellation apply
"""

from __future__ import annotations

import asyncio
import logging
import uuid as uuidlib
from dataclasses import dataclass, field
from typing import Any, Callable

from ._jsonrpc import JsonRpcConnection
from .api import API
from .cache import TableCache
from .config import ClientOptions, Endpoint
from .errors import (
    ConnectionError,
    NotConnected,
    OvsdbError,
    ReconnectFailed,
    ServerError,
    TimedOut,
    check_operation_results,
)
from .mapper import Info
from .model import ClientDBModel, DatabaseModel
from .named_uuid import expand_named_uuids
from .notation import MonitorRequest, Operation, OperationResult
from .schema import DatabaseSchema

logger = logging.getLogger(__name__)

SERVER_DATABASE = "_Server"

UpdateBatch = dict[str, dict[str, dict[str, Any]]]


@dataclass
class TableMonitor:
    """Monitor selection for one table.

    Attributes:
        model: Registered entity type
        fields: Attribute names to monitor (empty = every modeled column)
    """

    model: type
    fields: tuple[str, ...] = ()


def with_table(model: type, *fields: str) -> TableMonitor:
    return TableMonitor(model=model, fields=tuple(fields))


@dataclass(frozen=True)
class MonitorCookie:
    """Identifies an established monitor."""

    database: str
    id: str


@dataclass
class _Monitor:
    cookie: MonitorCookie
    requests: dict[str, MonitorRequest]
    # None until the server told us which dialect it speaks
    conditional: bool | None = None
    tables: list[str] = field(default_factory=list)


class Client:
    """Asynchronous OVSDB client with a replicated table cache.

    Args:
        client_model: Tables and entity types the application uses
        options: Connection options
        on_disconnect: Called once the connection is gone for good
        on_lock: Called with ("locked" | "stolen", lock_id) on lock notifications
    """

    def __init__(
        self,
        client_model: ClientDBModel,
        options: ClientOptions | None = None,
        *,
        on_disconnect: Callable[[], None] | None = None,
        on_lock: Callable[[str, str], None] | None = None,
    ) -> None:
        self._client_model = client_model
        self._options = options or ClientOptions.build()
        self._on_lock = on_lock
        self._disconnect_callbacks: list[Callable[[], None]] = []
        if on_disconnect is not None:
            self._disconnect_callbacks.append(on_disconnect)

        self._conn: JsonRpcConnection | None = None
        self._schema: DatabaseSchema | None = None
        self._db_model: DatabaseModel | None = None
        self._cache: TableCache | None = None

        self._monitors: dict[str, _Monitor] = {}
        self._deferred: dict[str, list[UpdateBatch]] = {}
        self._tasks: list[asyncio.Task] = []
        self._resync_task: asyncio.Task | None = None
        self._closing = False
        self.reconnect_error: ReconnectFailed | None = None

    async def __aenter__(self) -> Client:
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    # -- properties ---------------------------------------------------------

    @property
    def options(self) -> ClientOptions:
        return self._options

    @property
    def is_connected(self) -> bool:
        return self._conn is not None and not self._conn.is_closed

    @property
    def endpoint(self) -> str | None:
        return self._conn.endpoint if self._conn is not None else None

    @property
    def schema(self) -> DatabaseSchema:
        if self._schema is None:
            raise NotConnected("schema is not known until the client connects")
        return self._schema

    @property
    def database_model(self) -> DatabaseModel:
        if self._db_model is None:
            raise NotConnected("database model is not known until the client connects")
        return self._db_model

    @property
    def cache(self) -> TableCache:
        if self._cache is None:
            raise NotConnected("cache is not available until the client connects")
        return self._cache

    def api(self) -> API:
        """Query and mutation front-end over the cache."""
        return API(self.cache)

    def add_disconnect_callback(self, callback: Callable[[], None]) -> None:
        self._disconnect_callbacks.append(callback)

    # -- lifecycle ----------------------------------------------------------

    async def connect(self) -> None:
        """Dial the first healthy endpoint and start background tasks.

        Raises:
            ConnectionError: If no endpoint accepted the connection
        """
        if self.is_connected:
            return
        self._closing = False
        self.reconnect_error = None
        conn = await self._dial()
        self.cache.event_processor.start()
        self._start_background(conn)

    async def disconnect(self) -> None:
        """Close the connection without reconnecting."""
        self._closing = True
        for task in self._tasks:
            task.cancel()
        if self._resync_task is not None:
            self._resync_task.cancel()
        for task in [*self._tasks, *([self._resync_task] if self._resync_task else [])]:
            try:
                await task
            except (asyncio.CancelledError, OvsdbError):
                pass
        self._tasks = []
        self._resync_task = None
        conn, self._conn = self._conn, None
        if conn is not None:
            await conn.close()
            logger.info("Disconnected from OVSDB server", extra={"endpoint": conn.endpoint})
        self._monitors.clear()
        self._deferred.clear()

    async def close(self) -> None:
        """Disconnect and stop the event dispatcher."""
        await self.disconnect()
        if self._cache is not None:
            self._cache.event_processor.stop()

    async def _dial(self) -> JsonRpcConnection:
        errors: list[OvsdbError] = []
        for endpoint in self._options.parsed_endpoints():
            try:
                conn = await JsonRpcConnection.open(
                    endpoint,
                    self._options.tls,
                    self._handle_notification,
                    timeout=self._options.request_timeout,
                )
            except ConnectionError as e:
                logger.warning("Endpoint unreachable", extra={"endpoint": str(endpoint)})
                errors.append(e)
                continue
            try:
                await self._handshake(conn, endpoint)
            except OvsdbError as e:
                logger.warning(
                    "Endpoint rejected: %s", e.message, extra={"endpoint": str(endpoint)}
                )
                await conn.close()
                errors.append(e)
                continue
            self._conn = conn
            logger.info(
                "Connected to OVSDB server",
                extra={"endpoint": str(endpoint), "database": self._client_model.name},
            )
            return conn
        endpoints = ", ".join(self._options.endpoints)
        raise ConnectionError(f"Failed to connect to any of: {endpoints}") from (
            errors[-1] if errors else None
        )

    async def _handshake(self, conn: JsonRpcConnection, endpoint: Endpoint) -> None:
        reply = await conn.call(
            "get_schema", [self._client_model.name], timeout=self._options.request_timeout
        )
        schema = DatabaseSchema.from_dict(reply)
        if self._options.leader_only:
            await self._check_leader(conn, endpoint)
        if self._schema is not None and self._schema.version != schema.version:
            logger.warning(
                "Schema version changed from %s to %s across reconnect",
                self._schema.version,
                schema.version,
                extra={"database": schema.name},
            )
        if self._cache is None:
            self._db_model = DatabaseModel(self._client_model, schema)
            self._cache = TableCache(self._db_model, self._options.event_buffer_size)
        self._schema = schema

    async def _check_leader(self, conn: JsonRpcConnection, endpoint: Endpoint) -> None:
        select = Operation(
            op="select",
            table="Database",
            where=[["name", "==", self._client_model.name]],
            columns=["name", "model", "leader", "connected"],
        )
        try:
            reply = await conn.call(
                "transact", [SERVER_DATABASE, select.to_dict()], timeout=self._options.request_timeout
            )
        except ServerError as e:
            # Servers without the _Server database are never clustered
            logger.debug("No _Server database: %s", e.message, extra={"endpoint": str(endpoint)})
            return
        result = OperationResult.from_dict(reply[0] if reply else None)
        if result.error:
            raise ConnectionError(f"leader check failed: {result.error}", endpoint=str(endpoint))
        if not result.rows:
            raise ConnectionError(
                f"database '{self._client_model.name}' is not served", endpoint=str(endpoint)
            )
        row = result.rows[0]
        if row.get("model") == "clustered" and not (row.get("leader") and row.get("connected")):
            raise ConnectionError("server is not the cluster leader", endpoint=str(endpoint))

    def _start_background(self, conn: JsonRpcConnection) -> None:
        self._tasks = [t for t in self._tasks if not t.done()]
        self._tasks.append(asyncio.ensure_future(self._watch(conn)))
        if self._options.inactivity_timeout:
            self._tasks.append(asyncio.ensure_future(self._keepalive(conn)))

    async def _keepalive(self, conn: JsonRpcConnection) -> None:
        interval = self._options.inactivity_timeout
        if not interval:
            return
        loop = asyncio.get_running_loop()
        while not conn.is_closed:
            idle = loop.time() - conn.last_activity
            if idle < interval:
                await asyncio.sleep(interval - idle)
                continue
            try:
                await conn.call("echo", ["keepalive"], timeout=interval)
            except (TimedOut, NotConnected, ServerError):
                logger.warning("Inactivity probe failed", extra={"endpoint": conn.endpoint})
                await conn.close()
                return

    async def _watch(self, conn: JsonRpcConnection) -> None:
        await conn.wait_closed()
        if self._closing or conn is not self._conn:
            return
        self._conn = None
        logger.warning("Connection lost", extra={"endpoint": conn.endpoint})
        reconnect = self._options.reconnect
        if reconnect is None or not reconnect.enabled:
            self._notify_disconnected()
            return
        await self._reconnect()

    async def _reconnect(self) -> None:
        reconnect = self._options.reconnect
        if reconnect is None:
            raise ReconnectFailed("reconnection is not configured")
        delay = reconnect.delays()
        attempt = 0
        while not self._closing:
            logger.info("Reconnecting", extra={"attempt": attempt + 1})
            conn = None
            try:
                conn = await self._dial()
                await self._restore_monitors(conn)
            except OvsdbError as e:
                if conn is not None:
                    self._conn = None
                    await conn.close()
                attempt += 1
                if reconnect.max_attempts is not None and attempt >= reconnect.max_attempts:
                    self.reconnect_error = ReconnectFailed(
                        f"gave up after {attempt} attempts: {e.message}", endpoint=e.details.get("endpoint")
                    )
                    logger.error("Reconnect failed", extra={"attempt": attempt})
                    self._notify_disconnected()
                    return
                await asyncio.sleep(delay(attempt - 1))
                continue
            self._start_background(conn)
            logger.info("Reconnected", extra={"endpoint": conn.endpoint})
            return

    def _notify_disconnected(self) -> None:
        for callback in list(self._disconnect_callbacks):
            try:
                callback()
            except Exception:
                logger.exception("Disconnect callback failed")

    def _ensure_connected(self) -> JsonRpcConnection:
        if self._conn is None or self._conn.is_closed:
            raise NotConnected()
        return self._conn

    async def _rpc(
        self,
        method: str,
        params: list[Any],
        timeout: float | None = None,
        cancel: asyncio.Event | None = None,
    ) -> Any:
        conn = self._ensure_connected()
        if timeout is None:
            timeout = self._options.request_timeout
        return await conn.call(method, params, timeout=timeout, cancel=cancel)

    # -- RPCs ---------------------------------------------------------------

    async def list_dbs(self, *, timeout: float | None = None, cancel: asyncio.Event | None = None) -> list[str]:
        """Names of the databases served."""
        return list(await self._rpc("list_dbs", [], timeout, cancel))

    async def get_schema(
        self, name: str, *, timeout: float | None = None, cancel: asyncio.Event | None = None
    ) -> DatabaseSchema:
        """Schema of database name."""
        return DatabaseSchema.from_dict(await self._rpc("get_schema", [name], timeout, cancel))

    async def echo(self, *args: Any, timeout: float | None = None, cancel: asyncio.Event | None = None) -> list[Any]:
        """Round trip args through the server."""
        return await self._rpc("echo", list(args), timeout, cancel)

    async def transact(
        self,
        *operations: Operation,
        timeout: float | None = None,
        cancel: asyncio.Event | None = None,
    ) -> list[OperationResult]:
        """Submit operations as one transaction.

        Per-operation failures do not raise; inspect each result's error or
        pass the results to check_operation_results().

        Args:
            *operations: Operations built with the API
            timeout: Deadline in seconds (defaults to options.request_timeout)
            cancel: Abandons the request when set

        Returns:
            One result per operation, plus a trailing one if the commit failed

        Raises:
            UnknownTable: If an operation names a table missing from the schema
            DuplicateUUIDName: If client side uuids bind a name twice
            TransactionError: If the server rejected the whole batch
            TimedOut: If the deadline expires
            Cancelled: If cancel is set first
        """
        self._ensure_connected()
        if not operations:
            return []
        self.schema.validate_operations(*operations)
        ops = list(operations)
        if self._options.client_side_uuids:
            ops = expand_named_uuids(ops, self.schema)
        reply = await self._rpc(
            "transact", [self.schema.name, *(op.to_dict() for op in ops)], timeout, cancel
        )
        if not isinstance(reply, list):
            raise ServerError(f"malformed transact reply: {reply!r}")
        results = [OperationResult.from_dict(r) for r in reply]
        errors = check_operation_results(results, ops)
        for err in errors:
            logger.debug("Operation failed: %s", err.message, extra={"database": self.schema.name})
        return results

    # -- locks --------------------------------------------------------------

    async def lock(self, lock_id: str, *, timeout: float | None = None, cancel: asyncio.Event | None = None) -> bool:
        """Request lock_id; True if it was granted immediately."""
        reply = await self._rpc("lock", [lock_id], timeout, cancel)
        return bool((reply or {}).get("locked"))

    async def steal(self, lock_id: str, *, timeout: float | None = None, cancel: asyncio.Event | None = None) -> bool:
        """Take lock_id from its current owner."""
        reply = await self._rpc("steal", [lock_id], timeout, cancel)
        return bool((reply or {}).get("locked"))

    async def unlock(self, lock_id: str, *, timeout: float | None = None, cancel: asyncio.Event | None = None) -> None:
        await self._rpc("unlock", [lock_id], timeout, cancel)

    # -- monitors -----------------------------------------------------------

    def _monitor_requests(self, tables: tuple[TableMonitor, ...]) -> dict[str, MonitorRequest]:
        db_model = self.database_model
        requests = {}
        for table_monitor in tables:
            table = db_model.table_name(table_monitor.model)
            info = Info(db_model.new_model(table), db_model.metadata_for_table(table))
            requests[table] = self.cache.mapper.new_monitor_request(info, *table_monitor.fields)
        return requests

    async def monitor_all(
        self, *, timeout: float | None = None, cancel: asyncio.Event | None = None
    ) -> MonitorCookie:
        """Monitor every modeled column of every modeled table."""
        tables = tuple(TableMonitor(model=t) for t in self.database_model.types().values())
        return await self.monitor(*tables, timeout=timeout, cancel=cancel)

    async def monitor(
        self,
        *tables: TableMonitor,
        monitor_id: str | None = None,
        timeout: float | None = None,
        cancel: asyncio.Event | None = None,
    ) -> MonitorCookie:
        """Start replicating tables into the cache.

        Tries the conditional (update2) dialect first and falls back to the
        legacy (update) dialect when the server does not know it.

        Raises:
            ModelNotRegistered: If a TableMonitor names an unknown type
            CacheError: If the initial rows cannot be applied
        """
        conn = self._ensure_connected()
        cookie = MonitorCookie(database=self.schema.name, id=monitor_id or str(uuidlib.uuid4()))
        if cookie.id in self._monitors:
            raise OvsdbError(f"monitor id '{cookie.id}' already in use")
        requests = self._monitor_requests(tables)
        state = _Monitor(cookie=cookie, requests=requests, tables=list(requests))
        self._deferred[cookie.id] = []
        try:
            initial = await self._start_monitor(conn, state, timeout, cancel)
            self.cache.mark_monitored(state.tables)
            self.cache.apply_updates(initial)
        except BaseException:
            self._deferred.pop(cookie.id, None)
            raise
        self._monitors[cookie.id] = state
        self._flush_deferred(cookie.id)
        logger.info(
            "Monitor established",
            extra={"monitor_id": cookie.id, "tables": state.tables, "conditional": state.conditional},
        )
        return cookie

    async def monitor_cancel(
        self, cookie: MonitorCookie, *, timeout: float | None = None, cancel: asyncio.Event | None = None
    ) -> None:
        """Stop a monitor; cached rows are kept."""
        if cookie.id not in self._monitors:
            raise NotConnected(f"unknown monitor '{cookie.id}'")
        await self._rpc("monitor_cancel", [cookie.id], timeout, cancel)
        self._monitors.pop(cookie.id, None)
        self._deferred.pop(cookie.id, None)

    async def _start_monitor(
        self,
        conn: JsonRpcConnection,
        state: _Monitor,
        timeout: float | None = None,
        cancel: asyncio.Event | None = None,
    ) -> UpdateBatch:
        if timeout is None:
            timeout = self._options.request_timeout
        db = self.schema.name
        if state.conditional is not False:
            requests = {t: r.to_dict(conditional=True) for t, r in state.requests.items()}
            try:
                reply = await conn.call("monitor_cond", [db, state.cookie.id, requests], timeout, cancel)
            except ServerError as e:
                if "unknown method" not in e.message:
                    raise
                logger.info("Server lacks monitor_cond, using monitor", extra={"endpoint": conn.endpoint})
                state.conditional = False
            else:
                state.conditional = True
                return reply or {}
        requests = {t: r.to_dict() for t, r in state.requests.items()}
        reply = await conn.call("monitor", [db, state.cookie.id, requests], timeout, cancel)
        return reply or {}

    async def _restore_monitors(self, conn: JsonRpcConnection, cancel_first: bool = False) -> None:
        """Re-establish every monitor and rebuild the cache from their snapshots."""
        for monitor_id in self._monitors:
            self._deferred[monitor_id] = []
        snapshot: UpdateBatch = {}
        try:
            for monitor_id, state in self._monitors.items():
                if cancel_first:
                    try:
                        await conn.call("monitor_cancel", [monitor_id], self._options.request_timeout)
                    except ServerError as e:
                        logger.debug("monitor_cancel failed: %s", e.message, extra={"monitor_id": monitor_id})
                    # Anything received before the cancel reply belongs to the old stream
                    self._deferred[monitor_id] = []
                initial = await self._start_monitor(conn, state)
                for table, rows in initial.items():
                    snapshot.setdefault(table, {}).update(rows)
            self.cache.replace(snapshot)
        except BaseException:
            for monitor_id in self._monitors:
                self._deferred.pop(monitor_id, None)
            raise
        for monitor_id in list(self._monitors):
            self._flush_deferred(monitor_id)

    async def _resync(self) -> None:
        conn = self._conn
        if conn is None or conn.is_closed:
            # Reconnect restores the monitors
            return
        logger.info("Resynchronizing cache", extra={"endpoint": conn.endpoint})
        try:
            await self._restore_monitors(conn, cancel_first=True)
        except OvsdbError:
            logger.exception("Resynchronization failed, dropping connection")
            await conn.close()
        finally:
            self._resync_task = None

    # -- notifications ------------------------------------------------------

    def _flush_deferred(self, monitor_id: str) -> None:
        for updates in self._deferred.pop(monitor_id, []):
            self._apply(updates)

    def _apply(self, updates: UpdateBatch) -> None:
        try:
            self.cache.apply_updates(updates)
        except OvsdbError as e:
            # Undecodable values leave the cache as stale as a bad delta does
            logger.error(
                "Cache out of sync: %s",
                e.message,
                extra={"database": self.schema.name, "error": type(e).__name__},
            )
            self._schedule_resync()

    def _schedule_resync(self) -> None:
        if self._resync_task is not None:
            return
        for monitor_id in self._monitors:
            self._deferred.setdefault(monitor_id, [])
        self._resync_task = asyncio.ensure_future(self._resync())

    def _handle_notification(self, method: str, params: list[Any]) -> None:
        if method in ("update", "update2", "update3"):
            if len(params) < 2:
                logger.warning("Malformed %s notification", method)
                return
            monitor_id = params[0]
            updates = params[-1] or {}
            if monitor_id in self._deferred:
                self._deferred[monitor_id].append(updates)
                return
            if monitor_id not in self._monitors:
                logger.debug("Update for unknown monitor", extra={"monitor_id": monitor_id})
                return
            self._apply(updates)
        elif method in ("locked", "stolen"):
            lock_id = params[0] if params else ""
            logger.info("Lock %s", method, extra={"lock_id": lock_id})
            if self._on_lock is not None:
                self._on_lock(method, lock_id)
        else:
            logger.debug("Ignoring notification", extra={"rpc_method": method})
