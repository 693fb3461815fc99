"""
Internal JSON-RPC 1.0 transport for the OVSDB SDK.

This module provides the low-level stream connection used by Client.
It is internal to the SDK and should not be used directly by users.

Messages are bare JSON values written back to back on one byte stream
(TCP, TLS or Unix socket); there is no length prefix, so the reader splits
the stream with an incremental JSON decoder.

Invariants:
    - Every request id is answered at most once
    - Pending calls fail with NotConnected when the stream closes
    - Server "echo" requests are answered without involving the client
"""

from __future__ import annotations

import asyncio
import codecs
import itertools
import json
import logging
import ssl
from typing import Any, Callable

from .config import SCHEME_SSL, SCHEME_UNIX, Endpoint
from .errors import Cancelled, ConnectionError, NotConnected, ServerError, TimedOut

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 65536

NotificationHandler = Callable[[str, list[Any]], None]


def _error_text(error: Any) -> tuple[str, str]:
    if isinstance(error, dict):
        return str(error.get("error", "server error")), str(error.get("details", "") or "")
    return str(error), ""


async def wait_with(
    future: asyncio.Future,
    timeout: float | None = None,
    cancel: asyncio.Event | None = None,
) -> Any:
    """Wait for future, honoring a deadline and a cancellation token.

    Raises:
        TimedOut: If the deadline expires first
        Cancelled: If cancel is set first
    """
    if cancel is not None and cancel.is_set():
        raise Cancelled("call cancelled before it was sent")
    waiters: set[asyncio.Future] = {future}
    cancel_task = None
    if cancel is not None:
        cancel_task = asyncio.ensure_future(cancel.wait())
        waiters.add(cancel_task)
    try:
        done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
    finally:
        if cancel_task is not None:
            cancel_task.cancel()
    if future in done:
        return future.result()
    if cancel_task is not None and cancel_task in done:
        raise Cancelled("call cancelled")
    raise TimedOut(f"no reply within {timeout}s")


class JsonRpcConnection:
    """One JSON-RPC session over an asyncio stream pair.

    Example:
        >>> conn = await JsonRpcConnection.open(Endpoint.parse("tcp:127.0.0.1:6641"))
        >>> await conn.call("list_dbs", [])
        ['Open_vSwitch', '_Server']
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        endpoint: str,
        on_notification: NotificationHandler | None = None,
    ) -> None:
        self._reader = reader
        self._writer = writer
        self._endpoint = endpoint
        self._on_notification = on_notification
        self._ids = itertools.count(1)
        self._pending: dict[int, asyncio.Future] = {}
        self._read_task: asyncio.Task | None = None
        self._closed = asyncio.Event()
        self._write_lock = asyncio.Lock()
        self.last_activity = asyncio.get_running_loop().time()

    @classmethod
    async def open(
        cls,
        endpoint: Endpoint,
        tls: ssl.SSLContext | None = None,
        on_notification: NotificationHandler | None = None,
        timeout: float | None = None,
    ) -> JsonRpcConnection:
        """Dial endpoint and start reading.

        Raises:
            ConnectionError: If the endpoint cannot be reached
        """
        try:
            if endpoint.scheme == SCHEME_UNIX:
                opening = asyncio.open_unix_connection(endpoint.path)
            else:
                opening = asyncio.open_connection(
                    endpoint.host,
                    endpoint.port,
                    ssl=tls if endpoint.scheme == SCHEME_SSL else None,
                )
            reader, writer = await asyncio.wait_for(opening, timeout)
        except (OSError, asyncio.TimeoutError) as e:
            raise ConnectionError(f"Failed to connect to {endpoint}: {e}", endpoint=str(endpoint)) from e
        conn = cls(reader, writer, str(endpoint), on_notification)
        conn._read_task = asyncio.ensure_future(conn._read_loop())
        logger.debug("Connected to %s", endpoint)
        return conn

    @property
    def endpoint(self) -> str:
        return self._endpoint

    @property
    def is_closed(self) -> bool:
        return self._closed.is_set()

    async def wait_closed(self) -> None:
        await self._closed.wait()

    async def call(
        self,
        method: str,
        params: list[Any],
        timeout: float | None = None,
        cancel: asyncio.Event | None = None,
    ) -> Any:
        """Send a request and wait for its reply.

        Raises:
            NotConnected: If the stream is closed before the reply arrives
            ServerError: If the server answers with an error
            TimedOut: If timeout expires first
            Cancelled: If cancel is set first
        """
        if self.is_closed:
            raise NotConnected(endpoint=self._endpoint)
        if cancel is not None and cancel.is_set():
            raise Cancelled("call cancelled before it was sent")
        request_id = next(self._ids)
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self._send({"method": method, "params": params, "id": request_id})
            return await wait_with(future, timeout, cancel)
        except (TimedOut, Cancelled):
            # Only transact requests can be abandoned server side
            if method == "transact" and not self.is_closed:
                try:
                    await self._send({"method": "cancel", "params": [request_id], "id": None})
                except NotConnected:
                    logger.debug("Connection closed before cancel was sent", extra={"rpc_id": request_id})
            raise
        finally:
            self._pending.pop(request_id, None)
            if not future.done():
                future.cancel()

    async def notify(self, method: str, params: list[Any]) -> None:
        await self._send({"method": method, "params": params, "id": None})

    async def close(self) -> None:
        """Close the stream and fail every pending call."""
        if self._read_task is not None:
            self._read_task.cancel()
            try:
                await self._read_task
            except asyncio.CancelledError:
                pass
            self._read_task = None
        self._shutdown()
        try:
            await self._writer.wait_closed()
        except (OSError, ssl.SSLError):
            pass
        logger.debug("Closed connection to %s", self._endpoint)

    # -- internals ----------------------------------------------------------

    async def _send(self, message: dict[str, Any]) -> None:
        data = json.dumps(message, separators=(",", ":")).encode("utf-8")
        async with self._write_lock:
            try:
                self._writer.write(data)
                await self._writer.drain()
            except (OSError, RuntimeError) as e:
                self._shutdown()
                raise NotConnected(f"write failed: {e}", endpoint=self._endpoint) from e
        logger.debug("Sent %s", message.get("method", "reply"), extra={"rpc_id": message.get("id")})

    async def _read_loop(self) -> None:
        decoder = json.JSONDecoder()
        text = codecs.getincrementaldecoder("utf-8")()
        buffer = ""
        loop = asyncio.get_running_loop()
        try:
            while True:
                chunk = await self._reader.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                self.last_activity = loop.time()
                buffer += text.decode(chunk)
                while True:
                    buffer = buffer.lstrip()
                    if not buffer:
                        break
                    try:
                        message, end = decoder.raw_decode(buffer)
                    except json.JSONDecodeError:
                        # Incomplete message, wait for more bytes
                        break
                    buffer = buffer[end:]
                    await self._handle(message)
        except (OSError, UnicodeDecodeError, ssl.SSLError) as e:
            logger.warning("Connection to %s failed: %s", self._endpoint, e)
        finally:
            self._shutdown()

    def _shutdown(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        self._writer.close()
        for future in self._pending.values():
            if not future.done():
                future.set_exception(NotConnected("connection closed", endpoint=self._endpoint))
        self._pending.clear()

    async def _handle(self, message: Any) -> None:
        if not isinstance(message, dict):
            logger.warning("Ignoring malformed message from %s", self._endpoint)
            return
        method = message.get("method")
        msg_id = message.get("id")
        if method is not None:
            params = message.get("params") or []
            if msg_id is not None:
                await self._answer(method, params, msg_id)
                return
            if self._on_notification is not None:
                try:
                    self._on_notification(method, params)
                except Exception:
                    logger.exception("Notification handler failed", extra={"rpc_method": method})
            return

        future = self._pending.pop(msg_id, None)
        if future is None or future.done():
            logger.debug("Ignoring reply to unknown request", extra={"rpc_id": msg_id})
            return
        error = message.get("error")
        if error is not None:
            text, details = _error_text(error)
            future.set_exception(ServerError(text, server_details=details))
        else:
            future.set_result(message.get("result"))

    async def _answer(self, method: str, params: list[Any], msg_id: Any) -> None:
        if method == "echo":
            await self._send({"result": params, "error": None, "id": msg_id})
            return
        logger.warning("Server sent unsupported request", extra={"rpc_method": method})
        await self._send({"result": None, "error": {"error": "unknown method", "details": method}, "id": msg_id})
