"""
Configuration for the OVSDB SDK client.

Options can be built in code with the option helpers:

    >>> options = ClientOptions.build(
    ...     with_endpoint("tcp:127.0.0.1:6641"),
    ...     with_inactivity_check(5.0),
    ...     with_reconnect(ReconnectConfig(max_attempts=10)),
    ... )

or loaded from the environment through ClientSettings (prefix OVSDB_):

    OVSDB_ENDPOINTS=tcp:10.0.0.1:6641,tcp:10.0.0.2:6641
    OVSDB_INACTIVITY_TIMEOUT=5
    OVSDB_RECONNECT=true
    OVSDB_LEADER_ONLY=true
    OVSDB_CA_FILE / OVSDB_CERT_FILE / OVSDB_KEY_FILE
    OVSDB_LOG_LEVEL / OVSDB_LOG_FORMAT

Endpoint forms:
    tcp:host[:port]    default port 6640
    ssl:host[:port]    default port 6640, requires a TLS context
    unix[:path]        default /var/run/openvswitch/db.sock
IPv6 hosts are written in brackets: tcp:[::1]:6641

Invariants:
    - Options are immutable once built
    - Endpoints are tried in the order given

How to change safely:
    - Add new options with defaults that keep existing behavior
"""

from __future__ import annotations

import dataclasses
import logging
import os
import ssl
from dataclasses import dataclass, field
from typing import Callable

from pydantic import Field
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

DEFAULT_TCP_PORT = 6640
DEFAULT_UNIX_SOCKET = "/var/run/openvswitch/db.sock"
DEFAULT_ENDPOINT = f"unix:{DEFAULT_UNIX_SOCKET}"
DEFAULT_EVENT_BUFFER_SIZE = 65536

SCHEME_TCP = "tcp"
SCHEME_SSL = "ssl"
SCHEME_UNIX = "unix"


@dataclass(frozen=True)
class Endpoint:
    """A parsed endpoint.

    Attributes:
        scheme: tcp, ssl or unix
        host: Host for tcp/ssl
        port: Port for tcp/ssl
        path: Socket path for unix
    """

    scheme: str
    host: str = ""
    port: int = 0
    path: str = ""

    @classmethod
    def parse(cls, value: str) -> Endpoint:
        """Parse "scheme:host:port" or "scheme:path".

        Raises:
            ValueError: If the scheme is unknown or the address is malformed
        """
        scheme, _, rest = value.partition(":")
        if scheme == SCHEME_UNIX:
            return cls(scheme=scheme, path=rest or DEFAULT_UNIX_SOCKET)
        if scheme not in (SCHEME_TCP, SCHEME_SSL):
            raise ValueError(f"Unknown endpoint scheme '{scheme}' in '{value}'")
        if not rest:
            raise ValueError(f"Endpoint '{value}' has no host")
        if rest.startswith("["):
            host, sep, tail = rest[1:].partition("]")
            if not sep:
                raise ValueError(f"Unterminated IPv6 address in '{value}'")
            port_str = tail[1:] if tail.startswith(":") else tail
        elif rest.count(":") > 1:
            raise ValueError(f"IPv6 address in '{value}' must be enclosed in brackets")
        else:
            host, _, port_str = rest.partition(":")
        try:
            port = int(port_str) if port_str else DEFAULT_TCP_PORT
        except ValueError:
            raise ValueError(f"Invalid port '{port_str}' in '{value}'") from None
        return cls(scheme=scheme, host=host, port=port)

    def __str__(self) -> str:
        if self.scheme == SCHEME_UNIX:
            return f"unix:{self.path}"
        host = f"[{self.host}]" if ":" in self.host else self.host
        return f"{self.scheme}:{host}:{self.port}"


@dataclass(frozen=True)
class ReconnectConfig:
    """Automatic reconnection with exponential backoff.

    Attributes:
        enabled: Whether to reconnect after the connection drops
        initial_delay: First backoff delay in seconds
        max_delay: Upper bound of the backoff delay in seconds
        multiplier: Backoff growth factor
        max_attempts: Give up after this many failed rounds (None = never)
    """

    enabled: bool = True
    initial_delay: float = 0.5
    max_delay: float = 30.0
    multiplier: float = 2.0
    max_attempts: int | None = None

    def delays(self) -> Callable[[int], float]:
        def delay(attempt: int) -> float:
            return min(self.initial_delay * (self.multiplier**attempt), self.max_delay)

        return delay


@dataclass(frozen=True)
class ClientOptions:
    """Options recognized by the client.

    Attributes:
        endpoints: Endpoints tried in order
        tls: TLS context for ssl endpoints
        inactivity_timeout: Seconds between keepalive echoes (None disables)
        reconnect: Reconnection policy (None disables)
        leader_only: Refuse cluster members that are not the leader
        event_buffer_size: Capacity of the cache event queue
        client_side_uuids: Allocate uuids for named inserts before dispatch
        request_timeout: Default deadline of blocking calls (None waits forever)
    """

    endpoints: tuple[str, ...] = ()
    tls: ssl.SSLContext | None = None
    inactivity_timeout: float | None = None
    reconnect: ReconnectConfig | None = None
    leader_only: bool = False
    event_buffer_size: int = DEFAULT_EVENT_BUFFER_SIZE
    client_side_uuids: bool = False
    request_timeout: float | None = None

    def __post_init__(self) -> None:
        for endpoint in self.endpoints:
            parsed = Endpoint.parse(endpoint)
            if parsed.scheme == SCHEME_SSL and self.tls is None:
                raise ValueError(f"Endpoint '{endpoint}' requires a TLS configuration")
        if self.event_buffer_size < 1:
            raise ValueError("event_buffer_size must be positive")

    @classmethod
    def build(cls, *options: Callable[[dict], None]) -> ClientOptions:
        """Apply option helpers in order."""
        values: dict = {"endpoints": []}
        for option in options:
            option(values)
        values["endpoints"] = tuple(values["endpoints"]) or (DEFAULT_ENDPOINT,)
        return cls(**values)

    def parsed_endpoints(self) -> list[Endpoint]:
        return [Endpoint.parse(e) for e in self.endpoints or (DEFAULT_ENDPOINT,)]

    def replace(self, **changes) -> ClientOptions:
        return dataclasses.replace(self, **changes)


def with_endpoint(endpoint: str) -> Callable[[dict], None]:
    """Append one endpoint to the dial list."""
    Endpoint.parse(endpoint)

    def apply(values: dict) -> None:
        values["endpoints"].append(endpoint)

    return apply


def with_tls_config(context: ssl.SSLContext) -> Callable[[dict], None]:
    """Use context for ssl endpoints."""

    def apply(values: dict) -> None:
        values["tls"] = context

    return apply


def with_inactivity_check(interval: float) -> Callable[[dict], None]:
    """Send an echo after interval seconds of silence; a missed echo drops the connection."""
    if interval <= 0:
        raise ValueError("inactivity interval must be positive")

    def apply(values: dict) -> None:
        values["inactivity_timeout"] = interval

    return apply


def with_reconnect(config: ReconnectConfig | None = None) -> Callable[[dict], None]:
    """Reconnect automatically with exponential backoff."""

    def apply(values: dict) -> None:
        values["reconnect"] = config or ReconnectConfig()

    return apply


def with_leader_only(leader_only: bool = True) -> Callable[[dict], None]:
    """Only accept the cluster leader."""

    def apply(values: dict) -> None:
        values["leader_only"] = leader_only

    return apply


def with_client_side_uuids(enabled: bool = True) -> Callable[[dict], None]:
    """Bind named inserts to locally allocated uuids before dispatch."""

    def apply(values: dict) -> None:
        values["client_side_uuids"] = enabled

    return apply


def with_event_buffer_size(size: int) -> Callable[[dict], None]:
    def apply(values: dict) -> None:
        values["event_buffer_size"] = size

    return apply


def new_tls_context(ca_file: str, cert_file: str | None = None, key_file: str | None = None) -> ssl.SSLContext:
    """Client TLS context trusting ca_file, presenting cert_file/key_file if given."""
    context = ssl.create_default_context(ssl.Purpose.SERVER_AUTH, cafile=ca_file)
    if cert_file:
        context.load_cert_chain(cert_file, key_file)
    return context


class ClientSettings(BaseSettings):
    """Client configuration loaded from environment."""

    endpoints: str = Field(default=DEFAULT_ENDPOINT, description="Comma separated endpoints")
    inactivity_timeout: float | None = Field(default=None, description="Echo interval seconds")
    reconnect: bool = Field(default=False, description="Reconnect automatically")
    reconnect_max_attempts: int | None = Field(default=None, description="Reconnect rounds before giving up")
    leader_only: bool = Field(default=False, description="Refuse followers")
    client_side_uuids: bool = Field(default=False, description="Allocate insert uuids locally")
    request_timeout: float | None = Field(default=None, description="Default call deadline seconds")
    event_buffer_size: int = Field(default=DEFAULT_EVENT_BUFFER_SIZE, description="Event queue capacity")

    # TLS material
    ca_file: str | None = Field(default=None, description="CA certificate file")
    cert_file: str | None = Field(default=None, description="Client certificate file")
    key_file: str | None = Field(default=None, description="Client private key file")

    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="text", description="Log format (json, text)")

    model_config = {"env_prefix": "OVSDB_"}

    def endpoint_list(self) -> list[str]:
        return [e.strip() for e in self.endpoints.split(",") if e.strip()]

    def to_options(self) -> ClientOptions:
        """Convert to ClientOptions."""
        options = [with_endpoint(e) for e in self.endpoint_list()]
        if self.ca_file:
            options.append(with_tls_config(new_tls_context(self.ca_file, self.cert_file, self.key_file)))
        if self.inactivity_timeout:
            options.append(with_inactivity_check(self.inactivity_timeout))
        if self.reconnect:
            options.append(with_reconnect(ReconnectConfig(max_attempts=self.reconnect_max_attempts)))
        options.append(with_leader_only(self.leader_only))
        options.append(with_client_side_uuids(self.client_side_uuids))
        options.append(with_event_buffer_size(self.event_buffer_size))
        return ClientOptions.build(*options).replace(request_timeout=self.request_timeout)

    def observability(self) -> ObservabilityConfig:
        return ObservabilityConfig(log_level=self.log_level, log_format=self.log_format)


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "text"
    quiet_loggers: tuple[str, ...] = field(default=("asyncio",))

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("OVSDB_LOG_LEVEL", "INFO"),
            log_format=os.getenv("OVSDB_LOG_FORMAT", "text"),
        )
