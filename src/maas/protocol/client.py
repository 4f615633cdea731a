"""MCP connection client.

Picks a transport in preference order, retries with exponential backoff,
fails over between servers, pings the live MCP session and reconnects.

State machine:
    DISCONNECTED -> CONNECTING -> CONNECTED
    CONNECTED -> RECONNECTING (probe failure / connection lost)
    RECONNECTING -> CONNECTED | FAILED
FAILED and DISCONNECTED stay put until the next explicit `connect()`.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import replace
from typing import Any

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential

from maas.auth.codec import auth_headers
from maas.auth.session import SessionManager
from maas.config import McpSettings, ServerSettings
from maas.discovery import ServiceDiscovery
from maas.errors import AuthError, ConfigurationError, MaasError, ProtocolError, RpcError
from maas.protocol.base import ConnectionState, ConnectionStatus, Transport
from maas.protocol.connection import McpConnection
from maas.protocol.sse import SseTransport
from maas.protocol.stdio import StdioTransport
from maas.protocol.websocket import WebSocketTransport

logger = logging.getLogger(__name__)

TransportFactory = Callable[[str, ServerSettings, dict[str, str], McpSettings], Transport]
SleepFn = Callable[[float], Awaitable[None]]


def build_transport(
    kind: str,
    server: ServerSettings,
    headers: dict[str, str],
    settings: McpSettings,
) -> Transport:
    """Create an unopened transport. Raises ConfigurationError when unusable."""
    if kind == "websocket":
        if not server.ws_url:
            raise ConfigurationError(f"Server '{server.name}' has no WebSocket URL")
        return WebSocketTransport(server.ws_url, headers=headers, timeout=settings.connect_timeout)
    if kind == "sse":
        if not server.sse_url:
            raise ConfigurationError(f"Server '{server.name}' has no SSE URL")
        return SseTransport(server.sse_url, headers=headers, timeout=settings.connect_timeout)
    if kind == "stdio":
        command = server.command or settings.local_command
        if not command:
            raise ConfigurationError(f"Server '{server.name}' has no local command")
        env = {}
        if "X-API-Key" in headers:
            env["MAAS_API_KEY"] = headers["X-API-Key"]
        if "Authorization" in headers:
            env["MAAS_AUTHORIZATION"] = headers["Authorization"]
        return StdioTransport(command, env=env)
    raise ConfigurationError(
        f"Unknown transport: {kind}", remediation="Use one of: websocket, sse, stdio"
    )


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, MaasError) and exc.retryable


class ProtocolClient:
    """One MCP connection with retry, failover, health probes and request queueing."""

    def __init__(
        self,
        session: SessionManager,
        discovery: ServiceDiscovery,
        settings: McpSettings | None = None,
        *,
        transport_factory: TransportFactory = build_transport,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self.session = session
        self.discovery = discovery
        self.settings = settings or McpSettings()
        self._factory = transport_factory
        self._sleep = sleep
        self._status = ConnectionStatus()
        self._connection: McpConnection | None = None
        self._preferences: list[str] = list(self.settings.transports)
        self._servers: list[ServerSettings] = []
        self._connect_task: asyncio.Task | None = None
        self._health_task: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None
        self._waiters: list[asyncio.Future] = []

    @property
    def state(self) -> ConnectionState:
        return self._status.state

    def status(self) -> ConnectionStatus:
        return replace(self._status)

    # ── Connect ──────────────────────────────────────────────

    async def connect(
        self,
        preferences: list[str] | None = None,
        *,
        servers: list[ServerSettings] | None = None,
    ) -> ConnectionStatus:
        """Connect (or join the attempt already in flight)."""
        for task in (self._connect_task, self._reconnect_task):
            if task and not task.done():
                await asyncio.shield(task)
                return self.status()
        if self.state is ConnectionState.CONNECTED:
            return self.status()

        self._preferences = list(preferences or self.settings.transports)
        self._set_state(ConnectionState.CONNECTING, retry_attempt=0)
        self._connect_task = asyncio.create_task(self._establish(servers))
        await asyncio.shield(self._connect_task)
        return self.status()

    async def _establish(self, servers: list[ServerSettings] | None = None) -> None:
        try:
            credential = await self.session.get_valid_credential()
        except AuthError as e:
            await self._fail(e)
            raise
        headers = auth_headers(credential)

        try:
            targets = servers or await self._resolve_servers()
        except MaasError as e:
            await self._fail(e)
            raise
        self._servers = list(targets)

        last_error: MaasError | None = None
        for server in targets:
            try:
                connection, kind = await self._connect_server(server, headers)
            except AuthError as e:
                await self._handle_auth_failure(e)
                await self._fail(e)
                raise
            except MaasError as e:
                last_error = e
                logger.warning(
                    "Giving up on server '%s' (%s): %s", server.name, e.category, e.message
                )
                continue
            except Exception as e:
                self._set_state(ConnectionState.FAILED, last_error=str(e))
                self._flush_waiters(ProtocolError(f"Connection failed: {e}"))
                raise
            await self._attach(connection, kind, server)
            return

        error = last_error or ConfigurationError("No MCP servers configured")
        await self._fail(error)
        raise error

    async def _connect_server(
        self, server: ServerSettings, headers: dict[str, str]
    ) -> tuple[McpConnection, str]:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.settings.max_retries + 1),
            wait=wait_exponential(
                multiplier=self.settings.initial_delay,
                exp_base=self.settings.multiplier,
                max=self.settings.max_delay,
            ),
            retry=retry_if_exception(_is_retryable),
            sleep=self._sleep,
            before_sleep=functools.partial(self._log_retry, server),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                result = await self._open_any(server, headers)
        return result

    async def _open_any(
        self, server: ServerSettings, headers: dict[str, str]
    ) -> tuple[McpConnection, str]:
        """Try each preferred transport once; later ones act as downgrades."""
        retryable: MaasError | None = None
        unusable: MaasError | None = None
        for kind in self._preferences:
            try:
                transport = self._factory(kind, server, headers, self.settings)
                connection = await self._handshake(transport)
            except AuthError:
                raise
            except ConfigurationError as e:
                logger.debug("Skipping %s for '%s': %s", kind, server.name, e.message)
                unusable = e
                continue
            except MaasError as e:
                logger.warning(
                    "%s transport to '%s' failed (%s): %s", kind, server.name, e.category, e.message
                )
                retryable = e
                continue
            return connection, kind

        if retryable is not None:
            raise retryable
        raise ConfigurationError(
            f"No usable transport for server '{server.name}'"
            + (f" ({unusable.message})" if unusable else ""),
            remediation="Configure a WebSocket/SSE URL or a local command for this server",
        )

    async def _handshake(self, transport: Transport) -> McpConnection:
        connection = McpConnection(transport, request_timeout=self.settings.request_timeout)
        connection.on_lost = functools.partial(self._on_lost, connection)
        await connection.open(self.settings.connect_timeout)
        return connection

    async def _attach(self, connection: McpConnection, kind: str, server: ServerSettings) -> None:
        self._connection = connection
        self._set_state(
            ConnectionState.CONNECTED,
            transport=kind,
            server=server.name,
            retry_attempt=0,
            last_error=None,
            last_error_category=None,
            connected_at=time.time(),
        )
        logger.info("Connected to '%s' over %s", server.name, kind)
        await self.session.arecord_connection_error(None)
        self._flush_waiters()
        self._start_health()

    async def _resolve_servers(self) -> list[ServerSettings]:
        services = await self.discovery.get_manifest()
        configured = self.settings.servers or [ServerSettings()]
        return [
            ServerSettings(
                name=server.name,
                ws_url=server.ws_url or services.get("mcp_ws_base", ""),
                sse_url=server.sse_url or services.get("mcp_sse_base", ""),
                http_url=server.http_url or services.get("mcp_base", ""),
                command=list(server.command or self.settings.local_command),
            )
            for server in configured
        ]

    # ── Failure handling ─────────────────────────────────────

    def _log_retry(self, server: ServerSettings, retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        self._status.retry_attempt = retry_state.attempt_number
        if isinstance(error, MaasError):
            self._status.last_error = error.message
            self._status.last_error_category = error.category
            logger.warning(
                "Connection attempt %d/%d to '%s' failed: %s. %s. Retrying in %.1fs",
                retry_state.attempt_number,
                self.settings.max_retries + 1,
                server.name,
                error.message,
                error.remediation,
                delay,
            )

    async def _handle_auth_failure(self, error: AuthError) -> None:
        logger.error("Authentication failed: %s", error.message)
        try:
            valid = await self.session.validate_stored_credentials()
        except MaasError as e:
            logger.warning("Could not revalidate credential: %s", e.message)
            return
        if not valid and isinstance(self.session.last_validation_error, AuthError):
            logger.warning("Stored credential was rejected and has been cleared")

    async def _fail(self, error: MaasError) -> None:
        self._set_state(
            ConnectionState.FAILED,
            last_error=error.message,
            last_error_category=error.category,
        )
        logger.error("Connection failed (%s): %s. %s", error.category, error.message, error.remediation)
        await self.session.arecord_connection_error(error)
        self._flush_waiters(error)

    def _flush_waiters(self, error: MaasError | None = None) -> None:
        waiters, self._waiters = self._waiters, []
        for future in waiters:
            if future.done():
                continue
            if error is None:
                future.set_result(None)
            else:
                future.set_exception(error)

    # ── Health / reconnect ───────────────────────────────────

    def _start_health(self) -> None:
        if self.settings.health_interval <= 0:
            return
        if self._health_task and not self._health_task.done():
            return
        self._health_task = asyncio.create_task(self._health_loop())

    async def _health_loop(self) -> None:
        while self.state is ConnectionState.CONNECTED:
            await asyncio.sleep(self.settings.health_interval)
            if self.state is not ConnectionState.CONNECTED:
                return
            if not await self.check_health():
                return

    async def check_health(self) -> bool:
        """Probe once; on failure start reconnecting."""
        try:
            await self.probe()
        except MaasError as e:
            logger.warning("Health probe failed: %s", e.message)
            self._begin_reconnect(e)
            return False
        return True

    async def probe(self) -> float:
        """Send one keepalive ping. Returns the round trip in milliseconds."""
        connection = self._connection
        if connection is None or self.state is not ConnectionState.CONNECTED:
            raise ProtocolError("Not connected", remediation="Run: maas mcp connect")
        started = time.monotonic()
        try:
            await connection.ping(timeout=self.settings.probe_timeout)
        except RpcError as e:
            # Any answer proves the peer is alive
            logger.debug("Server answered ping with an error: %s", e.message)
        latency = (time.monotonic() - started) * 1000
        self._status.last_latency_ms = latency
        self._status.last_probe_at = time.time()
        return latency

    def _on_lost(self, connection: McpConnection, error: MaasError) -> None:
        if connection is self._connection:
            self._begin_reconnect(error)

    def _begin_reconnect(self, error: MaasError) -> None:
        if self.state is not ConnectionState.CONNECTED:
            return
        logger.warning("Connection lost (%s): %s", error.category, error.message)
        self._set_state(
            ConnectionState.RECONNECTING,
            last_error=error.message,
            last_error_category=error.category,
            retry_attempt=0,
        )
        self._reconnect_task = asyncio.create_task(self._reconnect())

    async def _reconnect(self) -> None:
        connection, self._connection = self._connection, None
        if connection is not None:
            await connection.close()
        try:
            await self._establish(self._servers or None)
        except MaasError as e:
            logger.error("Reconnection failed: %s", e.message)
        except Exception:
            # Nobody awaits this task; the state already reads FAILED
            logger.exception("Reconnection failed unexpectedly")

    # ── Requests ─────────────────────────────────────────────

    async def request(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Any MCP client request by method name; queued while connecting or reconnecting."""
        connection = await self._ready()
        return await self._guard(connection, connection.request(method, params, timeout=timeout))

    async def list_tools(self) -> list[dict[str, Any]]:
        connection = await self._ready()
        return await self._guard(connection, connection.list_tools())

    async def call_tool(self, name: str, arguments: dict[str, Any] | None = None) -> dict[str, Any]:
        connection = await self._ready()
        return await self._guard(connection, connection.call_tool(name, arguments))

    async def _guard(self, connection: McpConnection, call: Awaitable[Any]) -> Any:
        """Await one request; a broken connection starts a reconnect before re-raising."""
        try:
            return await call
        except RpcError:
            raise
        except ProtocolError as e:
            if connection is self._connection:
                self._begin_reconnect(e)
            raise

    async def _ready(self) -> McpConnection:
        if self.state in (ConnectionState.CONNECTING, ConnectionState.RECONNECTING):
            future = asyncio.get_running_loop().create_future()
            self._waiters.append(future)
            await future
        if self.state is ConnectionState.CONNECTED and self._connection is not None:
            return self._connection
        raise ProtocolError(
            f"Not connected (state: {self.state.value})", remediation="Run: maas mcp connect"
        )

    # ── Shutdown ─────────────────────────────────────────────

    async def close(self) -> None:
        """Cancel background work, fail queued requests, close the transport."""
        for task in (self._connect_task, self._reconnect_task, self._health_task):
            await _cancel(task)
        self._connect_task = self._reconnect_task = self._health_task = None

        connection, self._connection = self._connection, None
        if connection is not None:
            await connection.close()
        self._flush_waiters(ProtocolError("Connection closed"))
        self._set_state(ConnectionState.DISCONNECTED, transport=None, connected_at=None)

    # ── Internal ─────────────────────────────────────────────

    def _set_state(self, state: ConnectionState, **changes: Any) -> None:
        previous = self._status.state
        self._status.state = state
        for key, value in changes.items():
            setattr(self._status, key, value)
        if previous is not state:
            logger.info("Connection state: %s -> %s", previous.value, state.value)


async def _cancel(task: asyncio.Task | None) -> None:
    if task is None or task.done() or task is asyncio.current_task():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except MaasError as e:
        logger.debug("Cancelled task ended with: %s", e.message)
