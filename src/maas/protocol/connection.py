"""One initialized `mcp.ClientSession` over a Transport.

The SDK transports are anyio context managers whose cancel scopes must be
entered and exited by the same task, so a dedicated owner task holds them open
from handshake to close.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import timedelta
from typing import Any, TypeVar

import mcp.types as types
from mcp import ClientSession

from maas import __version__
from maas.errors import (
    MaasError,
    NetworkError,
    ProtocolError,
    ValidationError,
    classify_exception,
    connection_error,
)
from maas.protocol.base import Transport

logger = logging.getLogger(__name__)

CLIENT_NAME = "maas"
CLOSE_TIMEOUT = 5.0

T = TypeVar("T")

# Called once when the owner task ends because the connection broke
LostCallback = Callable[[MaasError], None]


def _dump(model: Any) -> dict[str, Any]:
    return model.model_dump(mode="json", by_alias=True, exclude_none=True)


class McpConnection:
    """Opens a transport, runs the MCP handshake and serves requests until closed."""

    def __init__(
        self,
        transport: Transport,
        *,
        request_timeout: float = 30.0,
        on_lost: LostCallback | None = None,
    ) -> None:
        self.transport = transport
        self.request_timeout = request_timeout
        self.on_lost = on_lost
        self.session: ClientSession | None = None
        self.server_info: types.Implementation | None = None
        self._ready: asyncio.Future | None = None
        self._stop = asyncio.Event()
        self._closing = False
        self._task: asyncio.Task | None = None

    @property
    def is_open(self) -> bool:
        return self.session is not None and self._task is not None and not self._task.done()

    async def open(self, timeout: float) -> None:
        """Connect and initialize. Raises a classified MaasError."""
        self._ready = asyncio.get_running_loop().create_future()
        self._task = asyncio.create_task(self._run(), name=f"mcp-{self.transport.name}")
        try:
            await asyncio.wait_for(asyncio.shield(self._ready), timeout)
        except asyncio.TimeoutError:
            await self.close()
            raise NetworkError(
                f"{self.transport.name} connect timed out after {timeout:.1f}s",
                kind="timeout",
            ) from None
        except MaasError:
            await self.close()
            raise
        except Exception as e:
            await self.close()
            raise classify_exception(e, f"{self.transport.name} connect failed") from e
        except BaseException:
            await self.close()
            raise

    async def close(self) -> None:
        """Signal the owner task to unwind, cancelling it if it does not. Idempotent."""
        self._closing = True
        self._stop.set()
        task, self._task = self._task, None
        if task is None or task is asyncio.current_task():
            return
        if self._ready is not None and not self._ready.done():
            # Still handshaking: nothing to unwind gracefully
            task.cancel()
        try:
            await asyncio.wait_for(asyncio.shield(task), CLOSE_TIMEOUT)
        except asyncio.TimeoutError:
            logger.warning("%s connection did not close in time, cancelling", self.transport.name)
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        except asyncio.CancelledError:
            if not task.cancelled():
                raise
        self.session = None

    # ── Requests ─────────────────────────────────────────────

    async def call(
        self,
        operation: Callable[[ClientSession], Awaitable[T]],
        *,
        timeout: float | None = None,
        context: str = "MCP request",
    ) -> T:
        """Run one SDK session call, converting its failures to the taxonomy."""
        session = self.session
        if session is None:
            raise ProtocolError(f"{self.transport.name} connection is not open")
        limit = self.request_timeout if timeout is None else timeout
        try:
            return await asyncio.wait_for(operation(session), limit)
        except asyncio.TimeoutError:
            raise NetworkError(
                f"No response to {context} over {self.transport.name} within {limit:.1f}s",
                kind="timeout",
            ) from None
        except MaasError:
            raise
        except Exception as e:
            raise connection_error(e, f"{context} over {self.transport.name}") from e

    async def ping(self, *, timeout: float | None = None) -> None:
        await self.call(lambda s: s.send_ping(), timeout=timeout, context="ping")

    async def list_tools(self, *, timeout: float | None = None) -> list[dict[str, Any]]:
        result = await self.call(lambda s: s.list_tools(), timeout=timeout, context="tools/list")
        return [_dump(tool) for tool in result.tools]

    async def call_tool(
        self,
        name: str,
        arguments: dict[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        result = await self.call(
            lambda s: s.call_tool(name, arguments or {}),
            timeout=timeout,
            context=f"tools/call {name}",
        )
        return _dump(result)

    async def request(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Any client request the MCP schema defines, by method name."""
        payload: dict[str, Any] = {"method": method}
        if params is not None:
            payload["params"] = params
        try:
            request = types.ClientRequest.model_validate(payload)
        except ValueError as e:
            raise ValidationError(
                f"Not a valid MCP client request: {method}",
                remediation="Check the method name and parameters against the MCP schema",
            ) from e
        result = await self.call(
            lambda s: s.send_request(request, types.Result),
            timeout=timeout,
            context=method,
        )
        return _dump(result)

    # ── Owner task ───────────────────────────────────────────

    async def _run(self) -> None:
        ready = self._ready
        try:
            async with self.transport.streams() as (read_stream, write_stream):
                async with ClientSession(
                    read_stream,
                    write_stream,
                    read_timeout_seconds=timedelta(seconds=self.request_timeout),
                    client_info=types.Implementation(name=CLIENT_NAME, version=__version__),
                ) as session:
                    result = await session.initialize()
                    self.session = session
                    self.server_info = result.serverInfo
                    logger.debug(
                        "MCP session over %s: %s %s (protocol %s)",
                        self.transport.name,
                        result.serverInfo.name,
                        result.serverInfo.version,
                        result.protocolVersion,
                    )
                    ready.set_result(None)
                    await self._stop.wait()
        except Exception as e:
            if not ready.done():
                ready.set_exception(e)
                return
            if self._closing:
                logger.debug("%s connection ended during close: %r", self.transport.name, e)
                return
            error = connection_error(e, f"{self.transport.name} connection")
            logger.warning("%s connection lost: %s", self.transport.name, error.message)
            if self.on_lost is not None:
                self.on_lost(error)
        else:
            if not ready.done():
                ready.set_exception(ProtocolError(f"{self.transport.name} closed during handshake"))
        finally:
            self.session = None
