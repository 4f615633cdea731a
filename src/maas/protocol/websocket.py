"""WebSocket transport: one JSON-RPC message per text frame.

`mcp.client.websocket.websocket_client` cannot send handshake headers, and
the memory service authenticates the upgrade request, so the stream pair is
built here on aiohttp with the same message types the SDK uses.
"""

from __future__ import annotations

import logging
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import AsyncIterator

import aiohttp
import anyio
import mcp.types as types
from mcp.shared.message import SessionMessage

from maas.protocol.base import Streams

logger = logging.getLogger(__name__)

SUBPROTOCOL = "mcp"


@asynccontextmanager
async def websocket_client(
    url: str,
    *,
    headers: dict[str, str] | None = None,
    timeout: float = 10.0,
    heartbeat: float | None = None,
) -> AsyncIterator[Streams]:
    """Connect and yield `(read_stream, write_stream)` for `mcp.ClientSession`.

    Frames that are not valid JSON-RPC are delivered to the read stream as the
    validation exception, the way the SDK transports do.
    """
    read_writer, read_stream = anyio.create_memory_object_stream(0)
    write_stream, write_reader = anyio.create_memory_object_stream(0)

    async with aiohttp.ClientSession(
        timeout=aiohttp.ClientTimeout(total=None, connect=timeout)
    ) as http:
        async with http.ws_connect(
            url,
            headers=headers,
            heartbeat=heartbeat,
            protocols=(SUBPROTOCOL,),
        ) as ws:
            logger.debug("WebSocket open: %s", url)

            async def ws_reader() -> None:
                async with read_writer:
                    async for msg in ws:
                        if msg.type == aiohttp.WSMsgType.TEXT:
                            raw = msg.data
                        elif msg.type == aiohttp.WSMsgType.BINARY:
                            raw = msg.data.decode("utf-8", errors="replace")
                        elif msg.type == aiohttp.WSMsgType.ERROR:
                            logger.warning("WebSocket error: %s", ws.exception())
                            break
                        else:
                            continue
                        try:
                            message = types.JSONRPCMessage.model_validate_json(raw)
                        except ValueError as exc:
                            await read_writer.send(exc)
                            continue
                        await read_writer.send(SessionMessage(message))
                logger.debug("WebSocket closed by peer: %s", url)

            async def ws_writer() -> None:
                async with write_reader:
                    async for session_message in write_reader:
                        await ws.send_str(
                            session_message.message.model_dump_json(by_alias=True, exclude_none=True)
                        )

            async with anyio.create_task_group() as tg:
                tg.start_soon(ws_reader)
                tg.start_soon(ws_writer)
                try:
                    yield read_stream, write_stream
                finally:
                    tg.cancel_scope.cancel()


class WebSocketTransport:
    """aiohttp `ws_connect` with the session's auth headers."""

    name = "websocket"

    def __init__(
        self,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        timeout: float = 10.0,
        heartbeat: float | None = None,
    ) -> None:
        self.url = url
        self.headers = dict(headers or {})
        self.timeout = timeout
        self.heartbeat = heartbeat

    def streams(self) -> AbstractAsyncContextManager[Streams]:
        return websocket_client(
            self.url,
            headers=self.headers,
            timeout=self.timeout,
            heartbeat=self.heartbeat,
        )
