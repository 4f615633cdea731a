"""Tests for McpConnection, the three transports and boundary error classification."""

from __future__ import annotations

import asyncio
import subprocess
import sys
import textwrap
from contextlib import asynccontextmanager
from unittest.mock import MagicMock, patch

import anyio
import httpx
import mcp.types as types
import pytest
from aiohttp import WSMsgType, test_utils, web
from fakes import FakeTransport, memory_server
from mcp.shared.exceptions import McpError
from mcp.shared.message import SessionMessage

from maas.errors import (
    AuthError,
    ConfigurationError,
    NetworkError,
    ProtocolError,
    RpcError,
    classify_exception,
    connection_error,
)
from maas.protocol.connection import McpConnection
from maas.protocol.sse import SseTransport
from maas.protocol.stdio import StdioTransport
from maas.protocol.websocket import WebSocketTransport


class HangingTransport:
    """Never finishes connecting."""

    name = "websocket"

    @asynccontextmanager
    async def streams(self):
        await anyio.sleep_forever()
        yield


class BreakingTransport(FakeTransport):
    """Serves normally until `trigger` is set, then the transport itself fails."""

    def __init__(self):
        super().__init__()
        self.trigger = asyncio.Event()

    @asynccontextmanager
    async def streams(self):
        async with super().streams() as pair:
            async with anyio.create_task_group() as tg:
                tg.start_soon(self._fail_later)
                yield pair

    async def _fail_later(self) -> None:
        await self.trigger.wait()
        raise ConnectionResetError("peer reset")


async def in_task_group(exc: Exception) -> None:
    async def fail() -> None:
        raise exc

    async with anyio.create_task_group() as tg:
        tg.start_soon(fail)


# ── McpConnection ─────────────────────────────────────────────


class TestMcpConnection:
    @pytest.mark.asyncio
    async def test_open_request_close(self):
        transport = FakeTransport()
        connection = McpConnection(transport, request_timeout=2.0)
        await connection.open(timeout=2.0)

        assert connection.is_open
        assert connection.server_info.name == "fake-memory"
        await connection.ping()
        tools = await connection.list_tools()
        assert [t["name"] for t in tools] == ["memory_search"]
        result = await connection.call_tool("memory_search", {"query": "x"})
        assert result["content"][0]["type"] == "text"

        await connection.close()
        assert not connection.is_open
        assert transport.closed
        with pytest.raises(ProtocolError, match="not open"):
            await connection.list_tools()

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self):
        connection = McpConnection(FakeTransport())
        await connection.open(timeout=2.0)
        await connection.close()
        await connection.close()

    @pytest.mark.asyncio
    async def test_open_failure_is_raised(self):
        connection = McpConnection(FakeTransport(open_error=NetworkError("down", kind="refused")))
        with pytest.raises(NetworkError) as exc:
            await connection.open(timeout=2.0)
        assert exc.value.kind == "refused"
        assert not connection.is_open

    @pytest.mark.asyncio
    async def test_raw_failure_is_classified(self):
        connection = McpConnection(FakeTransport(open_error=ConnectionRefusedError()))
        with pytest.raises(NetworkError) as exc:
            await connection.open(timeout=2.0)
        assert exc.value.kind == "refused"

    @pytest.mark.asyncio
    async def test_unknown_failure_propagates(self):
        connection = McpConnection(FakeTransport(open_error=RuntimeError("bug")))
        with pytest.raises(RuntimeError, match="bug"):
            await connection.open(timeout=2.0)

    @pytest.mark.asyncio
    async def test_connect_timeout(self):
        connection = McpConnection(HangingTransport())
        with pytest.raises(NetworkError, match="timed out") as exc:
            await connection.open(timeout=0.05)
        assert exc.value.kind == "timeout"
        assert not connection.is_open

    @pytest.mark.asyncio
    async def test_unanswered_ping_times_out(self):
        connection = McpConnection(FakeTransport(answer_ping=False))
        await connection.open(timeout=2.0)
        with pytest.raises(NetworkError) as exc:
            await connection.ping(timeout=0.05)
        assert exc.value.kind == "timeout"
        await connection.close()

    @pytest.mark.asyncio
    async def test_server_error_reply(self):
        connection = McpConnection(FakeTransport())
        await connection.open(timeout=2.0)
        with pytest.raises(RpcError) as exc:
            await connection.request("prompts/list")
        assert exc.value.code == types.METHOD_NOT_FOUND
        await connection.close()

    @pytest.mark.asyncio
    async def test_dropped_peer_is_protocol_error(self):
        transport = FakeTransport()
        connection = McpConnection(transport, request_timeout=2.0)
        await connection.open(timeout=2.0)

        transport.drop()
        with pytest.raises(ProtocolError):
            await connection.list_tools()
        await connection.close()

    @pytest.mark.asyncio
    async def test_transport_failure_reports_lost_once(self):
        transport = BreakingTransport()
        lost = MagicMock()
        connection = McpConnection(transport, on_lost=lost)
        await connection.open(timeout=2.0)

        transport.trigger.set()
        for _ in range(200):
            if lost.called:
                break
            await asyncio.sleep(0.01)

        lost.assert_called_once()
        error = lost.call_args.args[0]
        assert isinstance(error, NetworkError)
        assert not connection.is_open
        await connection.close()
        lost.assert_called_once()


# ── WebSocketTransport ────────────────────────────────────────


def ws_app() -> web.Application:
    """aiohttp WebSocket endpoint bridged to `memory_server`."""

    async def handler(request: web.Request) -> web.WebSocketResponse:
        if request.headers.get("Authorization") != "Bearer good":
            raise web.HTTPUnauthorized()
        ws = web.WebSocketResponse(protocols=("mcp",))
        await ws.prepare(request)

        server = memory_server([])
        to_server, server_read = anyio.create_memory_object_stream(16)
        server_write, from_server = anyio.create_memory_object_stream(16)

        async def pump_out() -> None:
            async for message in from_server:
                await ws.send_str(message.message.model_dump_json(by_alias=True, exclude_none=True))

        async with anyio.create_task_group() as tg:
            tg.start_soon(server.run, server_read, server_write, server.create_initialization_options())
            tg.start_soon(pump_out)
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    message = types.JSONRPCMessage.model_validate_json(msg.data)
                    await to_server.send(SessionMessage(message))
            tg.cancel_scope.cancel()
        return ws

    app = web.Application()
    app.router.add_get("/ws", handler)
    return app


class TestWebSocketTransport:
    @pytest.mark.asyncio
    async def test_round_trip(self):
        async with test_utils.TestServer(ws_app()) as server:
            transport = WebSocketTransport(
                str(server.make_url("/ws")), headers={"Authorization": "Bearer good"}
            )
            connection = McpConnection(transport, request_timeout=5.0)
            await connection.open(timeout=5.0)
            tools = await connection.list_tools()
            assert tools[0]["name"] == "memory_search"
            await connection.close()

    @pytest.mark.asyncio
    async def test_rejected_handshake_is_auth_error(self):
        async with test_utils.TestServer(ws_app()) as server:
            transport = WebSocketTransport(
                str(server.make_url("/ws")), headers={"Authorization": "Bearer bad"}
            )
            with pytest.raises(AuthError) as exc:
                await McpConnection(transport).open(timeout=5.0)
            assert exc.value.status == 401

    @pytest.mark.asyncio
    async def test_refused_is_network_error(self):
        server = test_utils.TestServer(ws_app())
        await server.start_server()
        url = str(server.make_url("/ws"))
        await server.close()

        with pytest.raises(NetworkError):
            await McpConnection(WebSocketTransport(url, timeout=1.0)).open(timeout=5.0)


# ── SseTransport ──────────────────────────────────────────────


def sse_app(status: int) -> web.Application:
    async def stream(request: web.Request) -> web.Response:
        return web.Response(status=status)

    app = web.Application()
    app.router.add_get("/sse", stream)
    return app


class TestSseTransport:
    def test_streams_use_sdk_client(self):
        transport = SseTransport(
            "https://mcp.test/sse", headers={"X-API-Key": "k"}, timeout=3.0, read_timeout=60.0
        )
        with patch("maas.protocol.sse.sse_client") as client:
            transport.streams()
        client.assert_called_once_with(
            "https://mcp.test/sse",
            headers={"X-API-Key": "k"},
            timeout=3.0,
            sse_read_timeout=60.0,
        )

    @pytest.mark.asyncio
    async def test_unauthorized_stream(self):
        async with test_utils.TestServer(sse_app(401)) as server:
            transport = SseTransport(str(server.make_url("/sse")), timeout=2.0)
            with pytest.raises(AuthError) as exc:
                await McpConnection(transport).open(timeout=5.0)
            assert exc.value.status == 401

    @pytest.mark.asyncio
    async def test_server_error_is_retryable(self):
        async with test_utils.TestServer(sse_app(503)) as server:
            transport = SseTransport(str(server.make_url("/sse")), timeout=2.0)
            with pytest.raises(NetworkError) as exc:
                await McpConnection(transport).open(timeout=5.0)
            assert exc.value.retryable


# ── StdioTransport ────────────────────────────────────────────

ECHO_SERVER = textwrap.dedent(
    """
    from mcp.server.fastmcp import FastMCP

    server = FastMCP("echo")


    @server.tool()
    def echo(text: str) -> str:
        \"\"\"Echo the text back.\"\"\"
        return text


    server.run("stdio")
    """
)


class TestStdioTransport:
    def test_parameters(self):
        transport = StdioTransport(
            [sys.executable, "-m", "mcp_server"], env={"MAAS_API_KEY": "k"}, cwd="/tmp"
        )
        params = transport.parameters()
        assert params.command == sys.executable
        assert params.args == ["-m", "mcp_server"]
        assert params.env == {"MAAS_API_KEY": "k"}
        assert params.cwd == "/tmp"

    def test_missing_executable(self):
        with pytest.raises(ConfigurationError, match="not found"):
            StdioTransport(["no-such-mcp-server-binary"]).parameters()

    def test_no_command(self):
        with pytest.raises(ConfigurationError, match="No local MCP server"):
            StdioTransport([]).parameters()

    def test_streams_use_sdk_client(self):
        transport = StdioTransport([sys.executable])
        with patch("maas.protocol.stdio.stdio_client") as client:
            transport.streams()
        params = client.call_args.args[0]
        assert params.command == sys.executable
        assert client.call_args.kwargs["errlog"] == subprocess.DEVNULL

    @pytest.mark.asyncio
    async def test_missing_executable_fails_open(self):
        connection = McpConnection(StdioTransport(["no-such-mcp-server-binary"]))
        with pytest.raises(ConfigurationError):
            await connection.open(timeout=2.0)

    @pytest.mark.asyncio
    async def test_local_server_round_trip(self):
        transport = StdioTransport([sys.executable, "-c", ECHO_SERVER])
        connection = McpConnection(transport, request_timeout=20.0)
        await connection.open(timeout=30.0)
        try:
            assert connection.server_info.name == "echo"
            tools = await connection.list_tools()
            assert [t["name"] for t in tools] == ["echo"]
            result = await connection.call_tool("echo", {"text": "hello"})
            assert result["content"][0]["text"] == "hello"
        finally:
            await connection.close()


# ── Classification ────────────────────────────────────────────


def mcp_error(code: int, message: str = "boom") -> McpError:
    return McpError(types.ErrorData(code=code, message=message))


class TestClassification:
    def test_request_timeout(self):
        error = classify_exception(mcp_error(408, "Timed out"), "tools/list")
        assert isinstance(error, NetworkError)
        assert error.kind == "timeout"

    def test_connection_closed(self):
        error = classify_exception(mcp_error(-32000, "Connection closed"), "ping")
        assert type(error) is ProtocolError
        assert error.retryable

    def test_server_error_reply(self):
        error = classify_exception(mcp_error(types.INVALID_PARAMS, "bad args"), "tools/call")
        assert isinstance(error, RpcError)
        assert error.code == types.INVALID_PARAMS
        assert not error.retryable

    def test_http_status(self):
        request = httpx.Request("GET", "https://mcp.test/sse")
        response = httpx.Response(403, request=request)
        exc = httpx.HTTPStatusError("forbidden", request=request, response=response)
        error = classify_exception(exc, "SSE")
        assert isinstance(error, AuthError)
        assert error.status == 403

    def test_httpx_connect_error(self):
        exc = httpx.ConnectError("refused", request=httpx.Request("GET", "https://mcp.test/"))
        assert isinstance(classify_exception(exc), NetworkError)

    def test_broken_stream(self):
        assert isinstance(classify_exception(anyio.BrokenResourceError()), ProtocolError)

    def test_missing_file_is_configuration(self):
        assert isinstance(classify_exception(FileNotFoundError("npx")), ConfigurationError)

    @pytest.mark.asyncio
    async def test_task_group_errors_unwrapped(self):
        with pytest.raises(Exception) as caught:
            await in_task_group(ConnectionRefusedError())
        error = classify_exception(caught.value, "connect")
        assert isinstance(error, NetworkError)
        assert error.kind == "refused"

    def test_unknown_reraised(self):
        with pytest.raises(KeyError):
            classify_exception(KeyError("x"))

    def test_connection_error_wraps_unknown(self):
        error = connection_error(KeyError("x"), "websocket connection")
        assert isinstance(error, ProtocolError)
        assert "KeyError" in error.message
