"""Transport protocol and shared connection types."""

from __future__ import annotations

import enum
from contextlib import AbstractAsyncContextManager
from dataclasses import asdict, dataclass
from typing import Any, Protocol, Tuple, Union, runtime_checkable

from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream
from mcp.shared.message import SessionMessage

ReadStream = MemoryObjectReceiveStream[Union[SessionMessage, Exception]]
WriteStream = MemoryObjectSendStream[SessionMessage]
Streams = Tuple[ReadStream, WriteStream]


class ConnectionState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


@dataclass
class ConnectionStatus:
    """Snapshot of a ProtocolClient's connection."""

    state: ConnectionState = ConnectionState.DISCONNECTED
    transport: str | None = None
    server: str | None = None
    retry_attempt: int = 0
    last_error: str | None = None
    last_error_category: str | None = None
    last_latency_ms: float | None = None
    connected_at: float | None = None
    last_probe_at: float | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        return data


@runtime_checkable
class Transport(Protocol):
    """Protocol that all MCP transports must implement.

    A transport only opens the SDK stream pair; `mcp.ClientSession` does the
    JSON-RPC framing and request bookkeeping on top of it.
    """

    @property
    def name(self) -> str: ...

    def streams(self) -> AbstractAsyncContextManager[Streams]:
        """Async context manager yielding `(read_stream, write_stream)`.

        Entering it connects; raising from it means the connection failed.
        """
        ...
