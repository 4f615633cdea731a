"""HTTP+SSE transport.

The server streams events on a GET; the first `endpoint` event names the URL
that outbound messages are POSTed to. `mcp.client.sse.sse_client` speaks that
exchange; this class only carries the URL, auth headers and timeouts.
"""

from __future__ import annotations

from contextlib import AbstractAsyncContextManager

from mcp.client.sse import sse_client

from maas.protocol.base import Streams


class SseTransport:
    """SDK SSE client with the session's auth headers."""

    name = "sse"

    def __init__(
        self,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        timeout: float = 10.0,
        read_timeout: float = 300.0,
    ) -> None:
        self.url = url
        self.headers = dict(headers or {})
        self.timeout = timeout
        self.read_timeout = read_timeout

    def streams(self) -> AbstractAsyncContextManager[Streams]:
        return sse_client(
            self.url,
            headers=self.headers,
            timeout=self.timeout,
            sse_read_timeout=self.read_timeout,
        )
