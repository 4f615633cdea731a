"""Error taxonomy and boundary classification.

Every failure that business logic inspects is one of the types below.
Raw aiohttp, httpx, anyio, MCP SDK and OS exceptions are converted by
`classify_exception` at the edge (HTTP calls, transports) before anything else
looks at them.
"""

from __future__ import annotations

import asyncio
import socket
import ssl
from typing import Any

import aiohttp
import anyio
import httpx
from mcp.shared.exceptions import McpError


class MaasError(Exception):
    """Base class for all classified errors."""

    category = "error"
    retryable = False
    exit_code = 1

    def __init__(self, message: str, *, remediation: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self._remediation = remediation

    @property
    def remediation(self) -> str:
        return self._remediation or ""

    def to_dict(self) -> dict[str, Any]:
        return {"category": self.category, "message": self.message}


class ValidationError(MaasError):
    """Malformed credential or input. Surfaced immediately, never retried."""

    category = "validation"
    exit_code = 3

    @property
    def remediation(self) -> str:
        return self._remediation or "Vendor keys look like pk_xxx.sk_xxx"


_AUTH_HINTS = {
    "required": "No credentials found. Run: maas auth login",
    "invalid": "Invalid credentials. Run: maas auth logout && maas auth login",
    "expired": "Token expired. Re-authenticate: maas auth login",
    "rejected": "The server rejected the credential. Run: maas auth login",
}


class AuthError(MaasError):
    """The credential is missing, expired or rejected by the server."""

    category = "auth"
    exit_code = 4

    def __init__(
        self,
        message: str,
        *,
        code: str = "rejected",
        status: int | None = None,
        remediation: str | None = None,
    ) -> None:
        super().__init__(message, remediation=remediation)
        self.code = code
        self.status = status

    @property
    def remediation(self) -> str:
        return self._remediation or _AUTH_HINTS.get(self.code, _AUTH_HINTS["rejected"])


_NETWORK_HINTS = {
    "refused": "Connection refused. The service may be down; check the server URL and status page",
    "timeout": "Connection timeout. Check network connectivity and firewall settings",
    "dns": "DNS resolution failed. Check DNS settings and verify the server URL",
    "tls": "SSL/TLS certificate issue. Check system time and update CA certificates",
    "unavailable": "Server unavailable. Check server status and retry later",
}


class NetworkError(MaasError):
    """Timeout, DNS failure, refused connection or server unavailability."""

    category = "network"
    retryable = True
    exit_code = 5

    def __init__(
        self,
        message: str,
        *,
        kind: str = "unavailable",
        remediation: str | None = None,
    ) -> None:
        super().__init__(message, remediation=remediation)
        self.kind = kind

    @property
    def remediation(self) -> str:
        return self._remediation or _NETWORK_HINTS.get(self.kind, _NETWORK_HINTS["unavailable"])


class ProtocolError(MaasError):
    """Transport-level framing or handshake failure."""

    category = "protocol"
    retryable = True
    exit_code = 6

    @property
    def remediation(self) -> str:
        return self._remediation or "Try a different transport: maas mcp connect --transport sse"


class RpcError(ProtocolError):
    """The server answered with a JSON-RPC error object. Not a transport failure."""

    retryable = False

    def __init__(self, code: int, message: str, data: Any = None) -> None:
        super().__init__(f"Server error {code}: {message}")
        self.code = code
        self.data = data


class ConfigurationError(MaasError):
    """Not retryable: nothing to connect to, or unusable settings."""

    category = "configuration"
    exit_code = 7


class UnsupportedConfigVersion(ConfigurationError):
    """The config document was written by a newer release."""

    def __init__(self, version: int, supported: int) -> None:
        super().__init__(
            f"Config document version {version} is newer than supported version {supported}",
            remediation="Upgrade maas, or move the config file aside to start fresh",
        )
        self.version = version
        self.supported = supported


class ConfigCorruptionError(MaasError):
    """The config document is unreadable, or its lock cannot be obtained."""

    category = "corruption"
    exit_code = 8


class ConfigLockError(ConfigCorruptionError):
    """The config lock stayed busy past every retry."""

    @property
    def remediation(self) -> str:
        return self._remediation or "Another maas process holds the config lock; retry shortly"


# ── Boundary classification ──────────────────────────────────

# MCP SDK error codes for a request that timed out and a closed connection.
_MCP_REQUEST_TIMEOUT = 408
_MCP_CONNECTION_CLOSED = -32000


def unwrap_exception(exc: BaseException) -> BaseException:
    """Innermost first member of (nested) exception groups raised by anyio task groups."""
    while True:
        members = getattr(exc, "exceptions", None)
        if not members:
            return exc
        exc = members[0]


def _network_kind(exc: BaseException) -> str:
    if isinstance(
        exc,
        (asyncio.TimeoutError, TimeoutError, aiohttp.ServerTimeoutError, httpx.TimeoutException),
    ):
        return "timeout"
    if isinstance(exc, (aiohttp.ClientSSLError, ssl.SSLError)):
        return "tls"
    os_error = getattr(exc, "os_error", None)
    if os_error is None and isinstance(exc, httpx.TransportError):
        os_error = exc.__cause__ or exc.__context__
    if isinstance(exc, socket.gaierror) or isinstance(os_error, socket.gaierror):
        return "dns"
    if isinstance(exc, ConnectionRefusedError) or isinstance(os_error, ConnectionRefusedError):
        return "refused"
    return "unavailable"


def classify_status(status: int, message: str) -> MaasError:
    """Map an HTTP status code to the taxonomy."""
    if status in (401, 403):
        return AuthError(f"{message} (HTTP {status})", code="rejected", status=status)
    if status in (408, 429) or status >= 500:
        return NetworkError(f"{message} (HTTP {status})", kind="unavailable")
    return ProtocolError(f"{message} (HTTP {status})")


def _classify_mcp(exc: McpError, context: str) -> MaasError:
    code = exc.error.code
    if code == _MCP_REQUEST_TIMEOUT:
        return NetworkError(f"{context}: {exc.error.message}", kind="timeout")
    if code == _MCP_CONNECTION_CLOSED:
        return ProtocolError(f"{context}: connection closed by server")
    return RpcError(code, exc.error.message, exc.error.data)


def _classify(exc: BaseException, context: str) -> MaasError | None:
    if isinstance(exc, MaasError):
        return exc
    if isinstance(exc, McpError):
        return _classify_mcp(exc, context)
    if isinstance(exc, aiohttp.WSServerHandshakeError):
        if exc.status in (401, 403):
            return AuthError(
                f"{context}: WebSocket handshake rejected (HTTP {exc.status})",
                code="rejected",
                status=exc.status,
            )
        return ProtocolError(f"{context}: WebSocket handshake failed (HTTP {exc.status})")
    if isinstance(exc, aiohttp.ClientResponseError):
        return classify_status(exc.status, f"{context}: {exc.message}")
    if isinstance(exc, httpx.HTTPStatusError):
        return classify_status(exc.response.status_code, f"{context}: {exc.response.reason_phrase}")
    if isinstance(exc, (anyio.ClosedResourceError, anyio.BrokenResourceError, anyio.EndOfStream)):
        return ProtocolError(f"{context}: connection closed")
    if isinstance(
        exc,
        (
            aiohttp.ClientConnectionError,
            httpx.TransportError,
            asyncio.TimeoutError,
            TimeoutError,
            ConnectionError,
            socket.gaierror,
            ssl.SSLError,
        ),
    ):
        kind = _network_kind(exc)
        return NetworkError(f"{context}: {str(exc) or type(exc).__name__}", kind=kind)
    if isinstance(exc, FileNotFoundError):
        return ConfigurationError(f"{context}: {exc}")
    if isinstance(exc, ValueError):
        return ProtocolError(f"{context}: malformed response ({exc})")
    if isinstance(exc, (aiohttp.ClientError, httpx.HTTPError)):
        return ProtocolError(f"{context}: {exc}")
    if isinstance(exc, OSError):
        return NetworkError(f"{context}: {exc}", kind=_network_kind(exc))
    return None


def classify_exception(exc: BaseException, context: str = "Request failed") -> MaasError:
    """Convert a raw exception into a `MaasError`. Already-classified errors pass through.

    Exception groups are unwrapped first. Anything outside the taxonomy is re-raised.
    """
    error = _classify(unwrap_exception(exc), context)
    if error is None:
        raise exc
    return error


def connection_error(exc: BaseException, context: str) -> MaasError:
    """Like `classify_exception`, but an unknown failure becomes a `ProtocolError`."""
    root = unwrap_exception(exc)
    error = _classify(root, context)
    if error is None:
        return ProtocolError(f"{context}: {type(root).__name__}: {root}")
    return error
