"""MCP transports, SDK session ownership and the connection client."""

from maas.protocol.base import ConnectionState, ConnectionStatus, Transport

__all__ = ["ConnectionState", "ConnectionStatus", "Transport"]
