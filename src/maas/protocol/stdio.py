"""Local MCP server subprocess with newline-delimited JSON-RPC on stdin/stdout."""

from __future__ import annotations

import logging
import shutil
import subprocess
from contextlib import AbstractAsyncContextManager

from mcp import StdioServerParameters
from mcp.client.stdio import stdio_client

from maas.errors import ConfigurationError
from maas.protocol.base import Streams

logger = logging.getLogger(__name__)


class StdioTransport:
    """Spawns the local MCP server through `mcp.client.stdio.stdio_client`.

    The SDK owns the process lifecycle: stdin is closed on exit, then the
    process is terminated and finally killed.
    """

    name = "stdio"

    def __init__(
        self,
        command: list[str],
        *,
        env: dict[str, str] | None = None,
        cwd: str | None = None,
    ) -> None:
        self.command = list(command)
        self.env = dict(env or {})
        self.cwd = cwd

    def parameters(self) -> StdioServerParameters:
        """Resolve the executable. Raises ConfigurationError when there is none."""
        if not self.command:
            raise ConfigurationError(
                "No local MCP server command configured",
                remediation="Set [mcp] local_command in maas.toml or pass --local CMD",
            )
        executable = shutil.which(self.command[0])
        if executable is None:
            raise ConfigurationError(
                f"Local MCP server not found: {self.command[0]}",
                remediation="Check [mcp] local_command points at an installed executable",
            )
        # Extra variables are layered over the SDK's default environment
        return StdioServerParameters(
            command=executable,
            args=self.command[1:],
            env=self.env or None,
            cwd=self.cwd,
        )

    def streams(self) -> AbstractAsyncContextManager[Streams]:
        params = self.parameters()
        logger.debug("Starting: %s %s", params.command, " ".join(params.args))
        return stdio_client(params, errlog=subprocess.DEVNULL)
