"""maas: session/credential layer and MCP connection client."""

__version__ = "0.1.0"
