"""Settings loading from environment variables and maas.toml.

These are tool settings (endpoints, retry policy, lock timings). The session
document that holds credentials lives in `maas.store`.
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib
from pathlib import Path

_DEFAULT_CONFIG_DIR = Path.home() / ".maas"
_SETTINGS_FILENAME = "maas.toml"

DEFAULT_DISCOVERY_URL = "https://api.lanonasis.com/.well-known/onasis.json"
DEFAULT_TRANSPORTS = ["websocket", "sse", "stdio"]


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class DiscoverySettings:
    """Service discovery endpoint and cache policy."""

    url: str = DEFAULT_DISCOVERY_URL
    ttl_seconds: int = 3600
    timeout: float = 5.0
    skip: bool = False


@dataclass
class AuthSettings:
    """Credential validation knobs."""

    skip_server_validation: bool = False
    refresh_buffer_ms: int = 300_000
    vendor_key_min_public: int = 8
    vendor_key_min_secret: int = 16
    timeout: float = 10.0


@dataclass
class StoreSettings:
    """Config document locking and backups."""

    lock_timeout_ms: int = 2000
    lock_retries: int = 3
    lock_backoff_ms: int = 100
    stale_lock_seconds: int = 300
    max_backups: int = 10


@dataclass
class ServerSettings:
    """One MCP server. Empty URLs are filled from the discovered manifest."""

    name: str = "default"
    ws_url: str = ""
    sse_url: str = ""
    http_url: str = ""
    command: list[str] = field(default_factory=list)


@dataclass
class McpSettings:
    """Transport preference, retry policy and health monitoring."""

    transports: list[str] = field(default_factory=lambda: list(DEFAULT_TRANSPORTS))
    servers: list[ServerSettings] = field(default_factory=list)
    local_command: list[str] = field(default_factory=list)
    initial_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 10.0
    max_retries: int = 3
    connect_timeout: float = 10.0
    request_timeout: float = 30.0
    health_interval: float = 30.0
    probe_timeout: float = 5.0


@dataclass
class MaasConfig:
    """Top-level maas settings."""

    discovery: DiscoverySettings = field(default_factory=DiscoverySettings)
    auth: AuthSettings = field(default_factory=AuthSettings)
    store: StoreSettings = field(default_factory=StoreSettings)
    mcp: McpSettings = field(default_factory=McpSettings)
    config_dir: Path = _DEFAULT_CONFIG_DIR
    log_level: str = "INFO"


def _split_command(raw: str | list[str] | None) -> list[str]:
    if not raw:
        return []
    if isinstance(raw, list):
        return [str(part) for part in raw]
    return raw.split()


def _load_servers(raw: list[dict]) -> list[ServerSettings]:
    servers = []
    for i, entry in enumerate(raw):
        servers.append(
            ServerSettings(
                name=entry.get("name", f"server-{i + 1}"),
                ws_url=entry.get("ws_url", ""),
                sse_url=entry.get("sse_url", ""),
                http_url=entry.get("http_url", ""),
                command=_split_command(entry.get("command")),
            )
        )
    return servers


def load_config(config_path: Path | None = None) -> MaasConfig:
    """Load settings from environment variables and optional maas.toml.

    Priority: environment variables > maas.toml > defaults.
    """
    config_dir = Path(os.getenv("MAAS_CONFIG_DIR", str(_DEFAULT_CONFIG_DIR)))

    file_data: dict = {}
    if config_path and config_path.exists():
        file_data = tomllib.loads(config_path.read_text())
    else:
        # Search current dir and the config dir
        for candidate in [Path.cwd() / _SETTINGS_FILENAME, config_dir / _SETTINGS_FILENAME]:
            if candidate.exists():
                file_data = tomllib.loads(candidate.read_text())
                break

    discovery_data = file_data.get("discovery", {})
    auth_data = file_data.get("auth", {})
    store_data = file_data.get("store", {})
    mcp_data = file_data.get("mcp", {})

    transports = os.getenv("MAAS_MCP_TRANSPORTS")
    config = MaasConfig(
        discovery=DiscoverySettings(
            url=os.getenv("MAAS_DISCOVERY_URL", discovery_data.get("url", DEFAULT_DISCOVERY_URL)),
            ttl_seconds=int(
                os.getenv("MAAS_DISCOVERY_TTL", discovery_data.get("ttl_seconds", 3600))
            ),
            timeout=float(discovery_data.get("timeout", 5.0)),
            skip=_env_bool("MAAS_SKIP_SERVICE_DISCOVERY", discovery_data.get("skip", False)),
        ),
        auth=AuthSettings(
            skip_server_validation=_env_bool(
                "MAAS_SKIP_SERVER_VALIDATION", auth_data.get("skip_server_validation", False)
            ),
            refresh_buffer_ms=int(auth_data.get("refresh_buffer_ms", 300_000)),
            vendor_key_min_public=int(
                os.getenv("MAAS_VENDOR_KEY_MIN_PUBLIC", auth_data.get("vendor_key_min_public", 8))
            ),
            vendor_key_min_secret=int(
                os.getenv("MAAS_VENDOR_KEY_MIN_SECRET", auth_data.get("vendor_key_min_secret", 16))
            ),
            timeout=float(auth_data.get("timeout", 10.0)),
        ),
        store=StoreSettings(
            lock_timeout_ms=int(store_data.get("lock_timeout_ms", 2000)),
            lock_retries=int(store_data.get("lock_retries", 3)),
            lock_backoff_ms=int(store_data.get("lock_backoff_ms", 100)),
            stale_lock_seconds=int(store_data.get("stale_lock_seconds", 300)),
            max_backups=int(store_data.get("max_backups", 10)),
        ),
        mcp=McpSettings(
            transports=(
                [t.strip() for t in transports.split(",") if t.strip()]
                if transports
                else list(mcp_data.get("transports", DEFAULT_TRANSPORTS))
            ),
            servers=_load_servers(mcp_data.get("servers", [])),
            local_command=_split_command(
                os.getenv("MAAS_MCP_LOCAL_COMMAND", mcp_data.get("local_command"))
            ),
            initial_delay=float(mcp_data.get("initial_delay", 1.0)),
            multiplier=float(mcp_data.get("multiplier", 2.0)),
            max_delay=float(mcp_data.get("max_delay", 10.0)),
            max_retries=int(os.getenv("MAAS_MCP_MAX_RETRIES", mcp_data.get("max_retries", 3))),
            connect_timeout=float(mcp_data.get("connect_timeout", 10.0)),
            request_timeout=float(mcp_data.get("request_timeout", 30.0)),
            health_interval=float(
                os.getenv("MAAS_MCP_HEALTH_INTERVAL", mcp_data.get("health_interval", 30.0))
            ),
            probe_timeout=float(mcp_data.get("probe_timeout", 5.0)),
        ),
        config_dir=config_dir,
        log_level=os.getenv("MAAS_LOG_LEVEL", file_data.get("log_level", "INFO")),
    )
    return config
