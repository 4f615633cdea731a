"""maas command line.

    maas auth login|logout|status|diagnose
    maas mcp connect|status
    maas config backup|restore|reset
"""

from __future__ import annotations

import asyncio
import logging
import shlex
import signal
import sys
from collections.abc import Coroutine
from pathlib import Path
from typing import Any, TypeVar

import click
from rich.console import Console
from rich.table import Table

from maas import __version__
from maas.auth.codec import (
    JwtToken,
    OAuthToken,
    VendorKey,
    decode_payload,
    describe_credential,
    is_expired,
    parse_vendor_key,
    validate_vendor_key_format,
)
from maas.auth.session import SessionManager
from maas.config import MaasConfig, ServerSettings, load_config
from maas.discovery import ServiceDiscovery
from maas.errors import AuthError, ConfigurationError, MaasError, ValidationError
from maas.protocol.base import ConnectionState
from maas.protocol.client import ProtocolClient
from maas.store.config_store import ConfigStore

logger = logging.getLogger(__name__)

console = Console()
err_console = Console(stderr=True)

T = TypeVar("T")

TRANSPORT_CHOICES = ["websocket", "sse", "stdio"]


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
        force=True,
    )


# ── Wiring ───────────────────────────────────────────────────


class App:
    """Components shared by every command of one invocation."""

    def __init__(self, config: MaasConfig) -> None:
        self.config = config
        self.store = ConfigStore.from_settings(config.config_dir, config.store)
        self.discovery = ServiceDiscovery(self.store, config.discovery)
        self.session = SessionManager(self.store, self.discovery, config.auth)

    def protocol_client(self) -> ProtocolClient:
        return ProtocolClient(self.session, self.discovery, self.config.mcp)

    async def aclose(self) -> None:
        await self.discovery.aclose()


def run_async(main: Coroutine[Any, Any, T]) -> T:
    """Run a coroutine; SIGINT/SIGTERM cancel it instead of killing the process."""

    async def _runner() -> T:
        loop = asyncio.get_running_loop()
        task = asyncio.current_task()
        installed = []
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, _cancel_on_signal, sig, task)
                installed.append(sig)
            except (NotImplementedError, RuntimeError, ValueError) as e:
                logger.debug("Signal handler for %s unavailable: %s", sig.name, e)
        try:
            return await main
        finally:
            for sig in installed:
                loop.remove_signal_handler(sig)

    try:
        return asyncio.run(_runner())
    except asyncio.CancelledError:
        err_console.print("[yellow]Interrupted[/yellow]")
        sys.exit(130)


def _cancel_on_signal(sig: signal.Signals, task: asyncio.Task) -> None:
    logger.info("Received %s, shutting down...", sig.name)
    task.cancel()


def _print_error(error: MaasError) -> None:
    err_console.print(f"[bold red]✗ {error.category} error:[/bold red] {error.message}")
    if error.remediation:
        err_console.print(f"  [dim]→ {error.remediation}[/dim]")


class MaasGroup(click.Group):
    """Turns classified errors into a message, a hint and the mapped exit code."""

    def invoke(self, ctx: click.Context) -> Any:
        try:
            return super().invoke(ctx)
        except MaasError as e:
            _print_error(e)
            sys.exit(e.exit_code)


def _mark(ok: bool | None) -> str:
    if ok is None:
        return "[dim]-[/dim]"
    return "[green]✓[/green]" if ok else "[red]✗[/red]"


# ── Root ─────────────────────────────────────────────────────


@click.group(cls=MaasGroup)
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Settings file (default: ./maas.toml or $MAAS_CONFIG_DIR/maas.toml)",
)
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.version_option(__version__, prog_name="maas")
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None, verbose: bool) -> None:
    """Memory-as-a-service session and MCP connection tool."""
    config = load_config(config_path)
    _setup_logging("DEBUG" if verbose else config.log_level)
    ctx.obj = App(config)


# ── auth ─────────────────────────────────────────────────────


@cli.group()
def auth() -> None:
    """Manage stored credentials."""


@auth.command("login")
@click.option("--vendor-key", "vendor_key", default=None, help="Vendor key (pk_xxx.sk_xxx)")
@click.option("--token", default=None, help="JWT access token")
@click.option("--oauth", is_flag=True, help="Paste an OAuth access token from the browser flow")
@click.option("--refresh-token", default=None, help="OAuth refresh token (with --oauth)")
@click.option("--skip-validation", is_flag=True, help="Store without checking with the server")
@click.pass_obj
def auth_login(
    app: App,
    vendor_key: str | None,
    token: str | None,
    oauth: bool,
    refresh_token: str | None,
    skip_validation: bool,
) -> None:
    """Store a credential after validating it."""
    if sum(bool(x) for x in (vendor_key, token, oauth)) > 1:
        raise click.UsageError("Use only one of --vendor-key, --token, --oauth")

    settings = app.config.auth
    if oauth:
        access = click.prompt("OAuth access token", hide_input=True).strip()
        try:
            expires = decode_payload(access).expires_at_epoch
        except ValidationError:
            expires = None
        credential = OAuthToken(access=access, refresh=refresh_token, expires_at_epoch=expires)
    elif token is not None:
        credential = JwtToken(raw=token.strip(), expires_at_epoch=decode_payload(token).expires_at_epoch)
    else:
        if vendor_key is None:
            vendor_key = click.prompt("Vendor key", hide_input=True, default="", show_default=False)
        credential = parse_vendor_key(
            vendor_key,
            min_public=settings.vendor_key_min_public,
            min_secret=settings.vendor_key_min_secret,
        )

    async def _run() -> None:
        try:
            delay_ms = await app.session.aget_auth_delay_ms()
            if delay_ms:
                console.print(
                    f"[yellow]{await app.session.aget_failure_count()} failed attempts; "
                    f"waiting {delay_ms / 1000:.1f}s[/yellow]"
                )
                await asyncio.sleep(delay_ms / 1000)
            try:
                await app.session.set_credential(
                    credential, skip_validation=skip_validation or None
                )
            except AuthError:
                await app.session.aincrement_failure_count()
                raise
        finally:
            await app.aclose()

    run_async(_run())
    console.print(f"[green]✓ Logged in[/green] with {describe_credential(credential)}")


@auth.command("logout")
@click.pass_obj
def auth_logout(app: App) -> None:
    """Clear the stored credential (device id is kept)."""
    app.session.logout()
    console.print("[green]✓ Logged out[/green]")


@auth.command("status")
@click.pass_obj
def auth_status(app: App) -> None:
    """Show the stored session."""
    info = app.session.status()
    table = Table(title="Session", show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Authenticated", _mark(info["authenticated"]))
    table.add_row("Method", info["auth_method"] or "-")
    table.add_row("Credential", info["credential"])
    if info["expires_at"]:
        expired = " [red](expired)[/red]" if info["expired"] else ""
        table.add_row("Expires", f"{info['expires_at']}{expired}")
    if info["user"]:
        table.add_row("User", info["user"].get("email") or "-")
    table.add_row("Device", info["device_id"])
    table.add_row("Failures", str(info["failure_count"]))
    if info["auth_delay_ms"]:
        table.add_row("Next attempt delay", f"{info['auth_delay_ms']} ms")
    table.add_row("Last validated", info["last_validated"] or "never")
    table.add_row("Config", info["config_path"])
    console.print(table)


@auth.command("diagnose")
@click.pass_obj
def auth_diagnose(app: App) -> None:
    """Check credential, server validation and service discovery step by step."""

    async def _run() -> list[tuple[str, bool | None, str]]:
        rows: list[tuple[str, bool | None, str]] = []
        credential = await app.session.aget_active_credential()
        rows.append(("Credential present", credential is not None, describe_credential(credential)))

        if isinstance(credential, VendorKey):
            problem = validate_vendor_key_format(
                credential.text,
                min_public=app.config.auth.vendor_key_min_public,
                min_secret=app.config.auth.vendor_key_min_secret,
            )
            rows.append(("Format", problem is None, problem or "vendor key format ok"))
        elif credential is not None:
            expired = is_expired(credential.expires_at_epoch, app.config.auth.refresh_buffer_ms)
            rows.append(("Format", not expired, "token expiring" if expired else "token valid"))
        else:
            rows.append(("Format", None, "skipped"))

        try:
            await app.discovery.discover(force=True)
        except MaasError as e:
            rows.append(("Service discovery", False, e.message))
        else:
            result = app.discovery.last_result
            detail = result.source if result else "unknown"
            if result and result.error:
                detail += f" ({result.error.message})"
            rows.append(("Service discovery", result is not None and result.source == "remote", detail))
            if result:
                for name, url in sorted(result.manifest.items()):
                    rows.append((f"  {name}", None, url))

        if credential is not None:
            ok = await app.session.validate_stored_credentials()
            error = app.session.last_validation_error
            rows.append(("Server validation", ok, "accepted" if ok else error.message if error else "failed"))
        else:
            rows.append(("Server validation", None, "skipped"))

        count = await app.session.aget_failure_count()
        delay = await app.session.aget_auth_delay_ms()
        rows.append(("Failure count", count == 0, f"{count} (next delay {delay} ms)"))
        await app.aclose()
        return rows

    rows = run_async(_run())
    table = Table(title="Authentication diagnostics")
    table.add_column("Check", style="cyan")
    table.add_column("", justify="center")
    table.add_column("Detail")
    for check, ok, detail in rows:
        table.add_row(check, _mark(ok), detail)
    console.print(table)


# ── mcp ──────────────────────────────────────────────────────


@cli.group()
def mcp() -> None:
    """Connect to the MCP server."""


def _servers_from_options(url: str | None, local: str | None) -> list[ServerSettings] | None:
    servers = []
    if url:
        if url.startswith(("ws://", "wss://")):
            servers.append(ServerSettings(name=url, ws_url=url))
        else:
            servers.append(ServerSettings(name=url, sse_url=url))
    if local:
        servers.append(ServerSettings(name="local", command=shlex.split(local)))
    return servers or None


@mcp.command("connect")
@click.option(
    "--transport",
    "-t",
    "transports",
    multiple=True,
    type=click.Choice(TRANSPORT_CHOICES),
    help="Transport preference, repeatable (default: websocket, sse, stdio)",
)
@click.option("--url", default=None, help="Server URL (ws(s):// for WebSocket, http(s):// for SSE)")
@click.option("--local", default=None, help="Command that starts a local MCP server")
@click.option("--watch", is_flag=True, help="Stay connected and report health until interrupted")
@click.pass_obj
def mcp_connect(
    app: App,
    transports: tuple[str, ...],
    url: str | None,
    local: str | None,
    watch: bool,
) -> None:
    """Connect, list the server's tools, and optionally keep watching."""
    preferences = list(transports) or None
    if local and not preferences and not url:
        preferences = ["stdio"]
    servers = _servers_from_options(url, local)

    async def _run() -> None:
        client = app.protocol_client()
        try:
            status = await client.connect(preferences, servers=servers)
            console.print(
                f"[green]✓ Connected[/green] to [cyan]{status.server}[/cyan] over {status.transport}"
            )
            tools = await client.list_tools()
            console.print(f"  {len(tools)} tools available")
            for tool in tools:
                console.print(f"  • [bold]{tool.get('name', '?')}[/bold] {tool.get('description', '')}")
            while watch:
                await asyncio.sleep(app.config.mcp.health_interval or 30.0)
                current = client.status()
                if current.state is ConnectionState.CONNECTED:
                    latency = (
                        f"{current.last_latency_ms:.0f} ms"
                        if current.last_latency_ms is not None
                        else "n/a"
                    )
                    console.print(f"[dim]{current.state.value} ({current.transport}, {latency})[/dim]")
                else:
                    console.print(f"[yellow]{current.state.value}[/yellow] {current.last_error or ''}")
                if current.state is ConnectionState.FAILED:
                    raise MaasError(current.last_error or "Connection failed")
        finally:
            await client.close()
            await app.aclose()

    run_async(_run())


@mcp.command("status")
@click.pass_obj
def mcp_status(app: App) -> None:
    """Show the last connection outcome and the endpoints in use."""
    config = app.store.load()
    services, discovered_at = app.discovery.cached()

    table = Table(title="MCP", show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Authenticated", _mark(config.credential is not None))
    table.add_row("Transports", ", ".join(app.config.mcp.transports))
    for server in app.config.mcp.servers:
        table.add_row(f"Server {server.name}", server.ws_url or server.sse_url or " ".join(server.command))
    for name in ("mcp_ws_base", "mcp_sse_base", "mcp_base"):
        table.add_row(name, services.get(name, "-"))
    table.add_row("Endpoints cached", "yes" if discovered_at else "fallback/none")
    error = config.last_connection_error
    if error:
        table.add_row(
            "Last error",
            f"[red]{error.get('category')}[/red]: {error.get('message')} ({error.get('at')})",
        )
    else:
        table.add_row("Last error", "none")
    console.print(table)


# ── config ───────────────────────────────────────────────────


@cli.group("config")
def config_group() -> None:
    """Back up, restore or reset the session document."""


@config_group.command("backup")
@click.pass_obj
def config_backup(app: App) -> None:
    path = app.store.backup()
    console.print(f"[green]✓ Backup written:[/green] {path}")


@config_group.command("restore")
@click.argument("path", required=False, type=click.Path(dir_okay=False, path_type=Path))
@click.pass_obj
def config_restore(app: App, path: Path | None) -> None:
    """Restore PATH, or the newest backup when omitted."""
    source = path or app.store.latest_backup()
    if source is None:
        raise ConfigurationError("No backups found", remediation="Run: maas config backup")
    app.store.restore(source)
    console.print(f"[green]✓ Restored[/green] from {source}")


@config_group.command("reset")
@click.confirmation_option(prompt="Reset the session document (a backup is kept)?")
@click.pass_obj
def config_reset(app: App) -> None:
    app.session.reset()
    console.print("[green]✓ Session reset[/green] (device id kept)")


def main() -> None:
    cli(prog_name="maas")
