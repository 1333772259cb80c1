"""PHKVS Console CLI.

Operator console for a PHKVStorage server. Every command opens one
WebSocket session, issues its JSON-RPC call(s) and exits.

Usage:
    phkvs-console health                          # Check the server's HTTP origin
    phkvs-console config                          # Show effective configuration

    phkvs-console volumes list                    # List mounted volumes
    phkvs-console volumes create <path> <name>    # Create and mount a volume
    phkvs-console volumes mount <path> <name>     # Mount an existing volume
    phkvs-console volumes unmount <id>            # Unmount a volume

    phkvs-console data ls [dir]                   # List a directory
    phkvs-console data lookup <key>               # Show a key's type and value
    phkvs-console data store <key> <type> <value> # Store a typed value
    phkvs-console data erase-key <key>            # Erase a key
    phkvs-console data erase-dir <dir>            # Erase a directory recursively
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import click
import httpx
from pydantic import ValidationError

from .protocol.errors import RpcError, TransportError
from .sdk.client import StorageConsoleClient
from .sdk.transport import ClientTransportConfig, WebSocketRpcTransport, derive_ws_url
from .sdk.types import ValueType

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Output format options
FORMAT_TABLE = "table"
FORMAT_JSON = "json"

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def truncate(text: str | None, max_len: int = 50) -> str:
    """Truncate text for display."""
    if not text:
        return ""
    if len(text) <= max_len:
        return text
    return text[: max_len - 3] + "..."


def _configure_logging(verbosity: int) -> None:
    """Send all logging to stderr; stdout is reserved for command output."""
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root_logger.addHandler(stderr_handler)

    if verbosity >= 2:
        root_logger.setLevel(logging.DEBUG)
    elif verbosity == 1:
        root_logger.setLevel(logging.INFO)
    else:
        root_logger.setLevel(logging.WARNING)


class ConsoleObserver:
    """Connection observer that keeps the last socket error for reporting."""

    def __init__(self) -> None:
        self.error: Exception | None = None

    def on_connect(self) -> None:
        logger.info("Connected")

    def on_error(self, error: Exception) -> None:
        self.error = error
        logger.warning(f"Connection error: {error}")

    def on_disconnect(self) -> None:
        logger.info("Disconnected")


def _make_client(config: ClientTransportConfig, observer: ConsoleObserver) -> StorageConsoleClient:
    return StorageConsoleClient(_transport=WebSocketRpcTransport(config), _observer=observer)


def _run(
    ctx: click.Context,
    operation: Callable[[StorageConsoleClient], Awaitable[T]],
) -> T:
    """Connect, run one operation, disconnect. Errors exit with status 1."""
    config: ClientTransportConfig = ctx.obj
    observer = ConsoleObserver()

    async def execute() -> T:
        async with _make_client(config, observer) as client:
            return await operation(client)

    try:
        return asyncio.run(execute())
    except RpcError as e:
        click.echo(f"Error {e.code}: {e.message}", err=True)
        sys.exit(1)
    except ValidationError as e:
        click.echo(f"Unexpected response from server: {e}", err=True)
        sys.exit(1)
    except TransportError as e:
        reason = observer.error or e
        click.echo(f"Connection to {config.ws_url} failed: {reason}", err=True)
        sys.exit(1)


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, ensure_ascii=False, default=str))


format_option = click.option(
    "--format",
    "-f",
    "output_format",
    type=click.Choice([FORMAT_TABLE, FORMAT_JSON]),
    default=FORMAT_TABLE,
    help="Output format",
)


@click.group()
@click.option("--url", default=None, help="Server URL (default: $PHKVS_CONSOLE_URL or built-in)")
@click.option(
    "--id-format",
    type=click.Choice(["string", "numeric"]),
    default=None,
    help="Request id format (the reference server needs numeric)",
)
@click.option("-v", "--verbose", count=True, help="Increase log verbosity (-v info, -vv debug)")
@click.pass_context
def main(ctx: click.Context, url: str | None, id_format: str | None, verbose: int) -> None:
    """PHKVS Console - administer a PHKVStorage server over JSON-RPC."""
    _configure_logging(verbose)

    numeric_ids = None if id_format is None else id_format == "numeric"
    try:
        config = ClientTransportConfig.from_env(base_url=url, numeric_request_ids=numeric_ids)
        derive_ws_url(config.base_url, config.ws_path)
    except ValueError as e:
        raise click.UsageError(str(e)) from e
    ctx.obj = config


@main.command("health")
@click.pass_context
def health(ctx: click.Context) -> None:
    """Check that the server's HTTP origin answers."""
    config: ClientTransportConfig = ctx.obj
    url = config.base_url.rstrip("/") + "/"

    async def check() -> None:
        try:
            async with httpx.AsyncClient(timeout=config.open_timeout) as client:
                response = await client.get(url)
        except httpx.ConnectError:
            click.echo(f"Cannot connect to server at {url}", err=True)
            sys.exit(1)
        except httpx.HTTPError as e:
            click.echo(f"Request to {url} failed: {e}", err=True)
            sys.exit(1)

        if response.status_code >= 400:
            click.echo(f"Server returned {response.status_code}", err=True)
            sys.exit(1)
        click.echo(f"Server is up: {url} ({response.status_code})")

    asyncio.run(check())


@main.command("config")
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
@click.pass_context
def show_config(ctx: click.Context, output_json: bool) -> None:
    """Show effective configuration.

    Examples:

        phkvs-console config
        phkvs-console --url https://storage.example:8443 config --json
    """
    config: ClientTransportConfig = ctx.obj
    data = {
        "base_url": config.base_url,
        "ws_url": config.ws_url,
        "numeric_request_ids": config.numeric_request_ids,
        "reject_pending_on_disconnect": config.reject_pending_on_disconnect,
    }

    if output_json:
        _echo_json(data)
        return

    click.echo("PHKVS Console Configuration")
    click.echo("-" * 40)
    click.echo(f"Server URL:         {data['base_url']}")
    click.echo(f"WebSocket URL:      {data['ws_url']}")
    click.echo(f"Numeric ids:        {data['numeric_request_ids']}")
    click.echo(f"Reject on close:    {data['reject_pending_on_disconnect']}")


# =============================================================================
# Volume Commands
# =============================================================================


@main.group()
def volumes() -> None:
    """Manage storage volumes."""


@volumes.command("list")
@format_option
@click.pass_context
def volumes_list(ctx: click.Context, output_format: str) -> None:
    """List mounted volumes.

    Examples:

        phkvs-console volumes list
        phkvs-console volumes list --format json
    """

    async def operation(client: StorageConsoleClient) -> Any:
        return await client.volumes.list()

    items = _run(ctx, operation)

    if output_format == FORMAT_JSON:
        _echo_json([v.model_dump(by_alias=True) for v in items])
        return

    if not items:
        click.echo("No volumes mounted.")
        return

    click.echo(f"{'ID':>4} {'Name':<20} {'Mount point':<25} {'Path':<30}")
    click.echo("-" * 82)
    for v in items:
        click.echo(
            f"{v.volume_id:>4} {truncate(v.volume_name, 20):<20} "
            f"{truncate(v.mount_point_path, 25):<25} {truncate(v.volume_path, 30):<30}"
        )
    click.echo(f"\nTotal: {len(items)} volume(s)")


@volumes.command("create")
@click.argument("volume_path")
@click.argument("volume_name")
@click.option("--mount-point", "-m", default="/", show_default=True, help="Key path to mount at")
@click.pass_context
def volumes_create(ctx: click.Context, volume_path: str, volume_name: str, mount_point: str) -> None:
    """Create a volume and mount it."""

    async def operation(client: StorageConsoleClient) -> Any:
        return await client.volumes.create_and_mount(volume_path, volume_name, mount_point)

    volume_id = _run(ctx, operation)
    suffix = f" (id {volume_id})" if volume_id is not None else ""
    click.echo(f"Created and mounted {volume_name} at {mount_point}{suffix}")


@volumes.command("mount")
@click.argument("volume_path")
@click.argument("volume_name")
@click.option("--mount-point", "-m", default="/", show_default=True, help="Key path to mount at")
@click.pass_context
def volumes_mount(ctx: click.Context, volume_path: str, volume_name: str, mount_point: str) -> None:
    """Mount an existing volume."""

    async def operation(client: StorageConsoleClient) -> Any:
        return await client.volumes.mount(volume_path, volume_name, mount_point)

    volume_id = _run(ctx, operation)
    suffix = f" (id {volume_id})" if volume_id is not None else ""
    click.echo(f"Mounted {volume_name} at {mount_point}{suffix}")


@volumes.command("unmount")
@click.argument("volume_id", type=int)
@click.pass_context
def volumes_unmount(ctx: click.Context, volume_id: int) -> None:
    """Unmount a volume by id."""

    async def operation(client: StorageConsoleClient) -> None:
        await client.volumes.unmount(volume_id)

    _run(ctx, operation)
    click.echo(f"Unmounted volume {volume_id}")


# =============================================================================
# Data Commands
# =============================================================================


@main.group()
def data() -> None:
    """Browse and edit the key namespace."""


@data.command("ls")
@click.argument("directory", default="/")
@format_option
@click.pass_context
def data_ls(ctx: click.Context, directory: str, output_format: str) -> None:
    """List the entries of a directory.

    Examples:

        phkvs-console data ls
        phkvs-console data ls /config --format json
    """

    async def operation(client: StorageConsoleClient) -> Any:
        return await client.data.list_dir(directory)

    listing = _run(ctx, operation)

    if output_format == FORMAT_JSON:
        _echo_json(listing.model_dump())
        return

    click.echo(f"{listing.dir}:")
    if not listing.content:
        click.echo("  (empty)")
        return
    for entry in listing.content:
        if entry.is_dir:
            click.echo(f"  {entry.name}/")
        elif entry.value is not None:
            click.echo(f"  {entry.name} = {truncate(str(entry.value), 60)}")
        else:
            click.echo(f"  {entry.name}")


@data.command("lookup")
@click.argument("key")
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
@click.pass_context
def data_lookup(ctx: click.Context, key: str, output_json: bool) -> None:
    """Show the type and value stored under a key."""

    async def operation(client: StorageConsoleClient) -> Any:
        return await client.data.lookup(key)

    result = _run(ctx, operation)

    if output_json:
        _echo_json(result.model_dump())
        return

    click.echo(f"Type:  {result.type}")
    click.echo(f"Value: {result.value}")


@data.command("store")
@click.argument("key")
@click.argument("value_type", type=click.Choice([t.value for t in ValueType]))
@click.argument("value")
@click.pass_context
def data_store(ctx: click.Context, key: str, value_type: str, value: str) -> None:
    """Store VALUE of VALUE_TYPE under KEY.

    Examples:

        phkvs-console data store /counter uint32 42
        phkvs-console data store /blob blob deadbeef
    """

    async def operation(client: StorageConsoleClient) -> None:
        await client.data.store(key, value_type, value)

    _run(ctx, operation)
    click.echo("Stored")


@data.command("erase-key")
@click.argument("key")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation")
@click.pass_context
def data_erase_key(ctx: click.Context, key: str, yes: bool) -> None:
    """Erase a single key."""
    if not yes:
        click.confirm(f"Erase key {key}?", abort=True)

    async def operation(client: StorageConsoleClient) -> None:
        await client.data.erase_key(key)

    _run(ctx, operation)
    click.echo(f"Erased {key}")


@data.command("erase-dir")
@click.argument("directory")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation")
@click.pass_context
def data_erase_dir(ctx: click.Context, directory: str, yes: bool) -> None:
    """Erase a directory and everything below it."""
    if not yes:
        click.confirm(f"Erase {directory} and everything below it?", abort=True)

    async def operation(client: StorageConsoleClient) -> None:
        await client.data.erase_dir_recursive(directory)

    _run(ctx, operation)
    click.echo(f"Erased {directory}")


if __name__ == "__main__":
    main()
