"""
flowbridge CLI - Command line interface for the flow to Matter bridge.
"""

import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

import aiohttp
import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .config import Config, DEFAULT_DATA_DIR, StackConfig
from .devices.kinds import DEVICE_KINDS
from .devices.models import DeviceDescriptor
from .errors import InvalidValue
from .protocol.base import ProtocolStack

console = Console()


def setup_logging(verbose: bool = False, level: str = "INFO"):
    """Set up logging configuration."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=[logging.StreamHandler()]
    )


def run_async(coro):
    """Run an async function."""
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)
    else:
        return loop.run_until_complete(coro)


def build_stack(stack_config: StackConfig, simulate: bool = False) -> ProtocolStack:
    """Create the protocol stack the configuration asks for."""
    from .protocol.memory import MemoryStack
    from .protocol.rpc import RpcStack, RpcStackConfig

    if simulate or stack_config.type == "memory":
        return MemoryStack()
    if stack_config.type == "rpc":
        return RpcStack(RpcStackConfig(
            url=stack_config.url,
            connect_timeout_seconds=stack_config.connect_timeout_seconds,
            request_timeout_seconds=stack_config.request_timeout_seconds,
        ))
    raise click.BadParameter(f"unknown stack type {stack_config.type!r}")


def _load(ctx) -> Config:
    return Config.load(ctx.obj['data_dir'])


@click.group()
@click.option('-v', '--verbose', is_flag=True, help='Enable verbose output')
@click.option('--data-dir', type=click.Path(path_type=Path), help='Data directory')
@click.pass_context
def main(ctx, verbose, data_dir):
    """flowbridge - bridge flow devices into Matter"""
    ctx.ensure_object(dict)
    ctx.obj['verbose'] = verbose
    ctx.obj['data_dir'] = data_dir or DEFAULT_DATA_DIR
    config = Config.load(ctx.obj['data_dir']) if Config.exists(ctx.obj['data_dir']) else None
    setup_logging(verbose, config.log_level if config else "INFO")


@main.command()
@click.option('--name', '-n', default='Flow Bridge', help='Bridge name shown to controllers')
@click.option('--stack', 'stack_type', type=click.Choice(['memory', 'rpc']), default='memory',
              help='Protocol stack to drive')
@click.option('--url', help='Sidecar JSON-RPC URL (rpc stack)')
@click.option('--port', '-p', default=5540, type=int, help='Matter port')
@click.option('--force', '-f', is_flag=True, help='Overwrite an existing configuration')
@click.pass_context
def init(ctx, name: str, stack_type: str, url: Optional[str], port: int, force: bool):
    """Create the bridge configuration."""
    data_dir = ctx.obj['data_dir']

    if Config.exists(data_dir) and not force:
        console.print("[yellow]⚠️  A configuration already exists.[/yellow]")
        console.print(f"   Data directory: {data_dir}")
        if not click.confirm("\nOverwrite it? Configured devices will be lost."):
            return

    config = Config(data_dir=data_dir)
    config.bridge.name = name
    config.bridge.port = port
    config.stack.type = stack_type
    if url:
        config.stack.url = url
    config.save()

    console.print("\n[bold green]✓ Bridge configured[/bold green]\n")

    table = Table(show_header=False, box=None)
    table.add_column("Key", style="dim")
    table.add_column("Value")

    table.add_row("Name", f"[cyan]{config.bridge.name}[/cyan]")
    table.add_row("Matter port", str(config.bridge.port))
    table.add_row("Stack", config.stack.type)
    table.add_row("Data Directory", str(data_dir))

    console.print(table)

    console.print("\n[dim]Next steps:[/dim]")
    console.print("  flowbridge devices add   Add a device")
    console.print("  flowbridge run           Start the bridge")
    console.print()


@main.command()
@click.option('--simulate', is_flag=True, help='Use the in-process simulated Matter stack')
@click.option('--host', '-h', default=None, help='Host to bind the API to')
@click.option('--port', '-p', default=None, type=int, help='Port to bind the API to')
@click.pass_context
def run(ctx, simulate: bool, host: Optional[str], port: Optional[int]):
    """Start the bridge and its HTTP/WebSocket API."""
    from .api.server import FlowBridgeServer, run_server
    from .bridge.controller import BridgeController

    config = _load(ctx)
    host = host or config.server.host
    port = port or config.server.port

    stack = build_stack(config.stack, simulate)
    controller = BridgeController(stack, config.bridge, config.storage_path)
    server = FlowBridgeServer(controller, config.devices)

    console.print(f"\n[bold blue]Starting bridge '{config.bridge.name}'[/bold blue]")
    console.print(f"   Stack: {'simulated' if simulate else config.stack.type}")
    console.print(f"   Devices: {len(config.devices)}")
    console.print(f"   API: http://{host}:{port}")
    console.print("   Press Ctrl+C to stop\n")

    run_server(server, host=host, port=port, log_level=config.log_level)


@main.command()
@click.option('--url', help='API base URL of the running bridge')
@click.pass_context
def pairing(ctx, url: Optional[str]):
    """Show pairing information of the running bridge."""
    config = _load(ctx)
    base = url or f"http://{config.server.host}:{config.server.port}"

    async def fetch():
        async with aiohttp.ClientSession() as session:
            async with session.get(f"{base}/api/bridge", timeout=aiohttp.ClientTimeout(total=5)) as resp:
                resp.raise_for_status()
                return await resp.json()

    try:
        data = run_async(fetch())
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        console.print(f"[red]Bridge not reachable at {base}: {e}[/red]")
        sys.exit(1)

    info = data.get("commissioning")
    if not info:
        console.print(f"[yellow]Bridge is {data.get('bridge', {}).get('state', 'unknown')}[/yellow]")
        sys.exit(1)

    table = Table(show_header=False, box=None)
    table.add_column("Key", style="dim")
    table.add_column("Value")

    table.add_row("Manual code", f"[bold yellow]{info['manual_pairing_code']}[/bold yellow]")
    table.add_row("Passcode", str(info["passcode"]))
    table.add_row("Discriminator", str(info["discriminator"]))
    if info.get("qr_pairing_code"):
        table.add_row("QR payload", info["qr_pairing_code"])
    table.add_row("Commissioned", "[green]yes[/green]" if info.get("commissioned") else "no")
    table.add_row("Fabrics", str(info.get("fabrics", 0)))

    console.print(Panel(table, title=data.get("bridge", {}).get("name", "Bridge"), border_style="blue"))


@main.command()
def types():
    """List supported device types."""
    table = Table()
    table.add_column("Type", style="cyan")
    table.add_column("Matter device", justify="right")
    table.add_column("Payload")
    table.add_column("Description")

    for kind in DEVICE_KINDS.values():
        payload = "{" + ", ".join(kind.payload_keys) + "}" if kind.payload_keys else "value"
        table.add_row(kind.tag, f"0x{int(kind.device_type):04X}", payload, kind.description)

    console.print(table)


@main.group()
def devices():
    """Configured device commands."""
    pass


@devices.command('list')
@click.pass_context
def devices_list(ctx):
    """List configured devices."""
    config = _load(ctx)

    if not config.devices:
        console.print("[dim]No devices configured[/dim]")
        return

    table = Table()
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Type")
    table.add_column("Battery")
    table.add_column("Passthrough")

    for d in config.devices:
        table.add_row(
            d.device_id,
            d.name,
            d.device_type,
            d.battery.value if d.bat else "-",
            "on" if d.passthrough else "off",
        )

    console.print(table)


@devices.command('add')
@click.argument('device_id')
@click.option('--name', '-n', help='Display name (defaults to the id)')
@click.option('--type', '-t', 'device_type', required=True,
              type=click.Choice(sorted(DEVICE_KINDS)), help='Device type')
@click.option('--battery', type=click.Choice(['replaceable', 'rechargeable']),
              help='Battery powered, with this battery type')
@click.option('--passthrough', is_flag=True, help='Forward inputs to the output')
@click.pass_context
def devices_add(ctx, device_id: str, name: Optional[str], device_type: str,
                battery: Optional[str], passthrough: bool):
    """Add a device to the configuration."""
    config = _load(ctx)

    data = {
        "id": device_id,
        "name": name or device_id,
        "type": device_type,
        "bat": battery is not None,
        "passthrough": passthrough,
    }
    if battery:
        data["batType"] = battery

    try:
        descriptor = DeviceDescriptor.from_dict(data)
    except InvalidValue as e:
        console.print(f"[red]✗ {e}[/red]")
        sys.exit(1)

    if not config.add_device(descriptor):
        console.print(f"[red]✗ Device {device_id} already configured[/red]")
        sys.exit(1)

    config.save()
    console.print(f"[green]✓ Added {device_type} '{descriptor.name}' ({device_id})[/green]")


@devices.command('remove')
@click.argument('device_id')
@click.pass_context
def devices_remove(ctx, device_id: str):
    """Remove a device from the configuration."""
    config = _load(ctx)

    if not config.remove_device(device_id):
        console.print(f"[yellow]Device {device_id} is not configured[/yellow]")
        sys.exit(1)

    config.save()
    console.print(f"[green]✓ Removed {device_id}[/green]")


if __name__ == '__main__':
    main()
