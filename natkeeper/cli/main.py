"""Command line interface for natkeeper.

Provides commands to keep a port forwarded, inspect gateways and remove
mappings by hand.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator

import click
from rich.console import Console
from rich.table import Table

from natkeeper.config.config import init_config
from natkeeper.models import Config, LogLevel
from natkeeper.nat.description import ControlURLResolver
from natkeeper.nat.exceptions import NATError, UPnPError
from natkeeper.nat.manager import PortForwardManager
from natkeeper.nat.port_mapping import ControlEndpoint
from natkeeper.nat.soap import PortMappingClient
from natkeeper.nat.ssdp import SSDPDiscoverer
from natkeeper.utils.exceptions import ConfigurationError
from natkeeper.utils.logging_config import get_logger, setup_logging

logger = get_logger(__name__)

PROTOCOL_CHOICE = click.Choice(["tcp", "udp"], case_sensitive=False)


def _get_config(ctx: click.Context) -> Config:
    return ctx.obj["config"]


async def _usable_endpoints(cfg: Config) -> AsyncIterator[tuple[str, ControlEndpoint | None]]:
    """Yield every discovered location with its control endpoint (or None)."""
    discoverer = SSDPDiscoverer(window=cfg.upnp.discovery_window)
    resolver = ControlURLResolver(
        service_type=cfg.upnp.service_type, timeout=cfg.upnp.http_timeout
    )
    for url in await discoverer.discover():
        try:
            endpoint = await resolver.resolve(url)
        except UPnPError as e:
            logger.warning("Skipping UPnP device at %s: %s", url, e)
            endpoint = None
        yield url, endpoint


def _mapping_client(cfg: Config) -> PortMappingClient:
    return PortMappingClient(
        service_type=cfg.upnp.service_type, timeout=cfg.upnp.http_timeout
    )


@click.group()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True, dir_okay=False),
    help="Configuration file path",
)
@click.option(
    "--verbose",
    "-v",
    count=True,
    help="Increase verbosity (-v: info, -vv: debug)",
)
@click.pass_context
def cli(ctx: click.Context, config: str | None, verbose: int) -> None:
    """Natkeeper - keep a port forwarded through the local UPnP gateway."""
    ctx.ensure_object(dict)
    try:
        config_manager = init_config(config, configure_logging=False)
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e

    cfg = config_manager.config
    if verbose >= 2:
        cfg.observability.log_level = LogLevel.DEBUG
    elif verbose == 1:
        cfg.observability.log_level = LogLevel.INFO
    setup_logging(cfg.observability)
    ctx.obj["config"] = cfg


@cli.command("forward")
@click.argument("port", type=click.IntRange(1, 65535))
@click.option("--protocol", type=PROTOCOL_CHOICE, default="tcp", help="Protocol (tcp or udp)")
@click.option(
    "--external-port",
    type=click.IntRange(0, 65535),
    default=0,
    help="External port (0 for the same as PORT)",
)
@click.option("--once", is_flag=True, help="Run a single cycle and leave the mapping to expire")
@click.pass_context
def forward(ctx: click.Context, port: int, protocol: str, external_port: int, once: bool) -> None:
    """Forward PORT and keep renewing it until interrupted."""
    console = Console()
    cfg = _get_config(ctx)
    manager = PortForwardManager(
        port, protocol.upper(), external_port or None, config=cfg.upnp
    )

    async def _forward() -> None:
        if once:
            active = manager.active_mapping if await manager.run_cycle() else None
            if active is None:
                raise click.ClickException(
                    f"No UPnP gateway forwarded {protocol.upper()} port {manager.external_port}"
                )
            manager.detach_cleanup()
            console.print(
                f"[green]Forwarding {active.request.protocol} {active.request.external_port} "
                f"-> {active.request.internal_ip}:{active.request.internal_port} "
                f"via {active.endpoint.host} for {active.request.lease_duration}s[/green]"
            )
            return

        manager.start()
        console.print(
            f"[bold]Keeping {protocol.upper()} port {manager.external_port} forwarded "
            f"(renewing every {manager.interval:.0f}s, Ctrl-C to stop)[/bold]"
        )
        try:
            await asyncio.Event().wait()
        finally:
            await manager.stop(release=True)

    try:
        asyncio.run(_forward())
    except KeyboardInterrupt:
        console.print("[yellow]Stopped[/yellow]")
    except NATError as e:
        raise click.ClickException(str(e)) from e


@cli.command("discover")
@click.pass_context
def discover(ctx: click.Context) -> None:
    """List UPnP root devices and their WAN IP control URLs."""
    console = Console()
    cfg = _get_config(ctx)

    async def _discover() -> list[tuple[str, ControlEndpoint | None]]:
        return [item async for item in _usable_endpoints(cfg)]

    try:
        found = asyncio.run(_discover())
    except NATError as e:
        raise click.ClickException(str(e)) from e

    if not found:
        console.print("[yellow]No UPnP root devices found[/yellow]")
        return

    table = Table(title="UPnP devices")
    table.add_column("Location", style="cyan")
    table.add_column("Control URL", style="green")
    for url, endpoint in found:
        table.add_row(url, endpoint.control_url if endpoint else "[dim]none[/dim]")
    console.print(table)


@cli.command("unmap")
@click.argument("port", type=click.IntRange(1, 65535))
@click.option("--protocol", type=PROTOCOL_CHOICE, default="tcp", help="Protocol (tcp or udp)")
@click.pass_context
def unmap(ctx: click.Context, port: int, protocol: str) -> None:
    """Remove the mapping for external PORT from the first gateway that has it."""
    console = Console()
    cfg = _get_config(ctx)
    client = _mapping_client(cfg)

    async def _unmap() -> str | None:
        async for _url, endpoint in _usable_endpoints(cfg):
            if endpoint is None:
                continue
            try:
                if await client.delete_mapping(endpoint, protocol.upper(), port):
                    return endpoint.host
            except UPnPError as e:
                logger.warning("DeletePortMapping on %s failed: %s", endpoint.host, e)
        return None

    try:
        host = asyncio.run(_unmap())
    except NATError as e:
        raise click.ClickException(str(e)) from e

    if host is None:
        raise click.ClickException(
            f"No UPnP gateway removed {protocol.upper()} port {port}"
        )
    console.print(f"[green]Removed {protocol.upper()} port {port} from {host}[/green]")


@cli.command("external-ip")
@click.pass_context
def external_ip(ctx: click.Context) -> None:
    """Show the external address reported by the gateway."""
    console = Console()
    cfg = _get_config(ctx)
    client = _mapping_client(cfg)

    async def _external_ip() -> str | None:
        async for _url, endpoint in _usable_endpoints(cfg):
            if endpoint is None:
                continue
            try:
                address = await client.get_external_ip(endpoint)
            except UPnPError as e:
                logger.warning("GetExternalIPAddress on %s failed: %s", endpoint.host, e)
                continue
            if address:
                return address
        return None

    try:
        address = asyncio.run(_external_ip())
    except NATError as e:
        raise click.ClickException(str(e)) from e

    if address is None:
        raise click.ClickException("No UPnP gateway reported an external address")
    console.print(address)


def main() -> None:
    """Console script entry point."""
    cli(obj={})
