"""Tunnel sync CLI (tunnel-sync).

Usage:
    tunnel-sync validate tunnels.yaml   # Check a tunnel document
    tunnel-sync discover TUNNEL_ID      # Show a tunnel's live egress IPs
    tunnel-sync run                     # One run with the environment config
    tunnel-sync run --watch             # Keep running on RUN_INTERVAL
"""

from __future__ import annotations

import asyncio
import os
import sys
from pathlib import Path

import click

from .config import Config, ConfigurationError, RunMode
from .discovery import DiscoveryError, discover_ips
from .main import main as run_main
from .models import TunnelConfig
from .providers import CloudflareProviders
from .reconciler import sorted_ips
from .tunnel_loader import (
    ConfigValidationError,
    TunnelConfigLoadError,
    load_tunnel_config_file,
    load_tunnel_configs,
)


def load_env_config() -> Config:
    """Environment config, with errors surfaced as CLI errors."""
    try:
        return Config.from_env()
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e


def describe_tunnel(tunnel: TunnelConfig) -> list[str]:
    lines = [f"{tunnel.tunnel_id}"]
    if tunnel.failure_email:
        lines.append(f"  alerts:    {tunnel.failure_email}")
    for location_id in tunnel.zt_locations or []:
        lines.append(f"  location:  {location_id}")
    for target in tunnel.dns_records or []:
        for name in target.record_name or []:
            lines.append(f"  dns:       {target.zone_id} {name}")
        for name in target.spectrum_record_name or []:
            lines.append(f"  spectrum:  {target.zone_id} {name}")
    return lines


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="tunnel-sync")
def cli() -> None:
    """Keep DNS records, gateway locations and Spectrum apps on a tunnel's IPs.

    \b
    Quick Start:
        tunnel-sync validate tunnels.yaml
        tunnel-sync run
    """
    pass


@cli.command()
@click.argument("path", required=False, type=click.Path(path_type=Path, dir_okay=False))
def validate(path: Path | None) -> None:
    """Validate a tunnel document.

    Without PATH, TUNNEL_CONFIG or TUNNEL_CONFIG_PATH from the environment is used.
    """
    try:
        if path is not None:
            tunnels = load_tunnel_config_file(path)
        elif os.environ.get("TUNNEL_CONFIG_PATH"):
            tunnels = load_tunnel_config_file(Path(os.environ["TUNNEL_CONFIG_PATH"]))
        elif os.environ.get("TUNNEL_CONFIG"):
            tunnels = load_tunnel_configs(os.environ["TUNNEL_CONFIG"])
        else:
            raise click.UsageError("Pass PATH or set TUNNEL_CONFIG / TUNNEL_CONFIG_PATH")
    except (TunnelConfigLoadError, ConfigValidationError) as e:
        raise click.ClickException(str(e)) from e

    for tunnel in tunnels:
        for line in describe_tunnel(tunnel):
            click.echo(line)
    click.secho(f"✓ {len(tunnels)} tunnel(s) valid", fg="green")


@cli.command()
@click.argument("tunnel_id")
def discover(tunnel_id: str) -> None:
    """Print the live egress IPs of TUNNEL_ID."""
    config = load_env_config()

    async def _discover() -> frozenset[str]:
        providers = CloudflareProviders.from_config(config)
        try:
            return await discover_ips(providers, tunnel_id)
        finally:
            await providers.aclose()

    try:
        ips = asyncio.run(_discover())
    except DiscoveryError as e:
        raise click.ClickException(str(e)) from e

    if not ips:
        click.secho(f"Tunnel {tunnel_id} has no live connections", fg="yellow")
        sys.exit(1)
    for ip in sorted_ips(ips):
        click.echo(ip)


@cli.command()
@click.option("--watch", is_flag=True, help="Keep running every RUN_INTERVAL seconds")
def run(watch: bool) -> None:
    """Synchronize every tunnel using the environment configuration."""
    mode = RunMode.WATCH if watch else None
    sys.exit(asyncio.run(run_main(mode)))


if __name__ == "__main__":
    cli()
