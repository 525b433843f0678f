#!/usr/bin/env python3
"""
PisoGate - Network Access Enforcement for Coin-Operated WiFi
============================================================

Main entry point for the PisoGate engine.

The engine sits between the ISP uplink and the hotspot segments:
  Internet -> Modem -> [WAN] PisoGate [br0 / VLANs / PPPoE] -> Clients

Features:
- Captive-portal firewall with per-client grants
- Per-client bandwidth shaping (HTB + cake/fq_codel/sfq/pfifo)
- Gaming traffic priority
- VLAN, bridge, hotspot and access-point provisioning
- PPPoE server with PAP/CHAP secrets
- Multi-WAN load balancing (PCC / ECMP)
- Boot-time reconciliation of all persisted topology

Usage:
    sudo python main.py run                  # Reconcile, then enforce sessions
    sudo python main.py reconcile            # One-shot restore
    sudo python main.py grant AA:BB:CC:DD:EE:FF 10.0.0.42
    sudo python main.py limit 10.0.0.42 10 5
    python main.py --debug status

Author: Team PisoGate
License: MIT
"""

import signal
import sys
import threading
from pathlib import Path

import click
from loguru import logger
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

# Add project root to path
PROJECT_ROOT = Path(__file__).parent
sys.path.insert(0, str(PROJECT_ROOT))

from pisogate import __version__, create_engine_from_config, load_config
from pisogate.errors import PisoGateError
from pisogate.models import PPPoEServerConfig
from pisogate.reconciler import ReconcileReport

# Rich console for pretty output
console = Console()


def setup_logging(config: dict) -> None:
    """Configure logging based on config."""
    log_config = config.get("logging", {})
    log_level = config.get("general", {}).get("log_level", "INFO")
    log_file = PROJECT_ROOT / log_config.get("file", "data/logs/pisogate.log")

    # Ensure log directory exists
    log_file.parent.mkdir(parents=True, exist_ok=True)

    # Remove default logger and add custom configuration
    logger.remove()
    logger.add(
        sys.stderr,
        level=log_level,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan> | <level>{message}</level>"
    )
    logger.add(
        str(log_file),
        level=log_level,
        rotation=log_config.get("max_size", "10 MB"),
        retention=log_config.get("backup_count", 5),
        format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name} | {message}"
    )


def print_banner():
    console.print(Panel(
        Text(f"PisoGate {__version__}", style="bold cyan"),
        title="[bold white]Network Access Enforcement[/bold white]",
        subtitle="[dim]Hulog barya, tuloy ang surf[/dim]",
        border_style="cyan"
    ))


def print_report(report: ReconcileReport) -> None:
    table = Table(title="Reconciliation")
    table.add_column("Step", style="cyan")
    table.add_column("Status")
    table.add_column("Restored")
    table.add_column("Errors", style="red")
    for step in report.steps:
        status = "[green]OK[/green]" if step.ok else "[red]FAILED[/red]"
        table.add_row(step.name, status, ", ".join(step.restored) or "-", "\n".join(step.errors) or "-")
    console.print(table)


def fail(message: str) -> None:
    console.print(f"[bold red]ERROR:[/bold red] {message}")
    sys.exit(1)


class EngineContext:
    """Lazily builds the engine so `--help` never touches the kernel."""

    def __init__(self, config: dict):
        self.config = config
        self._engine = None

    @property
    def engine(self):
        if self._engine is None:
            self._engine = create_engine_from_config(self.config)
        return self._engine

    def close(self):
        if self._engine is not None:
            self._engine.stop()


pass_ctx = click.make_pass_decorator(EngineContext)


@click.group()
@click.option("--config", "-c", default="config/config.yaml", help="Path to config file")
@click.option("--debug", "-d", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(ctx, config: str, debug: bool):
    """PisoGate - network access enforcement and topology reconciliation"""
    config_path = Path(config)
    if not config_path.is_absolute():
        config_path = PROJECT_ROOT / config_path
    cfg = load_config(str(config_path))

    if debug:
        cfg.setdefault("general", {})["log_level"] = "DEBUG"
    setup_logging(cfg)

    ctx.obj = EngineContext(cfg)
    ctx.call_on_close(ctx.obj.close)


@main.command()
@click.option("--interval", "-i", default=60, help="Session sweep interval in seconds")
@click.option("--no-reconcile", is_flag=True, help="Skip the boot-time restore")
@pass_ctx
def run(ctx: EngineContext, interval: int, no_reconcile: bool):
    """Reconcile, then revoke expired sessions until interrupted."""
    print_banner()
    engine = ctx.engine
    report = engine.start(reconcile=not no_reconcile)
    if report is not None:
        print_report(report)

    stop_event = threading.Event()

    def signal_handler(sig, frame):
        console.print("\n[yellow]Shutting down...[/yellow]")
        stop_event.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    console.print(f"[bold green]PisoGate running[/bold green] [dim](sweep every {interval}s)[/dim]")
    while not stop_event.wait(interval):
        sweep = engine.sweep()
        if sweep.expired or sweep.stale_cleaned:
            logger.info(f"Sweep: {len(sweep.expired)} expired, {sweep.stale_cleaned} stale tc object(s)")


@main.command()
@pass_ctx
def reconcile(ctx: EngineContext):
    """Restore all persisted topology once."""
    report = ctx.engine.reconcile()
    print_report(report)
    if not report.ok:
        sys.exit(1)


@main.command()
@pass_ctx
def status(ctx: EngineContext):
    """Show interface roles and service state."""
    info = ctx.engine.status()
    console.print(f"  WAN Interface: {info['wan']}")
    console.print(f"  LAN Interface: {info['lan_interface']}")
    console.print(f"  LAN Members:   {', '.join(info['lan_members']) or '-'}")
    console.print(f"  PPPoE:         {info['pppoe']['message']}")
    multi_wan = info["multi_wan"]
    console.print(f"  Multi-WAN:     {'ENABLED' if multi_wan['enabled'] else 'disabled'} ({multi_wan['mode']})")


@main.command()
@pass_ctx
def classify(ctx: EngineContext):
    """List interfaces with their classified role."""
    engine = ctx.engine
    roles = engine.classify()
    table = Table(title="Interfaces")
    for column in ("Name", "Kind", "State", "Address", "Master", "Role"):
        table.add_column(column)
    for iface in engine.inventory.list_interfaces():
        if iface.name == roles.wan:
            role = "[yellow]WAN[/yellow]"
        elif iface.name in roles.lan_members:
            role = "[green]LAN[/green]"
        else:
            role = "-"
        table.add_row(iface.name, iface.kind, iface.oper_state, iface.address or "-",
                      iface.master or "-", role)
    console.print(table)


@main.command()
@pass_ctx
def firewall(ctx: EngineContext):
    """Rebuild the baseline firewall and re-grant active sessions."""
    try:
        segments = ctx.engine.rebuild_firewall()
    except PisoGateError as e:
        fail(str(e))
    console.print(f"[green]Firewall rebuilt for:[/green] {', '.join(segments)}")


@main.command()
@click.argument("mac")
@click.argument("ip", required=False)
@pass_ctx
def grant(ctx: EngineContext, mac: str, ip: str):
    """Open internet access for a client."""
    try:
        result = ctx.engine.grant(mac, ip)
    except PisoGateError as e:
        fail(str(e))
    console.print(f"[green]Granted[/green] {result.mac} ({result.ip or 'no ip'}) "
                  f"{result.download_mbps}/{result.upload_mbps} Mbps")
    for warning in result.warnings:
        console.print(f"  [yellow]![/yellow] {warning}")


@main.command()
@click.argument("mac")
@click.argument("ip", required=False)
@pass_ctx
def revoke(ctx: EngineContext, mac: str, ip: str):
    """Close internet access for a client."""
    try:
        result = ctx.engine.revoke(mac, ip)
    except PisoGateError as e:
        fail(str(e))
    console.print(f"[red]Revoked[/red] {result.mac}")


@main.command()
@click.argument("ip")
@click.argument("download", type=float)
@click.argument("upload", type=float)
@pass_ctx
def limit(ctx: EngineContext, ip: str, download: float, upload: float):
    """Shape a client to DOWNLOAD/UPLOAD Mbps (0 0 removes the limit)."""
    try:
        interface = ctx.engine.set_limit(ip, download, upload)
    except PisoGateError as e:
        fail(str(e))
    if interface:
        console.print(f"[green]Limit applied[/green] on {interface}: {download}/{upload} Mbps")
    else:
        console.print("[dim]Limit removed[/dim]")


@main.command()
@click.argument("ip")
@pass_ctx
def unlimit(ctx: EngineContext, ip: str):
    """Remove every tc object for a client."""
    interfaces = ctx.engine.remove_limit(ip)
    console.print(f"[dim]Cleaned {ip} on {', '.join(interfaces) or 'no interface'}[/dim]")


@main.command()
@click.option("--enable/--disable", default=True)
@click.option("--percentage", "-p", default=20, help="Share of the root rate reserved for gaming")
@click.option("--interface", "-i", default=None, help="LAN interface (elected when omitted)")
@pass_ctx
def priority(ctx: EngineContext, enable: bool, percentage: int, interface: str):
    """Apply or clear gaming priority."""
    try:
        count = ctx.engine.apply_priority(enable, percentage, interface)
    except PisoGateError as e:
        fail(str(e))
    if enable:
        console.print(f"[green]Gaming priority active[/green] ({count} rule(s), {percentage}%)")
    else:
        console.print("[dim]Gaming priority cleared[/dim]")


@main.command()
@pass_ctx
def sweep(ctx: EngineContext):
    """Revoke expired sessions and clean stale tc objects."""
    report = ctx.engine.sweep()
    console.print(f"Expired: {len(report.expired)}  Stale cleaned: {report.stale_cleaned}")
    for error in report.errors:
        console.print(f"  [red]x[/red] {error}")


@main.group()
def pppoe():
    """PPPoE server control."""


@pppoe.command("start")
@click.argument("interface")
@click.option("--local-ip", default="10.0.0.1")
@click.option("--pool-start", default="10.0.0.100")
@click.option("--pool-end", default="10.0.0.200")
@click.option("--dns1", default="8.8.8.8")
@click.option("--dns2", default="8.8.4.4")
@click.option("--service-name", default="")
@pass_ctx
def pppoe_start(ctx: EngineContext, interface, local_ip, pool_start, pool_end, dns1, dns2, service_name):
    server = PPPoEServerConfig(interface=interface, local_ip=local_ip, ip_pool_start=pool_start,
                               ip_pool_end=pool_end, dns1=dns1, dns2=dns2, service_name=service_name)
    try:
        effective = ctx.engine.pppoe.start(server)
    except PisoGateError as e:
        fail(str(e))
    console.print(f"[green]PPPoE server running on {effective.interface}[/green]")


@pppoe.command("stop")
@pass_ctx
def pppoe_stop(ctx: EngineContext):
    engine = ctx.engine
    enabled = [r["interface"] for r in engine.store.list("pppoe_server") if r.get("enabled")]
    engine.pppoe.stop(enabled[0] if enabled else None)
    console.print("[dim]PPPoE server stopped[/dim]")


@pppoe.command("status")
@pass_ctx
def pppoe_status(ctx: EngineContext):
    info = ctx.engine.pppoe.status()
    console.print(f"[cyan]{info['message']}[/cyan] (state: {info['state']})")
    if info["sessions"]:
        table = Table(title="PPPoE Sessions")
        for column in ("Username", "IP", "Interface"):
            table.add_column(column)
        for session in info["sessions"]:
            table.add_row(session["username"], session["ip"], session["interface"])
        console.print(table)


@pppoe.command("add-user")
@click.argument("username")
@click.argument("password")
@pass_ctx
def pppoe_add_user(ctx: EngineContext, username: str, password: str):
    try:
        ctx.engine.pppoe.add_user(username, password)
    except (PisoGateError, KeyError) as e:
        fail(str(e))
    console.print(f"[green]User {username} added[/green]")


@pppoe.command("delete-user")
@click.argument("username")
@pass_ctx
def pppoe_delete_user(ctx: EngineContext, username: str):
    if not ctx.engine.pppoe.delete_user(username):
        fail(f"No such user: {username}")
    console.print(f"[dim]User {username} deleted[/dim]")


if __name__ == "__main__":
    main()
