#!/usr/bin/env python3
"""
clockgov CLI - GPU Clock Governor

Usage:
    clockgov run --config governor.yaml      # Govern until SIGINT/SIGTERM
    clockgov check --config governor.yaml    # Validate config against the GPUs
    clockgov status --config governor.yaml   # One-shot usage/clock table
    clockgov clocks 1                        # Supported clocks of GPU 1
    clockgov reset --config governor.yaml    # Reset configured GPUs
    clockgov audit /var/log/clockgov.jsonl   # Show recent audit entries
"""

import json
import logging
import sys
from pathlib import Path
from typing import Optional

import click
from rich.markup import escape

from .. import __version__
from ..audit import AuditLog
from ..config import LOG_LEVELS, GovernorConfig, load_config
from ..devices.interface import DeviceInterface
from ..devices.nvidia_smi import NvidiaSmiDevice
from ..errors import ConfigError, GovernorError
from ..logs import setup_logging
from ..service import GovernorService
from ..state import is_unreadable
from .display import (
    console, create_audit_table, create_clocks_panel, create_devices_table,
    create_reset_table, create_stats_panel, create_status_table
)


logger = logging.getLogger(__name__)


def make_device(config: Optional[GovernorConfig] = None) -> DeviceInterface:
    """Build the device interface for a config (or defaults)."""
    if config is None:
        return NvidiaSmiDevice()
    return NvidiaSmiDevice(
        use_sudo=config.use_sudo,
        timeout=config.command_timeout_seconds
    )


def make_audit(config: GovernorConfig) -> Optional[AuditLog]:
    if not config.audit_log:
        return None
    try:
        return AuditLog(config.audit_log)
    except OSError as e:
        raise ConfigError(f"Cannot open audit log {config.audit_log}: {e}") from e


def fail(message: str):
    console.print(f"[red]Error: {escape(message)}[/red]", soft_wrap=True)
    sys.exit(1)


config_option = click.option(
    '--config', '-c', 'config_path',
    type=click.Path(dir_okay=False, path_type=Path),
    required=True,
    help='YAML governor config'
)


# ============================================================================
# Main CLI Group
# ============================================================================

@click.group()
@click.version_option(version=__version__, prog_name='clockgov')
def cli():
    """
    GPU clock governor.

    Locks idle GPUs to a low graphics clock and restores the high clock
    under load, with hysteresis between the two thresholds.

    \b
    Examples:
        clockgov check -c governor.yaml
        clockgov run -c governor.yaml --interval 5
    """
    pass


# ============================================================================
# Run Command
# ============================================================================

@cli.command()
@config_option
@click.option('--interval', '-i', type=int, default=None, help='Seconds between checks')
@click.option('--low', type=int, default=None, help='Usage %% below which to downclock')
@click.option('--high', type=int, default=None, help='Usage %% above which to restore full clock')
@click.option('--log-level', type=click.Choice(LOG_LEVELS, case_sensitive=False), default=None)
def run(config_path: Path, interval: Optional[int], low: Optional[int],
        high: Optional[int], log_level: Optional[str]):
    """Govern GPU clocks until interrupted, then reset them."""
    try:
        config = load_config(config_path).with_overrides(
            check_interval_seconds=interval,
            low_usage_threshold=low,
            high_usage_threshold=high,
            log_level=log_level.upper() if log_level else None
        )
    except GovernorError as e:
        fail(str(e))

    setup_logging(config.log_level)

    try:
        service = GovernorService(config, make_device(config), audit=make_audit(config))
        loop = service.run()
    except GovernorError as e:
        fail(str(e))

    console.print(create_stats_panel(loop.get_stats()))


# ============================================================================
# Check Command
# ============================================================================

@cli.command()
@config_option
def check(config_path: Path):
    """Validate the config against the installed GPUs without changing them."""
    try:
        config = load_config(config_path)
        service = GovernorService(config, make_device(config))
        governed = service.startup(enable_persistence=False)
    except GovernorError as e:
        fail(str(e))

    console.print(create_devices_table(state.device for state in governed))
    console.print(
        f"\n[green]✓ Config OK[/green] "
        f"[dim](low <{config.low_usage_threshold}%, high >{config.high_usage_threshold}%, "
        f"every {config.check_interval_seconds}s)[/dim]"
    )


# ============================================================================
# Status Command
# ============================================================================

@cli.command()
@config_option
@click.option('--json', 'as_json', is_flag=True, help='Output as JSON')
def status(config_path: Path, as_json: bool):
    """Show current usage and clock of every configured GPU."""
    try:
        config = load_config(config_path)
    except GovernorError as e:
        fail(str(e))

    device = make_device(config)
    if not device.is_available():
        fail("nvidia-smi not found. Please install NVIDIA drivers.")

    rows = []
    for d in config.devices:
        rows.append({
            'index': d.index,
            'utilization': device.utilization(d.index),
            'clock_mhz': device.current_clock(d.index),
            'low_clock': d.low_clock,
            'high_clock': d.high_clock,
        })

    if as_json:
        output = [
            dict(row,
                 utilization=None if is_unreadable(row['utilization']) else row['utilization'],
                 clock_mhz=None if is_unreadable(row['clock_mhz']) else row['clock_mhz'])
            for row in rows
        ]
        click.echo(json.dumps(output, indent=2))
        return

    console.print(create_status_table(rows, config.low_usage_threshold, config.high_usage_threshold))


# ============================================================================
# Clocks Command
# ============================================================================

@cli.command()
@click.argument('gpu_index', type=click.IntRange(min=0))
@click.option('--json', 'as_json', is_flag=True, help='Output as JSON')
def clocks(gpu_index: int, as_json: bool):
    """List the supported graphics clocks of a GPU."""
    device = make_device()
    if not device.is_available():
        fail("nvidia-smi not found. Please install NVIDIA drivers.")

    supported = device.supported_clocks(gpu_index)
    if is_unreadable(supported):
        fail(f"Could not read supported clocks for GPU {gpu_index}")

    if as_json:
        click.echo(json.dumps(sorted(supported, reverse=True)))
        return

    console.print(create_clocks_panel(gpu_index, supported))


# ============================================================================
# Reset Command
# ============================================================================

@cli.command()
@config_option
def reset(config_path: Path):
    """Reset every configured GPU to default clock behavior."""
    try:
        config = load_config(config_path)
    except GovernorError as e:
        fail(str(e))

    setup_logging(config.log_level)
    device = make_device(config)
    if not device.is_available():
        fail("nvidia-smi not found. Please install NVIDIA drivers.")

    try:
        audit = make_audit(config)
    except GovernorError as e:
        fail(str(e))

    results = {}
    for d in config.devices:
        result = device.reset_clock(d.index)
        if audit is not None:
            try:
                audit.log('reset_clock', d.index, {'source': 'cli'},
                          result.success, result.error, result.duration_ms)
            except OSError as e:
                logger.warning("Could not write audit entry: %s", e)
        results[d.index] = result.success

    console.print(create_reset_table(results))
    if not all(results.values()):
        sys.exit(1)


# ============================================================================
# Audit Command
# ============================================================================

@cli.command()
@click.argument('log_path', type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option('--limit', '-n', default=20, help='Number of entries to show')
@click.option('--event', '-e', 'event_type', default=None, help='Only show this event type')
@click.option('--json', 'as_json', is_flag=True, help='Output as JSON')
def audit(log_path: Path, limit: int, event_type: Optional[str], as_json: bool):
    """Show recent governor actions from an audit log."""
    log = AuditLog(log_path)
    entries = log.get_entries(limit=limit, event_type=event_type)

    if as_json:
        click.echo(json.dumps([e.to_dict() for e in entries], indent=2))
        return

    if not entries:
        console.print("[yellow]No audit entries[/yellow]")
        return

    console.print(create_audit_table(entries))
    stats = log.get_stats()
    console.print(
        f"\n[dim]{stats['total_events']} event(s), "
        f"command success rate {stats['success_rate'] * 100:.0f}%[/dim]"
    )


# ============================================================================
# Entry Point
# ============================================================================

if __name__ == '__main__':
    cli()
