"""
clockgov - Terminal Display

Rich tables and panels for the CLI.
"""

from typing import Any, Dict, Iterable, List

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from ..audit import AuditEntry
from ..state import Device, Reading, display, is_unreadable


console = Console()


def usage_text(usage: Reading, low: int, high: int) -> Text:
    """Utilization colored by where it sits relative to the thresholds."""
    if is_unreadable(usage):
        return Text("unreadable", style="red")
    if usage < low:
        style = "cyan"
    elif usage > high:
        style = "green"
    else:
        style = "yellow"
    return Text(f"{usage}%", style=style)


def create_status_table(rows: List[Dict[str, Any]], low: int, high: int) -> Table:
    """Table of governed devices with a fresh sample each."""
    table = Table(
        title="Governed GPUs",
        box=box.ROUNDED,
        show_header=True,
        header_style="bold cyan"
    )

    table.add_column("GPU", style="cyan", justify="right", width=5)
    table.add_column("Usage", justify="right", width=11)
    table.add_column("Clock", justify="right", width=10)
    table.add_column("Low", justify="right", width=8)
    table.add_column("High", justify="right", width=8)
    table.add_column("Band", width=10)

    for row in rows:
        usage = row['utilization']
        if is_unreadable(usage):
            band = Text("?", style="red")
        elif usage < low:
            band = Text("● LOW", style="cyan")
        elif usage > high:
            band = Text("● HIGH", style="green")
        else:
            band = Text("● HOLD", style="yellow")

        clock = row['clock_mhz']
        table.add_row(
            str(row['index']),
            usage_text(usage, low, high),
            Text(f"{display(clock)} MHz", style="red" if is_unreadable(clock) else ""),
            f"{row['low_clock']} MHz",
            f"{row['high_clock']} MHz",
            band
        )

    return table


def create_devices_table(devices: Iterable[Device], title: str = "Configured GPUs") -> Table:
    table = Table(title=title, box=box.ROUNDED, header_style="bold cyan")
    table.add_column("GPU", style="cyan", justify="right")
    table.add_column("Low clock", justify="right")
    table.add_column("High clock", justify="right")
    table.add_column("Status")

    for device in devices:
        table.add_row(
            str(device.index),
            f"{device.low_clock} MHz",
            f"{device.high_clock} MHz",
            Text("✓ supported", style="green")
        )
    return table


def create_clocks_panel(index: int, clocks: Iterable[int]) -> Panel:
    ordered = sorted(clocks, reverse=True)
    content = Text()
    content.append(f"{len(ordered)} graphics clocks\n\n", style="bold")
    content.append('  '.join(str(c) for c in ordered))
    return Panel(content, title=f"[bold cyan]GPU {index} supported clocks (MHz)[/bold cyan]",
                 border_style="cyan")


def create_stats_panel(stats: Dict[str, Any]) -> Panel:
    """Summary of a finished governor run."""
    content = Text()
    labels = [
        ('Cycles', 'cycles'),
        ('Samples', 'samples'),
        ('Unreadable samples', 'unreadable_samples'),
        ('Transitions', 'transitions'),
        ('Lock failures', 'lock_failures'),
        ('Validation rejections', 'validation_rejections'),
        ('Verify mismatches', 'verify_mismatches'),
    ]
    for label, key in labels:
        value = stats.get(key, 0)
        content.append(f"{label}: ", style="bold")
        style = "red" if value and key not in ('cycles', 'samples', 'transitions') else ""
        content.append(f"{value}\n", style=style)

    content.append("Uptime: ", style="bold")
    content.append(f"{stats.get('uptime_seconds', 0):.0f}s")

    return Panel(content, title="[bold magenta]Governor summary[/bold magenta]",
                 border_style="magenta", box=box.DOUBLE)


def create_reset_table(results: Dict[int, bool]) -> Table:
    table = Table(title="Clock reset", box=box.ROUNDED, header_style="bold cyan")
    table.add_column("GPU", style="cyan", justify="right")
    table.add_column("Result")
    for index, ok in sorted(results.items()):
        table.add_row(
            str(index),
            Text("✓ default clocks", style="green") if ok else Text("✗ failed", style="red")
        )
    return table


def create_audit_table(entries: List[AuditEntry]) -> Table:
    table = Table(title="Audit log", box=box.ROUNDED, header_style="bold cyan")
    table.add_column("Time", style="dim")
    table.add_column("Event")
    table.add_column("GPU", justify="right")
    table.add_column("Params")
    table.add_column("Result")

    for e in entries:
        if e.result_success is None:
            result = Text("-", style="dim")
        elif e.result_success:
            result = Text("ok", style="green")
        else:
            result = Text(e.result_error or "failed", style="red")

        table.add_row(
            e.timestamp.replace('T', ' ')[:19],
            e.event_type,
            '-' if e.device_index is None else str(e.device_index),
            ', '.join(f"{k}={v}" for k, v in e.params.items()),
            result
        )
    return table
