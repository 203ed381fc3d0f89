"""CLI: mess watch|capabilities"""

from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from mess_exchange.capabilities import CapabilityCatalog
from mess_exchange.models.envelope import Envelope
from mess_exchange.watcher import ThreadWatcher

console = Console()


def _settings():
    from mess_exchange.cli.main import _settings
    return _settings()


def _get_store():
    from mess_exchange.cli.main import _get_store
    return _get_store()


def _run(coro):
    from mess_exchange.cli.main import _run
    return _run(coro)


def _print_change(envelope: Envelope, event_type: str) -> None:
    style = "green" if event_type == "created" else "yellow" if event_type.startswith("status:") else "cyan"
    console.print(f"[dim]{envelope.updated}[/dim] [{style}]{event_type}[/{style}] {envelope.ref}  {envelope.intent}")


@click.command("watch")
@click.option("-i", "--interval", type=float, default=None, help="Seconds between polls (default MESS_POLL_INTERVAL).")
@click.option("--all", "show_existing", is_flag=True, help="Report existing threads as created on start.")
def watch_cmd(interval: Optional[float], show_existing: bool):
    """Print thread changes until interrupted."""

    async def _watch():
        async with _get_store() as store:
            watcher = ThreadWatcher(store, interval or _settings().poll_interval, on_change=_print_change)
            if not show_existing:
                count = await watcher.prime()
                console.print(f"[dim]Watching {count} threads (Ctrl+C to stop)[/dim]")
            await watcher.run()

    try:
        _run(_watch())
    except KeyboardInterrupt:
        console.print("\n[dim]Stopped.[/dim]")


@click.command("capabilities")
@click.option("-t", "--tag", default=None)
def capabilities_cmd(tag: Optional[str]):
    """List capability routing hints from MESS_CAPABILITIES_DIR."""
    directory = _settings().capabilities_dir
    if directory is None:
        raise click.UsageError("set MESS_CAPABILITIES_DIR to a directory of capability YAML files")
    capabilities = CapabilityCatalog(directory).list(tag)
    table = Table(title=f"Capabilities ({len(capabilities)})")
    table.add_column("ID", style="bold")
    table.add_column("Description")
    table.add_column("Tags")
    for c in capabilities:
        table.add_row(c.id, c.description, ", ".join(c.tags))
    console.print(table)
