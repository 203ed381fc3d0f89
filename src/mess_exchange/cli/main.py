"""
MESS exchange CLI, the `mess` command.

Commands:
  mess create <intent>       Open a request thread
  mess append <ref>          Add a message, optionally changing status
  mess show <ref>            Envelope and messages of a thread
  mess list                  Envelopes, most recently updated first
  mess migrate <ref>         Convert a legacy single-file thread
  mess resource <uri>        Fetch content:// or thread:// resources
  mess events <ref>          Export a thread as JSONL events
  mess watch                 Print changes as they happen
  mess capabilities          List capability routing hints
"""

import asyncio
import logging
from pathlib import Path
from typing import Optional

try:
    import click
    from rich.console import Console
    from rich.logging import RichHandler
except ImportError:
    raise SystemExit("CLI requires extras: pip install mess-exchange[cli]")

from mess_exchange import __version__
from mess_exchange.config import Settings, build_store, get_settings
from mess_exchange.errors import MessError
from mess_exchange.store import ThreadStore

console = Console()
err_console = Console(stderr=True)


def _settings() -> Settings:
    ctx = click.get_current_context()
    return ctx.obj["settings"]


def _get_store() -> ThreadStore:
    return build_store(_settings())


def _actor(actor: Optional[str]) -> str:
    return actor or _settings().agent_id


def _run(coro):
    try:
        return asyncio.run(coro)
    except MessError as e:
        err_console.print(f"[red]{e.code}:[/red] {e.message}")
        raise SystemExit(1)


@click.group()
@click.version_option(__version__)
@click.option("-v", "--verbose", is_flag=True, help="Log debug output.")
@click.option("--data-dir", type=click.Path(file_okay=False, path_type=Path), default=None,
              help="Filesystem backend root (overrides MESS_DATA_DIR).")
@click.pass_context
def main(ctx: click.Context, verbose: bool, data_dir: Optional[Path]):
    """MESS exchange: request threads between agents and executors."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=err_console, show_path=False)],
    )
    settings = get_settings()
    if data_dir is not None:
        settings = settings.model_copy(update={"data_dir": data_dir, "backend": "filesystem"})
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings


# Register subcommands from separate modules
from mess_exchange.cli.threads import (  # noqa: E402
    append_cmd,
    create_cmd,
    events_cmd,
    list_cmd,
    migrate_cmd,
    resource_cmd,
    show_cmd,
)
from mess_exchange.cli.watch import capabilities_cmd, watch_cmd  # noqa: E402

main.add_command(create_cmd)
main.add_command(append_cmd)
main.add_command(show_cmd)
main.add_command(list_cmd)
main.add_command(migrate_cmd)
main.add_command(resource_cmd)
main.add_command(events_cmd)
main.add_command(watch_cmd)
main.add_command(capabilities_cmd)


if __name__ == "__main__":
    main()
