"""CLI: mess create|append|show|list|migrate|resource|events"""

import json
import sys
from pathlib import Path
from typing import Any, Optional

import click
from rich.console import Console
from rich.table import Table

from mess_exchange.attachments import THREAD_SCHEME, classify, data_url, mime_for
from mess_exchange.errors import ValidationError
from mess_exchange.lifecycle import STATES

console = Console()


def _get_store():
    from mess_exchange.cli.main import _get_store
    return _get_store()


def _actor(actor: Optional[str]) -> str:
    from mess_exchange.cli.main import _actor
    return _actor(actor)


def _run(coro):
    from mess_exchange.cli.main import _run
    return _run(coro)


def _attachment_entry(path: Path) -> dict[str, Any]:
    mime = mime_for(path.name)
    return {classify(mime): data_url(mime, path.read_bytes()), "name": path.name}


def build_blocks(
    status: Optional[str] = None,
    message: Optional[str] = None,
    response: tuple[str, ...] = (),
    attach: tuple[Path, ...] = (),
    answer: Optional[str] = None,
    cancel: Optional[str] = None,
    local_id: Optional[str] = None,
    raw: Optional[str] = None,
) -> list[dict[str, Any]]:
    """Payload blocks for `mess append` from its options."""
    blocks: list[dict[str, Any]] = []
    if raw:
        parsed = json.loads(raw)
        blocks.extend(parsed if isinstance(parsed, list) else [parsed])
    if status:
        body: dict[str, Any] = {"code": status}
        if message:
            body["message"] = message
        blocks.append({"status": body})
    if response or attach:
        content: list[Any] = list(response) + [_attachment_entry(p) for p in attach]
        blocks.append({"response": {"content": content}})
    if answer:
        blocks.append({"answer": {"content": [answer]}})
    if cancel is not None:
        blocks.append({"cancel": {"reason": cancel} if cancel else {}})
    if local_id and blocks:
        for block in blocks:
            body = next(iter(block.values()))
            if isinstance(body, dict):
                body.setdefault("id", local_id)
                break
    if not blocks:
        raise ValidationError("nothing to append: give --status, --response, --attach, --answer, --cancel or --blocks")
    return blocks


def _dump(value: Any) -> None:
    if hasattr(value, "model_dump"):
        value = value.model_dump(mode="json", by_alias=True, exclude_none=True)
    click.echo(json.dumps(value, indent=2, ensure_ascii=False))


@click.command("create")
@click.argument("intent")
@click.option("-p", "--priority", default="normal",
              type=click.Choice(["background", "normal", "elevated", "urgent"]))
@click.option("-c", "--context", multiple=True, help="Context line (repeatable).")
@click.option("--id", "local_id", default=None, help="Your own id for this request.")
@click.option("--as", "actor", default=None, help="Requestor id (default MESS_AGENT_ID).")
@click.option("--json-output", "--json", is_flag=True)
def create_cmd(intent: str, priority: str, context: tuple[str, ...], local_id: Optional[str],
               actor: Optional[str], json_output: bool):
    """Open a new request thread."""

    async def _create():
        async with _get_store() as store:
            ref, envelope = await store.create(
                _actor(actor), intent, priority, list(context), local_id=local_id, channel="cli",
            )
        if json_output:
            _dump(envelope)
            return
        console.print(f"[green]Created {ref}[/green] ({envelope.status})")

    _run(_create())


@click.command("append")
@click.argument("ref")
@click.option("-s", "--status", default=None, type=click.Choice(sorted(STATES | {"in-progress"})))
@click.option("-m", "--message", default=None, help="Status message.")
@click.option("-r", "--response", multiple=True, help="Response text (repeatable).")
@click.option("-a", "--attach", multiple=True, type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--answer", default=None)
@click.option("--cancel", default=None, help="Cancel with this reason.")
@click.option("--id", "local_id", default=None)
@click.option("--re", "re_ref", default=None, help="Message this one replies to.")
@click.option("--blocks", "raw", default=None, help="Raw JSON block or list of blocks.")
@click.option("--as", "actor", default=None)
def append_cmd(ref, status, message, response, attach, answer, cancel, local_id, re_ref, raw, actor):
    """Append a message to a thread."""

    async def _append():
        try:
            blocks = build_blocks(status, message, response, attach, answer, cancel, local_id, raw)
        except json.JSONDecodeError as e:
            raise ValidationError(f"--blocks is not valid JSON: {e}")
        async with _get_store() as store:
            envelope = await store.append(ref, _actor(actor), blocks, channel="cli", re=re_ref)
        console.print(f"[green]{envelope.ref}[/green] is {envelope.status}")

    _run(_append())


def _render_content(body: Any) -> str:
    if isinstance(body, dict):
        if isinstance(body.get("content"), list):
            parts = []
            for entry in body["content"]:
                if isinstance(entry, dict):
                    kind, value = next(iter(entry.items()))
                    parts.append(f"[{kind}] {value.get('resource') if isinstance(value, dict) else value}")
                else:
                    parts.append(str(entry))
            return "\n".join(parts)
        return ", ".join(f"{k}={v}" for k, v in body.items() if not isinstance(v, (list, dict)))
    return str(body)


@click.command("show")
@click.argument("ref")
@click.option("--json-output", "--json", is_flag=True)
@click.option("--acks", is_flag=True, help="Include exchange acks.")
def show_cmd(ref: str, json_output: bool, acks: bool):
    """Show a thread."""

    async def _show():
        async with _get_store() as store:
            thread = await store.expose(ref)
        if json_output:
            _dump({
                "envelope": thread.envelope.to_doc(),
                "messages": [m.to_doc() for m in thread.messages],
                "attachments": [a.model_dump(exclude={"content"}) for a in thread.attachments],
            })
            return
        env = thread.envelope
        console.print(f"[bold]{env.ref}[/bold]  {env.status}  ({env.priority})")
        console.print(f"  intent:    {env.intent}")
        console.print(f"  requestor: {env.requestor}   executor: {env.executor or '-'}")
        console.print(f"  folder:    {thread.folder}   updated: {env.updated}")
        for message in thread.messages:
            if message.is_ack and not acks:
                continue
            console.print(f"\n[cyan]{message.sender}[/cyan] [dim]{message.received}[/dim]")
            for block in message.mess:
                for kind, body in block.items():
                    if kind == "v":
                        continue
                    console.print(f"  [bold]{kind}[/bold] {_render_content(body)}")

    _run(_show())


@click.command("list")
@click.option("-s", "--status", default=None)
@click.option("--json-output", "--json", is_flag=True)
def list_cmd(status: Optional[str], json_output: bool):
    """List threads, most recently updated first."""

    async def _list():
        async with _get_store() as store:
            envelopes = await store.list(status)
        if json_output:
            _dump([e.to_doc() for e in envelopes])
            return
        table = Table(title=f"Threads ({len(envelopes)})")
        table.add_column("Ref", style="bold")
        table.add_column("Status")
        table.add_column("Executor")
        table.add_column("Intent")
        table.add_column("Updated")
        for e in envelopes:
            table.add_row(e.ref, e.status, e.executor or "", e.intent, e.updated)
        console.print(table)

    _run(_list())


@click.command("migrate")
@click.argument("ref")
def migrate_cmd(ref: str):
    """Convert a legacy single-file thread to the directory format."""

    async def _migrate():
        async with _get_store() as store:
            migrated = await store.migrate(ref)
        if migrated:
            console.print(f"[green]Migrated {ref}[/green]")
        else:
            console.print(f"[dim]{ref} is already in the current format[/dim]")

    _run(_migrate())


@click.command("resource")
@click.argument("uri")
@click.option("-o", "--output", type=click.Path(dir_okay=False, path_type=Path), default=None)
def resource_cmd(uri: str, output: Optional[Path]):
    """Fetch a content:// attachment or a thread:// view."""

    async def _resource():
        async with _get_store() as store:
            if uri.startswith(THREAD_SCHEME):
                _dump(await store.view(uri))
                return
            content, mime = await store.resource(uri)
        if output is not None:
            output.write_bytes(content)
            console.print(f"[green]Wrote {len(content)} bytes ({mime}) to {output}[/green]")
        else:
            sys.stdout.buffer.write(content)

    _run(_resource())


@click.command("events")
@click.argument("ref")
def events_cmd(ref: str):
    """Export a thread as JSONL events."""

    async def _events():
        async with _get_store() as store:
            events = await store.events(ref)
        for event in events:
            click.echo(event.model_dump_json())

    _run(_events())
