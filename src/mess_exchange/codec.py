"""
MESSE-AF thread files.

Current format, one directory per thread:

    000-<ref>.messe-af.yaml   envelope, then messages, as YAML documents
    001-<ref>.messe-af.yaml   overflow once 000 would pass FILE_CEILING
    att-001-image-photo.jpg   externalized attachments

Legacy format: a single ``<ref>.messe-af.yaml`` holding every document.
"""

import re
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Iterable, Sequence, Union

import yaml
from pydantic import ValidationError as PydanticValidationError

from mess_exchange.attachments import mime_for
from mess_exchange.backend.base import StoredFile
from mess_exchange.errors import FormatError, SizeLimitError
from mess_exchange.models.envelope import Envelope
from mess_exchange.models.message import Message
from mess_exchange.models.thread import Attachment, Thread

FILE_CEILING = 1024 * 1024  # common remote content API payload limit
THREAD_SUFFIX = ".messe-af.yaml"
SEPARATOR = "---\n"
_YAML_WIDTH = 2**31 - 1
_SEQUENCE_FILE = re.compile(r"^(\d{3,})-.+" + re.escape(THREAD_SUFFIX) + "$")


def thread_filename(sequence: int, ref: str) -> str:
    return f"{sequence:03d}-{ref}{THREAD_SUFFIX}"


def legacy_filename(ref: str) -> str:
    return f"{ref}{THREAD_SUFFIX}"


def sequence_of(name: str) -> int:
    match = _SEQUENCE_FILE.match(name)
    return int(match.group(1)) if match else -1


def is_thread_file(name: str) -> bool:
    return _SEQUENCE_FILE.match(name) is not None


def is_attachment_file(name: str) -> bool:
    return name.startswith("att-")


def dump_document(doc: dict[str, Any]) -> str:
    return yaml.safe_dump(doc, sort_keys=False, allow_unicode=True, default_flow_style=False, width=_YAML_WIDTH)


def serialize_thread(
    envelope: Envelope,
    messages: Sequence[Message],
    attachments: Iterable[Attachment] = (),
) -> list[StoredFile]:
    """Lay out a thread as sequence-numbered YAML files plus attachment files.

    Only attachments that carry content are emitted.
    """
    files: list[StoredFile] = []
    sequence = 0
    current = [dump_document(envelope.to_doc())]
    size = len(current[0].encode("utf-8"))

    for message in messages:
        text = dump_document(message.to_doc())
        text_size = len(text.encode("utf-8"))
        has_message = len(current) > (1 if sequence == 0 else 0)
        if has_message and size + len(SEPARATOR) + text_size > FILE_CEILING:
            files.append(_thread_file(sequence, envelope.ref, current))
            sequence += 1
            current, size = [], 0
        size += text_size + (len(SEPARATOR) if current else 0)
        current.append(text)
    files.append(_thread_file(sequence, envelope.ref, current))

    for stored in files:
        if len(stored.content) > FILE_CEILING:
            raise SizeLimitError(
                f"{stored.name} is {len(stored.content)} bytes, over the {FILE_CEILING} byte ceiling",
                details={"file": stored.name, "size": len(stored.content)},
            )

    for att in attachments:
        if att.content is not None:
            files.append(StoredFile(att.name, att.content))
    return files


def _thread_file(sequence: int, ref: str, docs: list[str]) -> StoredFile:
    return StoredFile(thread_filename(sequence, ref), SEPARATOR.join(docs).encode("utf-8"))


def serialize_legacy(envelope: Envelope, messages: Sequence[Message]) -> bytes:
    docs = [dump_document(envelope.to_doc())] + [dump_document(m.to_doc()) for m in messages]
    return SEPARATOR.join(docs).encode("utf-8")


def format_timestamp(moment: datetime) -> str:
    """UTC ISO-8601 with milliseconds and a ``Z`` suffix, e.g. ``2026-02-01T10:00:00.000Z``."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _plain(value: Any) -> Any:
    """Timestamps YAML resolved to datetimes, back to the ISO strings the models expect."""
    if isinstance(value, datetime):
        return format_timestamp(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_plain(v) for v in value]
    return value


def parse_documents(content: Union[bytes, str], source: str = "<thread>") -> list[dict[str, Any]]:
    text = content.decode("utf-8") if isinstance(content, bytes) else content
    try:
        docs = [_plain(doc) for doc in yaml.safe_load_all(text) if doc is not None]
    except (yaml.YAMLError, UnicodeDecodeError) as e:
        raise FormatError(f"{source}: invalid YAML: {e}", details={"source": source})
    for doc in docs:
        if not isinstance(doc, dict):
            raise FormatError(f"{source}: expected mapping documents", details={"source": source})
    return docs


def _build(docs: list[dict[str, Any]], source: str) -> tuple[Envelope, list[Message]]:
    if not docs:
        raise FormatError(f"{source}: no documents", details={"source": source})
    try:
        envelope = Envelope.model_validate(docs[0])
        messages = [Message.model_validate(doc) for doc in docs[1:]]
    except PydanticValidationError as e:
        raise FormatError(f"{source}: {e.errors()[0]['msg']}", details={"source": source})
    return envelope, messages


def parse_thread(files: Sequence[StoredFile]) -> Thread:
    """Parse the current directory format."""
    thread_files = sorted((f for f in files if is_thread_file(f.name)), key=lambda f: sequence_of(f.name))
    if not thread_files or sequence_of(thread_files[0].name) != 0:
        raise FormatError("thread directory has no primary file", details={"files": [f.name for f in files]})
    docs: list[dict[str, Any]] = []
    for stored in thread_files:
        docs.extend(parse_documents(stored.content, stored.name))
    envelope, messages = _build(docs, thread_files[0].name)

    mimes = _referenced_mimes(messages)
    attachments = [
        Attachment(
            name=f.name,
            mime=mimes.get(f.name) or mime_for(f.name),
            size=len(f.content),
            path=f.name,
            content=f.content,
        )
        for f in sorted(files, key=lambda f: f.name)
        if is_attachment_file(f.name)
    ]
    return Thread(envelope=envelope, messages=messages, attachments=attachments)


def parse_legacy(content: Union[bytes, str], source: str = "<legacy>") -> Thread:
    envelope, messages = _build(parse_documents(content, source), source)
    return Thread(envelope=envelope, messages=messages, legacy=True)


def _referenced_mimes(messages: Sequence[Message]) -> dict[str, str]:
    mimes = {}
    for message in messages:
        for block in message.mess:
            for body in block.values():
                if not isinstance(body, dict):
                    continue
                for entry in body.get("content") or []:
                    if not isinstance(entry, dict):
                        continue
                    for value in entry.values():
                        if isinstance(value, dict) and value.get("path") and value.get("mime"):
                            mimes[value["path"]] = value["mime"]
    return mimes


@dataclass
class StoredThread:
    """A thread as found in a partition: directory (current) or single file (legacy)."""

    folder: str
    path: str
    legacy: bool
    files: list[StoredFile] = field(default_factory=list)


def decode(stored: StoredThread) -> Thread:
    if stored.legacy:
        thread = parse_legacy(stored.files[0].content, stored.path)
    else:
        thread = parse_thread(stored.files)
    thread.folder = stored.folder
    return thread
