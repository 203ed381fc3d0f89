"""
Attachment handling: inline vs external payloads and resource locators.

Inline payloads are ``data:<mime>;base64,<...>`` strings inside a block's
``content`` list, either bare or as ``{"image": "data:..."}`` (optionally
with a ``name``). Oversized ones are moved into their own ``att-NNN-...``
file and replaced by a reference block:

    {"image": {"path": "att-001-image-photo.jpg", "name": "photo.jpg",
               "mime": "image/jpeg", "size": 921600}}
"""

import base64
import binascii
import copy
import logging
import re
import time
from pathlib import PurePosixPath
from typing import Any, Callable, Optional

from mess_exchange.errors import NotFoundError, ValidationError
from mess_exchange.models.message import Message
from mess_exchange.models.thread import Attachment, Thread

logger = logging.getLogger(__name__)

INLINE_CEILING = 768 * 1024  # leaves room for envelope + metadata under the 1 MiB file ceiling
CONTENT_SCHEME = "content://"
THREAD_SCHEME = "thread://"
THREAD_PARTS = ("envelope", "latest")
MEDIA_KINDS = ("image", "audio", "video", "file")

MIME_EXTENSIONS = {
    "image/jpeg": "jpg", "image/png": "png", "image/gif": "gif", "image/webp": "webp",
    "audio/mpeg": "mp3", "audio/wav": "wav", "audio/mp4": "m4a",
    "video/mp4": "mp4", "video/quicktime": "mov", "video/webm": "webm",
    "application/pdf": "pdf", "text/plain": "txt",
}
EXTENSION_MIMES = {ext: mime for mime, ext in MIME_EXTENSIONS.items()}

_DATA_URL = re.compile(r"^data:(?P<mime>[^;,]+);base64,(?P<data>.*)$", re.DOTALL)


def classify(mime: Optional[str]) -> str:
    for kind in ("image", "audio", "video"):
        if mime and mime.startswith(f"{kind}/"):
            return kind
    return "file"


def extension_for(mime: Optional[str], name: Optional[str] = None) -> str:
    if mime in MIME_EXTENSIONS:
        return MIME_EXTENSIONS[mime]
    suffix = PurePosixPath(name).suffix.lstrip(".") if name else ""
    return sanitize_filename(suffix.lower()) if suffix else "bin"


def mime_for(filename: str) -> str:
    return EXTENSION_MIMES.get(PurePosixPath(filename).suffix.lstrip(".").lower(), "application/octet-stream")


def sanitize_filename(name: str) -> str:
    return re.sub(r"_+", "_", re.sub(r"[^a-zA-Z0-9._-]", "_", name))


def build_filename(serial: int, type: str, sanitized_name: str, ext: str) -> str:
    return f"att-{serial:03d}-{type}-{sanitized_name}.{ext}"


def should_externalize(payload_size: int, ceiling: int = INLINE_CEILING) -> bool:
    return payload_size > ceiling


def data_url(mime: str, data: bytes) -> str:
    return f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}"


def decode_data_url(value: Any) -> Optional[tuple[str, bytes]]:
    """``(mime, bytes)`` for a base64 data URL, None for anything else."""
    if not isinstance(value, str) or not value.startswith("data:"):
        return None
    match = _DATA_URL.match(value)
    if match is None:
        return None
    try:
        return match.group("mime"), base64.b64decode(match.group("data"), validate=True)
    except (binascii.Error, ValueError):
        return None


def content_uri(thread_ref: str, filename: str) -> str:
    return f"{CONTENT_SCHEME}{thread_ref}/{filename}"


def parse_content_uri(uri: str) -> tuple[str, str]:
    if not uri.startswith(CONTENT_SCHEME):
        raise ValidationError(f"not a content URI: {uri}")
    ref, _, filename = uri[len(CONTENT_SCHEME):].partition("/")
    if not ref or not filename:
        raise ValidationError(f"malformed content URI: {uri}")
    return ref, filename


def parse_thread_uri(uri: str) -> tuple[str, Optional[str]]:
    """``thread://{ref}[/envelope|/latest]`` -> ``(ref, part)``."""
    if not uri.startswith(THREAD_SCHEME):
        raise ValidationError(f"not a thread URI: {uri}")
    ref, _, part = uri[len(THREAD_SCHEME):].partition("/")
    if not ref:
        raise ValidationError(f"malformed thread URI: {uri}")
    if part and part not in THREAD_PARTS:
        raise ValidationError(f"unknown thread view: {part}", details={"uri": uri})
    return ref, part or None


def _inline_entry(entry: Any) -> Optional[tuple[Optional[str], str, Optional[str]]]:
    """``(kind, data_url, name)`` when ``entry`` carries an inline payload."""
    if isinstance(entry, str) and entry.startswith("data:"):
        return None, entry, None
    if isinstance(entry, dict):
        for kind in MEDIA_KINDS:
            value = entry.get(kind)
            if isinstance(value, str) and value.startswith("data:"):
                return kind, value, entry.get("name")
    return None


def _external_entry(entry: Any) -> Optional[tuple[str, dict[str, Any]]]:
    if isinstance(entry, dict):
        for kind in MEDIA_KINDS:
            value = entry.get(kind)
            if isinstance(value, dict) and value.get("path"):
                return kind, value
    return None


def _content_lists(message_doc: dict[str, Any]):
    for block in message_doc.get("MESS") or []:
        for body in block.values():
            if isinstance(body, dict) and isinstance(body.get("content"), list):
                yield body


class ResourceRegistry:
    """Bytes registered under resource URIs, expiring after ``ttl`` seconds."""

    def __init__(self, ttl: float = 300.0, clock: Callable[[], float] = time.monotonic):
        self._ttl = ttl
        self._clock = clock
        self._entries: dict[str, tuple[float, bytes, str]] = {}

    @property
    def ttl(self) -> float:
        return self._ttl

    def register(self, uri: str, content: bytes, mime: str) -> None:
        self._entries[uri] = (self._clock() + self._ttl, content, mime)

    def get(self, uri: str) -> Optional[tuple[bytes, str]]:
        self._purge()
        entry = self._entries.get(uri)
        return (entry[1], entry[2]) if entry else None

    def invalidate(self, uri: Optional[str] = None) -> None:
        if uri is None:
            self._entries.clear()
        else:
            self._entries.pop(uri, None)

    def _purge(self) -> None:
        now = self._clock()
        for uri in [u for u, (expires, _, _) in self._entries.items() if expires <= now]:
            del self._entries[uri]

    def __len__(self) -> int:
        self._purge()
        return len(self._entries)


class AttachmentManager:
    def __init__(self, registry: Optional[ResourceRegistry] = None, inline_ceiling: int = INLINE_CEILING):
        self.registry = registry if registry is not None else ResourceRegistry()
        self.inline_ceiling = inline_ceiling

    def should_externalize(self, payload_size: int) -> bool:
        return should_externalize(payload_size, self.inline_ceiling)

    def externalize(self, entry: Any, serial: int) -> tuple[Attachment, dict[str, Any]]:
        """Split an inline payload into an attachment file and a reference block."""
        inline = _inline_entry(entry)
        decoded = decode_data_url(inline[1]) if inline else None
        if decoded is None:
            raise ValidationError("attachment payload is not a base64 data URL")
        kind, _, name = inline
        mime, data = decoded
        type_ = classify(mime)
        ext = extension_for(mime, name)
        stem = sanitize_filename(PurePosixPath(name).stem) if name else type_
        filename = build_filename(serial, type_, stem or type_, ext)
        attachment = Attachment(name=filename, mime=mime, size=len(data), path=filename, content=data)
        reference = {"path": filename, "name": name or f"{type_}.{ext}", "mime": mime, "size": len(data)}
        return attachment, {kind or type_: reference}

    def externalize_message(self, message: Message, next_serial: int) -> tuple[Message, list[Attachment]]:
        """Externalize every oversized inline payload of ``message``."""
        doc = message.to_doc()
        attachments: list[Attachment] = []
        for body in _content_lists(doc):
            entries = []
            for entry in body["content"]:
                inline = _inline_entry(entry)
                if inline and self.should_externalize(len(inline[1].encode("utf-8"))):
                    attachment, reference = self.externalize(entry, next_serial + len(attachments))
                    attachments.append(attachment)
                    entries.append(reference)
                    logger.debug("Externalized %s (%d bytes)", attachment.name, attachment.size)
                else:
                    entries.append(entry)
            body["content"] = entries
        if not attachments:
            return message, []
        return Message.model_validate(doc), attachments

    def to_resource_uris(self, thread: Thread) -> Thread:
        """Copy of ``thread`` with every attachment replaced by a content:// locator.

        The bytes behind each locator are registered for :meth:`resolve`.
        """
        ref = thread.ref
        for att in thread.attachments:
            if att.content is not None:
                self.registry.register(content_uri(ref, att.name), att.content, att.mime)

        messages = []
        for m_index, message in enumerate(thread.messages):
            doc = message.to_doc()
            for b_index, body in enumerate(_content_lists(doc)):
                body["content"] = [
                    self._to_resource(ref, thread, entry, f"inline-{m_index:03d}-{b_index:02d}-{e_index:02d}")
                    for e_index, entry in enumerate(body["content"])
                ]
            messages.append(Message.model_validate(doc))

        return thread.model_copy(update={
            "messages": messages,
            "attachments": [att.model_copy(update={"content": None}) for att in thread.attachments],
        })

    def _to_resource(self, ref: str, thread: Thread, entry: Any, inline_stem: str) -> Any:
        inline = _inline_entry(entry)
        if inline:
            decoded = decode_data_url(inline[1])
            if decoded is None:
                return entry
            mime, data = decoded
            uri = content_uri(ref, f"{inline_stem}.{extension_for(mime)}")
            self.registry.register(uri, data, mime)
            return {inline[0] or classify(mime): {"resource": uri, "mime": mime, "size": len(data)}}

        external = _external_entry(entry)
        if external:
            kind, reference = external
            uri = content_uri(ref, reference["path"])
            view = {"resource": uri}
            view.update({k: v for k, v in reference.items() if k != "path"})
            att = thread.attachment(reference["path"])
            if att is not None and att.content is not None:
                self.registry.register(uri, att.content, reference.get("mime") or att.mime)
            return {kind: view}
        return copy.deepcopy(entry)

    def resolve(self, uri: str) -> tuple[bytes, str]:
        parse_content_uri(uri)
        found = self.registry.get(uri)
        if found is None:
            raise NotFoundError(f"unknown resource: {uri}", details={"uri": uri})
        return found
