"""
Thread store: create, append, read and list threads over a transactional backend.

Layout under the backend root:

    state=received/2026-02-01-001/000-2026-02-01-001.messe-af.yaml
    state=finished/2026-01-12-004.messe-af.yaml        (legacy, migrated on write)

Each write reads a snapshot, builds the new file set, and commits it against
the snapshot's revision; a conflicting commit is retried from a fresh read.
A thread always sits in the partition its envelope status maps to.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Union

from mess_exchange import lifecycle
from mess_exchange.attachments import (
    CONTENT_SCHEME,
    AttachmentManager,
    parse_content_uri,
    parse_thread_uri,
)
from mess_exchange.backend.base import Snapshot, StoredFile, TransactionalStore
from mess_exchange.codec import (
    THREAD_SUFFIX,
    StoredThread,
    decode,
    format_timestamp,
    is_thread_file,
    legacy_filename,
    sequence_of,
    serialize_thread,
)
from mess_exchange.errors import FormatError, NotFoundError, ValidationError
from mess_exchange.hooks import HookDispatcher, HookEvent
from mess_exchange.lifecycle import FOLDERS, Folder, Status
from mess_exchange.models.envelope import PRIORITIES, Envelope, HistoryEntry
from mess_exchange.models.events import ThreadEvent
from mess_exchange.models.message import PROTOCOL_VERSION, Message, ack_message, validate_blocks
from mess_exchange.models.thread import Attachment, Thread
from mess_exchange.refs import (
    LAST,
    MESSAGE_REF,
    RefResolver,
    ResolutionContext,
    extract_local_id,
    generate_message_ref,
    generate_thread_ref,
    is_message_ref,
    is_thread_ref,
    message_type,
    serial_for_date,
    thread_ref_of,
)
from mess_exchange.replay import events_from_thread

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def partition(folder: str) -> str:
    return f"state={folder}"


def _next_message_serial(thread: Thread) -> int:
    serials = [0]
    for message in thread.messages:
        if not message.is_ack:
            continue
        for block in message.mess:
            match = MESSAGE_REF.match((block.get("ack") or {}).get("ref") or "")
            if match:
                serials.append(int(match.group("serial")))
    return max(serials) + 1


def _next_attachment_serial(attachments: list[Attachment]) -> int:
    return max((att.serial for att in attachments), default=0) + 1


class ThreadStore:
    def __init__(
        self,
        backend: TransactionalStore,
        *,
        attachments: Optional[AttachmentManager] = None,
        hooks: Optional[HookDispatcher] = None,
        resolver: Optional[RefResolver] = None,
        clock: Clock = _utcnow,
    ):
        self.backend = backend
        self.attachments = attachments if attachments is not None else AttachmentManager()
        self.hooks = hooks if hooks is not None else HookDispatcher()
        self.resolver = resolver if resolver is not None else RefResolver()
        self._clock = clock

    def _now(self) -> str:
        return format_timestamp(self._clock())

    # -- locating -----------------------------------------------------------

    @staticmethod
    async def _load(snap: Snapshot, folder: str, ref: str) -> Optional[StoredThread]:
        """Thread ``ref`` in ``folder``; a directory wins over a legacy file."""
        dir_path = f"{partition(folder)}/{ref}"
        files = await snap.read_dir(dir_path)
        if files is not None:
            return StoredThread(folder=folder, path=dir_path, legacy=False, files=files)
        legacy_path = f"{partition(folder)}/{legacy_filename(ref)}"
        content = await snap.read_file(legacy_path)
        if content is not None:
            return StoredThread(
                folder=folder, path=legacy_path, legacy=True,
                files=[StoredFile(legacy_filename(ref), content)],
            )
        return None

    async def _locate(self, snap: Snapshot, ref: str) -> StoredThread:
        # Partitions are scanned in the order threads move through them.
        for folder in FOLDERS:
            stored = await self._load(snap, folder, ref)
            if stored is not None:
                return stored
        raise NotFoundError(f"thread not found: {ref}", details={"ref": ref})

    @staticmethod
    async def _refs_in(snap: Snapshot, folder: str) -> list[str]:
        refs: list[str] = []
        for entry in await snap.entries(partition(folder)):
            if entry.is_dir:
                ref = entry.name
            elif entry.name.endswith(THREAD_SUFFIX):
                ref = entry.name[: -len(THREAD_SUFFIX)]
            else:
                continue
            if is_thread_ref(ref) and ref not in refs:
                refs.append(ref)
        return refs

    async def _threads(self, snap: Snapshot, folders: tuple[str, ...] = FOLDERS) -> list[Thread]:
        """Every readable thread; corrupt ones are logged and skipped."""
        threads: list[Thread] = []
        seen: set[str] = set()
        for folder in folders:
            for ref in await self._refs_in(snap, folder):
                if ref in seen:
                    continue
                seen.add(ref)
                stored = await self._load(snap, folder, ref)
                if stored is None:
                    continue
                try:
                    threads.append(decode(stored))
                except FormatError as e:
                    logger.warning("Skipping unreadable thread %s: %s", stored.path, e.message)
        return threads

    async def _serials(self, snap: Snapshot, date: str) -> list[int]:
        serials = []
        for folder in FOLDERS:
            for entry in await snap.entries(partition(folder)):
                serial = serial_for_date(entry.name, date)
                if serial is not None:
                    serials.append(serial)
        return serials

    # -- writes ---------------------------------------------------------------

    async def create(
        self,
        requestor_id: str,
        intent: str,
        priority: str = "normal",
        context: Optional[list[Any]] = None,
        *,
        local_id: Optional[str] = None,
        response_hint: Optional[list[Any]] = None,
        channel: Optional[str] = "api",
        extra: Optional[dict[str, Any]] = None,
    ) -> tuple[str, Envelope]:
        """Open a new thread in ``state=received`` and return its ref and envelope."""
        if not requestor_id or not str(requestor_id).strip():
            raise ValidationError("a request needs a requestor")
        if not isinstance(intent, str) or not intent.strip():
            raise ValidationError("a request needs an intent")
        if priority not in PRIORITIES:
            raise ValidationError(f"unknown priority: {priority}", details={"priority": priority})

        request: dict[str, Any] = dict(extra or {})
        if local_id:
            request["id"] = local_id
        request["intent"] = intent.strip()
        request["context"] = list(context or [])
        request["response_hint"] = list(response_hint or [])
        blocks = validate_blocks([{"v": PROTOCOL_VERSION}, {"request": request}])

        async def attempt() -> tuple[str, Envelope]:
            snap = await self.backend.snapshot()
            now = self._now()
            ref = generate_thread_ref(now[:10], await self._serials(snap, now[:10]), local_id)
            envelope = Envelope(
                ref=ref,
                requestor=requestor_id,
                status=Status.PENDING,
                created=now,
                updated=now,
                intent=intent.strip(),
                priority=priority,
                history=[HistoryEntry(action="created", at=now, by=requestor_id)],
            )
            request_message = Message(sender=requestor_id, received=now, channel=channel, mess=blocks)
            request_message, attachments = self.attachments.externalize_message(request_message, 1)
            messages = [request_message, ack_message(now, ref, re=local_id or LAST)]
            files = serialize_thread(envelope, messages, attachments)
            await self.backend.create_files(
                f"{partition(Folder.RECEIVED)}/{ref}", files,
                base=snap.revision, message=f"New request {ref}: {envelope.intent}",
            )
            return ref, envelope

        ref, envelope = await self.backend.retrying(attempt)
        logger.info("Created %s for %s", ref, requestor_id)
        await self.hooks.dispatch(envelope, HookEvent.CREATED)
        return ref, envelope

    async def append(
        self,
        ref: str,
        actor_id: str,
        blocks: list[dict[str, Any]],
        new_status: Optional[str] = None,
        *,
        channel: Optional[str] = "api",
        re: Optional[str] = None,
    ) -> Envelope:
        """Append a message to ``ref`` and optionally move the thread to ``new_status``.

        ``ref`` may be a thread ref, message ref, local id or ``last``. When
        ``new_status`` is omitted, a status block's code (or a cancel block)
        supplies it. The message, its ack, the envelope update and any
        partition move commit together or not at all.
        """
        if not actor_id or not str(actor_id).strip():
            raise ValidationError("a message needs a sender")
        blocks = validate_blocks(blocks)
        if any("ack" in block for block in blocks):
            raise ValidationError("acks are issued by the exchange")
        requested = lifecycle.normalize_status(new_status) if new_status else lifecycle.status_from_blocks(blocks)

        thread_ref = await self._thread_ref(ref, actor_id)
        re_ref = await self.resolve(re, actor_id) if re else None
        local_id = extract_local_id(blocks)
        kind = message_type(blocks)

        async def attempt() -> tuple[Envelope, bool]:
            snap = await self.backend.snapshot()
            stored = await self._locate(snap, thread_ref)
            thread = decode(stored)
            envelope = thread.envelope.model_copy(deep=True)
            now = self._now()
            msg_ref = generate_message_ref(thread_ref, kind, _next_message_serial(thread), local_id)

            changed = False
            if requested and (
                requested != lifecycle.normalize_status(envelope.status) or requested == Status.CLAIMED
            ):
                changed = lifecycle.apply(envelope, requested, actor_id, at=now, ref=msg_ref) is not None
            envelope.updated = now

            messages, attachments = self._current_layout(thread)
            message = Message(sender=actor_id, received=now, channel=channel, re=re_ref or thread_ref, mess=blocks)
            message, added = self.attachments.externalize_message(message, _next_attachment_serial(attachments))
            messages += [message, ack_message(now, msg_ref, re=local_id)]

            files = serialize_thread(envelope, messages, attachments + added)
            await self._write(snap, stored, envelope, files, message=f"{msg_ref} by {actor_id}")
            return envelope, changed

        envelope, changed = await self.backend.retrying(attempt)
        logger.info("Appended %s message to %s (status %s)", kind, thread_ref, envelope.status)
        await self.hooks.dispatch(envelope, HookEvent.STATUS_CHANGED if changed else HookEvent.MESSAGE)
        return envelope

    def _current_layout(self, thread: Thread) -> tuple[list[Message], list[Attachment]]:
        """Messages and attachments as the current format stores them.

        Legacy threads carry every payload inline; oversized ones are split
        out here so the migrated directory fits the file ceiling.
        """
        if not thread.legacy:
            return list(thread.messages), list(thread.attachments)
        messages: list[Message] = []
        attachments: list[Attachment] = []
        for message in thread.messages:
            message, added = self.attachments.externalize_message(message, _next_attachment_serial(attachments))
            messages.append(message)
            attachments.extend(added)
        return messages, attachments

    async def _write(
        self,
        snap: Snapshot,
        stored: StoredThread,
        envelope: Envelope,
        files: list[StoredFile],
        *,
        message: str,
    ) -> None:
        target = f"{partition(lifecycle.folder_for(envelope.status))}/{envelope.ref}"
        if stored.legacy:
            await self.backend.move_directory(stored.path, target, files, base=snap.revision, message=message)
            logger.info("Migrated legacy thread %s to %s", envelope.ref, target)
            return

        existing = {f.name: f.content for f in stored.files}
        names = {f.name for f in files}
        changed = [f for f in files if existing.get(f.name) != f.content]
        # attachments and overflow files land before the primary file that points at them
        changed.sort(key=lambda f: (is_thread_file(f.name), -sequence_of(f.name)))
        stale = [name for name in existing if is_thread_file(name) and name not in names]
        if target != stored.path:
            await self.backend.move_directory(
                stored.path, target, changed, base=snap.revision, delete=stale, message=message,
            )
            logger.debug("Moved %s to %s", stored.path, target)
        else:
            await self.backend.update_files(target, changed, base=snap.revision, delete=stale, message=message)

    async def migrate(self, ref: str) -> bool:
        """Convert a legacy single-file thread to the directory format in place.

        Returns False when the thread is already a directory.
        """
        async def attempt() -> Optional[Envelope]:
            snap = await self.backend.snapshot()
            stored = await self._locate(snap, ref)
            if not stored.legacy:
                return None
            thread = decode(stored)
            messages, attachments = self._current_layout(thread)
            files = serialize_thread(thread.envelope, messages, attachments)
            await self.backend.move_directory(
                stored.path, f"{partition(stored.folder)}/{ref}", files,
                base=snap.revision, message=f"Migrate {ref}",
            )
            return thread.envelope

        envelope = await self.backend.retrying(attempt)
        if envelope is None:
            return False
        logger.info("Migrated legacy thread %s", ref)
        await self.hooks.dispatch(envelope, HookEvent.MIGRATED)
        return True

    # -- reads ------------------------------------------------------------------

    async def read(self, ref: str) -> Thread:
        if is_message_ref(ref):
            ref = thread_ref_of(ref)
        snap = await self.backend.snapshot()
        return decode(await self._locate(snap, ref))

    async def list(self, status: Optional[str] = None) -> list[Envelope]:
        """Envelopes of every readable thread, most recently updated first."""
        folders = FOLDERS
        if status is not None:
            status = lifecycle.normalize_status(status)
            if status not in lifecycle.STATES:
                raise ValidationError(f"unknown status: {status}", details={"status": status})
            folders = (lifecycle.folder_for(status),)
        snap = await self.backend.snapshot()
        envelopes = [
            thread.envelope for thread in await self._threads(snap, folders)
            if status is None or lifecycle.normalize_status(thread.envelope.status) == status
        ]
        return sorted(envelopes, key=lambda e: e.updated, reverse=True)

    async def threads(self) -> list[Thread]:
        return await self._threads(await self.backend.snapshot())

    async def resolve(self, reference: str, actor_id: Optional[str] = None) -> str:
        """Canonical ref for a thread ref, message ref, local id or ``last``."""
        snap = await self.backend.snapshot()
        if is_thread_ref(reference):
            await self._locate(snap, reference)
            return reference
        context = ResolutionContext(actor_id=actor_id, threads=await self._threads(snap))
        return self.resolver.resolve(reference, context)

    async def _thread_ref(self, reference: str, actor_id: Optional[str]) -> str:
        if is_thread_ref(reference):
            return reference
        if is_message_ref(reference):
            return thread_ref_of(reference)
        return thread_ref_of(await self.resolve(reference, actor_id))

    async def expose(self, ref: str) -> Thread:
        """``ref`` with every attachment replaced by a content:// locator."""
        return self.attachments.to_resource_uris(await self.read(ref))

    async def view(self, uri: str) -> Union[Thread, Envelope, Message]:
        """Resolve ``thread://ref``, ``thread://ref/envelope`` or ``thread://ref/latest``."""
        ref, part = parse_thread_uri(uri)
        thread = await self.expose(ref)
        if part == "envelope":
            return thread.envelope
        if part == "latest":
            if thread.latest is None:
                raise NotFoundError(f"{ref} has no messages", details={"uri": uri})
            return thread.latest
        return thread

    async def resource(self, uri: str) -> tuple[bytes, str]:
        """Bytes and mime type behind a ``content://`` locator.

        Locators stay valid after the registry forgets them; the thread is
        re-read and its locators registered again.
        """
        if not uri.startswith(CONTENT_SCHEME):
            raise ValidationError(f"not a content locator: {uri}", details={"uri": uri})
        try:
            return self.attachments.resolve(uri)
        except NotFoundError:
            ref, _ = parse_content_uri(uri)
            await self.expose(ref)
            return self.attachments.resolve(uri)

    async def events(self, ref: str) -> list[ThreadEvent]:
        """The thread as an ordered event log."""
        return events_from_thread(await self.read(ref))

    async def close(self) -> None:
        await self.backend.close()

    async def __aenter__(self) -> ThreadStore:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()
