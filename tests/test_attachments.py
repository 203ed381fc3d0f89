"""Attachment externalization and resource locators."""

import pytest

from mess_exchange.attachments import (
    INLINE_CEILING,
    AttachmentManager,
    ResourceRegistry,
    build_filename,
    classify,
    content_uri,
    data_url,
    decode_data_url,
    extension_for,
    parse_content_uri,
    parse_thread_uri,
    sanitize_filename,
    should_externalize,
)
from mess_exchange.errors import NotFoundError, ValidationError
from mess_exchange.models.envelope import Envelope
from mess_exchange.models.message import Message
from mess_exchange.models.thread import Attachment, Thread


def test_threshold_is_strictly_greater():
    assert not should_externalize(INLINE_CEILING)
    assert should_externalize(INLINE_CEILING + 1)
    assert not should_externalize(0)


def test_naming_helpers():
    assert classify("image/jpeg") == "image"
    assert classify("application/pdf") == "file"
    assert classify(None) == "file"
    assert extension_for("image/jpeg") == "jpg"
    assert extension_for("application/x-unknown", "notes.TXT") == "txt"
    assert extension_for("application/x-unknown") == "bin"
    assert sanitize_filename("my photo (1)") == "my_photo_1_"
    assert build_filename(3, "image", "photo", "jpg") == "att-003-image-photo.jpg"


def test_data_urls():
    url = data_url("image/png", b"\x89PNG")
    assert decode_data_url(url) == ("image/png", b"\x89PNG")
    assert decode_data_url("data:image/png;base64,!!!") is None
    assert decode_data_url("https://example.com/x.png") is None
    assert decode_data_url(42) is None


def test_uris():
    assert content_uri("2026-02-01-001", "att-001-image-photo.jpg") == "content://2026-02-01-001/att-001-image-photo.jpg"
    assert parse_content_uri("content://2026-02-01-001/att-001-image-photo.jpg") == (
        "2026-02-01-001", "att-001-image-photo.jpg",
    )
    assert parse_thread_uri("thread://2026-02-01-001") == ("2026-02-01-001", None)
    assert parse_thread_uri("thread://2026-02-01-001/latest") == ("2026-02-01-001", "latest")
    with pytest.raises(ValidationError):
        parse_thread_uri("thread://2026-02-01-001/everything")
    with pytest.raises(ValidationError):
        parse_content_uri("content://2026-02-01-001")


def _message(*content) -> Message:
    return Message(sender="teague", received="2026-02-01T10:00:00.000Z",
                   mess=[{"response": {"content": list(content)}}])


def test_small_payload_stays_inline():
    manager = AttachmentManager()
    message = _message("here you go", {"image": data_url("image/jpeg", b"x" * 1024), "name": "tiny.jpg"})
    result, attachments = manager.externalize_message(message, 1)
    assert attachments == []
    assert result is message


def test_large_payload_is_externalized():
    manager = AttachmentManager()
    photo = b"\xff\xd8" + b"p" * (900 * 1024)
    message = _message("photo attached", {"image": data_url("image/jpeg", photo), "name": "garage door.jpg"})
    result, attachments = manager.externalize_message(message, 4)

    assert len(attachments) == 1
    att = attachments[0]
    assert att.name == "att-004-image-garage_door.jpg"
    assert att.content == photo
    assert att.size == len(photo)
    assert att.mime == "image/jpeg"

    content = result.first("response")["content"]
    assert content[0] == "photo attached"
    assert content[1] == {"image": {
        "path": "att-004-image-garage_door.jpg", "name": "garage door.jpg", "mime": "image/jpeg", "size": len(photo),
    }}
    # the original message is untouched
    assert message.first("response")["content"][1]["image"].startswith("data:")


def test_threshold_counts_encoded_length():
    manager = AttachmentManager(inline_ceiling=100)
    raw = b"a" * 90  # 120 characters once base64 encoded
    url = data_url("application/octet-stream", raw)
    assert len(url) > 100
    _, attachments = manager.externalize_message(_message({"file": url}), 1)
    assert len(attachments) == 1
    assert attachments[0].name == "att-001-file-file.bin"


def test_registry_ttl():
    now = [0.0]
    registry = ResourceRegistry(ttl=10, clock=lambda: now[0])
    registry.register("content://r/a", b"A", "text/plain")
    assert registry.get("content://r/a") == (b"A", "text/plain")
    now[0] = 11
    assert registry.get("content://r/a") is None
    assert len(registry) == 0

    manager = AttachmentManager(registry=registry)
    assert manager.registry is registry


def test_to_resource_uris():
    manager = AttachmentManager()
    envelope = Envelope(ref="2026-02-01-001", requestor="agent",
                        created="2026-02-01T09:00:00.000Z", updated="2026-02-01T09:00:00.000Z")
    thread = Thread(
        envelope=envelope,
        messages=[
            _message(
                {"image": {"path": "att-001-image-photo.jpg", "name": "photo.jpg", "mime": "image/jpeg", "size": 3}},
                {"file": data_url("text/plain", b"hello"), "name": "note.txt"},
            ),
        ],
        attachments=[Attachment(name="att-001-image-photo.jpg", mime="image/jpeg", size=3,
                                path="att-001-image-photo.jpg", content=b"JPG")],
    )
    exposed = manager.to_resource_uris(thread)
    content = exposed.messages[0].first("response")["content"]

    external_uri = content[0]["image"]["resource"]
    assert external_uri == "content://2026-02-01-001/att-001-image-photo.jpg"
    assert manager.resolve(external_uri) == (b"JPG", "image/jpeg")

    inline_uri = content[1]["file"]["resource"]
    assert inline_uri.startswith("content://2026-02-01-001/inline-000-00-01")
    assert manager.resolve(inline_uri) == (b"hello", "text/plain")

    assert exposed.attachments[0].content is None
    assert thread.attachments[0].content == b"JPG"

    with pytest.raises(NotFoundError):
        manager.resolve("content://2026-02-01-001/att-009-file-x.bin")


def test_externalize_rejects_non_data_url():
    with pytest.raises(ValidationError):
        AttachmentManager().externalize({"image": "https://example.com/a.jpg"}, 1)
