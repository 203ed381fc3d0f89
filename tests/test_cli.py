"""`mess` command line, run against a temporary filesystem store."""

import json

import pytest
from click.testing import CliRunner

from mess_exchange.cli.main import main
from mess_exchange.cli.threads import build_blocks
from mess_exchange.config import get_settings
from mess_exchange.errors import ValidationError


@pytest.fixture
def runner(monkeypatch, tmp_path):
    monkeypatch.setenv("MESS_AGENT_ID", "agent")
    monkeypatch.setenv("MESS_CAPABILITIES_DIR", str(tmp_path / "capabilities"))
    get_settings.cache_clear()
    yield CliRunner()
    get_settings.cache_clear()


@pytest.fixture
def invoke(runner, tmp_path):
    data_dir = str(tmp_path / "exchange")

    def run(*args):
        return runner.invoke(main, ["--data-dir", data_dir, *args])
    return run


def test_build_blocks(tmp_path):
    photo = tmp_path / "door.png"
    photo.write_bytes(b"\x89PNG")
    blocks = build_blocks(status="completed", response=("closed",), attach=(photo,), local_id="final")
    assert blocks[0] == {"status": {"code": "completed", "id": "final"}}
    content = blocks[1]["response"]["content"]
    assert content[0] == "closed"
    assert content[1]["image"].startswith("data:image/png;base64,")
    assert content[1]["name"] == "door.png"

    assert build_blocks(cancel="") == [{"cancel": {}}]
    assert build_blocks(raw='{"reply": {"content": "ok"}}') == [{"reply": {"content": "ok"}}]
    with pytest.raises(ValidationError):
        build_blocks()


def test_request_lifecycle(invoke):
    result = invoke("create", "check garage door", "--id", "garage", "--json")
    assert result.exit_code == 0, result.output
    ref = json.loads(result.output)["ref"]
    assert ref.endswith("-001-garage")

    result = invoke("append", "garage", "--status", "claimed", "--as", "teague")
    assert result.exit_code == 0, result.output
    assert "claimed" in result.output

    result = invoke("append", ref, "-s", "completed", "-r", "The door is closed.", "--as", "teague")
    assert result.exit_code == 0, result.output

    result = invoke("show", ref, "--json")
    shown = json.loads(result.output)
    assert shown["envelope"]["status"] == "completed"
    assert shown["envelope"]["executor"] == "teague"
    assert shown["messages"][-2]["MESS"][1] == {"response": {"content": ["The door is closed."]}}

    result = invoke("list", "--status", "completed", "--json")
    assert [e["ref"] for e in json.loads(result.output)] == [ref]

    result = invoke("resource", f"thread://{ref}/envelope")
    assert json.loads(result.output)["status"] == "completed"

    result = invoke("events", ref)
    types = [json.loads(line)["type"] for line in result.output.splitlines()]
    assert types == ["thread_created", "status_changed", "status_changed"]


def test_attachment_round_trip(invoke, tmp_path):
    document = tmp_path / "manual.pdf"
    document.write_bytes(b"%PDF-" + b"m" * (700 * 1024))
    ref = json.loads(invoke("create", "find the manual", "--json").output)["ref"]
    invoke("append", ref, "-s", "claimed", "--as", "teague")
    result = invoke("append", ref, "-a", str(document), "--as", "teague")
    assert result.exit_code == 0, result.output

    out = tmp_path / "copy.pdf"
    result = invoke("resource", f"content://{ref}/att-001-file-manual.pdf", "-o", str(out))
    assert result.exit_code == 0, result.output
    assert out.read_bytes() == document.read_bytes()


def test_errors_exit_nonzero(invoke):
    result = invoke("show", "2026-02-01-404")
    assert result.exit_code == 1

    ref = json.loads(invoke("create", "check garage door", "--json").output)["ref"]
    invoke("append", ref, "-s", "claimed", "--as", "teague")
    result = invoke("append", ref, "-s", "claimed", "--as", "roomba")
    assert result.exit_code == 1

    result = invoke("append", ref, "--blocks", "{broken")
    assert result.exit_code == 1


def test_capabilities(invoke, tmp_path):
    directory = tmp_path / "capabilities"
    directory.mkdir()
    (directory / "home.yaml").write_text("id: check-door\ndescription: Check a door\ntags: [home]\n")
    result = invoke("capabilities", "--tag", "home")
    assert result.exit_code == 0, result.output
    assert "check-door" in result.output
