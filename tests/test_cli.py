import json

import pytest
from typer.testing import CliRunner

import avr_flash.main as cli
from conftest import make_record

runner = CliRunner()

BLINK = "\n".join([
    ":100000000C9467010C948F010C948F010C948F0158",
    ":100010000C948F010C948F010C948F010C948F0120",
    ":100020000C948F010C948F010C9484060C94500551",
    make_record(0x0030, 0, b"\x01\x02\x03"),
    ":00000001FF",
]) + "\n"


@pytest.fixture(autouse=True)
def log_file(tmp_path, monkeypatch):
    path = tmp_path / "logs" / "session.jsonl"
    monkeypatch.setattr(cli, "LOG_FILE", path)
    return path


@pytest.fixture
def hex_file(tmp_path):
    path = tmp_path / "blink.hex"
    path.write_text(BLINK)
    return path


def _events(path):
    return [json.loads(line) for line in path.read_text().splitlines()]


def test_hex_info(hex_file, log_file):
    result = runner.invoke(cli.app, ["hex-info", str(hex_file)])

    assert result.exit_code == 0, result.output
    event = _events(log_file)[-1]
    assert event["kind"] == "hex_info"
    assert event["payload"]["start"] == 0
    assert event["payload"]["end"] == 0x32
    assert event["payload"]["bytes"] == 51


def test_hex_info_bad_checksum(tmp_path, log_file):
    path = tmp_path / "bad.hex"
    path.write_text(":100000000C9467010C948F010C948F010C948F0159\n")

    result = runner.invoke(cli.app, ["hex-info", str(path)])

    assert result.exit_code == 1
    assert _events(log_file)[-1]["kind"] == "hex_error"


def test_flash_demo(hex_file, log_file):
    result = runner.invoke(cli.app, ["flash", str(hex_file), "--demo"])

    assert result.exit_code == 0, result.output
    payload = _events(log_file)[-1]["payload"]
    assert payload["state"] == "complete"
    assert payload["bytes"] == 51
    assert payload["verified"] is True
    assert payload["exit_error"] is None
    assert payload["cancel_deferred"] is False
    assert payload["board"]["profile"] == "leonardo"
    assert not payload["board"]["in_bootloader"]


def test_flash_requires_port(hex_file):
    result = runner.invoke(cli.app, ["flash", str(hex_file)])
    assert result.exit_code == 2


def test_flash_missing_file(tmp_path):
    result = runner.invoke(cli.app, ["flash", str(tmp_path / "nope.hex"), "--demo"])
    assert result.exit_code == 2


def test_unknown_profile(hex_file):
    result = runner.invoke(cli.app, ["hex-info", str(hex_file), "--device", "uno"])
    assert result.exit_code == 2


def test_profiles():
    result = runner.invoke(cli.app, ["profiles"])
    assert result.exit_code == 0
    assert "leonardo" in result.output
