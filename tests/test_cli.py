from __future__ import annotations

import json
import logging
import os
import signal

import pytest
from click.testing import CliRunner
from rich.logging import RichHandler

from conftest import FakeDevice
from clockgov.audit import AuditLog
from clockgov.cli import main as cli_main
from clockgov.state import UNREADABLE


@pytest.fixture
def device(monkeypatch) -> FakeDevice:
    fake = FakeDevice()
    monkeypatch.setattr(cli_main, "make_device", lambda config=None: fake)
    return fake


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture(autouse=True)
def drop_rich_handlers():
    # Commands attach a RichHandler bound to the runner's captured stderr
    yield
    root = logging.getLogger()
    for handler in list(root.handlers):
        if isinstance(handler, RichHandler):
            root.removeHandler(handler)


def test_check_passes_without_touching_devices(runner, device, config_file) -> None:
    result = runner.invoke(cli_main.cli, ["check", "-c", str(config_file)])

    assert result.exit_code == 0, result.output
    assert "Config OK" in result.output
    assert ("persistence",) not in device.calls
    assert device.locks() == []


def test_check_reports_unsupported_clock(runner, device, config_file) -> None:
    device.supported[1] = {135, 544}

    result = runner.invoke(cli_main.cli, ["check", "-c", str(config_file)])

    assert result.exit_code == 1
    assert "1328" in result.output


def test_check_reports_bad_config(runner, device, tmp_path) -> None:
    path = tmp_path / "bad.yaml"
    path.write_text("devices: {}\n")

    result = runner.invoke(cli_main.cli, ["check", "-c", str(path)])

    assert result.exit_code == 1
    assert "No GPUs selected" in result.output


def test_check_reports_missing_tool(runner, device, config_file) -> None:
    device.available = False

    result = runner.invoke(cli_main.cli, ["check", "-c", str(config_file)])

    assert result.exit_code == 1
    assert "nvidia-smi not found" in result.output


def test_status_json(runner, device, config_file) -> None:
    device.usage[1] = 5
    device.usage[2] = UNREADABLE
    device.clock[1] = 544

    result = runner.invoke(cli_main.cli, ["status", "-c", str(config_file), "--json"])

    assert result.exit_code == 0, result.output
    rows = json.loads(result.output)
    assert rows[0] == {
        "index": 1, "utilization": 5, "clock_mhz": 544, "low_clock": 544, "high_clock": 1328
    }
    assert rows[1]["utilization"] is None


def test_status_table(runner, device, config_file) -> None:
    device.usage[1] = 80
    result = runner.invoke(cli_main.cli, ["status", "-c", str(config_file)])
    assert result.exit_code == 0, result.output
    assert "Governed GPUs" in result.output


def test_clocks_json(runner, device) -> None:
    device.supported[0] = {135, 544, 1328}

    result = runner.invoke(cli_main.cli, ["clocks", "0", "--json"])

    assert result.exit_code == 0, result.output
    assert json.loads(result.output) == [1328, 544, 135]


def test_clocks_unreadable(runner, device) -> None:
    device.supported[0] = UNREADABLE
    result = runner.invoke(cli_main.cli, ["clocks", "0"])
    assert result.exit_code == 1


def test_reset_resets_configured_devices(runner, device, config_file) -> None:
    result = runner.invoke(cli_main.cli, ["reset", "-c", str(config_file)])

    assert result.exit_code == 0, result.output
    assert device.resets() == [("reset", 1), ("reset", 2)]


def test_reset_exit_code_on_failure(runner, device, config_file) -> None:
    device.fail_reset.add(2)
    result = runner.invoke(cli_main.cli, ["reset", "-c", str(config_file)])
    assert result.exit_code == 1
    assert len(device.resets()) == 2


def test_run_rejects_override_that_breaks_thresholds(runner, device, config_file) -> None:
    result = runner.invoke(cli_main.cli, ["run", "-c", str(config_file), "--low", "70"])

    assert result.exit_code == 1
    assert "must be lower" in result.output
    assert device.calls == []


def test_run_fails_before_touching_devices(runner, device, config_file) -> None:
    device.count = 1

    result = runner.invoke(cli_main.cli, ["run", "-c", str(config_file)])

    assert result.exit_code == 1
    assert "does not exist" in result.output
    assert device.locks() == []
    assert device.resets() == []


def test_audit_command(runner, tmp_path) -> None:
    log = AuditLog(tmp_path / "audit.jsonl", instance_id="t")
    log.log("lock_clock", 1, {"clock": 544}, True, duration_ms=4.0)
    log.log("reset_clock", 1, {}, True)

    result = runner.invoke(cli_main.cli, ["audit", str(log.log_path), "--json", "-e", "reset_clock"])

    assert result.exit_code == 0, result.output
    entries = json.loads(result.output)
    assert [e["event_type"] for e in entries] == ["reset_clock"]


def test_version(runner) -> None:
    result = runner.invoke(cli_main.cli, ["--version"])
    assert result.exit_code == 0
    assert "0.1.0" in result.output


class TerminatingDevice(FakeDevice):
    """Sends SIGTERM to this process on the first utilization query."""

    def utilization(self, index: int):
        if not any(call[0] == "utilization" for call in self.calls):
            os.kill(os.getpid(), signal.SIGTERM)
        return super().utilization(index)


def test_run_exits_cleanly_after_sigterm(runner, monkeypatch, config_file) -> None:
    device = TerminatingDevice()
    device.usage[1] = 0
    device.usage[2] = 30
    monkeypatch.setattr(cli_main, "make_device", lambda config=None: device)

    result = runner.invoke(cli_main.cli, ["run", "-c", str(config_file)])

    assert result.exit_code == 0, result.output
    assert "Governor summary" in result.output
    assert device.locks() == [("lock", 1, 544)]
    assert device.resets() == [("reset", 1), ("reset", 2)]


def test_run_reports_unusable_audit_log(runner, device, config_file, tmp_path) -> None:
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("")
    with open(config_file, "a") as f:
        f.write(f"audit_log: {blocker / 'audit.jsonl'}\n")

    result = runner.invoke(cli_main.cli, ["run", "-c", str(config_file)])

    assert result.exit_code == 1
    assert "Cannot open audit log" in result.output
    assert device.calls == []


def test_audit_command_skips_foreign_lines(runner, tmp_path) -> None:
    path = tmp_path / "audit.jsonl"
    log = AuditLog(path, instance_id="t")
    log.log("lock_clock", 1, {"clock": 544}, True)
    with open(path, "a") as f:
        f.write("{broken\n")

    result = runner.invoke(cli_main.cli, ["audit", str(path), "--json"])

    assert result.exit_code == 0, result.output
    assert [e["event_type"] for e in json.loads(result.output)] == ["lock_clock"]
