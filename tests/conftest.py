"""
Shared fixtures: an in-memory DeviceInterface and config builders.
"""
from __future__ import annotations

import sys
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

import pytest

_REPO_ROOT = Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from clockgov.config import GovernorConfig
from clockgov.devices.interface import CommandResult, DeviceInterface
from clockgov.state import UNREADABLE, Device


SUPPORTED = frozenset({135, 544, 1328, 1380})


class FakeDevice(DeviceInterface):
    """Scriptable device: set usage per index, inspect the command log."""

    def __init__(self, count: int = 4, supported: Optional[Dict[int, Set[int]]] = None):
        self.available = True
        self.count = count
        self.usage: Dict[int, object] = {}
        self.clock: Dict[int, object] = {}
        self.supported: Dict[int, object] = supported if supported is not None else {}
        self.fail_lock: Set[int] = set()
        self.fail_reset: Set[int] = set()
        self.persistence_ok = True
        self.apply_locks = True
        self.calls: List[Tuple] = []

    def is_available(self) -> bool:
        return self.available

    def device_count(self):
        self.calls.append(('count',))
        return self.count

    def utilization(self, index: int):
        self.calls.append(('utilization', index))
        return self.usage.get(index, UNREADABLE)

    def current_clock(self, index: int):
        self.calls.append(('clock', index))
        return self.clock.get(index, 1328)

    def supported_clocks(self, index: int):
        self.calls.append(('supported', index))
        return self.supported.get(index, SUPPORTED)

    def lock_clock(self, index: int, mhz: int) -> CommandResult:
        self.calls.append(('lock', index, mhz))
        if index in self.fail_lock:
            return CommandResult(success=False, error="device busy")
        if self.apply_locks:
            self.clock[index] = mhz
        return CommandResult(success=True)

    def reset_clock(self, index: int) -> CommandResult:
        self.calls.append(('reset', index))
        if index in self.fail_reset:
            return CommandResult(success=False, error="permission denied")
        self.clock.pop(index, None)
        return CommandResult(success=True)

    def enable_persistence_mode(self) -> CommandResult:
        self.calls.append(('persistence',))
        if not self.persistence_ok:
            return CommandResult(success=False, error="sudo: a password is required")
        return CommandResult(success=True)

    def locks(self, index: Optional[int] = None) -> List[Tuple]:
        return [c for c in self.calls if c[0] == 'lock' and (index is None or c[1] == index)]

    def resets(self) -> List[Tuple]:
        return [c for c in self.calls if c[0] == 'reset']


@pytest.fixture
def fake_device() -> FakeDevice:
    return FakeDevice()


def make_config(**overrides) -> GovernorConfig:
    kwargs = dict(
        devices=(Device(1, 544, 1328), Device(2, 135, 1380)),
        low_usage_threshold=10,
        high_usage_threshold=50,
        check_interval_seconds=10,
        verify_delay_seconds=0,
        use_sudo=False,
    )
    kwargs.update(overrides)
    return GovernorConfig(**kwargs)


@pytest.fixture
def config() -> GovernorConfig:
    return make_config()


@pytest.fixture
def config_file(tmp_path) -> Path:
    path = tmp_path / "governor.yaml"
    path.write_text(
        "low_usage_threshold: 10\n"
        "high_usage_threshold: 50\n"
        "check_interval_seconds: 10\n"
        "verify_delay_seconds: 0\n"
        "use_sudo: false\n"
        "devices:\n"
        "  1: {low_clock: 544, high_clock: 1328}\n"
        "  2: {low_clock: 135, high_clock: 1380}\n",
        encoding="utf-8",
    )
    return path
