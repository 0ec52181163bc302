"""
clockgov - Device State

Per-device governance records and the governed set.

The loop is the only writer of a device's mode. The shutdown reset pass
only walks the index set, but takes each device's lock while it resets it
so a reset can never interleave with a half-applied transition.
"""

import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, auto
from typing import Dict, Iterator, List, Optional, Union

from .errors import DeviceSelectionError


class Unreadable:
    """Sentinel for a device reading that could not be obtained or parsed."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return 'UNREADABLE'

    def __bool__(self) -> bool:
        return False


UNREADABLE = Unreadable()

Reading = Union[int, Unreadable]


def is_unreadable(value) -> bool:
    return value is UNREADABLE


def display(value: Reading) -> str:
    """Render a reading for log lines."""
    return 'unreadable' if is_unreadable(value) else str(value)


class GovernanceMode(Enum):
    """Governance mode of a managed device."""
    UNSET = auto()   # No successful adjustment yet
    LOW = auto()     # Locked to the low clock
    HIGH = auto()    # Locked to the high clock


@dataclass(frozen=True)
class Device:
    """A governed device and its fixed clock targets (MHz)."""
    index: int
    low_clock: int
    high_clock: int

    def target_clock(self, mode: GovernanceMode) -> int:
        if mode == GovernanceMode.LOW:
            return self.low_clock
        if mode == GovernanceMode.HIGH:
            return self.high_clock
        raise ValueError(f"No clock target for mode {mode.name}")


@dataclass(frozen=True)
class ObservedSample:
    """A single poll of one device. Never retained across cycles."""
    device_index: int
    utilization: Reading
    clock_mhz: Reading
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def readable(self) -> bool:
        return not is_unreadable(self.utilization)


@dataclass
class DeviceState:
    """Mutable governance record for one device."""
    device: Device
    mode: GovernanceMode = GovernanceMode.UNSET
    last_transition: Optional[datetime] = None
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @property
    def index(self) -> int:
        return self.device.index

    @contextmanager
    def locked(self) -> Iterator['DeviceState']:
        with self._lock:
            yield self

    def to_dict(self) -> dict:
        return {
            'index': self.device.index,
            'low_clock': self.device.low_clock,
            'high_clock': self.device.high_clock,
            'mode': self.mode.name,
            'last_transition': self.last_transition.isoformat() if self.last_transition else None
        }


class GovernedSet:
    """
    The non-empty set of devices under management.

    Iterates in ascending index order.
    """

    def __init__(self, devices: List[Device]):
        if not devices:
            raise DeviceSelectionError("No GPUs selected for management")

        self._states: Dict[int, DeviceState] = {}
        for device in sorted(devices, key=lambda d: d.index):
            if device.index in self._states:
                raise DeviceSelectionError(f"GPU {device.index} is selected more than once")
            self._states[device.index] = DeviceState(device=device)

    def __iter__(self) -> Iterator[DeviceState]:
        return iter(list(self._states.values()))

    def __len__(self) -> int:
        return len(self._states)

    def __contains__(self, index: int) -> bool:
        return index in self._states

    def __getitem__(self, index: int) -> DeviceState:
        return self._states[index]

    def indices(self) -> List[int]:
        return list(self._states.keys())

    def snapshot(self) -> List[dict]:
        """Consistent per-device view for display."""
        rows = []
        for state in self:
            with state.locked():
                rows.append(state.to_dict())
        return rows
