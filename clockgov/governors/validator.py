"""
clockgov - Clock Validator

Confirms a requested clock is one the device reports as supported.
The supported set is hardware metadata that does not change during a
run, so the first readable answer per device is cached.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Dict, FrozenSet, Tuple

from ..devices.interface import DeviceInterface
from ..state import is_unreadable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of validating one requested clock."""
    device_index: int
    requested: int
    valid: bool
    supported: Tuple[int, ...] = ()
    reason: str = "OK"

    def __bool__(self) -> bool:
        return self.valid

    def describe(self) -> str:
        if self.valid:
            return f"GPU {self.device_index}: Clock {self.requested} MHz is supported"
        if not self.supported:
            return f"GPU {self.device_index}: Clock {self.requested} MHz rejected: {self.reason}"
        listing = ' '.join(str(c) for c in self.supported)
        return (
            f"GPU {self.device_index}: Clock {self.requested} MHz is not supported. "
            f"Supported clocks: {listing}"
        )

    def to_dict(self) -> dict:
        return {
            'device_index': self.device_index,
            'requested': self.requested,
            'valid': self.valid,
            'supported': list(self.supported),
            'reason': self.reason
        }


class ClockValidator:
    """Validate requested clocks against each device's supported set."""

    def __init__(self, device: DeviceInterface, cache: bool = True):
        self.device = device
        self.cache = cache
        self._supported: Dict[int, FrozenSet[int]] = {}
        self._lock = threading.Lock()
        self.queries = 0

    def supported(self, index: int):
        """Supported clocks for a device, from cache when possible."""
        with self._lock:
            if self.cache and index in self._supported:
                return self._supported[index]

        clocks = self.device.supported_clocks(index)
        with self._lock:
            self.queries += 1
            if self.cache and not is_unreadable(clocks):
                self._supported[index] = frozenset(clocks)
        return clocks

    def validate(self, index: int, requested: int) -> ValidationResult:
        clocks = self.supported(index)

        if is_unreadable(clocks):
            return ValidationResult(
                device_index=index,
                requested=requested,
                valid=False,
                reason="supported clocks could not be read"
            )

        listing = tuple(sorted(clocks))
        if requested in clocks:
            return ValidationResult(index, requested, True, listing)

        return ValidationResult(
            device_index=index,
            requested=requested,
            valid=False,
            supported=listing,
            reason="not in supported set"
        )
