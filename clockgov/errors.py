"""
clockgov - Errors

Fatal conditions that abort startup before any device is touched.
Per-cycle problems (unreadable samples, failed commands) are never raised;
they are reported as results and logged.
"""

from typing import Iterable


class GovernorError(Exception):
    """Base class for all fatal governor errors."""


class ConfigError(GovernorError):
    """The configuration file or values are invalid."""


class DeviceUnavailableError(GovernorError):
    """The device interface (nvidia-smi) cannot be used."""


class PersistenceModeError(GovernorError):
    """Enabling persistence mode failed."""


class DeviceSelectionError(GovernorError):
    """A selected device does not exist or is incompletely configured."""


class UnsupportedClockError(GovernorError):
    """A configured clock is not in the device's supported set."""

    def __init__(self, device_index: int, requested: int, supported: Iterable[int]):
        self.device_index = device_index
        self.requested = requested
        self.supported = tuple(sorted(supported))
        listing = ' '.join(str(c) for c in self.supported) or '(none reported)'
        super().__init__(
            f"GPU {device_index}: Clock {requested} MHz is not supported. "
            f"Supported clocks: {listing}"
        )
