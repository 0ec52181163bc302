"""
clockgov - Device Interface

The boundary the governor talks to. Implementations must never raise
for an ordinary device failure: queries return UNREADABLE and commands
return an unsuccessful CommandResult.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, FrozenSet, Optional, Union

from ..state import Reading, Unreadable


@dataclass
class CommandResult:
    """Result of a device control command."""
    success: bool
    output: Any = None
    error: Optional[str] = None
    duration_ms: float = 0
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        return {
            'success': self.success,
            'output': self.output,
            'error': self.error,
            'duration_ms': self.duration_ms,
            'timestamp': self.timestamp.isoformat()
        }


SupportedClocks = Union[FrozenSet[int], Unreadable]


class DeviceInterface(ABC):
    """Query and control capability for a set of indexed devices."""

    @abstractmethod
    def is_available(self) -> bool:
        """Whether the underlying tool or driver can be used at all."""
        pass

    @abstractmethod
    def device_count(self) -> Reading:
        """Number of devices present."""
        pass

    @abstractmethod
    def utilization(self, index: int) -> Reading:
        """Utilization in percent (0-100)."""
        pass

    @abstractmethod
    def current_clock(self, index: int) -> Reading:
        """Current graphics clock in MHz."""
        pass

    @abstractmethod
    def supported_clocks(self, index: int) -> SupportedClocks:
        """Graphics clocks the device accepts, in MHz."""
        pass

    @abstractmethod
    def lock_clock(self, index: int, mhz: int) -> CommandResult:
        """Pin the graphics clock to mhz."""
        pass

    @abstractmethod
    def reset_clock(self, index: int) -> CommandResult:
        """Return the device to default (unmanaged) clock behavior."""
        pass

    @abstractmethod
    def enable_persistence_mode(self) -> CommandResult:
        """Enable driver persistence mode on all devices."""
        pass
