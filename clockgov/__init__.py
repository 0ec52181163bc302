"""
clockgov - Adaptive GPU Clock Governor

Watches utilization of selected NVIDIA GPUs and moves each one between a
low and a high graphics clock:

- Hysteresis between a low and a high usage threshold
- Every requested clock checked against the GPU's supported clocks
- Persistence mode enabled before governing
- Every governed GPU reset to default clocks on exit
"""

__version__ = '0.1.0'

from .config import GovernorConfig, load_config
from .errors import (
    ConfigError, DeviceSelectionError, DeviceUnavailableError, GovernorError,
    PersistenceModeError, UnsupportedClockError
)
from .service import GovernorService
from .state import UNREADABLE, Device, GovernanceMode, GovernedSet, ObservedSample
