"""
clockgov - Governors

- ClockValidator: supported-clock membership checks
- GovernorLoop: hysteresis control loop
- ShutdownHandler: signal handling and reset-on-exit
"""

from .validator import ClockValidator, ValidationResult
from .loop import GovernorLoop, LoopMetrics, decide
from .shutdown import ShutdownHandler
