"""
clockgov - Governor Loop

The control loop. Every cycle polls each governed device and moves it
between its low and high clock with hysteresis:

    utilization <  low threshold  -> LOW  (lock low_clock)
    utilization >  high threshold -> HIGH (lock high_clock)
    otherwise                     -> no change (dead band, both ends inclusive)

Decisions are recomputed from the fresh sample each cycle. A device
already in the target mode is left alone, so a steady load produces a
single lock per transition. A failed lock leaves the mode as it was and
the next cycle tries again; there is no retry inside a cycle.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from ..audit import AuditLog
from ..devices.interface import DeviceInterface
from ..state import (
    DeviceState, GovernanceMode, GovernedSet, ObservedSample, display, is_unreadable
)
from .validator import ClockValidator

logger = logging.getLogger(__name__)


def decide(utilization: int, low_threshold: int, high_threshold: int) -> Optional[GovernanceMode]:
    """Target mode for a utilization sample, or None inside the dead band."""
    if utilization < low_threshold:
        return GovernanceMode.LOW
    if utilization > high_threshold:
        return GovernanceMode.HIGH
    return None


@dataclass
class LoopMetrics:
    """Running counters of the governor loop."""
    cycles: int = 0
    samples: int = 0
    unreadable_samples: int = 0
    transitions: int = 0
    lock_failures: int = 0
    validation_rejections: int = 0
    verify_mismatches: int = 0
    device_errors: int = 0
    started_at: datetime = field(default_factory=datetime.now)
    last_cycle_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            'cycles': self.cycles,
            'samples': self.samples,
            'unreadable_samples': self.unreadable_samples,
            'transitions': self.transitions,
            'lock_failures': self.lock_failures,
            'validation_rejections': self.validation_rejections,
            'verify_mismatches': self.verify_mismatches,
            'device_errors': self.device_errors,
            'uptime_seconds': (datetime.now() - self.started_at).total_seconds(),
            'last_cycle_at': self.last_cycle_at.isoformat() if self.last_cycle_at else None
        }


class GovernorLoop:
    """
    Periodic utilization-driven clock governor.

    Owns every GovernanceMode mutation. Run it with run(stop_event); set
    the event to stop after the device currently being handled.
    """

    def __init__(
        self,
        device: DeviceInterface,
        governed: GovernedSet,
        validator: ClockValidator,
        low_threshold: int,
        high_threshold: int,
        interval_seconds: float,
        verify_delay_seconds: float = 1.0,
        audit: Optional[AuditLog] = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        if low_threshold >= high_threshold:
            raise ValueError("low_threshold must be lower than high_threshold")

        self.device = device
        self.governed = governed
        self.validator = validator
        self.low_threshold = low_threshold
        self.high_threshold = high_threshold
        self.interval_seconds = interval_seconds
        self.verify_delay_seconds = verify_delay_seconds
        self.audit = audit
        self._sleep = sleep
        self.metrics = LoopMetrics()

    def run(self, stop_event: threading.Event):
        """Run cycles until stop_event is set."""
        logger.info(
            "Monitoring GPU usage and adjusting clock speeds for GPU(s) %s "
            "(low <%d%%, high >%d%%, every %ss)",
            ' '.join(str(i) for i in self.governed.indices()),
            self.low_threshold, self.high_threshold, self.interval_seconds
        )

        while not stop_event.is_set():
            self.run_cycle(stop_event)
            # Returns at once when a signal sets the event
            stop_event.wait(self.interval_seconds)

        logger.info("Governor loop stopped after %d cycle(s)", self.metrics.cycles)

    def run_cycle(self, stop_event: Optional[threading.Event] = None) -> Dict[int, Optional[GovernanceMode]]:
        """
        Poll and govern every device once.

        Returns the mode each visited device ended the cycle in (None for
        devices that were skipped because the stop event was set).
        """
        outcome: Dict[int, Optional[GovernanceMode]] = {}

        for state in self.governed:
            if stop_event is not None and stop_event.is_set():
                outcome[state.index] = None
                continue

            try:
                outcome[state.index] = self.govern_device(state)
            except Exception:
                # Isolate unexpected failures to the device that raised them
                self.metrics.device_errors += 1
                logger.exception("GPU %d: Unexpected error while governing", state.index)
                outcome[state.index] = state.mode

        self.metrics.cycles += 1
        self.metrics.last_cycle_at = datetime.now()
        return outcome

    def sample(self, index: int) -> ObservedSample:
        return ObservedSample(
            device_index=index,
            utilization=self.device.utilization(index),
            clock_mhz=self.device.current_clock(index)
        )

    def govern_device(self, state: DeviceState) -> GovernanceMode:
        index = state.index
        sample = self.sample(index)
        self.metrics.samples += 1

        logger.info(
            "GPU %d: Usage: %s%%, Current clock: %s MHz",
            index, display(sample.utilization), display(sample.clock_mhz)
        )

        if not sample.readable:
            self.metrics.unreadable_samples += 1
            logger.warning("GPU %d: Skipping due to invalid usage data", index)
            return state.mode

        target = decide(sample.utilization, self.low_threshold, self.high_threshold)
        if target is None:
            logger.info(
                "GPU %d: Usage in normal range (%d%%-%d%%). No changes.",
                index, self.low_threshold, self.high_threshold
            )
            return state.mode

        if target == GovernanceMode.LOW:
            logger.info("GPU %d: Usage low (<%d%%). Downclocking...", index, self.low_threshold)
        else:
            logger.info("GPU %d: Usage high (>%d%%). Restoring full clock...", index, self.high_threshold)

        with state.locked():
            if state.mode == target:
                logger.debug("GPU %d: Already %s, nothing to do", index, target.name)
                return state.mode
            return self._apply(state, target)

    def _apply(self, state: DeviceState, target: GovernanceMode) -> GovernanceMode:
        """Validate and lock the target clock. Caller holds the state lock."""
        index = state.index
        clock = state.device.target_clock(target)

        logger.info("GPU %d: Attempting to lock clock to %d MHz", index, clock)

        validation = self.validator.validate(index, clock)
        if not validation.valid:
            self.metrics.validation_rejections += 1
            logger.error(validation.describe())
            logger.warning("GPU %d: Skipping clock adjustment due to invalid clock speed", index)
            self._audit('validation_rejected', index, validation.to_dict())
            return state.mode

        result = self.device.lock_clock(index, clock)
        self._audit(
            'lock_clock', index, {'clock': clock, 'mode': target.name},
            success=result.success, error=result.error, duration_ms=result.duration_ms
        )

        if not result.success:
            self.metrics.lock_failures += 1
            logger.error("GPU %d: Failed to lock clock to %d MHz: %s", index, clock, result.error)
            return state.mode

        previous = state.mode
        state.mode = target
        state.last_transition = datetime.now()
        self.metrics.transitions += 1
        logger.info("GPU %d: %s -> %s", index, previous.name, target.name)

        self._verify(index, clock)
        return state.mode

    def _verify(self, index: int, requested: int):
        """Single delayed read-back; a mismatch is reported, not retried."""
        if self.verify_delay_seconds > 0:
            self._sleep(self.verify_delay_seconds)

        current = self.device.current_clock(index)
        if not is_unreadable(current) and current == requested:
            logger.info("GPU %d: Successfully locked clock to %d MHz", index, current)
            return

        self.metrics.verify_mismatches += 1
        logger.warning(
            "GPU %d: Clock is %s MHz, expected %d MHz", index, display(current), requested
        )
        self._audit('verify_mismatch', index, {'requested': requested, 'observed': display(current)})

    def _audit(
        self,
        event_type: str,
        index: int,
        params: Dict[str, Any],
        success: Optional[bool] = None,
        error: Optional[str] = None,
        duration_ms: Optional[float] = None
    ):
        if self.audit is None:
            return
        try:
            self.audit.log(event_type, index, params, success, error, duration_ms)
        except OSError as e:
            logger.warning("Could not write audit entry: %s", e)

    def get_stats(self) -> Dict[str, Any]:
        """Loop counters plus current per-device modes."""
        stats = self.metrics.to_dict()
        stats['devices'] = self.governed.snapshot()
        return stats
