"""
clockgov - Governor Service

Startup validation and process lifecycle.

Startup checks run before any clock is touched and raise GovernorError
subclasses. Once they pass, the loop runs in a worker thread while the
main thread waits for it and owns signal handling. The reset pass runs in
a finally block so it fires on a signal, a normal stop, or a crash.
"""

import logging
import threading
import time
from typing import Callable, Optional

from .audit import AuditLog
from .config import GovernorConfig
from .devices.interface import DeviceInterface
from .errors import (
    DeviceSelectionError, DeviceUnavailableError, PersistenceModeError, UnsupportedClockError
)
from .governors.loop import GovernorLoop
from .governors.shutdown import ShutdownHandler
from .governors.validator import ClockValidator
from .state import GovernedSet, display, is_unreadable

logger = logging.getLogger(__name__)

JOIN_POLL_SECONDS = 0.5


class GovernorService:
    """Validates the configured devices and runs the governor until stopped."""

    def __init__(
        self,
        config: GovernorConfig,
        device: DeviceInterface,
        audit: Optional[AuditLog] = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.config = config
        self.device = device
        self.audit = audit
        self.validator = ClockValidator(device)
        self.stop_event = threading.Event()
        self._sleep = sleep
        self.governed: Optional[GovernedSet] = None
        self.loop: Optional[GovernorLoop] = None
        self.shutdown: Optional[ShutdownHandler] = None
        self._loop_error: Optional[BaseException] = None

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    def startup(self, enable_persistence: Optional[bool] = None) -> GovernedSet:
        """
        Run every fatal check and build the governed set.

        enable_persistence defaults to the config setting; `check` passes
        False to validate without changing driver state.
        """
        if not self.device.is_available():
            raise DeviceUnavailableError("nvidia-smi not found. Please install NVIDIA drivers.")

        if enable_persistence is None:
            enable_persistence = self.config.enable_persistence_mode

        if enable_persistence:
            logger.info("Enabling persistence mode for all GPUs...")
            result = self.device.enable_persistence_mode()
            if self.audit is not None:
                try:
                    self.audit.log('persistence_mode', None, {'enabled': True},
                                   result.success, result.error, result.duration_ms)
                except OSError as e:
                    logger.warning("Could not write audit entry: %s", e)
            if not result.success:
                raise PersistenceModeError(f"Failed to enable persistence mode: {result.error}")

        count = self.device.device_count()
        if is_unreadable(count):
            raise DeviceUnavailableError("Could not read the number of GPUs from nvidia-smi")
        logger.info("Detected %s GPU(s)", display(count))

        for device in self.config.devices:
            if device.index >= count:
                raise DeviceSelectionError(
                    f"GPU {device.index} is selected but does not exist "
                    f"(only {count} GPUs detected)"
                )
            for clock in (device.low_clock, device.high_clock):
                validation = self.validator.validate(device.index, clock)
                if not validation.valid:
                    raise UnsupportedClockError(device.index, clock, validation.supported)

        governed = GovernedSet(list(self.config.devices))
        logger.info(
            "Managing %d GPU(s): %s", len(governed), ' '.join(str(i) for i in governed.indices())
        )
        self.governed = governed
        return governed

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def build_loop(self, governed: GovernedSet) -> GovernorLoop:
        return GovernorLoop(
            device=self.device,
            governed=governed,
            validator=self.validator,
            low_threshold=self.config.low_usage_threshold,
            high_threshold=self.config.high_usage_threshold,
            interval_seconds=self.config.check_interval_seconds,
            verify_delay_seconds=self.config.verify_delay_seconds,
            audit=self.audit,
            sleep=self._sleep
        )

    def _run_loop(self):
        try:
            self.loop.run(self.stop_event)
        except BaseException as e:
            self._loop_error = e
            logger.exception("Governor loop crashed")
        finally:
            self.stop_event.set()

    def run(self, install_signals: bool = True) -> GovernorLoop:
        """
        Start up, govern until stopped, then reset every device.

        Blocks the calling thread. Returns the finished loop so callers can
        report its statistics.
        """
        governed = self.startup()
        self.loop = self.build_loop(governed)
        self.shutdown = ShutdownHandler(self.device, governed, self.stop_event, self.audit)

        if install_signals:
            self.shutdown.install()

        worker = threading.Thread(target=self._run_loop, name='clockgov-loop', daemon=True)
        try:
            worker.start()
            # Short joins keep the main thread responsive to signals
            while worker.is_alive():
                worker.join(JOIN_POLL_SECONDS)
        finally:
            self.stop_event.set()
            if worker.is_alive():
                worker.join()
            self.shutdown.restore_all()
            if install_signals:
                self.shutdown.uninstall()

        if self._loop_error is not None:
            raise self._loop_error

        return self.loop

    def stop(self):
        """Request a stop from code (the signal path does the same)."""
        self.stop_event.set()
