"""
clockgov - Shutdown Handler

Turns SIGINT/SIGTERM into a stop request and restores default clock
behavior on every governed device, so nothing is left pinned to a low
clock after the governor exits.
"""

import logging
import signal
import threading
from typing import Any, Dict, Optional

from ..audit import AuditLog
from ..devices.interface import DeviceInterface
from ..state import GovernedSet

logger = logging.getLogger(__name__)

HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class ShutdownHandler:
    """
    Signal-triggered stop plus a one-shot reset pass.

    install() must be called from the main thread. The handler itself only
    sets the stop event; restore_all() does the device work once the loop
    has let go of the device it was handling.
    """

    def __init__(
        self,
        device: DeviceInterface,
        governed: GovernedSet,
        stop_event: Optional[threading.Event] = None,
        audit: Optional[AuditLog] = None
    ):
        self.device = device
        self.governed = governed
        self.stop_event = stop_event or threading.Event()
        self.audit = audit
        self.received_signal: Optional[int] = None
        self._previous: Dict[int, Any] = {}
        self._restore_lock = threading.Lock()
        self._restored = False

    def install(self):
        """Register for termination signals."""
        for signum in HANDLED_SIGNALS:
            self._previous[signum] = signal.signal(signum, self.handle_signal)

    def uninstall(self):
        """Put the previous signal handlers back."""
        for signum, previous in self._previous.items():
            signal.signal(signum, previous)
        self._previous.clear()

    def handle_signal(self, signum: int, frame=None):
        """Signal handler: request the loop to stop."""
        if self.received_signal is None:
            self.received_signal = signum
            logger.info("Received %s, stopping governor", signal.Signals(signum).name)
        else:
            logger.info("Received %s again, shutdown already in progress", signal.Signals(signum).name)
        self.stop_event.set()

    @property
    def restored(self) -> bool:
        return self._restored

    def restore_all(self) -> Dict[int, bool]:
        """
        Reset the clock of every governed device, once per process.

        Returns device index -> whether the reset succeeded. A second call
        returns an empty dict without touching any device.
        """
        with self._restore_lock:
            if self._restored:
                return {}
            self._restored = True

        self.stop_event.set()
        results: Dict[int, bool] = {}

        for state in self.governed:
            index = state.index
            with state.locked():
                logger.info("GPU %d: Resetting clock to default...", index)
                try:
                    result = self.device.reset_clock(index)
                    success, error, duration = result.success, result.error, result.duration_ms
                except Exception as e:
                    # One broken device must not keep the rest pinned
                    logger.exception("GPU %d: Unexpected error while resetting clock", index)
                    success, error, duration = False, str(e), None

            if success:
                logger.info("GPU %d: Clock reset to default", index)
            else:
                logger.error("GPU %d: Failed to reset clock: %s", index, error)

            if self.audit is not None:
                try:
                    self.audit.log('reset_clock', index, {'mode': state.mode.name}, success, error, duration)
                except OSError as e:
                    logger.warning("Could not write audit entry: %s", e)

            results[index] = success

        return results
