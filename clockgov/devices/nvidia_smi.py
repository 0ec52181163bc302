"""
clockgov - nvidia-smi Adapter

DeviceInterface backed by the nvidia-smi command line tool.

All text parsing lives here. Fields are parsed strictly: anything that
is not a plain non-negative integer becomes UNREADABLE.
"""

import logging
import re
import shutil
import subprocess
import time
from typing import Callable, FrozenSet, List, Optional, Tuple

from ..state import UNREADABLE, Reading
from .interface import CommandResult, DeviceInterface, SupportedClocks

logger = logging.getLogger(__name__)

NVIDIA_SMI = 'nvidia-smi'

_SUPPORTED_GRAPHICS = re.compile(r'^\s*Graphics\s*:\s*([0-9]+)\s*MHz', re.MULTILINE)
_ASCII_INTEGER = re.compile(r'[0-9]+')


def parse_integer_field(raw: str, strip_suffix: str = '') -> Reading:
    """
    Parse the first token of a csv,noheader field such as '23 %' or '1328 MHz'.

    Returns UNREADABLE for '[N/A]', '[Not Supported]', empty output, etc.
    """
    tokens = raw.strip().split()
    if not tokens:
        return UNREADABLE

    token = tokens[0]
    if strip_suffix:
        token = token.replace(strip_suffix, '')

    if not _ASCII_INTEGER.fullmatch(token):
        return UNREADABLE
    return int(token)


def parse_utilization(raw: str) -> Reading:
    value = parse_integer_field(raw, strip_suffix='%')
    if value is not UNREADABLE and value > 100:
        return UNREADABLE
    return value


def parse_clock(raw: str) -> Reading:
    return parse_integer_field(raw)


def parse_device_count(raw: str) -> Reading:
    # One line per GPU, each carrying the total count
    lines = [line for line in raw.splitlines() if line.strip()]
    if not lines:
        return UNREADABLE
    return parse_integer_field(lines[0])


def parse_supported_clocks(raw: str) -> FrozenSet[int]:
    """Collect every 'Graphics : <n> MHz' line of `nvidia-smi -q -d SUPPORTED_CLOCKS`."""
    return frozenset(int(m) for m in _SUPPORTED_GRAPHICS.findall(raw))


class NvidiaSmiDevice(DeviceInterface):
    """
    nvidia-smi backed device interface.

    Privileged commands (lock, reset, persistence mode) are run through
    sudo when use_sudo is set. Every invocation is bounded by timeout.
    """

    def __init__(
        self,
        executable: str = NVIDIA_SMI,
        use_sudo: bool = False,
        timeout: float = 30.0,
        runner: Optional[Callable[..., subprocess.CompletedProcess]] = None
    ):
        self.executable = executable
        self.use_sudo = use_sudo
        self.timeout = timeout
        self._runner = runner or subprocess.run

    def _run(self, args: List[str], privileged: bool = False) -> Tuple[bool, str, float]:
        """Run nvidia-smi and return (success, stdout or error, duration_ms)."""
        command = [self.executable] + args
        if privileged and self.use_sudo:
            command = ['sudo', '-n'] + command

        start = time.monotonic()
        try:
            result = self._runner(
                command,
                capture_output=True,
                text=True,
                timeout=self.timeout
            )
        except subprocess.TimeoutExpired:
            return False, f"Command timed out after {self.timeout:.0f}s: {' '.join(command)}", _elapsed_ms(start)
        except OSError as e:
            return False, str(e), _elapsed_ms(start)

        duration = _elapsed_ms(start)
        if result.returncode == 0:
            return True, result.stdout, duration

        error = (result.stderr or result.stdout or '').strip()
        return False, error or f"exit status {result.returncode}", duration

    def _query(self, index: int, field_name: str) -> Optional[str]:
        ok, output, _ = self._run([
            f'--query-gpu={field_name}',
            '--format=csv,noheader',
            '-i', str(index)
        ])
        if not ok:
            logger.warning("GPU %d: Query of %s failed: %s", index, field_name, output)
            return None
        return output

    def is_available(self) -> bool:
        return shutil.which(self.executable) is not None

    def device_count(self) -> Reading:
        ok, output, _ = self._run(['--query-gpu=count', '--format=csv,noheader'])
        if not ok:
            logger.warning("Query of GPU count failed: %s", output)
            return UNREADABLE
        return parse_device_count(output)

    def utilization(self, index: int) -> Reading:
        raw = self._query(index, 'utilization.gpu')
        if raw is None:
            return UNREADABLE

        logger.debug("GPU %d: Raw usage output: '%s'", index, raw.strip())
        usage = parse_utilization(raw)
        if usage is UNREADABLE:
            logger.warning("GPU %d: Invalid usage data: '%s'", index, raw.strip())
        return usage

    def current_clock(self, index: int) -> Reading:
        raw = self._query(index, 'clocks.gr')
        if raw is None:
            return UNREADABLE

        clock = parse_clock(raw)
        if clock is UNREADABLE:
            logger.warning("GPU %d: Invalid clock data: '%s'", index, raw.strip())
        return clock

    def supported_clocks(self, index: int) -> SupportedClocks:
        ok, output, _ = self._run(['-q', '-d', 'SUPPORTED_CLOCKS', '-i', str(index)])
        if not ok:
            logger.warning("GPU %d: Query of supported clocks failed: %s", index, output)
            return UNREADABLE

        clocks = parse_supported_clocks(output)
        if not clocks:
            logger.warning("GPU %d: No supported graphics clocks reported", index)
            return UNREADABLE
        return clocks

    def _command(self, args: List[str]) -> CommandResult:
        ok, output, duration = self._run(args, privileged=True)
        if ok:
            return CommandResult(success=True, output=output.strip(), duration_ms=duration)
        return CommandResult(success=False, error=output, duration_ms=duration)

    def lock_clock(self, index: int, mhz: int) -> CommandResult:
        return self._command(['-i', str(index), '-lgc', str(mhz)])

    def reset_clock(self, index: int) -> CommandResult:
        return self._command(['-i', str(index), '-rgc'])

    def enable_persistence_mode(self) -> CommandResult:
        return self._command(['-pm', '1'])


def _elapsed_ms(start: float) -> float:
    return (time.monotonic() - start) * 1000
