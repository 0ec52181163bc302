"""
clockgov - Configuration

Loaded once at startup into a frozen GovernorConfig and passed by
reference into the service. Nothing reads configuration after that.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

from .errors import ConfigError
from .state import Device


DEFAULT_LOW_USAGE_THRESHOLD = 10     # % usage below which to downclock
DEFAULT_HIGH_USAGE_THRESHOLD = 50    # % usage above which to restore full clock
DEFAULT_CHECK_INTERVAL = 10          # seconds between checks
DEFAULT_COMMAND_TIMEOUT = 30.0
DEFAULT_VERIFY_DELAY = 1.0

LOG_LEVELS = ('DEBUG', 'INFO', 'WARNING', 'ERROR')

_ASCII_INTEGER = re.compile(r'[0-9]+')


def _default_use_sudo() -> bool:
    return hasattr(os, 'geteuid') and os.geteuid() != 0


@dataclass(frozen=True)
class GovernorConfig:
    """Immutable governor settings."""
    devices: Tuple[Device, ...]
    low_usage_threshold: int = DEFAULT_LOW_USAGE_THRESHOLD
    high_usage_threshold: int = DEFAULT_HIGH_USAGE_THRESHOLD
    check_interval_seconds: int = DEFAULT_CHECK_INTERVAL
    command_timeout_seconds: float = DEFAULT_COMMAND_TIMEOUT
    verify_delay_seconds: float = DEFAULT_VERIFY_DELAY
    use_sudo: bool = field(default_factory=_default_use_sudo)
    enable_persistence_mode: bool = True
    audit_log: Optional[Path] = None
    log_level: str = 'INFO'

    def __post_init__(self):
        self.validate()

    def validate(self):
        """Raise ConfigError if the settings are inconsistent."""
        for name in ('low_usage_threshold', 'high_usage_threshold'):
            value = getattr(self, name)
            if not 0 <= value <= 100:
                raise ConfigError(f"{name} must be between 0 and 100, got {value}")

        if self.low_usage_threshold >= self.high_usage_threshold:
            raise ConfigError(
                f"low_usage_threshold ({self.low_usage_threshold}) must be lower than "
                f"high_usage_threshold ({self.high_usage_threshold})"
            )

        if self.check_interval_seconds <= 0:
            raise ConfigError(
                f"check_interval_seconds must be positive, got {self.check_interval_seconds}"
            )
        if self.command_timeout_seconds <= 0:
            raise ConfigError(
                f"command_timeout_seconds must be positive, got {self.command_timeout_seconds}"
            )
        if self.verify_delay_seconds < 0:
            raise ConfigError(
                f"verify_delay_seconds must not be negative, got {self.verify_delay_seconds}"
            )
        if self.log_level not in LOG_LEVELS:
            raise ConfigError(f"log_level must be one of {', '.join(LOG_LEVELS)}")

        if not self.devices:
            raise ConfigError("No GPUs selected for management")

        seen = set()
        for device in self.devices:
            if device.index < 0:
                raise ConfigError(f"GPU index must be non-negative, got {device.index}")
            if device.index in seen:
                raise ConfigError(f"GPU {device.index} is configured more than once")
            seen.add(device.index)

    def with_overrides(self, **overrides: Any) -> 'GovernorConfig':
        """Copy with the non-None overrides applied (and re-validated)."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **changes) if changes else self

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> 'GovernorConfig':
        if not isinstance(raw, dict):
            raise ConfigError("governor config must be a mapping")

        devices = _parse_devices(raw.get('devices'))

        kwargs: Dict[str, Any] = {'devices': devices}
        try:
            if 'low_usage_threshold' in raw:
                kwargs['low_usage_threshold'] = _as_int(raw['low_usage_threshold'], 'low_usage_threshold')
            if 'high_usage_threshold' in raw:
                kwargs['high_usage_threshold'] = _as_int(raw['high_usage_threshold'], 'high_usage_threshold')
            if 'check_interval_seconds' in raw:
                kwargs['check_interval_seconds'] = _as_int(raw['check_interval_seconds'], 'check_interval_seconds')
            if 'command_timeout_seconds' in raw:
                kwargs['command_timeout_seconds'] = float(raw['command_timeout_seconds'])
            if 'verify_delay_seconds' in raw:
                kwargs['verify_delay_seconds'] = float(raw['verify_delay_seconds'])
        except (TypeError, ValueError) as e:
            raise ConfigError(str(e)) from e

        for flag in ('use_sudo', 'enable_persistence_mode'):
            if flag in raw:
                if not isinstance(raw[flag], bool):
                    raise ConfigError(f"{flag} must be true or false")
                kwargs[flag] = raw[flag]

        if raw.get('audit_log'):
            kwargs['audit_log'] = Path(str(raw['audit_log'])).expanduser()
        if 'log_level' in raw:
            kwargs['log_level'] = str(raw['log_level']).upper()

        return cls(**kwargs)


def _as_int(value: Any, name: str) -> int:
    # bool is an int subclass; reject it along with floats like 10.5
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{name} must be an integer, got {value!r}")
    return value


def _as_index(key: Any) -> int:
    # YAML gives int keys for `1:` and str keys for `"1":`; 1.5 and true are not indices
    if isinstance(key, str) and _ASCII_INTEGER.fullmatch(key.strip()):
        return int(key)
    if isinstance(key, bool) or not isinstance(key, int):
        raise ConfigError(f"GPU index must be an integer, got {key!r}")
    return key


def _parse_devices(raw: Any) -> Tuple[Device, ...]:
    if raw is None:
        raise ConfigError("config must contain a `devices` mapping")
    if not isinstance(raw, dict):
        raise ConfigError("`devices` must map GPU index to {low_clock, high_clock}")
    if not raw:
        raise ConfigError("No GPUs selected for management")

    devices = []
    for key, clocks in raw.items():
        index = _as_index(key)

        if not isinstance(clocks, dict):
            raise ConfigError(f"GPU {index}: clock settings must be a mapping")

        low = clocks.get('low_clock')
        high = clocks.get('high_clock')
        if low is None or high is None:
            raise ConfigError(f"LOW_CLOCK or HIGH_CLOCK not set for selected GPU {index}")

        devices.append(Device(
            index=index,
            low_clock=_as_int(low, f"GPU {index} low_clock"),
            high_clock=_as_int(high, f"GPU {index} high_clock"),
        ))

    return tuple(sorted(devices, key=lambda d: d.index))


def load_config(path: Path) -> GovernorConfig:
    """Read and validate a YAML governor config."""
    path = Path(path)
    try:
        text = path.read_text(encoding='utf-8')
    except OSError as e:
        raise ConfigError(f"Cannot read config {path}: {e}") from e

    try:
        raw = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if raw is None:
        raise ConfigError(f"Config {path} is empty")

    return GovernorConfig.from_dict(raw)
