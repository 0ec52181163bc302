"""
clockgov - Audit Log

JSONL record of every clock action the governor takes: locks, resets,
validation rejections, verification mismatches, persistence-mode setup.
"""

import json
import logging
import os
import socket
import threading
from dataclasses import asdict, dataclass, fields
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class AuditEntry:
    """One governor action as written to the JSONL file."""
    timestamp: str
    event_type: str
    device_index: Optional[int]
    params: Dict[str, Any]
    result_success: Optional[bool]
    result_error: Optional[str]
    duration_ms: Optional[float]
    instance_id: str

    def to_dict(self) -> dict:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEntry':
        # Extra keys are ignored; a missing key raises TypeError
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


def default_instance_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


class AuditLog:
    """
    Append-only JSONL trail of clock changes.

    One instance is shared by the loop thread and the reset pass, so
    appends are serialized. Reading tolerates lines this module did not
    write: they are skipped with a warning.
    """

    def __init__(self, log_path: Path, instance_id: Optional[str] = None):
        """
        Open (creating if needed) the trail at log_path.

        Raises OSError when the file or its directory cannot be created.
        instance_id tags every entry; it defaults to "host:pid" so runs on
        several machines can share one collector.
        """
        self.log_path = Path(log_path)
        self.instance_id = instance_id or default_instance_id()
        self._write_lock = threading.Lock()
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        if not self.log_path.exists():
            self.log_path.touch()

    def log(
        self,
        event_type: str,
        device_index: Optional[int] = None,
        params: Optional[Dict[str, Any]] = None,
        result_success: Optional[bool] = None,
        result_error: Optional[str] = None,
        duration_ms: Optional[float] = None
    ) -> AuditEntry:
        """
        Append one event.

        result_success stays None for events that are not device commands
        (validation_rejected, verify_mismatch); get_stats() leaves those
        out of the success rate. device_index is None for host-wide events
        such as persistence_mode.
        """
        entry = AuditEntry(
            timestamp=datetime.now().isoformat(),
            event_type=event_type,
            device_index=device_index,
            params=params or {},
            result_success=result_success,
            result_error=result_error,
            duration_ms=duration_ms,
            instance_id=self.instance_id
        )

        with self._write_lock:
            with open(self.log_path, 'a') as f:
                f.write(entry.to_json() + '\n')

        return entry

    def get_entries(self, limit: int = 100, event_type: Optional[str] = None) -> List[AuditEntry]:
        """The last `limit` entries, oldest first, optionally of one event type."""
        entries = []

        with open(self.log_path, 'r') as f:
            for lineno, line in enumerate(f, start=1):
                if not line.strip():
                    continue
                try:
                    data = json.loads(line)
                    if not isinstance(data, dict):
                        raise TypeError("not an object")
                    entry = AuditEntry.from_dict(data)
                except (ValueError, TypeError) as e:
                    logger.warning("%s:%d: skipping malformed audit line (%s)", self.log_path, lineno, e)
                    continue
                if event_type and entry.event_type != event_type:
                    continue
                entries.append(entry)

        return entries[-limit:] if limit > 0 else []

    def get_stats(self) -> Dict[str, Any]:
        entries = self.get_entries(limit=10000)

        if not entries:
            return {
                'total_events': 0,
                'success_rate': 0,
                'avg_duration_ms': 0,
                'events_by_type': {}
            }

        commands = [e for e in entries if e.result_success is not None]
        successes = sum(1 for e in commands if e.result_success)
        durations = [e.duration_ms for e in entries if e.duration_ms]

        events_by_type: Dict[str, int] = {}
        for e in entries:
            events_by_type[e.event_type] = events_by_type.get(e.event_type, 0) + 1

        return {
            'total_events': len(entries),
            'success_rate': successes / len(commands) if commands else 0,
            'avg_duration_ms': sum(durations) / len(durations) if durations else 0,
            'events_by_type': events_by_type
        }
