"""Thread-safe counters for node link health."""

from __future__ import annotations

import threading
from typing import Dict, Optional

__all__ = ["NodeMetrics"]


class NodeMetrics:
    """Store counters for one node connection."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.frames_received = 0
        self.parse_errors = 0
        self.commands_sent = 0
        self.commands_dropped = 0
        self.reconnects = 0
        self.last_close_code: Optional[int] = None

    # ------------------------------------------------------------------
    # Mutation helpers
    # ------------------------------------------------------------------
    def incr_frames(self) -> None:
        with self._lock:
            self.frames_received += 1

    def incr_parse_errors(self) -> None:
        with self._lock:
            self.parse_errors += 1

    def incr_sent(self) -> None:
        with self._lock:
            self.commands_sent += 1

    def incr_dropped(self) -> None:
        with self._lock:
            self.commands_dropped += 1

    def incr_reconnects(self) -> None:
        with self._lock:
            self.reconnects += 1

    def record_close(self, code: Optional[int]) -> None:
        with self._lock:
            self.last_close_code = code

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------
    def snapshot(self) -> Dict[str, object]:
        with self._lock:
            return {
                "frames_received": self.frames_received,
                "parse_errors": self.parse_errors,
                "commands_sent": self.commands_sent,
                "commands_dropped": self.commands_dropped,
                "reconnects": self.reconnects,
                "last_close_code": self.last_close_code,
            }
