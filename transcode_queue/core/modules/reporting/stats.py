"""
Session statistics for a queue run.
"""

import threading
import time
from dataclasses import dataclass, field

from ....utils.logging import format_size, format_duration


@dataclass
class SessionStats:
    """Aggregate counters, updated by the scheduler on every terminal message."""
    jobs_done: int = 0
    jobs_failed: int = 0
    jobs_skipped: int = 0
    input_bytes: int = 0
    output_bytes: int = 0
    encode_seconds: float = 0.0
    session_start: float = field(default_factory=time.time)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def record_done(self, input_bytes: int, output_bytes: int, encode_seconds: float):
        with self._lock:
            self.jobs_done += 1
            self.input_bytes += input_bytes
            self.output_bytes += output_bytes
            self.encode_seconds += encode_seconds

    def record_failed(self):
        with self._lock:
            self.jobs_failed += 1

    def record_skipped(self):
        with self._lock:
            self.jobs_skipped += 1

    def compression_ratio(self) -> float:
        """Output size as a fraction of input size, 0 before anything finished."""
        if self.input_bytes <= 0:
            return 0.0
        return self.output_bytes / self.input_bytes

    def space_saved(self) -> int:
        return self.input_bytes - self.output_bytes

    def format_space_saved(self) -> str:
        saved = self.space_saved()
        if saved >= 0:
            return f"{format_size(saved)} saved"
        return f"{format_size(-saved)} larger"

    def summary(self) -> str:
        wall = time.time() - self.session_start
        parts = [
            f"{self.jobs_done} done",
            f"{self.jobs_failed} failed",
            f"{self.jobs_skipped} skipped",
        ]
        line = ", ".join(parts) + f" in {format_duration(wall)}"
        if self.jobs_done:
            line += (f" | {format_size(self.input_bytes)} -> {format_size(self.output_bytes)} "
                     f"({self.compression_ratio():.1%}, {self.format_space_saved()})")
        return line
