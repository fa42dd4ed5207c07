"""
Progress parsing for encoder key=value progress output.

ffmpeg run with ``-progress pipe:1 -nostats`` writes blocks such as::

    frame=150
    fps=29.97
    bitrate=2500.0kbits/s
    total_size=2097152
    out_time_us=5000000
    speed=1.2x
    progress=continue

Lines are fed one at a time. A value that fails to parse (``N/A``, a line
split mid-write) is dropped and the previous good value is kept.
"""

import time
from dataclasses import dataclass
from typing import Optional

# EWMA smoothing for ETA speed: 10% new sample, 90% history, at most every 2s
SPEED_SMOOTHING_ALPHA = 0.1
SPEED_UPDATE_INTERVAL = 2.0


@dataclass
class ProgressSnapshot:
    """Point-in-time view of an encoder's progress."""
    out_time_us: int = 0
    fps: Optional[float] = None
    speed: Optional[float] = None
    bitrate_kbps: Optional[float] = None
    total_size: Optional[int] = None
    is_complete: bool = False

    @property
    def out_time_s(self) -> float:
        return self.out_time_us / 1_000_000.0


def _parse_float(value: str, suffix: str = "") -> Optional[float]:
    value = value.strip()
    if suffix and value.endswith(suffix):
        value = value[:-len(suffix)]
    try:
        return float(value)
    except ValueError:
        return None


def _parse_int(value: str) -> Optional[int]:
    try:
        return int(value.strip())
    except ValueError:
        return None


class ProgressParser:
    """Accumulates a ProgressSnapshot from encoder progress lines."""

    def __init__(self):
        self.snapshot = ProgressSnapshot()

    def parse_line(self, line: str) -> ProgressSnapshot:
        """Apply one output line and return the running snapshot."""
        if '=' not in line:
            return self.snapshot

        key, value = line.split('=', 1)
        key = key.strip()
        snap = self.snapshot

        if key == 'out_time_us':
            us = _parse_int(value)
            if us is not None and us >= 0:
                snap.out_time_us = us
        elif key == 'fps':
            fps = _parse_float(value)
            if fps is not None:
                snap.fps = fps
        elif key == 'speed':
            speed = _parse_float(value, 'x')
            if speed is not None:
                snap.speed = speed
        elif key == 'bitrate':
            bitrate = _parse_float(value, 'kbits/s')
            if bitrate is not None:
                snap.bitrate_kbps = bitrate
        elif key == 'total_size':
            size = _parse_int(value)
            if size is not None:
                snap.total_size = size
        elif key == 'progress':
            if value.strip() == 'end':
                snap.is_complete = True

        return snap

    @property
    def out_time_s(self) -> float:
        return self.snapshot.out_time_s

    @property
    def is_complete(self) -> bool:
        return self.snapshot.is_complete

    def progress_pct(self, duration_s: Optional[float]) -> float:
        """Percentage of ``duration_s`` encoded so far, clamped to [0, 100]."""
        if duration_s is None or duration_s <= 0:
            return 0.0
        pct = self.out_time_s / duration_s * 100.0
        return max(0.0, min(100.0, pct))


class SpeedSmoother:
    """Debounced exponentially weighted moving average of encode speed."""

    def __init__(self, alpha: float = SPEED_SMOOTHING_ALPHA,
                 interval: float = SPEED_UPDATE_INTERVAL, clock=time.monotonic):
        self.alpha = alpha
        self.interval = interval
        self._clock = clock
        self.value: Optional[float] = None
        self._last_update: Optional[float] = None

    def update(self, speed: Optional[float]) -> Optional[float]:
        if speed is None:
            return self.value

        now = self._clock()
        if self._last_update is not None and now - self._last_update < self.interval:
            return self.value

        if self.value is None:
            self.value = speed
        else:
            self.value = self.alpha * speed + (1.0 - self.alpha) * self.value
        self._last_update = now
        return self.value
