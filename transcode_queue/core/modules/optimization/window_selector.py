"""
Sample window selection for quality calibration.

Calibration encodes a handful of short windows instead of the whole file.
Short clips get a single window near the start; long content gets start,
middle and end coverage plus evenly spaced extras, since quality varies
from scene to scene.
"""

import math
from dataclasses import dataclass
from typing import List

from ....utils.logging import get_logger

logger = get_logger("window_selector")

# Skip the first seconds, which are often black frames or logos
WINDOW_START_OFFSET = 5.0

SHORT_CONTENT_SECONDS = 5 * 60
LONG_CONTENT_SECONDS = 90 * 60
MIN_WINDOWS = 1
MAX_WINDOWS = 5


@dataclass(frozen=True)
class Window:
    """A sampled time range, in seconds."""
    start: float
    duration: float

    @property
    def end(self) -> float:
        return self.start + self.duration


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def calculate_window_count(duration_s: float, budget_windows: int, possible_windows: int) -> int:
    """
    Number of windows to sample for a file of ``duration_s`` seconds.

    1 window below 5 minutes, 5 at or above 90 minutes, linear in between,
    then clamped by how many windows the budget and the file length allow.
    """
    if duration_s < SHORT_CONTENT_SECONDS:
        ideal = MIN_WINDOWS
    elif duration_s >= LONG_CONTENT_SECONDS:
        ideal = MAX_WINDOWS
    else:
        ratio = (duration_s - SHORT_CONTENT_SECONDS) / (LONG_CONTENT_SECONDS - SHORT_CONTENT_SECONDS)
        ideal = _round_half_up(MIN_WINDOWS + ratio * (MAX_WINDOWS - MIN_WINDOWS))

    return max(0, min(ideal, budget_windows, possible_windows))


def select_windows(duration_s: float, window_duration: float, budget_s: float) -> List[Window]:
    """
    Choose the windows to encode and score for a file.

    Args:
        duration_s: Total file duration
        window_duration: Length of each window
        budget_s: Maximum total seconds to sample

    Returns:
        Windows sorted by start offset. Empty when the budget allows none.
    """
    if window_duration <= 0:
        return []

    if duration_s < window_duration:
        return [Window(0.0, duration_s)]

    budget_windows = int(budget_s // window_duration)
    possible_windows = int(duration_s // window_duration)
    count = calculate_window_count(duration_s, budget_windows, possible_windows)

    if count == 0:
        logger.debug(f"No windows fit budget {budget_s}s with {window_duration}s windows")
        return []

    w = float(window_duration)
    start = Window(WINDOW_START_OFFSET, w)

    if count == 1:
        return [start]

    if count == 2:
        return [start, Window(max(duration_s - w - WINDOW_START_OFFSET, 10.0), w)]

    mid = duration_s / 2.0 - w / 2.0
    windows = [
        start,
        Window(max(mid, WINDOW_START_OFFSET), w),
        Window(max(duration_s - w - WINDOW_START_OFFSET, mid + w), w),
    ]

    extra = count - 3
    if extra:
        segment = (duration_s - 10.0 - w) / (extra + 1)
        for i in range(1, extra + 1):
            windows.append(Window(WINDOW_START_OFFSET + segment * i, w))
        windows.sort(key=lambda win: win.start)

    logger.debug(f"Selected {len(windows)} windows for {duration_s:.1f}s: "
                 + ", ".join(f"{win.start:.1f}s" for win in windows))
    return windows
