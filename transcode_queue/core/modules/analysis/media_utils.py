"""
Media utilities for transcode_queue.

ffprobe wrappers used by the queue: file duration (for progress and ETA) and
video height (for picking a VMAF model).
"""

import json
import subprocess
import threading
from pathlib import Path
from typing import Dict, Optional

from ....utils.logging import get_logger
from ..exceptions import ProbeError
from ..system.system_utils import run_command

logger = get_logger("media_utils")

DEFAULT_HEIGHT = 1080

_duration_cache: Dict[str, float] = {}
_cache_lock = threading.Lock()


def probe_duration(path: Path) -> float:
    """
    Duration of ``path`` in seconds from the container format.

    Raises:
        ProbeError: ffprobe failed or reported no usable duration
    """
    key = str(path)
    with _cache_lock:
        if key in _duration_cache:
            return _duration_cache[key]

    cmd = ["ffprobe", "-v", "quiet", "-print_format", "json", "-show_format", key]
    try:
        result = run_command(cmd, timeout=30)
    except (OSError, subprocess.SubprocessError) as e:
        raise ProbeError(f"ffprobe failed for {path.name}: {e}", command=cmd) from e

    if result.returncode != 0:
        raise ProbeError(f"ffprobe exited with status {result.returncode} for {path.name}",
                         command=cmd, output=result.stderr)

    try:
        duration = float(json.loads(result.stdout)["format"]["duration"])
    except (ValueError, KeyError, TypeError) as e:
        raise ProbeError(f"No duration reported for {path.name}", command=cmd,
                         output=result.stdout) from e

    with _cache_lock:
        _duration_cache[key] = duration
    return duration


def clear_probe_cache():
    with _cache_lock:
        _duration_cache.clear()


def probe_video_height(path: Path) -> int:
    """Height of the first video stream, or 1080 when it cannot be read."""
    cmd = [
        "ffprobe", "-v", "error",
        "-select_streams", "v:0",
        "-show_entries", "stream=height",
        "-of", "default=nk=1:nw=1",
        str(path)
    ]
    try:
        result = run_command(cmd, timeout=30)
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug(f"Height probe failed for {path.name}: {e}")
        return DEFAULT_HEIGHT

    value = result.stdout.strip() if result.returncode == 0 else ""
    return int(value) if value.isdigit() else DEFAULT_HEIGHT


def try_probe_duration(path: Path) -> Optional[float]:
    """probe_duration that logs and returns None instead of raising."""
    try:
        return probe_duration(path)
    except ProbeError as e:
        logger.warn(f"{e.message}; ETA will be unavailable")
        return None
