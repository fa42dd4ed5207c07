"""
System utilities for transcode_queue.

This module provides system-level utilities including:
- Running short external commands (probes, filter checks)
- Supervising a long-running encoder process line by line
- Best-effort directory cleanup
"""

import shlex
import shutil
import subprocess
import threading
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional

from ....utils.logging import get_logger, get_debug_mode

logger = get_logger("system_utils")

STDERR_TAIL_LINES = 200


@dataclass
class ProcessResult:
    """Outcome of a supervised process."""
    returncode: int
    stderr_lines: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.returncode == 0

    def stderr_tail(self, lines: int = 10) -> str:
        return "\n".join(self.stderr_lines[-lines:])


def run_command(cmd: List[str], timeout: Optional[int] = 30, capture_output: bool = True,
                text: bool = True, check: bool = False) -> subprocess.CompletedProcess:
    """
    Standardized subprocess command runner with consistent error handling.

    Args:
        cmd: Command as list of strings
        timeout: Timeout in seconds (default: 30, None waits forever)
        capture_output: Whether to capture stdout/stderr (default: True)
        text: Whether to use text mode (default: True)
        check: Whether to raise exception on non-zero exit (default: False)

    Returns:
        CompletedProcess object
    """
    logger.cmd(" ".join(shlex.quote(c) for c in cmd))
    try:
        return subprocess.run(
            cmd,
            capture_output=capture_output,
            text=text,
            timeout=timeout,
            check=check
        )
    except subprocess.TimeoutExpired:
        logger.error(f"Command timed out after {timeout}s: {' '.join(cmd[:3])}...")
        raise
    except subprocess.CalledProcessError as e:
        if get_debug_mode():
            logger.error(f"Command failed: {' '.join(cmd[:3])}... (exit code: {e.returncode})")
        raise


class ProcessRunner:
    """
    Spawns a process, streams its stdout line by line and keeps a tail of stderr.

    Reading stdout is the only blocking operation and happens on the calling
    thread. Stderr is drained on a helper thread so a chatty encoder cannot
    fill the pipe and stall.
    """

    def __init__(self, stderr_tail_lines: int = STDERR_TAIL_LINES):
        self.stderr_tail_lines = stderr_tail_lines

    def run(self, cmd: List[str],
            on_line: Optional[Callable[[str], None]] = None,
            on_spawn: Optional[Callable[[int], None]] = None) -> ProcessResult:
        """
        Run ``cmd`` to completion.

        Raises:
            OSError: the process could not be started
        """
        logger.cmd(" ".join(shlex.quote(c) for c in cmd))
        process = subprocess.Popen(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            stdin=subprocess.DEVNULL,
            text=True,
            errors='replace',
            bufsize=1,
        )
        if on_spawn:
            on_spawn(process.pid)

        stderr_tail = deque(maxlen=self.stderr_tail_lines)

        def drain_stderr():
            for line in process.stderr:
                stderr_tail.append(line.rstrip('\n'))

        stderr_thread = threading.Thread(target=drain_stderr, daemon=True)
        stderr_thread.start()

        try:
            for line in process.stdout:
                if on_line:
                    on_line(line.rstrip('\n'))
            returncode = process.wait()
        finally:
            if process.poll() is None:
                process.kill()
                process.wait()
            stderr_thread.join(timeout=5)
            process.stdout.close()
            process.stderr.close()

        return ProcessResult(returncode=returncode, stderr_lines=list(stderr_tail))


def remove_tree(path: Path) -> bool:
    """Remove ``path`` recursively, logging instead of raising on failure."""
    if not path.exists():
        return True
    try:
        shutil.rmtree(path)
        logger.cleanup(f"removed {path}")
        return True
    except OSError as e:
        logger.warn(f"Failed to clean up {path}: {e}")
        return False


def remove_file(path: Path) -> bool:
    """Delete a single file best-effort."""
    try:
        path.unlink()
        logger.cleanup(f"removed {path}")
        return True
    except FileNotFoundError:
        return True
    except OSError as e:
        logger.warn(f"Failed to remove {path}: {e}")
        return False
