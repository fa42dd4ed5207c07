"""
Transcoding engine module for transcode_queue.

This module runs the full encode for one job:
- Building the encoder command
- Streaming encoder progress into the job
- Verifying the output and cleaning up after failures
"""

import time
from dataclasses import dataclass
from typing import Callable, Optional

from ....utils.logging import get_logger
from ..encoder_config import EncodingProfile
from ..system.system_utils import ProcessRunner, remove_file
from .job_model import Job, truncate_error
from .progress_parser import ProgressParser, SpeedSmoother

logger = get_logger("transcoding_engine")


@dataclass
class EncodeOutcome:
    success: bool
    error: Optional[str] = None
    output_size: Optional[int] = None
    elapsed_s: float = 0.0


def format_exit_error(returncode: int, stderr_tail: str) -> str:
    return f"Encoding failed with status: {returncode}\n\nFFmpeg error:\n{stderr_tail}"


class TranscodingEngine:
    """Encodes a job's input to its output and reports progress as it goes."""

    def __init__(self, command_builder, runner: Optional[ProcessRunner] = None,
                 clock: Callable[[], float] = time.time):
        self.command_builder = command_builder
        self.runner = runner or ProcessRunner()
        self.clock = clock

    def encode(self, job: Job, profile: EncodingProfile,
               on_progress: Optional[Callable[[Job], None]] = None,
               on_spawn: Optional[Callable[[int], None]] = None) -> EncodeOutcome:
        """
        Run the full encode for ``job``, the caller's private copy.

        Progress fields on ``job`` are updated after every progress block the
        encoder writes and ``on_progress`` is called with the job.
        """
        cmd = self.command_builder.build(job, profile)
        parser = ProgressParser()
        smoother = SpeedSmoother()

        job.reset_progress()
        job.attempts += 1
        job.started_at = self.clock()

        def on_line(line: str):
            snap = parser.parse_line(line)
            # ffmpeg terminates every block with progress=continue|end
            if not line.startswith('progress='):
                return
            job.out_time_s = snap.out_time_s
            job.progress_pct = parser.progress_pct(job.duration_s)
            job.fps = snap.fps
            job.speed = snap.speed
            job.bitrate_kbps = snap.bitrate_kbps
            job.size_bytes = snap.total_size
            job.smoothed_speed = smoother.update(snap.speed)
            if on_progress:
                on_progress(job)

        try:
            job.output_path.parent.mkdir(parents=True, exist_ok=True)
            result = self.runner.run(cmd, on_line=on_line, on_spawn=on_spawn)
        except OSError as e:
            logger.error(f"Failed to start encoder for {job.input_path.name}: {e}")
            return EncodeOutcome(False, error=f"Failed to start encoder: {e}")

        elapsed = self.clock() - job.started_at

        if not result.success:
            remove_file(job.output_path)
            error = format_exit_error(result.returncode, truncate_error("\n".join(result.stderr_lines)))
            logger.error(f"{job.input_path.name}: encoder exited with status {result.returncode}")
            return EncodeOutcome(False, error=error, elapsed_s=elapsed)

        if not job.output_path.exists():
            logger.error(f"{job.input_path.name}: encoder reported success but no output was written")
            return EncodeOutcome(False, error="Output file not created", elapsed_s=elapsed)

        output_size = job.output_path.stat().st_size
        job.progress_pct = 100.0
        job.size_bytes = output_size
        return EncodeOutcome(True, output_size=output_size, elapsed_s=elapsed)
