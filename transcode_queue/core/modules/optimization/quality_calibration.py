"""
Quality calibration: find the encoder quality setting that meets a VMAF target.

The search is monotone and one-directional. It starts at the profile's
baseline quality and, while the mean window score is below target, steps the
quality knob towards better quality (lower numbers) until the target is met,
the floor is reached or the attempt budget runs out. It is not a bisection:
overshooting only costs encode time, and the baseline is usually close.

Each attempt encodes every sampled window at the current quality and scores
it against the source. Any window encode or scoring failure aborts the whole
calibration; no partial result is ever returned.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional

from ....utils.logging import get_logger
from ..encoder_config import EncodingProfile
from ..exceptions import (CalibrationCancelledError, CalibrationPreconditionError,
                          CalibrationStepError, ProbeError, ScoreEvaluationError)
from ..analysis.media_utils import probe_duration, probe_video_height
from ..processing.job_model import Job
from ..system.system_utils import ProcessRunner, remove_file, remove_tree
from .window_selector import Window, select_windows

logger = get_logger("quality_calibration")

TEMP_DIR_NAME = ".transcode_queue_tmp"
MIN_CALIBRATION_DURATION = 1.0


@dataclass
class CalibrationResult:
    """Outcome of one calibration run."""
    quality: int
    measured_score: float
    attempts: int
    hit_floor: bool = False


def job_temp_dir(job: Job) -> Path:
    """Scratch directory for ``job``, next to its input to avoid cross-device copies."""
    return job.input_path.parent / TEMP_DIR_NAME / str(job.id)


class QualityCalibrator:
    """
    Runs the calibration search for a single job.

    Collaborators are injected so the search can be driven without ffmpeg:
    ``command_builder`` provides ``build_window``, ``evaluator`` provides
    ``is_available`` and ``evaluate``, ``runner`` provides ``run``.
    """

    def __init__(self, command_builder, evaluator, runner: Optional[ProcessRunner] = None,
                 duration_prober: Callable[[Path], float] = probe_duration,
                 height_prober: Callable[[Path], int] = probe_video_height):
        self.command_builder = command_builder
        self.evaluator = evaluator
        self.runner = runner or ProcessRunner()
        self.duration_prober = duration_prober
        self.height_prober = height_prober

    def check_preconditions(self, job: Job, profile: EncodingProfile) -> float:
        """Validate that ``job`` can be calibrated and return its duration."""
        if not self.evaluator.is_available():
            raise CalibrationPreconditionError("VMAF filter not available in ffmpeg")

        if not profile.is_calibration_compatible():
            raise CalibrationPreconditionError(
                "Profile rate control mode is not quality driven (use CRF/CQ or CQP)")

        duration = job.duration_s
        if duration is None:
            try:
                duration = self.duration_prober(job.input_path)
            except ProbeError as e:
                raise CalibrationPreconditionError(
                    f"Failed to probe duration for {job.input_path.name}: {e.message}") from e

        if duration < MIN_CALIBRATION_DURATION:
            raise CalibrationPreconditionError("Video too short for calibration (< 1s)")
        return duration

    def calibrate(self, job: Job, profile: EncodingProfile,
                  on_progress: Optional[Callable[[Job], None]] = None,
                  on_spawn: Optional[Callable[[int], None]] = None,
                  should_stop: Optional[Callable[[], bool]] = None) -> CalibrationResult:
        """
        Search for the quality setting for ``job``.

        ``job`` is the caller's private copy; its calibration counters, partial
        scores and progress are updated in place and ``on_progress`` is called
        after every scored window. ``on_spawn`` receives the pid of every
        encoder and scorer process. ``should_stop`` is checked before each
        window.

        Raises:
            CalibrationPreconditionError: the job cannot be calibrated
            CalibrationStepError: a window encode or evaluation failed
            CalibrationCancelledError: ``should_stop`` returned True
        """
        duration = self.check_preconditions(job, profile)

        windows = select_windows(duration, profile.vmaf_window_duration_sec,
                                 profile.vmaf_analysis_budget_sec)
        if not windows:
            raise CalibrationPreconditionError("No valid windows selected for calibration")

        output_height = profile.scale_height if profile.scale_height > 0 \
            else self.height_prober(job.input_path)

        quality = profile.baseline_quality()
        floor = profile.quality_floor()
        step = max(1, int(profile.vmaf_step))
        max_attempts = max(1, int(profile.vmaf_max_attempts))
        target = profile.vmaf_target

        logger.calibration(f"{job.input_path.name}: {len(windows)} windows, baseline={quality}, "
                           f"target={target}, floor={floor}, step={step}")

        job.vmaf_target = target
        job.calibration_total_steps = max_attempts * len(windows)
        job.calibration_step = 0
        job.progress_pct = 0.0
        if on_progress:
            on_progress(job)

        result = CalibrationResult(quality=quality, measured_score=0.0, attempts=0)
        temp_dir = job_temp_dir(job)

        try:
            try:
                temp_dir.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise CalibrationStepError(f"Failed to create temp dir {temp_dir}: {e}") from e

            for attempt in range(1, max_attempts + 1):
                result.attempts = attempt
                logger.calibration_debug(f"Attempt {attempt}/{max_attempts} with quality={quality}")

                job.vmaf_partial_scores = []
                scores = self._score_windows(job, profile, windows, quality, output_height,
                                             temp_dir, on_progress, on_spawn, should_stop)

                mean_score = sum(scores) / len(scores)
                result.measured_score = mean_score
                result.quality = quality

                logger.calibration(f"{job.input_path.name}: attempt {attempt} quality={quality} "
                                   f"VMAF={mean_score:.2f} (target {target})")

                if mean_score >= target:
                    break

                if quality <= floor:
                    logger.warn(f"{job.input_path.name}: quality floor {floor} reached, "
                                f"best VMAF {mean_score:.2f}")
                    result.hit_floor = True
                    break

                if attempt == max_attempts:
                    logger.warn(f"{job.input_path.name}: max attempts ({max_attempts}) reached, "
                                f"VMAF {mean_score:.2f} at quality {quality}")
                    break

                quality = max(quality - step, floor)
        finally:
            remove_tree(temp_dir)
            self._remove_empty_temp_root(temp_dir.parent)

        job.progress_pct = 100.0
        job.calibration_step = 0
        job.calibration_total_steps = 0
        job.calibrated_quality = result.quality
        job.vmaf_result = result.measured_score

        logger.calibration(f"{job.input_path.name}: quality={result.quality} "
                           f"VMAF={result.measured_score:.2f} attempts={result.attempts} "
                           f"hit_floor={result.hit_floor}")
        return result

    def _score_windows(self, job: Job, profile: EncodingProfile, windows: List[Window],
                       quality: int, output_height: int, temp_dir: Path,
                       on_progress: Optional[Callable[[Job], None]],
                       on_spawn: Optional[Callable[[int], None]] = None,
                       should_stop: Optional[Callable[[], bool]] = None) -> List[float]:
        scores = []
        for idx, window in enumerate(windows, 1):
            if should_stop and should_stop():
                raise CalibrationCancelledError(
                    f"Calibration of {job.input_path.name} stopped before window {idx}")
            encoded = self._encode_window(job, profile, window, quality, temp_dir, idx, on_spawn)
            try:
                score = self.evaluator.evaluate(job.input_path, encoded, window, profile.fps,
                                                output_height, profile.vmaf_n_subsample,
                                                log_dir=temp_dir, on_spawn=on_spawn)
            except ScoreEvaluationError as e:
                raise CalibrationStepError(
                    f"Failed to evaluate VMAF for window {idx}: {e.message}") from e
            finally:
                remove_file(encoded)

            scores.append(score)
            job.vmaf_partial_scores.append(score)
            job.vmaf_result = sum(job.vmaf_partial_scores) / len(job.vmaf_partial_scores)
            job.calibration_step = min(job.calibration_step + 1, job.calibration_total_steps)
            job.progress_pct = min(100.0, job.calibration_step / job.calibration_total_steps * 100.0)
            if on_progress:
                on_progress(job)
        return scores

    def _encode_window(self, job: Job, profile: EncodingProfile, window: Window, quality: int,
                       temp_dir: Path, idx: int,
                       on_spawn: Optional[Callable[[int], None]] = None) -> Path:
        ext = job.output_path.suffix or f".{profile.container}"
        output_path = temp_dir / f"win_{job.id}_{window.start:.1f}s_q{quality}{ext}"
        cmd = self.command_builder.build_window(job, profile, window, quality, output_path)

        try:
            outcome = self.runner.run(cmd, on_spawn=on_spawn)
        except OSError as e:
            raise CalibrationStepError(f"Failed to start window {idx} encode: {e}", command=cmd) from e

        if not outcome.success:
            raise CalibrationStepError(
                f"Window {idx} encode failed at quality {quality} (status {outcome.returncode}):\n"
                f"{outcome.stderr_tail()}", command=cmd, output=outcome.stderr_tail())

        if not output_path.exists():
            raise CalibrationStepError(f"Window {idx} encode did not produce output", command=cmd)
        return output_path

    @staticmethod
    def _remove_empty_temp_root(path: Path):
        try:
            path.rmdir()
        except OSError:
            # still in use by another job's calibration, or already gone
            pass
