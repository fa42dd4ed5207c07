"""
Main orchestration module for transcode_queue.

This module wires the components together for the command line:
- Queue building or resuming from saved state
- The worker pool with optional quality calibration
- tqdm progress display with a queue ETA
- State saving after every finished job and a final summary
"""

import argparse
import sys
from pathlib import Path
from typing import Dict, List, Optional

from ..config import get_config
from ..utils.logging import (get_logger, set_debug_mode, set_quiet_mode, set_log_level,
                             create_progress_bar, print_section_header, format_duration)
from .modules.analysis.vmaf_evaluator import VmafEvaluator
from .modules.encoder_config import (BUILTIN_PROFILES, EncodingProfile, FFmpegCommandBuilder,
                                     get_profile)
from .modules.exceptions import QueueStateError
from .modules.optimization.quality_calibration import QualityCalibrator
from .modules.processing.file_manager import build_job_queue, discover_video_files
from .modules.processing.job_model import JobQueue, JobStatus
from .modules.processing.transcoding_engine import TranscodingEngine
from .modules.processing.worker_pool import (CalibrationCompleted, JobCompleted, JobFailed,
                                             JobStarted, ProgressUpdate, WorkerPool)
from .modules.reporting.stats import SessionStats
from .modules.system.queue_state_manager import QueueState

logger = get_logger("transcode_main")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Transcode Queue - batch transcoding with bounded workers and VMAF calibration")

    parser.add_argument("input", help="Input directory (or single file)")
    parser.add_argument("--profile", default="vp9-good", choices=sorted(BUILTIN_PROFILES),
                        help="Encoding profile (default: vp9-good)")
    parser.add_argument("--workers", type=int, default=None,
                        help="Maximum concurrent encodes (default: MAX_WORKERS or min(4, cpus))")

    parser.add_argument("--auto-vmaf", action="store_true",
                        help="Calibrate quality per file against a VMAF target before encoding")
    parser.add_argument("--vmaf-target", type=float, default=None,
                        help="Target VMAF score for calibration (default: 93.0)")

    parser.add_argument("--output-dir", help="Directory for outputs (default: next to input)")
    parser.add_argument("--pattern", help="Output name pattern, e.g. '{basename}.{profile}'")
    parser.add_argument("--container", help="Override the profile's container extension")
    parser.add_argument("--overwrite", action="store_true", help="Re-encode even if the output exists")
    parser.add_argument("--resume", action="store_true",
                        help="Resume from the saved queue state in the input directory")
    parser.add_argument("--debug", action="store_true", help="Enable debug output")
    parser.add_argument("--quiet", action="store_true",
                        help="Only show warnings, errors and progress bars")
    parser.add_argument("--log-level", choices=["DEBUG", "INFO", "WARN", "ERROR"], default=None,
                        help="Minimum level for log lines (default: LOG_LEVEL or INFO)")
    return parser


def apply_calibration_settings(profile: EncodingProfile, config: Dict, args) -> EncodingProfile:
    profile.vmaf_target = args.vmaf_target if args.vmaf_target is not None else config['vmaf_target']
    profile.vmaf_step = config['vmaf_step']
    profile.vmaf_max_attempts = config['vmaf_max_attempts']
    profile.vmaf_window_duration_sec = config['vmaf_window_duration']
    profile.vmaf_analysis_budget_sec = config['vmaf_analysis_budget']
    profile.vmaf_n_subsample = config['vmaf_n_subsample']
    profile.vmaf_enabled = args.auto_vmaf or profile.vmaf_enabled
    return profile


class QueueProgressDisplay:
    """tqdm bars: one for the queue plus one per active job."""

    def __init__(self, pool: WorkerPool, total_jobs: int, already_finished: int):
        self.pool = pool
        self.overall = create_progress_bar(total=total_jobs, desc="Queue", unit="job", position=0)
        self.overall.update(already_finished)
        self.bars = {}

    def on_message(self, msg):
        if isinstance(msg, JobStarted):
            job = self.pool.jobs.get(msg.job_id)
            self.bars[msg.job_id] = create_progress_bar(
                total=100, desc=job.input_path.name[:40], unit="%",
                position=len(self.bars) + 1, leave=False)
        elif isinstance(msg, ProgressUpdate):
            bar = self.bars.get(msg.job_id)
            if bar is not None:
                bar.n = round(msg.progress_pct, 1)
                postfix = msg.status.value
                if msg.speed is not None:
                    postfix += f" {msg.speed:.2f}x"
                if msg.vmaf_result is not None and msg.status == JobStatus.CALIBRATING:
                    postfix += f" vmaf {msg.vmaf_result:.1f}"
                bar.set_postfix_str(postfix, refresh=False)
                bar.refresh()
        elif isinstance(msg, CalibrationCompleted):
            bar = self.bars.get(msg.job_id)
            if bar is not None:
                bar.n = 0
                bar.refresh()
        elif isinstance(msg, (JobCompleted, JobFailed)):
            bar = self.bars.pop(msg.job_id, None)
            if bar is not None:
                bar.close()
            self.overall.update(1)

    def on_tick(self):
        eta = self.pool.eta.queue_eta(self.pool.jobs.snapshot())
        eta_text = format_duration(eta) if eta is not None else "-"
        self.overall.set_postfix_str(f"active {self.pool.active_count} | ETA {eta_text}")

    def close(self):
        for bar in self.bars.values():
            bar.close()
        self.overall.close()


def load_or_build_state(root: Path, state_root: Path, profile: EncodingProfile, args) -> QueueState:
    if args.resume and QueueState.exists(state_root):
        state = QueueState.load(state_root)
        state.load_queue_status(state_root)
        return state

    if args.resume:
        logger.warn(f"No saved queue in {state_root}, building a new one")

    files = discover_video_files(root)
    jobs = build_job_queue(
        files, profile, overwrite=args.overwrite,
        output_dir=Path(args.output_dir) if args.output_dir else None,
        pattern=args.pattern, container=args.container)
    return QueueState(jobs=jobs, profile_name=profile.name, root_path=root,
                      profile_config=profile.to_dict())


def save_state(jobs: JobQueue, state: QueueState, root: Path):
    snapshot = QueueState.from_queue(jobs, state.profile_name, state.root_path, state.profile_config)
    try:
        snapshot.save(root)
        snapshot.save_queue_status(root)
    except QueueStateError as e:
        logger.warn(e.message)


def print_summary(stats: SessionStats, jobs: List):
    print_section_header("SUMMARY")
    logger.result(stats.summary())
    for job in jobs:
        if job.status == JobStatus.FAILED:
            logger.error(f"{job.input_path.name}: {job.last_error}")


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the transcode-queue command."""
    args = build_parser().parse_args(argv)
    config = get_config()
    debug = args.debug or config['debug']
    set_debug_mode(debug)
    set_quiet_mode(args.quiet)
    # debug lines are filtered by level too
    set_log_level(args.log_level or ('DEBUG' if debug else config['log_level']))

    root = Path(args.input).expanduser().resolve()
    if not root.exists():
        logger.error(f"Input not found: {root}")
        return 2
    state_root = root if root.is_dir() else root.parent

    max_workers = args.workers if args.workers is not None else config['max_workers']
    if max_workers < 1:
        logger.error("--workers must be at least 1")
        return 2

    profile = apply_calibration_settings(get_profile(args.profile), config, args)

    try:
        state = load_or_build_state(root, state_root, profile, args)
    except (QueueStateError, ValueError) as e:
        logger.error(str(e))
        return 2

    if state.profile_config:
        profile = EncodingProfile.from_dict(state.profile_config)
        if args.auto_vmaf:
            profile = apply_calibration_settings(profile, config, args)

    if not state.jobs:
        logger.info("No video files found")
        return 0

    if profile.vmaf_enabled and not profile.is_calibration_compatible():
        logger.warn(f"Profile '{profile.name}' is bitrate driven; calibrated jobs will fail")

    jobs = state.to_job_queue()
    builder = FFmpegCommandBuilder()
    calibrator = QualityCalibrator(builder, VmafEvaluator()) if profile.vmaf_enabled else None
    stats = SessionStats()

    pool = WorkerPool(jobs, profile, max_workers, TranscodingEngine(builder),
                      calibrator=calibrator, auto_calibrate=profile.vmaf_enabled, stats=stats)

    finished = jobs.count(JobStatus.DONE, JobStatus.SKIPPED)
    display = QueueProgressDisplay(pool, len(jobs), finished)

    def on_message(msg):
        display.on_message(msg)
        if isinstance(msg, (JobCompleted, JobFailed)):
            save_state(jobs, state, state_root)

    pool.on_message = on_message

    logger.info(f"{len(jobs)} job(s), profile {profile.name}, {max_workers} worker(s)"
                + (f", VMAF target {profile.vmaf_target}" if profile.vmaf_enabled else ""))

    interrupted = False
    try:
        pool.run(on_tick=display.on_tick)
    except KeyboardInterrupt:
        interrupted = True
        logger.warn("Interrupted, stopping encoders...")
        pool.kill_all_running()
    finally:
        pool.shutdown(wait=True)
        display.close()
        save_state(jobs, state, state_root)

    snapshot = jobs.snapshot()
    print_summary(stats, snapshot)

    if interrupted:
        return 130
    return 1 if any(job.status == JobStatus.FAILED for job in snapshot) else 0


if __name__ == "__main__":
    sys.exit(main())
