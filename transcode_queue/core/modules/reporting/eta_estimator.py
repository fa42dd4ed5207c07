"""
ETA estimation for individual jobs and for the whole queue.

Speed preference for a running job, most to least trusted:
  1. time weighted: encoded output seconds / wall clock seconds since start
  2. EWMA smoothed instantaneous speed
  3. raw instantaneous speed

The time weighted figure resists momentary stalls best, so it wins whenever
the job has a start timestamp and has produced output.
"""

import time
from typing import Iterable, List, Optional

from ..processing.job_model import Job, JobStatus

CALIBRATION_OVERHEAD_FRACTION = 0.1
DEFAULT_SPEED = 1.0

# Displayed ETA only changes when the new value moves by more than this
HYSTERESIS_ABS_SECONDS = 2
HYSTERESIS_REL_FRACTION = 0.05


def time_weighted_speed(job: Job, now: Optional[float] = None) -> Optional[float]:
    if job.started_at is None:
        return None
    now = time.time() if now is None else now
    elapsed = now - job.started_at
    if elapsed > 0 and job.out_time_s > 0:
        return job.out_time_s / elapsed
    return None


def effective_speed(job: Job, now: Optional[float] = None) -> Optional[float]:
    speed = time_weighted_speed(job, now)
    if speed is None:
        speed = job.smoothed_speed
    if speed is None:
        speed = job.speed
    return speed


def average_running_speed(jobs: Iterable[Job]) -> float:
    """Mean smoothed (or raw) speed over Running jobs, 1.0x when none report one."""
    speeds = []
    for job in jobs:
        if job.status != JobStatus.RUNNING:
            continue
        speed = job.smoothed_speed if job.smoothed_speed is not None else job.speed
        if speed is not None:
            speeds.append(speed)
    if not speeds:
        return DEFAULT_SPEED
    return sum(speeds) / len(speeds)


def estimate_job_remaining(job: Job, avg_speed: float = DEFAULT_SPEED,
                           now: Optional[float] = None) -> Optional[float]:
    """Seconds of wall clock left for ``job``, or None when it cannot be estimated."""
    if job.duration_s is None:
        return None

    if job.status == JobStatus.CALIBRATING:
        return job.duration_s * CALIBRATION_OVERHEAD_FRACTION

    if job.status == JobStatus.RUNNING:
        speed = effective_speed(job, now)
        if speed is None or speed <= 0:
            return None
        return max(0.0, job.duration_s - job.out_time_s) / speed

    if job.status == JobStatus.PENDING:
        if avg_speed <= 0:
            avg_speed = DEFAULT_SPEED
        return job.duration_s / avg_speed

    return None


def apply_hysteresis(displayed: Optional[int], new_eta: int) -> int:
    """Return the ETA to display given the currently displayed one."""
    if displayed is None:
        return new_eta
    diff = abs(new_eta - displayed)
    if diff > HYSTERESIS_ABS_SECONDS or diff / max(displayed, 1) > HYSTERESIS_REL_FRACTION:
        return new_eta
    return displayed


def estimate_queue_remaining(jobs: List[Job], max_workers: int,
                             now: Optional[float] = None) -> Optional[float]:
    """
    Wall clock seconds until the queue drains.

    The sum of per-job remaining times is divided by the effective parallelism:
    ``min(max_workers, active + pending)``, at least 1.
    """
    avg_speed = average_running_speed(jobs)
    total = 0.0
    active = pending = 0

    for job in jobs:
        if job.status.is_active:
            active += 1
        elif job.status == JobStatus.PENDING:
            pending += 1
        else:
            continue
        remaining = estimate_job_remaining(job, avg_speed, now)
        if remaining is not None:
            total += remaining

    if total <= 0:
        return None

    parallelism = max(1, min(max_workers, max(active + pending, 1)))
    return total / parallelism


class EtaEstimator:
    """Keeps hysteresis-smoothed ETAs for jobs on behalf of the display."""

    def __init__(self, max_workers: int, clock=time.time):
        self.max_workers = max_workers
        self.clock = clock

    def update_job_eta(self, job: Job, jobs: List[Job]) -> Optional[int]:
        """Recompute ``job.eta_s`` in place and return it."""
        raw = estimate_job_remaining(job, average_running_speed(jobs), self.clock())
        if raw is None:
            return job.eta_s
        job.eta_s = apply_hysteresis(job.eta_s, int(raw))
        return job.eta_s

    def queue_eta(self, jobs: List[Job]) -> Optional[float]:
        return estimate_queue_remaining(jobs, self.max_workers, self.clock())
