"""
Job model and state machine for transcode_queue.

A Job is the unit of work: one input file encoded to one output file with one
profile. Jobs live in a JobQueue arena keyed by id. The scheduler is the only
writer of the arena; worker threads mutate their own private copy and report
changes as messages.

State machine::

    Pending -> Running -> {Done, Failed}
    Pending -> Calibrating -> Running -> {Done, Failed}
    Calibrating -> Failed
    Pending -> Skipped

Requeueing is the only way back to Pending.
"""

import copy
import threading
from dataclasses import dataclass, field, asdict
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional

from ..exceptions import InvalidTransitionError

ERROR_TAIL_LINES = 10


class JobStatus(Enum):
    PENDING = "pending"
    CALIBRATING = "calibrating"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.DONE, JobStatus.FAILED, JobStatus.SKIPPED)

    @property
    def is_active(self) -> bool:
        return self in (JobStatus.RUNNING, JobStatus.CALIBRATING)


ALLOWED_TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.RUNNING, JobStatus.CALIBRATING, JobStatus.SKIPPED},
    JobStatus.CALIBRATING: {JobStatus.RUNNING, JobStatus.FAILED},
    JobStatus.RUNNING: {JobStatus.DONE, JobStatus.FAILED},
    JobStatus.DONE: set(),
    JobStatus.FAILED: set(),
    JobStatus.SKIPPED: set(),
}

# Fields that only make sense inside a live session
RUNTIME_FIELDS = ('started_at', 'eta_s', 'calibration_step', 'calibration_total_steps')


def truncate_error(text: str, max_lines: int = ERROR_TAIL_LINES) -> str:
    """Keep the last ``max_lines`` non-empty lines of diagnostic output."""
    lines = [line for line in text.splitlines() if line.strip()]
    return "\n".join(lines[-max_lines:])


@dataclass
class Job:
    """One input file to be encoded."""
    id: int
    input_path: Path
    output_path: Path
    profile_name: str
    status: JobStatus = JobStatus.PENDING
    overwrite: bool = False
    duration_s: Optional[float] = None

    # Encode progress
    out_time_s: float = 0.0
    progress_pct: float = 0.0
    fps: Optional[float] = None
    speed: Optional[float] = None
    bitrate_kbps: Optional[float] = None
    size_bytes: Optional[int] = None
    smoothed_speed: Optional[float] = None

    attempts: int = 0
    last_error: Optional[str] = None

    # Calibration
    vmaf_target: Optional[float] = None
    vmaf_result: Optional[float] = None
    vmaf_partial_scores: List[float] = field(default_factory=list)
    calibrated_quality: Optional[int] = None

    # Runtime only
    started_at: Optional[float] = None
    eta_s: Optional[float] = None
    calibration_step: int = 0
    calibration_total_steps: int = 0

    def can_transition(self, new_status: JobStatus) -> bool:
        return new_status in ALLOWED_TRANSITIONS[self.status]

    def transition(self, new_status: JobStatus):
        if not self.can_transition(new_status):
            raise InvalidTransitionError(self.id, self.status, new_status)
        self.status = new_status

    def fail(self, error: str):
        """
        Move to Failed with a readable error string.

        ``error`` is stored as given; producers pass diagnostic output through
        ``truncate_error`` before adding their own header line.
        """
        self.transition(JobStatus.FAILED)
        self.last_error = error

    def skip(self, reason: str = "Output exists and overwrite is disabled"):
        self.transition(JobStatus.SKIPPED)
        self.last_error = reason

    def reset_progress(self):
        self.out_time_s = 0.0
        self.progress_pct = 0.0
        self.fps = None
        self.speed = None
        self.bitrate_kbps = None
        self.size_bytes = None
        self.smoothed_speed = None
        self.vmaf_partial_scores = []
        self.started_at = None
        self.eta_s = None
        self.calibration_step = 0
        self.calibration_total_steps = 0

    def requeue(self, preserve_markers: bool = False):
        """Reset to Pending. With ``preserve_markers`` Done/Skipped jobs are left alone."""
        if preserve_markers and self.status in (JobStatus.DONE, JobStatus.SKIPPED):
            return
        self.status = JobStatus.PENDING
        self.last_error = None
        self.reset_progress()

    def should_skip(self) -> bool:
        return not self.overwrite and self.output_path.exists()

    def to_dict(self) -> dict:
        data = asdict(self)
        for name in RUNTIME_FIELDS:
            data.pop(name, None)
        data['input_path'] = str(self.input_path)
        data['output_path'] = str(self.output_path)
        data['status'] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Job":
        data = dict(data)
        for name in RUNTIME_FIELDS:
            data.pop(name, None)
        data['input_path'] = Path(data['input_path'])
        data['output_path'] = Path(data['output_path'])
        data['status'] = JobStatus(data.get('status', JobStatus.PENDING.value))
        data['vmaf_partial_scores'] = list(data.get('vmaf_partial_scores') or [])
        return cls(**data)


class JobQueue:
    """Arena of jobs indexed by id.

    Readers take snapshots (deep copies) and must tolerate them being slightly
    stale. Writes go through ``update`` under the arena lock.
    """

    def __init__(self, jobs: Optional[List[Job]] = None):
        self._lock = threading.Lock()
        self._jobs: Dict[int, Job] = {}
        for job in jobs or []:
            self._jobs[job.id] = job

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    def add(self, job: Job):
        with self._lock:
            self._jobs[job.id] = job

    def next_id(self) -> int:
        with self._lock:
            return max(self._jobs, default=-1) + 1

    def get(self, job_id: int) -> Job:
        """Return a copy of the job with ``job_id``."""
        with self._lock:
            return copy.deepcopy(self._jobs[job_id])

    def update(self, job_id: int, mutate: Callable[[Job], None]):
        with self._lock:
            mutate(self._jobs[job_id])

    def snapshot(self) -> List[Job]:
        with self._lock:
            return [copy.deepcopy(job) for job in self._jobs.values()]

    def ids_with_status(self, status: JobStatus) -> List[int]:
        with self._lock:
            return [job_id for job_id, job in self._jobs.items() if job.status == status]

    def count(self, *statuses: JobStatus) -> int:
        with self._lock:
            return sum(1 for job in self._jobs.values() if job.status in statuses)

    def all_terminal(self) -> bool:
        with self._lock:
            return all(job.status.is_terminal for job in self._jobs.values())

    def requeue_all(self, preserve_markers: bool = False):
        with self._lock:
            for job in self._jobs.values():
                job.requeue(preserve_markers)
