"""
Worker pool and scheduler for transcode_queue.

The scheduler keeps up to ``max_workers`` jobs in flight. Each job runs in its
own worker thread on a private copy of the Job and reports back through a
message queue; only the scheduler thread writes to the JobQueue arena.

The next Pending job is dispatched only when a WorkerIdle message is handled,
never from inside a completion handler. Two completions arriving back to back
therefore cannot both observe free capacity and over-dispatch.
"""

import concurrent.futures
import itertools
import queue
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Union

import psutil

from ....utils.logging import get_logger
from ..encoder_config import EncodingProfile
from ..exceptions import CalibrationError, InvalidTransitionError, WorkerPoolFullError
from ..optimization.quality_calibration import CalibrationResult, QualityCalibrator
from ..reporting.eta_estimator import EtaEstimator
from ..reporting.stats import SessionStats
from .job_model import Job, JobQueue, JobStatus
from .transcoding_engine import TranscodingEngine

logger = get_logger("worker_pool")

KILL_GRACE_SECONDS = 2.0
SKIP_REASON = "Output exists and overwrite is disabled"


@dataclass
class JobStarted:
    job_id: int
    status: JobStatus


@dataclass
class ProgressUpdate:
    job_id: int
    status: JobStatus
    progress_pct: float = 0.0
    out_time_s: float = 0.0
    fps: Optional[float] = None
    speed: Optional[float] = None
    smoothed_speed: Optional[float] = None
    bitrate_kbps: Optional[float] = None
    size_bytes: Optional[int] = None
    started_at: Optional[float] = None
    vmaf_result: Optional[float] = None
    vmaf_target: Optional[float] = None
    vmaf_partial_scores: List[float] = field(default_factory=list)
    calibration_step: int = 0
    calibration_total_steps: int = 0
    attempts: int = 0

    @classmethod
    def from_job(cls, job: Job) -> "ProgressUpdate":
        return cls(
            job_id=job.id,
            status=job.status,
            progress_pct=job.progress_pct,
            out_time_s=job.out_time_s,
            fps=job.fps,
            speed=job.speed,
            smoothed_speed=job.smoothed_speed,
            bitrate_kbps=job.bitrate_kbps,
            size_bytes=job.size_bytes,
            started_at=job.started_at,
            vmaf_result=job.vmaf_result,
            vmaf_target=job.vmaf_target,
            vmaf_partial_scores=list(job.vmaf_partial_scores),
            calibration_step=job.calibration_step,
            calibration_total_steps=job.calibration_total_steps,
            attempts=job.attempts,
        )


@dataclass
class CalibrationCompleted:
    job_id: int
    result: CalibrationResult


@dataclass
class JobCompleted:
    job_id: int
    output_size: int = 0
    input_size: int = 0
    elapsed_s: float = 0.0
    attempts: Optional[int] = None


@dataclass
class JobFailed:
    job_id: int
    error: str
    attempts: Optional[int] = None


@dataclass
class WorkerIdle:
    worker_id: int


WorkerMessage = Union[JobStarted, ProgressUpdate, CalibrationCompleted, JobCompleted,
                      JobFailed, WorkerIdle]


class WorkerPool:
    """Bounded dispatcher running queue jobs on worker threads."""

    def __init__(self, jobs: JobQueue, profile: EncodingProfile, max_workers: int,
                 engine: TranscodingEngine, calibrator: Optional[QualityCalibrator] = None,
                 auto_calibrate: bool = False, stats: Optional[SessionStats] = None,
                 on_message: Optional[Callable[[WorkerMessage], None]] = None):
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        if auto_calibrate and calibrator is None:
            raise ValueError("auto_calibrate requires a calibrator")

        self.jobs = jobs
        self.profile = profile
        self.max_workers = max_workers
        self.engine = engine
        self.calibrator = calibrator
        self.auto_calibrate = auto_calibrate
        self.stats = stats or SessionStats()
        self.eta = EtaEstimator(max_workers)
        self.on_message = on_message

        self.messages: "queue.Queue[WorkerMessage]" = queue.Queue()
        self._lock = threading.Lock()
        self._active = 0
        self._pids: Dict[int, int] = {}
        self._stopping = False
        self._worker_ids = itertools.count(1)
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="transcode-worker")

    # -- capacity ---------------------------------------------------------

    @property
    def active_count(self) -> int:
        with self._lock:
            return self._active

    def has_capacity(self) -> bool:
        with self._lock:
            return self._active < self.max_workers

    @property
    def stopping(self) -> bool:
        with self._lock:
            return self._stopping

    # -- dispatch ---------------------------------------------------------

    def spawn(self, job_id: int) -> int:
        """
        Start a worker for ``job_id``, which must already be marked Running or
        Calibrating in the arena. Returns the worker id.

        Raises:
            WorkerPoolFullError: no free slot
        """
        with self._lock:
            if self._active >= self.max_workers:
                raise WorkerPoolFullError(f"All {self.max_workers} workers are busy")
            self._active += 1
        worker_id = next(self._worker_ids)
        job = self.jobs.get(job_id)
        self._executor.submit(self._run_unit, worker_id, job)
        return worker_id

    def spawn_next_job(self) -> Optional[int]:
        """
        Dispatch the first dispatchable Pending job, if any.

        Pending jobs whose output already exists (and may not be overwritten)
        are marked Skipped in place during the scan without using a slot.
        """
        if self.stopping or not self.has_capacity():
            return None

        for job_id in self.jobs.ids_with_status(JobStatus.PENDING):
            job = self.jobs.get(job_id)
            if job.should_skip():
                self.jobs.update(job_id, lambda j: j.skip(SKIP_REASON))
                self.stats.record_skipped()
                logger.worker(f"Skipping {job.input_path.name}: output exists")
                continue

            status = JobStatus.CALIBRATING if self.auto_calibrate else JobStatus.RUNNING
            self.jobs.update(job_id, lambda j: j.transition(status))
            worker_id = self.spawn(job_id)
            logger.worker(f"Worker {worker_id} started {job.input_path.name} ({status.value})")
            return job_id
        return None

    def fill(self) -> int:
        """Initial dispatch: try to start up to ``max_workers`` jobs."""
        started = 0
        for _ in range(self.max_workers):
            if self.spawn_next_job() is None:
                break
            started += 1
        return started

    # -- message handling -------------------------------------------------

    def handle_message(self, msg: WorkerMessage):
        """Apply one worker message to the arena. Runs on the scheduler thread only."""
        if isinstance(msg, ProgressUpdate):
            snapshot = self.jobs.snapshot()
            self.jobs.update(msg.job_id, lambda j: self._apply_progress(j, msg, snapshot))
        elif isinstance(msg, CalibrationCompleted):
            def finish_calibration(job: Job):
                job.transition(JobStatus.RUNNING)
                job.calibrated_quality = msg.result.quality
                job.vmaf_result = msg.result.measured_score
                job.progress_pct = 0.0
                job.eta_s = None
            self.jobs.update(msg.job_id, finish_calibration)
        elif isinstance(msg, JobCompleted):
            def complete(job: Job):
                job.transition(JobStatus.DONE)
                job.progress_pct = 100.0
                job.size_bytes = msg.output_size
                job.eta_s = None
                if msg.attempts is not None:
                    job.attempts = msg.attempts
            if self._apply_terminal(msg.job_id, complete):
                self.stats.record_done(msg.input_size, msg.output_size, msg.elapsed_s)
        elif isinstance(msg, JobFailed):
            def failed(job: Job):
                job.fail(msg.error)
                job.eta_s = None
                if msg.attempts is not None:
                    job.attempts = msg.attempts
            if self._apply_terminal(msg.job_id, failed):
                self.stats.record_failed()
        elif isinstance(msg, WorkerIdle):
            with self._lock:
                self._active -= 1
            self.spawn_next_job()

        if self.on_message:
            self.on_message(msg)

    def _apply_terminal(self, job_id: int, mutate: Callable[[Job], None]) -> bool:
        try:
            self.jobs.update(job_id, mutate)
        except InvalidTransitionError as e:
            logger.error(e.message)
            return False
        return True

    def _apply_progress(self, job: Job, msg: ProgressUpdate, snapshot: List[Job]):
        job.progress_pct = msg.progress_pct
        job.out_time_s = msg.out_time_s
        job.fps = msg.fps
        job.speed = msg.speed
        job.smoothed_speed = msg.smoothed_speed
        job.bitrate_kbps = msg.bitrate_kbps
        job.size_bytes = msg.size_bytes
        job.started_at = msg.started_at
        job.vmaf_result = msg.vmaf_result
        job.vmaf_target = msg.vmaf_target
        job.vmaf_partial_scores = list(msg.vmaf_partial_scores)
        job.calibration_step = msg.calibration_step
        job.calibration_total_steps = msg.calibration_total_steps
        job.attempts = msg.attempts
        self.eta.update_job_eta(job, snapshot)

    def run(self, poll_interval: float = 0.5,
            on_tick: Optional[Callable[[], None]] = None):
        """Dispatch and process messages until no worker is active."""
        self.fill()
        while self.active_count > 0:
            try:
                msg = self.messages.get(timeout=poll_interval)
            except queue.Empty:
                msg = None
            if msg is not None:
                self.handle_message(msg)
            if on_tick:
                on_tick()

    def shutdown(self, wait: bool = True):
        self._executor.shutdown(wait=wait)

    # -- worker unit ------------------------------------------------------

    def _post(self, msg: WorkerMessage):
        self.messages.put(msg)

    def _run_unit(self, worker_id: int, job: Job):
        """Body of one worker thread. ``job`` is this worker's private copy."""
        def post_progress(j: Job):
            self._post(ProgressUpdate.from_job(j))

        def on_spawn(pid: int):
            self._register_pid(job.id, pid)

        try:
            self._post(JobStarted(job.id, job.status))
            profile = self.profile

            if job.status == JobStatus.CALIBRATING:
                try:
                    result = self.calibrator.calibrate(job, profile, on_progress=post_progress,
                                                       on_spawn=on_spawn,
                                                       should_stop=lambda: self.stopping)
                except CalibrationError as e:
                    logger.error(f"Calibration failed for {job.input_path.name}: {e.message}")
                    self._post(JobFailed(job.id, f"Calibration failed: {e.message}", job.attempts))
                    return
                profile = profile.with_quality(result.quality)
                job.calibrated_quality = result.quality
                job.vmaf_result = result.measured_score
                job.transition(JobStatus.RUNNING)
                self._post(CalibrationCompleted(job.id, result))

            if self.stopping:
                self._post(JobFailed(job.id, "Stopped before encoding", job.attempts))
                return

            outcome = self.engine.encode(job, profile, on_progress=post_progress, on_spawn=on_spawn)
            if outcome.success:
                input_size = job.input_path.stat().st_size if job.input_path.exists() else 0
                logger.worker(f"Worker {worker_id} finished {job.input_path.name}")
                self._post(JobCompleted(job.id, outcome.output_size or 0, input_size,
                                        outcome.elapsed_s, job.attempts))
            else:
                self._post(JobFailed(job.id, outcome.error or "Encoding failed", job.attempts))
        except Exception as e:
            # one job's failure must never take the pool down
            logger.error(f"Worker {worker_id} crashed on {job.input_path.name}: {e}")
            self._post(JobFailed(job.id, f"Unexpected error: {e}", job.attempts))
        finally:
            self._unregister_pid(job.id)
            self._post(WorkerIdle(worker_id))

    # -- process tracking -------------------------------------------------

    def _register_pid(self, job_id: int, pid: int):
        with self._lock:
            self._pids[job_id] = pid
            stopping = self._stopping
        if stopping:
            # spawned after kill_all_running took its snapshot
            self._terminate_late(pid)

    def _unregister_pid(self, job_id: int):
        with self._lock:
            self._pids.pop(job_id, None)

    def running_pids(self) -> List[int]:
        with self._lock:
            return list(self._pids.values())

    @staticmethod
    def _terminate_late(pid: int):
        try:
            psutil.Process(pid).terminate()
        except psutil.NoSuchProcess:
            return
        logger.worker(f"Stopped encoder process {pid} started during shutdown")

    def kill_all_running(self, grace: float = KILL_GRACE_SECONDS) -> int:
        """
        Stop dispatching and terminate every encoder and scorer process,
        escalating to SIGKILL after ``grace`` seconds. Calibrating jobs stop
        before their next window and never go on to the full encode. Killed
        jobs surface as Failed through the normal exit path.
        Returns the number of processes signalled.
        """
        with self._lock:
            self._stopping = True
            pids = list(self._pids.values())

        procs = []
        for pid in pids:
            try:
                proc = psutil.Process(pid)
                proc.terminate()
                procs.append(proc)
            except psutil.NoSuchProcess:
                continue

        if not procs:
            return 0

        _, alive = psutil.wait_procs(procs, timeout=grace)
        for proc in alive:
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                continue
        logger.worker(f"Stopped {len(procs)} encoder process(es)"
                      + (f", {len(alive)} killed" if alive else ""))
        return len(procs)
