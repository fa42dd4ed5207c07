"""
Integration tests for the worker pool and scheduler.

Workers run on real threads; the encoder is replaced by fakes except where a
real child process is needed to exercise process termination.
"""

import random
import shutil
import sys
import tempfile
import threading
import time
import unittest
from pathlib import Path
from unittest.mock import Mock

from transcode_queue.core.modules.encoder_config import EncodingProfile
from transcode_queue.core.modules.exceptions import (
    CalibrationStepError,
    WorkerPoolFullError,
)
from transcode_queue.core.modules.optimization.quality_calibration import (
    CalibrationResult,
    QualityCalibrator,
)
from transcode_queue.core.modules.processing.job_model import Job, JobQueue, JobStatus
from transcode_queue.core.modules.processing.transcoding_engine import (
    EncodeOutcome,
    TranscodingEngine,
)
from transcode_queue.core.modules.processing.worker_pool import (
    CalibrationCompleted,
    JobCompleted,
    JobFailed,
    JobStarted,
    ProgressUpdate,
    WorkerIdle,
    WorkerPool,
)


class FakeEngine:
    """Encodes by sleeping a little and writing the output file."""

    def __init__(self, fail_names=(), crash_names=(), seed=0):
        self.fail_names = set(fail_names)
        self.crash_names = set(crash_names)
        self.random = random.Random(seed)
        self.lock = threading.Lock()
        self.concurrent = 0
        self.max_concurrent = 0
        self.profiles = {}

    def encode(self, job, profile, on_progress=None, on_spawn=None):
        with self.lock:
            self.concurrent += 1
            self.max_concurrent = max(self.max_concurrent, self.concurrent)
            delay = self.random.uniform(0.0, 0.02)
            self.profiles[job.id] = profile
        job.attempts += 1
        try:
            time.sleep(delay)
            if job.input_path.name in self.crash_names:
                raise RuntimeError("encoder wrapper exploded")
            job.out_time_s = 5.0
            job.progress_pct = 50.0
            job.speed = 2.0
            if on_progress:
                on_progress(job)
            if job.input_path.name in self.fail_names:
                return EncodeOutcome(False, error="Encoding failed with status: 1")
            job.output_path.write_bytes(b"encoded")
            return EncodeOutcome(True, output_size=7, elapsed_s=delay)
        finally:
            with self.lock:
                self.concurrent -= 1


class WorkerPoolTestCase(unittest.TestCase):

    def setUp(self):
        self.temp_dir = Path(tempfile.mkdtemp())
        self.profile = EncodingProfile(name="test", crf=30)
        self.pools = []

    def tearDown(self):
        for pool in self.pools:
            pool.shutdown()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def make_jobs(self, count, overwrite=False):
        jobs = []
        for i in range(count):
            src = self.temp_dir / f"video_{i}.mkv"
            src.write_bytes(b"source" * 10)
            jobs.append(Job(id=i, input_path=src, output_path=self.temp_dir / f"video_{i}.webm",
                            profile_name="test", overwrite=overwrite, duration_s=10.0))
        return JobQueue(jobs)

    def make_pool(self, jobs, max_workers, engine, **kwargs):
        pool = WorkerPool(jobs, self.profile, max_workers, engine, **kwargs)
        self.pools.append(pool)
        return pool

    def statuses(self, jobs):
        return {job.id: job.status for job in jobs.snapshot()}


class TestDispatch(WorkerPoolTestCase):

    def test_all_jobs_complete(self):
        jobs = self.make_jobs(5)
        pool = self.make_pool(jobs, 2, FakeEngine())

        pool.run(poll_interval=0.05)

        self.assertTrue(all(s == JobStatus.DONE for s in self.statuses(jobs).values()))
        self.assertEqual(pool.active_count, 0)
        self.assertEqual(pool.stats.jobs_done, 5)
        self.assertEqual(pool.stats.output_bytes, 35)

    def test_attempt_count_reaches_arena(self):
        jobs = self.make_jobs(2)
        pool = self.make_pool(jobs, 1, FakeEngine(fail_names={"video_1.mkv"}))

        pool.run(poll_interval=0.05)

        for job in jobs.snapshot():
            self.assertEqual(job.attempts, 1)
            self.assertEqual(job.to_dict()["attempts"], 1)

    def test_capacity_never_exceeded(self):
        for seed in range(5):
            for workers in (1, 2, 3):
                jobs = self.make_jobs(8, overwrite=True)
                engine = FakeEngine(seed=seed)
                observed = []
                pool = self.make_pool(jobs, workers, engine,
                                      on_message=lambda msg: observed.append(
                                          jobs.count(JobStatus.RUNNING, JobStatus.CALIBRATING)))

                pool.run(poll_interval=0.05)

                self.assertLessEqual(engine.max_concurrent, workers)
                self.assertTrue(all(n <= workers for n in observed))
                self.assertTrue(jobs.all_terminal())

    def test_existing_output_is_skipped(self):
        jobs = self.make_jobs(3)
        (self.temp_dir / "video_1.webm").write_bytes(b"old")
        engine = FakeEngine()
        pool = self.make_pool(jobs, 2, engine)

        pool.run(poll_interval=0.05)

        statuses = self.statuses(jobs)
        self.assertEqual(statuses[1], JobStatus.SKIPPED)
        self.assertEqual(statuses[0], JobStatus.DONE)
        self.assertEqual(statuses[2], JobStatus.DONE)
        self.assertNotIn(1, engine.profiles)
        self.assertEqual(pool.stats.jobs_skipped, 1)
        self.assertEqual((self.temp_dir / "video_1.webm").read_bytes(), b"old")

    def test_overwrite_encodes_anyway(self):
        jobs = self.make_jobs(1, overwrite=True)
        (self.temp_dir / "video_0.webm").write_bytes(b"old")
        pool = self.make_pool(jobs, 1, FakeEngine())

        pool.run(poll_interval=0.05)

        self.assertEqual(self.statuses(jobs)[0], JobStatus.DONE)

    def test_failure_is_isolated(self):
        jobs = self.make_jobs(4)
        engine = FakeEngine(fail_names={"video_1.mkv"}, crash_names={"video_2.mkv"})
        pool = self.make_pool(jobs, 2, engine)

        pool.run(poll_interval=0.05)

        snapshot = {job.id: job for job in jobs.snapshot()}
        self.assertEqual(snapshot[0].status, JobStatus.DONE)
        self.assertEqual(snapshot[3].status, JobStatus.DONE)
        self.assertEqual(snapshot[1].status, JobStatus.FAILED)
        self.assertIn("status: 1", snapshot[1].last_error)
        self.assertEqual(snapshot[2].status, JobStatus.FAILED)
        self.assertIn("Unexpected error", snapshot[2].last_error)
        self.assertEqual(pool.stats.jobs_failed, 2)

    def test_progress_reaches_arena(self):
        jobs = self.make_jobs(1)
        seen = []
        pool = self.make_pool(jobs, 1, FakeEngine(), on_message=seen.append)

        pool.run(poll_interval=0.05)

        kinds = [type(m) for m in seen]
        self.assertEqual(kinds[0], JobStarted)
        self.assertIn(ProgressUpdate, kinds)
        self.assertEqual(kinds[-2:], [JobCompleted, WorkerIdle])

    def test_spawn_beyond_capacity(self):
        jobs = self.make_jobs(2)
        gate = threading.Event()
        engine = Mock()
        engine.encode.side_effect = lambda *a, **kw: gate.wait(5) and EncodeOutcome(False, "x")
        pool = self.make_pool(jobs, 1, engine)

        try:
            jobs.update(0, lambda j: j.transition(JobStatus.RUNNING))
            pool.spawn(0)
            with self.assertRaises(WorkerPoolFullError):
                pool.spawn(1)
            self.assertFalse(pool.has_capacity())
        finally:
            gate.set()

    def test_invalid_worker_count(self):
        with self.assertRaises(ValueError):
            WorkerPool(self.make_jobs(1), self.profile, 0, FakeEngine())

    def test_auto_calibrate_needs_calibrator(self):
        with self.assertRaises(ValueError):
            WorkerPool(self.make_jobs(1), self.profile, 1, FakeEngine(), auto_calibrate=True)


class TestCalibratedDispatch(WorkerPoolTestCase):

    def test_calibrated_quality_used_for_encode(self):
        jobs = self.make_jobs(2)
        engine = FakeEngine()
        calibrator = Mock()
        calibrator.calibrate.return_value = CalibrationResult(quality=26, measured_score=94.1,
                                                              attempts=2)
        seen = []
        pool = self.make_pool(jobs, 2, engine, calibrator=calibrator, auto_calibrate=True,
                              on_message=seen.append)

        pool.run(poll_interval=0.05)

        for job in jobs.snapshot():
            self.assertEqual(job.status, JobStatus.DONE)
            self.assertEqual(job.calibrated_quality, 26)
            self.assertAlmostEqual(job.vmaf_result, 94.1)
            self.assertEqual(engine.profiles[job.id].crf, 26)
        self.assertEqual(self.profile.crf, 30)
        self.assertEqual(sum(isinstance(m, CalibrationCompleted) for m in seen), 2)

    def test_calibration_failure_fails_job(self):
        jobs = self.make_jobs(2)
        engine = FakeEngine()
        calibrator = Mock()
        calibrator.calibrate.side_effect = [
            CalibrationStepError("Window 1 encode failed"),
            CalibrationResult(quality=28, measured_score=93.5, attempts=1),
        ]
        pool = self.make_pool(jobs, 1, engine, calibrator=calibrator, auto_calibrate=True)

        pool.run(poll_interval=0.05)

        snapshot = {job.id: job for job in jobs.snapshot()}
        self.assertEqual(snapshot[0].status, JobStatus.FAILED)
        self.assertIn("Calibration failed", snapshot[0].last_error)
        self.assertNotIn(0, engine.profiles)
        self.assertEqual(snapshot[1].status, JobStatus.DONE)
        self.assertEqual(engine.profiles[1].crf, 28)


SLEEP_CMD = [sys.executable, "-c", "import time; time.sleep(30)"]


class SleepCommandBuilder:
    def build(self, job, profile):
        return list(SLEEP_CMD)

    def build_window(self, job, profile, window, quality, output_path):
        return list(SLEEP_CMD)


class TestKillAllRunning(WorkerPoolTestCase):

    def test_running_encoders_are_terminated(self):
        jobs = self.make_jobs(2)
        pool = self.make_pool(jobs, 2, TranscodingEngine(SleepCommandBuilder()))

        runner = threading.Thread(target=pool.run, kwargs={'poll_interval': 0.05})
        runner.start()

        deadline = time.time() + 10
        while len(pool.running_pids()) < 2 and time.time() < deadline:
            time.sleep(0.05)

        self.assertEqual(pool.kill_all_running(grace=1.0), 2)
        runner.join(timeout=15)

        self.assertFalse(runner.is_alive())
        for job in jobs.snapshot():
            self.assertEqual(job.status, JobStatus.FAILED)
            self.assertIn("Encoding failed with status", job.last_error)

    def test_calibrating_jobs_are_terminated(self):
        jobs = self.make_jobs(2)
        engine = FakeEngine()
        evaluator = Mock()
        evaluator.is_available.return_value = True
        calibrator = QualityCalibrator(SleepCommandBuilder(), evaluator,
                                       height_prober=lambda path: 1080)
        pool = self.make_pool(jobs, 1, engine, calibrator=calibrator, auto_calibrate=True)

        runner = threading.Thread(target=pool.run, kwargs={'poll_interval': 0.05})
        runner.start()

        deadline = time.time() + 10
        while not pool.running_pids() and time.time() < deadline:
            time.sleep(0.05)

        self.assertEqual(pool.kill_all_running(grace=1.0), 1)
        runner.join(timeout=15)

        self.assertFalse(runner.is_alive())
        snapshot = {job.id: job for job in jobs.snapshot()}
        self.assertEqual(snapshot[0].status, JobStatus.FAILED)
        self.assertIn("Calibration failed", snapshot[0].last_error)
        # no full encode after a stopped calibration, and nothing new dispatched
        self.assertEqual(engine.profiles, {})
        self.assertEqual(snapshot[1].status, JobStatus.PENDING)
        evaluator.evaluate.assert_not_called()

    def test_nothing_running(self):
        pool = self.make_pool(self.make_jobs(1), 1, FakeEngine())
        self.assertEqual(pool.kill_all_running(), 0)


if __name__ == '__main__':
    unittest.main()
