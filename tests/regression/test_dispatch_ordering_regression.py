"""
Regression tests for scheduler dispatch ordering.

A completion message must never start a new job by itself. Only the
WorkerIdle that follows it frees a slot, and each WorkerIdle starts at most
one job. Otherwise two completions handled back to back could both see a
free slot and put more than ``max_workers`` jobs in flight.
"""

import unittest
from pathlib import Path
from unittest.mock import MagicMock, Mock

from transcode_queue.core.modules.encoder_config import EncodingProfile
from transcode_queue.core.modules.processing.job_model import Job, JobQueue, JobStatus
from transcode_queue.core.modules.processing.worker_pool import (
    JobCompleted,
    JobFailed,
    WorkerIdle,
    WorkerPool,
)


class TestDispatchOrderingRegression(unittest.TestCase):

    def setUp(self):
        jobs = [Job(id=i, input_path=Path(f"/nonexistent/in_{i}.mkv"),
                    output_path=Path(f"/nonexistent/out_{i}.webm"), profile_name="test")
                for i in range(6)]
        self.jobs = JobQueue(jobs)
        self.pool = WorkerPool(self.jobs, EncodingProfile(name="test"), 2, Mock())
        # capture dispatches instead of running workers
        self.pool._executor.shutdown()
        self.pool._executor = MagicMock()

    def dispatched_ids(self):
        return [c.args[2].id for c in self.pool._executor.submit.call_args_list]

    def in_flight(self):
        return self.jobs.count(JobStatus.RUNNING, JobStatus.CALIBRATING)

    def test_initial_fill_respects_capacity(self):
        self.assertEqual(self.pool.fill(), 2)
        self.assertEqual(self.dispatched_ids(), [0, 1])
        self.assertEqual(self.pool.active_count, 2)

    def test_back_to_back_completions_do_not_dispatch(self):
        self.pool.fill()

        self.pool.handle_message(JobCompleted(0))
        self.pool.handle_message(JobFailed(1, "Encoding failed with status: 1"))

        self.assertEqual(self.dispatched_ids(), [0, 1])
        self.assertEqual(self.pool.active_count, 2)
        self.assertEqual(self.in_flight(), 0)

    def test_each_idle_dispatches_one_job(self):
        self.pool.fill()
        self.pool.handle_message(JobCompleted(0))
        self.pool.handle_message(JobCompleted(1))

        self.pool.handle_message(WorkerIdle(1))
        self.assertEqual(self.dispatched_ids(), [0, 1, 2])
        self.assertEqual(self.pool.active_count, 2)

        self.pool.handle_message(WorkerIdle(2))
        self.assertEqual(self.dispatched_ids(), [0, 1, 2, 3])
        self.assertLessEqual(self.in_flight(), 2)

    def test_idle_with_empty_queue(self):
        self.pool.fill()
        for job_id in range(2, 6):
            self.jobs.update(job_id, lambda j: j.transition(JobStatus.SKIPPED))

        self.pool.handle_message(JobCompleted(0))
        self.pool.handle_message(WorkerIdle(1))

        self.assertEqual(self.dispatched_ids(), [0, 1])
        self.assertEqual(self.pool.active_count, 1)

    def test_late_terminal_message_is_ignored(self):
        self.pool.fill()
        self.pool.handle_message(JobCompleted(0))

        self.pool.handle_message(JobFailed(0, "late"))

        self.assertEqual(self.jobs.get(0).status, JobStatus.DONE)
        self.assertEqual(self.pool.stats.jobs_done, 1)
        self.assertEqual(self.pool.stats.jobs_failed, 0)

    def test_late_completion_not_counted(self):
        self.pool.fill()
        self.pool.handle_message(JobFailed(1, "Encoding failed with status: 1", attempts=1))

        self.pool.handle_message(JobCompleted(1, output_size=500, input_size=1000))

        self.assertEqual(self.jobs.get(1).status, JobStatus.FAILED)
        self.assertEqual(self.jobs.get(1).attempts, 1)
        self.assertEqual(self.pool.stats.jobs_done, 0)
        self.assertEqual(self.pool.stats.output_bytes, 0)
        self.assertEqual(self.pool.stats.jobs_failed, 1)


if __name__ == '__main__':
    unittest.main()
