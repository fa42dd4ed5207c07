"""
Unit tests for the tagged console logger.
"""

import unittest
from unittest.mock import patch

from tqdm import tqdm

from transcode_queue.utils import logging as tq_logging
from transcode_queue.utils.logging import (
    format_duration,
    format_size,
    get_logger,
    set_debug_mode,
    set_log_level,
    set_quiet_mode,
)


class TestLoggerFiltering(unittest.TestCase):

    def setUp(self):
        self.logger = get_logger("worker_pool")
        set_debug_mode(False)
        set_quiet_mode(False)
        set_log_level("INFO")
        patcher = patch.object(tqdm, 'write')
        self.write = patcher.start()
        self.addCleanup(patcher.stop)

    def tearDown(self):
        set_debug_mode(False)
        set_quiet_mode(False)
        set_log_level("INFO")

    def lines(self):
        return [c.args[0] for c in self.write.call_args_list]

    def test_default_shows_info(self):
        self.logger.info("started")
        self.logger.worker("Worker 1 started a.mkv")
        self.assertEqual(self.lines(), ["[INFO] [worker_pool] started",
                                        "[WORKER] Worker 1 started a.mkv"])

    def test_quiet_hides_info_only(self):
        set_quiet_mode(True)
        self.logger.info("hidden")
        self.logger.calibration("hidden")
        self.logger.warn("shown")
        self.logger.error("shown too")
        self.assertEqual(self.lines(), ["[WARN] [worker_pool] shown",
                                        "[ERROR] [worker_pool] shown too"])

    def test_log_level_threshold(self):
        set_log_level("error")
        self.logger.warn("hidden")
        self.logger.error("shown")
        self.assertEqual(self.lines(), ["[ERROR] [worker_pool] shown"])

    def test_debug_needs_mode_and_level(self):
        self.logger.debug("hidden")
        set_debug_mode(True)
        self.logger.debug("still hidden at INFO")
        set_log_level("DEBUG")
        self.logger.debug("shown")
        self.logger.cmd("ffmpeg -i a.mkv")
        self.assertEqual(self.lines(), ["[DEBUG] [worker_pool] shown", "[CMD] ffmpeg -i a.mkv"])
        self.assertTrue(tq_logging.get_debug_mode())


class TestFormatting(unittest.TestCase):

    def test_format_duration(self):
        self.assertEqual(format_duration(42), "42.0s")
        self.assertEqual(format_duration(90), "1.5m")
        self.assertEqual(format_duration(3 * 3600 + 20 * 60), "3h 20m")

    def test_format_size(self):
        self.assertEqual(format_size(512), "512.0B")
        self.assertEqual(format_size(3 * 1024 * 1024), "3.0MB")


if __name__ == '__main__':
    unittest.main()
