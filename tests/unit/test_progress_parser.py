"""
Unit tests for encoder progress parsing and speed smoothing.
"""

import unittest

from transcode_queue.core.modules.processing.progress_parser import (
    ProgressParser,
    SpeedSmoother,
)


class TestProgressParser(unittest.TestCase):

    def setUp(self):
        self.parser = ProgressParser()

    def test_out_time_gives_percentage_of_duration(self):
        self.parser.parse_line("out_time_us=5000000")
        self.assertEqual(self.parser.progress_pct(10.0), 50.0)
        self.assertEqual(self.parser.out_time_s, 5.0)

    def test_progress_end_marks_completion(self):
        self.assertFalse(self.parser.is_complete)
        self.parser.parse_line("progress=continue")
        self.assertFalse(self.parser.is_complete)
        self.parser.parse_line("progress=end")
        self.assertTrue(self.parser.is_complete)

    def test_full_block(self):
        for line in [
            "frame=150",
            "fps=29.97",
            "bitrate=2500.5kbits/s",
            "total_size=2097152",
            "out_time_us=7500000",
            "speed=1.25x",
            "progress=continue",
        ]:
            snap = self.parser.parse_line(line)

        self.assertAlmostEqual(snap.fps, 29.97)
        self.assertAlmostEqual(snap.bitrate_kbps, 2500.5)
        self.assertEqual(snap.total_size, 2097152)
        self.assertAlmostEqual(snap.speed, 1.25)
        self.assertEqual(snap.out_time_us, 7500000)

    def test_malformed_values_keep_last_good_value(self):
        self.parser.parse_line("speed=1.5x")
        self.parser.parse_line("speed=N/A")
        self.parser.parse_line("out_time_us=3000000")
        self.parser.parse_line("out_time_us=3000x")
        self.parser.parse_line("bitrate=N/A")

        self.assertAlmostEqual(self.parser.snapshot.speed, 1.5)
        self.assertEqual(self.parser.snapshot.out_time_us, 3000000)
        self.assertIsNone(self.parser.snapshot.bitrate_kbps)

    def test_partial_line_without_separator_is_ignored(self):
        self.parser.parse_line("out_time_us=2000000")
        snap = self.parser.parse_line("out_ti")
        self.assertEqual(snap.out_time_us, 2000000)

    def test_unknown_keys_are_ignored(self):
        snap = self.parser.parse_line("dup_frames=3")
        self.assertEqual(snap.out_time_us, 0)
        self.assertIsNone(snap.fps)

    def test_percentage_without_duration_is_zero(self):
        self.parser.parse_line("out_time_us=5000000")
        self.assertEqual(self.parser.progress_pct(None), 0.0)
        self.assertEqual(self.parser.progress_pct(0.0), 0.0)
        self.assertEqual(self.parser.progress_pct(-5.0), 0.0)

    def test_percentage_is_clamped(self):
        self.parser.parse_line("out_time_us=12000000")
        self.assertEqual(self.parser.progress_pct(10.0), 100.0)


class TestSpeedSmoother(unittest.TestCase):

    def _smoother(self, times):
        ticks = iter(times)
        return SpeedSmoother(clock=lambda: next(ticks))

    def test_first_sample_taken_as_is(self):
        smoother = self._smoother([0.0])
        self.assertEqual(smoother.update(2.0), 2.0)

    def test_updates_are_debounced(self):
        smoother = self._smoother([0.0, 1.0, 3.0])
        smoother.update(2.0)
        self.assertEqual(smoother.update(4.0), 2.0)
        self.assertAlmostEqual(smoother.update(4.0), 0.1 * 4.0 + 0.9 * 2.0)

    def test_missing_speed_keeps_value(self):
        smoother = self._smoother([0.0])
        smoother.update(1.0)
        self.assertEqual(smoother.update(None), 1.0)

    def test_no_samples_yet(self):
        smoother = self._smoother([])
        self.assertIsNone(smoother.update(None))


if __name__ == '__main__':
    unittest.main()
