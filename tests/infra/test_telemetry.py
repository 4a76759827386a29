from __future__ import annotations

import unittest

from tala.observability.telemetry import (
    MAX_LATENCY_SAMPLES,
    counter,
    get_counter,
    get_latency_stats,
    reset_counters,
    reset_latencies,
    time_block,
)


class TelemetryTests(unittest.TestCase):
    def setUp(self):
        reset_latencies()
        reset_counters()

    def test_time_block_appends_ms_suffix(self):
        metric_name = "pipeline.extractor.latency"

        with time_block(metric_name):
            pass

        stats = get_latency_stats(metric_name)
        self.assertEqual(stats["count"], 1)
        self.assertEqual(get_latency_stats("pipeline.extractor.latency_ms")["count"], 1)
        self.assertGreaterEqual(stats["p95"], 0.0)

    def test_time_block_respects_existing_suffix(self):
        metric_name = "pipeline.total_ms"

        with time_block(metric_name):
            pass

        stats = get_latency_stats(metric_name)
        self.assertEqual(stats["count"], 1)

    def test_time_block_records_on_error(self):
        with self.assertRaises(RuntimeError):
            with time_block("projector.project_ms"):
                raise RuntimeError("boom")

        self.assertEqual(get_latency_stats("projector.project_ms")["count"], 1)

    def test_latency_samples_are_bounded(self):
        for _ in range(MAX_LATENCY_SAMPLES + 5):
            with time_block("chat.turn_ms"):
                pass

        self.assertEqual(get_latency_stats("chat.turn_ms")["count"], MAX_LATENCY_SAMPLES)

    def test_empty_stats(self):
        stats = get_latency_stats("never.recorded_ms")
        self.assertEqual(stats["count"], 0)
        self.assertEqual(stats["p95"], 0.0)

    def test_counter_increments(self):
        before = counter("test.counter", 0)
        counter("test.counter")
        after = counter("test.counter", 0)
        self.assertEqual(after, before + 1)
        self.assertEqual(get_counter("test.counter"), after)

    def test_reset_counters(self):
        counter("test.counter", 3)
        reset_counters()
        self.assertEqual(get_counter("test.counter"), 0)


if __name__ == "__main__":
    unittest.main()
