from __future__ import annotations

import unittest

from orderq.observability.telemetry import (
    counter,
    get_counter,
    get_p95,
    reset_counters,
    reset_latencies,
    snapshot_counters,
    time_block,
)


class TelemetryTests(unittest.TestCase):
    def setUp(self):
        reset_counters()
        reset_latencies()

    def test_time_block_appends_ms_suffix(self):
        metric_name = "orders.sync"

        with time_block(metric_name):
            pass

        self.assertGreaterEqual(get_p95(metric_name), 0.0)
        self.assertEqual(get_p95("orders.sync"), get_p95("orders.sync_ms"))

    def test_p95_without_samples(self):
        self.assertEqual(get_p95("orders.never_timed"), 0.0)

    def test_counter_increments(self):
        before = counter("test.counter", 0)
        counter("test.counter")
        after = counter("test.counter", 0)
        self.assertEqual(after, before + 1)

    def test_snapshot_filters_by_prefix(self):
        counter("orders.sync.skipped", 2)
        counter("orders.sync.errored")
        counter("database.lock_retry_exhausted")

        self.assertEqual(
            snapshot_counters("orders.sync."),
            {"orders.sync.skipped": 2, "orders.sync.errored": 1},
        )
        self.assertEqual(get_counter("database.lock_retry_exhausted"), 1)


if __name__ == "__main__":
    unittest.main()
