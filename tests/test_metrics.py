"""
Unit tests for metrics module.

Tests cover:
- Counter increment (single-threaded and multi-threaded)
- Drop reason tracking for rejected samples
- Histogram recording and statistics
- Snapshots and drop rates
- Global singleton
"""

import logging
import threading
import time

from mesh_predict.metrics import MetricsCollector, get_metrics, reset_metrics


class TestMetricsCollectorBasic:
    """Tests for basic metrics collector functionality."""

    def test_standard_counters_start_at_zero(self):
        """Standard counters exist at 0; unknown counters read as 0."""
        collector = MetricsCollector()

        assert collector.get_counter('samples_in') == 0
        assert collector.get_counter('predictions') == 0
        assert collector.get_counter('unknown_counter') == 0
        assert 'covariance_repairs' in collector.snapshot().counters

    def test_increment_counter(self):
        """Increment by one and by an explicit amount."""
        collector = MetricsCollector()

        collector.increment('samples_in')
        collector.increment('samples_in', 4)

        assert collector.get_counter('samples_in') == 5

    def test_increment_drop_counts_reason_and_total(self):
        """A drop is counted under its reason and in samples_dropped."""
        collector = MetricsCollector()

        collector.increment_drop('out_of_order')
        collector.increment_drop('invalid_sample', 2)

        assert collector.get_drop_count('out_of_order') == 1
        assert collector.get_drop_count('invalid_sample') == 2
        assert collector.get_counter('samples_dropped') == 3

    def test_unknown_drop_reason_logs_warning(self, caplog):
        """Unknown reasons are still counted, with a warning."""
        collector = MetricsCollector()

        with caplog.at_level(logging.WARNING, logger='mesh_predict.metrics.counters'):
            collector.increment_drop('cosmic_ray')

        assert 'cosmic_ray' in caplog.text
        assert collector.get_drop_count('cosmic_ray') == 1
        assert collector.get_counter('samples_dropped') == 1

    def test_all_drop_reasons_initialized(self):
        """Every documented reason appears in a fresh snapshot at 0."""
        snapshot = MetricsCollector().snapshot()

        for reason in ('parse_error', 'invalid_sample', 'out_of_order', 'innovation_gated'):
            assert snapshot.drop_reasons[reason] == 0


class TestHistograms:
    """Tests for histogram functionality."""

    def test_histogram_stats(self):
        """Count, min, max and mean of recorded values."""
        collector = MetricsCollector()

        for value in (0.2, 0.5, 0.8):
            collector.record_histogram('prediction_confidence', value)

        stats = collector.get_histogram_stats('prediction_confidence')
        assert stats['count'] == 3
        assert stats['min'] == 0.2
        assert stats['max'] == 0.8
        assert abs(stats['mean'] - 0.5) < 1e-9

    def test_histogram_empty(self):
        """Unknown histogram has no stats."""
        assert MetricsCollector().get_histogram_stats('nonexistent') is None

    def test_histogram_percentiles(self):
        """Percentiles over 0..99."""
        collector = MetricsCollector()
        for i in range(100):
            collector.record_histogram('particle_ess', float(i))

        stats = collector.get_histogram_stats('particle_ess')
        assert 49 < stats['median'] < 51
        assert 94 < stats['p95'] < 96
        assert 98 < stats['p99'] < 100

    def test_histogram_bounded(self):
        """Histograms are trimmed to prevent unbounded growth."""
        collector = MetricsCollector()
        for i in range(1500):
            collector.record_histogram('kalman_innovation_m', float(i), max_samples=1000)

        assert len(collector.snapshot().histograms['kalman_innovation_m']) <= 1000


class TestSnapshot:
    """Tests for snapshots and drop rates."""

    def test_snapshot_is_independent_copy(self):
        """Later increments do not change an earlier snapshot."""
        collector = MetricsCollector()
        collector.increment('samples_in', 10)
        first = collector.snapshot()

        collector.increment('samples_in', 5)

        assert first.counters['samples_in'] == 10
        assert collector.snapshot().counters['samples_in'] == 15

    def test_drop_rate(self):
        """Drop rate is a percentage of the given total."""
        collector = MetricsCollector()
        collector.increment_drop('out_of_order', 5)
        collector.increment_drop('parse_error', 3)

        assert abs(collector.snapshot().drop_rate(100) - 8.0) < 1e-9
        assert collector.snapshot().drop_rate(0) == 0.0

    def test_drop_rate_for_selected_reasons(self):
        """Restricting to whole-sample reasons leaves filter gating out of the rate."""
        collector = MetricsCollector()
        collector.increment_drop('invalid_sample', 2)
        collector.increment_drop('innovation_gated', 6)
        snapshot = collector.snapshot()

        assert snapshot.total_dropped(MetricsCollector.SAMPLE_DROP_REASONS) == 2
        assert abs(snapshot.drop_rate(10, MetricsCollector.SAMPLE_DROP_REASONS) - 20.0) < 1e-9
        assert snapshot.total_dropped() == 8


class TestThreadSafety:
    """Tests for thread-safe operations."""

    def test_concurrent_increment(self):
        """Concurrent increments are not lost."""
        collector = MetricsCollector()

        def worker():
            for _ in range(1000):
                collector.increment('samples_in')

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert collector.get_counter('samples_in') == 8000

    def test_concurrent_drops(self):
        """Concurrent drops per reason are not lost."""
        collector = MetricsCollector()

        def worker(reason: str):
            for _ in range(200):
                collector.increment_drop(reason)

        threads = [
            threading.Thread(target=worker, args=(reason,))
            for reason in ('out_of_order', 'innovation_gated')
            for _ in range(4)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert collector.get_drop_count('out_of_order') == 800
        assert collector.get_drop_count('innovation_gated') == 800
        assert collector.get_counter('samples_dropped') == 1600


class TestGlobalSingleton:
    """Tests for the global metrics singleton."""

    def test_get_metrics_returns_same_instance(self):
        """Repeated calls share one collector."""
        assert get_metrics() is get_metrics()

    def test_reset_metrics_creates_new_instance(self):
        """reset_metrics() starts from zero."""
        get_metrics().increment('predictions', 3)

        reset_metrics()

        assert get_metrics().get_counter('predictions') == 0


class TestSummary:
    """Tests for uptime and printed summary."""

    def test_uptime_increases(self):
        """Uptime grows with wall time."""
        collector = MetricsCollector()
        first = collector.get_uptime()
        time.sleep(0.05)
        assert collector.get_uptime() > first

    def test_print_summary(self, capsys):
        """Summary prints counters, drop reasons and histograms."""
        collector = MetricsCollector()
        collector.increment('samples_in', 10)
        collector.increment_drop('out_of_order', 2)
        collector.record_histogram('prediction_confidence', 0.5)

        collector.print_summary()

        out = capsys.readouterr().out
        assert 'PREDICTION METRICS' in out
        assert 'samples_in' in out
        assert 'out_of_order' in out
        assert 'prediction_confidence' in out
