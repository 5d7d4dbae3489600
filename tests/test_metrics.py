"""Unit tests for the streaming metrics aggregator."""

from __future__ import annotations

import random
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from load_metrics import DEFAULT_BOUNDS_MICROS, LatencyHistogram, MetricsAggregator, geometric_bounds
from load_outcomes import Outcome


class TestLatencyHistogram:
    def test_empty_snapshot(self) -> None:
        snapshot = LatencyHistogram().snapshot()

        assert snapshot.count == 0
        assert snapshot.percentile(95) == 0.0
        assert snapshot.avg_ms == 0.0
        assert snapshot.min_ms == 0.0
        assert snapshot.max_ms == 0.0

    def test_single_value_is_reported_exactly(self) -> None:
        histogram = LatencyHistogram()
        histogram.observe(9_000_000)

        snapshot = histogram.snapshot()
        for p in (0, 50, 95, 99, 100):
            assert snapshot.percentile(p) == pytest.approx(9000.0)

    def test_percentiles_within_bucket_precision(self) -> None:
        rng = random.Random(3)
        values = [rng.uniform(1_000, 2_000_000) for _ in range(20_000)]
        histogram = LatencyHistogram()
        for value in values:
            histogram.observe(value)

        snapshot = histogram.snapshot()
        ordered = sorted(values)
        for p in (50, 95, 99):
            exact_ms = ordered[int(len(ordered) * p / 100) - 1] / 1000.0
            assert snapshot.percentile(p) == pytest.approx(exact_ms, rel=0.03)
        assert snapshot.avg_ms == pytest.approx(sum(values) / len(values) / 1000.0)
        assert snapshot.max_ms == pytest.approx(max(values) / 1000.0)
        assert snapshot.min_ms == pytest.approx(min(values) / 1000.0)

    def test_memory_does_not_grow_with_samples(self) -> None:
        histogram = LatencyHistogram()
        for i in range(50_000):
            histogram.observe(float(i % 7_000 + 1))

        snapshot = histogram.snapshot()
        assert len(snapshot.counts) == len(DEFAULT_BOUNDS_MICROS) + 1
        assert sum(snapshot.counts) == 50_000

    def test_values_beyond_last_bound_land_in_overflow(self) -> None:
        histogram = LatencyHistogram(bounds=[10, 100])
        histogram.observe(5_000)
        histogram.observe(7_000)

        snapshot = histogram.snapshot()
        assert snapshot.counts == (0, 0, 2)
        assert snapshot.percentile(100) == pytest.approx(7.0)
        assert 5.0 <= snapshot.percentile(50) <= 7.0

    def test_percentile_out_of_range(self) -> None:
        with pytest.raises(ValueError):
            LatencyHistogram().snapshot().percentile(101)

    def test_geometric_bounds_are_increasing(self) -> None:
        bounds = geometric_bounds(1, 1000, 1.5)

        assert bounds[0] == 1
        assert bounds[-1] >= 1000
        assert all(b > a for a, b in zip(bounds, bounds[1:]))


class TestMetricsAggregator:
    def test_record_and_snapshot(self) -> None:
        aggregator = MetricsAggregator()
        aggregator.record(Outcome.SUCCESS, 10_000, scenario="valid-jira")
        aggregator.record(Outcome.CIRCUIT_OPEN, 30_000, scenario="service-unavailable")
        aggregator.record("expected_client_error", 20_000)

        summary = aggregator.snapshot()
        assert summary.total == 3
        assert summary.count(Outcome.SUCCESS) == 1
        assert summary.count(Outcome.EXPECTED_CLIENT_ERROR) == 1
        assert summary.count(Outcome.TRANSPORT_FAILURE) == 0
        assert set(summary.outcomes) == set(Outcome)
        assert summary.rate(Outcome.SUCCESS, Outcome.EXPECTED_CLIENT_ERROR) == pytest.approx(2 / 3)
        assert summary.scenarios["service-unavailable"][Outcome.CIRCUIT_OPEN] == 1
        assert summary.latency.max_ms == pytest.approx(30.0)
        assert summary.latency.avg_ms == pytest.approx(20.0)

    def test_snapshot_is_isolated_from_later_records(self) -> None:
        aggregator = MetricsAggregator()
        aggregator.record(Outcome.SUCCESS, 1_000)
        summary = aggregator.snapshot()

        aggregator.record(Outcome.SUCCESS, 1_000)

        assert summary.total == 1
        assert summary.count(Outcome.SUCCESS) == 1
        with pytest.raises(TypeError):
            summary.outcomes[Outcome.SUCCESS] = 5  # type: ignore[index]

    def test_rejects_negative_duration(self) -> None:
        with pytest.raises(ValueError):
            MetricsAggregator().record(Outcome.SUCCESS, -1)

    def test_rejects_unknown_outcome(self) -> None:
        with pytest.raises(ValueError):
            MetricsAggregator().record("teapot", 1)

    def test_concurrent_records_lose_no_updates(self) -> None:
        aggregator = MetricsAggregator()
        outcomes = list(Outcome)
        per_thread = 2_000
        threads = 16
        barrier = threading.Barrier(threads)

        def hammer(index: int) -> None:
            barrier.wait()
            outcome = outcomes[index % len(outcomes)]
            for i in range(per_thread):
                aggregator.record(outcome, float(i + 1), scenario=f"s{index % 3}")

        with ThreadPoolExecutor(max_workers=threads) as pool:
            list(pool.map(hammer, range(threads)))

        summary = aggregator.snapshot()
        expected_total = threads * per_thread
        assert summary.total == expected_total
        assert sum(summary.outcomes.values()) == expected_total
        assert summary.latency.count == expected_total
        assert sum(sum(c.values()) for c in summary.scenarios.values()) == expected_total
        for index, outcome in enumerate(outcomes):
            writers = len([i for i in range(threads) if i % len(outcomes) == index])
            assert summary.count(outcome) == writers * per_thread

    def test_as_dict_shape(self) -> None:
        aggregator = MetricsAggregator()
        aggregator.record(Outcome.SUCCESS, 2_000, scenario="valid-jira")

        data = aggregator.snapshot().as_dict()

        assert data["total"] == 1
        assert data["outcomes"]["success"] == 1
        assert set(data["latency_ms"]) == {"p50", "p95", "p99", "avg", "min", "max"}
        assert data["latency_ms"]["max"] == pytest.approx(2.0)
        assert data["scenarios"] == {"valid-jira": {"success": 1}}
