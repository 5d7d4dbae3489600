"""Streaming outcome and latency statistics.

MetricsAggregator is the one piece of state shared by every worker. Each
request is folded into fixed-size counters and a bucketed latency histogram,
so memory stays constant no matter how many requests a run issues.
"""

from __future__ import annotations

import math
import threading
from bisect import bisect_left
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple

from load_outcomes import Outcome

PERCENTILES: Tuple[float, ...] = (50.0, 95.0, 99.0)


def geometric_bounds(low: float = 1.0, high: float = 3_600_000_000.0, growth: float = 1.02) -> Tuple[float, ...]:
    """Bucket upper bounds in microseconds, each ``growth`` times the previous one."""

    if low <= 0 or high <= low or growth <= 1:
        raise ValueError("geometric_bounds needs 0 < low < high and growth > 1")
    steps = int(math.ceil(math.log(high / low) / math.log(growth)))
    return tuple(low * growth**i for i in range(steps + 1))


DEFAULT_BOUNDS_MICROS = geometric_bounds()


@dataclass(frozen=True)
class LatencySnapshot:
    """Immutable copy of a latency histogram."""

    bounds: Tuple[float, ...]
    counts: Tuple[int, ...]
    count: int
    sum_micros: float
    min_micros: float
    max_micros: float

    def percentile(self, p: float) -> float:
        """Estimated ``p``-th percentile in milliseconds, 0.0 when empty."""

        if not 0 <= p <= 100:
            raise ValueError(f"percentile must be within [0, 100], got {p}")
        if self.count == 0:
            return 0.0

        target = self.count * (p / 100.0)
        if target <= 0:
            return self.min_micros / 1000.0

        cumulative = 0
        for i, bucket_count in enumerate(self.counts):
            if bucket_count == 0:
                continue
            if cumulative + bucket_count >= target:
                lower = self.bounds[i - 1] if i > 0 else 0.0
                upper = self.bounds[i] if i < len(self.bounds) else self.max_micros
                lower = max(lower, self.min_micros)
                upper = min(upper, self.max_micros)
                ratio = (target - cumulative) / bucket_count
                return (lower + ratio * (upper - lower)) / 1000.0
            cumulative += bucket_count
        return self.max_micros / 1000.0

    @property
    def avg_ms(self) -> float:
        return self.sum_micros / self.count / 1000.0 if self.count else 0.0

    @property
    def min_ms(self) -> float:
        return self.min_micros / 1000.0 if self.count else 0.0

    @property
    def max_ms(self) -> float:
        return self.max_micros / 1000.0 if self.count else 0.0


class LatencyHistogram:
    """Fixed-bucket histogram with exact count, sum, min and max.

    Not synchronised on its own; :class:`MetricsAggregator` serialises access.
    """

    def __init__(self, bounds: Optional[Sequence[float]] = None) -> None:
        self._bounds = tuple(sorted(bounds)) if bounds is not None else DEFAULT_BOUNDS_MICROS
        # one extra overflow bucket past the last bound
        self._counts = [0] * (len(self._bounds) + 1)
        self._count = 0
        self._sum = 0.0
        self._min = math.inf
        self._max = 0.0

    def observe(self, value_micros: float) -> None:
        self._counts[bisect_left(self._bounds, value_micros)] += 1
        self._count += 1
        self._sum += value_micros
        if value_micros < self._min:
            self._min = value_micros
        if value_micros > self._max:
            self._max = value_micros

    @property
    def count(self) -> int:
        return self._count

    def snapshot(self) -> LatencySnapshot:
        return LatencySnapshot(
            bounds=self._bounds,
            counts=tuple(self._counts),
            count=self._count,
            sum_micros=self._sum,
            min_micros=self._min if self._count else 0.0,
            max_micros=self._max,
        )


@dataclass(frozen=True)
class AggregateSummary:
    """Point-in-time view of a run's statistics."""

    outcomes: Mapping[Outcome, int]
    total: int
    latency: LatencySnapshot
    scenarios: Mapping[str, Mapping[Outcome, int]]

    def count(self, outcome: Outcome) -> int:
        return self.outcomes.get(Outcome(outcome), 0)

    def rate(self, *outcomes: Outcome) -> float:
        if not self.total:
            return 0.0
        return sum(self.count(outcome) for outcome in outcomes) / self.total

    def percentile(self, p: float) -> float:
        return self.latency.percentile(p)

    def as_dict(self) -> Dict[str, Any]:
        latency = {f"p{int(p)}": round(self.percentile(p), 3) for p in PERCENTILES}
        latency.update(
            avg=round(self.latency.avg_ms, 3),
            min=round(self.latency.min_ms, 3),
            max=round(self.latency.max_ms, 3),
        )
        return {
            "total": self.total,
            "outcomes": {outcome.value: count for outcome, count in self.outcomes.items()},
            "latency_ms": latency,
            "scenarios": {
                name: {outcome.value: count for outcome, count in counts.items() if count}
                for name, counts in self.scenarios.items()
            },
        }


class MetricsAggregator:
    """Thread-safe accumulator of request outcomes and latencies.

    Every mutation goes through :meth:`record`, which takes one lock for the
    whole update. :meth:`snapshot` copies the counters under the same lock.
    """

    def __init__(self, bounds: Optional[Sequence[float]] = None) -> None:
        self._lock = threading.Lock()
        self._outcomes: Dict[Outcome, int] = {outcome: 0 for outcome in Outcome}
        self._scenarios: Dict[str, Dict[Outcome, int]] = {}
        self._latency = LatencyHistogram(bounds)
        self._total = 0

    def record(self, outcome: Outcome, duration_micros: float, scenario: Optional[str] = None) -> None:
        """Fold one completed attempt into the statistics; ``scenario`` adds a per-scenario count."""

        outcome = Outcome(outcome)
        if duration_micros < 0 or not math.isfinite(duration_micros):
            raise ValueError(f"duration_micros must be finite and non-negative, got {duration_micros}")

        with self._lock:
            self._total += 1
            self._outcomes[outcome] += 1
            self._latency.observe(duration_micros)
            if scenario is not None:
                per_scenario = self._scenarios.get(scenario)
                if per_scenario is None:
                    per_scenario = self._scenarios[scenario] = {o: 0 for o in Outcome}
                per_scenario[outcome] += 1

    @property
    def total(self) -> int:
        with self._lock:
            return self._total

    def snapshot(self) -> AggregateSummary:
        with self._lock:
            outcomes = dict(self._outcomes)
            scenarios = {name: MappingProxyType(dict(counts)) for name, counts in self._scenarios.items()}
            latency = self._latency.snapshot()
            total = self._total
        return AggregateSummary(
            outcomes=MappingProxyType(outcomes),
            total=total,
            latency=latency,
            scenarios=MappingProxyType(scenarios),
        )
