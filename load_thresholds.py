"""Pass/fail thresholds evaluated over a run's final summary.

Thresholds are written as ``"<metric> <op> <number>"``, for example
``"p95 < 8000"`` or ``"ok_rate > 0.5"``. Latency metrics are in milliseconds.
"""

from __future__ import annotations

import logging
import operator
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping

from load_errors import ConfigurationError
from load_metrics import AggregateSummary
from load_outcomes import Outcome

LOGGER = logging.getLogger("resilience_load.thresholds")

_EXPRESSION = re.compile(
    r"^\s*(?P<metric>[a-z_]+|p\(\s*\d+(?:\.\d+)?\s*\)|p\d+(?:\.\d+)?)\s*"
    r"(?P<op><=|>=|==|!=|<|>)\s*"
    r"(?P<value>-?\d+(?:\.\d+)?(?:[eE][-+]?\d+)?)\s*$"
)

_OPERATORS: Dict[str, Callable[[float, float], bool]] = {
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "==": operator.eq,
    "!=": operator.ne,
}

_OK_OUTCOMES = (Outcome.SUCCESS, Outcome.EXPECTED_CLIENT_ERROR)
_ERROR_OUTCOMES = (Outcome.UNEXPECTED_ERROR, Outcome.TRANSPORT_FAILURE)

DEFAULT_THRESHOLDS: Dict[str, str] = {
    "latency": "p95 < 8000",
    "verification_success": "ok_rate > 0.5",
    "errors": "error_count < 1000",
}


@dataclass(frozen=True)
class ThresholdSpec:
    name: str
    predicate: Callable[[AggregateSummary], bool]
    required: bool = True
    expression: str = ""


@dataclass(frozen=True)
class Verdict:
    passed: bool
    results: Mapping[str, bool] = field(default_factory=dict)

    def failed(self) -> List[str]:
        return [name for name, ok in self.results.items() if not ok]

    def as_dict(self) -> Dict[str, Any]:
        return {"passed": self.passed, "thresholds": dict(self.results)}


def _metric_reader(metric: str) -> Callable[[AggregateSummary], float]:
    """Return a function extracting ``metric`` from a summary."""

    percentile = re.match(r"^p\(?\s*(\d+(?:\.\d+)?)\s*\)?$", metric)
    if percentile:
        p = float(percentile.group(1))
        if not 0 <= p <= 100:
            raise ConfigurationError(f"Percentile out of range: {metric!r}")
        return lambda summary: summary.percentile(p)

    if metric == "avg":
        return lambda summary: summary.latency.avg_ms
    if metric == "min":
        return lambda summary: summary.latency.min_ms
    if metric == "max":
        return lambda summary: summary.latency.max_ms
    if metric in ("count", "total"):
        return lambda summary: float(summary.total)
    if metric == "ok_rate":
        return lambda summary: summary.rate(*_OK_OUTCOMES)
    if metric == "failure_rate":
        failing = tuple(outcome for outcome in Outcome if outcome not in _OK_OUTCOMES)
        return lambda summary: summary.rate(*failing)
    if metric == "error_count":
        return lambda summary: float(sum(summary.count(outcome) for outcome in _ERROR_OUTCOMES))

    for suffix in ("_count", "_rate"):
        if metric.endswith(suffix):
            try:
                outcome = Outcome(metric[: -len(suffix)])
            except ValueError:
                break
            if suffix == "_count":
                return lambda summary: float(summary.count(outcome))
            return lambda summary: summary.rate(outcome)

    raise ConfigurationError(f"Unknown threshold metric: {metric!r}")


def parse_threshold(name: str, expression: str, required: bool = True) -> ThresholdSpec:
    """Build a :class:`ThresholdSpec` from an expression such as ``"p95 < 8000"``."""

    if not name:
        raise ConfigurationError("Threshold name cannot be empty")
    if not isinstance(required, bool):
        raise ConfigurationError(f"Threshold {name!r} required flag must be true or false, got {required!r}")
    match = _EXPRESSION.match(expression or "")
    if not match:
        raise ConfigurationError(f"Malformed threshold expression for {name!r}: {expression!r}")

    read = _metric_reader(match.group("metric").replace(" ", ""))
    compare = _OPERATORS[match.group("op")]
    limit = float(match.group("value"))

    def predicate(summary: AggregateSummary) -> bool:
        return compare(read(summary), limit)

    return ThresholdSpec(name=name, predicate=predicate, required=required, expression=expression.strip())


def thresholds_from_config(raw: Any) -> List[ThresholdSpec]:
    """Parse thresholds from a list of dicts or a ``name -> expression`` mapping."""

    if raw is None:
        return []

    entries: Iterable[Dict[str, Any]]
    if isinstance(raw, dict):
        entries = [
            dict(value, name=name) if isinstance(value, dict) else {"name": name, "expression": value}
            for name, value in raw.items()
        ]
    elif isinstance(raw, (list, tuple)):
        entries = raw
    else:
        raise ConfigurationError("thresholds must be a list or a mapping")

    specs: List[ThresholdSpec] = []
    seen = set()
    for entry in entries:
        if not isinstance(entry, dict) or "name" not in entry or "expression" not in entry:
            raise ConfigurationError(f"Threshold needs 'name' and 'expression': {entry!r}")
        name = str(entry["name"])
        if name in seen:
            raise ConfigurationError(f"Duplicate threshold name: {name!r}")
        seen.add(name)
        specs.append(parse_threshold(name, str(entry["expression"]), entry.get("required", True)))
    return specs


def default_thresholds() -> List[ThresholdSpec]:
    return [parse_threshold(name, expression) for name, expression in DEFAULT_THRESHOLDS.items()]


def evaluate(summary: AggregateSummary, thresholds: Iterable[ThresholdSpec]) -> Verdict:
    """Evaluate every threshold; only required ones decide ``passed``."""

    results: Dict[str, bool] = {}
    passed = True
    for spec in thresholds:
        ok = bool(spec.predicate(summary))
        results[spec.name] = ok
        if spec.required and not ok:
            passed = False
    return Verdict(passed=passed, results=results)


def log_verdict(verdict: Verdict, thresholds: Iterable[ThresholdSpec]) -> None:
    for spec in thresholds:
        ok = verdict.results.get(spec.name)
        if ok is None:
            continue
        level = logging.INFO if ok or not spec.required else logging.WARNING
        LOGGER.log(
            level,
            "threshold %s (%s)%s: %s",
            spec.name,
            spec.expression,
            "" if spec.required else " [informational]",
            "PASS" if ok else "FAIL",
        )
    LOGGER.info("verdict: %s", "PASSED" if verdict.passed else "FAILED")
