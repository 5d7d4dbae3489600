"""Load and resilience verification harness core module.

This module drives a target HTTP endpoint with a pool of asynchronous workers
whose size follows a staged ramp profile. Every response is classified
(success, expected client error, circuit open, bulkhead full, other
unavailability, unexpected status, transport failure), folded into streaming
statistics, and judged against pass/fail thresholds at the end of the run.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import random
import signal
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Sequence, Set, Tuple

import aiohttp
import yaml

from load_errors import ConfigurationError, TransportError
from load_metrics import PERCENTILES, AggregateSummary, MetricsAggregator
from load_outcomes import (
    DEFAULT_CIRCUIT_TOKENS,
    DEFAULT_CLIENT_ERROR_STATUSES,
    DEFAULT_POOL_TOKENS,
    DEFAULT_SUCCESS_STATUSES,
    DEFAULT_UNAVAILABLE_STATUSES,
    Outcome,
    OutcomeClassifier,
    parse_status_set,
)
from load_scenarios import Scenario, ScenarioSelector, scenario_from_dict
from load_schedule import ConcurrencyScheduler, parse_duration
from load_thresholds import ThresholdSpec, Verdict, default_thresholds, evaluate, log_verdict, thresholds_from_config

LOGGER = logging.getLogger("resilience_load")

DEFAULT_PATH = "/api/project-configs"


@dataclass
class LoadConfig:
    """Configuration holder for a load run."""

    target: str
    stages: ConcurrencyScheduler
    scenarios: Sequence[Scenario]
    path: str = DEFAULT_PATH
    method: str = "POST"
    label: str = "verification"
    token: Optional[str] = None
    request_timeout: float = 10.0
    abort_timeout: float = 30.0
    think_time: float = 0.1
    poll_interval: float = 0.25
    summary_interval: float = 10.0
    success_statuses: FrozenSet[int] = DEFAULT_SUCCESS_STATUSES
    client_error_statuses: FrozenSet[int] = DEFAULT_CLIENT_ERROR_STATUSES
    unavailable_statuses: FrozenSet[int] = DEFAULT_UNAVAILABLE_STATUSES
    circuit_tokens: Tuple[str, ...] = DEFAULT_CIRCUIT_TOKENS
    pool_tokens: Tuple[str, ...] = DEFAULT_POOL_TOKENS
    thresholds: Sequence[ThresholdSpec] = field(default_factory=default_thresholds)
    headers: Dict[str, str] = field(default_factory=dict)
    seed: Optional[int] = None

    def __post_init__(self) -> None:
        if not isinstance(self.stages, ConcurrencyScheduler):
            self.stages = ConcurrencyScheduler(self.stages)
        self.scenarios = tuple(self.scenarios)
        if not self.scenarios:
            raise ConfigurationError("scenarios must contain at least one scenario")

        for key in ("target", "path", "method", "label"):
            value = getattr(self, key)
            if not isinstance(value, str) or not value:
                raise ConfigurationError(f"{key} must be a non-empty string, got {value!r}")
        if self.token is not None and not isinstance(self.token, str):
            raise ConfigurationError("token must be a string")
        if not isinstance(self.headers, dict) or not all(
            isinstance(k, str) and isinstance(v, str) for k, v in self.headers.items()
        ):
            raise ConfigurationError("headers must map header names to string values")

        if self.request_timeout <= 0:
            raise ConfigurationError("request_timeout must be a positive number")
        if self.abort_timeout <= self.request_timeout:
            raise ConfigurationError("abort_timeout must be greater than request_timeout")
        if self.think_time < 0:
            raise ConfigurationError("think_time cannot be negative")
        if self.poll_interval <= 0:
            raise ConfigurationError("poll_interval must be a positive number")
        if self.summary_interval < 0:
            raise ConfigurationError("summary_interval cannot be negative")

        self.classifier = OutcomeClassifier(
            success_statuses=self.success_statuses,
            client_error_statuses=self.client_error_statuses,
            unavailable_statuses=self.unavailable_statuses,
            circuit_tokens=self.circuit_tokens,
            pool_tokens=self.pool_tokens,
        )
        self.thresholds = tuple(self.thresholds)

        # Expand the target into a full base URL if only host:port provided
        if self.target.startswith("http://") or self.target.startswith("https://"):
            base = self.target
        else:
            base = f"http://{self.target}"
        self.base_url = base.rstrip("/")
        self.url = f"{self.base_url}/{self.path.lstrip('/')}"

        # Default headers that callers can override/extend
        merged_headers = {
            "User-Agent": f"resilience-load-{self.label}",
            "X-Traffic-Type": self.label,
            "Content-Type": "application/json",
        }
        if self.token:
            merged_headers["Authorization"] = f"Bearer {self.token}"
        merged_headers.update(self.headers)
        self.headers = merged_headers

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "LoadConfig":
        """Build a config object from a plain dict as loaded from YAML/JSON."""

        data = dict(raw)
        for key in ("target", "stages", "scenarios"):
            if key not in data:
                raise ConfigurationError(f"Missing required configuration key {key!r}")
        if not isinstance(data["stages"], list) or not isinstance(data["scenarios"], list):
            raise ConfigurationError("stages and scenarios must be lists")
        if any(not isinstance(item, dict) for item in data["scenarios"]):
            raise ConfigurationError("every scenario must be a mapping")
        data["stages"] = ConcurrencyScheduler.from_config(data["stages"])
        data["scenarios"] = [scenario_from_dict(item) for item in data["scenarios"]]

        for key in ("request_timeout", "abort_timeout", "think_time", "poll_interval", "summary_interval"):
            if key in data:
                data[key] = parse_duration(data[key])
        for key in ("success_statuses", "client_error_statuses", "unavailable_statuses"):
            if key in data:
                data[key] = parse_status_set(data[key])

        signatures = data.pop("signatures", None) or {}
        if not isinstance(signatures, dict):
            raise ConfigurationError("signatures must map an outcome to a list of body tokens")
        for outcome_name, tokens in signatures.items():
            if outcome_name == Outcome.CIRCUIT_OPEN.value:
                data["circuit_tokens"] = _as_tokens(tokens)
            elif outcome_name == Outcome.RESOURCE_POOL_EXHAUSTED.value:
                data["pool_tokens"] = _as_tokens(tokens)
            else:
                raise ConfigurationError(f"Signature tokens are not supported for outcome {outcome_name!r}")

        if "thresholds" in data:
            data["thresholds"] = thresholds_from_config(data["thresholds"])

        try:
            return cls(**data)
        except TypeError as exc:
            raise ConfigurationError(f"Invalid configuration: {exc}") from None


def _as_tokens(raw: Any) -> Tuple[str, ...]:
    if isinstance(raw, str):
        return (raw,)
    return tuple(str(token) for token in raw)


@dataclass(frozen=True)
class HttpResponse:
    status: int
    body: str


@dataclass(frozen=True)
class RequestRecord:
    scenario: str
    started_at: float
    duration_micros: int
    outcome: Outcome


class HttpTransport:
    """aiohttp client session shared by every worker of a run."""

    def __init__(self, limit: int = 0) -> None:
        # 0 means no connection pool limit
        self.limit = max(limit, 0)
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> "HttpTransport":
        connector = aiohttp.TCPConnector(limit=self.limit)
        self._session = aiohttp.ClientSession(connector=connector)
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def send(
        self,
        method: str,
        url: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        body: Optional[Any] = None,
        timeout: float,
    ) -> HttpResponse:
        """Send the HTTP request and return its status and body text."""

        assert self._session is not None, "Transport must be opened before sending"
        request_timeout = aiohttp.ClientTimeout(total=timeout)
        try:
            async with self._session.request(
                method, url, headers=headers, json=body, timeout=request_timeout
            ) as response:
                raw = await response.read()
                return HttpResponse(response.status, raw.decode("utf-8", errors="replace"))
        except asyncio.TimeoutError as exc:
            raise TransportError(TransportError.TIMEOUT, f"no response within {timeout:.1f}s") from exc
        except (aiohttp.ClientPayloadError, aiohttp.ClientResponseError) as exc:
            raise TransportError(TransportError.PROTOCOL, exc.__class__.__name__) from exc
        except aiohttp.ClientConnectionError as exc:
            raise TransportError(TransportError.CONNECTION, exc.__class__.__name__) from exc
        except aiohttp.ClientError as exc:
            raise TransportError(TransportError.PROTOCOL, exc.__class__.__name__) from exc
        except OSError as exc:
            # older aiohttp lets socket resets through unwrapped
            raise TransportError(TransportError.CONNECTION, exc.__class__.__name__) from exc


@dataclass(frozen=True)
class RunReport:
    summary: AggregateSummary
    verdict: Verdict
    elapsed_seconds: float
    stopped_early: bool = False

    def as_dict(self) -> Dict[str, Any]:
        return {
            "summary": self.summary.as_dict(),
            "verdict": self.verdict.as_dict(),
            "elapsed_seconds": round(self.elapsed_seconds, 3),
            "stopped_early": self.stopped_early,
        }


class LoadRunner:
    """Asynchronous worker pool following a ramp profile.

    A runner executes a single run; create a new one for the next run.
    """

    def __init__(
        self,
        config: LoadConfig,
        *,
        transport: Optional[Any] = None,
        aggregator: Optional[MetricsAggregator] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.config = config
        self.scheduler = config.stages
        self.classifier = config.classifier
        self.selector = ScenarioSelector(config.scenarios, rng if rng is not None else random.Random(config.seed))
        self.aggregator = aggregator if aggregator is not None else MetricsAggregator()
        self._transport = transport
        self._stop_event = asyncio.Event()
        self._stopped_early = False
        self._workers: List[Tuple[asyncio.Task, asyncio.Event]] = []
        self._retiring: Set[asyncio.Task] = set()
        self._spawned = 0

    @property
    def active_workers(self) -> int:
        return len(self._workers)

    def stop(self) -> None:
        """Signal every worker to stop; takes effect before their next request."""

        if not self._stop_event.is_set():
            LOGGER.info("Stop requested")
            self._stopped_early = True
            self._stop_event.set()

    async def run(self, *, install_signal_handlers: bool = False) -> RunReport:
        """Run until the ramp profile ends or :meth:`stop` is called."""

        if self._transport is not None:
            return await self._run(self._transport, install_signal_handlers)
        async with HttpTransport() as transport:
            return await self._run(transport, install_signal_handlers)

    async def _run(self, transport: Any, install_signal_handlers: bool) -> RunReport:
        loop = asyncio.get_running_loop()
        if install_signal_handlers:
            _install_signal_handlers(loop, self.stop)

        LOGGER.info(
            "Starting %s load against %s: %d stages over %.1fs, peak %d workers",
            self.config.label,
            self.config.url,
            len(self.scheduler.stages),
            self.scheduler.total_duration,
            self.scheduler.peak,
        )

        start = time.monotonic()
        try:
            await self._control_loop(transport, start)
        finally:
            self._stop_event.set()
            try:
                await self._drain()
            finally:
                if install_signal_handlers:
                    _remove_signal_handlers(loop)
        elapsed = time.monotonic() - start

        self.log_summary(elapsed, final=True)
        summary = self.aggregator.snapshot()
        verdict = evaluate(summary, self.config.thresholds)
        log_verdict(verdict, self.config.thresholds)
        return RunReport(summary=summary, verdict=verdict, elapsed_seconds=elapsed, stopped_early=self._stopped_early)

    async def _control_loop(self, transport: Any, start: float) -> None:
        total = self.scheduler.total_duration
        interval = self.config.summary_interval
        next_summary = start + interval if interval else None

        while not self._stop_event.is_set():
            now = time.monotonic()
            elapsed = now - start
            if elapsed >= total:
                LOGGER.info("Ramp profile complete after %.2fs - stopping.", elapsed)
                break

            self._resize(self.scheduler.target_at(elapsed), transport)

            if next_summary is not None and now >= next_summary:
                self.log_summary(elapsed)
                next_summary = now + interval

            await _wait_for(self._stop_event, min(self.config.poll_interval, total - elapsed))

    def _resize(self, target: int, transport: Any) -> None:
        """Spawn or retire workers so the active count matches ``target``."""

        self._reap()
        active = len(self._workers)
        if target > active:
            for _ in range(target - active):
                retire = asyncio.Event()
                self._spawned += 1
                task = asyncio.create_task(
                    self._worker(retire, transport), name=f"load-worker-{self._spawned}"
                )
                self._workers.append((task, retire))
        elif target < active:
            for _ in range(active - target):
                task, retire = self._workers.pop()
                retire.set()
                self._retiring.add(task)
        else:
            return
        LOGGER.debug("workers %d -> %d", active, target)

    def _reap(self) -> None:
        """Forget finished workers, re-raising any crash."""

        for task in [task for task in self._retiring if task.done()]:
            self._retiring.discard(task)
            task.result()
        finished = [entry for entry in self._workers if entry[0].done()]
        for entry in finished:
            self._workers.remove(entry)
        for task, _ in finished:
            task.result()
            raise RuntimeError(f"{task.get_name()} exited while still active")

    async def _drain(self) -> None:
        tasks = [task for task, _ in self._workers] + list(self._retiring)
        self._workers.clear()
        self._retiring.clear()
        if not tasks:
            return

        done, pending = await asyncio.wait(tasks, timeout=self.config.abort_timeout)
        if pending:
            LOGGER.warning(
                "%d workers still in flight after %.1fs abort timeout; cancelling",
                len(pending),
                self.config.abort_timeout,
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        for task in done:
            task.result()

    async def _worker(self, retire: asyncio.Event, transport: Any) -> None:
        while not (self._stop_event.is_set() or retire.is_set()):
            await self.execute_one(self.selector.draw(), transport)
            if self.config.think_time > 0:
                await _wait_for(self._stop_event, self.config.think_time)
            else:
                await asyncio.sleep(0)

    async def execute_one(self, scenario: Scenario, transport: Any) -> RequestRecord:
        """Issue one request for ``scenario``, classify it and record it."""

        started_at = time.time()
        t0 = time.perf_counter()
        status: Optional[int] = None
        body = ""
        error: Optional[TransportError] = None
        try:
            response = await transport.send(
                self.config.method,
                self.config.url,
                headers=self.config.headers,
                body=scenario.build_payload(),
                timeout=self.config.request_timeout,
            )
        except TransportError as exc:
            error = exc
        else:
            status, body = response.status, response.body
        duration_micros = int((time.perf_counter() - t0) * 1_000_000)

        outcome = self.classifier.classify(status, body, error)
        self.aggregator.record(outcome, duration_micros, scenario=scenario.name)
        LOGGER.debug(
            "scenario=%s status=%s outcome=%s duration=%.1fms error=%s",
            scenario.name,
            status,
            outcome.value,
            duration_micros / 1000.0,
            error,
        )
        return RequestRecord(scenario.name, started_at, duration_micros, outcome)

    def log_summary(self, elapsed: float, *, final: bool = False) -> None:
        """Emit a summary of collected metrics so far."""

        summary = self.aggregator.snapshot()
        parts = [f"total={summary.total}", f"workers={len(self._workers)}"]
        parts.extend(f"{outcome.value}={count}" for outcome, count in summary.outcomes.items() if count)
        if summary.total:
            parts.append(f"p95={summary.percentile(95):.1f}ms")

        message = "FINAL" if final else "SUMMARY"
        LOGGER.info("%s %.1fs %s", message, elapsed, " | ".join(parts))


async def _wait_for(event: asyncio.Event, timeout: float) -> bool:
    """Wait up to ``timeout`` seconds for ``event``; return whether it is set."""

    if timeout <= 0:
        return event.is_set()
    try:
        await asyncio.wait_for(event.wait(), timeout)
    except asyncio.TimeoutError:
        return False
    return True


def format_summary(report: RunReport) -> str:
    """Render a run report as a plain-text block."""

    summary = report.summary
    lines = ["LOAD TEST SUMMARY", "=" * 42, "Response time:"]
    for p in PERCENTILES:
        lines.append(f"  - p{int(p)}: {summary.percentile(p):.2f}ms")
    lines.append(f"  - avg: {summary.latency.avg_ms:.2f}ms")
    lines.append(f"  - max: {summary.latency.max_ms:.2f}ms")
    lines.append("Outcomes:")
    for outcome in Outcome:
        lines.append(f"  - {outcome.value}: {summary.count(outcome)} ({summary.rate(outcome) * 100:.2f}%)")
    lines.append(f"Total requests: {summary.total}")
    lines.append(f"Elapsed: {report.elapsed_seconds:.1f}s{' (stopped early)' if report.stopped_early else ''}")
    lines.append("Thresholds:")
    for name, ok in report.verdict.results.items():
        lines.append(f"  - {name}: {'PASS' if ok else 'FAIL'}")
    lines.append(f"Verdict: {'PASSED' if report.verdict.passed else 'FAILED'}")
    lines.append("=" * 42)
    return "\n".join(lines)


def _install_signal_handlers(loop: asyncio.AbstractEventLoop, stop: Callable[[], None]) -> None:
    """Install SIGINT/SIGTERM handlers to stop the run gracefully."""

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop)
        except (NotImplementedError, RuntimeError):  # pragma: no cover - Windows / restricted envs
            LOGGER.debug("Signal handlers not supported on this platform")
            break


def _remove_signal_handlers(loop: asyncio.AbstractEventLoop) -> None:
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.remove_signal_handler(sig)
        except (NotImplementedError, RuntimeError):  # pragma: no cover
            break


def load_config_file(path: Path) -> Dict[str, Any]:
    """Load a configuration file in YAML or JSON format."""

    suffix = path.suffix.lower()
    text = path.read_text()
    if suffix in {".yaml", ".yml"}:
        data = yaml.safe_load(text) or {}
    elif suffix == ".json":
        data = json.loads(text or "{}")
    else:
        raise ConfigurationError(f"Unsupported configuration file format: {suffix}")
    if not isinstance(data, dict):
        raise ConfigurationError(f"{path} must contain a mapping at the top level")
    return dict(data)


def write_report(report: RunReport, path: Path) -> None:
    path.write_text(json.dumps(report.as_dict(), indent=2) + "\n")
    LOGGER.info("Report written to %s", path)


def setup_logging(level: str = "INFO") -> None:
    """Configure basic logging output."""

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )


def run_with_config(config: LoadConfig, *, install_signal_handlers: bool = True) -> RunReport:
    """Helper to run a load test with asyncio.run."""

    async def _runner() -> RunReport:
        runner = LoadRunner(config)
        return await runner.run(install_signal_handlers=install_signal_handlers)

    report = asyncio.run(_runner())
    LOGGER.info("\n%s", format_summary(report))
    return report


def main(argv: Optional[Iterable[str]] = None) -> int:
    """CLI entry point; returns 0 when every required threshold passes."""

    parser = argparse.ArgumentParser(description="Load and resilience verification harness")
    parser.add_argument("--config", type=Path, required=True, help="Path to YAML/JSON config file")
    parser.add_argument("--target", type=str, default=None, help="Override target base URL (env: BASE_URL)")
    parser.add_argument("--token", type=str, default=None, help="Bearer token for the target (env: JWT_TOKEN)")
    parser.add_argument(
        "--summary-interval",
        type=float,
        default=None,
        help="Override summary logging interval in seconds (0 to disable)",
    )
    parser.add_argument("--seed", type=int, default=None, help="Seed for scenario selection")
    parser.add_argument("--output", type=Path, default=None, help="Write the JSON report to this path")
    parser.add_argument("--log-level", type=str, default="INFO", help="Logging level (DEBUG, INFO, ...)")

    args = parser.parse_args(list(argv) if argv is not None else None)
    setup_logging(args.log_level)

    try:
        config_dict = load_config_file(args.config)
        target = args.target or os.environ.get("BASE_URL")
        if target:
            config_dict["target"] = target
        token = args.token or os.environ.get("JWT_TOKEN")
        if token:
            config_dict["token"] = token
        if args.summary_interval is not None:
            config_dict["summary_interval"] = args.summary_interval
        if args.seed is not None:
            config_dict["seed"] = args.seed
        config = LoadConfig.from_dict(config_dict)
    except (OSError, ValueError, yaml.YAMLError) as exc:
        parser.error(str(exc))

    report = run_with_config(config)
    if args.output is not None:
        write_report(report, args.output)
    return 0 if report.verdict.passed else 1


if __name__ == "__main__":  # pragma: no cover - CLI usage
    sys.exit(main())
