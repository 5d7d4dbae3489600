"""Ramp profile handling.

A profile is an ordered list of stages, each holding a constant worker target
for its duration. The scheduler answers "how many workers should be running
right now" for any elapsed time since the run started.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Any, Iterable, Tuple, Union

from load_errors import ConfigurationError

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_UNIT_SECONDS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(value: Union[str, int, float]) -> float:
    """Convert ``10``, ``"10s"``, ``"500ms"`` or ``"1m30s"`` to seconds."""

    if isinstance(value, bool):
        raise ConfigurationError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    elif isinstance(value, str):
        text = value.strip().replace(" ", "")
        try:
            seconds = float(text)
        except ValueError:
            seconds = _parse_units(text, value)
    else:
        raise ConfigurationError(f"Invalid duration: {value!r}")
    return _check_duration(seconds, value)


def _parse_units(text: str, raw: Any) -> float:
    pos = 0
    seconds = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            break
        seconds += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
        pos = match.end()
    if pos == 0 or pos != len(text):
        raise ConfigurationError(f"Invalid duration: {raw!r}")
    return seconds


def _check_duration(seconds: float, raw: Any) -> float:
    if not math.isfinite(seconds) or seconds < 0:
        raise ConfigurationError(f"Duration must be finite and non-negative: {raw!r}")
    return seconds


@dataclass(frozen=True)
class Stage:
    duration: float
    target: int

    @classmethod
    def from_dict(cls, raw: Any) -> "Stage":
        """Build a stage from ``{"duration": "10s", "target": 50}`` or a pair."""

        if isinstance(raw, dict):
            try:
                duration, target = raw["duration"], raw["target"]
            except KeyError as exc:
                raise ConfigurationError(f"Stage is missing {exc.args[0]!r}: {raw!r}") from None
        elif isinstance(raw, (list, tuple)) and len(raw) == 2:
            duration, target = raw
        else:
            raise ConfigurationError(f"Malformed stage: {raw!r}")
        if isinstance(target, bool) or not isinstance(target, int):
            raise ConfigurationError(f"Stage target must be an integer: {target!r}")
        return cls(parse_duration(duration), target)


class ConcurrencyScheduler:
    """Piecewise-constant worker target over elapsed run time.

    Stage ``k`` owns the half-open window ``[start_k, start_k + duration_k)``,
    so at a boundary instant the later stage wins and zero-length stages never
    own any instant. Past the end of the profile the target is 0.
    """

    def __init__(self, stages: Iterable[Stage]) -> None:
        self._stages: Tuple[Stage, ...] = tuple(stages)
        if not self._stages:
            raise ConfigurationError("Ramp profile needs at least one stage")

        bounds = []
        end = 0.0
        for index, stage in enumerate(self._stages):
            if stage.duration < 0:
                raise ConfigurationError(f"Stage {index} has a negative duration")
            if isinstance(stage.target, bool) or not isinstance(stage.target, int) or stage.target < 0:
                raise ConfigurationError(f"Stage {index} target must be a non-negative integer")
            end += stage.duration
            bounds.append(end)

        if end <= 0:
            raise ConfigurationError("Ramp profile total duration must be positive")
        self._ends: Tuple[float, ...] = tuple(bounds)

    @classmethod
    def from_config(cls, raw: Iterable[Any]) -> "ConcurrencyScheduler":
        if isinstance(raw, (str, bytes, dict)):
            raise ConfigurationError("stages must be a list")
        return cls(Stage.from_dict(item) for item in raw)

    @property
    def stages(self) -> Tuple[Stage, ...]:
        return self._stages

    @property
    def total_duration(self) -> float:
        return self._ends[-1]

    @property
    def peak(self) -> int:
        return max(stage.target for stage in self._stages)

    def target_at(self, elapsed: float) -> int:
        """Return the number of workers that should be active at ``elapsed`` seconds."""

        elapsed = max(0.0, elapsed)
        for stage, end in zip(self._stages, self._ends):
            if stage.duration > 0 and elapsed < end:
                return stage.target
        return 0
