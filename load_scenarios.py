"""Request scenarios and weighted scenario selection.

Each scenario pairs a weight with a request template. Templates are typed per
integration family so the request body a scenario sends is fixed at
configuration time.
"""

from __future__ import annotations

import math
import random
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence, Tuple, Union

from load_errors import ConfigurationError


@dataclass(frozen=True)
class JiraTemplate:
    """Project config request carrying Jira credentials."""

    project_name: str
    group_id: int
    host_url: str
    api_token: str
    email: str

    kind = "jira"

    def to_payload(self) -> Dict[str, Any]:
        return {
            "projectName": self.project_name,
            "groupId": self.group_id,
            "jira": {
                "hostUrl": self.host_url,
                "apiToken": self.api_token,
                "email": self.email,
            },
        }


@dataclass(frozen=True)
class GithubTemplate:
    """Project config request carrying GitHub credentials."""

    project_name: str
    group_id: int
    repo_url: str
    access_token: str

    kind = "github"

    def to_payload(self) -> Dict[str, Any]:
        return {
            "projectName": self.project_name,
            "groupId": self.group_id,
            "github": {
                "repoUrl": self.repo_url,
                "accessToken": self.access_token,
            },
        }


RequestTemplate = Union[JiraTemplate, GithubTemplate]

_TEMPLATE_FIELDS = {
    "jira": (JiraTemplate, {"hostUrl": "host_url", "apiToken": "api_token", "email": "email"}),
    "github": (GithubTemplate, {"repoUrl": "repo_url", "accessToken": "access_token"}),
}


def template_from_dict(raw: Dict[str, Any]) -> RequestTemplate:
    """Build a template from the request body shape the target expects.

    ``{"projectName": ..., "groupId": ..., "jira": {...}}`` yields a
    :class:`JiraTemplate`; a ``"github"`` block yields a :class:`GithubTemplate`.
    """

    families = [kind for kind in _TEMPLATE_FIELDS if kind in raw]
    if len(families) != 1:
        raise ConfigurationError(
            f"Template must contain exactly one of {sorted(_TEMPLATE_FIELDS)}, got {sorted(raw)}"
        )
    kind = families[0]
    cls, fields = _TEMPLATE_FIELDS[kind]
    block = raw[kind]
    if not isinstance(block, dict):
        raise ConfigurationError(f"Template {kind!r} block must be a mapping")

    try:
        kwargs = {attr: block[key] for key, attr in fields.items()}
        kwargs["project_name"] = raw["projectName"]
        kwargs["group_id"] = raw["groupId"]
    except KeyError as exc:
        raise ConfigurationError(f"{kind} template is missing {exc.args[0]!r}") from None
    return cls(**kwargs)


@dataclass(frozen=True)
class Scenario:
    name: str
    weight: float
    template: RequestTemplate

    def __post_init__(self) -> None:
        if not self.name:
            raise ConfigurationError("Scenario name cannot be empty")
        if isinstance(self.weight, bool) or not isinstance(self.weight, (int, float)):
            raise ConfigurationError(f"Scenario {self.name!r} weight must be a number")
        if not math.isfinite(self.weight) or self.weight <= 0:
            raise ConfigurationError(f"Scenario {self.name!r} weight must be positive, got {self.weight}")

    def build_payload(self) -> Dict[str, Any]:
        return self.template.to_payload()


def scenario_from_dict(raw: Dict[str, Any]) -> Scenario:
    """Build a scenario from ``{"name", "weight", "payload"}``."""

    try:
        name, weight, payload = raw["name"], raw["weight"], raw["payload"]
    except KeyError as exc:
        raise ConfigurationError(f"Scenario is missing {exc.args[0]!r}: {raw!r}") from None
    if not isinstance(payload, dict):
        raise ConfigurationError(f"Scenario {name!r} payload must be a mapping")
    return Scenario(name=name, weight=weight, template=template_from_dict(payload))


def pick_weighted(scenarios: Sequence[Scenario], roll: float) -> Scenario:
    """Return the scenario selected by ``roll``, a value in ``[0, total_weight)``.

    Weights are subtracted in order until the remainder drops to zero or
    below. If rounding leaves a positive remainder after the last scenario,
    the first scenario is returned.
    """

    remainder = roll
    for scenario in scenarios:
        remainder -= scenario.weight
        if remainder <= 0:
            return scenario
    return scenarios[0]


class ScenarioSelector:
    """Weighted random scenario draws over a fixed scenario set."""

    def __init__(self, scenarios: Sequence[Scenario], rng: Optional[random.Random] = None) -> None:
        self._scenarios: Tuple[Scenario, ...] = tuple(scenarios)
        if not self._scenarios:
            raise ConfigurationError("At least one scenario is required")

        names = [scenario.name for scenario in self._scenarios]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ConfigurationError(f"Duplicate scenario names: {', '.join(duplicates)}")

        self._total_weight = math.fsum(scenario.weight for scenario in self._scenarios)
        self._rng = rng if rng is not None else random.Random()

    @property
    def scenarios(self) -> Tuple[Scenario, ...]:
        return self._scenarios

    @property
    def total_weight(self) -> float:
        return self._total_weight

    def probability(self, name: str) -> float:
        for scenario in self._scenarios:
            if scenario.name == name:
                return scenario.weight / self._total_weight
        raise KeyError(name)

    def draw(self) -> Scenario:
        return pick_weighted(self._scenarios, self._rng.random() * self._total_weight)
