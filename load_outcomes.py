"""Response classification.

Every completed attempt maps to exactly one :class:`Outcome`. Telling a
tripped circuit breaker apart from a full bulkhead relies on substring tokens
in the response body, which is a heuristic tied to the target's error wording,
so the tokens are configuration rather than constants.
"""

from __future__ import annotations

import enum
import re
from typing import Any, FrozenSet, Iterable, Optional

from load_errors import ConfigurationError

_STATUS_CLASS = re.compile(r"^([1-5])xx$", re.IGNORECASE)
_STATUS_RANGE = re.compile(r"^(\d{3})\s*-\s*(\d{3})$")

DEFAULT_SUCCESS_STATUSES = frozenset(range(200, 300))
DEFAULT_CLIENT_ERROR_STATUSES = frozenset({400})
DEFAULT_UNAVAILABLE_STATUSES = frozenset({503})
DEFAULT_CIRCUIT_TOKENS = ("circuit breaker",)
DEFAULT_POOL_TOKENS = ("bulkhead",)


class Outcome(str, enum.Enum):
    SUCCESS = "success"
    EXPECTED_CLIENT_ERROR = "expected_client_error"
    CIRCUIT_OPEN = "circuit_open"
    RESOURCE_POOL_EXHAUSTED = "resource_pool_exhausted"
    SERVICE_UNAVAILABLE_OTHER = "service_unavailable_other"
    UNEXPECTED_ERROR = "unexpected_error"
    TRANSPORT_FAILURE = "transport_failure"


def parse_status_set(raw: Any) -> FrozenSet[int]:
    """Parse ``201``, ``"2xx"``, ``"500-504"`` or a list of those into a set of codes."""

    if isinstance(raw, (int, str)) and not isinstance(raw, bool):
        items: Iterable[Any] = [raw]
    else:
        items = raw

    codes = set()
    for item in items:
        if isinstance(item, bool):
            raise ConfigurationError(f"Invalid status code: {item!r}")
        if isinstance(item, int):
            codes.add(_check_status(item))
            continue
        text = str(item).strip()
        if text.isdigit():
            codes.add(_check_status(int(text)))
            continue
        match = _STATUS_CLASS.match(text)
        if match:
            base = int(match.group(1)) * 100
            codes.update(range(base, base + 100))
            continue
        match = _STATUS_RANGE.match(text)
        if match:
            low, high = _check_status(int(match.group(1))), _check_status(int(match.group(2)))
            if low > high:
                raise ConfigurationError(f"Empty status range: {text!r}")
            codes.update(range(low, high + 1))
            continue
        raise ConfigurationError(f"Invalid status code specification: {item!r}")
    return frozenset(codes)


def _check_status(code: int) -> int:
    if not 100 <= code <= 599:
        raise ConfigurationError(f"Status code out of range: {code}")
    return code


class OutcomeClassifier:
    """Maps ``(status, body, transport_error)`` to an :class:`Outcome`.

    Rules are applied in a fixed order and the first match wins: transport
    failure, success, expected client error, circuit open, resource pool
    exhausted, other unavailability, and finally unexpected error. A body
    carrying both a circuit token and a pool token is therefore circuit open.
    """

    def __init__(
        self,
        success_statuses: Iterable[int] = DEFAULT_SUCCESS_STATUSES,
        client_error_statuses: Iterable[int] = DEFAULT_CLIENT_ERROR_STATUSES,
        unavailable_statuses: Iterable[int] = DEFAULT_UNAVAILABLE_STATUSES,
        circuit_tokens: Iterable[str] = DEFAULT_CIRCUIT_TOKENS,
        pool_tokens: Iterable[str] = DEFAULT_POOL_TOKENS,
    ) -> None:
        self.success_statuses = frozenset(success_statuses)
        self.client_error_statuses = frozenset(client_error_statuses)
        self.unavailable_statuses = frozenset(unavailable_statuses)
        self.circuit_tokens = tuple(circuit_tokens)
        self.pool_tokens = tuple(pool_tokens)

        overlap = (
            (self.success_statuses & self.client_error_statuses)
            | (self.success_statuses & self.unavailable_statuses)
            | (self.client_error_statuses & self.unavailable_statuses)
        )
        if overlap:
            raise ConfigurationError(f"Status codes assigned to more than one class: {sorted(overlap)}")
        if any(not token for token in self.circuit_tokens + self.pool_tokens):
            raise ConfigurationError("Signature tokens cannot be empty strings")

    def classify(
        self,
        status: Optional[int],
        body: Optional[str] = "",
        transport_error: Optional[BaseException] = None,
    ) -> Outcome:
        if transport_error is not None:
            return Outcome.TRANSPORT_FAILURE
        if status in self.success_statuses:
            return Outcome.SUCCESS
        if status in self.client_error_statuses:
            return Outcome.EXPECTED_CLIENT_ERROR
        if status in self.unavailable_statuses:
            text = body or ""
            if any(token in text for token in self.circuit_tokens):
                return Outcome.CIRCUIT_OPEN
            if any(token in text for token in self.pool_tokens):
                return Outcome.RESOURCE_POOL_EXHAUSTED
            return Outcome.SERVICE_UNAVAILABLE_OTHER
        return Outcome.UNEXPECTED_ERROR
