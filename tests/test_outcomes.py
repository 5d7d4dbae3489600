"""Unit tests for response classification."""

from __future__ import annotations

import itertools

import pytest

from load_errors import ConfigurationError, TransportError
from load_outcomes import Outcome, OutcomeClassifier, parse_status_set

CLASSIFIER = OutcomeClassifier()
CIRCUIT_BODY = '{"error": "Upstream call rejected: circuit breaker is OPEN"}'
BULKHEAD_BODY = '{"error": "bulkhead full: max concurrent calls reached"}'


class TestClassificationRules:
    def test_transport_error_wins_over_everything(self) -> None:
        error = TransportError(TransportError.TIMEOUT)

        assert CLASSIFIER.classify(None, "", error) == Outcome.TRANSPORT_FAILURE
        assert CLASSIFIER.classify(201, "ok", error) == Outcome.TRANSPORT_FAILURE
        assert CLASSIFIER.classify(503, CIRCUIT_BODY, error) == Outcome.TRANSPORT_FAILURE

    @pytest.mark.parametrize("status", [200, 201, 204, 299])
    def test_success_statuses(self, status) -> None:
        assert CLASSIFIER.classify(status, "") == Outcome.SUCCESS

    def test_expected_client_error(self) -> None:
        assert CLASSIFIER.classify(400, "invalid token") == Outcome.EXPECTED_CLIENT_ERROR

    def test_circuit_open(self) -> None:
        assert CLASSIFIER.classify(503, CIRCUIT_BODY) == Outcome.CIRCUIT_OPEN

    def test_resource_pool_exhausted(self) -> None:
        assert CLASSIFIER.classify(503, BULKHEAD_BODY) == Outcome.RESOURCE_POOL_EXHAUSTED

    def test_circuit_token_beats_pool_token(self) -> None:
        body = "bulkhead saturated and circuit breaker open"

        assert CLASSIFIER.classify(503, body) == Outcome.CIRCUIT_OPEN

    def test_unavailable_without_known_token(self) -> None:
        assert CLASSIFIER.classify(503, "Service Unavailable") == Outcome.SERVICE_UNAVAILABLE_OTHER
        assert CLASSIFIER.classify(503, None) == Outcome.SERVICE_UNAVAILABLE_OTHER

    def test_token_matching_is_case_sensitive(self) -> None:
        assert CLASSIFIER.classify(503, "CIRCUIT BREAKER open") == Outcome.SERVICE_UNAVAILABLE_OTHER
        assert CLASSIFIER.classify(503, "Bulkhead full") == Outcome.SERVICE_UNAVAILABLE_OTHER

    @pytest.mark.parametrize("status", [401, 404, 409, 500, 502, 504, 302, None])
    def test_anything_else_is_unexpected(self, status) -> None:
        assert CLASSIFIER.classify(status, CIRCUIT_BODY) == Outcome.UNEXPECTED_ERROR

    def test_tokens_only_apply_to_unavailable_statuses(self) -> None:
        assert CLASSIFIER.classify(201, CIRCUIT_BODY) == Outcome.SUCCESS
        assert CLASSIFIER.classify(400, BULKHEAD_BODY) == Outcome.EXPECTED_CLIENT_ERROR

    def test_classification_is_total_and_deterministic(self) -> None:
        statuses = [None, 100, 200, 201, 301, 400, 401, 429, 500, 503, 504, 599]
        bodies = ["", None, "circuit breaker", "bulkhead", "circuit breaker bulkhead", "x"]
        errors = [None, TransportError(TransportError.CONNECTION)]

        for status, body, error in itertools.product(statuses, bodies, errors):
            first = CLASSIFIER.classify(status, body, error)
            assert isinstance(first, Outcome)
            assert all(CLASSIFIER.classify(status, body, error) == first for _ in range(3))


class TestConfiguredClassifier:
    def test_custom_sets_and_tokens(self) -> None:
        classifier = OutcomeClassifier(
            success_statuses={201},
            client_error_statuses=parse_status_set("4xx"),
            unavailable_statuses={502, 503},
            circuit_tokens=("CallNotPermitted", "disjoncteur"),
            pool_tokens=("BulkheadFull",),
        )

        assert classifier.classify(200, "") == Outcome.UNEXPECTED_ERROR
        assert classifier.classify(429, "") == Outcome.EXPECTED_CLIENT_ERROR
        assert classifier.classify(502, "disjoncteur ouvert") == Outcome.CIRCUIT_OPEN
        assert classifier.classify(503, "BulkheadFullException") == Outcome.RESOURCE_POOL_EXHAUSTED
        assert classifier.classify(503, "circuit breaker") == Outcome.SERVICE_UNAVAILABLE_OTHER

    def test_overlapping_status_sets_are_rejected(self) -> None:
        with pytest.raises(ConfigurationError):
            OutcomeClassifier(client_error_statuses={400, 503})

    def test_empty_token_is_rejected(self) -> None:
        with pytest.raises(ConfigurationError):
            OutcomeClassifier(circuit_tokens=("",))


class TestParseStatusSet:
    def test_forms(self) -> None:
        assert parse_status_set(201) == frozenset({201})
        assert parse_status_set("503") == frozenset({503})
        assert parse_status_set("2xx") == frozenset(range(200, 300))
        assert parse_status_set("500-504") == frozenset(range(500, 505))
        assert parse_status_set([400, "401", "502-503"]) == frozenset({400, 401, 502, 503})

    @pytest.mark.parametrize("raw", ["6xx", "abc", 99, 600, "504-500", [True], ["4xx", "foo"]])
    def test_rejects_invalid(self, raw) -> None:
        with pytest.raises(ConfigurationError):
            parse_status_set(raw)
