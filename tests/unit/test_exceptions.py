"""
Unit tests for the exception hierarchy and error helpers.
"""

import pytest
import asyncio

from scrape_orchestrator.exceptions import (
    ActionError, AllMethodsExhausted, AttemptFailure, CancellationRequested, ConcurrencyLimitExceeded,
    IdentityUnavailable, OrchestratorError, TaskNotFound, ValidationError, classify_error, describe_error
)


class TestExceptionMessages:
    """Test messages and details carried by exceptions."""

    def test_attempt_failure_tags_method(self):
        error = AttemptFailure("api-client", "HTTP 503 from https://example.com")

        assert str(error) == "api-client failed: HTTP 503 from https://example.com"
        assert error.details == {'method': 'api-client', 'reason': 'HTTP 503 from https://example.com'}

    def test_exhausted_keeps_every_reason(self):
        error = AllMethodsExhausted("t1", [("browser-automation", "blocked"), ("visual-scraping", "captcha")])

        assert "browser-automation: blocked" in str(error)
        assert "visual-scraping: captcha" in str(error)
        assert len(error.details['failures']) == 2

    def test_concurrency_limit_message(self):
        error = ConcurrencyLimitExceeded(5, 5)

        assert "limit reached (5)" in str(error)
        assert isinstance(error, OrchestratorError)

    def test_identity_unavailable_is_resource_error(self):
        error = IdentityUnavailable("no identity", criteria={'country': 'ZZ'})

        assert error.resource == "identity"
        assert error.details == {'criteria': {'country': 'ZZ'}}


class TestClassifyError:
    """Test error classification."""

    @pytest.mark.parametrize("error, category", [
        (CancellationRequested("t1"), "cancelled"),
        (asyncio.TimeoutError(), "timeout"),
        (IdentityUnavailable("none"), "resource"),
        (ActionError("navigate failed"), "session"),
        (AttemptFailure("hybrid", "x"), "attempt"),
        (AllMethodsExhausted("t1", []), "exhausted"),
        (ValidationError("bad url"), "validation"),
        (TaskNotFound("t1"), "unknown"),
        (RuntimeError("boom"), "unknown"),
    ])
    def test_categories(self, error, category):
        assert classify_error(error) == category


class TestDescribeError:
    """Test human-readable reasons."""

    def test_message_is_used(self):
        assert describe_error(ValueError("bad payload")) == "bad payload"

    def test_empty_timeout(self):
        assert describe_error(asyncio.TimeoutError()) == "timeout"

    def test_empty_message_falls_back_to_class_name(self):
        assert describe_error(KeyError()) == "KeyError"
