"""
Unit tests for structured logging context.
"""

import pytest

from shared.logging import (
    add_policy_context, bind_check_context, bind_correlation_id, clear_context, correlation_id_var,
    service_stamper
)
from shared.metrics import MetricsCollector
from shared.observability import ObservabilityManager


@pytest.fixture(autouse=True)
def reset_context():
    clear_context()
    yield
    clear_context()


class TestLoggingContext:
    """Test cases for log context binding."""

    def test_correlation_id_kept(self):
        assert bind_correlation_id("corr-1") == "corr-1"
        assert correlation_id_var.get() == "corr-1"

    @pytest.mark.parametrize("header", [None, ""])
    def test_correlation_id_generated(self, header):
        correlation_id = bind_correlation_id(header)

        assert correlation_id
        assert correlation_id_var.get() == correlation_id

    def test_policy_context_added(self):
        bind_correlation_id("corr-2")
        bind_check_context("u1", "T1", "C1")

        event = add_policy_context(None, "info", {"event": "Policy check"})

        assert event["correlation_id"] == "corr-2"
        assert event["subject_id"] == "u1"
        assert event["tenant_id"] == "T1"
        assert event["client_id"] == "C1"

    def test_explicit_fields_win(self):
        bind_check_context("u1", "T1")

        event = add_policy_context(None, "info", {"event": "x", "subject_id": "u9"})

        assert event["subject_id"] == "u9"
        assert event["tenant_id"] == "T1"
        assert "client_id" not in event

    def test_service_stamp(self):
        stamp = service_stamper("policy")

        assert stamp(None, "info", {"event": "x"})["service"] == "policy"

    def test_clear_context(self):
        bind_correlation_id("corr-3")
        bind_check_context("u1", "T1", "C1")

        clear_context()

        assert add_policy_context(None, "info", {"event": "x"}) == {"event": "x"}


class TestObservabilityManager:
    """Test cases for ObservabilityManager."""

    def test_trace_check_binds_context(self):
        manager = ObservabilityManager("policy", metrics=MetricsCollector("policy"))

        correlation_id = manager.trace_check(subject_id="u1", tenant_id="T1")

        event = add_policy_context(None, "info", {"event": "x"})
        assert event["correlation_id"] == correlation_id
        assert event["subject_id"] == "u1"
        assert event["tenant_id"] == "T1"
        assert "client_id" not in event
