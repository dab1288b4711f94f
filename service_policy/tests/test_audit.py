"""
Unit tests for audit emission.
"""

import asyncio

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from shared.errors import AccessLayerException
from shared.metrics import MetricsCollector

from service_policy.app.audit.emitter import (
    AUDIT_ACTION, AuditEmitter, AuditEvent, AuditSink, KafkaAuditSink, LogAuditSink
)
from service_policy.app.rbac.models import PolicyDecision


class RecordingSink(AuditSink):
    name = "recording"

    def __init__(self):
        self.events = []

    async def send(self, event):
        self.events.append(event)


class FailingSink(AuditSink):
    name = "failing"

    async def send(self, event):
        raise RuntimeError("sink down")


@pytest.fixture
def event(check_request):
    return AuditEvent.from_check(
        check_request("u1", "write", "prompt:p1", "T1", "C2"),
        PolicyDecision(allow=False, reason="scope_mismatch"),
        correlation_id="corr-1"
    )


class TestAuditEvent:
    """Test cases for AuditEvent."""

    def test_from_check(self, event):
        assert event.action == AUDIT_ACTION
        assert event.subject == "u1"
        assert event.action_attempted == "write"
        assert event.resource == "prompt:p1"
        assert event.tenant_id == "T1"
        assert event.client_id == "C2"
        assert event.allow is False
        assert event.reason == "scope_mismatch"
        assert event.correlation_id == "corr-1"
        assert event.timestamp.tzinfo is not None

    def test_serializes_to_json(self, event):
        payload = event.model_dump(mode="json")

        assert payload["action"] == "policy.check.result"
        assert isinstance(payload["timestamp"], str)


class TestAuditEmitter:
    """Test cases for AuditEmitter."""

    @pytest.fixture
    def metrics(self):
        return MetricsCollector("policy")

    @pytest.mark.asyncio
    async def test_fans_out(self, event):
        first, second = RecordingSink(), RecordingSink()
        emitter = AuditEmitter([first, second])

        delivered = await emitter.emit(event)

        assert delivered == 2
        assert first.events == [event]
        assert second.events == [event]

    @pytest.mark.asyncio
    async def test_sink_failure_is_contained(self, event, metrics):
        recording = RecordingSink()
        emitter = AuditEmitter([FailingSink(), recording], metrics=metrics)

        delivered = await emitter.emit(event)

        assert delivered == 1
        assert recording.events == [event]
        assert metrics.registry.get_sample_value(
            "policy_audit_events_total", {"sink": "failing", "status": "error"}
        ) == 1.0
        assert metrics.registry.get_sample_value(
            "policy_audit_events_total", {"sink": "recording", "status": "ok"}
        ) == 1.0

    @pytest.mark.asyncio
    async def test_log_sink_levels(self, event):
        sink = LogAuditSink()
        sink.logger = MagicMock()

        await sink.send(event)
        await sink.send(event.model_copy(update={"allow": True, "reason": "allowed_by:viewer"}))

        sink.logger.warning.assert_called_once()
        sink.logger.info.assert_called_once()
        assert sink.logger.warning.call_args[1]["reason"] == "scope_mismatch"


class TestKafkaAuditSink:
    """Test cases for KafkaAuditSink."""

    @pytest.mark.asyncio
    async def test_send_keys_by_subject(self, event):
        producer = MagicMock()
        sink = KafkaAuditSink("localhost:9092", "policy.audit.check.v1", producer=producer)

        await sink.send(event)

        kwargs = producer.send.call_args[1]
        assert kwargs["topic"] == "policy.audit.check.v1"
        assert kwargs["key"] == "u1"
        assert kwargs["value"]["reason"] == "scope_mismatch"
        producer.send.return_value.add_errback.assert_called_once()

    @pytest.mark.asyncio
    async def test_send_without_producer(self, event):
        sink = KafkaAuditSink("localhost:9092", "policy.audit.check.v1")

        with pytest.raises(AccessLayerException):
            await sink.send(event)

    @pytest.mark.asyncio
    async def test_start_builds_producer(self):
        with patch("service_policy.app.audit.emitter.KafkaProducer") as producer_cls:
            sink = KafkaAuditSink("localhost:9092", "policy.audit.check.v1")
            await sink.start()

        assert sink.producer is producer_cls.return_value
        assert producer_cls.call_args[1]["bootstrap_servers"] == "localhost:9092"
        assert producer_cls.call_args[1]["max_block_ms"] == 100

    @pytest.mark.asyncio
    async def test_send_runs_off_the_event_loop(self, event):
        producer = MagicMock()
        sink = KafkaAuditSink("localhost:9092", "policy.audit.check.v1", producer=producer)

        loop = asyncio.get_running_loop()
        with patch.object(loop, "run_in_executor", new_callable=AsyncMock) as run_in_executor:
            await sink.send(event)

        run_in_executor.assert_awaited_once()
        assert run_in_executor.call_args[0][1] == sink._send
        producer.send.assert_not_called()

    @pytest.mark.asyncio
    async def test_stop_flushes(self):
        producer = MagicMock()
        sink = KafkaAuditSink("localhost:9092", "policy.audit.check.v1", producer=producer)

        await sink.stop()

        producer.flush.assert_called_once()
        producer.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_emitter_lifecycle(self):
        sink = AsyncMock(spec=AuditSink)
        emitter = AuditEmitter([sink])

        await emitter.start()
        await emitter.stop()

        sink.start.assert_awaited_once()
        sink.stop.assert_awaited_once()
