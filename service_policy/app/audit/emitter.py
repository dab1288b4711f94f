"""
Audit emission for policy decisions.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import List, Optional

from kafka import KafkaProducer
from kafka.errors import KafkaError
from pydantic import BaseModel, Field

from shared.errors import AccessLayerException
from shared.logging import get_logger
from shared.metrics import MetricsCollector

from ..rbac.models import PolicyCheckRequest, PolicyDecision

AUDIT_ACTION = "policy.check.result"


class AuditEvent(BaseModel):
    """Record of one policy check outcome."""
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    action: str = AUDIT_ACTION
    subject: str
    action_attempted: str
    resource: str
    tenant_id: Optional[str] = None
    client_id: Optional[str] = None
    allow: bool
    reason: str
    correlation_id: Optional[str] = None

    @classmethod
    def from_check(cls, request: PolicyCheckRequest, decision: PolicyDecision,
                   correlation_id: Optional[str] = None) -> "AuditEvent":
        return cls(
            subject=request.subject_id or "",
            action_attempted=request.action or "",
            resource=request.resource or "",
            tenant_id=request.context.tenant_id,
            client_id=request.context.client_id,
            allow=decision.allow,
            reason=decision.reason,
            correlation_id=correlation_id,
        )


class AuditSink(ABC):
    """Destination for audit events."""

    name: str = "sink"

    async def start(self):
        pass

    async def stop(self):
        pass

    @abstractmethod
    async def send(self, event: AuditEvent) -> None:
        """Deliver one event; raise on failure."""

    async def health_check(self) -> bool:
        return True


class LogAuditSink(AuditSink):
    """Writes audit events to the structured log."""

    name = "log"

    def __init__(self):
        self.logger = get_logger("policy.audit")

    async def send(self, event: AuditEvent) -> None:
        payload = event.model_dump(mode="json")
        if event.allow:
            self.logger.info("Policy check result", **payload)
        else:
            self.logger.warning("Policy check result", **payload)


class KafkaAuditSink(AuditSink):
    """Publishes audit events to a Kafka topic, keyed by subject."""

    name = "kafka"

    def __init__(self, bootstrap_servers: str, topic: str,
                 producer: Optional[KafkaProducer] = None,
                 max_block_ms: int = 100):
        self.bootstrap_servers = bootstrap_servers
        self.topic = topic
        self.max_block_ms = max_block_ms
        self.logger = get_logger("policy.audit.kafka")
        self.producer: Optional[KafkaProducer] = producer

    async def start(self):
        """Start the Kafka producer."""
        if self.producer is not None:
            return
        try:
            self.producer = KafkaProducer(
                bootstrap_servers=self.bootstrap_servers,
                value_serializer=lambda x: json.dumps(x).encode('utf-8'),
                key_serializer=lambda x: x.encode('utf-8') if x else None,
                acks='all',
                retries=3,
                linger_ms=10,
                max_block_ms=self.max_block_ms
            )
            self.logger.info("Kafka audit producer started", topic=self.topic)

        except KafkaError as e:
            self.logger.error("Failed to start Kafka audit producer", error=str(e))
            raise AccessLayerException("KAFKA_PRODUCER_START_FAILED", str(e))

    async def stop(self):
        if self.producer:
            self.producer.flush()
            self.producer.close()
            self.logger.info("Kafka audit producer stopped")

    async def send(self, event: AuditEvent) -> None:
        if not self.producer:
            raise AccessLayerException("KAFKA_PRODUCER_NOT_STARTED", "Producer not started")

        # send() blocks up to max_block_ms while broker metadata is missing
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._send, event)

    def _send(self, event: AuditEvent) -> None:
        future = self.producer.send(
            topic=self.topic,
            value=event.model_dump(mode="json"),
            key=event.subject
        )
        future.add_errback(self._on_send_error, event.correlation_id)

    def _on_send_error(self, exc: Exception, correlation_id: Optional[str]):
        self.logger.error(
            "Kafka error sending audit event",
            topic=self.topic,
            correlation_id=correlation_id,
            error=str(exc)
        )

    async def health_check(self) -> bool:
        return self.producer is not None and self.producer.bootstrap_connected()


class AuditEmitter:
    """Fans audit events out to every configured sink.

    A failing sink is logged and counted; it never affects the decision
    that produced the event or the delivery to other sinks.
    """

    def __init__(self, sinks: List[AuditSink], metrics: Optional[MetricsCollector] = None):
        self.sinks = list(sinks)
        self.metrics = metrics
        self.logger = get_logger("policy.audit.emitter")

    async def start(self):
        for sink in self.sinks:
            await sink.start()

    async def stop(self):
        for sink in self.sinks:
            await sink.stop()

    async def emit(self, event: AuditEvent) -> int:
        """Send ``event`` to all sinks; returns the number of successful deliveries."""
        delivered = 0
        for sink in self.sinks:
            try:
                await sink.send(event)
            except Exception as e:
                self.logger.error(
                    "Audit sink failed",
                    sink=sink.name,
                    correlation_id=event.correlation_id,
                    error=str(e),
                    error_type=type(e).__name__
                )
                self._record(sink.name, "error")
                continue

            delivered += 1
            self._record(sink.name, "ok")
        return delivered

    def _record(self, sink: str, status: str):
        if self.metrics is not None:
            self.metrics.increment_counter("policy_audit_events_total", sink=sink, status=status)

    async def health_check(self) -> bool:
        for sink in self.sinks:
            if not await sink.health_check():
                return False
        return True
