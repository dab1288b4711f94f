"""
RBAC policy service.
"""

from datetime import datetime, timezone
from typing import List, Optional

from fastapi import Query, Request, Response
from fastapi.responses import JSONResponse

from shared.base_service import BaseService
from shared.circuit_breaker import CircuitBreaker
from shared.config import ServiceConfig, get_config
from shared.observability import get_observability_manager

from .audit.emitter import AuditEmitter, AuditSink, KafkaAuditSink, LogAuditSink
from .cache.base import DecisionCache
from .cache.memory_cache import MemoryDecisionCache
from .cache.redis_cache import RedisDecisionCache
from .facade import PolicyServiceFacade
from .rbac.catalog import DEFAULT_CATALOG
from .rbac.models import (
    AssignmentCreateRequest, AssignmentListResponse, AssignmentMutationResponse, AssignmentResponse,
    DenialReason, InvalidationResponse, PolicyCheckRequestModel, PolicyCheckResponseModel, RoleResponse
)
from .store.base import AssignmentStore
from .store.memory import InMemoryAssignmentStore
from .store.postgres import PostgresAssignmentStore

SERVICE_NAME = "policy"
SERVICE_PORT = 8013


class PolicyService(BaseService):
    """Policy service implementation."""

    def __init__(self, config: Optional[ServiceConfig] = None,
                 store: Optional[AssignmentStore] = None,
                 cache: Optional[DecisionCache] = None,
                 audit_sinks: Optional[List[AuditSink]] = None):
        super().__init__(SERVICE_NAME, SERVICE_PORT, config or get_config(SERVICE_NAME, SERVICE_PORT))

        self.observability = get_observability_manager(
            SERVICE_NAME,
            log_level=self.config.log_level,
            metrics=self.metrics
        )

        self.catalog = DEFAULT_CATALOG
        self.store = store or self._build_store()
        self.cache = cache or self._build_cache()
        self.audit = AuditEmitter(
            audit_sinks if audit_sinks is not None else self._build_audit_sinks(),
            metrics=self.metrics
        )
        self.facade = PolicyServiceFacade(
            store=self.store,
            cache=self.cache,
            audit=self.audit,
            catalog=self.catalog,
            metrics=self.metrics,
            check_timeout=self.config.check_timeout_seconds,
            decision_ttl=self.config.decision_ttl_seconds
        )

        self._setup_policy_routes()

    def _build_store(self) -> AssignmentStore:
        if self.config.assignment_store == "postgres":
            breaker = CircuitBreaker(
                failure_threshold=self.config.store_failure_threshold,
                recovery_timeout=self.config.store_recovery_timeout,
                name="assignment_store"
            )
            return PostgresAssignmentStore(self.config.postgres_dsn, breaker=breaker)
        return InMemoryAssignmentStore()

    def _build_cache(self) -> DecisionCache:
        if self.config.decision_cache == "redis":
            return RedisDecisionCache(self.config.redis_url, default_ttl=self.config.decision_ttl_seconds)
        return MemoryDecisionCache(
            shards=self.config.cache_shards,
            default_ttl=self.config.decision_ttl_seconds,
            max_entries_per_shard=self.config.cache_max_entries_per_shard
        )

    def _build_audit_sinks(self) -> List[AuditSink]:
        sinks: List[AuditSink] = [LogAuditSink()]
        if self.config.audit_sink == "kafka":
            sinks.append(KafkaAuditSink(
                self.config.kafka_bootstrap,
                self.config.audit_topic,
                max_block_ms=self.config.audit_max_block_ms
            ))
        return sinks

    def _setup_policy_routes(self):
        """Set up policy-specific routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": SERVICE_NAME,
                "message": "Multi-tenant RBAC Policy Service",
                "version": "1.0.0",
                "capabilities": ["policy_check", "role_assignments", "decision_cache", "audit"]
            }

        @self.app.post("/policies/check", response_model=PolicyCheckResponseModel)
        async def check_policy(body: PolicyCheckRequestModel, request: Request):
            """Decide whether a subject may perform an action on a resource."""
            correlation_id = self.observability.trace_check(
                correlation_id=getattr(request.state, "correlation_id", None),
                subject_id=body.subject,
                tenant_id=body.context.tenant_id,
                client_id=body.context.client_id
            )

            decision = await self.facade.check(body.to_request(), correlation_id=correlation_id)
            response = PolicyCheckResponseModel(allow=decision.allow, reason=decision.reason)

            if decision.reason == DenialReason.MALFORMED_REQUEST.value:
                return JSONResponse(status_code=400, content=response.model_dump())
            return response

        @self.app.get("/policies/roles")
        async def list_roles():
            """List catalog roles and their permissions."""
            roles = [
                RoleResponse(name=name, permissions=sorted(self.catalog.permissions_for(name)))
                for name in self.catalog.role_names()
            ]
            return {"roles": roles, "total": len(roles)}

        @self.app.get("/policies/subjects/{subject_id}/assignments", response_model=AssignmentListResponse)
        async def list_assignments(subject_id: str):
            """List a subject's role assignments."""
            assignments = await self.facade.list_assignments(subject_id)
            items = [
                AssignmentResponse.from_assignment(a)
                for a in sorted(assignments, key=lambda a: (a.role_name, a.scope.tenant_id or "", a.scope.client_id or ""))
            ]
            return AssignmentListResponse(subject_id=subject_id, assignments=items, total=len(items))

        @self.app.post("/policies/assignments", response_model=AssignmentMutationResponse)
        async def create_assignment(body: AssignmentCreateRequest, response: Response):
            """Assign a role to a subject within a scope."""
            result = await self.facade.assign_role(
                body.subject_id,
                body.role_name,
                tenant_id=body.tenant_id,
                client_id=body.client_id,
                subject_type=body.subject_type
            )
            response.status_code = 201 if result.changed else 200
            self.observability.log_business_event(
                "role_assigned" if result.changed else "role_assignment_unchanged",
                subject_id=body.subject_id,
                role_name=body.role_name
            )
            return AssignmentMutationResponse(
                assignment=AssignmentResponse.from_assignment(result.assignment),
                changed=result.changed,
                invalidated_entries=result.invalidated_entries
            )

        @self.app.delete(
            "/policies/subjects/{subject_id}/assignments/{role_name}",
            response_model=AssignmentMutationResponse
        )
        async def delete_assignment(
            subject_id: str,
            role_name: str,
            tenant_id: Optional[str] = Query(None, description="Tenant of the assignment scope"),
            client_id: Optional[str] = Query(None, description="Client of the assignment scope")
        ):
            """Revoke a role assignment."""
            result = await self.facade.revoke_role(subject_id, role_name, tenant_id=tenant_id, client_id=client_id)
            self.observability.log_business_event("role_revoked", subject_id=subject_id, role_name=role_name)
            return AssignmentMutationResponse(
                assignment=AssignmentResponse.from_assignment(result.assignment),
                changed=result.changed,
                invalidated_entries=result.invalidated_entries
            )

        @self.app.post("/policies/subjects/{subject_id}/invalidate", response_model=InvalidationResponse)
        async def invalidate_subject(subject_id: str):
            """Drop cached decisions of a subject."""
            count = await self.facade.invalidate_subject(subject_id)
            return InvalidationResponse(subject_id=subject_id, invalidated_entries=count)

        @self.app.get("/policies/stats")
        async def get_stats():
            """Get policy service statistics."""
            return {
                "cache": await self.cache.get_stats(),
                "store": await self.store.get_stats(),
                "roles": len(self.catalog.role_names()),
                "timestamp": datetime.now(timezone.utc).isoformat()
            }

    async def _check_dependencies(self):
        """Check policy service dependencies."""
        dependencies = {}

        checks = (
            ("assignment_store", self.store.health_check),
            ("decision_cache", self.cache.health_check),
            ("audit", self.audit.health_check),
        )
        for name, check in checks:
            try:
                dependencies[name] = "ok" if await check() else "error"
            except Exception as e:
                self.logger.warning("Dependency check failed", dependency=name, error=str(e))
                dependencies[name] = "error"

        return dependencies

    async def start(self):
        """Start policy service components."""
        await self.facade.start()
        self.logger.info(
            "Policy service started",
            assignment_store=type(self.store).__name__,
            decision_cache=type(self.cache).__name__,
            audit_sinks=[sink.name for sink in self.audit.sinks]
        )

    async def stop(self):
        """Stop policy service components."""
        await self.facade.stop()
        self.logger.info("Policy service stopped")


def create_app():
    """Create policy service application."""
    service = PolicyService()
    return service.app


if __name__ == "__main__":
    service = PolicyService()
    service.run()
