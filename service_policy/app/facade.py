"""
Policy service facade: the one entry point for checks and mutations.

Composes the assignment store, evaluator, decision cache and audit emitter.
``check`` never raises; every failure becomes a deny decision.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from shared.errors import ValidationError, NotFoundError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.tracing import trace_operation

from .audit.emitter import AuditEmitter, AuditEvent
from .cache.base import DecisionCache
from .cache.keys import DecisionKey
from .rbac.catalog import DEFAULT_CATALOG, RoleCatalog
from .rbac.evaluator import PolicyEvaluator
from .rbac.models import (
    DenialReason, PolicyCheckRequest, PolicyDecision, RoleAssignment, SubjectType, scope_from_ids
)
from .store.base import AssignmentStore

DEFAULT_CHECK_TIMEOUT = 0.1


@dataclass(frozen=True)
class AssignmentMutation:
    """Outcome of an assign/revoke call."""
    assignment: RoleAssignment
    changed: bool
    invalidated_entries: int


class PolicyServiceFacade:
    """Cache-fronted policy checks plus assignment management."""

    def __init__(self, store: AssignmentStore, cache: DecisionCache, audit: AuditEmitter,
                 catalog: RoleCatalog = DEFAULT_CATALOG,
                 evaluator: Optional[PolicyEvaluator] = None,
                 metrics: Optional[MetricsCollector] = None,
                 check_timeout: float = DEFAULT_CHECK_TIMEOUT,
                 decision_ttl: Optional[int] = None):
        self.store = store
        self.cache = cache
        self.audit = audit
        self.catalog = catalog
        self.evaluator = evaluator or PolicyEvaluator(store, catalog)
        self.metrics = metrics
        self.check_timeout = check_timeout
        self.decision_ttl = decision_ttl
        self.logger = get_logger("policy.facade")

        # In-flight evaluations keyed by (decision key, subject generation)
        self._inflight: Dict[Tuple[DecisionKey, int], asyncio.Future] = {}

    async def start(self):
        await self.store.start()
        await self.cache.start()
        await self.audit.start()
        self.logger.info("Policy facade started")

    async def stop(self):
        await self.audit.stop()
        await self.cache.stop()
        await self.store.stop()
        self.logger.info("Policy facade stopped")

    async def check(self, request: PolicyCheckRequest, correlation_id: Optional[str] = None,
                    timeout: Optional[float] = None) -> PolicyDecision:
        """Decide ``request``; bounded by ``timeout`` seconds (default ``check_timeout``)."""
        timeout = self.check_timeout if timeout is None else timeout
        start_time = time.perf_counter()
        cache_hit = False

        with trace_operation(
            "policy.check",
            subject_id=request.subject_id,
            action=request.action,
            resource=request.resource,
            tenant_id=request.context.tenant_id,
            client_id=request.context.client_id,
            correlation_id=correlation_id
        ) as span:
            try:
                decision, cache_hit = await asyncio.wait_for(self._check(request), timeout)
            except asyncio.TimeoutError:
                self.logger.warning(
                    "Policy check deadline exceeded",
                    subject_id=request.subject_id,
                    timeout_s=timeout,
                    correlation_id=correlation_id
                )
                decision = PolicyDecision.deny(DenialReason.STORE_UNAVAILABLE)
            except Exception as e:
                self.logger.error(
                    "Policy check failed",
                    subject_id=request.subject_id,
                    error=str(e),
                    error_type=type(e).__name__,
                    correlation_id=correlation_id
                )
                decision = PolicyDecision.deny(DenialReason.STORE_UNAVAILABLE)

            span.set_attribute("policy.allow", decision.allow)
            span.set_attribute("policy.reason", decision.reason)
            span.set_attribute("policy.cache_hit", cache_hit)

        self._record_check(decision, cache_hit, time.perf_counter() - start_time)

        # Hits are only audited when they deny; every evaluation is audited
        if not cache_hit or not decision.allow:
            await self.audit.emit(AuditEvent.from_check(request, decision, correlation_id))

        return decision

    async def _check(self, request: PolicyCheckRequest) -> Tuple[PolicyDecision, bool]:
        key = DecisionKey.from_request(request)
        if not (key.subject_id and key.action and key.resource_type):
            # Malformed requests are never cached
            return await self.evaluator.evaluate(request), False

        # Read the generation before anything touches the store
        generation = await self.cache.generation(key.subject_id)

        cached = await self._cache_get(key)
        if cached is not None:
            return cached, True

        return await self._evaluate_once(key, generation, request), False

    async def _cache_get(self, key: DecisionKey) -> Optional[PolicyDecision]:
        try:
            cached = await self.cache.get(key)
        except Exception as e:
            self.logger.warning("Decision cache read failed", subject_id=key.subject_id, error=str(e))
            self._record_lookup("error")
            return None

        self._record_lookup("hit" if cached is not None else "miss")
        return cached

    async def _evaluate_once(self, key: DecisionKey, generation: int,
                             request: PolicyCheckRequest) -> PolicyDecision:
        """Single-flight evaluation: concurrent misses on one key share a result."""
        flight_key = (key, generation)
        pending = self._inflight.get(flight_key)
        if pending is not None:
            return await asyncio.shield(pending)

        future = asyncio.get_running_loop().create_future()
        self._inflight[flight_key] = future
        try:
            decision = await self.evaluator.evaluate(request)
            if decision.reason != DenialReason.STORE_UNAVAILABLE.value:
                await self._cache_put(key, decision, generation)
        except BaseException:
            # Followers must not hang or inherit the leader's cancellation
            if not future.done():
                future.set_result(PolicyDecision.deny(DenialReason.STORE_UNAVAILABLE))
            raise
        else:
            future.set_result(decision)
            return decision
        finally:
            self._inflight.pop(flight_key, None)

    async def _cache_put(self, key: DecisionKey, decision: PolicyDecision, generation: int):
        try:
            await self.cache.put(key, decision, ttl=self.decision_ttl, generation=generation)
        except Exception as e:
            self.logger.warning("Decision cache write failed", subject_id=key.subject_id, error=str(e))

    async def invalidate_subject(self, subject_id: str) -> int:
        """Drop cached decisions of a subject. Errors propagate to the caller."""
        count = await self.cache.invalidate_subject(subject_id)
        if self.metrics is not None:
            self.metrics.increment_counter("policy_invalidations_total")
        return count

    async def assign_role(self, subject_id: str, role_name: str,
                          tenant_id: Optional[str] = None, client_id: Optional[str] = None,
                          subject_type: SubjectType = SubjectType.USER) -> AssignmentMutation:
        """Grant ``role_name`` to a subject; re-adding an existing binding is a no-op."""
        if not subject_id:
            raise ValidationError("subject_id is required")
        self.catalog.validate_role(role_name)
        scope = scope_from_ids(tenant_id, client_id)

        assignment = RoleAssignment(
            subject_id=subject_id,
            role_name=role_name,
            scope=scope,
            subject_type=subject_type,
        )
        created = await self.store.add_assignment(assignment)
        invalidated = await self.invalidate_subject(subject_id) if created else 0

        self.logger.info(
            "Role assigned" if created else "Role assignment already present",
            subject_id=subject_id,
            role_name=role_name,
            tenant_id=scope.tenant_id,
            client_id=scope.client_id,
            invalidated_entries=invalidated
        )
        return AssignmentMutation(assignment=assignment, changed=created, invalidated_entries=invalidated)

    async def revoke_role(self, subject_id: str, role_name: str,
                          tenant_id: Optional[str] = None,
                          client_id: Optional[str] = None) -> AssignmentMutation:
        """Remove one binding. Raises NotFoundError when it does not exist."""
        scope = scope_from_ids(tenant_id, client_id)
        existing = next(
            (a for a in await self.store.get_assignments(subject_id)
             if a.role_name == role_name and a.scope == scope),
            None
        )
        removed = existing is not None and await self.store.remove_assignment(subject_id, role_name, scope)
        if not removed:
            raise NotFoundError(
                "Role assignment not found",
                details={
                    "subject_id": subject_id,
                    "role_name": role_name,
                    "tenant_id": scope.tenant_id,
                    "client_id": scope.client_id,
                }
            )

        invalidated = await self.invalidate_subject(subject_id)
        self.logger.info(
            "Role revoked",
            subject_id=subject_id,
            role_name=role_name,
            tenant_id=scope.tenant_id,
            client_id=scope.client_id,
            invalidated_entries=invalidated
        )
        return AssignmentMutation(assignment=existing, changed=True, invalidated_entries=invalidated)

    async def list_assignments(self, subject_id: str) -> List[RoleAssignment]:
        return await self.store.get_assignments(subject_id)

    def _record_check(self, decision: PolicyDecision, cache_hit: bool, duration: float):
        if self.metrics is None:
            return
        self.metrics.increment_counter(
            "policy_checks_total",
            decision="allow" if decision.allow else "deny",
            reason=decision.reason
        )
        self.metrics.observe_histogram(
            "policy_check_duration_seconds",
            duration,
            cache="hit" if cache_hit else "miss"
        )

    def _record_lookup(self, result: str):
        if self.metrics is not None:
            self.metrics.increment_counter("policy_cache_lookups_total", result=result)
