"""
Policy evaluation for the RBAC engine.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import FrozenSet, List, Optional

from shared.logging import get_logger

from ..store.base import AssignmentStore
from .catalog import DEFAULT_CATALOG, RoleCatalog, UnknownRoleError, permission, requires_tenant
from .models import DenialReason, PolicyCheckRequest, PolicyDecision, RoleAssignment
from .scope import matches, scope_rank


@dataclass
class EvaluationTrace:
    """Internal bookkeeping for one evaluation; never leaves the service."""
    required_permission: str = ""
    assignments_seen: int = 0
    candidates: List[RoleAssignment] = field(default_factory=list)
    out_of_scope: List[RoleAssignment] = field(default_factory=list)
    unknown_roles: List[str] = field(default_factory=list)


class PolicyEvaluator:
    """Turns a check request plus the subject's assignments into a decision.

    Deterministic for a given store state. Holds no cache; the service
    facade is responsible for that.
    """

    def __init__(self, store: AssignmentStore, catalog: RoleCatalog = DEFAULT_CATALOG,
                 tenant_scoped_types: Optional[FrozenSet[str]] = None):
        self.store = store
        self.catalog = catalog
        self.tenant_scoped_types = tenant_scoped_types
        self.logger = get_logger("policy.evaluator")

    async def evaluate(self, request: PolicyCheckRequest, timeout: Optional[float] = None) -> PolicyDecision:
        """Evaluate ``request``; ``timeout`` bounds the store lookup in seconds."""
        start_time = time.perf_counter()
        decision = await self._evaluate(request, timeout)
        self.logger.debug(
            "Policy evaluated",
            subject_id=request.subject_id,
            action=request.action,
            resource_type=request.resource_type,
            allow=decision.allow,
            reason=decision.reason,
            evaluation_time_ms=round((time.perf_counter() - start_time) * 1000, 3)
        )
        return decision

    async def _evaluate(self, request: PolicyCheckRequest, timeout: Optional[float]) -> PolicyDecision:
        action = (request.action or "").strip()
        resource_type = request.resource_type
        if not request.subject_id or not action or not resource_type:
            return PolicyDecision.deny(DenialReason.MALFORMED_REQUEST)

        if requires_tenant(resource_type, self.tenant_scoped_types) and not request.context.tenant_id:
            return PolicyDecision.deny(DenialReason.MISSING_TENANT_CONTEXT)

        try:
            if timeout is not None:
                assignments = await asyncio.wait_for(
                    self.store.get_assignments(request.subject_id), timeout
                )
            else:
                assignments = await self.store.get_assignments(request.subject_id)
        except asyncio.TimeoutError:
            self.logger.warning(
                "Assignment lookup timed out",
                subject_id=request.subject_id,
                timeout_s=timeout
            )
            return PolicyDecision.deny(DenialReason.STORE_UNAVAILABLE)
        except Exception as e:
            # Fail closed on any store failure
            self.logger.error(
                "Assignment lookup failed",
                subject_id=request.subject_id,
                error=str(e),
                error_type=type(e).__name__
            )
            return PolicyDecision.deny(DenialReason.STORE_UNAVAILABLE)

        if not assignments:
            return PolicyDecision.deny(DenialReason.NO_ROLES_ASSIGNED)

        trace = self.collect(assignments, permission(action, resource_type), request)
        return self.decide(trace)

    def collect(self, assignments: List[RoleAssignment], required: str,
                request: PolicyCheckRequest) -> EvaluationTrace:
        """Split assignments by whether they grant ``required`` in scope."""
        trace = EvaluationTrace(required_permission=required, assignments_seen=len(assignments))

        for assignment in assignments:
            try:
                granted = self.catalog.grants(assignment.role_name, required)
            except UnknownRoleError:
                self.logger.error(
                    "Assignment references unknown role",
                    subject_id=assignment.subject_id,
                    role_name=assignment.role_name
                )
                trace.unknown_roles.append(assignment.role_name)
                continue

            if not granted:
                continue
            if matches(assignment.scope, request.context):
                trace.candidates.append(assignment)
            else:
                trace.out_of_scope.append(assignment)

        return trace

    @staticmethod
    def decide(trace: EvaluationTrace) -> PolicyDecision:
        if trace.candidates:
            # Narrowest scope names the reason; the outcome is the same either way
            chosen = min(trace.candidates, key=lambda a: (-scope_rank(a.scope), a.role_name))
            return PolicyDecision.allowed_by(chosen.role_name)

        if trace.out_of_scope:
            return PolicyDecision.deny(DenialReason.SCOPE_MISMATCH)
        if trace.unknown_roles:
            return PolicyDecision.deny(DenialReason.INTERNAL_ERROR)
        return PolicyDecision.deny(DenialReason.LACKS_PERMISSION)
