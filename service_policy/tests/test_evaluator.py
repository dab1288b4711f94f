"""
Unit tests for the policy evaluator.
"""

import asyncio

import pytest
from unittest.mock import AsyncMock

from service_policy.app.rbac.evaluator import EvaluationTrace, PolicyEvaluator
from service_policy.app.rbac.models import (
    ClientScope, DenialReason, PLATFORM_SCOPE, PolicyDecision, RoleAssignment, TenantScope
)
from service_policy.app.store.base import StoreUnavailableError
from service_policy.app.store.memory import InMemoryAssignmentStore


async def seed(store, *assignments):
    for assignment in assignments:
        await store.add_assignment(assignment)


class TestPolicyEvaluator:
    """Test cases for PolicyEvaluator."""

    @pytest.fixture
    def store(self):
        return InMemoryAssignmentStore()

    @pytest.fixture
    def evaluator(self, store):
        return PolicyEvaluator(store)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("subject,action,resource", [
        ("", "read", "prompt:p1"),
        ("u1", "", "prompt:p1"),
        ("u1", "   ", "prompt:p1"),
        ("u1", "read", ""),
        ("u1", "read", ":p1"),
    ])
    async def test_malformed_request(self, evaluator, check_request, subject, action, resource):
        decision = await evaluator.evaluate(check_request(subject, action, resource, "T1"))

        assert decision == PolicyDecision.deny(DenialReason.MALFORMED_REQUEST)

    @pytest.mark.asyncio
    async def test_malformed_checked_before_store(self, check_request):
        store = AsyncMock()
        evaluator = PolicyEvaluator(store)

        await evaluator.evaluate(check_request("", "read", "prompt:p1", "T1"))

        store.get_assignments.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_tenant_context(self, evaluator, store, check_request):
        await seed(store, RoleAssignment("u3", "super_admin"))

        decision = await evaluator.evaluate(check_request("u3", "read", "client:c1"))

        assert decision.allow is False
        assert decision.reason == "missing_tenant_context"

    @pytest.mark.asyncio
    async def test_no_roles_assigned(self, evaluator, check_request):
        decision = await evaluator.evaluate(check_request("u2", "read", "client:c1", "T1"))

        assert decision.allow is False
        assert decision.reason == "no_roles_assigned"

    @pytest.mark.asyncio
    async def test_lacks_permission(self, evaluator, store, check_request):
        await seed(store, RoleAssignment("u1", "viewer", TenantScope("T1")))

        decision = await evaluator.evaluate(check_request("u1", "write", "prompt:p1", "T1"))

        assert decision.allow is False
        assert decision.reason == "lacks_permission"

    @pytest.mark.asyncio
    async def test_scope_mismatch(self, evaluator, store, check_request):
        await seed(store, RoleAssignment("u1", "client_admin", ClientScope("T1", "C1")))

        decision = await evaluator.evaluate(check_request("u1", "write", "prompt:p1", "T1", "C2"))

        assert decision.allow is False
        assert decision.reason == "scope_mismatch"

    @pytest.mark.asyncio
    async def test_scope_mismatch_wins_over_lacks_permission(self, evaluator, store, check_request):
        await seed(
            store,
            RoleAssignment("u1", "viewer", TenantScope("T1")),
            RoleAssignment("u1", "client_admin", ClientScope("T2", "C1")),
        )

        decision = await evaluator.evaluate(check_request("u1", "write", "prompt:p1", "T1"))

        assert decision.reason == "scope_mismatch"

    @pytest.mark.asyncio
    async def test_allow_names_role(self, evaluator, store, check_request):
        await seed(store, RoleAssignment("u1", "client_admin", ClientScope("T1", "C1")))

        decision = await evaluator.evaluate(check_request("u1", "write", "prompt:p1", "T1", "C1"))

        assert decision == PolicyDecision(allow=True, reason="allowed_by:client_admin")

    @pytest.mark.asyncio
    async def test_allow_prefers_narrowest_scope(self, evaluator, store, check_request):
        await seed(
            store,
            RoleAssignment("u1", "super_admin"),
            RoleAssignment("u1", "viewer", TenantScope("T1")),
            RoleAssignment("u1", "agent", ClientScope("T1", "C1")),
        )

        client_decision = await evaluator.evaluate(check_request("u1", "read", "prompt:p1", "T1", "C1"))
        tenant_decision = await evaluator.evaluate(check_request("u1", "read", "prompt:p1", "T1", "C9"))
        platform_decision = await evaluator.evaluate(check_request("u1", "read", "prompt:p1", "T9"))

        assert client_decision.reason == "allowed_by:agent"
        assert tenant_decision.reason == "allowed_by:viewer"
        assert platform_decision.reason == "allowed_by:super_admin"

    @pytest.mark.asyncio
    async def test_allow_tie_broken_by_role_name(self, evaluator, store, check_request):
        await seed(
            store,
            RoleAssignment("u1", "viewer", TenantScope("T1")),
            RoleAssignment("u1", "tenant_admin", TenantScope("T1")),
        )

        decision = await evaluator.evaluate(check_request("u1", "read", "client:c1", "T1"))

        assert decision.reason == "allowed_by:tenant_admin"

    @pytest.mark.asyncio
    async def test_permissions_are_additive(self, evaluator, store, check_request):
        await seed(
            store,
            RoleAssignment("u1", "viewer", TenantScope("T1")),
            RoleAssignment("u1", "client_admin", ClientScope("T1", "C1")),
        )

        decision = await evaluator.evaluate(check_request("u1", "delete", "workflow:w1", "T1", "C1"))

        assert decision.allow is True

    @pytest.mark.asyncio
    async def test_resource_id_is_ignored(self, evaluator, store, check_request):
        await seed(store, RoleAssignment("u1", "viewer", TenantScope("T1")))

        first = await evaluator.evaluate(check_request("u1", "read", "prompt:p1", "T1"))
        second = await evaluator.evaluate(check_request("u1", "read", "prompt", "T1"))

        assert first == second

    @pytest.mark.asyncio
    async def test_unknown_role_is_internal_error(self, evaluator, store, check_request):
        await seed(store, RoleAssignment("u1", "legacy_owner", TenantScope("T1")))

        decision = await evaluator.evaluate(check_request("u1", "read", "prompt:p1", "T1"))

        assert decision.allow is False
        assert decision.reason == "internal_error"

    @pytest.mark.asyncio
    async def test_unknown_role_does_not_block_valid_grant(self, evaluator, store, check_request):
        await seed(
            store,
            RoleAssignment("u1", "legacy_owner", TenantScope("T1")),
            RoleAssignment("u1", "viewer", TenantScope("T1")),
        )

        decision = await evaluator.evaluate(check_request("u1", "read", "prompt:p1", "T1"))

        assert decision.reason == "allowed_by:viewer"

    @pytest.mark.asyncio
    async def test_store_error_fails_closed(self, check_request):
        store = InMemoryAssignmentStore()
        store.get_assignments = AsyncMock(side_effect=StoreUnavailableError())
        evaluator = PolicyEvaluator(store)

        decision = await evaluator.evaluate(check_request("u4", "read", "prompt:p1", "T1"))

        assert decision == PolicyDecision.deny(DenialReason.STORE_UNAVAILABLE)

    @pytest.mark.asyncio
    async def test_unexpected_store_error_fails_closed(self, check_request):
        store = InMemoryAssignmentStore()
        store.get_assignments = AsyncMock(side_effect=RuntimeError("boom"))
        evaluator = PolicyEvaluator(store)

        decision = await evaluator.evaluate(check_request("u4", "read", "prompt:p1", "T1"))

        assert decision.reason == "store_unavailable"

    @pytest.mark.asyncio
    async def test_store_timeout_fails_closed(self, check_request):
        async def slow_lookup(subject_id):
            await asyncio.sleep(1)
            return [RoleAssignment(subject_id, "super_admin")]

        store = InMemoryAssignmentStore()
        store.get_assignments = slow_lookup
        evaluator = PolicyEvaluator(store)

        decision = await evaluator.evaluate(check_request("u4", "read", "prompt:p1", "T1"), timeout=0.01)

        assert decision.allow is False
        assert decision.reason == "store_unavailable"


class TestDecide:
    """Test cases for reason precedence."""

    def test_empty_trace_lacks_permission(self):
        assert PolicyEvaluator.decide(EvaluationTrace()).reason == "lacks_permission"

    def test_precedence(self):
        assignment = RoleAssignment("u1", "viewer", PLATFORM_SCOPE)
        trace = EvaluationTrace(out_of_scope=[assignment], unknown_roles=["x"])
        assert PolicyEvaluator.decide(trace).reason == "scope_mismatch"

        trace = EvaluationTrace(unknown_roles=["x"])
        assert PolicyEvaluator.decide(trace).reason == "internal_error"

        trace = EvaluationTrace(candidates=[assignment], out_of_scope=[assignment], unknown_roles=["x"])
        assert PolicyEvaluator.decide(trace).allow is True
