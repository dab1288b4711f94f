"""
Shared fixtures for policy service tests.
"""

import pytest

from service_policy.app.rbac.models import PolicyCheckRequest, RequestContext


def make_request(subject_id, action, resource, tenant_id=None, client_id=None):
    return PolicyCheckRequest(
        subject_id=subject_id,
        action=action,
        resource=resource,
        context=RequestContext(tenant_id=tenant_id, client_id=client_id),
    )


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def check_request():
    """Factory for PolicyCheckRequest objects."""
    return make_request


@pytest.fixture
def clock():
    return FakeClock()
