"""
Scope matching: does an assignment's scope cover a request context?
"""

from .models import ClientScope, PlatformScope, RequestContext, Scope, TenantScope


def matches(assignment_scope: Scope, context: RequestContext) -> bool:
    """Return True when ``assignment_scope`` covers ``context``.

    Rules, first match wins:
      1. Platform scope matches any context, including one without a tenant.
      2. Tenant scope T matches iff ``context.tenant_id == T``; the client is
         irrelevant.
      3. Client scope (T, C) matches iff both tenant and client are equal.
      4. Anything else does not match.
    """
    if isinstance(assignment_scope, PlatformScope):
        return True

    if isinstance(assignment_scope, TenantScope):
        return context.tenant_id == assignment_scope.tenant_id

    if isinstance(assignment_scope, ClientScope):
        return (
            context.tenant_id == assignment_scope.tenant_id
            and context.client_id == assignment_scope.client_id
        )

    return False


def scope_rank(scope: Scope) -> int:
    """Narrowness of a scope: Client (2) > Tenant (1) > Platform (0)."""
    if isinstance(scope, ClientScope):
        return 2
    if isinstance(scope, TenantScope):
        return 1
    return 0
