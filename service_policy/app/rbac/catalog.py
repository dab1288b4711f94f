"""
Static role and permission catalog.

Roles are defined at deploy time. The catalog is built once at import and
exposed through read-only mappings of frozensets; there are no setters.
"""

from types import MappingProxyType
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional

from shared.errors import ValidationError


SUPER_ADMIN = "super_admin"
TENANT_ADMIN = "tenant_admin"
CLIENT_ADMIN = "client_admin"
AGENT = "agent"
VIEWER = "viewer"

RESOURCE_TYPES = ("tenant", "client", "prompt", "workflow", "user", "role_assignment", "audit")

# Resource types that can only be addressed inside a tenant
TENANT_SCOPED_RESOURCE_TYPES: FrozenSet[str] = frozenset({"client", "prompt", "workflow", "user"})


class UnknownRoleError(ValidationError):
    """Raised when a role name is not part of the catalog."""

    def __init__(self, role_name: str):
        super().__init__(f"Unknown role '{role_name}'", details={"role_name": role_name})
        self.code = "UNKNOWN_ROLE"
        self.role_name = role_name


def permission(action: str, resource_type: str) -> str:
    """Build the ``{action}:{resource_type}`` permission string."""
    return f"{action}:{resource_type}"


def _grant(actions: Iterable[str], resource_types: Iterable[str]) -> FrozenSet[str]:
    resource_types = tuple(resource_types)
    return frozenset(permission(a, r) for a in actions for r in resource_types)


_BUILTIN_ROLES: Dict[str, FrozenSet[str]] = {
    SUPER_ADMIN: _grant(("read", "write", "delete", "manage"), RESOURCE_TYPES),
    TENANT_ADMIN: (
        _grant(("read",), ("tenant", "audit"))
        | _grant(("read", "write", "delete", "manage"), ("client", "prompt", "workflow", "user"))
        | _grant(("read", "write", "delete"), ("role_assignment",))
    ),
    CLIENT_ADMIN: (
        _grant(("read", "write"), ("client", "user"))
        | _grant(("read", "write", "delete"), ("prompt", "workflow"))
        | _grant(("read",), ("role_assignment",))
    ),
    AGENT: (
        _grant(("read",), ("client",))
        | _grant(("read", "write"), ("prompt",))
        | _grant(("read", "execute"), ("workflow",))
    ),
    VIEWER: _grant(("read",), ("client", "prompt", "workflow")),
}


class RoleCatalog:
    """Immutable mapping of role name to permission set."""

    def __init__(self, roles: Mapping[str, Iterable[str]]):
        self._roles: Mapping[str, FrozenSet[str]] = MappingProxyType(
            {name: frozenset(perms) for name, perms in roles.items()}
        )

    @property
    def roles(self) -> Mapping[str, FrozenSet[str]]:
        return self._roles

    def __contains__(self, role_name: object) -> bool:
        return role_name in self._roles

    def role_names(self) -> List[str]:
        return sorted(self._roles)

    def permissions_for(self, role_name: str) -> FrozenSet[str]:
        """Resolve a role to its permissions; unknown names raise UnknownRoleError."""
        try:
            return self._roles[role_name]
        except KeyError:
            raise UnknownRoleError(role_name) from None

    def grants(self, role_name: str, required: str) -> bool:
        return required in self.permissions_for(role_name)

    def validate_role(self, role_name: str) -> str:
        if role_name not in self._roles:
            raise UnknownRoleError(role_name)
        return role_name


DEFAULT_CATALOG = RoleCatalog(_BUILTIN_ROLES)


def requires_tenant(resource_type: str, scoped_types: Optional[FrozenSet[str]] = None) -> bool:
    """Whether a resource type can only be checked with a tenant_id present."""
    return resource_type in (scoped_types if scoped_types is not None else TENANT_SCOPED_RESOURCE_TYPES)
