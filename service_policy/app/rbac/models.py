"""
Data models for the RBAC policy engine.

Scopes are a closed tagged union (``PlatformScope | TenantScope |
ClientScope``) rather than a class hierarchy with behaviour; the scope
matcher switches over the three variants exhaustively.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from shared.errors import ValidationError


class SubjectType(str, Enum):
    """Kinds of actor identities."""
    USER = "user"
    SERVICE = "service"


class DenialReason(str, Enum):
    """Fixed set of reasons attached to deny decisions."""
    MALFORMED_REQUEST = "malformed_request"
    MISSING_TENANT_CONTEXT = "missing_tenant_context"
    NO_ROLES_ASSIGNED = "no_roles_assigned"
    LACKS_PERMISSION = "lacks_permission"
    SCOPE_MISMATCH = "scope_mismatch"
    STORE_UNAVAILABLE = "store_unavailable"
    INTERNAL_ERROR = "internal_error"


ALLOW_REASON_PREFIX = "allowed_by:"


class InvalidScopeError(ValidationError):
    """Raised for scope values outside the three valid forms."""

    def __init__(self, message: str = "Invalid scope", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.code = "INVALID_SCOPE"


@dataclass(frozen=True)
class PlatformScope:
    """Platform-wide scope: no tenant, no client."""

    @property
    def tenant_id(self) -> None:
        return None

    @property
    def client_id(self) -> None:
        return None


@dataclass(frozen=True)
class TenantScope:
    """All clients of a single tenant."""
    tenant_id: str

    @property
    def client_id(self) -> None:
        return None


@dataclass(frozen=True)
class ClientScope:
    """A single client inside a tenant."""
    tenant_id: str
    client_id: str


Scope = Union[PlatformScope, TenantScope, ClientScope]

PLATFORM_SCOPE = PlatformScope()


def scope_from_ids(tenant_id: Optional[str] = None, client_id: Optional[str] = None) -> Scope:
    """Build a scope from nullable ids, rejecting client-without-tenant.

    Empty strings are treated as absent.
    """
    tenant_id = tenant_id or None
    client_id = client_id or None

    if tenant_id is None and client_id is None:
        return PLATFORM_SCOPE
    if tenant_id is None:
        raise InvalidScopeError(
            "Client scope requires a tenant_id",
            details={"client_id": client_id}
        )
    if client_id is None:
        return TenantScope(tenant_id)
    return ClientScope(tenant_id, client_id)


def scope_kind(scope: Scope) -> str:
    if isinstance(scope, ClientScope):
        return "client"
    if isinstance(scope, TenantScope):
        return "tenant"
    if isinstance(scope, PlatformScope):
        return "platform"
    raise TypeError(f"Unsupported scope type: {type(scope).__name__}")


@dataclass(frozen=True)
class RequestContext:
    """Tenant/client context a check is made in; any combination is allowed."""
    tenant_id: Optional[str] = None
    client_id: Optional[str] = None


@dataclass(frozen=True)
class RoleAssignment:
    """Binding of a subject to a role within a scope.

    Identity is ``(subject_id, role_name, scope)``; ``subject_type`` and
    ``created_at`` are metadata and do not take part in equality.
    """
    subject_id: str
    role_name: str
    scope: Scope = PLATFORM_SCOPE
    subject_type: SubjectType = field(default=SubjectType.USER, compare=False)
    created_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc), compare=False
    )

    @property
    def identity(self):
        return (self.subject_id, self.role_name, self.scope)


@dataclass(frozen=True)
class PolicyCheckRequest:
    """A single authorization question.

    Only the type segment of ``resource`` ("{type}:{id}") is used for the
    decision; per-resource ACLs are not supported.
    """
    subject_id: str
    action: str
    resource: str
    context: RequestContext = field(default_factory=RequestContext)

    @property
    def resource_type(self) -> str:
        return (self.resource or "").split(":", 1)[0].strip()

    @property
    def resource_id(self) -> Optional[str]:
        parts = (self.resource or "").split(":", 1)
        return parts[1] if len(parts) == 2 else None


@dataclass(frozen=True)
class PolicyDecision:
    """Outcome of a check. Reasons are for logs and audit, not for logic."""
    allow: bool
    reason: str

    @classmethod
    def deny(cls, reason: DenialReason) -> "PolicyDecision":
        return cls(allow=False, reason=reason.value)

    @classmethod
    def allowed_by(cls, role_name: str) -> "PolicyDecision":
        return cls(allow=True, reason=f"{ALLOW_REASON_PREFIX}{role_name}")


# API models


class CheckContextModel(BaseModel):
    """Tenant/client context of a check request."""
    tenant_id: Optional[str] = Field(None, description="Tenant ID")
    client_id: Optional[str] = Field(None, description="Client ID")


class PolicyCheckRequestModel(BaseModel):
    """Request body for POST /policies/check."""
    subject: str = Field(..., description="Subject ID")
    action: str = Field(..., description="Action to perform")
    resource: str = Field(..., description="Resource as '{type}:{id}'")
    context: CheckContextModel = Field(default_factory=CheckContextModel)

    def to_request(self) -> PolicyCheckRequest:
        return PolicyCheckRequest(
            subject_id=self.subject,
            action=self.action,
            resource=self.resource,
            context=RequestContext(
                tenant_id=self.context.tenant_id or None,
                client_id=self.context.client_id or None,
            ),
        )


class PolicyCheckResponseModel(BaseModel):
    """Response body for POST /policies/check."""
    allow: bool
    reason: str


class AssignmentCreateRequest(BaseModel):
    """Request body for creating a role assignment."""
    subject_id: str = Field(..., min_length=1)
    subject_type: SubjectType = SubjectType.USER
    role_name: str = Field(..., min_length=1)
    tenant_id: Optional[str] = None
    client_id: Optional[str] = None


class AssignmentResponse(BaseModel):
    """A role assignment as exposed over the API."""
    subject_id: str
    subject_type: SubjectType
    role_name: str
    scope: str
    tenant_id: Optional[str]
    client_id: Optional[str]
    created_at: datetime

    @classmethod
    def from_assignment(cls, assignment: RoleAssignment) -> "AssignmentResponse":
        return cls(
            subject_id=assignment.subject_id,
            subject_type=assignment.subject_type,
            role_name=assignment.role_name,
            scope=scope_kind(assignment.scope),
            tenant_id=assignment.scope.tenant_id,
            client_id=assignment.scope.client_id,
            created_at=assignment.created_at,
        )


class AssignmentMutationResponse(BaseModel):
    """Result of an assignment create/delete."""
    assignment: AssignmentResponse
    changed: bool
    invalidated_entries: int


class AssignmentListResponse(BaseModel):
    subject_id: str
    assignments: List[AssignmentResponse]
    total: int


class RoleResponse(BaseModel):
    name: str
    permissions: List[str]


class InvalidationResponse(BaseModel):
    subject_id: str
    invalidated_entries: int
