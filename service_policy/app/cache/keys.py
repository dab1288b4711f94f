"""
Decision cache keys.
"""

import hashlib
import json
from typing import NamedTuple, Optional

from ..rbac.models import PolicyCheckRequest


class DecisionKey(NamedTuple):
    """Composite cache key; the resource id is deliberately absent."""
    subject_id: str
    action: str
    resource_type: str
    tenant_id: Optional[str]
    client_id: Optional[str]

    @classmethod
    def from_request(cls, request: PolicyCheckRequest) -> "DecisionKey":
        return cls(
            subject_id=request.subject_id or "",
            action=(request.action or "").strip(),
            resource_type=request.resource_type,
            tenant_id=request.context.tenant_id,
            client_id=request.context.client_id,
        )

    def digest(self) -> str:
        """Stable hash of the full tuple, safe for any id contents."""
        payload = json.dumps(list(self), separators=(",", ":"))
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def subject_digest(subject_id: str) -> str:
    return hashlib.sha256(subject_id.encode("utf-8")).hexdigest()[:32]
