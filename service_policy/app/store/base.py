"""
Assignment store contract consumed by the policy evaluator.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from shared.errors import ExternalServiceError

from ..rbac.models import RoleAssignment, Scope


class StoreUnavailableError(ExternalServiceError):
    """Any I/O failure while reading or writing assignments.

    The evaluator turns this into a ``store_unavailable`` deny; it is never
    read as "no roles".
    """

    def __init__(self, message: str = "Assignment store unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__("assignment_store", message, details)


class AssignmentStore(ABC):
    """Persisted (subject, role, scope) bindings."""

    async def start(self):
        """Acquire resources."""

    async def stop(self):
        """Release resources."""

    @abstractmethod
    async def get_assignments(self, subject_id: str) -> List[RoleAssignment]:
        """All assignments of a subject in no particular order; [] when none."""

    @abstractmethod
    async def add_assignment(self, assignment: RoleAssignment) -> bool:
        """Persist an assignment. Returns False when it already existed."""

    @abstractmethod
    async def remove_assignment(self, subject_id: str, role_name: str, scope: Scope) -> bool:
        """Delete an assignment. Returns False when it did not exist."""

    async def get_stats(self) -> Dict[str, Any]:
        return {}

    async def health_check(self) -> bool:
        return True
