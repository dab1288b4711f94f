"""
In-process assignment store.
"""

from typing import Any, Dict, List, Tuple

from shared.logging import get_logger

from ..rbac.models import RoleAssignment, Scope
from .base import AssignmentStore


class InMemoryAssignmentStore(AssignmentStore):
    """Dictionary-backed store keyed by subject, then assignment identity."""

    def __init__(self):
        self.logger = get_logger("policy.store.memory")
        self._assignments: Dict[str, Dict[Tuple[str, str, Scope], RoleAssignment]] = {}

    async def get_assignments(self, subject_id: str) -> List[RoleAssignment]:
        return list(self._assignments.get(subject_id, {}).values())

    async def add_assignment(self, assignment: RoleAssignment) -> bool:
        bucket = self._assignments.setdefault(assignment.subject_id, {})
        if assignment.identity in bucket:
            return False
        bucket[assignment.identity] = assignment
        self.logger.info(
            "Assignment added",
            subject_id=assignment.subject_id,
            role_name=assignment.role_name
        )
        return True

    async def remove_assignment(self, subject_id: str, role_name: str, scope: Scope) -> bool:
        bucket = self._assignments.get(subject_id)
        if not bucket or bucket.pop((subject_id, role_name, scope), None) is None:
            return False
        if not bucket:
            del self._assignments[subject_id]
        self.logger.info("Assignment removed", subject_id=subject_id, role_name=role_name)
        return True

    async def get_stats(self) -> Dict[str, Any]:
        return {
            "backend": "memory",
            "subjects": len(self._assignments),
            "assignments": sum(len(b) for b in self._assignments.values()),
        }
