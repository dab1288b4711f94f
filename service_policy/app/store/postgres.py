"""
PostgreSQL assignment store.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

import asyncpg

from shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenException
from shared.logging import get_logger

from ..rbac.models import InvalidScopeError, RoleAssignment, Scope, SubjectType, scope_from_ids
from .base import AssignmentStore, StoreUnavailableError

T = TypeVar("T")

_STORE_ERRORS = (
    asyncpg.PostgresError,
    asyncpg.InterfaceError,
    OSError,
    asyncio.TimeoutError,
    CircuitBreakerOpenException,
)


class PostgresAssignmentStore(AssignmentStore):
    """asyncpg-backed store for role assignments."""

    def __init__(self, dsn: str, breaker: Optional[CircuitBreaker] = None,
                 min_size: int = 2, max_size: int = 10, command_timeout: float = 5.0):
        self.dsn = dsn
        self.logger = get_logger("policy.store.postgres")
        self.pool: Optional[asyncpg.Pool] = None
        self.breaker = breaker or CircuitBreaker(name="assignment_store")
        self._pool_kwargs = {
            "min_size": min_size,
            "max_size": max_size,
            "command_timeout": command_timeout,
        }

    async def start(self):
        """Open the connection pool and ensure the schema exists."""
        try:
            self.pool = await asyncpg.create_pool(self.dsn, **self._pool_kwargs)
            await self._create_tables()
        except _STORE_ERRORS as e:
            self.logger.error("Failed to start PostgreSQL store", error=str(e))
            raise StoreUnavailableError("Failed to start PostgreSQL store", {"error": str(e)}) from e

        self.logger.info("PostgreSQL assignment store started")

    async def stop(self):
        if self.pool:
            await self.pool.close()
            self.pool = None
            self.logger.info("PostgreSQL assignment store stopped")

    async def _create_tables(self):
        async with self.pool.acquire() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS role_assignments (
                    id BIGSERIAL PRIMARY KEY,
                    subject_id VARCHAR(255) NOT NULL,
                    subject_type VARCHAR(16) NOT NULL DEFAULT 'user',
                    role_name VARCHAR(64) NOT NULL,
                    tenant_id VARCHAR(255),
                    client_id VARCHAR(255),
                    created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
                    CONSTRAINT role_assignments_client_requires_tenant
                        CHECK (client_id IS NULL OR tenant_id IS NOT NULL)
                );
            """)
            await conn.execute("""
                CREATE UNIQUE INDEX IF NOT EXISTS idx_role_assignments_identity
                ON role_assignments (subject_id, role_name, COALESCE(tenant_id, ''), COALESCE(client_id, ''));
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_role_assignments_subject ON role_assignments(subject_id);
            """)

    async def _guarded(self, operation: str, func: Callable[..., Awaitable[T]], *args) -> T:
        """Run a pool operation behind the circuit breaker, mapping failures."""
        if self.pool is None:
            raise StoreUnavailableError("Store not started", {"operation": operation})
        try:
            return await self.breaker.call(func, *args)
        except _STORE_ERRORS as e:
            self.logger.error("Assignment store failure", operation=operation, error=str(e))
            raise StoreUnavailableError(details={"operation": operation, "error": str(e)}) from e

    async def get_assignments(self, subject_id: str) -> List[RoleAssignment]:
        rows = await self._guarded("get_assignments", self._fetch_assignments, subject_id)

        assignments = []
        for row in rows:
            try:
                assignments.append(self._row_to_assignment(row))
            except (InvalidScopeError, ValueError) as e:
                # Dropping a corrupt row can only narrow access
                self.logger.error("Skipping invalid assignment row", subject_id=subject_id, error=str(e))
        return assignments

    async def _fetch_assignments(self, subject_id: str):
        async with self.pool.acquire() as conn:
            return await conn.fetch("""
                SELECT subject_id, subject_type, role_name, tenant_id, client_id, created_at
                FROM role_assignments
                WHERE subject_id = $1
            """, subject_id)

    async def add_assignment(self, assignment: RoleAssignment) -> bool:
        result = await self._guarded("add_assignment", self._insert_assignment, assignment)
        created = result == "INSERT 0 1"
        if created:
            self.logger.info(
                "Assignment saved",
                subject_id=assignment.subject_id,
                role_name=assignment.role_name
            )
        return created

    async def _insert_assignment(self, assignment: RoleAssignment) -> str:
        async with self.pool.acquire() as conn:
            return await conn.execute("""
                INSERT INTO role_assignments (
                    subject_id, subject_type, role_name, tenant_id, client_id, created_at
                ) VALUES ($1, $2, $3, $4, $5, $6)
                ON CONFLICT DO NOTHING
            """,
                assignment.subject_id, assignment.subject_type.value, assignment.role_name,
                assignment.scope.tenant_id, assignment.scope.client_id, assignment.created_at
            )

    async def remove_assignment(self, subject_id: str, role_name: str, scope: Scope) -> bool:
        result = await self._guarded("remove_assignment", self._delete_assignment, subject_id, role_name, scope)
        if result == "DELETE 1":
            self.logger.info("Assignment deleted", subject_id=subject_id, role_name=role_name)
            return True
        return False

    async def _delete_assignment(self, subject_id: str, role_name: str, scope: Scope) -> str:
        async with self.pool.acquire() as conn:
            return await conn.execute("""
                DELETE FROM role_assignments
                WHERE subject_id = $1
                  AND role_name = $2
                  AND tenant_id IS NOT DISTINCT FROM $3
                  AND client_id IS NOT DISTINCT FROM $4
            """, subject_id, role_name, scope.tenant_id, scope.client_id)

    async def get_stats(self) -> Dict[str, Any]:
        try:
            row = await self._guarded("get_stats", self._fetch_stats)
            stats = dict(row) if row else {}
        except StoreUnavailableError as e:
            stats = {"error": e.message}
        stats["backend"] = "postgres"
        stats["circuit_breaker"] = self.breaker.get_state()
        return stats

    async def _fetch_stats(self):
        async with self.pool.acquire() as conn:
            return await conn.fetchrow("""
                SELECT
                    COUNT(*) AS assignments,
                    COUNT(DISTINCT subject_id) AS subjects,
                    COUNT(*) FILTER (WHERE tenant_id IS NULL) AS platform_assignments,
                    COUNT(*) FILTER (WHERE tenant_id IS NOT NULL AND client_id IS NULL) AS tenant_assignments,
                    COUNT(*) FILTER (WHERE client_id IS NOT NULL) AS client_assignments
                FROM role_assignments
            """)

    @staticmethod
    def _row_to_assignment(row) -> RoleAssignment:
        return RoleAssignment(
            subject_id=row["subject_id"],
            role_name=row["role_name"],
            scope=scope_from_ids(row["tenant_id"], row["client_id"]),
            subject_type=SubjectType(row["subject_type"]),
            created_at=row["created_at"],
        )

    async def health_check(self) -> bool:
        if self.pool is None:
            return False
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
            return True
        except _STORE_ERRORS:
            return False
