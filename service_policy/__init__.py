"""
Policy Service package.

Answers one question for every other service: may subject S perform
action A on resource R in tenant T / client C? It provides:

- app.main: API surface for policy checks, role assignments and health.
- app.facade: Cache-fronted checks plus assignment mutations.
- app.rbac: Role catalog, scope matcher and the policy evaluator.
- app.store: Assignment persistence (in-memory, PostgreSQL).
- app.cache: Decision caching with per-subject invalidation.
- app.audit: Audit events for decisions (log, Kafka).

Guidelines:
- Fail closed: any store failure or timeout is a deny.
- Invalidate a subject before acknowledging a change to its assignments.
- Keep evaluation deterministic and observable (metrics + logs).
"""
