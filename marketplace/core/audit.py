"""Audit trail for contacts, payments and ledger alerts."""

from typing import Any

from marketplace.models.audit_log import AuditLog


async def log_event(
    actor_id: str | None,
    action: str,
    entity_type: str,
    entity_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    severity: str = "info",
) -> AuditLog:
    """Append to audit_logs collection."""
    entry = AuditLog(
        actor_id=actor_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        severity=severity,
        metadata=metadata or {},
    )
    await entry.insert()
    return entry
