"""Audit log for staff and money-moving actions."""

from typing import Any

from gymcredit.models.audit_log import AuditLog


async def log_event(
    gym_id: str,
    actor_id: str | None,
    event_type: str,
    entity_type: str,
    entity_id: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> None:
    """Append to audit_logs collection."""
    await AuditLog(
        gym_id=gym_id,
        actor_id=actor_id,
        event_type=event_type,
        entity_type=entity_type,
        entity_id=entity_id,
        metadata=metadata or {},
    ).insert()
