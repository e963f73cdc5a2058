"""Audit log for critical actions."""

from typing import Any

from aira_credits.core.logging import get_logger
from aira_credits.models.audit_log import AuditLog

log = get_logger(__name__)


async def log_event(
    user_id: str | None,
    event_type: str,
    entity_type: str,
    entity_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    actor_id: str | None = None,
) -> None:
    """Append to audit_logs collection and mirror the event to the structured log."""
    await AuditLog(
        user_id=user_id,
        actor_id=actor_id,
        event_type=event_type,
        entity_type=entity_type,
        entity_id=entity_id,
        metadata=metadata or {},
    ).insert()
    log.info("audit", event_type=event_type, entity_type=entity_type, entity_id=entity_id, subject=user_id)
