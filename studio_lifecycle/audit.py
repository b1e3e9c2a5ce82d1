"""
Audit recorder: append-only entries written inside the same store unit as the change they describe.
"""
import logging
from enum import Enum
from typing import Any

from studio_lifecycle.errors import LifecycleError, StoreError
from studio_lifecycle.metrics import audit_entries_total
from studio_lifecycle.models import AuditLog, Entity
from studio_lifecycle.statuses import EntityType
from studio_lifecycle.store.base import StoreUnit

logger = logging.getLogger(__name__)


def transition_action(entity_type: EntityType, to_status: Enum) -> str:
    """e.g. appointment.CONFIRMED"""
    return f"{EntityType(entity_type).value}.{to_status.value}"


def transition_entry(
    entity: Entity,
    from_status: Enum,
    to_status: Enum,
    actor_user_id: str | None,
    metadata: dict[str, Any] | None,
) -> AuditLog:
    return AuditLog(
        action=transition_action(entity.entity_type, to_status),
        resource=entity.entity_type.value,
        resource_id=entity.id,
        user_id=actor_user_id,
        details={
            "entityType": entity.entity_type.value,
            "entityId": entity.id,
            "fromStatus": from_status.value,
            "toStatus": to_status.value,
            "actorUserId": actor_user_id,
            "metadata": dict(metadata or {}),
        },
    )


def creation_entry(entity: Entity, actor_user_id: str | None, metadata: dict[str, Any] | None = None) -> AuditLog:
    status = getattr(entity, "status", None)
    return AuditLog(
        action=f"{entity.entity_type.value}.created",
        resource=entity.entity_type.value,
        resource_id=entity.id,
        user_id=actor_user_id,
        details={
            "entityType": entity.entity_type.value,
            "entityId": entity.id,
            "status": status.value if status is not None else None,
            "actorUserId": actor_user_id,
            "metadata": dict(metadata or {}),
        },
    )


class AuditRecorder:
    """Writes audit rows. Never reads, updates or deletes them."""

    async def record(self, unit: StoreUnit, entry: AuditLog) -> None:
        try:
            await unit.append_audit(entry)
        except LifecycleError:
            raise
        except Exception as e:
            logger.error("Audit append failed action=%s resource_id=%s: %s", entry.action, entry.resource_id, e)
            raise StoreError(f"audit append failed: {e}") from e
        audit_entries_total.labels(action_kind=entry.action.rsplit(".", 1)[-1]).inc()
