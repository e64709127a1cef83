from __future__ import annotations

import logging
from typing import Any

from sqlmodel import Session

from salon_rbac.domain.models import AuditAction, AuditLog, now_utc

logger = logging.getLogger(__name__)

ENTITY_USER_ROLE = "UserRole"
ENTITY_USER_PERMISSION = "UserPermission"


def _deep_merge(base: dict[str, Any], extra: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in extra.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
            continue
        merged[key] = value
    return merged


def build_audit_entry(
    *,
    tenant_id: str,
    actor_id: str | None,
    action: AuditAction,
    entity_type: str,
    entity_id: str,
    detail: dict[str, Any] | None = None,
) -> AuditLog:
    ts = now_utc()
    base_detail: dict[str, Any] = {
        "who": {"tenant_id": tenant_id, "actor_id": actor_id},
        "when": {"ts": ts.isoformat()},
        "what": {"action": action.value, "entity_type": entity_type, "target_user_id": entity_id},
    }
    return AuditLog(
        tenant_id=tenant_id,
        actor_id=actor_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        ts=ts,
        detail=_deep_merge(base_detail, detail) if detail else base_detail,
    )


def write_audit_log(session: Session, entry: AuditLog) -> AuditLog:
    """Append ``entry`` inside the caller's transaction.

    The row only becomes visible when the caller commits, so the audited
    mutation and its audit record land or roll back together.
    """
    session.add(entry)
    session.flush()
    logger.info(
        "audit %s actor=%s target=%s",
        entry.action.value,
        entry.actor_id,
        entry.entity_id,
        extra={"tenant_id": entry.tenant_id},
    )
    return entry
