from __future__ import annotations

from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from manchengo.app.db.models.models_v1 import AuditLog, User


def record(
    db: Session,
    *,
    actor: User | None,
    action: str,
    entity_type: str,
    entity_id: Any,
    meta: dict[str, Any] | None = None,
) -> AuditLog:
    """Écrit une ligne d'audit dans la transaction courante (pas de commit)."""
    entry = AuditLog(
        actor_id=actor.id if actor else None,
        actor_role=actor.role.value if actor else None,
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id),
        meta=meta or {},
    )
    db.add(entry)
    db.flush()
    return entry


def find_by_idempotency_key(
    db: Session, *, action: str, entity_type: str, entity_id: Any, key: str
) -> AuditLog | None:
    # La clé est stockée dans meta (JSON) : filtrage côté Python sur les lignes de l'entité
    rows = db.execute(
        select(AuditLog)
        .where(AuditLog.action == action)
        .where(AuditLog.entity_type == entity_type)
        .where(AuditLog.entity_id == str(entity_id))
        .order_by(AuditLog.id.desc())
    ).scalars()
    for row in rows:
        if (row.meta or {}).get("idempotency_key") == key:
            return row
    return None
