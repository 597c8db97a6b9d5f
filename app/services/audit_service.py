from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models import AuditEntry, Principal


def log_audit(
    db: Session,
    *,
    user_id: int | None,
    action: str,
    entity: str,
    entity_id: str | int | None,
    details: dict | None = None,
) -> AuditEntry:
    """Write an audit entry inside the caller's transaction.

    Errors propagate so the caller's business mutation rolls back with it.
    """
    entry = AuditEntry(
        user_id=user_id,
        action=action,
        entity=entity,
        entity_id=str(entity_id) if entity_id is not None else None,
        details=details or {},
    )
    db.add(entry)
    db.flush()
    return entry


def list_audit_entries(db: Session, *, limit: int) -> list[dict]:
    rows = db.execute(
        select(AuditEntry, Principal.username, Principal.display_name)
        .outerjoin(Principal, Principal.id == AuditEntry.user_id)
        .order_by(AuditEntry.created_at.desc(), AuditEntry.id.desc())
        .limit(limit)
    ).all()
    return [
        {
            'id': entry.id,
            'user_id': entry.user_id,
            'user_name': (display_name or username) if entry.user_id is not None else 'System',
            'action': entry.action,
            'entity': entry.entity,
            'entity_id': entry.entity_id,
            'details': entry.details,
            'created_at': entry.created_at,
        }
        for entry, username, display_name in rows
    ]


def list_entity_history(db: Session, *, entity: str, entity_id: str | int) -> list[AuditEntry]:
    return db.execute(
        select(AuditEntry)
        .where(AuditEntry.entity == entity, AuditEntry.entity_id == str(entity_id))
        .order_by(AuditEntry.id.asc())
    ).scalars().all()
