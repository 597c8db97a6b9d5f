from __future__ import annotations

import csv
import io
from datetime import date

from sqlalchemy import case, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.auth import Principal, is_admin_role
from app.config import settings
from app.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from app.models import (
    Principal as PrincipalModel,
    StockCountEntry,
    StockCountEntryStatus,
    StockCountSession,
    StockCountStatus,
)
from app.services.audit_service import log_audit
from app.services.calendar_service import business_today, now_utc
from app.services.ledger_service import raw_balance
from app.services.material_service import normalize_reference

SESSION_ENTITY = 'StockCountSession'
ENTRY_ENTITY = 'StockCountEntry'

DISPLAY_INCOMPLETE = 'INCOMPLETE'


def display_status(session: StockCountSession, *, today: date | None = None) -> str:
    """Stored status, or INCOMPLETE for a past session that was never closed."""
    today = today or business_today()
    if session.status != StockCountStatus.COMPLETED and session.session_date < today:
        return DISPLAY_INCOMPLETE
    return session.status.value


def entry_as_dict(entry: StockCountEntry) -> dict:
    return {
        'session_id': entry.session_id,
        'material_reference': entry.material_ref,
        'counted_quantity': entry.counted_qty,
        'system_quantity': entry.system_qty,
        'difference': entry.difference,
        'status': entry.status.value,
        'note': entry.note,
        'counted_at': entry.counted_at,
    }


def session_as_dict(session: StockCountSession, *, entries: list[StockCountEntry] | None = None) -> dict:
    data = {
        'id': session.id,
        'session_date': session.session_date,
        'created_by': session.created_by,
        'status': session.status.value,
        'display_status': display_status(session),
        'work_days': list(session.work_days or []),
        'created_at': session.created_at,
        'completed_at': session.completed_at,
    }
    if entries is not None:
        data['entries'] = [entry_as_dict(entry) for entry in entries]
    return data


def get_session(db: Session, session_id: int) -> StockCountSession:
    session = db.get(StockCountSession, session_id)
    if session is None:
        raise NotFoundError('Stock count session not found')
    return session


def session_entries(db: Session, session_id: int) -> list[StockCountEntry]:
    return db.execute(
        select(StockCountEntry)
        .where(StockCountEntry.session_id == session_id)
        .order_by(StockCountEntry.material_ref.asc())
    ).scalars().all()


def _find_session(db: Session, *, created_by: int, session_date: date) -> StockCountSession | None:
    return db.execute(
        select(StockCountSession).where(
            StockCountSession.created_by == created_by,
            StockCountSession.session_date == session_date,
        )
    ).scalar_one_or_none()


def start_session(db: Session, *, actor: Principal, session_date: date | None = None) -> StockCountSession:
    today = business_today()
    target = session_date or today
    if target != today:
        raise ValidationError('Stock count sessions can only be started for today')

    existing = _find_session(db, created_by=actor.id, session_date=target)
    if existing is not None:
        return existing

    session = StockCountSession(
        session_date=target,
        created_by=actor.id,
        status=StockCountStatus.IN_PROGRESS,
        work_days=[],
    )
    db.add(session)
    try:
        db.flush()
    except IntegrityError as exc:
        raise ConflictError('A stock count session already exists for this day') from exc

    log_audit(
        db,
        user_id=actor.id,
        action='CREATE',
        entity=SESSION_ENTITY,
        entity_id=session.id,
        details={'session_date': target.isoformat()},
    )
    return session


def get_session_for_date(
    db: Session,
    *,
    actor: Principal,
    session_date: date | None = None,
    create: bool = False,
) -> StockCountSession | None:
    target = session_date or business_today()
    session = _find_session(db, created_by=actor.id, session_date=target)
    if session is None and create:
        session = start_session(db, actor=actor, session_date=target)
    return session


def submit_count(
    db: Session,
    *,
    actor: Principal,
    session_id: int,
    material_reference: str,
    counted_quantity: int,
    system_quantity: int | None = None,
    note: str | None = None,
) -> StockCountEntry:
    ref = normalize_reference(material_reference)
    if not ref:
        raise ValidationError('Material reference is required')
    if isinstance(counted_quantity, bool) or not isinstance(counted_quantity, int):
        raise ValidationError('Counted quantity must be a whole number')
    if counted_quantity < 0:
        raise ValidationError('Counted quantity cannot be negative')
    if system_quantity is not None and (isinstance(system_quantity, bool) or not isinstance(system_quantity, int)):
        raise ValidationError('System quantity must be a whole number')

    session = get_session(db, session_id)
    if session.created_by != actor.id:
        raise AuthorizationError('Forbidden')
    if session.status == StockCountStatus.COMPLETED:
        raise ConflictError('Stock count session is completed')

    snapshot = system_quantity if system_quantity is not None else max(raw_balance(db, ref), 0)
    difference = counted_quantity - snapshot
    status = StockCountEntryStatus.MATCH if difference == 0 else StockCountEntryStatus.MISMATCH
    counted_at = now_utc()

    entry = db.get(StockCountEntry, (session.id, ref))
    previous = entry_as_dict(entry) if entry else None
    if entry is None:
        entry = StockCountEntry(session_id=session.id, material_ref=ref)
        db.add(entry)
    entry.counted_qty = counted_quantity
    entry.system_qty = snapshot
    entry.difference = difference
    entry.status = status
    entry.note = (note or '').strip()
    entry.counted_at = counted_at

    day = business_today().isoformat()
    work_days = list(session.work_days or [])
    if day not in work_days:
        # Reassign so the JSON column is flagged dirty.
        session.work_days = sorted(work_days + [day])
    session.updated_at = counted_at
    db.flush()

    log_audit(
        db,
        user_id=actor.id,
        action='UPDATE' if previous else 'CREATE',
        entity=ENTRY_ENTITY,
        entity_id=f'{session.id}:{ref}',
        details={
            'material_reference': ref,
            'counted_quantity': counted_quantity,
            'system_quantity': snapshot,
            'difference': difference,
            'status': status.value,
            'previous_counted_quantity': previous['counted_quantity'] if previous else None,
        },
    )
    return entry


def close_session(db: Session, *, actor: Principal, session_id: int) -> StockCountSession:
    session = get_session(db, session_id)
    if session.created_by != actor.id and not is_admin_role(actor.role):
        raise AuthorizationError('Forbidden')
    if session.status == StockCountStatus.COMPLETED:
        return session

    closed_at = now_utc()
    session.status = StockCountStatus.COMPLETED
    session.completed_at = closed_at
    session.updated_at = closed_at
    db.flush()

    totals = _entry_totals(session_entries(db, session.id))
    log_audit(
        db,
        user_id=actor.id,
        action='COMPLETE',
        entity=SESSION_ENTITY,
        entity_id=session.id,
        details={'session_date': session.session_date.isoformat(), **totals},
    )
    return session


def _entry_totals(entries: list[StockCountEntry]) -> dict:
    mismatches = sum(1 for entry in entries if entry.status == StockCountEntryStatus.MISMATCH)
    return {
        'total_items': len(entries),
        'match_count': len(entries) - mismatches,
        'mismatch_count': mismatches,
        'net_difference': sum(entry.difference for entry in entries),
    }


def list_session_history(db: Session, *, limit: int | None = None) -> list[dict]:
    mismatch = func.sum(case((StockCountEntry.status == StockCountEntryStatus.MISMATCH, 1), else_=0))
    rows = db.execute(
        select(
            StockCountSession,
            PrincipalModel.username,
            PrincipalModel.display_name,
            func.count(StockCountEntry.material_ref),
            mismatch,
        )
        .join(PrincipalModel, PrincipalModel.id == StockCountSession.created_by)
        .outerjoin(StockCountEntry, StockCountEntry.session_id == StockCountSession.id)
        .group_by(StockCountSession.id, PrincipalModel.username, PrincipalModel.display_name)
        .order_by(StockCountSession.session_date.desc(), StockCountSession.id.desc())
        .limit(limit or settings.session_history_limit)
    ).all()

    today = business_today()
    return [
        {
            'id': session.id,
            'session_date': session.session_date,
            'user': display_name or username,
            'total_items': int(total_items or 0),
            'mismatch_count': int(mismatches or 0),
            'status': session.status.value,
            'display_status': display_status(session, today=today),
        }
        for session, username, display_name, total_items, mismatches in rows
    ]


def session_report(db: Session, session_id: int) -> dict:
    session = get_session(db, session_id)
    entries = session_entries(db, session.id)
    report = session_as_dict(session, entries=entries)
    report['totals'] = _entry_totals(entries)
    return report


SESSION_CSV_COLUMNS = (
    'material_reference',
    'system_quantity',
    'counted_quantity',
    'difference',
    'status',
    'note',
    'counted_at',
)


def session_csv(db: Session, session_id: int) -> str:
    session = get_session(db, session_id)
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(SESSION_CSV_COLUMNS)
    for entry in session_entries(db, session.id):
        row = entry_as_dict(entry)
        row['counted_at'] = row['counted_at'].isoformat() if row['counted_at'] else ''
        writer.writerow([row[column] for column in SESSION_CSV_COLUMNS])
    return buffer.getvalue()
