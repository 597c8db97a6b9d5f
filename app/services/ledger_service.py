from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date

from sqlalchemy import case, func, insert, or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from app.auth import Principal, is_admin_role
from app.config import settings
from app.errors import AuthorizationError, InsufficientStock, NotFoundError, ValidationError
from app.models import MaterialLedgerLock, MovementDirection, MovementRecord, Principal as PrincipalModel
from app.services.audit_service import log_audit
from app.services.calendar_service import business_today, calendar_fields, now_utc
from app.services.material_service import normalize_reference
from app.services.permission_service import permission_service

logger = logging.getLogger(__name__)

MOVEMENT_ENTITY = 'MovementRecord'


@dataclass(frozen=True)
class MovementMetadata:
    company: str
    waybill_reference: str = ''
    note: str = ''
    occurred_date: date | None = None


@dataclass(frozen=True)
class MovementFilters:
    search: str | None = None
    material_reference: str | None = None
    direction: MovementDirection | None = None
    date_from: date | None = None
    date_to: date | None = None
    include_deleted: bool = False


@dataclass(frozen=True)
class Page:
    page: int = 1
    page_size: int = 20

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size


def validate_page(page: int, page_size: int) -> Page:
    if page < 1:
        raise ValidationError('Page must be 1 or greater')
    if page_size < 1 or page_size > settings.max_page_size:
        raise ValidationError(f'Page size must be between 1 and {settings.max_page_size}')
    return Page(page=page, page_size=page_size)


def parse_direction(value: MovementDirection | str) -> MovementDirection:
    if isinstance(value, MovementDirection):
        return value
    try:
        return MovementDirection(str(value).strip().upper())
    except ValueError as exc:
        raise ValidationError(f'Unknown movement direction: {value}') from exc


def signed_quantity():
    return case(
        (MovementRecord.direction == MovementDirection.ENTRY, MovementRecord.quantity),
        else_=-MovementRecord.quantity,
    )


def raw_balance(db: Session, material_ref: str) -> int:
    total = db.execute(
        select(func.coalesce(func.sum(signed_quantity()), 0)).where(
            MovementRecord.material_ref == material_ref,
            MovementRecord.soft_deleted_at.is_(None),
        )
    ).scalar_one()
    return int(total)


def lock_material_ledger(db: Session, material_ref: str) -> int:
    """Serialize ledger mutations for one material until the transaction ends.

    The version bump is a write, so it holds a row lock on PostgreSQL and the
    database write lock on SQLite; balances read after it are final for this
    transaction.
    """
    dialect = db.get_bind().dialect.name
    if dialect == 'postgresql':
        stmt = postgresql.insert(MaterialLedgerLock).on_conflict_do_nothing(index_elements=['material_ref'])
        db.execute(stmt.values(material_ref=material_ref, version=0))
    elif dialect == 'sqlite':
        stmt = sqlite.insert(MaterialLedgerLock).on_conflict_do_nothing(index_elements=['material_ref'])
        db.execute(stmt.values(material_ref=material_ref, version=0))
    elif db.get(MaterialLedgerLock, material_ref) is None:
        db.execute(insert(MaterialLedgerLock).values(material_ref=material_ref, version=0))

    db.execute(
        update(MaterialLedgerLock)
        .where(MaterialLedgerLock.material_ref == material_ref)
        .values(version=MaterialLedgerLock.version + 1, updated_at=now_utc())
        .execution_options(synchronize_session=False)
    )
    return db.execute(
        select(MaterialLedgerLock.version).where(MaterialLedgerLock.material_ref == material_ref)
    ).scalar_one()


def _validated_input(material_reference: str, quantity: int, metadata: MovementMetadata) -> tuple[str, int, str]:
    ref = normalize_reference(material_reference)
    if not ref:
        raise ValidationError('Material reference is required')
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise ValidationError('Quantity must be a whole number')
    if quantity <= 0:
        raise ValidationError('Quantity must be greater than zero')
    company = (metadata.company or '').strip()
    if not company:
        raise ValidationError('Company is required')
    return ref, quantity, company


def movement_as_dict(record: MovementRecord) -> dict:
    return {
        'id': record.id,
        'material_reference': record.material_ref,
        'direction': record.direction.value,
        'quantity': record.quantity,
        'occurred_date': record.occurred_date,
        'year': record.year,
        'month': record.month,
        'week': record.week,
        'company': record.company,
        'waybill_reference': record.waybill_ref,
        'note': record.note,
        'modified_by': record.modified_by,
        'soft_deleted_at': record.soft_deleted_at,
        'created_at': record.created_at,
    }


def _append(
    db: Session,
    *,
    actor: Principal,
    material_ref: str,
    direction: MovementDirection,
    quantity: int,
    company: str,
    metadata: MovementMetadata,
    balance_before: int,
) -> MovementRecord:
    occurred = metadata.occurred_date or business_today()
    fields = calendar_fields(occurred)
    record = MovementRecord(
        material_ref=material_ref,
        direction=direction,
        quantity=quantity,
        occurred_date=occurred,
        year=fields.year,
        month=fields.month,
        week=fields.week,
        company=company,
        waybill_ref=(metadata.waybill_reference or '').strip(),
        note=(metadata.note or '').strip(),
        modified_by=actor.id,
    )
    db.add(record)
    db.flush()

    delta = quantity if direction == MovementDirection.ENTRY else -quantity
    log_audit(
        db,
        user_id=actor.id,
        action='CREATE',
        entity=MOVEMENT_ENTITY,
        entity_id=record.id,
        details={
            'material_reference': material_ref,
            'direction': direction.value,
            'quantity': quantity,
            'company': company,
            'waybill_reference': record.waybill_ref,
            'occurred_date': occurred.isoformat(),
            'balance_before': balance_before,
            'balance_after': balance_before + delta,
        },
    )
    return record


def record_entry(
    db: Session,
    *,
    actor: Principal,
    material_reference: str,
    quantity: int,
    metadata: MovementMetadata,
) -> MovementRecord:
    ref, qty, company = _validated_input(material_reference, quantity, metadata)
    lock_material_ledger(db, ref)
    balance = raw_balance(db, ref)
    return _append(
        db,
        actor=actor,
        material_ref=ref,
        direction=MovementDirection.ENTRY,
        quantity=qty,
        company=company,
        metadata=metadata,
        balance_before=balance,
    )


def record_exit(
    db: Session,
    *,
    actor: Principal,
    material_reference: str,
    quantity: int,
    metadata: MovementMetadata,
) -> MovementRecord:
    ref, qty, company = _validated_input(material_reference, quantity, metadata)
    lock_material_ledger(db, ref)
    balance = raw_balance(db, ref)
    if qty > balance:
        available = max(balance, 0)
        logger.info('Rejected exit of %s x%s: only %s available', ref, qty, available)
        raise InsufficientStock(material_reference=ref, available=available, requested=qty)
    return _append(
        db,
        actor=actor,
        material_ref=ref,
        direction=MovementDirection.EXIT,
        quantity=qty,
        company=company,
        metadata=metadata,
        balance_before=balance,
    )


def record_movement(
    db: Session,
    *,
    actor: Principal,
    direction: MovementDirection | str,
    material_reference: str,
    quantity: int,
    metadata: MovementMetadata,
) -> MovementRecord:
    parsed = parse_direction(direction)
    if parsed == MovementDirection.ENTRY:
        return record_entry(db, actor=actor, material_reference=material_reference, quantity=quantity, metadata=metadata)
    return record_exit(db, actor=actor, material_reference=material_reference, quantity=quantity, metadata=metadata)


def get_movement(db: Session, *, movement_id: int, include_deleted: bool = False) -> MovementRecord:
    record = db.get(MovementRecord, movement_id)
    if record is None or (record.soft_deleted_at is not None and not include_deleted):
        raise NotFoundError('Movement not found')
    return record


def _locked_record(db: Session, movement_id: int) -> MovementRecord:
    record = get_movement(db, movement_id=movement_id, include_deleted=True)
    lock_material_ledger(db, record.material_ref)
    # Another transaction may have flipped the record before the lock was ours.
    db.refresh(record)
    return record


def _guard_balance_drop(db: Session, record: MovementRecord) -> None:
    balance = raw_balance(db, record.material_ref)
    if record.quantity > balance:
        available = max(balance, 0)
        logger.info(
            'Rejected change to movement %s: %s would drop below zero (%s available)',
            record.id,
            record.material_ref,
            available,
        )
        raise InsufficientStock(material_reference=record.material_ref, available=available, requested=record.quantity)


def soft_delete(db: Session, *, actor: Principal, movement_id: int) -> MovementRecord:
    if not permission_service.has_permission(db, actor.role.value, 'inventory.delete'):
        raise AuthorizationError('Forbidden')

    record = _locked_record(db, movement_id)
    if record.soft_deleted_at is not None:
        return record
    if record.direction == MovementDirection.ENTRY:
        _guard_balance_drop(db, record)

    record.soft_deleted_at = now_utc()
    db.flush()

    log_audit(
        db,
        user_id=actor.id,
        action='DELETE_SOFT',
        entity=MOVEMENT_ENTITY,
        entity_id=record.id,
        details={
            'material_reference': record.material_ref,
            'direction': record.direction.value,
            'quantity': record.quantity,
        },
    )
    return record


def restore(db: Session, *, actor: Principal, movement_id: int) -> MovementRecord:
    if not is_admin_role(actor.role):
        raise AuthorizationError('Forbidden')

    record = _locked_record(db, movement_id)
    if record.soft_deleted_at is None:
        return record
    if record.direction == MovementDirection.EXIT:
        _guard_balance_drop(db, record)

    record.soft_deleted_at = None
    db.flush()

    log_audit(
        db,
        user_id=actor.id,
        action='RESTORE',
        entity=MOVEMENT_ENTITY,
        entity_id=record.id,
        details={
            'material_reference': record.material_ref,
            'direction': record.direction.value,
            'quantity': record.quantity,
        },
    )
    return record


def apply_movement_filters(query, filters: MovementFilters):
    if not filters.include_deleted:
        query = query.where(MovementRecord.soft_deleted_at.is_(None))
    if filters.material_reference:
        query = query.where(MovementRecord.material_ref == normalize_reference(filters.material_reference))
    if filters.direction is not None:
        query = query.where(MovementRecord.direction == filters.direction)
    if filters.date_from is not None:
        query = query.where(MovementRecord.occurred_date >= filters.date_from)
    if filters.date_to is not None:
        query = query.where(MovementRecord.occurred_date <= filters.date_to)
    term = (filters.search or '').strip()
    if term:
        pattern = f'%{term}%'
        query = query.where(
            or_(
                MovementRecord.material_ref.ilike(pattern),
                MovementRecord.company.ilike(pattern),
                MovementRecord.waybill_ref.ilike(pattern),
            )
        )
    if filters.date_from and filters.date_to and filters.date_from > filters.date_to:
        raise ValidationError('date_from must not be after date_to')
    return query


def list_raw(db: Session, *, filters: MovementFilters, page: Page) -> dict:
    base = apply_movement_filters(select(MovementRecord.id), filters)
    total = db.execute(select(func.count()).select_from(base.subquery())).scalar_one()

    rows = db.execute(
        apply_movement_filters(
            select(MovementRecord, PrincipalModel.username, PrincipalModel.display_name).outerjoin(
                PrincipalModel, PrincipalModel.id == MovementRecord.modified_by
            ),
            filters,
        )
        .order_by(MovementRecord.occurred_date.desc(), MovementRecord.id.desc())
        .offset(page.offset)
        .limit(page.page_size)
    ).all()

    items = []
    for record, username, display_name in rows:
        item = movement_as_dict(record)
        item['modified_by_name'] = (display_name or username or 'Unknown') if record.modified_by is not None else 'System'
        items.append(item)
    return {'items': items, 'total': int(total), 'page': page.page, 'page_size': page.page_size}
