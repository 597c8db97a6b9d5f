from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from app.config import settings
from app.errors import NotFoundError, ValidationError
from app.models import MovementDirection, MovementRecord
from app.services.calendar_service import business_today
from app.services.ledger_service import MovementFilters, Page, apply_movement_filters, movement_as_dict
from app.services.material_service import MaterialView, definition_for, definitions_for, normalize_reference

logger = logging.getLogger(__name__)


@dataclass
class MaterialBalance:
    material_ref: str
    total_in: int = 0
    total_out: int = 0
    movement_count: int = 0
    last_movement_date: date | None = None

    @property
    def raw_balance(self) -> int:
        return self.total_in - self.total_out

    @property
    def balance(self) -> int:
        return max(self.raw_balance, 0)


def _entry_volume():
    return func.coalesce(
        func.sum(case((MovementRecord.direction == MovementDirection.ENTRY, MovementRecord.quantity), else_=0)), 0
    )


def _exit_volume():
    return func.coalesce(
        func.sum(case((MovementRecord.direction == MovementDirection.EXIT, MovementRecord.quantity), else_=0)), 0
    )


def fold_balances(db: Session, refs: Iterable[str] | None = None) -> dict[str, MaterialBalance]:
    """Fold the active movement history into one MaterialBalance per reference.

    Single grouped query; pass ``refs`` to restrict the fold to those materials.
    """
    query = (
        select(
            MovementRecord.material_ref,
            _entry_volume(),
            _exit_volume(),
            func.count(MovementRecord.id),
            func.max(MovementRecord.occurred_date),
        )
        .where(MovementRecord.soft_deleted_at.is_(None))
        .group_by(MovementRecord.material_ref)
    )
    if refs is not None:
        wanted = sorted(set(refs))
        if not wanted:
            return {}
        query = query.where(MovementRecord.material_ref.in_(wanted))

    balances: dict[str, MaterialBalance] = {}
    for ref, total_in, total_out, count, last_date in db.execute(query).all():
        balances[ref] = MaterialBalance(
            material_ref=ref,
            total_in=int(total_in),
            total_out=int(total_out),
            movement_count=int(count),
            last_movement_date=last_date,
        )
        if total_in < total_out:
            logger.warning('Material %s has a negative raw balance (%s); reporting 0', ref, total_in - total_out)
    return balances


def balance(db: Session, material_reference: str) -> int:
    ref = normalize_reference(material_reference)
    folded = fold_balances(db, [ref]).get(ref)
    return folded.balance if folded else 0


def is_low_stock(stock: int, threshold: int) -> bool:
    return stock <= threshold


def is_dead_stock(stock: int, last_movement_date: date | None, *, today: date) -> bool:
    if stock <= 0 or last_movement_date is None:
        return False
    return (today - last_movement_date).days > settings.dead_stock_days


def turnover_rate(exit_volume: int, total_balance: int) -> float:
    if total_balance <= 0:
        return 0.0
    return round(exit_volume / total_balance * 100, 1)


def _validate_period(period_start: date | None, period_end: date | None) -> None:
    if period_start and period_end and period_start > period_end:
        raise ValidationError('Period start must not be after period end')


def _in_period(query, period_start: date | None, period_end: date | None):
    query = query.where(MovementRecord.soft_deleted_at.is_(None))
    if period_start is not None:
        query = query.where(MovementRecord.occurred_date >= period_start)
    if period_end is not None:
        query = query.where(MovementRecord.occurred_date <= period_end)
    return query


def top_movers(
    db: Session,
    *,
    period_start: date | None = None,
    period_end: date | None = None,
    limit: int | None = None,
) -> list[dict]:
    _validate_period(period_start, period_end)
    count = func.count(MovementRecord.id).label('movement_count')
    rows = db.execute(
        _in_period(select(MovementRecord.material_ref, count), period_start, period_end)
        .group_by(MovementRecord.material_ref)
        .order_by(count.desc(), MovementRecord.material_ref.asc())
        .limit(limit or settings.top_movers_limit)
    ).all()
    return [{'material_reference': ref, 'movement_count': int(total)} for ref, total in rows]


def _material_row(
    folded: MaterialBalance | None,
    view: MaterialView,
    *,
    today: date,
) -> dict:
    stock = folded.balance if folded else 0
    last_date = folded.last_movement_date if folded else None
    return {
        'material_reference': view.reference,
        'balance': stock,
        'min_stock_threshold': view.min_stock_threshold,
        'is_low_stock': is_low_stock(stock, view.min_stock_threshold),
        'is_dead_stock': is_dead_stock(stock, last_date, today=today),
        'last_movement_date': last_date,
        'abc_class': view.abc_class,
        'default_location': view.default_location,
        'unit': view.unit,
    }


def list_summary(db: Session, *, filters: MovementFilters, page: Page) -> dict:
    """Latest matching movement per material, paired with the material's global balance."""
    ranked = apply_movement_filters(
        select(
            MovementRecord.id.label('movement_id'),
            func.row_number()
            .over(
                partition_by=MovementRecord.material_ref,
                order_by=(MovementRecord.occurred_date.desc(), MovementRecord.id.desc()),
            )
            .label('row_rank'),
        ),
        filters,
    ).subquery()

    latest = (
        select(MovementRecord)
        .join(ranked, ranked.c.movement_id == MovementRecord.id)
        .where(ranked.c.row_rank == 1)
    )
    total = db.execute(select(func.count()).select_from(latest.subquery())).scalar_one()
    records = db.execute(
        latest.order_by(MovementRecord.occurred_date.desc(), MovementRecord.id.desc())
        .offset(page.offset)
        .limit(page.page_size)
    ).scalars().all()

    refs = [record.material_ref for record in records]
    folded = fold_balances(db, refs)
    views = definitions_for(db, refs)
    today = business_today()

    items = []
    for record in records:
        item = movement_as_dict(record)
        item.update(_material_row(folded.get(record.material_ref), views[record.material_ref], today=today))
        items.append(item)
    return {'items': items, 'total': int(total), 'page': page.page, 'page_size': page.page_size}


def _monthly_activity(db: Session, period_start: date | None, period_end: date | None) -> list[dict]:
    rows = db.execute(
        _in_period(
            select(MovementRecord.occurred_date, MovementRecord.direction, func.sum(MovementRecord.quantity)),
            period_start,
            period_end,
        ).group_by(MovementRecord.occurred_date, MovementRecord.direction)
    ).all()

    buckets: dict[tuple[int, int], dict[str, int]] = {}
    for occurred, direction, volume in rows:
        bucket = buckets.setdefault((occurred.year, occurred.month), {'entry': 0, 'exit': 0})
        key = 'entry' if direction == MovementDirection.ENTRY else 'exit'
        bucket[key] += int(volume or 0)

    return [
        {'year': year, 'month': month, 'period': f'{year:04d}-{month:02d}', **volumes}
        for (year, month), volumes in sorted(buckets.items())
    ]


def _status_breakdown(db: Session, period_start: date | None, period_end: date | None) -> dict[str, int]:
    rows = db.execute(
        _in_period(select(MovementRecord.direction, func.count(MovementRecord.id)), period_start, period_end)
        .group_by(MovementRecord.direction)
    ).all()
    breakdown = {direction.value: 0 for direction in MovementDirection}
    for direction, total in rows:
        breakdown[MovementDirection(direction).value] = int(total)
    return breakdown


def metrics(db: Session, *, period_start: date | None = None, period_end: date | None = None) -> dict:
    _validate_period(period_start, period_end)
    today = business_today()

    folded = fold_balances(db)
    views = definitions_for(db, folded.keys())
    rows = [_material_row(folded[ref], views[ref], today=today) for ref in sorted(folded)]

    total_balance = sum(row['balance'] for row in rows)
    entry_volume, exit_volume = db.execute(
        _in_period(select(_entry_volume(), _exit_volume()), period_start, period_end)
    ).one()

    low_stock = sorted(
        (row for row in rows if row['is_low_stock']),
        key=lambda row: (row['balance'], row['material_reference']),
    )

    return {
        'period_start': period_start,
        'period_end': period_end,
        'material_count': len(rows),
        'total_balance': total_balance,
        'entry_volume': int(entry_volume),
        'exit_volume': int(exit_volume),
        'turnover_rate': turnover_rate(int(exit_volume), total_balance),
        'low_stock_count': len(low_stock),
        'dead_stock_count': sum(1 for row in rows if row['is_dead_stock']),
        'top_movers': top_movers(db, period_start=period_start, period_end=period_end),
        'status_breakdown': _status_breakdown(db, period_start, period_end),
        'monthly_activity': _monthly_activity(db, period_start, period_end),
        'low_stock_items': low_stock[: settings.low_stock_items_limit],
    }


def material_detail(db: Session, material_reference: str) -> dict:
    ref = normalize_reference(material_reference)
    if not ref:
        raise ValidationError('Material reference is required')

    history = db.execute(
        select(MovementRecord)
        .where(MovementRecord.material_ref == ref, MovementRecord.soft_deleted_at.is_(None))
        .order_by(MovementRecord.occurred_date.asc(), MovementRecord.id.asc())
    ).scalars().all()
    view = definition_for(db, ref)
    if not history and not view.defined:
        raise NotFoundError('Material not found')

    running = 0
    movements = []
    for record in history:
        running += record.quantity if record.direction == MovementDirection.ENTRY else -record.quantity
        item = movement_as_dict(record)
        item['running_balance'] = running
        movements.append(item)

    folded = fold_balances(db, [ref]).get(ref)
    detail = _material_row(folded, view, today=business_today())
    detail.update(
        {
            'description': view.description,
            'defined': view.defined,
            'total_in': folded.total_in if folded else 0,
            'total_out': folded.total_out if folded else 0,
            'movement_count': folded.movement_count if folded else 0,
            'movements': movements,
        }
    )
    return detail
