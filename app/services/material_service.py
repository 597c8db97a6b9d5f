from __future__ import annotations

from collections.abc import Iterable
from dataclasses import asdict, dataclass

from sqlalchemy import distinct, select
from sqlalchemy.orm import Session

from app.config import settings
from app.errors import ValidationError
from app.models import MaterialDefinition, MovementRecord
from app.services.audit_service import log_audit
from app.services.calendar_service import now_utc

ABC_CLASSES = {'A', 'B', 'C'}
MATERIAL_LIST_LIMIT = 100


@dataclass(frozen=True)
class MaterialView:
    reference: str
    min_stock_threshold: int
    abc_class: str | None
    default_location: str | None
    unit: str | None
    description: str
    defined: bool

    def as_dict(self) -> dict:
        return asdict(self)


def normalize_reference(reference: str | None) -> str:
    return (reference or '').strip().upper()


def _view(definition: MaterialDefinition | None, reference: str) -> MaterialView:
    if definition is None:
        return MaterialView(
            reference=reference,
            min_stock_threshold=settings.default_min_stock,
            abc_class=None,
            default_location=None,
            unit=None,
            description='',
            defined=False,
        )
    threshold = definition.min_stock_threshold
    return MaterialView(
        reference=definition.reference,
        min_stock_threshold=settings.default_min_stock if threshold is None else threshold,
        abc_class=definition.abc_class,
        default_location=definition.default_location,
        unit=definition.unit,
        description=definition.description or '',
        defined=True,
    )


def definitions_for(db: Session, references: Iterable[str]) -> dict[str, MaterialView]:
    refs = sorted({ref for ref in references if ref})
    if not refs:
        return {}
    rows = db.execute(select(MaterialDefinition).where(MaterialDefinition.reference.in_(refs))).scalars().all()
    by_ref = {row.reference: row for row in rows}
    return {ref: _view(by_ref.get(ref), ref) for ref in refs}


def definition_for(db: Session, reference: str) -> MaterialView:
    ref = normalize_reference(reference)
    return _view(db.get(MaterialDefinition, ref), ref)


def list_materials(db: Session, *, search: str | None = None) -> list[MaterialView]:
    term = (search or '').strip()

    defined_query = select(MaterialDefinition).order_by(MaterialDefinition.reference.asc()).limit(MATERIAL_LIST_LIMIT)
    ledger_query = (
        select(distinct(MovementRecord.material_ref))
        .order_by(MovementRecord.material_ref.asc())
        .limit(MATERIAL_LIST_LIMIT)
    )
    if term:
        defined_query = defined_query.where(MaterialDefinition.reference.ilike(f'%{term}%'))
        ledger_query = ledger_query.where(MovementRecord.material_ref.ilike(f'%{term}%'))

    merged: dict[str, MaterialView] = {}
    for definition in db.execute(defined_query).scalars().all():
        merged[definition.reference] = _view(definition, definition.reference)
    for (reference,) in db.execute(ledger_query).all():
        merged.setdefault(reference, _view(None, reference))

    return [merged[ref] for ref in sorted(merged)][:MATERIAL_LIST_LIMIT]


def upsert_material(
    db: Session,
    *,
    actor_id: int,
    reference: str,
    min_stock_threshold: int | None,
    abc_class: str | None = None,
    default_location: str | None = None,
    unit: str | None = None,
    description: str | None = None,
) -> MaterialView:
    ref = normalize_reference(reference)
    if not ref:
        raise ValidationError('Material reference is required')
    if min_stock_threshold is not None and min_stock_threshold < 0:
        raise ValidationError('Minimum stock threshold cannot be negative')
    clean_class = (abc_class or '').strip().upper() or None
    if clean_class is not None and clean_class not in ABC_CLASSES:
        raise ValidationError('ABC class must be one of A, B, C')

    definition = db.get(MaterialDefinition, ref)
    created = definition is None
    if created:
        definition = MaterialDefinition(reference=ref)
        db.add(definition)

    definition.min_stock_threshold = min_stock_threshold
    definition.abc_class = clean_class
    definition.default_location = (default_location or '').strip() or None
    definition.unit = (unit or '').strip() or None
    definition.description = (description or '').strip()
    definition.updated_at = now_utc()
    db.flush()

    view = _view(definition, ref)
    log_audit(
        db,
        user_id=actor_id,
        action='CREATE' if created else 'UPDATE',
        entity='MaterialDefinition',
        entity_id=ref,
        details=view.as_dict(),
    )
    return view
