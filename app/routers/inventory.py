from __future__ import annotations

import csv
from dataclasses import replace
from datetime import date
from io import StringIO

from fastapi import APIRouter, Depends, Query
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from app.auth import Principal, get_current_principal, is_admin_role, require_permission
from app.db import get_db
from app.dependencies import get_page
from app.models import MovementDirection
from app.responses import success_response
from app.schemas import MovementCreate
from app.services import ledger_service, metrics_service
from app.services.audit_service import list_entity_history, log_audit
from app.services.ledger_service import MovementFilters, MovementMetadata, Page

router = APIRouter(prefix='/inventory', tags=['inventory'])

EXPORT_COLUMNS = (
    'id',
    'occurred_date',
    'material_reference',
    'direction',
    'quantity',
    'company',
    'waybill_reference',
    'note',
    'year',
    'month',
    'week',
    'modified_by_name',
)
EXPORT_PAGE_SIZE = 500


def get_movement_filters(
    search: str | None = Query(None),
    material_reference: str | None = Query(None),
    direction: MovementDirection | None = Query(None),
    date_from: date | None = Query(None),
    date_to: date | None = Query(None),
) -> MovementFilters:
    return MovementFilters(
        search=search,
        material_reference=material_reference,
        direction=direction,
        date_from=date_from,
        date_to=date_to,
    )


@router.post('/movements', status_code=201)
def create_movement(
    payload: MovementCreate,
    principal: Principal = Depends(require_permission('inventory.create')),
    db: Session = Depends(get_db),
):
    record = ledger_service.record_movement(
        db,
        actor=principal,
        direction=payload.direction,
        material_reference=payload.material_reference,
        quantity=payload.quantity,
        metadata=MovementMetadata(
            company=payload.company,
            waybill_reference=payload.waybill_reference,
            note=payload.note,
            occurred_date=payload.occurred_date,
        ),
    )
    db.commit()
    return success_response(ledger_service.movement_as_dict(record), 'Movement recorded', status_code=201)


@router.get('/summary')
def summary(
    filters: MovementFilters = Depends(get_movement_filters),
    page: Page = Depends(get_page),
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    return success_response(metrics_service.list_summary(db, filters=filters, page=page))


@router.get('/movements')
def raw_movements(
    filters: MovementFilters = Depends(get_movement_filters),
    page: Page = Depends(get_page),
    include_deleted: bool = Query(False),
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    if include_deleted and is_admin_role(principal.role):
        filters = replace(filters, include_deleted=True)
    return success_response(ledger_service.list_raw(db, filters=filters, page=page))


@router.get('/movements/{movement_id}')
def movement_detail(
    movement_id: int,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    record = ledger_service.get_movement(db, movement_id=movement_id, include_deleted=is_admin_role(principal.role))
    data = ledger_service.movement_as_dict(record)
    if is_admin_role(principal.role):
        data['history'] = [
            {'action': entry.action, 'user_id': entry.user_id, 'details': entry.details, 'created_at': entry.created_at}
            for entry in list_entity_history(db, entity=ledger_service.MOVEMENT_ENTITY, entity_id=record.id)
        ]
    return success_response(data)


@router.delete('/movements/{movement_id}')
def soft_delete_movement(
    movement_id: int,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    record = ledger_service.soft_delete(db, actor=principal, movement_id=movement_id)
    db.commit()
    return success_response(ledger_service.movement_as_dict(record), 'Movement deleted')


@router.post('/movements/{movement_id}/restore')
def restore_movement(
    movement_id: int,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    record = ledger_service.restore(db, actor=principal, movement_id=movement_id)
    db.commit()
    return success_response(ledger_service.movement_as_dict(record), 'Movement restored')


@router.get('/materials/{material_reference}')
def material_detail(
    material_reference: str,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    return success_response(metrics_service.material_detail(db, material_reference))


@router.get('/export.csv')
def export_csv(
    filters: MovementFilters = Depends(get_movement_filters),
    principal: Principal = Depends(require_permission('inventory.export')),
    db: Session = Depends(get_db),
):
    sio = StringIO()
    writer = csv.writer(sio)
    writer.writerow(EXPORT_COLUMNS)

    page_number = 1
    exported = 0
    while True:
        batch = ledger_service.list_raw(db, filters=filters, page=Page(page=page_number, page_size=EXPORT_PAGE_SIZE))
        for item in batch['items']:
            writer.writerow([item[column] for column in EXPORT_COLUMNS])
        exported += len(batch['items'])
        if exported >= batch['total'] or not batch['items']:
            break
        page_number += 1

    log_audit(
        db,
        user_id=principal.id,
        action='EXPORT',
        entity=ledger_service.MOVEMENT_ENTITY,
        entity_id=None,
        details={
            'rows': exported,
            'search': filters.search,
            'material_reference': filters.material_reference,
            'direction': filters.direction.value if filters.direction else None,
            'date_from': filters.date_from.isoformat() if filters.date_from else None,
            'date_to': filters.date_to.isoformat() if filters.date_to else None,
        },
    )
    db.commit()

    return StreamingResponse(
        iter([sio.getvalue()]),
        media_type='text/csv',
        headers={'Content-Disposition': 'attachment; filename=movements.csv'},
    )
