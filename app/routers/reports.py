from __future__ import annotations

from datetime import date

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.auth import Principal, get_current_principal, require_permission
from app.db import get_db
from app.responses import success_response
from app.schemas import MaterialUpsert
from app.services import metrics_service
from app.services.material_service import list_materials, upsert_material

router = APIRouter(tags=['reports'])


@router.get('/reports/metrics')
def metrics(
    period_start: date | None = Query(None),
    period_end: date | None = Query(None),
    principal: Principal = Depends(require_permission('reports.view')),
    db: Session = Depends(get_db),
):
    return success_response(metrics_service.metrics(db, period_start=period_start, period_end=period_end))


@router.get('/reports/top-movers')
def top_movers(
    period_start: date | None = Query(None),
    period_end: date | None = Query(None),
    principal: Principal = Depends(require_permission('reports.view')),
    db: Session = Depends(get_db),
):
    return success_response(metrics_service.top_movers(db, period_start=period_start, period_end=period_end))


@router.get('/materials')
def materials(
    search: str | None = Query(None),
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    return success_response([view.as_dict() for view in list_materials(db, search=search)])


@router.put('/materials')
def save_material(
    payload: MaterialUpsert,
    principal: Principal = Depends(require_permission('materials.manage')),
    db: Session = Depends(get_db),
):
    view = upsert_material(
        db,
        actor_id=principal.id,
        reference=payload.reference,
        min_stock_threshold=payload.min_stock_threshold,
        abc_class=payload.abc_class,
        default_location=payload.default_location,
        unit=payload.unit,
        description=payload.description,
    )
    db.commit()
    return success_response(view.as_dict(), 'Material saved')
