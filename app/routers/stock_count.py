from __future__ import annotations

from datetime import date

from fastapi import APIRouter, Depends, Query
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from app.auth import Principal, get_current_principal, require_permission
from app.db import get_db
from app.responses import success_response
from app.schemas import SessionStart, StockCountSubmit
from app.services import stock_count_service

router = APIRouter(prefix='/stock-count', tags=['stock-count'])


@router.get('/session')
def session_for_date(
    session_date: date | None = Query(None, alias='date'),
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    session = stock_count_service.get_session_for_date(db, actor=principal, session_date=session_date)
    if session is None:
        return success_response(None)
    entries = stock_count_service.session_entries(db, session.id)
    return success_response(stock_count_service.session_as_dict(session, entries=entries))


@router.post('/sessions', status_code=201)
def start_session(
    payload: SessionStart,
    principal: Principal = Depends(require_permission('stock-count.manage')),
    db: Session = Depends(get_db),
):
    session = stock_count_service.get_session_for_date(
        db, actor=principal, session_date=payload.session_date, create=True
    )
    db.commit()
    entries = stock_count_service.session_entries(db, session.id)
    return success_response(stock_count_service.session_as_dict(session, entries=entries), status_code=201)


@router.get('/sessions')
def session_history(
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    return success_response(stock_count_service.list_session_history(db))


@router.get('/sessions/{session_id}')
def session_report(
    session_id: int,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    return success_response(stock_count_service.session_report(db, session_id))


@router.post('/sessions/{session_id}/entries')
def submit_count(
    session_id: int,
    payload: StockCountSubmit,
    principal: Principal = Depends(require_permission('stock-count.manage')),
    db: Session = Depends(get_db),
):
    entry = stock_count_service.submit_count(
        db,
        actor=principal,
        session_id=session_id,
        material_reference=payload.material_reference,
        counted_quantity=payload.counted_quantity,
        system_quantity=payload.system_quantity,
        note=payload.note,
    )
    db.commit()
    return success_response(stock_count_service.entry_as_dict(entry), 'Count saved')


@router.post('/sessions/{session_id}/close')
def close_session(
    session_id: int,
    principal: Principal = Depends(require_permission('stock-count.manage')),
    db: Session = Depends(get_db),
):
    session = stock_count_service.close_session(db, actor=principal, session_id=session_id)
    db.commit()
    return success_response(stock_count_service.session_report(db, session.id), 'Session closed')


@router.get('/sessions/{session_id}/export.csv')
def export_session_csv(
    session_id: int,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    return StreamingResponse(
        iter([stock_count_service.session_csv(db, session_id)]),
        media_type='text/csv',
        headers={'Content-Disposition': f'attachment; filename=stock-count-{session_id}.csv'},
    )
