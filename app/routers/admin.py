from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.auth import Principal, require_permission
from app.config import settings
from app.db import get_db
from app.errors import ValidationError
from app.models import PrincipalRole
from app.responses import success_response
from app.schemas import PermissionUpdate
from app.services.audit_service import list_audit_entries
from app.services.permission_service import PERMISSION_CATALOG, permission_service

router = APIRouter(prefix='/admin', tags=['admin'])


@router.get('/audit-logs')
def audit_logs(
    limit: int = Query(settings.audit_log_limit),
    principal: Principal = Depends(require_permission('audit.view')),
    db: Session = Depends(get_db),
):
    if limit < 1 or limit > settings.audit_log_limit:
        raise ValidationError(f'Limit must be between 1 and {settings.audit_log_limit}')
    return success_response(list_audit_entries(db, limit=limit))


@router.get('/permissions')
def permissions(
    principal: Principal = Depends(require_permission('permissions.manage')),
    db: Session = Depends(get_db),
):
    return success_response(
        {
            'catalog': list(PERMISSION_CATALOG),
            'roles': {role.value: permission_service.role_permissions(db, role.value) for role in PrincipalRole},
        }
    )


@router.put('/permissions')
def update_permission(
    payload: PermissionUpdate,
    principal: Principal = Depends(require_permission('permissions.manage')),
    db: Session = Depends(get_db),
):
    permission_service.set_permission(
        db,
        actor_id=principal.id,
        role=payload.role,
        permission=payload.permission,
        granted=payload.granted,
    )
    db.commit()
    # Checks between the flush and the commit still read the old rows.
    permission_service.invalidate()
    return success_response(permission_service.role_permissions(db, payload.role), 'Permission updated')
