from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.auth import Principal, get_current_principal
from app.config import settings
from app.db import get_db
from app.dependencies import get_client_ip
from app.models import Principal as PrincipalModel
from app.responses import error_response, success_response
from app.schemas import LoginRequest
from app.security.passwords import verify_password
from app.security.sessions import create_web_session, principal_from_model, revoke_web_session
from app.services.audit_service import log_audit
from app.services.permission_service import permission_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix='/auth', tags=['auth'])


def _principal_payload(db: Session, principal: Principal) -> dict:
    return {
        'id': principal.id,
        'username': principal.username,
        'display_name': principal.display_name,
        'role': principal.role.value,
        'permissions': permission_service.role_permissions(db, principal.role.value),
    }


@router.post('/login')
def login(payload: LoginRequest, request: Request, db: Session = Depends(get_db)):
    username = payload.username.strip()
    ip = get_client_ip(request)
    user_agent = request.headers.get('user-agent')

    principal = db.execute(select(PrincipalModel).where(PrincipalModel.username == username)).scalar_one_or_none()
    if not principal:
        logger.info('Login failed for %r from %s: unknown username', username, ip)
        return error_response('Invalid username or password', 401, 'UNAUTHORIZED')

    if not principal.active:
        logger.info('Login failed for %r from %s: inactive principal', username, ip)
        return error_response('Invalid username or password', 401, 'UNAUTHORIZED')

    valid, updated_hash = verify_password(payload.password, principal.password_hash)
    if not valid:
        logger.info('Login failed for %r from %s: bad password', username, ip)
        return error_response('Invalid username or password', 401, 'UNAUTHORIZED')
    if updated_hash:
        principal.password_hash = updated_hash

    token = create_web_session(db, principal.id, ip=ip, user_agent=user_agent)
    log_audit(
        db,
        user_id=principal.id,
        action='AUTH_LOGIN',
        entity='Principal',
        entity_id=principal.id,
        details={'username': username, 'ip': ip},
    )
    db.commit()

    response = success_response(_principal_payload(db, principal_from_model(principal)))
    response.set_cookie(
        key=settings.session_cookie_name,
        value=token,
        httponly=True,
        secure=settings.session_cookie_secure,
        samesite=settings.session_cookie_samesite,
        max_age=settings.session_ttl_minutes * 60,
    )
    return response


@router.post('/logout')
def logout(request: Request, db: Session = Depends(get_db)):
    principal = getattr(request.state, 'principal', None)
    token = request.cookies.get(settings.session_cookie_name)
    if token:
        revoke_web_session(db, token)

    if principal is not None:
        log_audit(
            db,
            user_id=principal.id,
            action='AUTH_LOGOUT',
            entity='Principal',
            entity_id=principal.id,
            details={'ip': get_client_ip(request)},
        )
    db.commit()

    response = success_response(message='Logged out')
    response.delete_cookie(settings.session_cookie_name)
    return response


@router.get('/me')
def me(principal: Principal = Depends(get_current_principal), db: Session = Depends(get_db)):
    return success_response(_principal_payload(db, principal))
