from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import settings
from app.errors import ValidationError
from app.models import PrincipalRole, RolePermission
from app.services.audit_service import log_audit

logger = logging.getLogger(__name__)

ADMIN_ROLE = PrincipalRole.ADMIN.value

PERMISSION_CATALOG = (
    'inventory.create',
    'inventory.delete',
    'inventory.export',
    'reports.view',
    'stock-count.manage',
    'materials.manage',
    'audit.view',
    'permissions.manage',
)

DEFAULT_GRANTS = {
    PrincipalRole.ENGINEER.value: {
        'inventory.create',
        'inventory.export',
        'reports.view',
        'stock-count.manage',
        'materials.manage',
    },
    PrincipalRole.QUALITY.value: {'inventory.create', 'reports.view', 'stock-count.manage'},
    PrincipalRole.USER.value: {'inventory.create', 'stock-count.manage'},
}


class PermissionService:
    """Role/permission lookups backed by ``role_permissions`` with a short-lived read cache.

    ADMIN is granted every action without touching the table. Writes go through
    :meth:`set_permission`, which invalidates the cache before returning so the
    change is visible to the next check in this process.
    """

    def __init__(self, *, ttl_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._cache: dict[str, dict[str, bool]] | None = None
        self._loaded_at = 0.0
        self._generation = 0

    def has_permission(self, db: Session, role: str, action: str) -> bool:
        if role == ADMIN_ROLE:
            return True
        try:
            grants = self._grants(db)
        except SQLAlchemyError:
            logger.exception('Permission lookup failed for role=%s action=%s; denying', role, action)
            return False
        return grants.get(role, {}).get(action, False)

    def role_permissions(self, db: Session, role: str) -> dict[str, bool]:
        if role == ADMIN_ROLE:
            return {action: True for action in PERMISSION_CATALOG}
        grants = self._grants(db).get(role, {})
        return {action: grants.get(action, False) for action in PERMISSION_CATALOG}

    def set_permission(self, db: Session, *, actor_id: int, role: str, permission: str, granted: bool) -> RolePermission:
        if permission not in PERMISSION_CATALOG:
            raise ValidationError(f'Unknown permission: {permission}')
        if role not in {r.value for r in PrincipalRole}:
            raise ValidationError(f'Unknown role: {role}')
        if role == ADMIN_ROLE:
            raise ValidationError('ADMIN permissions cannot be changed')

        row = db.execute(
            select(RolePermission).where(RolePermission.role == role, RolePermission.permission == permission)
        ).scalar_one_or_none()
        previous = row.granted if row else False
        if row:
            row.granted = granted
        else:
            row = RolePermission(role=role, permission=permission, granted=granted)
            db.add(row)
        db.flush()

        log_audit(
            db,
            user_id=actor_id,
            action='UPDATE',
            entity='RolePermission',
            entity_id=f'{role}:{permission}',
            details={'role': role, 'permission': permission, 'previous': previous, 'granted': granted},
        )
        self.invalidate()
        return row

    def seed_defaults(self, db: Session) -> int:
        existing = {(row.role, row.permission) for row in db.execute(select(RolePermission)).scalars().all()}
        added = 0
        for role, actions in DEFAULT_GRANTS.items():
            for action in PERMISSION_CATALOG:
                if (role, action) in existing:
                    continue
                db.add(RolePermission(role=role, permission=action, granted=action in actions))
                added += 1
        db.flush()
        self.invalidate()
        return added

    def invalidate(self) -> None:
        with self._lock:
            self._generation += 1
            self._cache = None
            self._loaded_at = 0.0

    def _grants(self, db: Session) -> dict[str, dict[str, bool]]:
        now = self._clock()
        with self._lock:
            if self._cache is not None and now - self._loaded_at < self._ttl_seconds:
                return self._cache
            generation = self._generation

        grants: dict[str, dict[str, bool]] = {}
        for row in db.execute(select(RolePermission)).scalars().all():
            grants.setdefault(row.role, {})[row.permission] = bool(row.granted)

        with self._lock:
            # A load that raced invalidate() is served once but not cached.
            if self._generation == generation:
                self._cache = grants
                self._loaded_at = now
        return grants


permission_service = PermissionService(ttl_seconds=settings.permission_cache_ttl_seconds)
