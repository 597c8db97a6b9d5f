from dataclasses import dataclass
from enum import Enum

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from app.db import get_db
from app.services.permission_service import permission_service


class Role(str, Enum):
    ADMIN = "ADMIN"
    ENGINEER = "ENGINEER"
    QUALITY = "QUALITY"
    USER = "USER"


@dataclass
class Principal:
    id: int
    username: str
    display_name: str | None
    role: Role
    active: bool


def get_current_principal(request: Request) -> Principal:
    principal = getattr(request.state, "principal", None)
    if not principal:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED)
    if not principal.active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN)
    return principal


def is_admin_role(role: Role) -> bool:
    return role == Role.ADMIN


def require_permission(action: str):
    def _dep(
        principal: Principal = Depends(get_current_principal),
        db: Session = Depends(get_db),
    ) -> Principal:
        if not permission_service.has_permission(db, principal.role.value, action):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN)
        return principal

    return _dep
