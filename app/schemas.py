from __future__ import annotations

from datetime import date

from pydantic import BaseModel, Field

from app.models import MovementDirection


class LoginRequest(BaseModel):
    username: str
    password: str


class MovementCreate(BaseModel):
    direction: MovementDirection
    material_reference: str
    quantity: int
    company: str
    waybill_reference: str = ''
    note: str = ''
    occurred_date: date | None = None


class MaterialUpsert(BaseModel):
    reference: str
    min_stock_threshold: int | None = None
    abc_class: str | None = None
    default_location: str | None = None
    unit: str | None = None
    description: str | None = None


class StockCountSubmit(BaseModel):
    material_reference: str
    counted_quantity: int
    # Omitted: snapshot the current ledger balance.
    system_quantity: int | None = None
    note: str | None = None


class PermissionUpdate(BaseModel):
    role: str
    permission: str
    granted: bool


class SessionStart(BaseModel):
    session_date: date | None = Field(default=None)
