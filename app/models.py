from __future__ import annotations

from datetime import date, datetime
from enum import Enum

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
    func,
    inspect,
)
from sqlalchemy.dialects.postgresql import CITEXT, INET
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from app.errors import ConflictError

# SQLite only autoincrements INTEGER PRIMARY KEY columns.
BigIntPK = BigInteger().with_variant(Integer(), 'sqlite')
CaseInsensitiveText = Text().with_variant(CITEXT(), 'postgresql')
IpAddress = String(64).with_variant(INET(), 'postgresql')


class Base(DeclarativeBase):
    pass


class PrincipalRole(str, Enum):
    ADMIN = 'ADMIN'
    ENGINEER = 'ENGINEER'
    QUALITY = 'QUALITY'
    USER = 'USER'


class MovementDirection(str, Enum):
    ENTRY = 'ENTRY'
    EXIT = 'EXIT'


class StockCountStatus(str, Enum):
    IN_PROGRESS = 'IN_PROGRESS'
    COMPLETED = 'COMPLETED'


class StockCountEntryStatus(str, Enum):
    MATCH = 'MATCH'
    MISMATCH = 'MISMATCH'


class Principal(Base):
    __tablename__ = 'principals'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    username: Mapped[str] = mapped_column(CaseInsensitiveText, nullable=False, unique=True)
    display_name: Mapped[str | None] = mapped_column(Text)
    password_hash: Mapped[str] = mapped_column(Text, nullable=False)
    role: Mapped[PrincipalRole] = mapped_column(SQLEnum(PrincipalRole, name='principal_role'), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class WebSession(Base):
    __tablename__ = 'web_sessions'
    __table_args__ = (
        UniqueConstraint('session_token', name='web_sessions_session_token_key'),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    session_token: Mapped[str] = mapped_column(String(128), nullable=False)
    principal_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('principals.id'), nullable=False)
    ip: Mapped[str | None] = mapped_column(IpAddress)
    user_agent: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    last_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class RolePermission(Base):
    __tablename__ = 'role_permissions'

    role: Mapped[str] = mapped_column(String(32), primary_key=True)
    permission: Mapped[str] = mapped_column(String(64), primary_key=True)
    granted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class MaterialDefinition(Base):
    __tablename__ = 'material_definitions'
    __table_args__ = (
        CheckConstraint('min_stock_threshold IS NULL OR min_stock_threshold >= 0', name='material_min_stock_non_negative_ck'),
    )

    reference: Mapped[str] = mapped_column(Text, primary_key=True)
    min_stock_threshold: Mapped[int | None] = mapped_column(Integer)
    abc_class: Mapped[str | None] = mapped_column(String(1))
    default_location: Mapped[str | None] = mapped_column(Text)
    unit: Mapped[str | None] = mapped_column(String(32))
    description: Mapped[str | None] = mapped_column(Text)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class MovementRecord(Base):
    __tablename__ = 'movement_records'
    __table_args__ = (
        CheckConstraint('quantity > 0', name='movement_records_quantity_positive_ck'),
        Index('ix_movement_records_ref_active', 'material_ref', 'soft_deleted_at'),
        Index('ix_movement_records_occurred_date', 'occurred_date'),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    material_ref: Mapped[str] = mapped_column(Text, nullable=False)
    direction: Mapped[MovementDirection] = mapped_column(
        SQLEnum(MovementDirection, name='movement_direction'), nullable=False
    )
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    occurred_date: Mapped[date] = mapped_column(Date, nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    week: Mapped[int] = mapped_column(Integer, nullable=False)
    company: Mapped[str] = mapped_column(Text, nullable=False)
    waybill_ref: Mapped[str] = mapped_column(Text, nullable=False, default='')
    note: Mapped[str] = mapped_column(Text, nullable=False, default='')
    modified_by: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('principals.id'))
    soft_deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class MaterialLedgerLock(Base):
    __tablename__ = 'material_ledger_locks'

    material_ref: Mapped[str] = mapped_column(Text, primary_key=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class AuditEntry(Base):
    __tablename__ = 'audit_entries'
    __table_args__ = (Index('ix_audit_entries_entity', 'entity', 'entity_id'),)

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    user_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('principals.id'))
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    entity: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_id: Mapped[str | None] = mapped_column(String(128))
    details: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class StockCountSession(Base):
    __tablename__ = 'stock_count_sessions'
    __table_args__ = (
        UniqueConstraint('created_by', 'session_date', name='stock_count_sessions_creator_date_key'),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    session_date: Mapped[date] = mapped_column(Date, nullable=False)
    created_by: Mapped[int] = mapped_column(BigInteger, ForeignKey('principals.id'), nullable=False)
    status: Mapped[StockCountStatus] = mapped_column(
        SQLEnum(StockCountStatus, name='stock_count_status'),
        nullable=False,
        default=StockCountStatus.IN_PROGRESS,
    )
    # ISO date strings, sorted and unique.
    work_days: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class StockCountEntry(Base):
    __tablename__ = 'stock_count_entries'
    __table_args__ = (
        CheckConstraint('counted_qty >= 0', name='stock_count_entries_counted_non_negative_ck'),
        CheckConstraint(
            "(difference = 0 AND status = 'MATCH') OR (difference <> 0 AND status = 'MISMATCH')",
            name='stock_count_entries_status_matches_difference_ck',
        ),
    )

    session_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey('stock_count_sessions.id', ondelete='CASCADE'), primary_key=True
    )
    material_ref: Mapped[str] = mapped_column(Text, primary_key=True)
    counted_qty: Mapped[int] = mapped_column(Integer, nullable=False)
    system_qty: Mapped[int] = mapped_column(Integer, nullable=False)
    difference: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[StockCountEntryStatus] = mapped_column(
        SQLEnum(StockCountEntryStatus, name='stock_count_entry_status'), nullable=False
    )
    note: Mapped[str] = mapped_column(Text, nullable=False, default='')
    counted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


IMMUTABLE_MOVEMENT_FIELDS = ('material_ref', 'direction', 'quantity', 'occurred_date', 'year', 'month', 'week')


@event.listens_for(MovementRecord, 'before_update')
def _guard_movement_facts(mapper, connection, target: MovementRecord) -> None:
    state = inspect(target)
    changed = [name for name in IMMUTABLE_MOVEMENT_FIELDS if state.attrs[name].history.has_changes()]
    if changed:
        raise ConflictError(f'Movement record fields are immutable: {", ".join(changed)}')


@event.listens_for(MovementRecord, 'before_delete')
def _guard_movement_delete(mapper, connection, target: MovementRecord) -> None:
    raise ConflictError('Movement records are never deleted; use soft delete')


@event.listens_for(AuditEntry, 'before_update')
@event.listens_for(AuditEntry, 'before_delete')
def _guard_audit_entry(mapper, connection, target: AuditEntry) -> None:
    raise ConflictError('Audit entries are write-once')
