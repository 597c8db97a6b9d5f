from __future__ import annotations

import unittest
from datetime import date

from sqlalchemy import create_engine, event, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.auth import Principal, Role
from app.models import Base, MovementRecord
from app.models import Principal as PrincipalModel
from app.models import PrincipalRole
from app.services.ledger_service import MovementMetadata, record_entry, record_exit
from app.services.permission_service import permission_service


def sqlite_engine(url: str = 'sqlite://'):
    if url == 'sqlite://':
        engine = create_engine(url, connect_args={'check_same_thread': False}, poolclass=StaticPool)
    else:
        engine = create_engine(url, connect_args={'check_same_thread': False, 'timeout': 30})

    @event.listens_for(engine, 'connect')
    def _enable_foreign_keys(dbapi_connection, _record):
        cursor = dbapi_connection.cursor()
        cursor.execute('PRAGMA foreign_keys=ON')
        cursor.close()

    Base.metadata.create_all(engine)
    return engine


def add_principal(db: Session, username: str, role: PrincipalRole = PrincipalRole.USER) -> Principal:
    row = PrincipalModel(
        username=username,
        display_name=username.title(),
        password_hash='not-a-real-hash',
        role=role,
        active=True,
    )
    db.add(row)
    db.flush()
    return Principal(id=row.id, username=row.username, display_name=row.display_name, role=Role(role.value), active=True)


class LedgerTestCase(unittest.TestCase):
    def setUp(self) -> None:
        permission_service.invalidate()
        self.engine = sqlite_engine()
        self.SessionLocal = sessionmaker(bind=self.engine, autoflush=False, autocommit=False)
        self.db = self.SessionLocal()
        self.admin = add_principal(self.db, 'admin', PrincipalRole.ADMIN)
        self.operator = add_principal(self.db, 'operator', PrincipalRole.USER)
        self.db.commit()

    def tearDown(self) -> None:
        self.db.close()
        self.engine.dispose()
        permission_service.invalidate()

    def stock_in(self, ref: str, quantity: int, occurred: date | None = None, actor: Principal | None = None):
        return record_entry(
            self.db,
            actor=actor or self.admin,
            material_reference=ref,
            quantity=quantity,
            metadata=MovementMetadata(company='Supplier', occurred_date=occurred),
        )

    def stock_out(self, ref: str, quantity: int, occurred: date | None = None, actor: Principal | None = None):
        return record_exit(
            self.db,
            actor=actor or self.admin,
            material_reference=ref,
            quantity=quantity,
            metadata=MovementMetadata(company='Line 1', occurred_date=occurred),
        )

    def movement_count(self) -> int:
        return len(self.db.execute(select(MovementRecord.id)).all())
