from datetime import timedelta

from sqlalchemy import select

from app.db import SessionLocal, engine
from app.models import Base, MovementRecord, Principal, PrincipalRole
from app.security.passwords import hash_password
from app.security.sessions import principal_from_model
from app.services.calendar_service import business_today
from app.services.ledger_service import MovementMetadata, record_entry, record_exit
from app.services.material_service import upsert_material
from app.services.permission_service import permission_service

DEMO_PRINCIPALS = (
    ('admin', 'Admin', 'adminpass', PrincipalRole.ADMIN),
    ('engineer', 'Engineer', 'engineerpass', PrincipalRole.ENGINEER),
    ('quality', 'Quality', 'qualitypass', PrincipalRole.QUALITY),
    ('operator', 'Operator', 'operatorpass', PrincipalRole.USER),
)


def seed() -> None:
    Base.metadata.create_all(bind=engine)

    with SessionLocal() as db:
        for username, display_name, password, role in DEMO_PRINCIPALS:
            existing = db.execute(select(Principal).where(Principal.username == username)).scalar_one_or_none()
            if not existing:
                db.add(
                    Principal(
                        username=username,
                        display_name=display_name,
                        password_hash=hash_password(password),
                        role=role,
                        active=True,
                    )
                )
        db.flush()
        permission_service.seed_defaults(db)

        admin = principal_from_model(
            db.execute(select(Principal).where(Principal.username == 'admin')).scalar_one()
        )

        has_movements = db.execute(select(MovementRecord.id).limit(1)).first() is not None
        if not has_movements:
            upsert_material(db, actor_id=admin.id, reference='BRK-100', min_stock_threshold=50, abc_class='A', unit='pcs')
            upsert_material(db, actor_id=admin.id, reference='FLT-220', min_stock_threshold=10, abc_class='B', unit='pcs')

            today = business_today()
            for ref, quantity, days_ago in (('BRK-100', 120, 30), ('FLT-220', 40, 120), ('GSK-7', 15, 5)):
                record_entry(
                    db,
                    actor=admin,
                    material_reference=ref,
                    quantity=quantity,
                    metadata=MovementMetadata(company='Demo Supplier', occurred_date=today - timedelta(days=days_ago)),
                )
            record_exit(
                db,
                actor=admin,
                material_reference='BRK-100',
                quantity=80,
                metadata=MovementMetadata(company='Line 1', occurred_date=today - timedelta(days=2)),
            )

        db.commit()


if __name__ == '__main__':
    seed()
