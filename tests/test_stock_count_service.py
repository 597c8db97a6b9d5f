from __future__ import annotations

import unittest
from datetime import date, timedelta

from sqlalchemy import select

from app.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from app.models import StockCountEntry, StockCountSession, StockCountStatus
from app.models import PrincipalRole
from app.services import stock_count_service
from app.services.audit_service import list_entity_history
from app.services.calendar_service import business_today
from tests.support import LedgerTestCase, add_principal


class StockCountSessionTests(LedgerTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.counter = add_principal(self.db, 'counter', PrincipalRole.QUALITY)
        self.db.commit()

    def test_lookup_without_create_returns_none(self) -> None:
        self.assertIsNone(stock_count_service.get_session_for_date(self.db, actor=self.counter))

    def test_create_only_for_today(self) -> None:
        session = stock_count_service.get_session_for_date(self.db, actor=self.counter, create=True)

        self.assertEqual(session.session_date, business_today())
        self.assertEqual(session.status, StockCountStatus.IN_PROGRESS)
        with self.assertRaises(ValidationError):
            stock_count_service.get_session_for_date(
                self.db, actor=self.counter, session_date=business_today() - timedelta(days=1), create=True
            )

    def test_one_session_per_user_per_day(self) -> None:
        first = stock_count_service.start_session(self.db, actor=self.counter)
        again = stock_count_service.start_session(self.db, actor=self.counter)
        other = stock_count_service.start_session(self.db, actor=self.operator)

        self.assertEqual(first.id, again.id)
        self.assertNotEqual(first.id, other.id)

    def test_submit_uses_ledger_balance_when_snapshot_is_omitted(self) -> None:
        self.stock_in('REF-1', 40)
        session = stock_count_service.start_session(self.db, actor=self.counter)

        entry = stock_count_service.submit_count(
            self.db, actor=self.counter, session_id=session.id, material_reference='ref-1', counted_quantity=37
        )

        self.assertEqual(entry.material_ref, 'REF-1')
        self.assertEqual(entry.system_qty, 40)
        self.assertEqual(entry.difference, -3)
        self.assertEqual(entry.status.value, 'MISMATCH')

    def test_resubmitting_overwrites_instead_of_accumulating(self) -> None:
        session = stock_count_service.start_session(self.db, actor=self.counter)

        stock_count_service.submit_count(
            self.db, actor=self.counter, session_id=session.id, material_reference='REF-1',
            counted_quantity=8, system_quantity=10, note='first pass',
        )
        stock_count_service.submit_count(
            self.db, actor=self.counter, session_id=session.id, material_reference='REF-1',
            counted_quantity=10, system_quantity=10, note='recount',
        )
        self.db.commit()

        entries = self.db.execute(select(StockCountEntry).where(StockCountEntry.session_id == session.id)).scalars().all()
        self.assertEqual(len(entries), 1)
        self.assertEqual(entries[0].counted_qty, 10)
        self.assertEqual(entries[0].difference, 0)
        self.assertEqual(entries[0].status.value, 'MATCH')
        self.assertEqual(entries[0].note, 'recount')
        self.assertEqual(session.work_days, [business_today().isoformat()])

    def test_only_creator_may_submit(self) -> None:
        session = stock_count_service.start_session(self.db, actor=self.counter)

        with self.assertRaises(AuthorizationError):
            stock_count_service.submit_count(
                self.db, actor=self.operator, session_id=session.id, material_reference='REF-1',
                counted_quantity=1, system_quantity=1,
            )
        with self.assertRaises(AuthorizationError):
            stock_count_service.submit_count(
                self.db, actor=self.admin, session_id=session.id, material_reference='REF-1',
                counted_quantity=1, system_quantity=1,
            )

    def test_completed_session_rejects_submissions(self) -> None:
        session = stock_count_service.start_session(self.db, actor=self.counter)
        stock_count_service.close_session(self.db, actor=self.counter, session_id=session.id)

        with self.assertRaises(ConflictError):
            stock_count_service.submit_count(
                self.db, actor=self.counter, session_id=session.id, material_reference='REF-1',
                counted_quantity=1, system_quantity=1,
            )

    def test_close_is_idempotent_and_audited_once(self) -> None:
        session = stock_count_service.start_session(self.db, actor=self.counter)

        stock_count_service.close_session(self.db, actor=self.counter, session_id=session.id)
        again = stock_count_service.close_session(self.db, actor=self.counter, session_id=session.id)

        self.assertEqual(again.status, StockCountStatus.COMPLETED)
        self.assertIsNotNone(again.completed_at)
        actions = [e.action for e in list_entity_history(self.db, entity='StockCountSession', entity_id=session.id)]
        self.assertEqual(actions, ['CREATE', 'COMPLETE'])

    def test_admin_may_close_but_others_may_not(self) -> None:
        session = stock_count_service.start_session(self.db, actor=self.counter)

        with self.assertRaises(AuthorizationError):
            stock_count_service.close_session(self.db, actor=self.operator, session_id=session.id)
        closed = stock_count_service.close_session(self.db, actor=self.admin, session_id=session.id)

        self.assertEqual(closed.status, StockCountStatus.COMPLETED)

    def test_invalid_counts_are_rejected(self) -> None:
        session = stock_count_service.start_session(self.db, actor=self.counter)

        for counted in (-1, 1.5, True):
            with self.subTest(counted=counted):
                with self.assertRaises(ValidationError):
                    stock_count_service.submit_count(
                        self.db, actor=self.counter, session_id=session.id, material_reference='REF-1',
                        counted_quantity=counted,
                    )
        with self.assertRaises(NotFoundError):
            stock_count_service.submit_count(
                self.db, actor=self.counter, session_id=9999, material_reference='REF-1', counted_quantity=1
            )


class StockCountReportTests(LedgerTestCase):
    def _past_session(self, session_date: date, status: StockCountStatus) -> StockCountSession:
        session = StockCountSession(
            session_date=session_date, created_by=self.operator.id, status=status, work_days=[session_date.isoformat()]
        )
        self.db.add(session)
        self.db.flush()
        return session

    def test_unclosed_past_session_displays_as_incomplete(self) -> None:
        today = date(2024, 6, 30)
        stale = self._past_session(date(2024, 6, 1), StockCountStatus.IN_PROGRESS)
        closed = self._past_session(date(2024, 6, 2), StockCountStatus.COMPLETED)
        current = self._past_session(today, StockCountStatus.IN_PROGRESS)

        self.assertEqual(stock_count_service.display_status(stale, today=today), 'INCOMPLETE')
        self.assertEqual(stock_count_service.display_status(closed, today=today), 'COMPLETED')
        self.assertEqual(stock_count_service.display_status(current, today=today), 'IN_PROGRESS')
        self.assertEqual(stale.status, StockCountStatus.IN_PROGRESS)

    def test_history_and_report_totals(self) -> None:
        session = stock_count_service.start_session(self.db, actor=self.operator)
        for ref, counted, system in (('A', 5, 5), ('B', 3, 4), ('C', 9, 7)):
            stock_count_service.submit_count(
                self.db, actor=self.operator, session_id=session.id, material_reference=ref,
                counted_quantity=counted, system_quantity=system,
            )
        self._past_session(date(2020, 1, 1), StockCountStatus.COMPLETED)
        self.db.commit()

        history = stock_count_service.list_session_history(self.db)
        report = stock_count_service.session_report(self.db, session.id)
        csv_text = stock_count_service.session_csv(self.db, session.id)

        self.assertEqual([row['id'] for row in history][0], session.id)
        self.assertEqual(history[0]['total_items'], 3)
        self.assertEqual(history[0]['mismatch_count'], 2)
        self.assertEqual(history[0]['user'], 'Operator')
        self.assertEqual(history[1]['total_items'], 0)
        self.assertEqual(
            report['totals'],
            {'total_items': 3, 'match_count': 1, 'mismatch_count': 2, 'net_difference': 1},
        )
        self.assertEqual(csv_text.splitlines()[0].split(',')[0], 'material_reference')
        self.assertEqual(len(csv_text.splitlines()), 4)


if __name__ == '__main__':
    unittest.main()
