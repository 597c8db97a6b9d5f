from __future__ import annotations

import unittest
from unittest.mock import patch

from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from app.db import get_db
from app.main import app
from app.models import Principal, PrincipalRole
from app.security.passwords import hash_password
from app.services.permission_service import permission_service
from tests.support import sqlite_engine


class ApiTests(unittest.TestCase):
    def setUp(self) -> None:
        permission_service.invalidate()
        self.engine = sqlite_engine()
        self.SessionLocal = sessionmaker(bind=self.engine, autoflush=False, autocommit=False)
        with self.SessionLocal() as db:
            password_hash = hash_password('secret')
            db.add(Principal(username='admin', display_name='Admin', password_hash=password_hash, role=PrincipalRole.ADMIN))
            db.add(Principal(username='op', display_name='Op', password_hash=password_hash, role=PrincipalRole.USER))
            permission_service.seed_defaults(db)
            db.commit()

        def override_get_db():
            db = self.SessionLocal()
            try:
                yield db
            except Exception:
                db.rollback()
                raise
            finally:
                db.close()

        app.dependency_overrides[get_db] = override_get_db
        self.session_patch = patch('app.security.sessions.SessionLocal', self.SessionLocal)
        self.session_patch.start()
        self.client = TestClient(app)

    def tearDown(self) -> None:
        self.session_patch.stop()
        app.dependency_overrides.clear()
        self.engine.dispose()
        permission_service.invalidate()

    def login(self, username: str) -> None:
        response = self.client.post('/auth/login', json={'username': username, 'password': 'secret'})
        self.assertEqual(response.status_code, 200, response.text)

    def test_requests_without_session_are_refused(self) -> None:
        response = self.client.get('/inventory/summary')

        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json(), {'success': False, 'error': 'Unauthorized', 'code': 'UNAUTHORIZED'})

    def test_bad_password_is_refused(self) -> None:
        response = self.client.post('/auth/login', json={'username': 'admin', 'password': 'wrong'})

        self.assertEqual(response.status_code, 401)
        self.assertFalse(response.json()['success'])

    def test_insufficient_stock_surfaces_both_numbers(self) -> None:
        self.login('admin')
        movement = {'direction': 'ENTRY', 'material_reference': 'REF-1', 'quantity': 70, 'company': 'ACME'}
        created = self.client.post('/inventory/movements', json=movement)
        self.assertEqual(created.status_code, 201, created.text)
        self.assertEqual(created.json()['data']['material_reference'], 'REF-1')

        ok = self.client.post('/inventory/movements', json={**movement, 'direction': 'EXIT', 'quantity': 60})
        rejected = self.client.post('/inventory/movements', json={**movement, 'direction': 'EXIT', 'quantity': 60})

        self.assertEqual(ok.status_code, 201)
        self.assertEqual(rejected.status_code, 409)
        body = rejected.json()
        self.assertEqual(body['code'], 'INSUFFICIENT_STOCK')
        self.assertEqual((body['available'], body['requested']), (10, 60))

        summary = self.client.get('/inventory/summary').json()['data']
        self.assertEqual(summary['total'], 1)
        self.assertEqual(summary['items'][0]['balance'], 10)

    def test_validation_errors_use_the_envelope(self) -> None:
        self.login('admin')

        zero = self.client.post(
            '/inventory/movements',
            json={'direction': 'ENTRY', 'material_reference': 'REF-1', 'quantity': 0, 'company': 'ACME'},
        )
        missing = self.client.post('/inventory/movements', json={'direction': 'ENTRY', 'quantity': 5})

        self.assertEqual(zero.status_code, 400)
        self.assertEqual(zero.json()['code'], 'VALIDATION_ERROR')
        self.assertEqual(missing.status_code, 400)
        self.assertEqual(missing.json()['code'], 'VALIDATION_ERROR')

    def test_restore_is_forbidden_for_non_admins(self) -> None:
        self.login('admin')
        created = self.client.post(
            '/inventory/movements',
            json={'direction': 'ENTRY', 'material_reference': 'REF-1', 'quantity': 5, 'company': 'ACME'},
        ).json()['data']
        self.assertEqual(self.client.delete(f'/inventory/movements/{created["id"]}').status_code, 200)

        self.client.post('/auth/logout')
        self.login('op')
        response = self.client.post(f'/inventory/movements/{created["id"]}/restore')

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()['error'], 'Forbidden')

    def test_reports_require_permission(self) -> None:
        self.login('op')

        self.assertEqual(self.client.get('/reports/metrics').status_code, 403)
        me = self.client.get('/auth/me').json()['data']
        self.assertEqual(me['role'], 'USER')
        self.assertFalse(me['permissions']['reports.view'])

    def test_stock_count_flow(self) -> None:
        self.login('op')

        self.assertIsNone(self.client.get('/stock-count/session').json()['data'])
        started = self.client.post('/stock-count/sessions', json={})
        self.assertEqual(started.status_code, 201, started.text)
        session = started.json()['data']
        self.assertEqual(self.client.get('/stock-count/session').json()['data']['id'], session['id'])
        saved = self.client.post(
            f'/stock-count/sessions/{session["id"]}/entries',
            json={'material_reference': 'REF-1', 'counted_quantity': 4},
        )
        closed = self.client.post(f'/stock-count/sessions/{session["id"]}/close')
        late = self.client.post(
            f'/stock-count/sessions/{session["id"]}/entries',
            json={'material_reference': 'REF-1', 'counted_quantity': 5},
        )

        self.assertEqual(saved.status_code, 200, saved.text)
        self.assertEqual(saved.json()['data']['difference'], 4)
        self.assertEqual(closed.json()['data']['status'], 'COMPLETED')
        self.assertEqual(late.status_code, 409)


    def test_opening_a_stock_count_needs_the_manage_grant(self) -> None:
        self.login('admin')
        revoked = self.client.put(
            '/admin/permissions',
            json={'role': 'USER', 'permission': 'stock-count.manage', 'granted': False},
        )
        self.assertEqual(revoked.status_code, 200, revoked.text)
        self.client.post('/auth/logout')
        self.login('op')

        refused = self.client.post('/stock-count/sessions', json={})
        lookup = self.client.get('/stock-count/session', params={'create': 'true'})

        self.assertEqual(refused.status_code, 403)
        self.assertEqual(refused.json()['code'], 'FORBIDDEN')
        self.assertEqual(lookup.status_code, 200)
        self.assertIsNone(lookup.json()['data'])
        self.assertEqual(self.client.get('/stock-count/sessions').json()['data'], [])


if __name__ == '__main__':
    unittest.main()
