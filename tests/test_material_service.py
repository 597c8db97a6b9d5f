from __future__ import annotations

import unittest
from datetime import date

from app.errors import ValidationError
from app.services.audit_service import list_entity_history
from app.services.material_service import definition_for, definitions_for, list_materials, upsert_material
from tests.support import LedgerTestCase


class MaterialServiceTests(LedgerTestCase):
    def test_undefined_material_gets_defaults(self) -> None:
        view = definition_for(self.db, 'ref-1')

        self.assertEqual(view.reference, 'REF-1')
        self.assertEqual(view.min_stock_threshold, 20)
        self.assertFalse(view.defined)

    def test_listing_merges_definitions_with_ledger_references(self) -> None:
        upsert_material(self.db, actor_id=self.admin.id, reference='DEF-1', min_stock_threshold=3, abc_class='a')
        self.stock_in('LED-1', 5, date(2024, 5, 6))
        self.stock_in('DEF-1', 5, date(2024, 5, 6))

        views = list_materials(self.db)
        searched = list_materials(self.db, search='led')

        self.assertEqual([(v.reference, v.defined) for v in views], [('DEF-1', True), ('LED-1', False)])
        self.assertEqual(views[0].abc_class, 'A')
        self.assertEqual([v.reference for v in searched], ['LED-1'])

    def test_batch_lookup_returns_one_view_per_reference(self) -> None:
        upsert_material(self.db, actor_id=self.admin.id, reference='DEF-1', min_stock_threshold=None, unit='kg')

        views = definitions_for(self.db, ['DEF-1', 'OTHER', 'DEF-1'])

        self.assertEqual(sorted(views), ['DEF-1', 'OTHER'])
        self.assertEqual(views['DEF-1'].min_stock_threshold, 20)
        self.assertEqual(views['DEF-1'].unit, 'kg')

    def test_upsert_validates_and_audits(self) -> None:
        with self.assertRaises(ValidationError):
            upsert_material(self.db, actor_id=self.admin.id, reference='X', min_stock_threshold=-1)
        with self.assertRaises(ValidationError):
            upsert_material(self.db, actor_id=self.admin.id, reference='X', min_stock_threshold=1, abc_class='Z')
        with self.assertRaises(ValidationError):
            upsert_material(self.db, actor_id=self.admin.id, reference='  ', min_stock_threshold=1)

        upsert_material(self.db, actor_id=self.admin.id, reference='X', min_stock_threshold=1)
        upsert_material(self.db, actor_id=self.admin.id, reference='x', min_stock_threshold=4)

        self.assertEqual(definition_for(self.db, 'X').min_stock_threshold, 4)
        actions = [e.action for e in list_entity_history(self.db, entity='MaterialDefinition', entity_id='X')]
        self.assertEqual(actions, ['CREATE', 'UPDATE'])


if __name__ == '__main__':
    unittest.main()
