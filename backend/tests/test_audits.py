# Overview: Pytest coverage for stock audits.

"""
Stock audit tests.

Verifies:
- Items snapshot the system quantity when they join the audit
- Counting moves the audit to in_progress; unknown products are rejected
- Completing applies actual - expected to stock once, keeping sales made
  after the count
- Completed and cancelled audits are frozen
- Audit counters show up in the stock stats
"""

import pytest

from pharmapos.models import Product, StockAudit
from pharmapos.services import audit_service, products_service, sales_service
from pharmapos.services.audit_service import AuditError
from pharmapos.validation import ValidationError


def _stock(db_session, product):
    return db_session.get(Product, product.id, populate_existing=True).quantity


class TestCreate:
    def test_items_capture_expected_quantity(self, scope_a, product_a, product_a2, manager_a):
        audit = audit_service.create_audit(scope_a, {'product_ids': [product_a.id, product_a2.id, product_a.id]})

        assert audit.status == 'pending'
        assert audit.user_id == manager_a.id
        assert [(i.product_name, i.expected_quantity) for i in audit.items] == [
            ('Paracetamol 500mg', 10),
            ('ORS Sachet', 5),
        ]
        assert audit.counted_items == 0

    def test_all_products(self, db_session, scope_a, product_a, product_a2):
        product_a2.status = 'inactive'
        db_session.commit()
        audit = audit_service.create_audit(scope_a, {'all_products': True})
        assert [i.product_id for i in audit.items] == [product_a.id]

    def test_other_tenant_product_rejected(self, db_session, scope_a, product_b):
        with pytest.raises(AuditError, match="Product not found"):
            audit_service.create_audit(scope_a, {'product_ids': [product_b.id]})
        assert db_session.query(StockAudit).count() == 0


class TestCountAndComplete:
    def test_complete_applies_differences(self, db_session, scope_a, product_a, product_a2, manager_a):
        audit = audit_service.create_audit(scope_a, {'product_ids': [product_a.id, product_a2.id]})

        audit = audit_service.record_counts(audit.id, scope_a, [
            {'product_id': product_a.id, 'actual_quantity': 7, 'notes': 'Two strips damaged'},
            {'product_id': product_a2.id, 'actual_quantity': 6},
        ])
        assert audit.status == 'in_progress'
        assert audit.discrepancies == 2

        audit = audit_service.complete_audit(audit.id, scope_a)
        assert audit.status == 'completed'
        assert audit.completed_by == manager_a.id
        assert audit.completed_at is not None
        assert _stock(db_session, product_a) == 7
        assert _stock(db_session, product_a2) == 6

    def test_sales_after_the_count_are_kept(self, db_session, scope_a, product_a):
        audit = audit_service.create_audit(scope_a, {'product_ids': [product_a.id]})
        audit_service.record_counts(audit.id, scope_a, [{'product_id': product_a.id, 'actual_quantity': 9}])

        draft = sales_service.draft_from_payload({'items': [{'product_id': product_a.id, 'quantity': 3}]}, scope_a)
        sales_service.save_draft(draft, scope_a)

        audit_service.complete_audit(audit.id, scope_a)
        assert _stock(db_session, product_a) == 6

    def test_counting_adds_missing_products(self, scope_a, product_a, product_a2):
        audit = audit_service.create_audit(scope_a, {'product_ids': [product_a.id]})
        audit = audit_service.record_counts(audit.id, scope_a, [{'product_id': product_a2.id, 'actual_quantity': 5}])
        item = [i for i in audit.items if i.product_id == product_a2.id][0]
        assert item.expected_quantity == 5
        assert item.difference == 0

    def test_uncounted_items_are_left_alone(self, db_session, scope_a, product_a, product_a2):
        audit = audit_service.create_audit(scope_a, {'product_ids': [product_a.id, product_a2.id]})
        audit_service.record_counts(audit.id, scope_a, [{'product_id': product_a.id, 'actual_quantity': 12}])
        audit_service.complete_audit(audit.id, scope_a)
        assert _stock(db_session, product_a) == 12
        assert _stock(db_session, product_a2) == 5

    def test_nothing_counted(self, scope_a, product_a):
        audit = audit_service.create_audit(scope_a, {'product_ids': [product_a.id]})
        with pytest.raises(AuditError, match="Nothing has been counted"):
            audit_service.complete_audit(audit.id, scope_a)

    def test_negative_count_rejected(self, scope_a, product_a):
        audit = audit_service.create_audit(scope_a, {'product_ids': [product_a.id]})
        with pytest.raises(ValidationError):
            audit_service.record_counts(audit.id, scope_a, [{'product_id': product_a.id, 'actual_quantity': -1}])

    def test_completed_audit_is_frozen(self, db_session, scope_a, product_a):
        audit = audit_service.create_audit(scope_a, {'product_ids': [product_a.id]})
        audit_service.record_counts(audit.id, scope_a, [{'product_id': product_a.id, 'actual_quantity': 4}])
        audit_service.complete_audit(audit.id, scope_a)

        with pytest.raises(AuditError, match="Audit is completed"):
            audit_service.complete_audit(audit.id, scope_a)
        with pytest.raises(AuditError):
            audit_service.record_counts(audit.id, scope_a, [{'product_id': product_a.id, 'actual_quantity': 10}])
        assert _stock(db_session, product_a) == 4

    def test_cancelled_audit_changes_nothing(self, db_session, scope_a, product_a):
        audit = audit_service.create_audit(scope_a, {'product_ids': [product_a.id]})
        audit_service.record_counts(audit.id, scope_a, [{'product_id': product_a.id, 'actual_quantity': 1}])
        audit_service.cancel_audit(audit.id, scope_a)

        with pytest.raises(AuditError, match="Audit is cancelled"):
            audit_service.complete_audit(audit.id, scope_a)
        assert _stock(db_session, product_a) == 10

    def test_deleted_product_keeps_its_audit_line(self, db_session, scope_a, product_a, product_a2):
        audit = audit_service.create_audit(scope_a, {'product_ids': [product_a.id, product_a2.id]})
        audit_service.record_counts(audit.id, scope_a, [
            {'product_id': product_a.id, 'actual_quantity': 3},
            {'product_id': product_a2.id, 'actual_quantity': 2},
        ])
        assert products_service.delete_product(product_a.id, scope_a)

        audit = audit_service.complete_audit(audit.id, scope_a)
        names = {i.product_name: i.product_id for i in audit.items}
        assert names['Paracetamol 500mg'] is None
        assert _stock(db_session, product_a2) == 2


class TestAuditsApi:
    def test_workflow(self, client, manager_a, product_a, login_as):
        headers = login_as(manager_a)

        resp = client.post('/api/audits', json={'product_ids': [product_a.id], 'notes': 'Month end'}, headers=headers)
        assert resp.status_code == 201
        audit_id = resp.get_json()['audit']['id']

        resp = client.put(f'/api/audits/{audit_id}/counts', json={
            'counts': [{'product_id': product_a.id, 'actual_quantity': 8}],
        }, headers=headers)
        assert resp.status_code == 200
        item = resp.get_json()['audit']['items'][0]
        assert item['difference'] == -2

        stats = client.get('/api/products/stats', headers=headers).get_json()['stats']
        assert stats['pending_audits'] == 1
        assert stats['completed_audits_this_month'] == 0

        resp = client.post(f'/api/audits/{audit_id}/complete', headers=headers)
        assert resp.status_code == 200
        assert resp.get_json()['audit']['status'] == 'completed'
        assert client.get(f'/api/products/{product_a.id}', headers=headers).get_json()['product']['quantity'] == 8

        stats = client.get('/api/products/stats', headers=headers).get_json()['stats']
        assert stats['pending_audits'] == 0
        assert stats['completed_audits_this_month'] == 1

        resp = client.get('/api/audits?status=completed', headers=headers)
        assert resp.get_json()['count'] == 1

    def test_second_completion_is_400(self, client, manager_a, product_a, scope_a, login_as):
        audit = audit_service.create_audit(scope_a, {'product_ids': [product_a.id]})
        audit_service.record_counts(audit.id, scope_a, [{'product_id': product_a.id, 'actual_quantity': 8}])
        headers = login_as(manager_a)
        assert client.post(f'/api/audits/{audit.id}/complete', headers=headers).status_code == 200
        assert client.post(f'/api/audits/{audit.id}/complete', headers=headers).status_code == 400

    def test_other_tenant_audit_not_found(self, client, manager_b, product_a, scope_a, login_as):
        audit = audit_service.create_audit(scope_a, {'product_ids': [product_a.id]})
        headers = login_as(manager_b)
        assert client.get(f'/api/audits/{audit.id}', headers=headers).status_code == 404
        assert client.post(f'/api/audits/{audit.id}/cancel', headers=headers).status_code == 404

    def test_cashier_is_denied(self, client, cashier_a, login_as):
        assert client.get('/api/audits', headers=login_as(cashier_a)).status_code == 403
