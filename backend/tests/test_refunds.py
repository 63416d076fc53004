# Overview: Pytest coverage for refunds against saved sales.

"""
Refund tests.

Verifies:
- A refund marks the sale "refunded" and leaves stock alone
- Refunds on one sale never add up to more than its total
- Cancelled sales and other tenants' sales cannot be refunded
- Cancelling the last refund puts the sale back to "completed"
- Sales with refunds cannot be deleted or edited below the refunded amount
- Sales stats report refunds and net revenue
"""

import pytest

from pharmapos.models import Product, Refund, Sale
from pharmapos.services import refund_service, sales_service
from pharmapos.services.refund_service import RefundError
from pharmapos.services.sales_service import SaleError
from pharmapos.time_utils import today
from pharmapos.validation import ConflictError, ValidationError


def _sell(scope, product, quantity=2, **extra):
    payload = {'items': [{'product_id': product.id, 'quantity': quantity}], **extra}
    draft = sales_service.draft_from_payload(payload, scope)
    return sales_service.save_draft(draft, scope)


def _refund(scope, sale, amount, **extra):
    payload = {'sale_id': sale.id, 'refund_amount': amount, 'refund_reason': 'Wrong strength', **extra}
    return refund_service.create_refund(scope, payload)


class TestCreateRefund:
    def test_partial_refund(self, db_session, scope_a, product_a, customer_a, manager_a):
        sale = _sell(scope_a, product_a, customer_id=customer_a.id)

        refund = _refund(scope_a, sale, 500, refund_method='mobile_money', notes='Returned one strip')

        assert refund.status == 'completed'
        assert refund.refund_amount == 500
        assert refund.refund_method == 'mobile_money'
        assert refund.refund_date == today()
        assert refund.customer_id == customer_a.id
        assert refund.user_id == manager_a.id
        assert db_session.get(Sale, sale.id).payment_status == 'refunded'
        assert db_session.get(Product, product_a.id, populate_existing=True).quantity == 8

    def test_refunds_cannot_exceed_the_sale_total(self, db_session, scope_a, product_a):
        sale = _sell(scope_a, product_a)
        _refund(scope_a, sale, 1500)

        with pytest.raises(RefundError) as exc:
            _refund(scope_a, sale, 600)
        assert exc.value.details == {'sale_id': sale.id, 'requested': 600, 'available': 500}

        _refund(scope_a, sale, 500)
        assert refund_service.refunded_total(sale.id) == 2000

    def test_cancelled_sale(self, db_session, scope_a, product_a):
        sale = _sell(scope_a, product_a)
        sale.status = 'cancelled'
        db_session.commit()

        with pytest.raises(RefundError, match="cancelled sale"):
            _refund(scope_a, sale, 100)
        assert db_session.query(Refund).count() == 0

    def test_other_tenant_sale_not_found(self, db_session, scope_a, scope_b, product_b):
        sale = _sell(scope_b, product_b)
        with pytest.raises(RefundError, match="Sale not found"):
            _refund(scope_a, sale, 100)
        assert db_session.get(Sale, sale.id).payment_status == 'completed'

    @pytest.mark.parametrize("extra, message", [
        ({'refund_amount': 0}, "refund_amount must be a positive integer"),
        ({'refund_amount': '12.5'}, "refund_amount must be an integer"),
        ({'refund_reason': '   '}, "refund_reason is required"),
        ({'refund_method': 'cheque'}, "refund_method must be one of"),
        ({'refund_date': '17/10/2026'}, "refund_date must be an ISO-8601 date"),
    ])
    def test_invalid_payload(self, scope_a, product_a, extra, message):
        sale = _sell(scope_a, product_a)
        payload = {'sale_id': sale.id, 'refund_amount': 100, 'refund_reason': 'Damaged', **extra}
        with pytest.raises(ValidationError, match=message):
            refund_service.create_refund(scope_a, payload)


class TestCancelRefund:
    def test_cancelling_last_refund_restores_payment_status(self, db_session, scope_a, product_a):
        sale = _sell(scope_a, product_a)
        first = _refund(scope_a, sale, 300)
        second = _refund(scope_a, sale, 200)

        refund_service.cancel_refund(first.id, scope_a)
        assert db_session.get(Sale, sale.id).payment_status == 'refunded'

        refund_service.cancel_refund(second.id, scope_a)
        assert db_session.get(Sale, sale.id).payment_status == 'completed'
        assert refund_service.refunded_total(sale.id) == 0

        # The cancelled amounts are available again
        _refund(scope_a, sale, 2000)

    def test_cancel_twice(self, scope_a, product_a):
        refund = _refund(scope_a, _sell(scope_a, product_a), 300)
        refund_service.cancel_refund(refund.id, scope_a)
        with pytest.raises(RefundError, match="already cancelled"):
            refund_service.cancel_refund(refund.id, scope_a)

    def test_unknown_refund(self, scope_a):
        assert refund_service.cancel_refund(999, scope_a) is None


class TestSalesWithRefunds:
    def test_delete_is_refused(self, db_session, scope_a, product_a):
        sale = _sell(scope_a, product_a)
        _refund(scope_a, sale, 100)
        with pytest.raises(ConflictError):
            sales_service.delete_sale(sale.id, scope_a)
        assert db_session.get(Sale, sale.id) is not None

    def test_edit_below_refunded_amount_is_refused(self, db_session, scope_a, product_a):
        sale = _sell(scope_a, product_a)
        _refund(scope_a, sale, 1500)

        draft = sales_service.draft_from_payload(
            {'items': [{'product_id': product_a.id, 'quantity': 1}]}, scope_a, sale.id
        )
        with pytest.raises(SaleError) as exc:
            sales_service.save_draft(draft, scope_a)
        assert exc.value.details == {'total_amount': 1000, 'refunded': 1500}
        assert db_session.get(Product, product_a.id, populate_existing=True).quantity == 8

    def test_stats_report_net_revenue(self, scope_a, product_a):
        first = _sell(scope_a, product_a)
        _sell(scope_a, product_a, 1)
        _refund(scope_a, first, 400)
        cancelled = _refund(scope_a, first, 100)
        refund_service.cancel_refund(cancelled.id, scope_a)

        stats = sales_service.sales_stats(scope_a)
        assert stats['total_revenue'] == 3000
        assert stats['total_refunds'] == 1
        assert stats['refund_amount'] == 400
        assert stats['net_revenue'] == 2600


class TestListRefunds:
    def test_filters_and_sorting(self, scope_a, product_a, product_a2):
        sale = _sell(scope_a, product_a)
        other = _sell(scope_a, product_a2, 4)
        _refund(scope_a, sale, 700, refund_method='card')
        _refund(scope_a, other, 250, refund_reason='Expired stock')

        result = refund_service.list_refunds(scope_a, sort_by='refund_amount', sort_order='asc')
        assert [r['refund_amount'] for r in result['items']] == [250, 700]

        result = refund_service.list_refunds(scope_a, refund_method='card')
        assert [r['transaction_number'] for r in result['items']] == [sale.transaction_number]

        result = refund_service.list_refunds(scope_a, search='expired')
        assert [r['sale_id'] for r in result['items']] == [other.id]

    def test_bad_sort_field(self, scope_a):
        with pytest.raises(ValidationError):
            refund_service.list_refunds(scope_a, sort_by='amount')


class TestRefundsApi:
    def test_create_and_list(self, client, manager_a, product_a, scope_a, login_as):
        sale = _sell(scope_a, product_a)
        headers = login_as(manager_a)

        resp = client.post('/api/sales/refunds', json={
            'sale_id': sale.id, 'refund_amount': 1000, 'refund_reason': 'Customer returned goods',
        }, headers=headers)
        assert resp.status_code == 201
        body = resp.get_json()
        assert body['refund']['refund_method'] == 'cash'
        assert body['sale']['payment_status'] == 'refunded'

        resp = client.get('/api/sales/refunds', headers=headers)
        assert resp.status_code == 200
        items = resp.get_json()['items']
        assert len(items) == 1
        assert items[0]['processed_by'] == 'Manager Tester'

        refund_id = items[0]['id']
        assert client.get(f'/api/sales/refunds/{refund_id}', headers=headers).status_code == 200

    def test_over_refund_is_400(self, client, manager_a, product_a, scope_a, login_as):
        sale = _sell(scope_a, product_a)
        resp = client.post('/api/sales/refunds', json={
            'sale_id': sale.id, 'refund_amount': 2001, 'refund_reason': 'Overcharge',
        }, headers=login_as(manager_a))
        assert resp.status_code == 400
        assert resp.get_json()['details']['available'] == 2000

    def test_unknown_sale_is_404(self, client, manager_a, login_as):
        resp = client.post('/api/sales/refunds', json={
            'sale_id': 999, 'refund_amount': 100, 'refund_reason': 'Overcharge',
        }, headers=login_as(manager_a))
        assert resp.status_code == 404

    def test_cashier_is_denied(self, client, cashier_a, login_as):
        assert client.get('/api/sales/refunds', headers=login_as(cashier_a)).status_code == 403

    def test_cancel_endpoint(self, client, manager_a, product_a, scope_a, login_as):
        refund = _refund(scope_a, _sell(scope_a, product_a), 300)
        resp = client.post(f'/api/sales/refunds/{refund.id}/cancel', headers=login_as(manager_a))
        assert resp.status_code == 200
        assert resp.get_json()['refund']['status'] == 'cancelled'
        assert resp.get_json()['sale']['payment_status'] == 'completed'

    def test_delete_refunded_sale_is_409(self, client, manager_a, product_a, scope_a, login_as):
        sale = _sell(scope_a, product_a)
        _refund(scope_a, sale, 100)
        resp = client.delete(f'/api/sales/{sale.id}', headers=login_as(manager_a))
        assert resp.status_code == 409
        assert resp.get_json()['error'] == 'Cannot delete a sale with refunds'
