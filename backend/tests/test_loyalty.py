# Overview: Pytest coverage for the loyalty points ledger.

"""
Loyalty tests.

Verifies:
- Adding and redeeming write a ledger row and the balance in one commit
- Redeeming more than the balance is refused
- A stale expected_balance is refused (no lost updates)
- The balance always matches the newest ledger row
"""

import pytest

from pharmapos.models import Customer, LoyaltyTransaction
from pharmapos.services import loyalty_service
from pharmapos.services.loyalty_service import LoyaltyError


class TestLedger:
    def test_add_points(self, db_session, scope_a, manager_a, customer_a):
        customer, entry = loyalty_service.add_points(customer_a.id, 50, "Welcome bonus", scope_a)

        assert customer.loyalty_points == 50
        assert entry.transaction_type == 'adjusted'
        assert entry.points_amount == 50
        assert entry.points_balance_before == 0
        assert entry.points_balance_after == 50
        assert entry.created_by == manager_a.id
        assert entry.description == 'Welcome bonus'

    def test_redeem_points(self, scope_a, customer_a):
        loyalty_service.add_points(customer_a.id, 80, "Bonus", scope_a)
        customer, entry = loyalty_service.redeem_points(customer_a.id, 30, "Discount on syrup", scope_a)

        assert customer.loyalty_points == 50
        assert entry.transaction_type == 'redeemed'
        assert entry.points_balance_before == 80
        assert entry.points_balance_after == 50

    def test_cannot_redeem_more_than_balance(self, db_session, scope_a, customer_a):
        loyalty_service.add_points(customer_a.id, 10, "Bonus", scope_a)

        with pytest.raises(LoyaltyError, match="Cannot redeem more points than available") as exc:
            loyalty_service.redeem_points(customer_a.id, 11, "Too much", scope_a)
        assert exc.value.details == {'requested': 11, 'available': 10}

        assert db_session.get(Customer, customer_a.id).loyalty_points == 10
        assert db_session.query(LoyaltyTransaction).count() == 1

    @pytest.mark.parametrize("amount", [0, -5, "abc", None, 2.5, True])
    def test_invalid_amounts(self, scope_a, customer_a, amount):
        with pytest.raises(LoyaltyError, match="Please enter a valid number of points"):
            loyalty_service.add_points(customer_a.id, amount, "Bonus", scope_a)

    @pytest.mark.parametrize("reason", ["", "   ", None])
    def test_reason_required(self, scope_a, customer_a, reason):
        with pytest.raises(LoyaltyError, match="A reason is required"):
            loyalty_service.add_points(customer_a.id, 5, reason, scope_a)

    def test_stale_expected_balance(self, db_session, scope_a, customer_a):
        loyalty_service.add_points(customer_a.id, 20, "Bonus", scope_a)

        # Screen still shows the balance from before the first write
        with pytest.raises(LoyaltyError, match="Points balance has changed"):
            loyalty_service.add_points(customer_a.id, 20, "Bonus again", scope_a, expected_balance=0)

        customer, _entry = loyalty_service.add_points(
            customer_a.id, 20, "Bonus again", scope_a, expected_balance=20
        )
        assert customer.loyalty_points == 40

    def test_unknown_customer(self, scope_a):
        with pytest.raises(LoyaltyError, match="Customer not found"):
            loyalty_service.add_points(9999, 5, "Bonus", scope_a)

    def test_other_branch_customer(self, scope_b, customer_a):
        with pytest.raises(LoyaltyError, match="Customer not found"):
            loyalty_service.add_points(customer_a.id, 5, "Bonus", scope_b)

    def test_history_newest_first(self, scope_a, customer_a):
        loyalty_service.add_points(customer_a.id, 10, "First", scope_a)
        loyalty_service.add_points(customer_a.id, 20, "Second", scope_a)
        loyalty_service.redeem_points(customer_a.id, 5, "Third", scope_a)

        history = loyalty_service.list_transactions(customer_a.id, scope_a)
        assert [t.description for t in history] == ["Third", "Second", "First"]
        assert len(loyalty_service.list_transactions(customer_a.id, scope_a, limit=2)) == 2


class TestReconcile:
    def test_in_sync_after_writes(self, scope_a, customer_a):
        loyalty_service.add_points(customer_a.id, 30, "Bonus", scope_a)
        loyalty_service.redeem_points(customer_a.id, 10, "Spend", scope_a)

        result = loyalty_service.reconcile_balance(customer_a.id, scope_a)
        assert result == {
            'customer_id': customer_a.id,
            'balance': 20,
            'ledger_balance': 20,
            'transaction_count': 2,
            'in_sync': True,
        }

    def test_detects_drift(self, db_session, scope_a, customer_a):
        loyalty_service.add_points(customer_a.id, 30, "Bonus", scope_a)
        customer = db_session.get(Customer, customer_a.id)
        customer.loyalty_points = 999
        db_session.commit()

        result = loyalty_service.reconcile_balance(customer_a.id, scope_a)
        assert result['in_sync'] is False
        assert result['ledger_balance'] == 30

    def test_no_history_zero_balance(self, scope_a, customer_a):
        assert loyalty_service.reconcile_balance(customer_a.id, scope_a)['in_sync'] is True


class TestLoyaltyApi:
    def test_add_then_redeem(self, client, cashier_a, customer_a, login_as):
        headers = login_as(cashier_a)
        resp = client.post(f'/api/customers/{customer_a.id}/loyalty/add',
                           json={'points': 40, 'reason': 'Bonus', 'expected_balance': 0}, headers=headers)
        assert resp.status_code == 201
        assert resp.get_json()['balance'] == 40

        resp = client.post(f'/api/customers/{customer_a.id}/loyalty/redeem',
                           json={'points': 15, 'reason': 'Spend', 'expected_balance': 40}, headers=headers)
        assert resp.status_code == 201
        assert resp.get_json()['transaction']['transaction_type'] == 'redeemed'

        history = client.get(f'/api/customers/{customer_a.id}/loyalty', headers=headers).get_json()
        assert history['balance']['balance'] == 25
        assert len(history['transactions']) == 2

    def test_over_redeem_is_400(self, client, cashier_a, customer_a, login_as):
        resp = client.post(f'/api/customers/{customer_a.id}/loyalty/redeem',
                           json={'points': 1, 'reason': 'Spend'}, headers=login_as(cashier_a))
        assert resp.status_code == 400

    def test_bad_expected_balance_is_400(self, client, cashier_a, customer_a, login_as):
        resp = client.post(f'/api/customers/{customer_a.id}/loyalty/add',
                           json={'points': 1, 'reason': 'x', 'expected_balance': '0'}, headers=login_as(cashier_a))
        assert resp.status_code == 400

    def test_unknown_customer_is_404(self, client, cashier_a, login_as):
        resp = client.post('/api/customers/9999/loyalty/add',
                           json={'points': 1, 'reason': 'x'}, headers=login_as(cashier_a))
        assert resp.status_code == 404

    def test_staff_cannot_adjust(self, client, staff_a, customer_a, login_as):
        resp = client.post(f'/api/customers/{customer_a.id}/loyalty/add',
                           json={'points': 1, 'reason': 'x'}, headers=login_as(staff_a))
        assert resp.status_code == 403
