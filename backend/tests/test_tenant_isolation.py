# Overview: Pytest coverage for tenant and branch isolation.

"""
Multi-Tenant Isolation Tests

SECURITY TESTS: Prove that cross-tenant and cross-branch access is denied.

These tests use two tenants (A with two branches, B with one) and verify that:
1. A user of tenant A cannot read or write rows of tenant B
2. Staff are pinned to their own branch; a foreign X-Branch-Id is a 404
3. Owners choose a branch with X-Branch-Id, or see the whole tenant without one
4. Cross-tenant access attempts are recorded as security events
"""

import pytest

from pharmapos.models import Product, SecurityEvent
from pharmapos.services.tenant_service import (
    Scope,
    TenantAccessError,
    get_tenant_branches,
    require_branch_in_tenant,
    resolve_branch_id,
    scoped_query,
    validate_tenant_active,
)


def _denials(db_session):
    return db_session.query(SecurityEvent).filter_by(event_type="CROSS_TENANT_ACCESS_DENIED").count()


class TestTenantServiceHelpers:
    """Test tenant_service helper functions."""

    def test_require_branch_in_tenant_valid(self, db_session, tenant_a, branch_a):
        """Branch in its own tenant passes validation."""
        assert require_branch_in_tenant(branch_a.id, tenant_a.id).id == branch_a.id

    def test_require_branch_in_tenant_cross_tenant(self, db_session, tenant_a, branch_b):
        """Branch of another tenant looks exactly like a missing one."""
        with pytest.raises(TenantAccessError, match="Branch not found"):
            require_branch_in_tenant(branch_b.id, tenant_a.id)
        with pytest.raises(TenantAccessError, match="Branch not found"):
            require_branch_in_tenant(99999, tenant_a.id)
        assert _denials(db_session) == 2

    def test_get_tenant_branches(self, db_session, tenant_a, tenant_b, branch_a, branch_a2, branch_b):
        assert [b.name for b in get_tenant_branches(tenant_a.id)] == ["Entebbe", "Kampala Road"]
        assert [b.id for b in get_tenant_branches(tenant_b.id)] == [branch_b.id]

    def test_validate_tenant_active(self, db_session, tenant_a):
        assert validate_tenant_active(tenant_a.id) is tenant_a
        tenant_a.is_active = False
        db_session.commit()
        with pytest.raises(TenantAccessError, match="Tenant is not active"):
            validate_tenant_active(tenant_a.id)
        with pytest.raises(TenantAccessError, match="Tenant not found"):
            validate_tenant_active(99999)

    def test_scoped_query(self, db_session, tenant_a, branch_a, branch_a2, product_a, product_b):
        db_session.add(Product(tenant_id=tenant_a.id, branch_id=branch_a2.id, name="Entebbe stock", price=1))
        db_session.commit()

        branch_scope = Scope(tenant_id=tenant_a.id, branch_id=branch_a.id)
        tenant_scope = Scope(tenant_id=tenant_a.id, branch_id=None)

        assert [p.id for p in scoped_query(Product, branch_scope)] == [product_a.id]
        assert scoped_query(Product, tenant_scope).count() == 2
        assert scoped_query(Product, branch_scope, branch=False).count() == 2


class TestResolveBranch:
    def test_staff_default_to_their_branch(self, tenant_a, branch_a, cashier_a):
        assert resolve_branch_id(cashier_a, tenant_a.id, None) == branch_a.id
        assert resolve_branch_id(cashier_a, tenant_a.id, branch_a.id) == branch_a.id

    def test_staff_cannot_switch_branch(self, db_session, tenant_a, branch_a2, cashier_a):
        with pytest.raises(TenantAccessError):
            resolve_branch_id(cashier_a, tenant_a.id, branch_a2.id)
        assert _denials(db_session) == 1

    def test_owner_picks_any_own_branch(self, tenant_a, branch_a2, branch_b, owner_a):
        assert resolve_branch_id(owner_a, tenant_a.id, None) is None
        assert resolve_branch_id(owner_a, tenant_a.id, branch_a2.id) == branch_a2.id
        with pytest.raises(TenantAccessError):
            resolve_branch_id(owner_a, tenant_a.id, branch_b.id)


class TestCrossTenantProducts:
    """Products of tenant B are invisible to tenant A."""

    def test_read_other_tenant_product(self, client, manager_a, product_b, login_as):
        resp = client.get(f'/api/products/{product_b.id}', headers=login_as(manager_a))
        assert resp.status_code == 404

    def test_update_other_tenant_product(self, client, db_session, manager_a, product_b, login_as):
        resp = client.put(f'/api/products/{product_b.id}', json={'price': 1}, headers=login_as(manager_a))
        assert resp.status_code == 404
        assert db_session.get(Product, product_b.id, populate_existing=True).price == 1500

    def test_delete_other_tenant_product(self, client, db_session, manager_a, product_b, login_as):
        resp = client.delete(f'/api/products/{product_b.id}', headers=login_as(manager_a))
        assert resp.status_code == 404
        assert db_session.get(Product, product_b.id) is not None

    def test_list_only_own_branch(self, client, manager_a, product_a, product_b, login_as):
        body = client.get('/api/products', headers=login_as(manager_a)).get_json()
        assert [item['id'] for item in body['items']] == [product_a.id]

    def test_payload_cannot_choose_tenant(self, client, manager_a, tenant_b, login_as):
        resp = client.post('/api/products', json={'name': 'X', 'price': 1, 'tenant_id': tenant_b.id},
                           headers=login_as(manager_a))
        assert resp.status_code == 400


class TestBranchHeader:
    def test_non_integer_header_is_400(self, client, manager_a, login_as):
        headers = login_as(manager_a)
        headers['X-Branch-Id'] = 'main'
        assert client.get('/api/products', headers=headers).status_code == 400

    def test_foreign_branch_is_404(self, client, db_session, owner_a, branch_b, login_as):
        resp = client.get('/api/products', headers=login_as(owner_a, branch_id=branch_b.id))
        assert resp.status_code == 404

        event = db_session.query(SecurityEvent).filter_by(event_type="CROSS_TENANT_ACCESS_DENIED").one()
        assert event.tenant_id == owner_a.tenant_id
        assert event.resource == '/api/products'

    def test_manager_cannot_pick_sibling_branch(self, client, manager_a, branch_a2, login_as):
        resp = client.get('/api/products', headers=login_as(manager_a, branch_id=branch_a2.id))
        assert resp.status_code == 404

    def test_owner_without_branch_sees_whole_tenant(self, client, owner_a, branch_a2, product_a, product_b,
                                                    login_as):
        client_headers = login_as(owner_a)
        body = client.get('/api/products', headers=client_headers).get_json()
        assert [item['id'] for item in body['items']] == [product_a.id]

    def test_owner_with_branch_sees_only_that_branch(self, client, db_session, owner_a, branch_a2, product_a,
                                                     login_as):
        db_session.add(Product(tenant_id=branch_a2.tenant_id, branch_id=branch_a2.id, name="Entebbe stock",
                               price=1))
        db_session.commit()

        body = client.get('/api/products', headers=login_as(owner_a, branch_id=branch_a2.id)).get_json()
        assert [item['name'] for item in body['items']] == ['Entebbe stock']

        body = client.get('/api/products', headers=login_as(owner_a)).get_json()
        assert body['count'] == 2


class TestCrossTenantData:
    def test_generic_reads_are_scoped(self, client, manager_a, product_a, product_b, login_as):
        body = client.get('/api/data/products?select=id', headers=login_as(manager_a)).get_json()
        assert body['data'] == [{'id': product_a.id}]

    def test_filter_cannot_widen_scope(self, client, manager_a, product_b, tenant_b, login_as):
        body = client.get(f'/api/data/products?tenant_id=eq.{tenant_b.id}',
                          headers=login_as(manager_a)).get_json()
        assert body['data'] == []

    def test_generic_delete_of_foreign_row(self, client, db_session, manager_a, product_b, login_as):
        resp = client.post('/api/data/products', json={'id': product_b.id}, headers=login_as(manager_a))
        assert resp.status_code == 404
        assert db_session.get(Product, product_b.id) is not None

    def test_other_tenant_users_hidden(self, client, manager_a, manager_b, login_as):
        body = client.get('/api/data/users?select=email', headers=login_as(manager_a)).get_json()
        assert body['data'] == [{'email': 'manager@city.test'}]

    def test_other_tenant_customer(self, client, manager_b, customer_a, login_as):
        resp = client.get(f'/api/customers/{customer_a.id}', headers=login_as(manager_b))
        assert resp.status_code == 404
