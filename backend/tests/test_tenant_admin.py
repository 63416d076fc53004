# Overview: Pytest coverage for owner-level branch and user management.

"""
Tenant administration tests.

Verifies:
- Only owners reach /api/tenant
- Branch names and codes are unique inside a tenant; the last active
  branch cannot be deactivated
- Deactivating a branch ends the sessions of staff pinned to it
- Users are created with the owner/branch rule and a strong password
- Deactivating a user revokes their sessions and is audited
- Another tenant's branches and users are reported as not found
"""

import pytest

from pharmapos.models import SecurityEvent, User
from pharmapos.services import sales_service, user_service
from pharmapos.services.tenant_service import Scope
from pharmapos.services.user_service import UserError
from pharmapos.validation import ValidationError

PASSWORD = "Password123!"


class TestAccess:
    @pytest.mark.parametrize("path", ["/api/tenant/branches", "/api/tenant/users", "/api/tenant/overview"])
    def test_manager_is_denied(self, client, manager_a, login_as, path):
        resp = client.get(path, headers=login_as(manager_a))
        assert resp.status_code == 403
        assert resp.get_json()['redirect'] == '/unauthorized'

    def test_requires_login(self, client, db_session):
        assert client.get('/api/tenant/branches').status_code == 401


class TestBranches:
    def test_list_counts_active_users(self, client, owner_a, manager_a, cashier_a, branch_a, branch_a2, login_as):
        resp = client.get('/api/tenant/branches', headers=login_as(owner_a))
        assert resp.status_code == 200
        by_name = {b['name']: b for b in resp.get_json()['items']}
        assert set(by_name) == {'Kampala Road', 'Entebbe'}
        assert by_name['Kampala Road']['user_count'] == 2
        assert by_name['Entebbe']['user_count'] == 0

    def test_list_hides_other_tenants(self, client, owner_a, branch_a, branch_b, login_as):
        names = [b['name'] for b in client.get('/api/tenant/branches', headers=login_as(owner_a)).get_json()['items']]
        assert names == ['Kampala Road']

    def test_create(self, client, owner_a, branch_a, login_as):
        resp = client.post('/api/tenant/branches', json={
            'name': ' Mbarara ', 'code': 'mbr', 'phone': '+256 700 000000',
        }, headers=login_as(owner_a))
        assert resp.status_code == 201
        branch = resp.get_json()['branch']
        assert branch['name'] == 'Mbarara'
        assert branch['code'] == 'MBR'
        assert branch['tenant_id'] == owner_a.tenant_id
        assert branch['is_active'] is True

    def test_name_required(self, client, owner_a, login_as):
        resp = client.post('/api/tenant/branches', json={'name': '  '}, headers=login_as(owner_a))
        assert resp.status_code == 400

    def test_duplicate_name_and_code(self, client, owner_a, branch_a, login_as):
        headers = login_as(owner_a)
        resp = client.post('/api/tenant/branches', json={'name': 'Kampala Road'}, headers=headers)
        assert resp.status_code == 409

        resp = client.post('/api/tenant/branches', json={'name': 'Kampala Road 2', 'code': 'kla'}, headers=headers)
        assert resp.status_code == 409
        assert "already exists" in resp.get_json()['error']

    def test_same_name_in_another_tenant_is_allowed(self, client, owner_a, branch_a, branch_b, login_as):
        resp = client.post('/api/tenant/branches', json={'name': 'Jinja', 'code': 'JJA'}, headers=login_as(owner_a))
        assert resp.status_code == 201

    def test_update(self, client, owner_a, branch_a, branch_a2, login_as):
        headers = login_as(owner_a)
        resp = client.put(f'/api/tenant/branches/{branch_a.id}', json={'address': 'Plot 5'}, headers=headers)
        assert resp.status_code == 200
        assert resp.get_json()['branch']['address'] == 'Plot 5'
        assert resp.get_json()['branch']['name'] == 'Kampala Road'

        resp = client.put(f'/api/tenant/branches/{branch_a.id}', json={'name': 'Entebbe'}, headers=headers)
        assert resp.status_code == 409

    def test_other_tenant_branch_is_not_found(self, client, owner_a, branch_b, login_as):
        headers = login_as(owner_a)
        assert client.get(f'/api/tenant/branches/{branch_b.id}', headers=headers).status_code == 404
        resp = client.put(f'/api/tenant/branches/{branch_b.id}', json={'name': 'Mine'}, headers=headers)
        assert resp.status_code == 404

    def test_last_active_branch_cannot_be_deactivated(self, client, owner_a, branch_a, login_as):
        resp = client.post(f'/api/tenant/branches/{branch_a.id}/deactivate', headers=login_as(owner_a))
        assert resp.status_code == 400
        assert resp.get_json()['error'] == 'Cannot deactivate the only active branch'

    def test_deactivation_ends_pinned_sessions(self, client, owner_a, manager_a, branch_a, branch_a2, login_as):
        manager_headers = login_as(manager_a)
        assert client.get('/api/products', headers=manager_headers).status_code == 200

        resp = client.post(f'/api/tenant/branches/{branch_a.id}/deactivate', headers=login_as(owner_a))
        assert resp.status_code == 200
        assert resp.get_json()['branch']['is_active'] is False

        assert client.get('/api/products', headers=manager_headers).status_code == 401
        resp = client.post('/api/auth/login', json={'email': 'manager@city.test', 'password': PASSWORD})
        assert resp.status_code == 401

        resp = client.post(f'/api/tenant/branches/{branch_a.id}/reactivate', headers=login_as(owner_a))
        assert resp.get_json()['branch']['is_active'] is True
        resp = client.post('/api/auth/login', json={'email': 'manager@city.test', 'password': PASSWORD})
        assert resp.status_code == 200


class TestUsers:
    def test_list_active_users(self, client, owner_a, manager_a, cashier_a, manager_b, login_as):
        resp = client.get('/api/tenant/users', headers=login_as(owner_a))
        assert resp.status_code == 200
        emails = [u['email'] for u in resp.get_json()['items']]
        assert emails == ['cashier@city.test', 'manager@city.test', 'owner@city.test']

    def test_list_filters(self, client, db_session, owner_a, manager_a, cashier_a, branch_a, login_as):
        headers = login_as(owner_a)
        cashier_a.is_active = False
        db_session.commit()

        items = client.get('/api/tenant/users', headers=headers).get_json()['items']
        assert 'cashier@city.test' not in [u['email'] for u in items]

        items = client.get('/api/tenant/users?include_inactive=true&role=cashier', headers=headers).get_json()['items']
        assert [u['email'] for u in items] == ['cashier@city.test']

        items = client.get(f'/api/tenant/users?branch_id={branch_a.id}&search=manager', headers=headers).get_json()['items']
        assert [u['branch_name'] for u in items] == ['Kampala Road']

    def test_create_cashier(self, client, db_session, owner_a, branch_a2, login_as):
        resp = client.post('/api/tenant/users', json={
            'email': 'New.Cashier@City.test',
            'password': PASSWORD,
            'role': 'cashier',
            'branch_id': branch_a2.id,
            'first_name': 'Ruth',
        }, headers=login_as(owner_a))
        assert resp.status_code == 201
        user = resp.get_json()['user']
        assert user['email'] == 'new.cashier@city.test'
        assert user['branch_id'] == branch_a2.id
        assert user['tenant_id'] == owner_a.tenant_id
        assert user['subscription_status'] == 'active'

        event = db_session.query(SecurityEvent).filter_by(event_type='USER_CREATED').one()
        assert event.user_id == owner_a.id

        resp = client.post('/api/auth/login', json={'email': 'new.cashier@city.test', 'password': PASSWORD})
        assert resp.status_code == 200

    def test_owner_is_tenant_level(self, client, owner_a, branch_a, login_as):
        resp = client.post('/api/tenant/users', json={
            'email': 'partner@city.test', 'password': PASSWORD, 'role': 'owner', 'branch_id': branch_a.id,
        }, headers=login_as(owner_a))
        assert resp.status_code == 201
        assert resp.get_json()['user']['branch_id'] is None

    @pytest.mark.parametrize("payload, message", [
        ({'email': 'x@city.test', 'password': PASSWORD, 'role': 'cashier'}, "branch_id is required"),
        ({'email': 'x@city.test', 'password': PASSWORD, 'role': 'pharmacist', 'branch_id': 1}, "role must be one of"),
        ({'email': 'x@city.test', 'password': 'short', 'role': 'owner'}, "at least 8 characters"),
        ({'password': PASSWORD, 'role': 'owner'}, "email is required"),
    ])
    def test_invalid_user(self, client, owner_a, login_as, payload, message):
        resp = client.post('/api/tenant/users', json=payload, headers=login_as(owner_a))
        assert resp.status_code == 400
        assert message in resp.get_json()['error']

    def test_branch_of_another_tenant_is_rejected(self, client, owner_a, branch_b, login_as):
        resp = client.post('/api/tenant/users', json={
            'email': 'x@city.test', 'password': PASSWORD, 'role': 'cashier', 'branch_id': branch_b.id,
        }, headers=login_as(owner_a))
        assert resp.status_code == 400
        assert resp.get_json()['error'] == 'Branch not found'

    def test_duplicate_email(self, client, owner_a, manager_b, login_as):
        resp = client.post('/api/tenant/users', json={
            'email': 'MANAGER@lake.test', 'password': PASSWORD, 'role': 'owner',
        }, headers=login_as(owner_a))
        assert resp.status_code == 409

    def test_update_role_and_branch(self, client, owner_a, cashier_a, branch_a2, login_as):
        resp = client.patch(f'/api/tenant/users/{cashier_a.id}', json={
            'role': 'manager', 'branch_id': branch_a2.id, 'last_name': 'Achieng',
        }, headers=login_as(owner_a))
        assert resp.status_code == 200
        user = resp.get_json()['user']
        assert user['role'] == 'manager'
        assert user['branch_id'] == branch_a2.id
        assert user['last_name'] == 'Achieng'
        assert user['first_name'] == 'Grace'

    def test_promotion_to_owner_clears_branch(self, client, owner_a, manager_a, login_as):
        resp = client.patch(f'/api/tenant/users/{manager_a.id}', json={'role': 'owner'}, headers=login_as(owner_a))
        assert resp.get_json()['user']['branch_id'] is None

    def test_subscription_status(self, client, owner_a, cashier_a, login_as):
        headers = login_as(owner_a)
        resp = client.patch(f'/api/tenant/users/{cashier_a.id}', json={'subscription_status': 'expired'}, headers=headers)
        assert resp.get_json()['user']['subscription_status'] == 'expired'

        resp = client.patch(f'/api/tenant/users/{cashier_a.id}', json={'subscription_status': 'paused'}, headers=headers)
        assert resp.status_code == 400

    def test_owner_cannot_change_own_role(self, client, owner_a, branch_a, login_as):
        resp = client.patch(f'/api/tenant/users/{owner_a.id}', json={
            'role': 'manager', 'branch_id': branch_a.id,
        }, headers=login_as(owner_a))
        assert resp.status_code == 400
        assert resp.get_json()['error'] == 'Cannot change your own role'

    def test_deactivate_revokes_sessions(self, client, db_session, owner_a, cashier_a, login_as):
        cashier_headers = login_as(cashier_a)
        login_as(cashier_a)

        resp = client.post(f'/api/tenant/users/{cashier_a.id}/deactivate', headers=login_as(owner_a))
        assert resp.status_code == 200
        body = resp.get_json()
        assert body['sessions_revoked'] == 2
        assert body['user']['is_active'] is False

        assert client.get('/api/products', headers=cashier_headers).status_code == 401
        event = db_session.query(SecurityEvent).filter_by(event_type='USER_DEACTIVATED').one()
        assert event.success is True
        assert "revoked 2 sessions" in event.reason

        resp = client.post(f'/api/tenant/users/{cashier_a.id}/deactivate', headers=login_as(owner_a))
        assert resp.status_code == 400
        assert resp.get_json()['error'] == 'User is already deactivated'

    def test_reactivate(self, client, owner_a, cashier_a, login_as):
        headers = login_as(owner_a)
        client.post(f'/api/tenant/users/{cashier_a.id}/deactivate', headers=headers)

        resp = client.post(f'/api/tenant/users/{cashier_a.id}/reactivate', headers=headers)
        assert resp.status_code == 200
        assert resp.get_json()['user']['is_active'] is True
        assert client.get('/api/products', headers=login_as(cashier_a)).status_code == 200

        resp = client.post(f'/api/tenant/users/{cashier_a.id}/reactivate', headers=headers)
        assert resp.status_code == 400

    def test_cannot_deactivate_self(self, client, owner_a, login_as):
        resp = client.post(f'/api/tenant/users/{owner_a.id}/deactivate', headers=login_as(owner_a))
        assert resp.status_code == 400
        assert resp.get_json()['error'] == 'Cannot deactivate your own account'

    def test_other_tenant_user_is_not_found(self, client, owner_a, manager_b, login_as):
        headers = login_as(owner_a)
        assert client.get(f'/api/tenant/users/{manager_b.id}', headers=headers).status_code == 404
        assert client.patch(f'/api/tenant/users/{manager_b.id}', json={'first_name': 'X'},
                            headers=headers).status_code == 404
        assert client.post(f'/api/tenant/users/{manager_b.id}/deactivate', headers=headers).status_code == 404


class TestUserService:
    def test_update_rejects_inactive_branch(self, db_session, tenant_a, cashier_a, branch_a2):
        branch_a2.is_active = False
        db_session.commit()
        with pytest.raises(ValidationError) as exc:
            user_service.update_user(cashier_a.id, tenant_a.id, {'branch_id': branch_a2.id})
        assert str(exc.value) == 'Branch is not active'
        assert db_session.get(User, cashier_a.id, populate_existing=True).branch_id == cashier_a.branch_id

    def test_deactivate_self_raises(self, db_session, tenant_a, owner_a):
        with pytest.raises(UserError):
            user_service.deactivate_user(owner_a.id, tenant_a.id, acting_user_id=owner_a.id)


class TestOverview:
    def test_totals_and_branches(self, client, owner_a, cashier_a, branch_a, branch_a2, product_a, login_as):
        cashier_scope = Scope(tenant_id=cashier_a.tenant_id, branch_id=branch_a.id, user_id=cashier_a.id)
        draft = sales_service.draft_from_payload({'items': [{'product_id': product_a.id, 'quantity': 2}]}, cashier_scope)
        sales_service.save_draft(draft, cashier_scope)

        resp = client.get('/api/tenant/overview', headers=login_as(owner_a))
        assert resp.status_code == 200
        overview = resp.get_json()['overview']

        assert overview['sales']['total_revenue'] == 2000
        assert overview['stock']['total_products'] == 1
        assert overview['stock']['pending_audits'] == 0
        assert overview['top_sellers'] == [
            {'user_id': cashier_a.id, 'name': 'Grace Nakato', 'sales': 1, 'revenue': 2000},
        ]

        by_name = {b['branch']['name']: b for b in overview['branches']}
        assert by_name['Kampala Road']['sales']['total_sales'] == 1
        assert by_name['Entebbe']['sales']['total_sales'] == 0
        assert by_name['Entebbe']['stock']['total_products'] == 0

    def test_other_tenant_is_excluded(self, client, owner_a, branch_a, scope_b, product_b, login_as):
        draft = sales_service.draft_from_payload({'items': [{'product_id': product_b.id, 'quantity': 1}]}, scope_b)
        sales_service.save_draft(draft, scope_b)

        overview = client.get('/api/tenant/overview', headers=login_as(owner_a)).get_json()['overview']
        assert overview['sales']['total_sales'] == 0
        assert overview['top_sellers'] == []
