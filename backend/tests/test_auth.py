# Overview: Pytest coverage for login, logout, sessions and tenant bootstrap.

"""
Authentication tests.

Verifies:
- Login with correct credentials returns a token and a landing redirect
- Wrong credentials and inactive profiles are refused and audited
- Logout revokes the token
- Idle and absolute timeouts invalidate a session
- Self-service tenant creation is atomic
"""

from datetime import timedelta

from pharmapos.extensions import db
from pharmapos.models import Branch, SecurityEvent, SessionToken, Tenant, User
from pharmapos.services import session_service
from pharmapos.time_utils import utcnow

PASSWORD = "Password123!"


class TestLogin:
    def test_login_success_returns_token(self, client, manager_a):
        resp = client.post('/api/auth/login', json={'email': manager_a.email, 'password': PASSWORD})
        assert resp.status_code == 200
        body = resp.get_json()
        assert body['token']
        assert body['user']['email'] == manager_a.email
        assert 'password_hash' not in body['user']
        assert body['tenant_id'] == manager_a.tenant_id
        assert body['branch_id'] == manager_a.branch_id
        assert body['redirect'] == '/branch'

    def test_owner_lands_on_tenant_dashboard(self, client, owner_a):
        resp = client.post('/api/auth/login', json={'email': owner_a.email, 'password': PASSWORD})
        assert resp.status_code == 200
        assert resp.get_json()['redirect'] == '/tenant'

    def test_email_is_case_insensitive(self, client, manager_a):
        resp = client.post('/api/auth/login', json={'email': '  MANAGER@City.Test ', 'password': PASSWORD})
        assert resp.status_code == 200

    def test_wrong_password_is_401_and_logged(self, client, db_session, manager_a):
        resp = client.post('/api/auth/login', json={'email': manager_a.email, 'password': 'Wrong123!x'})
        assert resp.status_code == 401
        assert resp.get_json()['error'] == 'Invalid credentials'

        events = db_session.query(SecurityEvent).filter_by(event_type='LOGIN_FAILED').all()
        assert len(events) == 1
        assert manager_a.email in events[0].reason

    def test_unknown_email_gives_same_error(self, client, db_session):
        resp = client.post('/api/auth/login', json={'email': 'nobody@city.test', 'password': PASSWORD})
        assert resp.status_code == 401
        assert resp.get_json()['error'] == 'Invalid credentials'

    def test_missing_fields_is_400(self, client, db_session):
        resp = client.post('/api/auth/login', json={'email': 'x@y.z'})
        assert resp.status_code == 400

    def test_inactive_profile_cannot_login(self, client, db_session, manager_a):
        manager_a.is_active = False
        db_session.commit()

        resp = client.post('/api/auth/login', json={'email': manager_a.email, 'password': PASSWORD})
        assert resp.status_code == 401
        assert resp.get_json()['details']['reason'] == 'profile_inactive'

    def test_inactive_tenant_cannot_login(self, client, db_session, tenant_a, manager_a):
        tenant_a.is_active = False
        db_session.commit()

        resp = client.post('/api/auth/login', json={'email': manager_a.email, 'password': PASSWORD})
        assert resp.status_code == 401
        assert resp.get_json()['details']['reason'] == 'tenant_inactive'


class TestSessions:
    def test_me_returns_profile_and_tenant(self, client, manager_a, login_as):
        resp = client.get('/api/auth/me', headers=login_as(manager_a))
        assert resp.status_code == 200
        body = resp.get_json()
        assert body['user']['id'] == manager_a.id
        assert body['tenant']['name'] == 'City Pharmacy'
        assert body['branch_id'] == manager_a.branch_id
        assert body['branches'] == []
        assert 'token_hash' not in body['session']

    def test_me_lists_branches_for_owner(self, client, owner_a, branch_a, branch_a2, login_as):
        resp = client.get('/api/auth/me', headers=login_as(owner_a))
        assert resp.status_code == 200
        names = {b['name'] for b in resp.get_json()['branches']}
        assert names == {'Kampala Road', 'Entebbe'}

    def test_logout_revokes_token(self, client, manager_a, login_as):
        headers = login_as(manager_a)
        assert client.post('/api/auth/logout', headers=headers).status_code == 200
        assert client.get('/api/auth/me', headers=headers).status_code == 401
        # Second logout with the same token fails
        assert client.post('/api/auth/logout', headers=headers).status_code == 401

    def test_missing_token_is_401_with_login_redirect(self, client, db_session):
        resp = client.get('/api/auth/me')
        assert resp.status_code == 401
        assert resp.get_json()['redirect'] == '/login'

    def test_garbage_token_is_401(self, client, db_session):
        resp = client.get('/api/auth/me', headers={'Authorization': 'Bearer nope'})
        assert resp.status_code == 401

    def test_idle_session_is_revoked(self, db_session, manager_a):
        session, token = session_service.create_session(manager_a.id)
        session.last_used_at = utcnow() - timedelta(hours=3)
        db_session.commit()

        assert session_service.validate_session(token) is None
        db_session.refresh(session)
        assert session.is_revoked is True
        assert session.revoked_reason == 'Idle timeout'

    def test_expired_session_is_rejected(self, db_session, manager_a):
        session, token = session_service.create_session(manager_a.id)
        session.expires_at = utcnow() - timedelta(minutes=1)
        db_session.commit()

        assert session_service.validate_session(token) is None

    def test_deleted_profile_revokes_session(self, db_session, manager_a):
        session, token = session_service.create_session(manager_a.id)
        session_id = session.id
        db_session.delete(manager_a)
        db_session.commit()

        assert session_service.validate_session(token) is None
        assert db_session.get(SessionToken, session_id).revoked_reason == 'Profile missing'

    def test_token_is_stored_hashed(self, db_session, manager_a):
        session, token = session_service.create_session(manager_a.id)
        assert session.token_hash != token
        assert session.token_hash == session_service.hash_token(token)

    def test_cleanup_removes_old_revoked_sessions(self, db_session, manager_a):
        session, _token = session_service.create_session(manager_a.id)
        session.is_revoked = True
        session.created_at = utcnow() - timedelta(days=45)
        db_session.commit()

        assert session_service.cleanup_expired_sessions() == 1
        assert db_session.query(SessionToken).count() == 0


class TestCreateTenant:
    def test_creates_tenant_owner_and_branch(self, client, db_session):
        resp = client.post('/api/auth/tenants', json={
            'name': 'Hill Pharmacy',
            'email': 'owner@hill.test',
            'password': PASSWORD,
            'branch_name': 'Mbarara',
        })
        assert resp.status_code == 201
        body = resp.get_json()
        assert body['tenant']['name'] == 'Hill Pharmacy'
        assert body['owner']['role'] == 'owner'
        assert body['owner']['branch_id'] is None
        assert body['branch']['name'] == 'Mbarara'
        assert body['branch']['tenant_id'] == body['tenant']['id']

    def test_weak_password_leaves_nothing_behind(self, client, db_session):
        resp = client.post('/api/auth/tenants', json={
            'name': 'Weak Pharmacy',
            'email': 'owner@weak.test',
            'password': 'short',
        })
        assert resp.status_code == 400
        assert db_session.query(Tenant).count() == 0
        assert db_session.query(Branch).count() == 0
        assert db_session.query(User).count() == 0

    def test_duplicate_email_is_rejected(self, client, db_session, manager_a):
        resp = client.post('/api/auth/tenants', json={
            'name': 'Copy Pharmacy',
            'email': manager_a.email,
            'password': PASSWORD,
        })
        assert resp.status_code == 400
        assert resp.get_json()['error'] == 'Email already exists'
        assert db.session.query(Tenant).filter_by(name='Copy Pharmacy').count() == 0
