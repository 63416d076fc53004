# Overview: Pytest fixtures for PharmaPOS backend tests.

"""
Pytest fixtures for PharmaPOS backend tests.

Provides an in-memory database, two tenants (A with two branches, B with
one), one user per role in tenant A, products and customers, and helpers
for bearer-token headers.
"""

import pytest

from pharmapos import create_app
from pharmapos.extensions import db
from pharmapos.models import Branch, Customer, Product, Supplier, Tenant, User
from pharmapos.services import query_service, session_service
from pharmapos.services.auth_service import hash_password
from pharmapos.services.tenant_service import Scope

PASSWORD = "Password123!"


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Fresh data for each test (schema is kept)."""
    with app.app_context():
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()
        query_service.get_cache().clear()

        yield db.session

        db.session.rollback()


@pytest.fixture(scope='session')
def password_hash():
    """bcrypt is slow on purpose; hash the shared test password once."""
    return hash_password(PASSWORD)


def make_user(tenant, branch, role, email, password_hash, **fields):
    user = User(
        tenant_id=tenant.id,
        branch_id=branch.id if branch is not None else None,
        email=email,
        first_name=fields.pop("first_name", role.title()),
        last_name=fields.pop("last_name", "Tester"),
        password_hash=password_hash,
        role=role,
        **fields,
    )
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture(scope='function')
def tenant_a(db_session):
    tenant = Tenant(name="City Pharmacy", code="CITY", is_active=True)
    db_session.add(tenant)
    db_session.commit()
    return tenant


@pytest.fixture(scope='function')
def tenant_b(db_session):
    tenant = Tenant(name="Lake Chemists", code="LAKE", is_active=True)
    db_session.add(tenant)
    db_session.commit()
    return tenant


@pytest.fixture(scope='function')
def branch_a(db_session, tenant_a):
    branch = Branch(tenant_id=tenant_a.id, name="Kampala Road", code="KLA")
    db_session.add(branch)
    db_session.commit()
    return branch


@pytest.fixture(scope='function')
def branch_a2(db_session, tenant_a):
    branch = Branch(tenant_id=tenant_a.id, name="Entebbe", code="EBB")
    db_session.add(branch)
    db_session.commit()
    return branch


@pytest.fixture(scope='function')
def branch_b(db_session, tenant_b):
    branch = Branch(tenant_id=tenant_b.id, name="Jinja", code="JJA")
    db_session.add(branch)
    db_session.commit()
    return branch


@pytest.fixture(scope='function')
def owner_a(db_session, tenant_a, password_hash):
    return make_user(tenant_a, None, "owner", "owner@city.test", password_hash)


@pytest.fixture(scope='function')
def manager_a(db_session, tenant_a, branch_a, password_hash):
    return make_user(tenant_a, branch_a, "manager", "manager@city.test", password_hash)


@pytest.fixture(scope='function')
def cashier_a(db_session, tenant_a, branch_a, password_hash):
    return make_user(tenant_a, branch_a, "cashier", "cashier@city.test", password_hash,
                     first_name="Grace", last_name="Nakato")


@pytest.fixture(scope='function')
def staff_a(db_session, tenant_a, branch_a, password_hash):
    return make_user(tenant_a, branch_a, "staff", "staff@city.test", password_hash)


@pytest.fixture(scope='function')
def manager_b(db_session, tenant_b, branch_b, password_hash):
    return make_user(tenant_b, branch_b, "manager", "manager@lake.test", password_hash)


@pytest.fixture(scope='function')
def scope_a(branch_a, tenant_a, manager_a):
    """Service-level scope for tenant A / branch A as the manager."""
    return Scope(tenant_id=tenant_a.id, branch_id=branch_a.id, user_id=manager_a.id)


@pytest.fixture(scope='function')
def scope_b(branch_b, tenant_b, manager_b):
    return Scope(tenant_id=tenant_b.id, branch_id=branch_b.id, user_id=manager_b.id)


def _product(branch, **fields):
    product = Product(tenant_id=branch.tenant_id, branch_id=branch.id, **fields)
    db.session.add(product)
    db.session.commit()
    return product


@pytest.fixture(scope='function')
def product_a(db_session, branch_a):
    """Paracetamol in branch A: 10 in stock at 1,000."""
    return _product(branch_a, name="Paracetamol 500mg", sku="PCM-500", price=1000, cost_price=600,
                    quantity=10, min_stock_level=2)


@pytest.fixture(scope='function')
def product_a2(db_session, branch_a):
    """ORS sachets in branch A: 5 in stock at 250."""
    return _product(branch_a, name="ORS Sachet", sku="ORS-001", price=250, cost_price=100,
                    quantity=5, min_stock_level=5)


@pytest.fixture(scope='function')
def product_b(db_session, branch_b):
    return _product(branch_b, name="Amoxicillin 250mg", sku="AMX-250", price=1500, cost_price=900,
                    quantity=40)


@pytest.fixture(scope='function')
def customer_a(db_session, branch_a):
    customer = Customer(
        tenant_id=branch_a.tenant_id,
        branch_id=branch_a.id,
        first_name="John",
        last_name="Okello",
        phone="+256 700 123456",
        email="john@example.com",
        loyalty_points=0,
    )
    db_session.add(customer)
    db_session.commit()
    return customer


@pytest.fixture(scope='function')
def supplier_a(db_session, branch_a):
    supplier = Supplier(tenant_id=branch_a.tenant_id, branch_id=branch_a.id, name="Quality Chemicals")
    db_session.add(supplier)
    db_session.commit()
    return supplier


def auth_headers(token: str, branch_id: int | None = None) -> dict:
    """Helper to create Authorization headers."""
    headers = {'Authorization': f'Bearer {token}'}
    if branch_id is not None:
        headers['X-Branch-Id'] = str(branch_id)
    return headers


@pytest.fixture(scope='function')
def login_as(db_session):
    """Issue a session token for a user without going through bcrypt again."""
    def _login(user, branch_id: int | None = None) -> dict:
        _session, token = session_service.create_session(user.id)
        return auth_headers(token, branch_id)
    return _login
