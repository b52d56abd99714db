"""
Pytest fixtures for back office tests.

Provides an in-memory database, two sites with one user per role, a few
products, and helpers for authenticated API calls.
"""

import pytest

from backoffice import create_app
from backoffice.extensions import db
from backoffice.models import Site, User
from backoffice.models.auth import ROLE_ADMIN, ROLE_MANAGER, ROLE_CASHIER
from backoffice.services import inventory_service
from backoffice.services.auth_service import hash_password


PASSWORD = "Password123"


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'BCRYPT_ROUNDS': 4,
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
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def site_a(db_session):
    site = Site(name="Main Bar")
    db_session.add(site)
    db_session.commit()
    return site


@pytest.fixture(scope='function')
def site_b(db_session):
    site = Site(name="Terrace")
    db_session.add(site)
    db_session.commit()
    return site


def _make_user(db_session, username, role, site_id):
    user = User(
        username=username,
        full_name=username.title(),
        password_hash=hash_password(PASSWORD),
        role=role,
        site_id=site_id,
        is_active=True,
    )
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture(scope='function')
def admin(db_session):
    return _make_user(db_session, "admin", ROLE_ADMIN, None)


@pytest.fixture(scope='function')
def manager_a(db_session, site_a):
    return _make_user(db_session, "manager_a", ROLE_MANAGER, site_a.id)


@pytest.fixture(scope='function')
def cashier_a(db_session, site_a):
    return _make_user(db_session, "cashier_a", ROLE_CASHIER, site_a.id)


@pytest.fixture(scope='function')
def cashier_b(db_session, site_b):
    return _make_user(db_session, "cashier_b", ROLE_CASHIER, site_b.id)


@pytest.fixture(scope='function')
def make_product(db_session, site_a):
    """Factory: make_product(stock=5, selling=400, purchase=150, site=None, name=...)."""
    counter = {"n": 0}

    def _make(stock=5, selling=400, purchase=150, site=None, name=None, alert_threshold=2, category="alcoholic"):
        counter["n"] += 1
        return inventory_service.create_product(
            site_id=(site or site_a).id,
            name=name or f"Product {counter['n']}",
            category=category,
            purchase_price_cents=purchase,
            selling_price_cents=selling,
            stock=stock,
            alert_threshold=alert_threshold,
        )

    return _make


@pytest.fixture(scope='function')
def beer(make_product):
    """Lager at 4.00, bought at 1.50, 5 in stock."""
    return make_product(stock=5, selling=400, purchase=150, name="Lager")


@pytest.fixture(scope='function')
def chips(make_product):
    return make_product(stock=10, selling=250, purchase=100, name="Chips", category="snack")


def get_auth_token(client, username: str, password: str = PASSWORD) -> str:
    """Helper to get auth token for a user."""
    response = client.post('/api/auth/login', json={
        'username': username,
        'password': password
    })
    if response.status_code == 200:
        return response.json.get('token')
    return None


def auth_headers(token: str, site_id=None) -> dict:
    """Helper to create Authorization headers, optionally with a site selection."""
    headers = {'Authorization': f'Bearer {token}'}
    if site_id is not None:
        headers['X-Site-Id'] = str(site_id)
    return headers


@pytest.fixture(scope='function')
def admin_headers(client, admin):
    return auth_headers(get_auth_token(client, admin.username))


@pytest.fixture(scope='function')
def manager_headers(client, manager_a):
    return auth_headers(get_auth_token(client, manager_a.username))


@pytest.fixture(scope='function')
def cashier_headers(client, cashier_a):
    return auth_headers(get_auth_token(client, cashier_a.username))
