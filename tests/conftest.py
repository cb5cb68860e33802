"""
Shared pytest fixtures for the Accounting Admin Console test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test app context + table recreate (autouse)
    - client: Flask test client
    - tenant / other_tenant: two firms for isolation checks
    - admin / super_admin / staff_user / client_user: users of ``tenant``
    - team: a team inside ``tenant``
    - make_user: factory for extra users
    - auth_headers(user): Bearer header factory
"""

import pytest

from admin_console import create_app
from admin_console.models import db as _db
from admin_console.models.auth import Team, Tenant, User
from admin_console.services.jwt_service import generate_access_token


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    return create_app("testing")


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Directory fixtures ───────────────────────────────────────────────────


def _make_user(tenant, email, role="CLIENT", **kwargs):
    user = User(tenant_id=tenant.id, email=email, name=kwargs.pop("name", email.split("@")[0]),
                role=role, status=kwargs.pop("status", "ACTIVE"), **kwargs)
    _db.session.add(user)
    _db.session.commit()
    return user


@pytest.fixture()
def tenant():
    t = Tenant(name="Acme Accounting", slug="acme")
    _db.session.add(t)
    _db.session.commit()
    return t


@pytest.fixture()
def other_tenant():
    t = Tenant(name="Rival Accounting", slug="rival")
    _db.session.add(t)
    _db.session.commit()
    return t


@pytest.fixture()
def team(tenant):
    t = Team(tenant_id=tenant.id, name="Tax", department="Tax")
    _db.session.add(t)
    _db.session.commit()
    return t


@pytest.fixture()
def admin(tenant):
    return _make_user(tenant, "admin@acme-accounting.com", "ADMIN", name="Ada Admin")


@pytest.fixture()
def super_admin(tenant):
    return _make_user(tenant, "owner@acme-accounting.com", "SUPER_ADMIN", name="Olive Owner")


@pytest.fixture()
def staff_user(tenant):
    return _make_user(tenant, "staff@acme-accounting.com", "STAFF", name="Sam Staff")


@pytest.fixture()
def client_user(tenant):
    return _make_user(tenant, "client@acme-accounting.com", "CLIENT", name="Cleo Client")


@pytest.fixture()
def auth_headers():
    """Return a factory building Authorization headers for a user."""
    def _headers(user):
        token = generate_access_token(user.id, user.tenant_id, user.role)
        return {"Authorization": f"Bearer {token}"}
    return _headers


@pytest.fixture()
def make_user():
    """Return a factory creating a committed user: make_user(tenant, email, role, **fields)."""
    return _make_user
