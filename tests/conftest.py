"""
Shared pytest fixtures for the Order Workflow Platform test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB recreate + seed + cache reset (autouse)
    - client: Flask test client (function-scoped)
    - tenant / other_tenant: Pre-created Tenant entities
    - make_user: factory for users holding given permissions
    - make_order: factory for orders with items
    - auth_headers: factory for Bearer headers
"""

import pytest

from orderflow import create_app
from orderflow.models import db as _db
from orderflow.models.auth import Permission, Role, RolePermission, Tenant, User, UserRole
from orderflow.models.order import Order, OrderIssue, OrderItem
from orderflow.services.jwt_service import generate_access_token
from orderflow.services.permission_service import Actor, invalidate_all_cache
from orderflow.services.screen_contract_service import invalidate_contract_cache
from orderflow.services.workflow_seed import seed_all


# ── App & DB fixtures ────────────────────────────────────────────────────


def _drop_all():
    """Drop all tables; on SQLite, suspend FK enforcement so RESTRICT edges
    (e.g. split children -> parent order) do not block DROP TABLE."""
    if _db.engine.dialect.name != "sqlite":
        _db.drop_all()
        return
    with _db.engine.connect() as conn:
        conn.exec_driver_sql("PRAGMA foreign_keys=OFF")
        try:
            _db.metadata.drop_all(bind=conn)
            conn.commit()
        finally:
            conn.exec_driver_sql("PRAGMA foreign_keys=ON")


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
        _drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, seed catalogue data, recreate tables after."""
    with app.app_context():
        # Tables are recreated per test and ids are reused; clear caches
        # keyed by user id / screen name.
        invalidate_all_cache()
        invalidate_contract_cache()
        seed_all()
        yield
        invalidate_all_cache()
        invalidate_contract_cache()
        _db.session.rollback()
        _drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Tenants, users, orders ───────────────────────────────────────────────


def _create_tenant(name, slug, **kwargs):
    t = Tenant(name=name, slug=slug, **kwargs)
    _db.session.add(t)
    _db.session.commit()
    return t


@pytest.fixture()
def tenant():
    return _create_tenant("Acme Laundry", "acme", settings={})


@pytest.fixture()
def other_tenant():
    return _create_tenant("Other Cleaners", "other", settings={})


def _ensure_permission(codename):
    perm = Permission.query.filter_by(codename=codename).first()
    if perm is None:
        perm = Permission(codename=codename, category=codename.split(":", 1)[0])
        _db.session.add(perm)
        _db.session.flush()
    return perm


@pytest.fixture()
def make_user(tenant):
    """Factory: make_user(["orders:transition"], tenant=None, role_name=None) -> User."""
    counter = {"n": 0}

    def _make(permissions=(), *, for_tenant=None, role_name=None, name=None):
        counter["n"] += 1
        t = for_tenant or tenant
        user = User(
            tenant_id=t.id,
            email=f"user{counter['n']}@{t.slug}.test",
            full_name=name or f"User {counter['n']}",
        )
        _db.session.add(user)
        _db.session.flush()
        if role_name:
            role = Role.query.filter_by(tenant_id=None, name=role_name).one()
        else:
            role = Role(tenant_id=t.id, name=f"custom-{counter['n']}")
            _db.session.add(role)
            _db.session.flush()
            for code in permissions:
                _db.session.add(RolePermission(role_id=role.id, permission_id=_ensure_permission(code).id))
        _db.session.add(UserRole(user_id=user.id, role_id=role.id, tenant_id=t.id))
        _db.session.commit()
        return user

    return _make


@pytest.fixture()
def actor_for():
    """Build an Actor (resolved through the DB oracle) for a User."""

    def _actor(user):
        return Actor(id=user.id, tenant_id=user.tenant_id, display_name=user.display_name)

    return _actor


@pytest.fixture()
def operator(make_user):
    return make_user(
        ["orders:transition", "orders:issues", "orders:qa", "orders:pack",
         "orders:release", "orders:deliver", "orders:process"],
        name="Floor Operator",
    )


@pytest.fixture()
def manager(make_user):
    return make_user(role_name="operations_manager", name="Ops Manager")


@pytest.fixture()
def make_order(tenant):
    """Factory: make_order("ready", items=2, **fields) -> Order."""
    counter = {"n": 0}

    def _make(status="intake", *, items=2, for_tenant=None, **fields):
        counter["n"] += 1
        t = for_tenant or tenant
        order = Order(tenant_id=t.id, order_no=fields.pop("order_no", f"ORD-{counter['n']:04d}"),
                      status=status, **fields)
        _db.session.add(order)
        _db.session.flush()
        for line in range(1, items + 1):
            _db.session.add(OrderItem(tenant_id=t.id, order_id=order.id, line_no=line,
                                      product_name=f"Shirt {line}", quantity=1))
        _db.session.commit()
        return order

    return _make


@pytest.fixture()
def add_issue():
    """Factory: add_issue(order, priority="high") -> OrderIssue (written directly)."""

    def _add(order, priority="high", code="damage", item=None):
        item = item or order.items[0]
        issue = OrderIssue(tenant_id=order.tenant_id, order_id=order.id, order_item_id=item.id,
                           issue_code=code, issue_text="Torn sleeve", priority=priority)
        order.has_issue = True
        _db.session.add(issue)
        _db.session.commit()
        return issue

    return _add


@pytest.fixture()
def auth_headers():
    """Factory: auth_headers(user) -> {"Authorization": "Bearer ..."}."""

    def _headers(user):
        token = generate_access_token(user.id, user.tenant_id, user.display_name)
        return {"Authorization": f"Bearer {token}"}

    return _headers
