from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import func, select

from config import Settings
from main import create_app

TEST_SECRET = "test-secret-0123456789abcdef0123456789"


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'storefront.db'}",
        jwt_secret=TEST_SECRET,
        bcrypt_rounds=4,
    )


@pytest.fixture
def app(settings):
    app = create_app(settings)
    yield app
    app.state.engine.dispose()


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def store(app):
    return app.state.store


@pytest.fixture
def order_service(app):
    return app.state.orders


@pytest.fixture
def count_rows(app):
    def _count(model):
        with app.state.session_factory() as session:
            return session.scalar(select(func.count()).select_from(model))
    return _count


@pytest.fixture
def make_user(app):
    def _make(email, role="customer", password="secret123"):
        return app.state.authenticator.register(email, password, role=role)
    return _make


@pytest.fixture
def customer(make_user):
    return make_user("customer@example.com")


@pytest.fixture
def other_customer(make_user):
    return make_user("other@example.com")


@pytest.fixture
def admin(make_user):
    return make_user("admin@example.com", role="admin")


@pytest.fixture
def vendor(make_user):
    return make_user("vendor@example.com", role="vendor")


@pytest.fixture
def headers():
    def _headers(token):
        return {"Authorization": f"Bearer {token}"}
    return _headers


@pytest.fixture
def make_variant(store):
    def _make(price="10.00", stock=2, size="M", name="Tee"):
        product = store.create_product(
            {"name": name, "base_price": Decimal(price)},
            [{"size": size, "stock_quantity": stock, "price": Decimal(price)}],
        )
        return product.variants[0]
    return _make


@pytest.fixture
def variant(make_variant):
    return make_variant()
