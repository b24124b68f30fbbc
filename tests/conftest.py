from typing import Generator

import mongomock
import pytest
from flask_jwt_extended import create_access_token

from app import create_app

TEST_CONFIG = {
    "TESTING": True,
    "JWT_SECRET_KEY": "storefront-test-secret-key-0123456789abcdef",
}

SHOPPER_EMAIL = "shopper@example.com"
ADMIN_EMAIL = "admin@example.com"


@pytest.fixture(scope="function")
def database() -> Generator:
    # Fresh in-memory MongoDB per test
    client = mongomock.MongoClient()
    db = client["storefront-test"]
    try:
        yield db
    finally:
        client.drop_database("storefront-test")


@pytest.fixture(scope="function")
def app(database):
    return create_app(TEST_CONFIG, database=database)


@pytest.fixture(scope="function")
def client(app):
    with app.test_client() as c:
        yield c


@pytest.fixture
def make_headers(app):
    def _make(email: str) -> dict:
        with app.app_context():
            token = create_access_token(identity=email)
        return {"Authorization": f"Bearer {token}"}

    return _make


@pytest.fixture
def shopper_headers(database, make_headers):
    database.users.insert_one({"email": SHOPPER_EMAIL, "role": "user"})
    return make_headers(SHOPPER_EMAIL)


@pytest.fixture
def admin_headers(database, make_headers):
    database.users.insert_one({"email": ADMIN_EMAIL, "role": "admin"})
    return make_headers(ADMIN_EMAIL)


@pytest.fixture
def create_product(client, admin_headers):
    def _create(**overrides) -> dict:
        payload = {"name": "Lime Soda", "price": "4.50", "category": "Drinks"}
        payload.update(overrides)
        r = client.post("/api/products", json=payload, headers=admin_headers)
        assert r.status_code == 201, r.get_json()
        return r.get_json()

    return _create
