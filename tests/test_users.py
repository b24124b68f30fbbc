from pymongo.errors import ServerSelectionTimeoutError

from app import create_app

TEST_CONFIG = {"TESTING": True, "JWT_SECRET_KEY": "storefront-test-secret-key-0123456789abcdef"}


def test_sync_is_idempotent(client, database):
    r1 = client.post("/api/users/sync", json={"email": "New@Example.com "})
    assert r1.status_code == 200
    r2 = client.post("/api/users/sync", json={"email": "new@example.com"})
    assert r2.status_code == 200

    assert database.users.count_documents({"email": "new@example.com"}) == 1
    assert r1.get_json()["role"] == r2.get_json()["role"] == "user"
    assert r1.get_json()["id"] == r2.get_json()["id"]


def test_sync_keeps_existing_role(client, admin_headers):
    r = client.post("/api/users/sync", json={"email": "admin@example.com"})
    assert r.get_json()["role"] == "admin"


def test_sync_prefers_token_identity(client, database, make_headers):
    headers = make_headers("token@example.com")
    r = client.post("/api/users/sync", json={"email": "body@example.com"}, headers=headers)
    assert r.status_code == 200
    assert r.get_json()["email"] == "token@example.com"
    assert database.users.find_one({"email": "body@example.com"}) is None


def test_sync_requires_email(client):
    assert client.post("/api/users/sync", json={}).status_code == 400
    assert client.post("/api/users/sync", json={"email": "nope"}).status_code == 400


def test_own_user(client, shopper_headers, make_headers):
    r = client.get("/api/users/me", headers=shopper_headers)
    assert r.status_code == 200
    assert r.get_json()["email"] == "shopper@example.com"

    assert client.get("/api/users/me", headers=make_headers("ghost@example.com")).status_code == 404


def test_grant_admin_command(app, database):
    runner = app.test_cli_runner()
    result = runner.invoke(args=["grant-admin", "Boss@Example.com"])
    assert result.exit_code == 0
    assert "boss@example.com is now an admin." in result.output
    assert database.users.find_one({"email": "boss@example.com"})["role"] == "admin"

    result = runner.invoke(args=["grant-admin", "not-an-email"])
    assert result.exit_code != 0


def test_unknown_route_renders_message(client):
    r = client.get("/api/nothing-here")
    assert r.status_code == 404
    assert "message" in r.get_json()


class UnavailableCollection:
    def __getattr__(self, name):
        def fail(*args, **kwargs):
            raise ServerSelectionTimeoutError("no servers available")

        return fail


class UnavailableDatabase:
    def list_collection_names(self):
        raise ServerSelectionTimeoutError("no servers available")

    def __getattr__(self, name):
        return UnavailableCollection()

    def __getitem__(self, name):
        return UnavailableCollection()


def test_datastore_failure_maps_to_500():
    app = create_app(TEST_CONFIG, database=UnavailableDatabase())
    client = app.test_client()

    r = client.get("/api/products")
    assert r.status_code == 500
    assert r.get_json() == {"message": "Failed to fetch products"}

    r = client.post("/api/users/sync", json={"email": "a@example.com"})
    assert r.status_code == 500
    assert r.get_json() == {"message": "User sync failed"}


def test_app_has_no_wsgi_middleware(app):
    assert getattr(app.wsgi_app, "__self__", None) is app
