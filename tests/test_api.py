"""HTTP tests for the auth and user endpoints."""

import pytest
from fastapi.testclient import TestClient

from idgate import app as app_module
from idgate.service.runtime import get_runtime
from idgate.storage.errors import StorageError

PASSWORD = "Sup3rSecret!"


@pytest.fixture
def client():
    return TestClient(app_module.app)


def _register(client, email="marie@example.com", username="marie"):
    return client.post(
        "/v1/users",
        json={
            "email": email,
            "username": username,
            "password": PASSWORD,
            "first_name": "Marie",
            "last_name": "Curie",
        },
    )


def _login(client, email="marie@example.com", password=PASSWORD):
    return client.post("/v1/auth/login", json={"email": email, "password": password})


def _auth_header(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def session(client):
    user = _register(client).json()["data"]
    tokens = _login(client).json()["data"]["tokens"]
    return user, tokens


class TestRegistration:
    def test_register_returns_public_user(self, client):
        response = _register(client)
        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "ok"
        assert body["data"]["email"] == "marie@example.com"
        assert body["data"]["status"] == "active"
        assert "password_hash" not in body["data"]
        assert "password" not in body["data"]

    def test_duplicate_email_conflict(self, client):
        _register(client)
        response = _register(client, username="someone")
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "email_exists"

    def test_duplicate_username_conflict(self, client):
        _register(client)
        response = _register(client, email="other@example.com")
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "username_exists"

    @pytest.mark.parametrize(
        "overrides",
        [
            {"email": "not-an-email"},
            {"username": "ab"},
            {"password": "short"},
            {"first_name": ""},
        ],
    )
    def test_invalid_payload_is_validation_error(self, client, overrides):
        payload = {
            "email": "marie@example.com",
            "username": "marie",
            "password": PASSWORD,
            "first_name": "Marie",
            "last_name": "Curie",
            **overrides,
        }
        response = client.post("/v1/users", json=payload)
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"


class TestAuthFlow:
    def test_login_returns_tokens(self, client):
        _register(client)
        response = _login(client)
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["user"]["username"] == "marie"
        assert data["tokens"]["token_type"] == "bearer"
        assert data["tokens"]["access_token"]
        assert data["tokens"]["refresh_token"]

    def test_login_bad_password(self, client):
        _register(client)
        response = _login(client, password="wrong-password")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_credentials"
        assert response.headers["WWW-Authenticate"] == "Bearer"

    def test_me_requires_token(self, client):
        response = client.get("/v1/users/me")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_token"

    def test_me_with_token(self, client, session):
        user, tokens = session
        response = client.get("/v1/users/me", headers=_auth_header(tokens["access_token"]))
        assert response.status_code == 200
        assert response.json()["data"]["id"] == user["id"]

    def test_refresh_rotates_once(self, client, session):
        _, tokens = session
        first = client.post("/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert first.status_code == 200
        reuse = client.post("/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert reuse.status_code == 401
        assert reuse.json()["error"]["code"] == "invalid_refresh_token"

    def test_logout_revokes_access_token(self, client, session):
        _, tokens = session
        headers = _auth_header(tokens["access_token"])
        assert client.post("/v1/auth/logout", headers=headers).status_code == 204
        assert client.get("/v1/users/me", headers=headers).status_code == 401

    def test_logout_all(self, client, session):
        _, tokens = session
        second = _login(client).json()["data"]["tokens"]
        response = client.post("/v1/auth/logout-all", headers=_auth_header(tokens["access_token"]))
        assert response.status_code == 200
        assert response.json()["data"]["revoked"] == 4
        for pair in (tokens, second):
            assert client.get("/v1/users/me", headers=_auth_header(pair["access_token"])).status_code == 401

    def test_public_key(self, client):
        response = client.get("/v1/auth/public-key")
        data = response.json()["data"]
        assert data["algorithm"] == "EdDSA"
        assert bytes.fromhex(data["public_key"]) == get_runtime().signer.public_key_bytes()
        assert data["pem"].startswith("-----BEGIN PUBLIC KEY-----")

    def test_correlation_id_echoed(self, client):
        response = client.get("/v1/auth/public-key", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"


class TestUserManagement:
    def test_get_update_and_list(self, client, session):
        user, tokens = session
        headers = _auth_header(tokens["access_token"])
        response = client.put(
            f"/v1/users/{user['id']}", json={"first_name": "Maria"}, headers=headers
        )
        assert response.status_code == 200
        assert response.json()["data"]["first_name"] == "Maria"

        fetched = client.get(f"/v1/users/{user['id']}", headers=headers).json()["data"]
        assert fetched["first_name"] == "Maria"

        listing = client.get("/v1/users", params={"page": 1, "limit": 5}, headers=headers)
        data = listing.json()["data"]
        assert data["total"] == 1
        assert data["limit"] == 5
        assert data["items"][0]["id"] == user["id"]

    def test_unknown_user_not_found(self, client, session):
        _, tokens = session
        response = client.get("/v1/users/does-not-exist", headers=_auth_header(tokens["access_token"]))
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "user_not_found"

    def test_blocking_user_revokes_sessions(self, client, session):
        user, tokens = session
        other = _register(client, "pierre@example.com", "pierre").json()["data"]
        other_tokens = _login(client, "pierre@example.com").json()["data"]["tokens"]

        response = client.put(
            f"/v1/users/{user['id']}/status",
            json={"status": "blocked"},
            headers=_auth_header(other_tokens["access_token"]),
        )
        assert response.status_code == 200
        assert response.json()["data"]["status"] == "blocked"
        assert client.get("/v1/users/me", headers=_auth_header(tokens["access_token"])).status_code == 401
        assert _login(client).status_code == 401
        assert other["id"] != user["id"]

    def test_invalid_status_rejected(self, client, session):
        user, tokens = session
        response = client.put(
            f"/v1/users/{user['id']}/status",
            json={"status": "suspended"},
            headers=_auth_header(tokens["access_token"]),
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_change_password(self, client, session):
        user, tokens = session
        response = client.put(
            f"/v1/users/{user['id']}/password",
            json={"old_password": PASSWORD, "new_password": "An0therSecret!"},
            headers=_auth_header(tokens["access_token"]),
        )
        assert response.status_code == 204
        assert _login(client).status_code == 401
        assert _login(client, password="An0therSecret!").status_code == 200

    def test_delete_user(self, client, session):
        user, tokens = session
        headers = _auth_header(tokens["access_token"])
        assert client.delete(f"/v1/users/{user['id']}", headers=headers).status_code == 204
        assert client.get("/v1/users/me", headers=headers).status_code == 401


class TestInfrastructure:
    def test_healthz(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["type"] == "MemoryStore"

    def test_storage_failure_is_opaque_500(self, client, session, monkeypatch):
        _, tokens = session

        async def broken_get(key):
            raise StorageError("redis get failed", operation="get", backend="redis")

        monkeypatch.setattr(get_runtime().cache, "get", broken_get)
        response = client.get("/v1/users/me", headers=_auth_header(tokens["access_token"]))
        assert response.status_code == 500
        error = response.json()["error"]
        assert error["code"] == "server_error"
        assert "redis" not in error["message"]
