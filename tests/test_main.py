"""HTTP tests for the FastAPI app."""

import time

import pytest
from fastapi.testclient import TestClient

from tma_auth.config import Settings
from tma_auth.errors import StoreError
from tma_auth.main import create_app
from tma_auth.storage import IdentityStore, InMemoryIdentityStore

from initdata_factory import BOT_TOKEN, PLATFORM_PK_HEX, make_init_data


AUTH_URL = "/api/v1/auth/telegram"
ME_URL = "/api/v1/auth/me"


class DownStore(IdentityStore):
    def upsert_by_platform_id(self, platform_user_id, username):
        raise StoreError("database is locked")


def make_settings(tmp_path, **overrides):
    values = dict(
        BOT_TOKEN=BOT_TOKEN,
        TELEGRAM_ENV="test",
        TELEGRAM_PUBLIC_KEYS={"test": PLATFORM_PK_HEX},
        AUDIT_DIR=str(tmp_path / "audit"),
        DATABASE_PATH=str(tmp_path / "identities.db"),
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def client(tmp_path):
    app = create_app(make_settings(tmp_path), store=InMemoryIdentityStore())
    return TestClient(app)


def fresh(scheme="legacy", **kwargs):
    return make_init_data(scheme, auth_date=int(time.time()), **kwargs)


def test_health(client):
    assert client.get("/health").json() == {"ok": True}


@pytest.mark.parametrize("scheme", ["legacy", "current"])
def test_login_with_body(client, scheme):
    r = client.post(AUTH_URL, json={"initData": fresh(scheme)})
    assert r.status_code == 200
    data = r.json()
    assert data["ok"] is True
    assert data["user"]["telegram_id"] == 42
    assert data["user"]["username"] == "alice"
    assert data["token"].startswith("v1.")
    assert data["expires_at"] > time.time()


def test_login_with_init_data_header(client):
    r = client.post(AUTH_URL, headers={"X-Telegram-Init-Data": fresh()})
    assert r.status_code == 200


def test_login_with_authorization_header(client):
    r = client.post(AUTH_URL, headers={"Authorization": "tma " + fresh("current")})
    assert r.status_code == 200


def test_same_user_same_id(client):
    a = client.post(AUTH_URL, json={"initData": fresh()}).json()
    b = client.post(AUTH_URL, json={"initData": fresh("current", username="renamed")}).json()
    assert a["user"]["id"] == b["user"]["id"]
    assert b["user"]["username"] == "renamed"


def test_missing_init_data(client):
    r = client.post(AUTH_URL)
    assert r.status_code == 400
    assert r.json() == {"ok": False, "error": "invalid authentication data"}


def test_bad_signature(client):
    raw = make_init_data(auth_date=int(time.time()), bot_token="999:other")
    r = client.post(AUTH_URL, json={"initData": raw})
    assert r.status_code == 401
    assert r.json()["error"] == "authentication failed"


def test_expired(client):
    r = client.post(AUTH_URL, json={"initData": make_init_data(auth_date=1)})
    assert r.status_code == 401
    assert r.json()["error"] == "please reopen the app"


def test_missing_user(client):
    r = client.post(AUTH_URL, json={"initData": fresh(include_user=False)})
    assert r.status_code == 400


def test_unknown_key(tmp_path):
    settings = make_settings(tmp_path, TELEGRAM_PUBLIC_KEYS={"test": ""})
    client = TestClient(create_app(settings, store=InMemoryIdentityStore()))
    r = client.post(AUTH_URL, json={"initData": fresh("current")})
    assert r.status_code == 500
    assert r.json()["error"] == "authentication failed"


def test_store_unavailable(tmp_path):
    client = TestClient(create_app(make_settings(tmp_path), store=DownStore()))
    r = client.post(AUTH_URL, json={"initData": fresh()})
    assert r.status_code == 503
    assert r.headers["Retry-After"] == "1"


def test_lone_surrogate_is_bad_request(client):
    # JSON escapes can smuggle a code point that has no UTF-8 encoding
    body = '{"initData": "auth_date=1&query_id=\\ud800&hash=' + "0" * 64 + '"}'
    r = client.post(AUTH_URL, content=body, headers={"Content-Type": "application/json"})
    assert r.status_code == 400
    assert r.json() == {"ok": False, "error": "invalid authentication data"}


def test_mock_user_ignored_without_bypass(client):
    r = client.post(AUTH_URL, json={"mockUserId": 7})
    assert r.status_code == 400


def test_dev_bypass(tmp_path):
    settings = make_settings(tmp_path, APP_ENV="development", DEV_BYPASS=True)
    client = TestClient(create_app(settings, store=InMemoryIdentityStore()))
    r = client.post(AUTH_URL, json={"mockUserId": 7, "mockUsername": "dev"})
    assert r.status_code == 200
    assert r.json()["user"]["telegram_id"] == 7


def test_sqlite_store_by_default(tmp_path):
    client = TestClient(create_app(make_settings(tmp_path)))
    assert client.post(AUTH_URL, json={"initData": fresh()}).status_code == 200
    assert (tmp_path / "identities.db").exists()


def test_audit_written(tmp_path):
    client = TestClient(create_app(make_settings(tmp_path), store=InMemoryIdentityStore()))
    client.post(AUTH_URL, json={"initData": fresh()})
    assert (tmp_path / "audit" / "auth_audit.jsonl").exists()


class TestMe:
    def test_with_token(self, client):
        token = client.post(AUTH_URL, json={"initData": fresh()}).json()["token"]
        r = client.get(ME_URL, headers={"Authorization": f"Bearer {token}"})
        assert r.status_code == 200
        assert r.json()["user"]["telegram_id"] == 42

    def test_without_token(self, client):
        r = client.get(ME_URL)
        assert r.status_code == 401
        assert r.json() == {"ok": False, "error": "missing bearer token"}
        assert r.headers["WWW-Authenticate"] == "Bearer"

    def test_garbage_token(self, client):
        r = client.get(ME_URL, headers={"Authorization": "Bearer v1.a.b"})
        assert r.status_code == 401
        assert r.json() == {"ok": False, "error": "invalid or expired token"}

    def test_token_from_other_server(self, tmp_path, client):
        other = TestClient(create_app(make_settings(tmp_path / "other"), store=InMemoryIdentityStore()))
        token = other.post(AUTH_URL, json={"initData": fresh()}).json()["token"]
        r = client.get(ME_URL, headers={"Authorization": f"Bearer {token}"})
        assert r.status_code == 401
