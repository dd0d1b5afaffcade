"""
HTTP API integration tests using FastAPI's TestClient.

sing-box itself is never started: the supervisor and installer are
replaced with in-memory fakes, and state lives in a temp directory.
"""

import pytest
from fastapi.testclient import TestClient

from api_server import create_app
from config_compiler import load_config
from errors import ExternalProcessError
from manager_config import Settings
from share_uri import parse_vless_uri


class FakeSupervisor:
    def __init__(self):
        self.reloads = 0
        self.restarts = 0
        self.fail_reload = False

    async def reload(self):
        if self.fail_reload:
            raise ExternalProcessError("signal refused")
        self.reloads += 1
        return True

    async def restart(self):
        self.restarts += 1
        return True

    async def start(self):
        return True

    async def stop(self):
        return False

    def get_status(self):
        return {"status": "running", "pid": 4242, "config_path": "/tmp/config.json"}


class FakeInstaller:
    def is_installed(self):
        return True

    def get_installed_version(self):
        return "1.10.0"


@pytest.fixture
def supervisor():
    return FakeSupervisor()


@pytest.fixture
def client(manager, supervisor, state_path, config_path):
    settings = Settings(
        state_path=state_path,
        config_path=config_path,
        server_host="203.0.113.5",
        server_port=443,
    )
    app = create_app(
        manager=manager,
        supervisor=supervisor,
        settings=settings,
        installer=FakeInstaller(),
        manage_process=False,
    )
    with TestClient(app) as test_client:
        yield test_client


def add_user(client, name, **extra):
    resp = client.post("/api/users", json={"name": name, **extra})
    assert resp.status_code == 200, resp.text
    return resp.json()


class TestUsers:
    """Tests for /api/users routes."""

    def test_empty_list(self, client):
        resp = client.get("/api/users")
        assert resp.status_code == 200
        assert resp.json() == {"users": []}

    def test_create_user(self, client, supervisor, manager):
        body = add_user(client, "alice", email="alice@example.com", expiresInDays=30)
        user = body["user"]
        assert user["name"] == "alice"
        assert user["email"] == "alice@example.com"
        assert user["enabled"] is True
        assert user["expired"] is False
        assert user["expiresAt"].endswith("Z")
        assert body["reload"] == "reloaded"
        assert supervisor.reloads == 1

        [config] = body["configs"]
        assert config["userId"] == user["id"]
        parsed = parse_vless_uri(config["uri"])
        assert parsed["uuid"] == user["id"]
        assert parsed["reality_public_key"] == manager.get_public_key()
        assert config["manual"]["publicKey"] == manager.get_public_key()

    def test_create_duplicate(self, client):
        add_user(client, "alice")
        resp = client.post("/api/users", json={"name": "alice"})
        assert resp.status_code == 409
        assert resp.json() == {"error": "User \"alice\" already exists"}

    def test_create_without_name(self, client):
        resp = client.post("/api/users", json={})
        assert resp.status_code == 400
        assert resp.json() == {"error": "Name is required"}

    @pytest.mark.parametrize("payload", [
        {"name": "bob", "expiresInDays": 0},
        {"name": "bob", "trafficLimit": -1},
    ])
    def test_create_invalid_fields(self, client, payload):
        resp = client.post("/api/users", json=payload)
        assert resp.status_code == 400
        assert "error" in resp.json()

    def test_get_user(self, client):
        user = add_user(client, "alice")["user"]
        resp = client.get(f"/api/users/{user['id']}")
        assert resp.status_code == 200
        assert resp.json()["user"]["name"] == "alice"

    def test_routes_match_by_id_only(self, client):
        add_user(client, "alice")
        resp = client.get("/api/users/alice")
        assert resp.status_code == 404
        assert resp.json() == {"error": "User \"alice\" not found"}

    def test_disable_and_enable(self, client, config_path):
        user = add_user(client, "alice")["user"]
        resp = client.patch(f"/api/users/{user['id']}", json={"enabled": False})
        assert resp.status_code == 200
        assert resp.json()["user"]["enabled"] is False
        assert load_config(config_path)["inbounds"][0]["users"] == []

        resp = client.patch(f"/api/users/{user['id']}", json={"enabled": True})
        assert resp.json()["user"]["enabled"] is True
        assert [u["name"] for u in load_config(config_path)["inbounds"][0]["users"]] == ["alice"]

    def test_patch_requires_enabled(self, client):
        user = add_user(client, "alice")["user"]
        resp = client.patch(f"/api/users/{user['id']}", json={})
        assert resp.status_code == 400

    def test_user_config(self, client):
        body = add_user(client, "alice")
        resp = client.get(f"/api/users/{body['user']['id']}/config")
        assert resp.status_code == 200
        assert resp.json()["configs"] == body["configs"]

    def test_qrcode(self, client):
        user = add_user(client, "alice")["user"]
        resp = client.get(f"/api/users/{user['id']}/qrcode")
        assert resp.status_code == 200
        assert resp.headers["content-type"] == "image/png"
        assert resp.content.startswith(b"\x89PNG")

    def test_qrcode_unknown_user(self, client):
        assert client.get("/api/users/ghost/qrcode").status_code == 404

    def test_delete_user(self, client):
        user = add_user(client, "alice")["user"]
        resp = client.delete(f"/api/users/{user['id']}")
        assert resp.status_code == 200
        assert resp.json()["success"] is True
        assert client.get("/api/users").json() == {"users": []}
        assert client.delete(f"/api/users/{user['id']}").status_code == 404

    def test_reload_failure_does_not_roll_back(self, client, supervisor):
        supervisor.fail_reload = True
        body = add_user(client, "alice")
        assert body["reload"] == "failed: signal refused"
        assert [u["name"] for u in client.get("/api/users").json()["users"]] == ["alice"]


class TestWebUI:
    """Tests for the management page."""

    def test_index_serves_html(self, client):
        resp = client.get("/")
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/html")
        page = resp.text
        assert "<!DOCTYPE html>" in page
        for path in ("/api/users", "/api/server", "/api/reset", "/config", "/qrcode"):
            assert path in page

    def test_index_does_not_embed_user_data(self, client, manager):
        add_user(client, "alice")
        page = client.get("/").text
        assert "alice" not in page
        assert manager.get_public_key() not in page


class TestServer:
    """Tests for server info, stats, status and reset."""

    def test_server_info_hides_private_key(self, client, manager):
        resp = client.get("/api/server")
        assert resp.status_code == 200
        assert resp.json() == {
            "host": "203.0.113.5",
            "port": 443,
            "publicKey": manager.get_public_key(),
        }
        assert "privateKey" not in resp.text

    def test_stats(self, client):
        add_user(client, "alice")
        bob = add_user(client, "bob")["user"]
        client.patch(f"/api/users/{bob['id']}", json={"enabled": False})
        assert client.get("/api/stats").json() == {
            "totalUsers": 2,
            "activeUsers": 1,
            "disabledUsers": 1,
            "expiredUsers": 0,
        }

    def test_status(self, client):
        body = client.get("/api/status").json()
        assert body["status"] == "running"
        assert body["installed"] is True
        assert body["version"] == "1.10.0"

    def test_reset(self, client, supervisor, manager):
        old_key = manager.get_public_key()
        add_user(client, "alice")
        resp = client.post("/api/reset")
        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert body["publicKey"] != old_key
        assert body["publicKey"] == manager.get_public_key()
        assert body["restart"] == "restarted"
        assert supervisor.restarts == 1
        assert client.get("/api/users").json() == {"users": []}

    def test_unknown_route(self, client):
        resp = client.get("/api/nope")
        assert resp.status_code == 404
        assert resp.json() == {"error": "Not Found"}
