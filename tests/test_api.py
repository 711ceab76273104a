import pytest
import requests

from enclave.app import create_app
from enclave.db import SecurityLog, session_scope
from enclave.tokens import TokenService

from conftest import bearer, make_config


def descriptions(services, event_type):
    with session_scope(services.session_factory) as session:
        rows = session.query(SecurityLog).filter(SecurityLog.event_type == event_type).all()
        return [row.description for row in rows]


class TestHealth:
    @pytest.mark.parametrize("url", ["/health", "/api/health"])
    def test_health(self, client, url):
        resp = client.get(url)
        assert resp.status_code == 200
        body = resp.get_json()
        assert body["status"] == "OK"
        assert body["environment"] == "testing"
        assert body["timestamp"].endswith("Z")

    def test_unknown_route_is_json(self, client):
        resp = client.get("/nope")
        assert resp.status_code == 404
        assert resp.get_json()["success"] is False


class TestResearcherFlow:
    def test_end_to_end(self, client, login):
        """Login, open a filesystem terminal, move around, read a file, check history, close."""
        token, body = login("researcher", prefix="/api")
        assert body["data"]["user"]["role"] == "RESEARCHER"
        assert body["data"]["expiresIn"] == 900
        headers = bearer(token)

        resp = client.post("/api/terminal/sessions", json={"terminalType": "filesystem"}, headers=headers)
        assert resp.status_code == 201
        sid = resp.get_json()["data"]["sessionId"]
        assert resp.get_json()["data"]["currentDirectory"] == "/"

        def run(command):
            r = client.post("/api/terminal/sessions/%s/commands" % sid, json={"command": command}, headers=headers)
            assert r.status_code == 200
            return r.get_json()["data"]

        listing = run("ls")
        assert "readme.txt" in listing["output"]
        assert "military" not in listing["output"]
        assert run("cd /research")["currentDirectory"] == "/research"
        assert run("cat research_notes.md")["output"].startswith("# Research Notes")

        resp = client.get("/api/terminal/commands/history?limit=10", headers=headers)
        commands = resp.get_json()["data"]["commands"]
        assert {c["command"] for c in commands} == {"ls", "cd /research", "cat research_notes.md"}

        resp = client.get("/api/terminal/sessions/%s" % sid, headers=headers)
        session = resp.get_json()["data"]["session"]
        assert session["currentDirectory"] == "/research"
        assert len(session["commandHistory"]) == 3

        assert client.delete("/api/terminal/sessions/%s" % sid, headers=headers).status_code == 200
        resp = client.post("/api/terminal/sessions/%s/commands" % sid, json={"command": "ls"}, headers=headers)
        assert resp.status_code == 404
        assert resp.get_json()["error"] == "Terminal session not found or inactive"

    def test_unprefixed_routes_match(self, client, login):
        token, _ = login("researcher")
        resp = client.get("/terminal/sessions", headers=bearer(token))
        assert resp.status_code == 200
        assert resp.get_json()["data"] == {"sessions": [], "count": 0}

    def test_bad_terminal_type(self, client, login):
        token, _ = login("researcher")
        resp = client.post("/terminal/sessions", json={"terminalType": "quantum"}, headers=bearer(token))
        assert resp.status_code == 400
        assert resp.get_json()["details"]

    def test_command_length(self, client, login):
        token, _ = login("researcher")
        sid = client.post("/terminal/sessions", json={"terminalType": "FILESYSTEM"},
                          headers=bearer(token)).get_json()["data"]["sessionId"]
        resp = client.post("/terminal/sessions/%s/commands" % sid, json={"command": "x" * 1001},
                           headers=bearer(token))
        assert resp.status_code == 400


class TestAuthApi:
    def test_missing_token(self, client):
        resp = client.get("/auth/me")
        assert resp.status_code == 401
        assert resp.get_json() == {"success": False, "error": "Access token required"}

    def test_wrong_scheme(self, client, login):
        token, _ = login("researcher")
        assert client.get("/auth/me", headers={"Authorization": "Token %s" % token}).status_code == 401

    def test_expired_token_has_code(self, app, client, user_ids):
        expired = TokenService(dict(app.config, JWT_ACCESS_EXPIRES_MINUTES=-1))
        token = expired.issue_pair(user_ids["researcher"], "researcher", "RESEARCHER")["accessToken"]
        resp = client.get("/auth/me", headers=bearer(token))
        assert resp.status_code == 401
        assert resp.get_json()["code"] == "TOKEN_EXPIRED"

    def test_valid_signature_without_session_is_rejected(self, app, client, user_ids):
        token = TokenService(app.config).issue_pair(user_ids["researcher"], "researcher", "RESEARCHER")
        assert client.get("/auth/me", headers=bearer(token["accessToken"])).status_code == 401

    def test_bad_login(self, client):
        resp = client.post("/auth/login", json={"username": "researcher", "password": "nope"})
        assert resp.status_code == 401
        assert resp.get_json() == {"success": False, "error": "Invalid credentials"}

    def test_register_validation(self, client):
        resp = client.post("/auth/register", json={"username": "x", "email": "bad", "password": "short"})
        assert resp.status_code == 400
        body = resp.get_json()
        assert body["error"] == "Validation failed"
        assert {d["field"] for d in body["details"]} == {"username", "email", "password"}

    def test_register_and_duplicate(self, client):
        payload = {"username": "field_agent", "email": "agent@phoenix-industries.com", "password": "Phoenix1!"}
        resp = client.post("/auth/register", json=payload)
        assert resp.status_code == 201
        assert resp.get_json()["data"]["user"]["role"] == "RESEARCHER"
        resp = client.post("/auth/register", json=payload)
        assert resp.status_code == 409
        assert resp.get_json()["error"] == "Username already exists"

    def test_register_admin_needs_admin_caller(self, client, login):
        payload = {"username": "root2", "email": "root2@phoenix-industries.com", "password": "Phoenix1!",
                   "role": "ADMIN"}
        assert client.post("/auth/register", json=payload).status_code == 403
        token, _ = login("admin")
        resp = client.post("/auth/register", json=payload, headers=bearer(token))
        assert resp.status_code == 201
        assert resp.get_json()["data"]["user"]["role"] == "ADMIN"

    def test_me_and_verify(self, client, login):
        token, _ = login("military")
        me = client.get("/auth/me", headers=bearer(token)).get_json()["data"]["user"]
        assert me["username"] == "military"
        verify = client.get("/auth/verify-token", headers=bearer(token)).get_json()["data"]
        assert verify == {"valid": True, "userId": me["id"], "username": "military", "role": "MILITARY"}

    def test_refresh_from_cookie_then_replay(self, client, login):
        _, body = login("researcher")
        old_refresh = body["data"]["refreshToken"]
        resp = client.post("/auth/refresh")
        assert resp.status_code == 200
        fresh = resp.get_json()["data"]
        assert fresh["refreshToken"] != old_refresh
        assert client.get("/auth/me", headers=bearer(fresh["accessToken"])).status_code == 200

        replay = client.post("/auth/refresh", json={"refreshToken": old_refresh})
        assert replay.status_code == 401

    def test_refresh_requires_token(self, app):
        resp = app.test_client().post("/auth/refresh", json={})
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "Refresh token required"

    def test_logout_kills_token(self, client, login):
        token, _ = login("researcher")
        resp = client.post("/auth/logout", headers=bearer(token))
        assert resp.status_code == 200
        assert resp.get_json()["data"]["deactivatedSessions"] == 1
        assert client.get("/auth/me", headers=bearer(token)).status_code == 401

    def test_change_password(self, client, login):
        token, _ = login("researcher")
        resp = client.post("/auth/change-password", headers=bearer(token),
                           json={"currentPassword": "researcher123", "newPassword": "Phoenix-2024"})
        assert resp.status_code == 200
        assert client.get("/auth/me", headers=bearer(token)).status_code == 401
        login("researcher", "Phoenix-2024")

    def test_change_password_wrong_current(self, client, login):
        token, _ = login("researcher")
        resp = client.post("/auth/change-password", headers=bearer(token),
                           json={"currentPassword": "nope", "newPassword": "Phoenix-2024"})
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "Current password is incorrect"


class TestFilesystemApi:
    def test_browse(self, client, login):
        token, _ = login("researcher")
        resp = client.get("/api/terminal/filesystem?path=/", headers=bearer(token))
        data = resp.get_json()["data"]
        assert data["path"] == "/"
        assert [i["name"] for i in data["items"]] == ["community", "research", "readme.txt"]
        assert data["count"] == 3

    def test_read_file(self, client, login):
        token, _ = login("researcher")
        resp = client.get("/terminal/filesystem/research/research_notes.md", headers=bearer(token))
        assert resp.status_code == 200
        assert resp.get_json()["data"]["file"]["content"].startswith("# Research Notes")

    def test_hidden_and_missing_answer_identically(self, client, login):
        token, _ = login("researcher")
        hidden = client.get("/terminal/filesystem/military/deployment_orders.txt", headers=bearer(token))
        missing = client.get("/terminal/filesystem/military/nothing.txt", headers=bearer(token))
        assert hidden.status_code == missing.status_code == 404
        assert hidden.get_json() == missing.get_json()

    def test_admin_writes(self, client, login):
        admin, _ = login("admin")
        researcher, _ = login("researcher")
        node = {"path": "/research/new.txt", "type": "FILE", "content": "fresh", "accessLevel": "RESEARCHER"}

        assert client.post("/terminal/filesystem", json=node, headers=bearer(researcher)).status_code == 403
        resp = client.post("/terminal/filesystem", json=node, headers=bearer(admin))
        assert resp.status_code == 201
        node_id = resp.get_json()["data"]["item"]["id"]
        assert client.post("/terminal/filesystem", json=node, headers=bearer(admin)).status_code == 409

        resp = client.put("/terminal/filesystem/%s" % node_id, json={"content": "edited"}, headers=bearer(admin))
        assert resp.status_code == 200
        read = client.get("/terminal/filesystem/research/new.txt", headers=bearer(researcher))
        assert read.get_json()["data"]["file"]["content"] == "edited"

        resp = client.delete("/terminal/filesystem/%s" % node_id, headers=bearer(admin))
        assert resp.get_json()["data"] == {"path": "/research/new.txt", "deleted": 1}
        assert client.get("/terminal/filesystem/research/new.txt", headers=bearer(researcher)).status_code == 404

    def test_traversal_attempt_is_flagged(self, client, login, services):
        token, _ = login("researcher")
        resp = client.get("/terminal/filesystem?path=../../etc", headers=bearer(token))
        assert resp.status_code == 404
        assert "Potential attack pattern detected" in descriptions(services, "SUSPICIOUS")


class TestSecurityApi:
    def test_admin_only(self, client, login):
        token, _ = login("researcher")
        for url in ("/security/logs", "/security/stats", "/security/active-sessions", "/security/blocks"):
            resp = client.get(url, headers=bearer(token))
            assert resp.status_code == 403
            assert resp.get_json()["error"] == "Insufficient access level"

    def test_logs_filtered(self, client, login):
        token, _ = login("admin")
        resp = client.get("/api/security/logs?eventType=LOGIN&limit=2", headers=bearer(token))
        data = resp.get_json()["data"]
        assert len(data["logs"]) == 2
        assert all(log["eventType"] == "LOGIN" for log in data["logs"])
        assert data["pagination"]["limit"] == 2
        assert data["pagination"]["total"] >= 3

    def test_stats(self, client, login):
        client.post("/auth/login", json={"username": "admin", "password": "wrong"})
        token, _ = login("admin")
        stats = client.get("/security/stats", headers=bearer(token)).get_json()["data"]
        assert stats["failedLogins"] >= 1
        assert stats["logsByType"]["LOGIN"] >= 1
        assert stats["totalLogs"] >= stats["recentLogs"]

    def test_active_sessions(self, client, login):
        researcher, _ = login("researcher")
        client.post("/terminal/sessions", json={"terminalType": "RESEARCHER"}, headers=bearer(researcher))
        token, _ = login("admin")
        data = client.get("/security/active-sessions", headers=bearer(token)).get_json()["data"]
        assert data["totalActiveUsers"] == 2
        assert data["totalTerminalSessions"] == 1
        by_name = {entry["user"]["username"]: entry for entry in data["activeUsers"]}
        assert len(by_name["researcher"]["terminalSessions"]) == 1

    def test_terminate_session(self, client, login, services):
        researcher, _ = login("researcher")
        session_id = services.auth.authenticate(researcher)["sessionId"]
        admin, _ = login("admin")
        assert client.delete("/security/sessions/%s" % session_id, headers=bearer(admin)).status_code == 200
        assert client.get("/auth/me", headers=bearer(researcher)).status_code == 401
        assert "Session terminated by administrator" in descriptions(services, "LOGOUT")

    def test_alert(self, client, login, services):
        token, _ = login("admin")
        resp = client.post("/security/alert", headers=bearer(token),
                           json={"title": "Perimeter", "description": "Door open", "level": "warning"})
        assert resp.status_code == 200
        data = resp.get_json()["data"]
        assert data["webhookQueued"] is False
        assert data["event"]["metadata"]["level"] == "WARNING"
        assert "Admin alert: Perimeter" in descriptions(services, "SUSPICIOUS")

    def test_webhook_not_configured(self, client, login):
        token, _ = login("admin")
        resp = client.post("/security/webhook-test", json={"message": "ping"}, headers=bearer(token))
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "Security webhook URL not configured"


class TestWebhook:
    @pytest.fixture
    def hooked(self, tmp_path):
        return create_app(make_config(tmp_path, SECURITY_WEBHOOK_URL="https://hooks.example.test/alerts"))

    def _admin(self, client):
        resp = client.post("/auth/login", json={"username": "admin", "password": "admin123"})
        return bearer(resp.get_json()["data"]["accessToken"])

    def test_delivery(self, hooked, monkeypatch):
        sent = []

        class Reply:
            status_code = 204

            def raise_for_status(self):
                return None

        def fake_post(url, json=None, headers=None, timeout=None):
            sent.append((url, json))
            return Reply()

        monkeypatch.setattr("enclave.notify.requests.post", fake_post)
        client = hooked.test_client()
        resp = client.post("/security/webhook-test", json={"message": "ping"}, headers=self._admin(client))
        assert resp.status_code == 200
        assert resp.get_json()["data"]["status"] == 204
        url, payload = sent[0]
        assert url == "https://hooks.example.test/alerts"
        assert payload["title"] == "Security Test Message"
        assert payload["description"] == "ping"

    def test_failure_is_502(self, hooked, monkeypatch):
        def fake_post(*args, **kwargs):
            raise requests.ConnectionError("unreachable")

        monkeypatch.setattr("enclave.notify.requests.post", fake_post)
        client = hooked.test_client()
        resp = client.post("/security/webhook-test", json={"message": "ping"}, headers=self._admin(client))
        assert resp.status_code == 502
        assert resp.get_json()["error"] == "Failed to send webhook test"


class TestBlocklist:
    def test_block_and_unblock(self, client, login):
        admin = bearer(login("admin")[0])
        resp = client.post("/security/blocks", json={"ip": "203.0.113.9", "reason": "scanner"}, headers=admin)
        assert resp.status_code == 201

        blocked = {"X-Real-IP": "203.0.113.9"}
        resp = client.post("/auth/login", json={"username": "researcher", "password": "researcher123"},
                           headers=blocked)
        assert resp.status_code == 403
        assert resp.get_json() == {"success": False, "error": "Access denied"}
        assert client.get("/health", headers=blocked).status_code == 200

        listing = client.get("/security/blocks", headers=admin).get_json()["data"]
        assert [b["ip"] for b in listing["blocks"]] == ["203.0.113.9"]

        assert client.delete("/security/blocks/203.0.113.9", headers=admin).status_code == 200
        resp = client.post("/auth/login", json={"username": "researcher", "password": "researcher123"},
                           headers=blocked)
        assert resp.status_code == 200


class TestRateLimit:
    def test_auth_routes_limited(self, tmp_path):
        app = create_app(make_config(tmp_path, RATELIMIT_ENABLED=True, AUTH_RATE_LIMIT="2 per minute"))
        client = app.test_client()
        codes = [client.post("/auth/login", json={"username": "researcher", "password": "wrong"}).status_code
                 for _ in range(3)]
        assert codes == [401, 401, 429]
        resp = client.post("/auth/login", json={"username": "researcher", "password": "researcher123"})
        assert resp.status_code == 429
        assert resp.get_json() == {"success": False, "error": "Too many requests, please try again later"}
        assert "Rate limit exceeded" in descriptions(app.extensions["enclave"], "SUSPICIOUS")


class TestUsersApi:
    def test_admin_lists_users(self, client, login):
        token, _ = login("admin")
        data = client.get("/users?limit=2", headers=bearer(token)).get_json()["data"]
        assert len(data["users"]) == 2
        assert data["pagination"] == {"total": 4, "limit": 2, "offset": 0, "pages": 2}
        assert "counts" in data["users"][0]

        filtered = client.get("/users?role=MILITARY", headers=bearer(token)).get_json()["data"]
        assert [u["username"] for u in filtered["users"]] == ["military"]

    def test_stats(self, client, login):
        token, _ = login("admin")
        data = client.get("/users/stats", headers=bearer(token)).get_json()["data"]
        assert data["totalUsers"] == 4
        assert data["usersByRole"]["ADMIN"] == 1

    def test_self_or_admin(self, client, login, user_ids):
        token, _ = login("researcher")
        assert client.get("/users", headers=bearer(token)).status_code == 403
        own = client.get("/users/%s" % user_ids["researcher"], headers=bearer(token))
        assert own.status_code == 200
        assert own.get_json()["data"]["user"]["username"] == "researcher"
        assert client.get("/users/%s" % user_ids["admin"], headers=bearer(token)).status_code == 403

    def test_role_change_needs_admin(self, client, login, user_ids):
        token, _ = login("researcher")
        resp = client.put("/users/%s" % user_ids["researcher"], json={"role": "ADMIN"}, headers=bearer(token))
        assert resp.status_code == 403
        resp = client.put("/users/%s" % user_ids["researcher"], json={"email": "r2@phoenix-industries.com"},
                          headers=bearer(token))
        assert resp.status_code == 200
        assert resp.get_json()["data"]["user"]["email"] == "r2@phoenix-industries.com"

    def test_create_user(self, client, login):
        token, _ = login("admin")
        payload = {"username": "medic", "email": "medic@phoenix-industries.com", "password": "Phoenix1!",
                   "role": "RESEARCHER"}
        assert client.post("/users", json=payload, headers=bearer(token)).status_code == 201
        assert client.post("/users", json=payload, headers=bearer(token)).status_code == 409
        login("medic", "Phoenix1!")

    def test_deactivate_and_reactivate(self, client, login, user_ids):
        researcher, _ = login("researcher")
        admin, _ = login("admin")
        resp = client.delete("/users/%s" % user_ids["researcher"], headers=bearer(admin))
        assert resp.status_code == 200
        assert client.get("/auth/me", headers=bearer(researcher)).status_code == 401
        resp = client.post("/auth/login", json={"username": "researcher", "password": "researcher123"})
        assert resp.status_code == 401
        assert resp.get_json()["error"] == "Account is deactivated"

        assert client.post("/users/%s/reactivate" % user_ids["researcher"], headers=bearer(admin)).status_code == 200
        login("researcher")

    def test_cannot_deactivate_self(self, client, login, user_ids):
        admin, _ = login("admin")
        resp = client.delete("/users/%s" % user_ids["admin"], headers=bearer(admin))
        assert resp.status_code == 400

    def test_user_sessions(self, client, login, user_ids):
        first, _ = login("researcher")
        login("researcher")
        resp = client.get("/users/%s/sessions" % user_ids["researcher"], headers=bearer(first))
        sessions = resp.get_json()["data"]["sessions"]
        assert len(sessions) == 2
        assert sum(1 for s in sessions if s["current"]) == 1

        resp = client.delete("/users/%s/sessions" % user_ids["researcher"], headers=bearer(first))
        assert resp.status_code == 200
        assert client.get("/auth/me", headers=bearer(first)).status_code == 401
