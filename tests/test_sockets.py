import pytest

from enclave.extensions import socketio

from conftest import bearer


def _events(sio_client, name):
    return [event for event in sio_client.get_received() if event["name"] == name]


@pytest.fixture
def researcher_token(login):
    return login("researcher")[0]


class TestJoin:
    def test_connect_with_token_joins_room(self, app, researcher_token, user_ids):
        sio = socketio.test_client(app, auth={"token": researcher_token})
        assert sio.is_connected()
        joined = _events(sio, "joined")
        assert joined[0]["args"][0] == {"room": "terminal-%s" % user_ids["researcher"],
                                        "userId": user_ids["researcher"]}
        sio.disconnect()

    def test_invalid_token_is_refused(self, app):
        sio = socketio.test_client(app, auth={"token": "forged"})
        assert not sio.is_connected()

    def test_join_after_connect(self, app, researcher_token):
        sio = socketio.test_client(app)
        assert sio.is_connected()
        assert _events(sio, "joined") == []
        sio.emit("join-terminal", {"token": researcher_token})
        assert len(_events(sio, "joined")) == 1
        sio.disconnect()

    def test_join_with_bad_token_disconnects(self, app):
        sio = socketio.test_client(app)
        sio.emit("join-terminal", {"token": "forged"})
        assert not sio.is_connected()


class TestPush:
    def test_command_results_reach_the_owner_only(self, app, client, login, researcher_token):
        mine = socketio.test_client(app, auth={"token": researcher_token})
        other = socketio.test_client(app, auth={"token": login("military")[0]})
        mine.get_received()
        other.get_received()

        headers = bearer(researcher_token)
        sid = client.post("/terminal/sessions", json={"terminalType": "FILESYSTEM"},
                          headers=headers).get_json()["data"]["sessionId"]
        client.post("/terminal/sessions/%s/commands" % sid, json={"command": "pwd"}, headers=headers)

        results = _events(mine, "command-result")
        assert len(results) == 1
        payload = results[0]["args"][0]
        assert payload["command"] == "pwd"
        assert payload["output"] == "/"
        assert payload["sessionId"] == sid
        assert _events(other, "command-result") == []

        client.delete("/terminal/sessions/%s" % sid, headers=headers)
        assert _events(mine, "session-ended")[0]["args"][0] == {"sessionId": sid}

        mine.disconnect()
        other.disconnect()

    def test_security_alert_reaches_admins_only(self, app, client, login, researcher_token):
        admin = login("admin")[0]
        admin_socket = socketio.test_client(app, auth={"token": admin})
        researcher_socket = socketio.test_client(app, auth={"token": researcher_token})
        anonymous = socketio.test_client(app)
        for sio in (admin_socket, researcher_socket, anonymous):
            sio.get_received()

        client.post("/security/alert", headers=bearer(admin),
                    json={"title": "Breach", "description": "Sector 7", "level": "CRITICAL"})

        alerts = _events(admin_socket, "security-alert")
        assert alerts[0]["args"][0] == {"title": "Breach", "level": "CRITICAL", "description": "Sector 7"}
        assert _events(researcher_socket, "security-alert") == []
        assert _events(anonymous, "security-alert") == []
        for sio in (admin_socket, researcher_socket, anonymous):
            sio.disconnect()


class TestBlockedClients:
    BLOCKED = {"X-Real-IP": "203.0.113.9"}

    def test_blocked_ip_cannot_connect(self, app, services, researcher_token):
        services.blocklist.add("203.0.113.9")
        assert not socketio.test_client(app, headers=self.BLOCKED).is_connected()
        assert not socketio.test_client(app, headers=self.BLOCKED,
                                        auth={"token": researcher_token}).is_connected()
        other = socketio.test_client(app, headers={"X-Real-IP": "203.0.113.10"})
        assert other.is_connected()
        other.disconnect()

    def test_blocked_after_connect_cannot_join(self, app, services, researcher_token):
        sio = socketio.test_client(app, headers=self.BLOCKED)
        assert sio.is_connected()
        services.blocklist.add("203.0.113.9")
        sio.emit("join-terminal", {"token": researcher_token})
        assert not sio.is_connected()
