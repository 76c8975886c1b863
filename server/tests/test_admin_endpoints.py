"""
Contract tests for the admin surface.
Tests /admin/clients, /admin/clients/{id}, /admin/send-command, /admin/stats
"""
from fastapi.testclient import TestClient

from registry import ClientRegistry


class TestListClients:
    """Tests for GET /admin/clients"""

    def test_list_empty(self, client: TestClient):
        response = client.get("/admin/clients")

        assert response.status_code == 200
        assert response.json() == {"clients": []}

    def test_list_shape(self, client: TestClient, polled_client: str, clock):
        client.post("/admin/send-command", json={"clientId": polled_client, "commandType": "restart"})
        client.post("/admin/send-command", json={"clientId": polled_client, "commandType": "update"})

        clients = client.get("/admin/clients").json()["clients"]

        assert clients == [{
            "id": polled_client,
            "deviceLabel": "device-001",
            "foregroundApp": "Browser",
            "isForeground": None,
            "isOnline": True,
            "lastSeen": int(clock.now * 1000),
            "pendingCommandsCount": 2,
        }]

    def test_pending_count_excludes_acked(self, client: TestClient, polled_client: str):
        command = client.post("/admin/send-command", json={
            "clientId": polled_client, "commandType": "restart"
        }).json()["command"]
        client.post("/client/ack", json={"clientId": polled_client, "commandId": command["id"]})

        clients = client.get("/admin/clients").json()["clients"]
        assert clients[0]["pendingCommandsCount"] == 0

    def test_online_flag_derived_from_last_seen(self, client: TestClient, polled_client: str, clock):
        clock.advance(30)
        assert client.get("/admin/clients").json()["clients"][0]["isOnline"] is False

        client.post("/client/poll", json={"clientId": polled_client})
        assert client.get("/admin/clients").json()["clients"][0]["isOnline"] is True

    def test_requires_admin_key_when_configured(self, client: TestClient, admin_key: dict):
        """401: Missing or wrong X-Admin-Key"""
        assert client.get("/admin/clients").status_code == 401
        assert client.get("/admin/clients", headers={"X-Admin-Key": "wrong"}).status_code == 401
        assert client.get("/admin/clients", headers=admin_key).status_code == 200


class TestGetClient:
    """Tests for GET /admin/clients/{client_id}"""

    def test_get_client_detail(self, client: TestClient, polled_client: str):
        client.post("/admin/send-command", json={
            "clientId": polled_client, "commandType": "switch_app", "commandPayload": {"appName": "IDE"}
        })

        response = client.get(f"/admin/clients/{polled_client}")

        assert response.status_code == 200
        data = response.json()
        assert data["id"] == polled_client
        assert data["pendingCommandsCount"] == 1
        assert data["pendingCommands"][0]["payload"] == {"appName": "IDE"}
        assert "createdAt" in data
        assert data["status"] == "online"

    def test_get_client_status_goes_offline(self, client: TestClient, polled_client: str, clock):
        clock.advance(31)

        data = client.get(f"/admin/clients/{polled_client}").json()

        assert data["status"] == "offline"
        assert data["isOnline"] is False

    def test_get_unknown_client_404(self, client: TestClient):
        assert client.get("/admin/clients/ghost").status_code == 404


class TestSendCommand:
    """Tests for POST /admin/send-command"""

    def test_send_command_success(self, client: TestClient, polled_client: str):
        """200: Command is created pending and delivered on next poll"""
        response = client.post("/admin/send-command", json={
            "clientId": polled_client,
            "commandType": "restart"
        })

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["command"]["type"] == "restart"
        assert data["command"]["executed"] is False
        assert data["command"]["payload"] == {}

        poll = client.post("/client/poll", json={"clientId": polled_client}).json()
        assert [c["id"] for c in poll["commands"]] == [data["command"]["id"]]

    def test_send_command_keeps_order(self, client: TestClient, polled_client: str):
        for command_type in ("first", "second", "third"):
            client.post("/admin/send-command", json={"clientId": polled_client, "commandType": command_type})

        poll = client.post("/client/poll", json={"clientId": polled_client}).json()
        assert [c["type"] for c in poll["commands"]] == ["first", "second", "third"]

    def test_send_command_only_reaches_target(self, client: TestClient, polled_client: str):
        other = client.post("/client/poll", json={}).json()["clientId"]
        client.post("/admin/send-command", json={"clientId": polled_client, "commandType": "restart"})

        assert client.post("/client/poll", json={"clientId": other}).json()["commands"] == []

    def test_send_command_unknown_client_404(self, client: TestClient, registry: ClientRegistry):
        """404: No command is created for a client the registry does not hold"""
        response = client.post("/admin/send-command", json={
            "clientId": "does-not-exist",
            "commandType": "restart"
        })

        assert response.status_code == 404
        assert registry.stats()["pending_commands"] == 0

    def test_send_command_missing_fields_400(self, client: TestClient, polled_client: str):
        """400: clientId and commandType are required"""
        assert client.post("/admin/send-command", json={"clientId": polled_client}).status_code == 400
        assert client.post("/admin/send-command", json={"commandType": "restart"}).status_code == 400
        assert client.post("/admin/send-command", json={
            "clientId": polled_client, "commandType": ""
        }).status_code == 400

    def test_send_command_logs_event(self, client: TestClient, polled_client: str, capture_logs):
        client.post("/admin/send-command", json={"clientId": polled_client, "commandType": "restart"})
        events = [log for log in capture_logs if log["event"] == "command.enqueued"]
        assert events and events[0]["client_id"] == polled_client

    def test_send_command_requires_admin_key(self, client: TestClient, polled_client: str, admin_key: dict):
        body = {"clientId": polled_client, "commandType": "restart"}
        assert client.post("/admin/send-command", json=body).status_code == 401
        assert client.post("/admin/send-command", json=body, headers=admin_key).status_code == 200


class TestAdminStats:
    """Tests for GET /admin/stats"""

    def test_stats(self, client: TestClient, polled_client: str):
        client.post("/admin/send-command", json={"clientId": polled_client, "commandType": "restart"})

        data = client.get("/admin/stats").json()

        assert data["registry"] == {"clients_total": 1, "clients_online": 1, "pending_commands": 1}
        assert data["background_tasks"]["running"] is False
        assert data["online_timeout_seconds"] == 30

    def test_stats_poll_totals(self, client: TestClient, polled_client: str):
        before = client.get("/admin/stats").json()["polls"]

        client.post("/client/poll", json={"clientId": polled_client})
        client.post("/client/poll", json={"clientId": polled_client})
        client.post("/client/poll", json={"deviceId": "device-002"})

        after = client.get("/admin/stats").json()["polls"]
        assert after["checkin"] - before["checkin"] == 2
        assert after["new_client"] - before["new_client"] == 1
