"""
API endpoint tests.
"""

import os

import pytest
from fastapi.testclient import TestClient

from conftest import free_port
from toolbox_api.main import create_app


@pytest.fixture
def client(settings):
    """Create test client with an isolated data directory."""
    with TestClient(create_app(settings)) as test_client:
        yield test_client


class TestHealthEndpoints:
    """Tests for health endpoints."""

    def test_root(self, client):
        response = client.get("/")
        assert response.status_code == 200
        data = response.json()
        assert data["name"] == "Shelf Toolbox"
        assert data["status"] == "operational"

    def test_health(self, client):
        data = client.get("/health").json()
        assert data["status"] == "healthy"
        assert data["scanning"] is False
        assert data["subscribers"] == 0

    def test_metrics(self, client):
        response = client.get("/metrics")
        assert response.status_code == 200
        assert "toolbox_netcat_messages_total" in response.text


class TestErrorShape:
    """Tests for the JSON error contract."""

    def test_request_validation_is_400(self, client):
        response = client.post("/api/v1/scanner/scan", json={"target": "127.0.0.1", "concurrency": 0})
        assert response.status_code == 400
        assert response.json()["kind"] == "ValidationError"

    def test_toolbox_validation_is_400(self, client):
        response = client.post("/api/v1/scanner/scan", json={"target": "127.0.0.1", "ports": [0]})
        assert response.status_code == 400
        assert response.json() == {"kind": "ValidationError", "message": response.json()["message"]}

    def test_unknown_ids_are_404(self, client):
        for path in (
            "/api/v1/downloads/nope",
            "/api/v1/forwarding/rules/nope",
            "/api/v1/servers/nope",
            "/api/v1/netcat/sessions/nope",
        ):
            response = client.get(path)
            assert response.status_code == 404, path
            assert response.json()["kind"] == "NotFound"

    def test_kill_unknown_process(self, client):
        response = client.post("/api/v1/processes/kill", json={"pid": 99999999})
        assert response.status_code == 404

    def test_kill_self_rejected(self, client):
        response = client.post("/api/v1/processes/kill", json={"pid": os.getpid()})
        assert response.status_code == 400


class TestScannerEndpoints:
    """Tests for scanner endpoints."""

    def test_common_ports(self, client):
        ports = client.get("/api/v1/scanner/common-ports").json()
        assert 22 in ports and 443 in ports

    def test_scan_closed_port(self, client):
        port = free_port()
        response = client.post("/api/v1/scanner/scan", json={"target": "127.0.0.1", "ports": [port], "timeoutMs": 500})
        assert response.status_code == 200
        report = response.json()
        assert report["status"] == "completed"
        assert report["results"] == [{"ip": "127.0.0.1", "port": port, "status": "closed", "service": None}]

    def test_stop_without_scan(self, client):
        assert client.post("/api/v1/scanner/stop").json() == {"stopped": False}


class TestForwardingEndpoints:
    """Tests for forward rule endpoints."""

    def test_rule_lifecycle_uses_camel_case(self, client):
        port = free_port()
        response = client.post("/api/v1/forwarding/rules", json={
            "name": "db", "localPort": port, "remoteHost": "127.0.0.1", "remotePort": 5432,
        })
        assert response.status_code == 200
        rule = response.json()
        assert rule["localPort"] == port
        assert rule["status"] == "stopped"

        started = client.post(f"/api/v1/forwarding/rules/{rule['id']}/start").json()
        assert started["status"] == "running"
        stats = client.get(f"/api/v1/forwarding/rules/{rule['id']}/stats").json()
        assert stats["activeConnections"] == 0

        stopped = client.post(f"/api/v1/forwarding/rules/{rule['id']}/stop").json()
        assert stopped["status"] == "stopped"

        assert client.delete(f"/api/v1/forwarding/rules/{rule['id']}").json() == {"ok": True}
        assert client.get("/api/v1/forwarding/rules").json() == []

    def test_bad_port_rejected(self, client):
        response = client.post("/api/v1/forwarding/rules", json={
            "name": "bad", "localPort": 70000, "remoteHost": "127.0.0.1", "remotePort": 1,
        })
        assert response.status_code == 400


class TestServerEndpoints:
    """Tests for static server endpoints."""

    def test_missing_root(self, client, tmp_path):
        response = client.post("/api/v1/servers", json={
            "name": "site", "port": free_port(), "rootDir": str(tmp_path / "missing"),
        })
        assert response.status_code == 400
        assert "does not exist" in response.json()["message"]

    def test_create_defaults(self, client, tmp_path):
        server = client.post("/api/v1/servers", json={
            "name": "site", "port": free_port(), "rootDir": str(tmp_path),
        }).json()
        assert server["urlPrefix"] == "/"
        assert server["indexPage"] == "index.html"
        assert server["url"] is None


class TestDownloadEndpoints:
    """Tests for download endpoints."""

    def test_invalid_url(self, client):
        response = client.post("/api/v1/downloads", json={"url": "ftp://example.com/a"})
        assert response.status_code == 400

    def test_clear_completed_empty(self, client):
        assert client.post("/api/v1/downloads/clear-completed").json() == {"removed": 0}


class TestNetcatEndpoints:
    """Tests for netcat endpoints."""

    def test_create_and_get_session(self, client):
        created = client.post("/api/v1/netcat/sessions", json={"protocol": "udp", "mode": "server", "port": 9999})
        assert created.status_code == 200
        session = created.json()
        assert session["name"] == "UDP Server 127.0.0.1:9999"
        assert session["autoSend"]["enabled"] is False

        fetched = client.get(f"/api/v1/netcat/sessions/{session['id']}").json()
        assert fetched["id"] == session["id"]
        assert [s["id"] for s in client.post("/api/v1/netcat/init").json()] == [session["id"]]
        assert client.get(f"/api/v1/netcat/sessions/{session['id']}/messages").json() == []

    def test_send_requires_connection(self, client):
        session = client.post("/api/v1/netcat/sessions", json={"port": 9998}).json()
        response = client.post("/api/v1/netcat/send", json={"sessionId": session["id"], "data": "x"})
        assert response.status_code == 400

    def test_auto_send_interval_floor(self, client):
        session = client.post("/api/v1/netcat/sessions", json={"port": 9997}).json()
        response = client.put(
            f"/api/v1/netcat/sessions/{session['id']}/auto-send",
            json={"enabled": True, "intervalMs": 10},
        )
        assert response.status_code == 400
