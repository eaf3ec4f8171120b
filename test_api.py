import pytest
from fastapi.testclient import TestClient

from conftest import VALID_CREDENTIALS
from tunnelctl import main
from tunnelctl.vpn import manager as manager_module
from tunnelctl.vpn.manager import VPNManager


@pytest.fixture
def vpn_manager(options, fake_network, fake_processes, fake_probe, monkeypatch):
    manager = VPNManager(options, network=fake_network, processes=fake_processes, probe=fake_probe)
    monkeypatch.setattr(main, "vpn_manager", manager)
    monkeypatch.setattr(manager_module, "spawn_detached", lambda cmd: None)
    return manager


@pytest.fixture
def client(vpn_manager):
    with TestClient(main.app) as client:
        yield client


def test_status_starts_disconnected(client):
    response = client.get("/vpn/status")

    assert response.status_code == 200
    assert response.json() == {"status": "disconnected"}


def test_connect_and_disconnect(client):
    response = client.post("/vpn/connect", json=VALID_CREDENTIALS)
    assert response.status_code == 200
    assert response.json() == {"status": "success", "connected": True}
    assert client.get("/vpn/status").json() == {"status": "connected"}

    response = client.post("/vpn/disconnect")
    assert response.json() == {"status": "success"}
    assert client.get("/vpn/status").json() == {"status": "disconnected"}


def test_second_connect_conflicts(client):
    client.post("/vpn/connect", json=VALID_CREDENTIALS)

    response = client.post("/vpn/connect", json=VALID_CREDENTIALS)

    assert response.status_code == 409
    assert "already connected" in response.json()["detail"]


def test_unsupported_protocol_is_bad_request(client, fake_processes):
    response = client.post("/vpn/connect", json=dict(VALID_CREDENTIALS, protocol="OPENVPN"))

    assert response.status_code == 400
    assert fake_processes.started == []


def test_missing_body_field_is_rejected(client):
    response = client.post("/vpn/connect", json={"protocol": "V2RAY"})

    assert response.status_code == 422


def test_stage_failure_reports_kind_and_stage(client, fake_network):
    fake_network.fail_on = {"assign_resolvers"}

    response = client.post("/vpn/connect", json=VALID_CREDENTIALS)

    assert response.status_code == 502
    detail = response.json()["detail"]
    assert detail["kind"] == "CommandError"
    assert detail["stage"] == "DNS_ASSIGNED"
    assert client.get("/vpn/status").json() == {"status": "disconnected"}


def test_unexpected_error_is_internal(client, vpn_manager, monkeypatch):
    async def broken(credentials):
        raise RuntimeError("boom")

    monkeypatch.setattr(vpn_manager, "connect", broken)

    response = client.post("/vpn/connect", json=VALID_CREDENTIALS)

    assert response.status_code == 500
    assert response.json()["detail"] == "Failed to connect VPN"


def test_partial_disconnect(client, fake_network):
    client.post("/vpn/connect", json=VALID_CREDENTIALS)
    fake_network.fail_on = {"remove_bypass_route"}

    response = client.post("/vpn/disconnect")

    assert response.json() == {"status": "partial"}


def test_device_token(client, options):
    assert client.get("/device").json() == {"has_token": False}

    options.device_token_file.write_text("token")

    assert client.get("/device").json() == {"has_token": True}


def test_status_events_stream(client):
    with client.websocket_connect("/vpn/events") as websocket:
        assert websocket.receive_json() == {"status": "disconnected"}

        client.post("/vpn/connect", json=VALID_CREDENTIALS)

        assert websocket.receive_json() == {"status": "connecting"}
        assert websocket.receive_json() == {"status": "connected"}
