from __future__ import annotations

import asyncio
import json

import pytest
from starlette.websockets import WebSocketDisconnect

from bridge.errors import CallControlNotConfiguredError
from integrations.twilio_client import TwilioCallControl, TwilioConfig


class FakeTwilioCall:
    def __init__(self, sid: str, status: str = "queued") -> None:
        self.sid = sid
        self.status = status


class FakeTwilioCallContext:
    def __init__(self, owner: FakeTwilioCalls, sid: str) -> None:
        self._owner = owner
        self._sid = sid

    def update(self, *, status: str):
        self._owner.updates.append((self._sid, status))
        return FakeTwilioCall(self._sid, status)


class FakeTwilioCalls:
    def __init__(self) -> None:
        self.created: list[dict] = []
        self.updates: list[tuple[str, str]] = []

    def __call__(self, sid: str) -> FakeTwilioCallContext:
        return FakeTwilioCallContext(self, sid)

    def create(self, **params):
        self.created.append(params)
        return FakeTwilioCall("CA123")


class FakeTwilioClient:
    def __init__(self) -> None:
        self.calls = FakeTwilioCalls()


def _call_control(**overrides) -> tuple[TwilioCallControl, FakeTwilioClient]:
    values = {
        "account_sid": "AC123",
        "auth_token": "secret",
        "from_number": "+3851000000",
        "public_base_url": "https://bridge.example.com",
    }
    values.update(overrides)
    client = FakeTwilioClient()
    return TwilioCallControl(client, TwilioConfig(**values)), client


class FakeRealtime:
    def __init__(self) -> None:
        self.sent: list[dict] = []
        self.closed = False
        self._closed_event = asyncio.Event()

    async def connect(self) -> None:
        return None

    async def messages(self):
        await self._closed_event.wait()
        return
        yield  # pragma: no cover

    async def send_json(self, message: dict) -> None:
        self.sent.append(message)

    async def ping(self) -> None:
        return None

    async def close(self) -> None:
        self.closed = True
        self._closed_event.set()


def test_root_and_health(client):
    assert client.get("/").text == "ok"

    resp = client.get("/api/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "active_sessions": 0}


def test_twiml_points_at_media_stream(client):
    for method in ("get", "post"):
        resp = getattr(client, method)("/api/twilio/twiml")
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("application/xml")
        assert '<Connect><Stream url="wss://bridge.example.com/api/twilio/stream"/></Connect>' in resp.text


def test_status_callback_acknowledged(client):
    resp = client.post("/api/twilio/status", data={"CallSid": "CA1", "CallStatus": "ringing"})

    assert resp.status_code == 204


def test_trigger_call_places_outbound_call(app, client):
    import api.dependencies as deps

    call_control, twilio = _call_control()
    app.dependency_overrides[deps.get_call_control] = lambda: call_control

    resp = client.post("/api/twilio/calls", json={"to": "+385 95 388 1324"})

    assert resp.status_code == 200
    assert resp.json() == {"ok": True, "call_sid": "CA123", "status": "queued", "used": "Twiml"}
    created = twilio.calls.created[0]
    assert created["to"] == "+385953881324"
    assert created["from_"] == "+3851000000"
    assert 'url="wss://bridge.example.com/api/twilio/stream"' in created["twiml"]
    assert created["status_callback"] == "https://bridge.example.com/api/twilio/status"


def test_trigger_call_prefers_configured_twiml_url(app, client):
    import api.dependencies as deps

    call_control, twilio = _call_control(twiml_url="https://bridge.example.com/api/twilio/twiml")
    app.dependency_overrides[deps.get_call_control] = lambda: call_control

    resp = client.post("/api/twilio/calls", json={"phone": "385953881324"})

    assert resp.json()["used"] == "Url"
    created = twilio.calls.created[0]
    assert created["to"] == "+385953881324"
    assert created["url"] == "https://bridge.example.com/api/twilio/twiml"
    assert "twiml" not in created


def test_trigger_call_requires_number(app, client):
    import api.dependencies as deps

    call_control, _ = _call_control()
    app.dependency_overrides[deps.get_call_control] = lambda: call_control

    resp = client.post("/api/twilio/calls", json={})

    assert resp.status_code == 400
    assert resp.json() == {"ok": False, "error": "Missing 'to' in body"}


def test_trigger_call_without_credentials(app, client):
    import api.dependencies as deps

    def _not_configured():
        raise CallControlNotConfiguredError("Missing TWILIO creds")

    app.dependency_overrides[deps.get_call_control] = _not_configured

    resp = client.post("/api/twilio/calls", json={"to": "+385953881324"})

    assert resp.status_code == 400
    assert resp.json() == {"ok": False, "error": "Missing TWILIO creds"}


def test_trigger_call_upstream_failure_maps_to_502(app, client):
    import api.dependencies as deps

    call_control, twilio = _call_control()

    def _boom(**params):
        raise RuntimeError("Twilio said no")

    twilio.calls.create = _boom
    app.dependency_overrides[deps.get_call_control] = lambda: call_control

    resp = client.post("/api/twilio/calls", json={"to": "+385953881324"})

    assert resp.status_code == 502
    assert resp.json()["ok"] is False
    assert "Twilio said no" in resp.json()["error"]


def test_terminate_call_uses_rest_update():
    call_control, twilio = _call_control()

    assert asyncio.run(call_control.terminate_call("CA9")) is True
    assert twilio.calls.updates == [("CA9", "completed")]


def test_media_stream_websocket_bridges_to_realtime(app, client):
    import api.dependencies as deps

    peers: list[FakeRealtime] = []

    def _factory() -> FakeRealtime:
        peer = FakeRealtime()
        peers.append(peer)
        return peer

    app.dependency_overrides[deps.get_realtime_factory] = lambda: _factory
    app.dependency_overrides[deps.get_optional_call_control] = lambda: None

    with client.websocket_connect("/api/twilio/stream") as ws:
        ws.send_text(json.dumps({"event": "connected", "protocol": "Call", "version": "1.0.0"}))
        ws.send_text(json.dumps({"event": "start", "start": {"streamSid": "MZ1", "callSid": "CA1"}}))
        ws.send_text(json.dumps({"event": "media", "media": {"track": "inbound", "payload": "//8="}}))
        ws.send_text(json.dumps({"event": "stop"}))

        # The session closes the socket once it has shut down.
        with pytest.raises(WebSocketDisconnect):
            ws.receive_text()

    assert len(peers) == 1
    types = [message["type"] for message in peers[0].sent]
    assert types[0] == "session.update"
    assert "input_audio_buffer.append" in types
    assert peers[0].closed
    assert client.get("/api/health").json()["active_sessions"] == 0
