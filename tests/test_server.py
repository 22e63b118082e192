"""Tests for the HTTP API, Twilio webhooks and the media stream endpoint."""

import json

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from conftest import FakeASR, FakeLLM, FakeTTSFactory
from outdial.config import ConfigError, Credentials, OutdialConfig
from outdial.providers.registry import ProviderRegistry
from outdial.server import create_app
from outdial.session import CallSession, LogSource, SessionStore
from outdial.telephony import CallControlError


class FakeCallControl:
    def __init__(self, sid="CA123", error=None):
        self.sid = sid
        self.error = error
        self.placed: list[dict] = []
        self.hangups: list[str] = []

    async def place_call(self, to, from_, voice_url, status_url):
        self.placed.append({"to": to, "from_": from_, "voice_url": voice_url, "status_url": status_url})
        if self.error is not None:
            raise self.error
        return self.sid

    async def hangup(self, call_sid):
        self.hangups.append(call_sid)


def _config(**overrides):
    credentials = Credentials(
        _env_file=None,
        public_host="calls.example.com",
        twilio_account_sid="AC1",
        twilio_auth_token="token",
        twilio_caller_id="+15550009999",
        elevenlabs_voice_id="env-voice",
    )
    data = {
        "asr_provider": "fake",
        "llm_provider": "fake",
        "tts_provider": "fake",
        "session": {"cleanup_delay_seconds": 0.01},
    }
    data.update(overrides)
    config = OutdialConfig.from_dict(data)
    config.credentials = credentials
    return config


def _registry(factory):
    registry = ProviderRegistry()
    registry.register_asr("fake", lambda **kw: FakeASR())
    registry.register_llm("fake", lambda **kw: FakeLLM())
    registry.register_tts("fake", lambda **kw: factory())
    return registry


@pytest.fixture
def store():
    return SessionStore()


@pytest.fixture
def control():
    return FakeCallControl()


@pytest.fixture
def factory():
    return FakeTTSFactory(auto_final=True)


@pytest.fixture
def client(store, control, factory):
    app = create_app(_config(), store=store, call_control=control, providers=_registry(factory))
    return TestClient(app)


START_BODY = {
    "phoneNumber": "+15551234567",
    "theme": "A confused pizza delivery driver",
    "outline": "1. Hi there\n2. Wait, really?",
}


# ==========================================================================
# Operator API
# ==========================================================================


class TestStartCall:

    def test_places_call_and_registers_session(self, client, store, control):
        resp = client.post("/api/call/start", json=START_BODY)
        assert resp.status_code == 200
        assert resp.json() == {"sid": "CA123"}

        placed = control.placed[0]
        assert placed["to"] == "+15551234567"
        assert placed["from_"] == "+15550009999"
        assert placed["voice_url"] == "https://calls.example.com/twilio/voice"
        assert placed["status_url"] == "https://calls.example.com/twilio/voice/status"

        session = store.get("CA123")
        assert session.theme == "A confused pizza delivery driver"
        assert session.voice_id == "env-voice"
        assert session.logs[0].source == LogSource.SYSTEM
        assert session.logs[0].text == "Call initiated to +15551234567. SID: CA123"

    def test_voice_and_caller_overrides(self, client, store, control):
        body = dict(START_BODY, voiceId="voice-9", callerId="+15550001234")
        client.post("/api/call/start", json=body)
        assert control.placed[0]["from_"] == "+15550001234"
        assert store.get("CA123").voice_id == "voice-9"

    @pytest.mark.parametrize("missing", ["phoneNumber", "theme", "outline"])
    def test_missing_fields(self, client, store, control, missing):
        body = {k: v for k, v in START_BODY.items() if k != missing}
        resp = client.post("/api/call/start", json=body)
        assert resp.status_code == 400
        assert resp.json() == {"error": "Missing required fields: phoneNumber, theme, and outline."}
        assert control.placed == []
        assert store.get("CA123") is None

    def test_blank_theme_rejected(self, client):
        resp = client.post("/api/call/start", json=dict(START_BODY, theme="   "))
        assert resp.status_code == 400

    def test_body_must_be_json_object(self, client):
        resp = client.post("/api/call/start", content=b"not json", headers={"content-type": "application/json"})
        assert resp.status_code == 400
        resp = client.post("/api/call/start", json=["a", "list"])
        assert resp.status_code == 400

    def test_twilio_failure_is_502(self, store, factory):
        control = FakeCallControl(error=CallControlError("Invalid 'To' number"))
        app = create_app(_config(), store=store, call_control=control, providers=_registry(factory))
        resp = TestClient(app).post("/api/call/start", json=START_BODY)
        assert resp.status_code == 502
        assert resp.json() == {"error": "Invalid 'To' number"}
        assert store.get("CA123") is None

    def test_no_caller_id(self, store, control, factory):
        config = _config()
        config.credentials.twilio_caller_id = ""
        app = create_app(config, store=store, call_control=control, providers=_registry(factory))
        resp = TestClient(app).post("/api/call/start", json=START_BODY)
        assert resp.status_code == 400
        assert control.placed == []


class TestCallLogs:

    def test_returns_entries_in_order(self, client, store):
        session = store.create("CA777", theme="t", outline="1. a")
        session.add_log(LogSource.SYSTEM, "Call connected.")
        session.add_log(LogSource.AGENT, "Hi there")
        session.add_log(LogSource.USER, "who is this")

        resp = client.get("/api/call/logs", params={"callSid": "CA777"})
        assert resp.status_code == 200
        entries = resp.json()
        assert [(e["source"], e["text"]) for e in entries] == [
            ("system", "Call connected."),
            ("agent", "Hi there"),
            ("user", "who is this"),
        ]
        ids = [e["id"] for e in entries]
        assert ids == sorted(set(ids))
        assert all(e["timestamp"] for e in entries)

    def test_missing_call_sid(self, client):
        resp = client.get("/api/call/logs")
        assert resp.status_code == 400

    def test_unknown_call(self, client):
        resp = client.get("/api/call/logs", params={"callSid": "CA-nope"})
        assert resp.status_code == 404
        assert resp.json() == {"error": "Call session not found."}


class TestHealth:

    def test_health(self, client, store):
        store.create("CA1")
        resp = client.get("/health")
        assert resp.json() == {"status": "ok", "active_calls": 1}


# ==========================================================================
# Twilio webhooks
# ==========================================================================


class TestVoiceWebhook:

    def test_returns_stream_twiml(self, client, store):
        session = store.create("CA123")
        resp = client.post("/twilio/voice", data={"CallSid": "CA123"})
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/xml")
        assert "<Connect><Stream " in resp.text
        assert 'name="RealtimeAudioStream"' in resp.text
        assert 'url="wss://calls.example.com/ws/media?callSid=CA123"' in resp.text
        assert "<Pause" not in resp.text
        assert session.logs[-1].text == "Call connected. Starting media stream..."

    def test_unknown_call_still_gets_twiml(self, client):
        resp = client.post("/twilio/voice", data={"CallSid": "CA-other"})
        assert resp.status_code == 200
        assert "<Stream" in resp.text


class TestStatusWebhook:

    def test_completed_logs_call_ended(self, client, store):
        session = store.create("CA123")
        resp = client.post("/twilio/voice/status", data={"CallSid": "CA123", "CallStatus": "completed"})
        assert resp.status_code == 200
        assert session.logs[-1].text == "Call ended."

    def test_other_statuses_ignored(self, client, store):
        session = store.create("CA123")
        client.post("/twilio/voice/status", data={"CallSid": "CA123", "CallStatus": "ringing"})
        assert session.logs == []

    def test_unknown_call_ok(self, client):
        resp = client.post("/twilio/voice/status", data={"CallSid": "CA-x", "CallStatus": "completed"})
        assert resp.status_code == 200


# ==========================================================================
# Media stream
# ==========================================================================


class TestMediaStream:

    def test_unknown_call_closed_with_policy_violation(self, client):
        with client.websocket_connect("/ws/media?callSid=CA-none") as ws:
            with pytest.raises(WebSocketDisconnect) as exc:
                ws.receive_text()
        assert exc.value.code == 1008

    def test_opening_beat_streamed_back(self, client, store, factory):
        session = CallSession(call_id="CA123", theme="t", outline="1. Hi there\n2. Later")
        store.set(session)

        with client.websocket_connect("/ws/media?callSid=CA123") as ws:
            ws.send_text(json.dumps({"event": "connected", "protocol": "Call", "version": "1.0.0"}))
            ws.send_text(json.dumps({"event": "start", "start": {"streamSid": "MZ9", "callSid": "CA123"}}))
            message = ws.receive_json()
            assert message["event"] == "media"
            assert message["streamSid"] == "MZ9"
            ws.send_text(json.dumps({"event": "stop", "streamSid": "MZ9"}))

        texts = [e.text for e in session.logs]
        assert "Hi there" in texts
        assert texts[-1] == "Media stream closed."
        assert factory.instances[0].sent == ["Hi there"]


class TestAppConstruction:

    def test_requires_twilio_credentials(self):
        config = _config()
        config.credentials.twilio_auth_token = ""
        with pytest.raises(ConfigError):
            create_app(config, store=SessionStore())

    def test_shutdown_cancels_pending_cleanup(self, control, factory):
        cancelled = []

        class RecordingStore(SessionStore):
            def cancel_pending(self):
                cancelled.append(True)
                super().cancel_pending()

        app = create_app(
            _config(), store=RecordingStore(), call_control=control, providers=_registry(factory)
        )
        with TestClient(app) as client:
            assert client.get("/health").status_code == 200
            assert cancelled == []
        assert cancelled == [True]
