"""HTTP/WebSocket server for outdial.

Routes:
    POST /api/call/start        place a call and register its session
    GET  /api/call/logs         poll a call's transcript
    POST /twilio/voice          TwiML that starts the media stream
    POST /twilio/voice/status   Twilio status callback
    WS   /ws/media?callSid=...  Twilio media stream for one call
    GET  /health
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request, WebSocket
from fastapi.responses import JSONResponse, Response
from loguru import logger
from pydantic import BaseModel, ValidationError

from outdial import __version__
from outdial.config import OutdialConfig, load_config
from outdial.pipeline.controller import CallAudioSession, TransportClosed
from outdial.providers.registry import ProviderRegistry, provider_registry
from outdial.session import LogSource, SessionStore, session_store
from outdial.telephony import (
    CallControlError,
    TwilioCallControl,
    build_stream_twiml,
    media_stream_url,
    public_base_url,
)


class StartCallRequest(BaseModel):
    phoneNumber: str = ""
    theme: str = ""
    outline: str = ""
    voiceId: str | None = None
    callerId: str | None = None


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


def create_app(
    config: OutdialConfig | dict | str | None = None,
    store: SessionStore | None = None,
    call_control: Any = None,
    providers: ProviderRegistry | None = None,
) -> FastAPI:
    """Create the FastAPI application.

    Args:
        config: Outdial configuration (YAML path, dict, or OutdialConfig).
        store: Session registry (default: the process-wide store).
        call_control: Places and hangs up calls (default: Twilio REST client).
        providers: ASR/LLM/TTS registry (default: the process-wide registry).
    """
    outdial_config = load_config(config)
    sessions = store if store is not None else session_store
    registry = providers or provider_registry
    if call_control is None:
        call_control = TwilioCallControl.from_config(outdial_config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        logger.info("Shutting down outdial, cancelling pending session cleanup")
        sessions.cancel_pending()

    app = FastAPI(
        title="outdial",
        description="Outbound AI voice call orchestrator",
        version=__version__,
        lifespan=lifespan,
    )

    @app.get("/health")
    async def health():
        return JSONResponse({"status": "ok", "active_calls": sessions.active_count})

    # ------------------------------------------------------------------
    # Operator API
    # ------------------------------------------------------------------

    @app.post("/api/call/start")
    async def start_call(request: Request):
        try:
            body = StartCallRequest.model_validate(await request.json())
        except (ValueError, ValidationError):
            return _error(400, "Request body must be a JSON object.")

        if not body.phoneNumber or not body.theme.strip() or not body.outline.strip():
            return _error(400, "Missing required fields: phoneNumber, theme, and outline.")

        caller_id = body.callerId or outdial_config.caller_id
        if not caller_id:
            return _error(400, "No caller id configured and none supplied.")

        base_url = public_base_url(outdial_config.public_host)
        try:
            call_sid = await call_control.place_call(
                to=body.phoneNumber,
                from_=caller_id,
                voice_url=f"{base_url}/twilio/voice",
                status_url=f"{base_url}/twilio/voice/status",
            )
        except CallControlError as e:
            return _error(502, str(e) or "Failed to start call.")

        voice_id = body.voiceId or outdial_config.credentials.elevenlabs_voice_id
        session = sessions.create(
            call_sid,
            theme=body.theme,
            outline=body.outline,
            voice_id=voice_id,
            to_number=body.phoneNumber,
        )
        session.add_log(LogSource.SYSTEM, f"Call initiated to {body.phoneNumber}. SID: {call_sid}")
        logger.info(f"Call initiated: {call_sid}")
        return JSONResponse({"sid": call_sid})

    @app.get("/api/call/logs")
    async def call_logs(callSid: str | None = None):
        if not callSid:
            return _error(400, "Missing callSid query parameter.")
        session = sessions.get(callSid)
        if session is None:
            return _error(404, "Call session not found.")
        return JSONResponse([entry.model_dump(mode="json") for entry in session.snapshot_logs()])

    # ------------------------------------------------------------------
    # Twilio webhooks
    # ------------------------------------------------------------------

    @app.post("/twilio/voice")
    async def twilio_voice(request: Request):
        form = await request.form()
        call_sid = str(form.get("CallSid", ""))
        logger.info(f"Twilio voice webhook: call connected {call_sid}")

        stream_url = media_stream_url(
            outdial_config.public_host, call_sid, outdial_config.server.media_path
        )
        session = sessions.get(call_sid)
        if session is not None:
            session.add_log(LogSource.SYSTEM, "Call connected. Starting media stream...")
        return Response(content=build_stream_twiml(stream_url), media_type="text/xml")

    @app.post("/twilio/voice/status")
    async def twilio_status(request: Request):
        form = await request.form()
        call_sid = str(form.get("CallSid", ""))
        call_status = str(form.get("CallStatus", ""))
        logger.info(f"Twilio status webhook: call {call_sid} status: {call_status}")

        if call_status == "completed":
            session = sessions.get(call_sid)
            if session is not None:
                session.add_log(LogSource.SYSTEM, "Call ended.")
        return Response(status_code=200)

    # ------------------------------------------------------------------
    # Media stream
    # ------------------------------------------------------------------

    @app.websocket(outdial_config.server.media_path)
    async def media_stream(websocket: WebSocket):
        await websocket.accept()
        call_sid = websocket.query_params.get("callSid", "")
        logger.info(f"Media stream connected for call {call_sid}: {websocket.client}")

        call = CallAudioSession(
            _FastAPIWebSocketAdapter(websocket),
            call_sid,
            config=outdial_config,
            store=sessions,
            providers=registry,
            call_control=call_control,
        )
        try:
            await call.run()
        except Exception as e:
            logger.error(f"Media stream handler error: {e}")

    return app


class _FastAPIWebSocketAdapter:
    """Adapter to make FastAPI's WebSocket work with the controller's transport interface."""

    def __init__(self, ws: WebSocket):
        self._ws = ws
        self._connected = True

    async def send(self, data: bytes | str) -> None:
        if not self._connected:
            return
        if isinstance(data, bytes):
            await self._ws.send_bytes(data)
        else:
            await self._ws.send_text(data)

    async def recv(self) -> bytes | str:
        msg = await self._ws.receive()
        if msg["type"] == "websocket.disconnect":
            self._connected = False
            raise TransportClosed(f"code {msg.get('code')}")
        if msg.get("text") is not None:
            return msg["text"]
        if msg.get("bytes") is not None:
            return msg["bytes"]
        raise RuntimeError("Unexpected WebSocket message type")

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if not self._connected:
            return
        self._connected = False
        await self._ws.close(code=code, reason=reason)

    def is_connected(self) -> bool:
        return self._connected


def run_server(config: OutdialConfig | dict | str | None = None, host: str | None = None, port: int | None = None):
    """Run the outdial server with uvicorn.

    Credentials are checked before the server accepts any traffic.

    Args:
        config: Outdial configuration.
        host: Override the listen host.
        port: Override the listen port.
    """
    import uvicorn

    outdial_config = load_config(config)
    outdial_config.validate_credentials()
    app = create_app(outdial_config)

    uvicorn.run(
        app,
        host=host or outdial_config.server.host,
        port=port or outdial_config.server.port,
    )
