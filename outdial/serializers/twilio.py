"""Twilio Media Streams WebSocket serializer.

Translates between Twilio's Media Streams WebSocket protocol and outdial's
media stream events. Twilio streams audio as base64-encoded mu-law at 8kHz
over JSON WebSocket messages.

Protocol reference:
    https://www.twilio.com/docs/voice/media-streams/websocket-messages
"""

from __future__ import annotations

import base64
import json
from typing import Any

from loguru import logger

from outdial.core.events import (
    AnyEvent,
    ClearAudio,
    Codec,
    MarkReceived,
    MediaFrame,
    StreamConnected,
    StreamStarted,
    StreamStopped,
    Track,
)


class TwilioSerializer:
    """Serializer for the Twilio Media Streams WebSocket protocol.

    Twilio sends JSON messages with an ``event`` field that indicates the
    message type.  Audio payloads arrive as base64-encoded mu-law in
    ``media`` events and are decoded into :class:`MediaFrame` events.

    State kept across the lifetime of a single stream:
        stream_sid: The unique identifier for the media stream.
        call_sid:   The Twilio Call SID associated with this stream.

    Malformed frames raise ``ValueError`` (``json.JSONDecodeError`` and
    ``binascii.Error`` are both subclasses); the caller decides whether to
    skip them.
    """

    def __init__(self, call_sid: str = "") -> None:
        self.stream_sid: str = ""
        self.call_sid: str = call_sid

    @property
    def name(self) -> str:
        return "twilio"

    @property
    def audio_codec(self) -> Codec:
        return Codec.MULAW

    @property
    def sample_rate(self) -> int:
        return 8000

    # ------------------------------------------------------------------
    # Deserialization (Twilio -> outdial events)
    # ------------------------------------------------------------------

    async def deserialize(self, raw: bytes | str | dict) -> list[AnyEvent]:
        """Parse a Twilio Media Streams message into events.

        Message types handled:
            * ``connected`` -- handshake; produces :class:`StreamConnected`.
            * ``start``     -- stream metadata; produces :class:`StreamStarted`.
            * ``media``     -- audio payload; produces :class:`MediaFrame`.
            * ``mark``      -- playback checkpoint; produces :class:`MarkReceived`.
            * ``stop``      -- stream ended; produces :class:`StreamStopped`.

        Unrecognised message types produce no events.
        """
        msg = self._parse_message(raw)
        event_type = msg.get("event", "")

        if "streamSid" in msg and msg["streamSid"]:
            self.stream_sid = msg["streamSid"]

        if event_type == "connected":
            return [
                StreamConnected(
                    call_id=self.call_sid,
                    protocol=msg.get("protocol", ""),
                    version=str(msg.get("version", "")),
                )
            ]

        if event_type == "start":
            return self._handle_start(msg)

        if event_type == "media":
            return self._handle_media(msg)

        if event_type == "mark":
            mark_data = msg.get("mark", {})
            return [MarkReceived(call_id=self.call_sid, name=mark_data.get("name", ""))]

        if event_type == "stop":
            return [StreamStopped(call_id=self.call_sid, reason="normal")]

        logger.debug(f"Ignoring Twilio event '{event_type}' on call {self.call_sid}")
        return []

    # ------------------------------------------------------------------
    # Serialization (outdial events -> Twilio wire format)
    # ------------------------------------------------------------------

    async def serialize(self, event: AnyEvent) -> str | None:
        """Convert an event to a Twilio Media Streams message.

        Returns ``None`` for event types that Twilio does not accept.
        """
        if isinstance(event, MediaFrame):
            return self.build_media_message(event.data)

        if isinstance(event, ClearAudio):
            return self.build_clear_message()

        return None

    def build_media_message(self, audio: bytes) -> str:
        """Build an outbound ``media`` message carrying mu-law audio."""
        return json.dumps(
            {
                "event": "media",
                "streamSid": self.stream_sid,
                "media": {
                    "payload": base64.b64encode(audio).decode("ascii"),
                },
            }
        )

    def build_clear_message(self) -> str:
        """Build a Twilio ``clear`` control message.

        Sending this message instructs Twilio to discard any buffered audio
        that has not yet been played to the caller.  Used for barge-in.
        """
        return json.dumps(
            {
                "event": "clear",
                "streamSid": self.stream_sid,
            }
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _parse_message(raw: bytes | str | dict) -> dict[str, Any]:
        """Normalise the raw WebSocket frame into a dict."""
        if isinstance(raw, dict):
            return raw
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        msg = json.loads(raw)
        if not isinstance(msg, dict):
            raise ValueError(f"Expected a JSON object, got {type(msg).__name__}")
        return msg

    def _handle_start(self, msg: dict) -> list[AnyEvent]:
        start_data = msg.get("start", {})
        self.stream_sid = start_data.get("streamSid", self.stream_sid)
        self.call_sid = start_data.get("callSid", "") or self.call_sid

        return [
            StreamStarted(
                call_id=self.call_sid,
                stream_sid=self.stream_sid,
                account_sid=start_data.get("accountSid", ""),
                tracks=list(start_data.get("tracks", [])),
                custom_parameters=start_data.get("customParameters", {}),
                media_format=start_data.get("mediaFormat", {}),
            )
        ]

    def _handle_media(self, msg: dict) -> list[AnyEvent]:
        media_data = msg.get("media", {})
        audio_bytes = base64.b64decode(media_data.get("payload", ""), validate=True)
        track = media_data.get("track", Track.INBOUND.value)

        return [
            MediaFrame(
                call_id=self.call_sid,
                track=Track(track),
                chunk=int(media_data.get("chunk", 0) or 0),
                data=audio_bytes,
            )
        ]
