"""Twilio call control for outbound calls.

Places calls through the Twilio REST API and builds the TwiML that
points a connected call at the media stream endpoint. The Twilio client
is synchronous, so REST calls run in a worker thread.
"""

from __future__ import annotations

import asyncio
from urllib.parse import urlencode, urlparse

from loguru import logger
from twilio.rest import Client as TwilioClient
from twilio.twiml.voice_response import Connect, VoiceResponse

from outdial.config import ConfigError, OutdialConfig


class CallControlError(RuntimeError):
    """Twilio refused to place or modify a call."""


def public_base_url(public_host: str) -> str:
    """``https://host`` for a bare host name or a full URL."""
    if "://" not in public_host:
        return f"https://{public_host.rstrip('/')}"
    return public_host.rstrip("/")


def media_stream_url(public_host: str, call_sid: str, media_path: str = "/ws/media") -> str:
    """The ``wss://`` URL Twilio streams the call's audio to."""
    parsed = urlparse(public_base_url(public_host))
    query = urlencode({"callSid": call_sid})
    return f"wss://{parsed.netloc}{media_path}?{query}"


def build_stream_twiml(stream_url: str) -> str:
    """TwiML that connects the call to a bidirectional stream at ``stream_url``.

    ``<Connect><Stream>`` holds the call open for as long as the WebSocket
    stays up and lets the agent's audio be played back into the call.
    """
    response = VoiceResponse()
    connect = Connect()
    connect.stream(name="RealtimeAudioStream", url=stream_url)
    response.append(connect)
    return str(response)


def build_fallback_twiml(pause_seconds: int = 1) -> str:
    """Inline TwiML for call creation; the voice webhook supplies the stream."""
    response = VoiceResponse()
    response.pause(length=pause_seconds)
    return str(response)


class TwilioCallControl:
    """Outbound call placement and hang-up.

    Args:
        account_sid: Twilio account SID.
        auth_token: Twilio auth token.
        client: Prebuilt Twilio client (tests inject a fake).
    """

    def __init__(
        self,
        account_sid: str = "",
        auth_token: str = "",
        client: TwilioClient | None = None,
    ):
        self._client = client or TwilioClient(account_sid, auth_token)

    @classmethod
    def from_config(cls, config: OutdialConfig) -> TwilioCallControl:
        creds = config.credentials
        if not creds.twilio_account_sid or not creds.twilio_auth_token:
            raise ConfigError("TWILIO_ACCOUNT_SID and TWILIO_AUTH_TOKEN are required")
        return cls(creds.twilio_account_sid, creds.twilio_auth_token)

    async def place_call(
        self,
        to: str,
        from_: str,
        voice_url: str,
        status_url: str,
    ) -> str:
        """Dial ``to`` and return the new call's SID.

        Raises:
            CallControlError: If Twilio rejects the request.
        """
        try:
            call = await asyncio.to_thread(
                self._client.calls.create,
                to=to,
                from_=from_,
                twiml=build_fallback_twiml(),
                url=voice_url,
                method="POST",
                status_callback=status_url,
                status_callback_event=["completed"],
                status_callback_method="POST",
            )
        except Exception as e:
            logger.error(f"Twilio outbound call error: {e}")
            raise CallControlError(str(e)) from e

        logger.info(f"Outbound call initiated | Twilio SID: {call.sid} | From: {from_} → To: {to}")
        return call.sid

    async def hangup(self, call_sid: str) -> None:
        """End a call in progress."""
        try:
            await asyncio.to_thread(self._client.calls(call_sid).update, status="completed")
        except Exception as e:
            raise CallControlError(str(e)) from e
        logger.info(f"[{call_sid}] Call hung up")
