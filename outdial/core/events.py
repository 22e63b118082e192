"""Media stream event model for outdial.

The Twilio serializer turns each Media Streams frame into one of these
events; the call audio session reacts to them and sends ``MediaFrame`` and
``ClearAudio`` events back the other way.
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class Codec(str, Enum):
    MULAW = "mulaw"
    PCM16 = "pcm16"


class Track(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class EventType(str, Enum):
    CONNECTED = "connected"
    STREAM_STARTED = "stream_started"
    MEDIA = "media"
    MARK = "mark"
    STREAM_STOPPED = "stream_stopped"
    CLEAR_AUDIO = "clear_audio"


class Event(BaseModel):
    """Base event that all media stream events inherit from."""

    event_type: EventType
    call_id: str = ""
    timestamp: float = Field(default_factory=time.time)


class StreamConnected(Event):
    """The telephony side opened the media socket."""

    event_type: EventType = EventType.CONNECTED
    protocol: str = ""
    version: str = ""


class StreamStarted(Event):
    """Stream metadata arrived; audio follows."""

    event_type: EventType = EventType.STREAM_STARTED
    stream_sid: str = ""
    account_sid: str = ""
    tracks: list[str] = Field(default_factory=list)
    custom_parameters: dict[str, Any] = Field(default_factory=dict)
    media_format: dict[str, Any] = Field(default_factory=dict)


class MediaFrame(Event):
    """One chunk of 8 kHz mu-law audio, inbound or outbound."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    event_type: EventType = EventType.MEDIA
    track: Track = Track.INBOUND
    codec: Codec = Codec.MULAW
    sample_rate: int = 8000
    chunk: int = 0
    data: bytes = b""


class MarkReceived(Event):
    """Playback reached a named checkpoint."""

    event_type: EventType = EventType.MARK
    name: str = ""


class StreamStopped(Event):
    """The telephony side ended the stream."""

    event_type: EventType = EventType.STREAM_STOPPED
    reason: str = "normal"


class ClearAudio(Event):
    """Control event: drop audio the telephony side has buffered but not played."""

    event_type: EventType = EventType.CLEAR_AUDIO


AnyEvent = (
    StreamConnected
    | StreamStarted
    | MediaFrame
    | MarkReceived
    | StreamStopped
    | ClearAudio
)

EVENT_TYPE_MAP: dict[EventType, type[Event]] = {
    EventType.CONNECTED: StreamConnected,
    EventType.STREAM_STARTED: StreamStarted,
    EventType.MEDIA: MediaFrame,
    EventType.MARK: MarkReceived,
    EventType.STREAM_STOPPED: StreamStopped,
    EventType.CLEAR_AUDIO: ClearAudio,
}
