"""
Twilio Media Streams message codec.

Inbound frames are decoded with msgspec into one typed struct per event:

- connected: socket accepted by Twilio
- start: stream metadata (streamSid, callSid, tracks, custom parameters)
- media: base64 mu-law 8kHz audio for one track
- mark: playback marker echoed back
- stop: stream ended

Outbound we only ever send `media` (assistant audio) and `clear` (flush the
carrier's playback buffer on barge-in).
"""

import base64
import binascii
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Union

import msgspec
import structlog

logger = structlog.get_logger(__name__)

decoder = msgspec.json.Decoder()
encoder = msgspec.json.Encoder()


class TwilioEventType(str, Enum):
    CONNECTED = "connected"
    START = "start"
    MEDIA = "media"
    MARK = "mark"
    STOP = "stop"


# Inbound

class ConnectedEvent(msgspec.Struct):
    protocol: str = ""
    version: str = ""


class StartMetadata(msgspec.Struct, rename="camel"):
    stream_sid: str = ""
    call_sid: str = ""
    account_sid: str = ""
    tracks: list[str] = msgspec.field(default_factory=list)
    custom_parameters: dict[str, Any] = msgspec.field(default_factory=dict)


class StartEvent(msgspec.Struct):
    """`streamSid` may sit inside `start` or only at the top level."""
    top_level_sid: str = msgspec.field(default="", name="streamSid")
    start: StartMetadata = msgspec.field(default_factory=StartMetadata)

    @property
    def stream_sid(self) -> str:
        return self.start.stream_sid or self.top_level_sid

    @property
    def call_sid(self) -> str:
        return self.start.call_sid


class MediaPayload(msgspec.Struct):
    payload: str = ""
    track: str = "inbound"


class MediaEvent(msgspec.Struct, rename="camel"):
    stream_sid: str = ""
    media: MediaPayload = msgspec.field(default_factory=MediaPayload)

    @property
    def track(self) -> str:
        return self.media.track

    @property
    def audio(self) -> bytes:
        """Decoded mu-law bytes; an undecodable payload yields b""."""
        try:
            return base64.b64decode(self.media.payload)
        except (binascii.Error, ValueError):
            logger.warning("Dropping undecodable media payload", stream_sid=self.stream_sid)
            return b""


class MarkPayload(msgspec.Struct):
    name: str = ""


class MarkEvent(msgspec.Struct, rename="camel"):
    stream_sid: str = ""
    mark: MarkPayload = msgspec.field(default_factory=MarkPayload)


class StopEvent(msgspec.Struct, rename="camel"):
    stream_sid: str = ""


TwilioEvent = Union[ConnectedEvent, StartEvent, MediaEvent, MarkEvent, StopEvent]

_EVENT_TYPES: dict[TwilioEventType, type] = {
    TwilioEventType.CONNECTED: ConnectedEvent,
    TwilioEventType.START: StartEvent,
    TwilioEventType.MEDIA: MediaEvent,
    TwilioEventType.MARK: MarkEvent,
    TwilioEventType.STOP: StopEvent,
}


def parse_twilio_message(raw_message) -> tuple[TwilioEventType, TwilioEvent]:
    """
    Parse one raw Twilio WebSocket frame (str or bytes).

    Raises:
        ValueError: invalid JSON, a non-object frame, an unknown event
        or an event whose fields have the wrong types
    """
    try:
        message = decoder.decode(raw_message.encode("utf-8") if isinstance(raw_message, str) else raw_message)
    except msgspec.DecodeError as e:
        logger.error("Failed to parse Twilio message", error=str(e))
        raise ValueError(f"Invalid JSON: {e}")

    if not isinstance(message, dict):
        raise ValueError("Twilio message is not a JSON object")

    event_name = message.get("event", "")
    try:
        event_type = TwilioEventType(event_name)
    except ValueError:
        logger.warning("Unknown Twilio event type", event_type=event_name)
        raise ValueError(f"Unknown event type: {event_name}")

    try:
        event = msgspec.convert(message, _EVENT_TYPES[event_type])
    except msgspec.ValidationError as e:
        raise ValueError(f"Malformed {event_type.value} event: {e}")
    return event_type, event


# Outbound

class _OutboundAudio(msgspec.Struct):
    payload: str


class OutboundMedia(msgspec.Struct, tag="media", tag_field="event", rename="camel"):
    stream_sid: str
    media: _OutboundAudio


class OutboundClear(msgspec.Struct, tag="clear", tag_field="event", rename="camel"):
    stream_sid: str


def create_media_message(stream_sid: str, audio_payload: bytes) -> str:
    """JSON `media` frame carrying raw mu-law bytes."""
    message = OutboundMedia(
        stream_sid=stream_sid,
        media=_OutboundAudio(payload=base64.b64encode(audio_payload).decode("ascii")),
    )
    return encoder.encode(message).decode("utf-8")


def create_clear_message(stream_sid: str) -> str:
    return encoder.encode(OutboundClear(stream_sid=stream_sid)).decode("utf-8")


@dataclass
class CallState:
    stream_sid: str = ""
    call_sid: str = ""
    is_active: bool = True
    frames_in: int = 0
    frames_out: int = 0


class TwilioProtocolHandler:
    """Tracks the stream of one call and tags outbound frames with its streamSid."""

    def __init__(self):
        self.call_state: Optional[CallState] = None

    @property
    def stream_sid(self) -> str:
        return self.call_state.stream_sid if self.call_state else ""

    @property
    def call_sid(self) -> str:
        return self.call_state.call_sid if self.call_state else ""

    @property
    def is_active(self) -> bool:
        return self.call_state is not None and self.call_state.is_active

    def handle_start(self, event: StartEvent) -> None:
        self.call_state = CallState(stream_sid=event.stream_sid, call_sid=event.call_sid)
        logger.info(
            "Stream started",
            stream_sid=event.stream_sid,
            call_sid=event.call_sid,
            tracks=event.start.tracks,
        )

    def handle_stop(self) -> None:
        state = self.call_state
        if state is None:
            return
        state.is_active = False
        logger.info(
            "Stream stopped",
            stream_sid=state.stream_sid,
            call_sid=state.call_sid,
            frames_in=state.frames_in,
            frames_out=state.frames_out,
        )

    def count_inbound(self) -> None:
        if self.call_state:
            self.call_state.frames_in += 1

    def create_media(self, ulaw_payload: bytes) -> str:
        if not self.call_state:
            return ""
        self.call_state.frames_out += 1
        return create_media_message(self.call_state.stream_sid, ulaw_payload)

    def create_clear(self) -> str:
        if not self.call_state:
            return ""
        logger.info("Clearing Twilio audio buffer", stream_sid=self.call_state.stream_sid)
        return create_clear_message(self.call_state.stream_sid)
