"""
Telephony audio bridge: one Twilio Media Stream <-> one CallSession.

Inbound:  mu-law 8 kHz -> PCM16 -> duplicate each sample (16 kHz) -> AI session
Outbound: AI PCM16 24 kHz -> paced 20ms frames -> every third sample (8 kHz)
          -> mu-law -> Twilio media message

Resampling is deliberately naive (duplication/decimation, no filtering).
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Iterable, Optional

import numpy as np
import structlog
from twilio.rest import Client as TwilioClient

from src.concierge.audio import ai_pcm_to_twilio_ulaw, float_to_pcm16, twilio_ulaw_to_ai_pcm
from src.concierge.config import Config, get_config
from src.concierge.coordinator import CallSession
from src.concierge.events import SystemEventLog
from src.concierge.filler import FillerClip, FillerManager
from src.concierge.fulfillment import POS
from src.concierge.history import ActivityStore
from src.concierge.playback import PlaybackOutput
from src.concierge.session import GeminiLiveSession, LiveSession
from src.concierge.twilio_protocol import (
    MediaEvent,
    StartEvent,
    TwilioEventType,
    TwilioProtocolHandler,
    parse_twilio_message,
)

logger = structlog.get_logger(__name__)

SendMessage = Callable[[str], Awaitable[None]]
CloseTransport = Callable[[], Awaitable[None]]
SessionConnector = Callable[[Config], Awaitable[LiveSession]]


class TelephonyBridge:
    """
    Relays one Twilio call.

    Interface used by the WebSocket endpoint:
    - `start()` once after the socket is accepted
    - `handle_message(raw)` for every inbound text frame
    - `stop()` when the socket closes (idempotent)

    When the call ends on our side (abandonment, handover, completion, session
    failure) the carrier leg is hung up and `close_transport` is awaited.
    """

    def __init__(
        self,
        send_message: SendMessage,
        *,
        config: Optional[Config] = None,
        event_log: Optional[SystemEventLog] = None,
        store: Optional[ActivityStore] = None,
        session_factory: Optional[SessionConnector] = None,
        filler_clips: Iterable[FillerClip] = (),
        pos: Optional[POS] = None,
        twilio_client: Optional[TwilioClient] = None,
        close_transport: Optional[CloseTransport] = None,
    ):
        self.config = config or get_config()
        self._send_message = send_message
        self.event_log = event_log or SystemEventLog()
        self.store = store or ActivityStore()
        self._session_factory = session_factory or GeminiLiveSession.connect
        self._filler_clips = tuple(filler_clips)
        self._pos = pos
        self._twilio_client = twilio_client
        self._close_transport = close_transport

        self._protocol = TwilioProtocolHandler()
        self.playback = PlaybackOutput(self._emit_frame)
        self.call: Optional[CallSession] = None
        self._stopped = False
        self._hangup_attempted = False

    @property
    def is_stopped(self) -> bool:
        return self._stopped

    @property
    def call_sid(self) -> str:
        return self._protocol.call_sid

    @property
    def stream_sid(self) -> str:
        return self._protocol.stream_sid

    async def start(self) -> None:
        if self._twilio_client is None and self.config.hangup_enabled:
            self._twilio_client = TwilioClient(
                self.config.twilio_account_sid,
                self.config.twilio_auth_token,
            )
        logger.info("Telephony bridge started", hangup_enabled=self._twilio_client is not None)

    async def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True

        if self.call is not None:
            await self.call.cleanup()
        await self.playback.close()

        call_state = self._protocol.call_state
        logger.info(
            "Telephony bridge stopped",
            call_sid=self.call_sid,
            frames_in=call_state.frames_in if call_state else 0,
            frames_out=call_state.frames_out if call_state else 0,
            frames_emitted=self.playback.frames_emitted,
        )

    async def handle_message(self, raw_message: str) -> None:
        try:
            event_type, event = parse_twilio_message(raw_message)
        except ValueError as e:
            logger.warning("Failed to parse Twilio message", error=str(e))
            return

        if event_type == TwilioEventType.CONNECTED:
            logger.debug("Twilio connected")

        elif event_type == TwilioEventType.START:
            await self._handle_start(event)

        elif event_type == TwilioEventType.MEDIA:
            await self._handle_media(event)

        elif event_type == TwilioEventType.MARK:
            logger.debug("Twilio mark", mark=event.mark.name)

        elif event_type == TwilioEventType.STOP:
            self._protocol.handle_stop()
            await self.stop()

    async def _handle_start(self, event: StartEvent) -> None:
        if self.call is not None:
            logger.warning("Duplicate start event ignored", stream_sid=event.stream_sid)
            return

        self._protocol.handle_start(event)
        self.call = CallSession(
            self.config,
            playback=self.playback,
            connect=lambda: self._session_factory(self.config),
            event_log=self.event_log,
            store=self.store,
            pos=self._pos,
            fillers=FillerManager(self._filler_clips),
            call_sid=event.call_sid,
            on_interrupt=self.clear_carrier_audio,
            on_end_call=self.hangup,
            on_closed=self._on_call_closed,
        )
        await self.call.start()

    async def _handle_media(self, event: MediaEvent) -> None:
        if self.call is None or self._stopped:
            return
        if event.track not in ("inbound", "inbound_track"):
            return
        audio = event.audio
        if not audio:
            return
        self._protocol.count_inbound()
        await self.call.handle_inbound_audio(twilio_ulaw_to_ai_pcm(audio))

    async def _emit_frame(self, frame: np.ndarray) -> None:
        """Send one paced 24 kHz output frame to Twilio."""
        payload = ai_pcm_to_twilio_ulaw(float_to_pcm16(frame))
        message = self._protocol.create_media(payload)
        if message:
            await self._send_message(message)

    async def clear_carrier_audio(self) -> None:
        message = self._protocol.create_clear()
        if message:
            await self._send_message(message)

    async def _on_call_closed(self) -> None:
        """The call ended on our side: hang up the carrier leg and release the stream."""
        if self._stopped:
            return
        if not self._hangup_attempted:
            await self.hangup()
        await self.stop()
        if self._close_transport is not None:
            try:
                await self._close_transport()
            except Exception as e:
                logger.warning("Failed to close media stream", call_sid=self.call_sid, error=str(e))

    async def hangup(self) -> None:
        """Complete the call through the Twilio REST API."""
        self._hangup_attempted = True
        if self._twilio_client is None or not self.call_sid:
            logger.warning("Cannot hang up - missing Twilio client or call_sid")
            return

        client, call_sid = self._twilio_client, self.call_sid
        try:
            await asyncio.to_thread(lambda: client.calls(call_sid).update(status="completed"))
        except Exception as e:
            logger.error("Failed to hang up call", call_sid=call_sid, error=str(e))
            return
        logger.info("Call hung up", call_sid=call_sid)


async def create_bridge(send_message: SendMessage, **kwargs) -> TelephonyBridge:
    bridge = TelephonyBridge(send_message, **kwargs)
    await bridge.start()
    return bridge
