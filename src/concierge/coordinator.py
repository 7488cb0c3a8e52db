"""
Order lifecycle coordinator.

One `CallSession` exists per phone call. It owns every per-call resource
(the AI session handle, jitter buffer, filler playback, barge-in detector,
silence watchdog and all delayed actions) and is the only writer of the
call's lifecycle state:

    IDLE -> COLLECTING -> READY -> FINALIZING -> FULFILLING -> DONE
                                        |             |
                                        +--> FAILED <-+   (any non-terminal state may fail)

DONE and FAILED return to IDLE only through cleanup, which runs after a
grace delay (or sooner for handovers and forced ends). Cleanup is
idempotent and synchronously silences playback before it awaits anything.

AI session events are consumed in order from a single channel by
`handle_event`; tool calls are dispatched as tracked tasks so a slow POS
never stalls audio.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import math
import time
from typing import Any, Awaitable, Callable, Optional

import structlog

from src.concierge.audio import AI_OUTPUT_SAMPLE_RATE, pcm16_to_float
from src.concierge.barge_in import BargeInDetector, CaptureFramer
from src.concierge.config import Config
from src.concierge.errors import (
    ConciergeError,
    FulfillmentError,
    SessionError,
    ToolError,
    ValidationError,
    WatchdogAbandon,
)
from src.concierge.events import SystemEventLog
from src.concierge.filler import FillerManager
from src.concierge.fulfillment import POS, pos_for, submit_to_pos
from src.concierge.history import ActivityStore
from src.concierge.jitter import AdaptiveJitterBuffer
from src.concierge.models import (
    TERMINAL_STATES,
    ActivityRecord,
    AIStatus,
    OrderLifecycle,
    OrderRecord,
    RecordStatus,
    ReservationRecord,
    ServiceType,
    TranscriptEntry,
    TranscriptTurn,
    new_id,
)
from src.concierge.playback import PlaybackOutput, PlaybackSource
from src.concierge.session import (
    AudioChunk,
    InputTranscript,
    Interrupted,
    LiveSession,
    ModelText,
    OutputTranscript,
    SessionClosed,
    SessionEvent,
    SessionFailed,
    SessionOpened,
    ToolCallRequest,
    TurnComplete,
)
from src.concierge.timers import CallTimers
from src.concierge.tools import (
    FinalizeOrderCall,
    FinalizeReservationCall,
    UnsupportedToolCall,
    parse_items,
)
from src.concierge.validation import ensure_valid
from src.concierge.watchdog import SilenceWatchdog

logger = structlog.get_logger(__name__)

SessionFactory = Callable[[], Awaitable[LiveSession]]

END_CALL_SIGNAL = "ACTION: END_CALL"
TRANSFER_SIGNAL = "ACTION: TRANSFER_TO_MANAGER"

POS_FAILURE_MESSAGE = "I'm sorry, I'm having trouble connecting to our system. Connecting you to a human."
TOOL_FAILURE_MESSAGE = "Something went wrong with our digital system."
TRANSFER_MESSAGE = "Connecting to manager..."
SILENCE_GOODBYE = "No activity detected. Goodbye."

FILLER_TIMER = "filler_delay"
GRACE_TIMER = "terminal_grace"
HANDOVER_TIMER = "handover_cleanup"
END_CALL_TIMER = "end_call_cleanup"

_TRANSITIONS: dict[OrderLifecycle, frozenset[OrderLifecycle]] = {
    OrderLifecycle.IDLE: frozenset({OrderLifecycle.COLLECTING, OrderLifecycle.FAILED}),
    OrderLifecycle.COLLECTING: frozenset({OrderLifecycle.READY, OrderLifecycle.FINALIZING, OrderLifecycle.FAILED}),
    OrderLifecycle.READY: frozenset({OrderLifecycle.FINALIZING, OrderLifecycle.FAILED}),
    OrderLifecycle.FINALIZING: frozenset({OrderLifecycle.FULFILLING, OrderLifecycle.FAILED}),
    OrderLifecycle.FULFILLING: frozenset({OrderLifecycle.DONE, OrderLifecycle.FAILED}),
    OrderLifecycle.DONE: frozenset(),
    OrderLifecycle.FAILED: frozenset(),
}


def can_transition(current: OrderLifecycle, target: OrderLifecycle) -> bool:
    return target in _TRANSITIONS[current]


def extract_order_state(text: str) -> Optional[dict[str, Any]]:
    """Return the first JSON object in `text` that carries a `status` key."""
    decoder = json.JSONDecoder()
    idx = text.find("{")
    while idx != -1:
        try:
            obj, _ = decoder.raw_decode(text, idx)
        except ValueError:
            obj = None
        if isinstance(obj, dict) and "status" in obj:
            return obj
        idx = text.find("{", idx + 1)
    return None


class LatencyTracker:
    """
    Response latency per turn, measured from the caller's last transcribed words.

    "Perceived" latency ends at the first sound the caller hears (filler or
    assistant audio); "real" latency ends at the assistant's first audio.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._user_stop: Optional[float] = None
        self._perceived_recorded = False
        self.perceived_ms: list[float] = []
        self.real_ms: list[float] = []

    def record_user_stop(self) -> None:
        self._user_stop = self._clock()
        self._perceived_recorded = False

    def record_filler_start(self) -> Optional[float]:
        if self._user_stop is None or self._perceived_recorded:
            return None
        latency = (self._clock() - self._user_stop) * 1000
        self.perceived_ms.append(latency)
        self._perceived_recorded = True
        return latency

    def record_real_audio_start(self) -> Optional[float]:
        if self._user_stop is None:
            return None
        latency = (self._clock() - self._user_stop) * 1000
        self.real_ms.append(latency)
        if not self._perceived_recorded:
            self.perceived_ms.append(latency)
            self._perceived_recorded = True
        self._user_stop = None
        return latency

    @staticmethod
    def percentile(data: list[float], p: float) -> float:
        if not data:
            return 0.0
        ordered = sorted(data)
        index = math.ceil(p * len(ordered)) - 1
        return ordered[max(0, index)]

    def stats(self) -> dict[str, dict[str, float]]:
        return {
            "perceived": {
                "p50": round(self.percentile(self.perceived_ms, 0.5), 1),
                "p95": round(self.percentile(self.perceived_ms, 0.95), 1),
            },
            "real": {
                "p50": round(self.percentile(self.real_ms, 0.5), 1),
                "p95": round(self.percentile(self.real_ms, 0.95), 1),
            },
        }


class CallSession:
    def __init__(
        self,
        config: Config,
        *,
        playback: PlaybackOutput,
        connect: SessionFactory,
        event_log: Optional[SystemEventLog] = None,
        store: Optional[ActivityStore] = None,
        pos: Optional[POS] = None,
        fillers: Optional[FillerManager] = None,
        call_sid: str = "",
        on_interrupt: Optional[Callable[[], Any]] = None,
        on_end_call: Optional[Callable[[], Any]] = None,
        on_closed: Optional[Callable[[], Any]] = None,
    ):
        self.config = config
        self.call_sid = call_sid
        self.playback = playback
        self._connect = connect
        self.event_log = event_log or SystemEventLog()
        self.store = store or ActivityStore()
        self.pos = pos or pos_for(config.pos_webhook_url, call_sid)
        self.fillers = fillers or FillerManager()
        self._on_interrupt = on_interrupt
        self._on_end_call = on_end_call
        self._on_closed = on_closed

        self.hours = config.business_hours()
        self.jitter = AdaptiveJitterBuffer()
        self.timers = CallTimers()
        self.watchdog = SilenceWatchdog(self.timers, config.silence_timeout_seconds, self._on_silence)
        self.barge_in = BargeInDetector(
            threshold=config.barge_in_rms_threshold,
            required_frames=config.barge_in_required_frames,
            on_activity=self._on_caller_activity,
            on_barge_in=self.interrupt,
        )
        self.framer = CaptureFramer(config.capture_frame_samples)
        self.latency = LatencyTracker()

        self.session: Optional[LiveSession] = None
        self.turn = TranscriptTurn()
        self.transcript: list[TranscriptEntry] = []
        self.order_state: Optional[dict[str, Any]] = None
        self.record: Optional[ActivityRecord] = None
        self.failure: Optional[ConciergeError] = None
        self.ai_status = AIStatus.IDLE

        self._state = OrderLifecycle.IDLE
        self._model_text = ""
        self._ai_sources: set[PlaybackSource] = set()
        self._responded: set[str] = set()
        self._tasks: set[asyncio.Task] = set()
        self._consumer: Optional[asyncio.Task] = None
        self._end_call_started = False
        self._handover_started = False
        self._cleaned = False

    # State

    @property
    def lifecycle(self) -> OrderLifecycle:
        return self._state

    @property
    def is_active(self) -> bool:
        return not self._cleaned and self._state not in TERMINAL_STATES and self._state != OrderLifecycle.IDLE

    @property
    def is_closed(self) -> bool:
        return self._cleaned

    def transition(self, target: OrderLifecycle) -> bool:
        previous = self._state
        if not can_transition(previous, target):
            logger.warning(
                "Lifecycle transition rejected",
                call_sid=self.call_sid,
                previous=previous.value,
                target=target.value,
            )
            return False

        self._state = target
        logger.info("Lifecycle change", call_sid=self.call_sid, previous=previous.value, current=target.value)

        if target in TERMINAL_STATES:
            self.watchdog.cancel()
            self.timers.cancel(FILLER_TIMER)
            self.timers.schedule(GRACE_TIMER, self.config.terminal_grace_seconds, self.cleanup)
        return True

    def snapshot(self) -> dict[str, Any]:
        return {
            "call_sid": self.call_sid,
            "lifecycle": self._state.value,
            "ai_status": self.ai_status.value,
            "jitter_offset_ms": self.jitter.current_offset_ms,
            "stutters": self.jitter.stutter_count,
            "transcript_entries": len(self.transcript),
            "pending_timers": self.timers.pending,
            "latency_ms": self.latency.stats(),
        }

    # Call start

    async def start(self) -> bool:
        """Accept the call and open the AI session. Returns False if the session could not be opened."""
        self.transition(OrderLifecycle.COLLECTING)
        self.event_log.log("CALL_START", call_sid=self.call_sid)

        try:
            self.session = await self._connect()
        except SessionError as e:
            await self._fail_session(e)
            return False

        self.watchdog.arm()
        self._consumer = asyncio.create_task(self._consume(self.session))
        return True

    async def _consume(self, session: LiveSession) -> None:
        async for event in session.events():
            try:
                await self.handle_event(event)
            except Exception:
                logger.exception("Session event handling failed", call_sid=self.call_sid, event=type(event).__name__)
            if self._cleaned:
                return

    # Session events

    async def handle_event(self, event: SessionEvent) -> None:
        if self._cleaned:
            return

        if isinstance(event, (SessionClosed, SessionFailed)):
            error = event.error if isinstance(event, SessionFailed) else SessionError(
                SessionError.CLOSED_UNEXPECTEDLY, event.reason
            )
            await self._fail_session(error)
            return

        if self.is_active:
            self.watchdog.arm()

        if isinstance(event, SessionOpened):
            self._on_session_opened()
        elif isinstance(event, AudioChunk):
            self._on_audio(event.data)
        elif isinstance(event, InputTranscript):
            self._on_input_transcript(event.text)
        elif isinstance(event, OutputTranscript):
            self._on_output_transcript(event.text)
        elif isinstance(event, ModelText):
            self._model_text += event.text
            self._scan_for_signals(self._model_text)
        elif isinstance(event, TurnComplete):
            self._on_turn_complete()
        elif isinstance(event, Interrupted):
            self.interrupt()
        elif isinstance(event, ToolCallRequest):
            self._spawn(self.dispatch_tool(event))

    def _on_session_opened(self) -> None:
        self.event_log.log("SESSION_OPEN", call_sid=self.call_sid)
        self.ai_status = AIStatus.LISTENING
        self.transition(OrderLifecycle.READY)
        self.watchdog.arm()

    def _on_audio(self, pcm24k: bytes) -> None:
        self.timers.cancel(FILLER_TIMER)
        self.fillers.stop_with_fade(self.config.filler_fade_ms)

        samples = pcm16_to_float(pcm24k)
        if samples.size == 0:
            return
        self.ai_status = AIStatus.SPEAKING

        duration = len(samples) / float(AI_OUTPUT_SAMPLE_RATE)
        start_at = self.jitter.schedule(self.playback.now(), duration)
        source = self.playback.start(samples, start_at, label="ai")
        self._ai_sources.add(source)
        source.add_done_callback(self._on_ai_source_ended)

        latency = self.latency.record_real_audio_start()
        if latency is not None:
            logger.debug("First assistant audio", call_sid=self.call_sid, latency_ms=round(latency, 1))

    def _on_ai_source_ended(self, source: PlaybackSource) -> None:
        self._ai_sources.discard(source)
        if not self._ai_sources and self.turn.is_empty and not self._cleaned:
            self.ai_status = AIStatus.LISTENING

    def _on_input_transcript(self, text: str) -> None:
        self.turn.append_input(text)
        self.ai_status = AIStatus.PROCESSING
        self.latency.record_user_stop()
        self.timers.schedule(FILLER_TIMER, self.config.filler_delay_ms / 1000.0, self._play_filler)

    def _play_filler(self) -> None:
        if not self.is_active or self.turn.output_text or self._ai_sources:
            return
        if self.fillers.play_random_filler(self.playback) is not None:
            self.ai_status = AIStatus.SPEAKING
            self.latency.record_filler_start()

    def _on_output_transcript(self, text: str) -> None:
        self.turn.append_output(text)
        self.ai_status = AIStatus.PROCESSING
        self._scan_for_signals(self.turn.output_text)

    def _scan_for_signals(self, text: str) -> None:
        if END_CALL_SIGNAL in text:
            self._capture_order_state(text)
            self.end_call()
        elif TRANSFER_SIGNAL in text:
            self.handover(TRANSFER_MESSAGE)

    def _capture_order_state(self, text: str) -> None:
        state = extract_order_state(text)
        if state is not None:
            self.order_state = state
            logger.info("Order state captured", call_sid=self.call_sid, status=state.get("status"))

    def _on_turn_complete(self) -> None:
        self._capture_order_state(self.turn.output_text + self._model_text)
        self.transcript.extend(self.turn.complete())
        self._model_text = ""
        self.ai_status = AIStatus.LISTENING

    # Caller audio

    async def handle_inbound_audio(self, pcm16k: bytes) -> None:
        """Run barge-in detection on caller audio and stream it to the AI session."""
        if self._cleaned:
            return
        for frame in self.framer.push(pcm16k):
            self.barge_in.process(frame)
        if self.session is not None:
            await self.session.send_realtime_input(pcm16k)

    def _on_caller_activity(self) -> None:
        if self.is_active:
            self.watchdog.arm()

    def interrupt(self) -> bool:
        """Silence the assistant right now. Returns False if nothing was playing."""
        if not self._ai_sources and not self.fillers.is_playing and not self.fillers.is_fading:
            return False

        for source in list(self._ai_sources):
            source.stop()
        self._ai_sources.clear()
        self.fillers.stop_with_fade(0)
        self.fillers.cancel_pending()
        self.jitter.reset()
        self.ai_status = AIStatus.LISTENING
        self.event_log.log("BARGE_IN", call_sid=self.call_sid)

        if self._on_interrupt:
            result = self._on_interrupt()
            if inspect.isawaitable(result):
                self._spawn(result)
        return True

    # Tool calls

    async def dispatch_tool(self, request: ToolCallRequest) -> None:
        if request.call_id in self._responded:
            logger.warning("Duplicate tool call ignored", call_sid=self.call_sid, call_id=request.call_id)
            return

        call = request.call
        if self._cleaned or self._state in TERMINAL_STATES:
            await self._respond(request.call_id, request.name, {"error": "call_closing"})
            return

        if isinstance(call, UnsupportedToolCall):
            self.event_log.log("UNSUPPORTED_TOOL", tool=call.name)
            await self._respond(call.call_id, call.name, {"error": ToolError.UNSUPPORTED_TOOL})
            return

        if call is None:
            self.event_log.log("TOOL_ERROR", tool=request.name, error=request.error)
            await self._respond(request.call_id, request.name, {"error": request.error or ToolError.MALFORMED_ARGUMENTS})
            return

        if self._state in (OrderLifecycle.FINALIZING, OrderLifecycle.FULFILLING):
            await self._respond(call.call_id, call.name, {"error": "finalize_in_progress"})
            return

        try:
            if isinstance(call, FinalizeOrderCall):
                await self._finalize_order(call)
            elif isinstance(call, FinalizeReservationCall):
                await self._finalize_reservation(call)
        except Exception as e:
            logger.exception("Tool execution failed", call_sid=self.call_sid, tool=call.name)
            self.failure = ToolError(ToolError.MALFORMED_ARGUMENTS, str(e))
            self.event_log.log("ORDER_FAILED", reason="tool_error")
            if self.record is not None:
                self.store.update(self.record.id, lifecycle=OrderLifecycle.FAILED)
            self.transition(OrderLifecycle.FAILED)
            await self._respond(call.call_id, call.name, {"error": "tool_execution_failed"})
            self.handover(TOOL_FAILURE_MESSAGE)

    async def _finalize_order(self, call: FinalizeOrderCall) -> None:
        self.event_log.log("FINALIZE_ORDER_RECEIVED", call_id=call.call_id)
        self.transition(OrderLifecycle.FINALIZING)

        record = call.to_record(restaurant_id=self.config.restaurant_id, call_sid=self.call_sid)
        self._accept(record)

        try:
            ensure_valid(record, self.hours)
        except ValidationError as e:
            self.failure = e
            self.event_log.log("VALIDATION_FAILED", requested_time=record.requested_time)
            self.event_log.log("ORDER_FAILED", reason=e.code)
            self.store.update(record.id, lifecycle=OrderLifecycle.FAILED)
            self.transition(OrderLifecycle.FAILED)
            await self._respond(call.call_id, call.name, {"error": e.code, "next_available": e.next_available})
            return

        await self._respond(call.call_id, call.name, {"result": "ok"})
        await self.complete(record)

    async def _finalize_reservation(self, call: FinalizeReservationCall) -> None:
        self.event_log.log("FINALIZE_RESERVATION_RECEIVED", call_id=call.call_id)
        self.transition(OrderLifecycle.FINALIZING)

        record = call.to_record(restaurant_id=self.config.restaurant_id, call_sid=self.call_sid)
        self._accept(record)

        await self._respond(call.call_id, call.name, {"result": "ok"})
        await self.complete(record)

    def _accept(self, record: ActivityRecord) -> None:
        record.lifecycle = OrderLifecycle.FINALIZING
        self.record = record
        self.store.add(record)

    async def _respond(self, call_id: str, name: str, response: dict[str, Any]) -> bool:
        if call_id in self._responded:
            logger.warning("Second tool response suppressed", call_sid=self.call_sid, call_id=call_id)
            return False
        self._responded.add(call_id)

        if self.session is None:
            return False
        try:
            await self.session.send_tool_response(call_id, name, response)
        except Exception as e:
            logger.error("Tool response failed", call_sid=self.call_sid, call_id=call_id, error=str(e))
            return False
        logger.info("Tool response sent", call_sid=self.call_sid, tool=name, response=response)
        return True

    # Completion

    async def complete(self, record: ActivityRecord) -> bool:
        """
        Fulfill a finalized record. Idempotent per record.

        Returns True only for the invocation that took the record to DONE.
        """
        if self._state == OrderLifecycle.DONE or record.lifecycle in (
            OrderLifecycle.FULFILLING,
            OrderLifecycle.DONE,
        ):
            logger.info("Completion already handled", call_sid=self.call_sid, record_id=record.id)
            return False

        if self._state in (OrderLifecycle.COLLECTING, OrderLifecycle.READY):
            self.transition(OrderLifecycle.FINALIZING)
        if self.store.get(record.id) is None:
            self._accept(record)
        if not self.transition(OrderLifecycle.FULFILLING):
            return False

        record.lifecycle = OrderLifecycle.FULFILLING
        self.event_log.log("FULFILLMENT_START", record_id=record.id)

        try:
            await submit_to_pos(record, self.pos, self.config.fulfillment_timeout_seconds)
        except FulfillmentError as e:
            self.failure = e
            if e.code == FulfillmentError.POS_TIMEOUT:
                self.event_log.log("FULFILLMENT_TIMEOUT", record_id=record.id)
            self.event_log.log("ORDER_FAILED", reason=e.code)
            self.store.update(record.id, lifecycle=OrderLifecycle.FAILED)
            if not self._cleaned:
                self.transition(OrderLifecycle.FAILED)
                self.handover(POS_FAILURE_MESSAGE)
            return False

        self.event_log.log("ORDER_DONE", record_id=record.id)
        self.store.update(record.id, lifecycle=OrderLifecycle.DONE, status=RecordStatus.COMPLETED)
        if not self._cleaned:
            self.transition(OrderLifecycle.DONE)
        return True

    # Termination

    def handover(self, message: str) -> None:
        """Tell the caller they are being passed to a human, then clean up after a short delay."""
        if self._handover_started or self._cleaned:
            return
        self._handover_started = True
        self.event_log.log("HANDOVER", message=message)
        self.transcript.append(TranscriptEntry(role="model", text=message))
        self.timers.schedule(HANDOVER_TIMER, self.config.handover_cleanup_seconds, self.cleanup)

    def end_call(self) -> None:
        if self._end_call_started or self._cleaned:
            return
        self._end_call_started = True
        self.event_log.log("END_CALL", call_sid=self.call_sid)
        self.timers.schedule(END_CALL_TIMER, self.config.end_call_cleanup_seconds, self._finish_end_call)

    async def _finish_end_call(self) -> None:
        if self._on_end_call:
            try:
                result = self._on_end_call()
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error("Hang-up failed", call_sid=self.call_sid, error=str(e))
        await self.cleanup()

    async def _on_silence(self) -> None:
        if not self.is_active:
            return
        self.failure = WatchdogAbandon(message=f"No activity for {self.config.silence_timeout_seconds:g}s")
        self.event_log.log("SILENCE_TIMEOUT", call_sid=self.call_sid)
        self.event_log.log("ORDER_FAILED", reason=self.failure.code)

        record = self._abandoned_record()
        self.store.add(record)
        self.record = record

        self.transition(OrderLifecycle.FAILED)
        self.transcript.append(TranscriptEntry(role="model", text=SILENCE_GOODBYE))
        await self.cleanup()

    def _abandoned_record(self) -> ActivityRecord:
        state = self.order_state or {}

        def value_of(key: str, default: str = "") -> str:
            value = state.get(key)
            return str(value).strip() if value not in (None, "") else default

        common = dict(
            customer_name=value_of("name", "Abandoned Call"),
            customer_phone=value_of("phone"),
            status=RecordStatus.ABANDONED,
            lifecycle=OrderLifecycle.FAILED,
            restaurant_id=self.config.restaurant_id,
            call_sid=self.call_sid,
            id=new_id("abd"),
        )
        if state.get("intent") == "reservation":
            try:
                party_size = int(float(state.get("party_size") or 0))
            except (TypeError, ValueError):
                party_size = 0
            return ReservationRecord(
                date=value_of("date", "N/A"),
                time=value_of("time", value_of("requested_time", "N/A")),
                party_size=party_size,
                **common,
            )

        items = state.get("items")
        return OrderRecord(
            items=parse_items(items) if items else [],
            requested_time=value_of("requested_time", "N/A"),
            service_type=ServiceType.DELIVERY if state.get("intent") == "delivery" else ServiceType.PICKUP,
            customer_address=value_of("address") or None,
            allergies=value_of("allergies") or None,
            **common,
        )

    async def force_end(self) -> None:
        self.event_log.log("FORCE_KILL", call_sid=self.call_sid)
        if self._state not in TERMINAL_STATES and not self._cleaned:
            self.transition(OrderLifecycle.FAILED)
        await self.cleanup()

    async def _fail_session(self, error: SessionError) -> None:
        self.failure = error
        self.event_log.log("SESSION_ERROR", code=error.code, error=str(error))
        if self._state not in TERMINAL_STATES:
            self.transition(OrderLifecycle.FAILED)
        await self.cleanup()

    async def cleanup(self) -> None:
        """Release everything the call owns. Safe to call any number of times."""
        if self._cleaned:
            return
        self._cleaned = True

        # Synchronous part first: nothing stale may play after this point.
        self.timers.cancel_all()
        for source in list(self._ai_sources):
            source.stop()
        self._ai_sources.clear()
        self.fillers.stop_with_fade(0)
        self.fillers.cancel_pending()
        self.jitter.reset()
        self.barge_in.reset()
        self.framer.reset()
        self.turn.reset()
        self._model_text = ""

        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is not current and not task.done():
                task.cancel()
        self._tasks.clear()

        session, self.session = self.session, None
        if session is not None:
            try:
                await session.close()
            except Exception as e:
                logger.warning("Session close failed", call_sid=self.call_sid, error=str(e))

        consumer, self._consumer = self._consumer, None
        if consumer is not None and consumer is not current and not consumer.done():
            consumer.cancel()

        previous = self._state
        self._state = OrderLifecycle.IDLE
        self.ai_status = AIStatus.IDLE
        self.event_log.log("CLEANUP", call_sid=self.call_sid, previous=previous.value)
        logger.info(
            "Call cleaned up",
            call_sid=self.call_sid,
            previous=previous.value,
            stutters=self.jitter.stutter_count,
            latency_ms=self.latency.stats(),
        )

        if self._on_closed:
            try:
                result = self._on_closed()
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error("Close callback failed", call_sid=self.call_sid, error=str(e))

    def _spawn(self, awaitable: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(awaitable)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task
