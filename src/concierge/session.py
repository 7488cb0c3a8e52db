"""
AI speech session contract and the Gemini Live adapter.

The coordinator never sees SDK objects. A session exposes one ordered channel
of typed events (`events()`) plus three commands: stream caller audio, answer
a tool call, close. Tool calls are parsed into their closed variants here, at
the boundary, so malformed arguments surface as data instead of exceptions.
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Optional, Protocol, Union

import structlog
from google import genai
from google.genai import types

from src.concierge.audio import AI_INPUT_SAMPLE_RATE
from src.concierge.config import Config
from src.concierge.errors import SessionError, ToolError
from src.concierge.tools import ToolCall, parse_tool_call, tool_declarations

logger = structlog.get_logger(__name__)


# Session events

@dataclass(frozen=True)
class SessionOpened:
    pass


@dataclass(frozen=True)
class AudioChunk:
    """Assistant audio: PCM16 little-endian at 24 kHz."""
    data: bytes


@dataclass(frozen=True)
class InputTranscript:
    text: str


@dataclass(frozen=True)
class OutputTranscript:
    text: str


@dataclass(frozen=True)
class ModelText:
    text: str


@dataclass(frozen=True)
class TurnComplete:
    pass


@dataclass(frozen=True)
class Interrupted:
    pass


@dataclass(frozen=True)
class ToolCallRequest:
    """
    One tool call from the assistant.

    `call` is the parsed variant; when the arguments of a known tool do not
    validate, `call` is None and `error` holds the error code.
    """
    call_id: str
    name: str
    call: Optional[ToolCall] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class SessionClosed:
    reason: str = "closed"


@dataclass(frozen=True)
class SessionFailed:
    error: SessionError = field(default_factory=SessionError)


SessionEvent = Union[
    SessionOpened,
    AudioChunk,
    InputTranscript,
    OutputTranscript,
    ModelText,
    TurnComplete,
    Interrupted,
    ToolCallRequest,
    SessionClosed,
    SessionFailed,
]

TERMINAL_EVENTS = (SessionClosed, SessionFailed)


def tool_call_request(call_id: str, name: str, args: Optional[dict[str, Any]]) -> ToolCallRequest:
    try:
        return ToolCallRequest(call_id=call_id, name=name, call=parse_tool_call(call_id, name, args))
    except ToolError as e:
        logger.warning("Tool call arguments rejected", tool=name, error=str(e))
        return ToolCallRequest(call_id=call_id, name=name, error=e.code)


class LiveSession(Protocol):
    def events(self) -> AsyncIterator[SessionEvent]:
        ...

    async def send_realtime_input(self, pcm16k: bytes) -> None:
        ...

    async def send_tool_response(self, call_id: str, name: str, response: dict[str, Any]) -> None:
        ...

    async def close(self) -> None:
        ...


def build_live_config(config: Config) -> types.LiveConnectConfig:
    return types.LiveConnectConfig(
        response_modalities=["AUDIO"],
        speech_config=types.SpeechConfig(
            voice_config=types.VoiceConfig(
                prebuilt_voice_config=types.PrebuiltVoiceConfig(voice_name=config.gemini_voice)
            )
        ),
        system_instruction=types.Content(parts=[types.Part(text=config.resolve_system_instruction())]),
        input_audio_transcription=types.AudioTranscriptionConfig(),
        output_audio_transcription=types.AudioTranscriptionConfig(),
        tools=tool_declarations(),
    )


def _session_error(e: Exception, default: str) -> SessionError:
    text = str(e)
    lowered = text.lower()
    if "permission" in lowered or "403" in lowered or "api key" in lowered:
        return SessionError(SessionError.PERMISSION_DENIED, text)
    return SessionError(default, text)


class GeminiLiveSession:
    """
    Gemini Live connection wrapped as a LiveSession.

    A background pump translates SDK responses into session events on a
    queue; `events()` drains it until a terminal event. `close()` is
    idempotent and always ends the channel with SessionClosed.
    """

    def __init__(self, session: Any, stack: contextlib.AsyncExitStack):
        self._session = session
        self._stack = stack
        self._queue: asyncio.Queue[SessionEvent] = asyncio.Queue()
        self._pump_task: Optional[asyncio.Task] = None
        self._closed = False
        self._finished = False

    @classmethod
    async def connect(cls, config: Config, *, client: Optional[genai.Client] = None) -> "GeminiLiveSession":
        client = client or genai.Client(api_key=config.gemini_api_key)
        stack = contextlib.AsyncExitStack()
        try:
            session = await stack.enter_async_context(
                client.aio.live.connect(model=config.gemini_model, config=build_live_config(config))
            )
        except Exception as e:
            await stack.aclose()
            logger.error("Gemini Live connect failed", model=config.gemini_model, error=str(e))
            raise _session_error(e, SessionError.CONNECT_FAILURE) from e

        logger.info("Connected to Gemini Live", model=config.gemini_model, voice=config.gemini_voice)
        live = cls(session, stack)
        live._queue.put_nowait(SessionOpened())
        live._pump_task = asyncio.create_task(live._pump())
        return live

    async def events(self) -> AsyncIterator[SessionEvent]:
        while True:
            event = await self._queue.get()
            yield event
            if isinstance(event, TERMINAL_EVENTS):
                return

    async def send_realtime_input(self, pcm16k: bytes) -> None:
        if self._closed or not pcm16k:
            return
        try:
            await self._session.send_realtime_input(
                audio=types.Blob(data=pcm16k, mime_type=f"audio/pcm;rate={AI_INPUT_SAMPLE_RATE}")
            )
        except Exception as e:
            logger.warning("Realtime input dropped", error=str(e))

    async def send_tool_response(self, call_id: str, name: str, response: dict[str, Any]) -> None:
        if self._closed:
            logger.info("Tool response after close dropped", tool=name, call_id=call_id)
            return
        await self._session.send_tool_response(
            function_responses=[types.FunctionResponse(id=call_id, name=name, response=response)]
        )

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True

        task, self._pump_task = self._pump_task, None
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        try:
            await self._stack.aclose()
        except Exception as e:
            logger.warning("Gemini Live close error", error=str(e))

        self._finish(SessionClosed(reason="closed"))
        logger.info("Gemini Live session closed")

    def _finish(self, event: SessionEvent) -> None:
        if self._finished:
            return
        self._finished = True
        self._queue.put_nowait(event)

    async def _pump(self) -> None:
        try:
            while not self._closed:
                received = False
                async for response in self._session.receive():
                    received = True
                    for event in self._translate(response):
                        self._queue.put_nowait(event)
                if not received:
                    break
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if not self._closed:
                logger.error("Gemini Live receive failed", error=str(e))
                self._finish(SessionFailed(error=_session_error(e, SessionError.CLOSED_UNEXPECTEDLY)))
            return

        if not self._closed:
            logger.warning("Gemini Live stream ended by server")
            self._finish(SessionClosed(reason="server_closed"))

    def _translate(self, response: Any) -> list[SessionEvent]:
        events: list[SessionEvent] = []

        content = response.server_content
        if content:
            if content.interrupted:
                events.append(Interrupted())

            if content.input_transcription and content.input_transcription.text:
                events.append(InputTranscript(content.input_transcription.text))

            model_turn = content.model_turn
            if model_turn and model_turn.parts:
                for part in model_turn.parts:
                    if part.inline_data and part.inline_data.data:
                        events.append(AudioChunk(part.inline_data.data))
                    elif part.text:
                        events.append(ModelText(part.text))

            if content.output_transcription and content.output_transcription.text:
                events.append(OutputTranscript(content.output_transcription.text))

            if content.turn_complete:
                events.append(TurnComplete())

        if response.tool_call and response.tool_call.function_calls:
            for fc in response.tool_call.function_calls:
                events.append(tool_call_request(fc.id or "", fc.name or "", fc.args))

        return events
