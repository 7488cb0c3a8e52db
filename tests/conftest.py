"""
Shared fixtures: a fixed environment, canned Twilio frames and an in-memory
Live session.
"""

import asyncio
import base64
import json
import os
from unittest.mock import patch

import pytest

from src.concierge.config import get_config
from src.concierge.session import TERMINAL_EVENTS, SessionClosed

STREAM_SID = "MZ123456"
CALL_SID = "CA789012"

TEST_ENV = {
    "PUBLIC_HOST": "test.ngrok.io",
    "PORT": "7860",
    "LOG_LEVEL": "DEBUG",
    "TWILIO_ACCOUNT_SID": "ACtest123456789",
    "TWILIO_AUTH_TOKEN": "test_auth_token",
    "GEMINI_API_KEY": "test_gemini_key",
    "GEMINI_MODEL": "gemini-test-model",
    "ORDER_START_TIME": "11:00",
    "ORDER_END_TIME": "22:15",
    "RESTAURANT_TIMEZONE": "America/New_York",
    "POS_WEBHOOK_URL": "",
    "FILLER_CLIPS": "",
}


def twilio_frame(event: str, **body) -> str:
    return json.dumps({"event": event, "streamSid": STREAM_SID, **body})


@pytest.fixture(autouse=True)
def mock_env_vars():
    with patch.dict(os.environ, TEST_ENV):
        get_config.cache_clear()
        yield
        get_config.cache_clear()


@pytest.fixture
def config():
    return get_config()


@pytest.fixture
def sample_ulaw_audio():
    return b"\xff" * 160  # one 20ms frame of mu-law silence


@pytest.fixture
def sample_pcm_audio():
    return bytes(320)  # 160 zero samples


@pytest.fixture
def twilio_start_message():
    return twilio_frame("start", start={
        "streamSid": STREAM_SID,
        "callSid": CALL_SID,
        "accountSid": "AC345678",
        "tracks": ["inbound"],
        "customParameters": {},
    })


@pytest.fixture
def twilio_media_message(sample_ulaw_audio):
    return twilio_frame("media", media={
        "track": "inbound",
        "chunk": 1,
        "timestamp": "12345",
        "payload": base64.b64encode(sample_ulaw_audio).decode(),
    })


@pytest.fixture
def twilio_stop_message():
    return twilio_frame("stop")


class FakeLiveSession:
    """In-memory LiveSession: tests push events, commands are recorded."""

    def __init__(self):
        self.queue = asyncio.Queue()
        self.sent_audio = []
        self.tool_responses = []
        self.close_calls = 0

    def push(self, *events):
        for event in events:
            self.queue.put_nowait(event)

    async def events(self):
        while True:
            event = await self.queue.get()
            yield event
            if isinstance(event, TERMINAL_EVENTS):
                return

    async def send_realtime_input(self, pcm16k):
        self.sent_audio.append(pcm16k)

    async def send_tool_response(self, call_id, name, response):
        self.tool_responses.append((call_id, name, response))

    async def close(self):
        self.close_calls += 1
        self.queue.put_nowait(SessionClosed())


@pytest.fixture
def fake_session():
    return FakeLiveSession()
