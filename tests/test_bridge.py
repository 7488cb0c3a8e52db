"""
Tests for the Twilio <-> AI session bridge.
"""

import asyncio
import base64
import json
from dataclasses import replace
from unittest.mock import AsyncMock, MagicMock

import numpy as np
import pytest

from src.concierge.bridge import TelephonyBridge, create_bridge
from src.concierge.models import OrderLifecycle
from src.concierge.session import OutputTranscript, SessionOpened


def _bridge(config, fake_session, **kwargs):
    async def factory(cfg):
        return fake_session

    send_message = AsyncMock()
    kwargs.setdefault("twilio_client", MagicMock())
    bridge = TelephonyBridge(send_message, config=config, session_factory=factory, **kwargs)
    return bridge, send_message


def _sent(send_message) -> list[dict]:
    return [json.loads(c.args[0]) for c in send_message.await_args_list]


async def _wait_for(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


class TestTelephonyBridge:
    @pytest.mark.asyncio
    async def test_start_creates_call(self, config, fake_session, twilio_start_message):
        bridge, _ = _bridge(config, fake_session)

        await bridge.handle_message(twilio_start_message)

        assert bridge.stream_sid == "MZ123456"
        assert bridge.call_sid == "CA789012"
        assert bridge.call.lifecycle == OrderLifecycle.COLLECTING
        await bridge.stop()

    @pytest.mark.asyncio
    async def test_duplicate_start_ignored(self, config, fake_session, twilio_start_message):
        bridge, _ = _bridge(config, fake_session)
        await bridge.handle_message(twilio_start_message)
        call = bridge.call

        await bridge.handle_message(twilio_start_message)

        assert bridge.call is call
        await bridge.stop()

    @pytest.mark.asyncio
    async def test_media_forwarded_at_16k(self, config, fake_session, twilio_start_message, twilio_media_message):
        bridge, _ = _bridge(config, fake_session)
        await bridge.handle_message(twilio_start_message)

        await bridge.handle_message(twilio_media_message)

        assert len(fake_session.sent_audio) == 1
        assert fake_session.sent_audio[0] == b"\x00\x00" * 320
        assert bridge._protocol.call_state.frames_in == 1
        await bridge.stop()

    @pytest.mark.asyncio
    async def test_outbound_track_ignored(self, config, fake_session, twilio_start_message):
        bridge, _ = _bridge(config, fake_session)
        await bridge.handle_message(twilio_start_message)

        await bridge.handle_message(json.dumps({
            "event": "media",
            "streamSid": "MZ123456",
            "media": {"track": "outbound", "payload": base64.b64encode(b"\xff" * 160).decode()},
        }))

        assert fake_session.sent_audio == []
        await bridge.stop()

    @pytest.mark.asyncio
    async def test_media_before_start_ignored(self, config, fake_session, twilio_media_message):
        bridge, _ = _bridge(config, fake_session)

        await bridge.handle_message(twilio_media_message)

        assert fake_session.sent_audio == []

    @pytest.mark.asyncio
    async def test_bad_message_ignored(self, config, fake_session):
        bridge, send_message = _bridge(config, fake_session)

        await bridge.handle_message("not json")
        await bridge.handle_message(json.dumps({"event": "mark", "mark": {"name": "m1"}}))

        send_message.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_emit_frame_sends_ulaw_media(self, config, fake_session, twilio_start_message):
        bridge, send_message = _bridge(config, fake_session)
        await bridge.handle_message(twilio_start_message)

        await bridge._emit_frame(np.zeros(480, dtype=np.float32))

        message = _sent(send_message)[-1]
        assert message["event"] == "media"
        assert message["streamSid"] == "MZ123456"
        assert base64.b64decode(message["media"]["payload"]) == b"\xff" * 160
        await bridge.stop()

    @pytest.mark.asyncio
    async def test_clear_carrier_audio(self, config, fake_session, twilio_start_message):
        bridge, send_message = _bridge(config, fake_session)
        await bridge.handle_message(twilio_start_message)

        await bridge.clear_carrier_audio()

        assert _sent(send_message)[-1] == {"event": "clear", "streamSid": "MZ123456"}
        await bridge.stop()

    @pytest.mark.asyncio
    async def test_stop_message_cleans_up(self, config, fake_session, twilio_start_message, twilio_stop_message):
        bridge, _ = _bridge(config, fake_session)
        await bridge.handle_message(twilio_start_message)

        await bridge.handle_message(twilio_stop_message)
        await bridge.stop()

        assert bridge.call.is_closed
        assert bridge.call.lifecycle == OrderLifecycle.IDLE
        assert fake_session.close_calls == 1
        assert not bridge._protocol.is_active

    @pytest.mark.asyncio
    async def test_hangup_completes_call(self, config, fake_session, twilio_start_message):
        twilio_client = MagicMock()
        bridge, _ = _bridge(config, fake_session, twilio_client=twilio_client)
        await bridge.handle_message(twilio_start_message)

        await bridge.hangup()

        twilio_client.calls.assert_called_with("CA789012")
        twilio_client.calls.return_value.update.assert_called_once_with(status="completed")
        await bridge.stop()

    @pytest.mark.asyncio
    async def test_hangup_without_credentials(self, config, fake_session, twilio_start_message):
        no_creds = replace(config, twilio_account_sid="", twilio_auth_token="")
        bridge, _ = _bridge(no_creds, fake_session, twilio_client=None)
        await bridge.start()
        await bridge.handle_message(twilio_start_message)

        await bridge.hangup()

        assert bridge._twilio_client is None
        await bridge.stop()

    @pytest.mark.asyncio
    async def test_create_bridge_starts(self, config, fake_session):
        async def factory(cfg):
            return fake_session

        bridge = await create_bridge(
            AsyncMock(),
            config=config,
            session_factory=factory,
            twilio_client=MagicMock(),
        )

        assert isinstance(bridge, TelephonyBridge)
        await bridge.stop()


class TestCallEndedByAssistant:
    """Calls the coordinator ends itself are hung up and their stream released."""

    @pytest.mark.asyncio
    async def test_silence_abandonment_hangs_up(self, config, fake_session, twilio_start_message):
        twilio_client = MagicMock()
        close_transport = AsyncMock()
        bridge, _ = _bridge(
            replace(config, silence_timeout_seconds=0.05),
            fake_session,
            twilio_client=twilio_client,
            close_transport=close_transport,
        )
        await bridge.handle_message(twilio_start_message)
        fake_session.push(SessionOpened())

        await _wait_for(lambda: close_transport.await_count == 1)

        assert bridge.call.is_closed
        assert bridge.is_stopped
        twilio_client.calls.assert_called_with("CA789012")
        twilio_client.calls.return_value.update.assert_called_once_with(status="completed")

    @pytest.mark.asyncio
    async def test_handover_hangs_up(self, config, fake_session, twilio_start_message):
        twilio_client = MagicMock()
        close_transport = AsyncMock()
        bridge, _ = _bridge(
            replace(config, handover_cleanup_seconds=0.05),
            fake_session,
            twilio_client=twilio_client,
            close_transport=close_transport,
        )
        await bridge.handle_message(twilio_start_message)
        fake_session.push(SessionOpened(), OutputTranscript("ACTION: TRANSFER_TO_MANAGER"))

        await _wait_for(lambda: close_transport.await_count == 1)

        assert "HANDOVER" in " ".join(bridge.event_log.entries)
        twilio_client.calls.return_value.update.assert_called_once_with(status="completed")

    @pytest.mark.asyncio
    async def test_end_call_hangs_up_once(self, config, fake_session, twilio_start_message):
        twilio_client = MagicMock()
        close_transport = AsyncMock()
        bridge, _ = _bridge(
            replace(config, end_call_cleanup_seconds=0.05),
            fake_session,
            twilio_client=twilio_client,
            close_transport=close_transport,
        )
        await bridge.handle_message(twilio_start_message)
        fake_session.push(SessionOpened(), OutputTranscript("ACTION: END_CALL"))

        await _wait_for(lambda: close_transport.await_count == 1)

        twilio_client.calls.return_value.update.assert_called_once_with(status="completed")

    @pytest.mark.asyncio
    async def test_carrier_stop_does_not_hang_up(
        self, config, fake_session, twilio_start_message, twilio_stop_message
    ):
        twilio_client = MagicMock()
        close_transport = AsyncMock()
        bridge, _ = _bridge(config, fake_session, twilio_client=twilio_client, close_transport=close_transport)
        await bridge.handle_message(twilio_start_message)

        await bridge.handle_message(twilio_stop_message)

        assert bridge.call.is_closed
        twilio_client.calls.assert_not_called()
        close_transport.assert_not_awaited()
