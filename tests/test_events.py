"""
Tests for the system event log and transcript turns.
"""

from datetime import datetime

from src.concierge.events import SystemEventLog
from src.concierge.models import TranscriptTurn


class TestSystemEventLog:
    def test_newest_first_with_timestamp(self):
        log = SystemEventLog(clock=lambda: datetime(2024, 5, 1, 9, 5, 7))

        log.log("CALL_START")
        log.log("SESSION_OPEN")

        assert log.entries == ["[09:05:07] SESSION_OPEN", "[09:05:07] CALL_START"]

    def test_bounded(self):
        log = SystemEventLog()

        for i in range(60):
            log.log(f"EVENT_{i}")

        assert len(log) == 50
        assert log.entries[0].endswith("EVENT_59")
        assert log.entries[-1].endswith("EVENT_10")

    def test_entries_are_a_copy(self):
        log = SystemEventLog()
        log.log("CALL_START")

        log.entries.clear()

        assert len(log) == 1


class TestTranscriptTurn:
    def test_complete_commits_pair(self):
        turn = TranscriptTurn()
        turn.append_input("Two samosas")
        turn.append_input(" please")

        entries = turn.complete()

        assert [(e.role, e.text) for e in entries] == [
            ("user", "Two samosas please"),
            ("model", "(audio)"),
        ]
        assert entries[0].timestamp < entries[1].timestamp
        assert turn.is_empty
