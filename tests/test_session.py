# Tests for rednote_sync.session
# SyncSession state machine and counters

import pytest

from rednote_sync.errors import InvalidTransition
from rednote_sync.session import TERMINAL_STATES, SyncSession, SyncStatus


class TestTransitions:
    def test_new_session(self):
        session = SyncSession()
        assert session.status is SyncStatus.PREPARING
        assert session.is_active
        assert session.end_time is None
        assert session.duration is None
        assert len(session.id) == 36

    def test_run_pause_resume_complete(self):
        session = SyncSession()
        session.start()
        session.pause()
        assert not session.is_active
        session.resume()
        session.complete()
        assert session.status is SyncStatus.COMPLETED
        assert session.end_time is not None
        assert session.duration >= 0

    def test_fail_records_message(self):
        session = SyncSession()
        session.fail("navigation timeout, please retry")
        assert session.status is SyncStatus.FAILED
        assert session.error_message == "navigation timeout, please retry"
        assert session.end_time is not None

    def test_paused_can_be_cancelled(self):
        session = SyncSession()
        session.start()
        session.pause()
        session.cancel()
        assert session.is_terminal

    @pytest.mark.parametrize("status", sorted(TERMINAL_STATES, key=lambda s: s.value))
    def test_terminal_states_are_final(self, status):
        session = SyncSession(status=status)
        for target in SyncStatus:
            assert not session.can_transition(target)
        with pytest.raises(InvalidTransition):
            session.start()

    def test_cannot_complete_from_preparing(self):
        with pytest.raises(InvalidTransition, match="preparing -> completed"):
            SyncSession().complete()

    def test_cannot_pause_twice(self):
        session = SyncSession()
        session.start()
        session.pause()
        with pytest.raises(InvalidTransition):
            session.pause()


class TestCounters:
    def test_progress(self):
        session = SyncSession()
        assert session.progress == 0.0
        session.update_total(4)
        session.record_synced()
        assert session.progress == 0.25

    def test_synced_never_exceeds_total(self):
        session = SyncSession(total_count=2)
        for _ in range(3):
            session.record_synced()
        assert session.synced_count == 3
        assert session.total_count == 3
        assert session.progress == 1.0

    def test_update_total_keeps_synced_floor(self):
        session = SyncSession()
        session.record_synced()
        session.record_synced()
        session.update_total(1)
        assert session.total_count == 2

    def test_can_complete(self):
        session = SyncSession()
        assert session.can_complete()
        session.update_total(3)
        session.record_synced()
        assert not session.can_complete()
        session.update_total(1)
        assert session.can_complete()
