# Tests for rednote_sync.controller
# Session lifecycle end to end: controller + extraction session + fake driver/surface + in-memory store

import asyncio
import sqlite3

import pytest
from playwright.async_api import Error as PlaywrightError

from conftest import FakeDriver, FakeSurface, explore_sample, hex_id, logged_in_sample, logged_out_sample, note_snapshot
from rednote_sync.config import BASE_URL, COLLECTION_URL, ExtractionTimings
from rednote_sync.controller import SyncController
from rednote_sync.errors import (
    EvalError,
    NavigationError,
    NavigationErrorKind,
    NotLoggedIn,
    PageTypeMismatch,
    SessionConflict,
)
from rednote_sync.models import fetch_notes
from rednote_sync.protocol import Complete, Data, Error, Paused, Progress, Resumed, Stopped
from rednote_sync.records import parse_record
from rednote_sync.session import SyncSession, SyncStatus


def _controller(driver, store, surface=None, **kwargs) -> SyncController:
    return SyncController(surface or FakeSurface(), store, driver=driver, timings=ExtractionTimings.immediate(), **kwargs)


def _five_notes() -> FakeDriver:
    return FakeDriver([[note_snapshot(hex_id(i)) for i in range(5)]])


def _raw(note_id: str, title: str = "Note") -> dict:
    return {"id": note_id, "title": title, "url": f"https://www.xiaohongshu.com/explore/{note_id}", "tags": []}


def _running(controller: SyncController) -> SyncSession:
    session = SyncSession()
    session.start()
    controller.session = session
    return session


class FailingStore:
    def save_record(self, record):
        raise sqlite3.OperationalError("database is locked")


class ClosedPageDriver(FakeDriver):
    async def wait_for_load(self):
        raise PlaywrightError("Target page, context or browser has been closed")


class TestStartSync:
    """Gate checks before a session exists."""

    def test_page_type_mismatch(self, store):
        driver = FakeDriver([[note_snapshot(hex_id(1))]], sample=explore_sample())
        controller = _controller(driver, store)

        async def run():
            await controller.check_login()
            with pytest.raises(PageTypeMismatch, match="not on the expected page"):
                await controller.start_sync()

        asyncio.run(run())
        assert controller.session is None
        assert controller.error_message == "not on the expected page"

    def test_not_logged_in(self, store):
        controller = _controller(_five_notes(), store, surface=FakeSurface(logged_out_sample()))

        async def run():
            with pytest.raises(NotLoggedIn):
                await controller.start_sync()

        asyncio.run(run())
        assert controller.session is None

    def test_conflict_while_session_active(self, store):
        controller = _controller(_five_notes(), store)

        async def run():
            await controller.start_sync()
            await controller.pause_sync()
            with pytest.raises(SessionConflict):
                await controller.start_sync()
            await controller.stop_sync()

        asyncio.run(run())
        assert controller.session.status is SyncStatus.CANCELLED


class TestSyncRun:
    def test_full_run_completes(self, store, db_conn):
        controller = _controller(_five_notes(), store)

        async def run():
            session = await controller.start_sync()
            await controller.wait_until_finished(timeout=2)
            return session

        session = asyncio.run(run())
        assert session.status is SyncStatus.COMPLETED
        assert session.synced_count == 5
        assert session.total_count == 5
        assert session.progress == 1.0
        assert session.end_time is not None
        assert session.duration is not None
        assert len(fetch_notes(db_conn)) == 5

    def test_pause_and_resume(self, store, db_conn):
        controller = _controller(_five_notes(), store)

        async def run():
            session = await controller.start_sync()
            await controller.pause_sync()
            await asyncio.sleep(0.05)
            paused = (session.status, session.synced_count)
            await controller.resume_sync()
            await controller.wait_until_finished(timeout=2)
            return session, paused

        session, paused = asyncio.run(run())
        assert paused == (SyncStatus.PAUSED, 0)
        assert session.status is SyncStatus.COMPLETED
        assert session.synced_count == 5
        assert len(fetch_notes(db_conn)) == 5

    def test_stop_cancels_session(self, store):
        controller = _controller(_five_notes(), store)

        async def run():
            session = await controller.start_sync()
            await controller.pause_sync()
            await controller.stop_sync()
            return session

        session = asyncio.run(run())
        assert session.status is SyncStatus.CANCELLED
        assert session.end_time is not None
        assert session.synced_count < 5

    def test_navigation_timeout_fails_session(self, store, db_conn):
        surface = FakeSurface()
        controller = _controller(_five_notes(), store, surface=surface)

        async def run():
            session = await controller.start_sync()
            await controller.pause_sync()
            surface.navigate_error = NavigationError(NavigationErrorKind.TIMEOUT, "Timeout 30000ms exceeded", BASE_URL)
            with pytest.raises(NavigationError):
                await controller.navigate(BASE_URL)
            await asyncio.sleep(0.05)
            return session

        session = asyncio.run(run())
        assert session.status is SyncStatus.FAILED
        assert "timeout" in session.error_message
        assert "timeout" in controller.error_message
        assert session.synced_count == 0
        assert fetch_notes(db_conn) == []

    def test_observers_receive_states(self, store):
        controller = _controller(_five_notes(), store)
        states = []
        controller.subscribe(states.append)

        async def run():
            await controller.start_sync()
            await controller.wait_until_finished(timeout=2)

        asyncio.run(run())
        assert states[-1].status is SyncStatus.COMPLETED
        assert states[-1].synced_count == 5
        synced = [s.synced_count for s in states]
        assert synced == sorted(synced)

    def test_closed_page_fails_session(self, store):
        controller = _controller(ClosedPageDriver([[note_snapshot(hex_id(1))]]), store)

        async def run():
            session = await controller.start_sync()
            await controller.wait_until_finished(timeout=2)
            return session

        session = asyncio.run(run())
        assert session.status is SyncStatus.FAILED
        assert session.end_time is not None
        assert session.error_message == "extraction failed: Target page, context or browser has been closed"
        assert controller.error_message == session.error_message

    def test_failing_observer_does_not_stall_sync(self, store):
        controller = _controller(_five_notes(), store)
        seen = []

        def broken(state):
            seen.append(state)
            raise RuntimeError("observer broke")

        controller.subscribe(broken)

        async def run():
            session = await controller.start_sync()
            await controller.wait_until_finished(timeout=2)
            return session

        session = asyncio.run(run())
        assert session.status is SyncStatus.COMPLETED
        assert session.synced_count == 5
        assert seen[-1].status is SyncStatus.COMPLETED


class TestEventHandling:
    """handle_event applied directly to a running session."""

    def test_progress_adopts_total_not_below_synced(self, store):
        controller = _controller(_five_notes(), store)
        session = _running(controller)
        controller.handle_event(Data(_raw("a1")))
        controller.handle_event(Data(_raw("a2")))
        controller.handle_event(Progress(total=1, current=2))
        assert session.total_count == 2
        controller.handle_event(Progress(total=20, current=2))
        assert session.total_count == 20

    def test_invalid_payload_is_rejected(self, store):
        controller = _controller(_five_notes(), store)
        session = _running(controller)
        controller.handle_event(Data({"id": "a1", "title": "", "url": "https://x"}))
        controller.handle_event(Data(_raw("a2")))
        assert controller.rejected_count == 1
        assert session.synced_count == 1
        controller.handle_event(Complete(message="done", total=2))
        assert session.status is SyncStatus.COMPLETED
        assert session.total_count == 1

    def test_storage_failure_counts_as_rejected(self):
        controller = _controller(_five_notes(), FailingStore())
        session = _running(controller)
        controller.handle_event(Data(_raw("a1")))
        assert controller.rejected_count == 1
        assert session.synced_count == 0
        assert session.status is SyncStatus.RUNNING

    def test_skip_existing(self, store):
        store.save_record(parse_record(_raw("a1")))
        controller = _controller(_five_notes(), store, skip_existing=True)
        session = _running(controller)
        controller.handle_event(Data(_raw("a1", title="changed")))
        assert controller.skipped_count == 1
        assert session.synced_count == 1
        assert store.conn.execute("SELECT title FROM notes WHERE id = 'a1'").fetchone()[0] == "Note"

    def test_events_after_termination_are_ignored(self, store, db_conn):
        controller = _controller(_five_notes(), store)
        session = _running(controller)
        controller.handle_event(Data(_raw("a1")))
        controller.handle_event(Complete(message="done", total=1))
        end_time = session.end_time

        controller.handle_event(Complete(message="again", total=9))
        controller.handle_event(Data(_raw("a2")))
        controller.handle_event(Stopped())
        controller.handle_event(Error("late"))

        assert session.status is SyncStatus.COMPLETED
        assert session.synced_count == 1
        assert session.end_time == end_time
        assert controller.error_message is None
        assert len(fetch_notes(db_conn)) == 1

    def test_pause_and_resume_events(self, store):
        controller = _controller(_five_notes(), store)
        session = _running(controller)
        controller.handle_event(Paused())
        assert session.status is SyncStatus.PAUSED
        controller.handle_event(Paused())
        assert session.status is SyncStatus.PAUSED
        controller.handle_event(Resumed())
        assert session.status is SyncStatus.RUNNING

    def test_lost_records_fail_completion(self, store):
        controller = _controller(_five_notes(), store)
        session = _running(controller)
        controller.handle_event(Data(_raw("a1")))
        controller.handle_event(Complete(message="done", total=3))
        assert session.status is SyncStatus.FAILED
        assert session.error_message == "sync ended early: 1/3 records"

    def test_paused_session_can_complete(self, store):
        controller = _controller(_five_notes(), store)
        session = _running(controller)
        controller.handle_event(Paused())
        controller.handle_event(Complete(message="done", total=0))
        assert session.status is SyncStatus.COMPLETED

    def test_error_event_fails_and_is_retained(self, store):
        controller = _controller(_five_notes(), store)
        session = _running(controller)
        controller.handle_event(Error("extraction failed: boom"))
        assert session.status is SyncStatus.FAILED
        assert session.error_message == "extraction failed: boom"
        assert controller.error_message == "extraction failed: boom"
        controller.dismiss_error()
        assert controller.error_message is None

    def test_stopped_event_cancels(self, store):
        controller = _controller(_five_notes(), store)
        session = _running(controller)
        controller.handle_event(Stopped())
        assert session.status is SyncStatus.CANCELLED
        assert session.end_time is not None


class TestNavigationAndLogin:
    def test_navigate_runs_login_check(self, store):
        surface = FakeSurface()
        controller = _controller(_five_notes(), store, surface=surface)
        asyncio.run(controller.load_home())
        assert surface.visited == [BASE_URL]
        assert controller.is_logged_in
        assert controller.login_state.checks["user_stats"]

    def test_collection_requires_login(self, store):
        surface = FakeSurface(logged_out_sample())
        controller = _controller(_five_notes(), store, surface=surface)

        async def run():
            await controller.load_home()
            with pytest.raises(NotLoggedIn):
                await controller.load_collection()

        asyncio.run(run())
        assert surface.visited == [BASE_URL]
        assert controller.error_message == "please log in to the platform first"

    def test_load_collection(self, store):
        surface = FakeSurface()
        controller = _controller(_five_notes(), store, surface=surface)

        async def run():
            await controller.load_home()
            await controller.load_collection()
            await controller.go_back()

        asyncio.run(run())
        assert surface.visited == [BASE_URL]
        assert surface.current_url == BASE_URL

    def test_navigation_error_without_session(self, store):
        surface = FakeSurface()
        surface.navigate_error = NavigationError(NavigationErrorKind.NO_CONNECTIVITY, "net::ERR_INTERNET_DISCONNECTED")
        controller = _controller(_five_notes(), store, surface=surface)

        async def run():
            with pytest.raises(NavigationError):
                await controller.load_login()

        asyncio.run(run())
        assert controller.error_message == "network connection unavailable, check network settings"
        assert controller.is_loading is False

    def test_failed_login_check_keeps_previous_state(self, store):
        surface = FakeSurface()
        controller = _controller(_five_notes(), store, surface=surface)

        async def run():
            first = await controller.check_login()
            surface.login_sample = EvalError("page crashed")
            second = await controller.check_login()
            return first, second

        first, second = asyncio.run(run())
        assert first.is_logged_in
        assert second is first
        assert controller.is_logged_in

    def test_clear_site_data_logs_out(self, store):
        surface = FakeSurface()
        controller = _controller(_five_notes(), store, surface=surface)

        async def run():
            await controller.check_login()
            await controller.clear_site_data()

        asyncio.run(run())
        assert surface.cleared
        assert not controller.is_logged_in

    def test_profile_link_missing(self, store):
        surface = FakeSurface()
        surface.profile_link = False
        controller = _controller(_five_notes(), store, surface=surface)
        assert asyncio.run(controller.navigate_to_profile()) is False
        assert controller.error_message

    def test_state_snapshot(self, store):
        surface = FakeSurface()
        surface.current_url = COLLECTION_URL
        controller = _controller(_five_notes(), store, surface=surface)
        state = controller.state
        assert state.status is None
        assert state.current_url == COLLECTION_URL
        assert state.progress == 0.0

    def test_page_initiated_load_runs_login_check(self, store):
        surface = FakeSurface(logged_out_sample())
        controller = _controller(_five_notes(), store, surface=surface)

        async def run():
            await controller.load_home()
            before = controller.is_logged_in
            # user finishes logging in inside the page, which redirects on its own
            surface.login_sample = logged_in_sample()
            surface.fire_load(BASE_URL + "/user/profile/5f1a")
            await asyncio.sleep(0.01)
            return before

        before = asyncio.run(run())
        assert before is False
        assert controller.is_logged_in
        assert controller.state.current_url.endswith("/user/profile/5f1a")

    def test_profile_click_is_followed_by_login_check(self, store):
        surface = FakeSurface(logged_out_sample())
        controller = _controller(_five_notes(), store, surface=surface)
        states = []
        controller.subscribe(states.append)

        async def run():
            await controller.check_login()
            assert await controller.navigate_to_profile()
            surface.login_sample = logged_in_sample()
            surface.fire_load()
            await asyncio.sleep(0.01)

        asyncio.run(run())
        assert not states[0].is_logged_in
        assert states[-1].is_logged_in
