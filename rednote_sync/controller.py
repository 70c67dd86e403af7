"""
Sync controller – owns the SyncSession, drives the surface and the extraction session,
turns channel events into session changes and store writes, and publishes SyncState.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable

from rednote_sync.config import (
    BASE_URL,
    COLLECTION_URL,
    LOGIN_CHECK_INTERVAL_SEC,
    LOGIN_URL,
    SKIP_EXISTING,
    STOP_ACK_TIMEOUT_SEC,
    ExtractionTimings,
)
from rednote_sync.detector import LoginDetector, LoginState, is_collection_page
from rednote_sync.errors import (
    EvalError,
    InvalidPayload,
    NavigationError,
    NotLoggedIn,
    PageTypeMismatch,
    ProtocolError,
    SessionConflict,
)
from rednote_sync.extractor import ExtractionSession, PageDriver
from rednote_sync.protocol import (
    Command,
    Complete,
    Data,
    Error,
    Event,
    Initialized,
    MessageChannel,
    Paused,
    Progress,
    Resumed,
    Stopped,
    decode_event,
)
from rednote_sync.records import parse_record
from rednote_sync.session import SyncSession, SyncStatus
from rednote_sync.surface import default_headers

logger = logging.getLogger(__name__)

PROFILE_LINK_JS = """() => {
    const links = document.querySelectorAll('a[href*="/user/profile"], a[href*="/profile"]');
    if (links.length > 0) { links[0].click(); return true; }
    const userInfo = document.querySelector('.user-info, .avatar, [class*="user"]');
    if (userInfo) { userInfo.click(); return true; }
    return false;
}"""


@dataclass(frozen=True)
class SyncState:
    """Snapshot handed to observers after every change."""

    status: SyncStatus | None = None
    total_count: int = 0
    synced_count: int = 0
    progress: float = 0.0
    is_logged_in: bool = False
    is_loading: bool = False
    current_url: str = ""
    error_message: str | None = None


class SyncController:
    def __init__(
        self,
        surface,
        store,
        driver: PageDriver | None = None,
        timings: ExtractionTimings | None = None,
        skip_existing: bool = SKIP_EXISTING,
        login_check_interval: float = LOGIN_CHECK_INTERVAL_SEC,
    ):
        self.surface = surface
        self.store = store
        self.driver = driver or PageDriver(surface)
        self.timings = timings or ExtractionTimings()
        self.skip_existing = skip_existing
        self.detector = LoginDetector(surface, interval=login_check_interval, on_state=self._on_login_state)
        self.session: SyncSession | None = None
        self.login_state: LoginState | None = None
        self.error_message: str | None = None
        self.is_loading = False
        self.rejected_count = 0
        self.skipped_count = 0
        self._observers: list[Callable[[SyncState], Any]] = []
        self._channel: MessageChannel | None = None
        self._extraction: ExtractionSession | None = None
        self._pump_task: asyncio.Task | None = None
        self._load_checks: set[asyncio.Task] = set()
        self._finished = asyncio.Event()
        self._finished.set()
        surface.on_load(self._on_page_load)

    # --------------- State publishing ---------------
    @property
    def is_logged_in(self) -> bool:
        return bool(self.login_state and self.login_state.is_logged_in)

    @property
    def state(self) -> SyncState:
        session = self.session
        return SyncState(
            status=session.status if session else None,
            total_count=session.total_count if session else 0,
            synced_count=session.synced_count if session else 0,
            progress=session.progress if session else 0.0,
            is_logged_in=self.is_logged_in,
            is_loading=self.is_loading,
            current_url=self.surface.current_url,
            error_message=self.error_message,
        )

    def subscribe(self, observer: Callable[[SyncState], Any]) -> Callable[[], None]:
        """Register an observer; returns a callable that unsubscribes it."""
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def _publish(self) -> None:
        state = self.state
        for observer in list(self._observers):
            try:
                observer(state)
            except Exception:
                logger.exception("State observer failed")

    def _report_error(self, message: str) -> None:
        self.error_message = message
        logger.error(message)
        self._publish()

    def dismiss_error(self) -> None:
        self.error_message = None
        self._publish()

    # --------------- Login ---------------
    def _on_login_state(self, state: LoginState) -> None:
        changed = self.login_state is None or self.login_state.is_logged_in != state.is_logged_in
        self.login_state = state
        if changed:
            logger.info("Login status: %s", "logged in" if state.is_logged_in else "not logged in")
        self._publish()

    async def check_login(self) -> LoginState | None:
        """One detection pass; on evaluation failure the previous state is kept."""
        try:
            return await self.detector.check()
        except EvalError as e:
            logger.warning("Login check failed: %s", e)
            return self.login_state

    def _on_page_load(self) -> None:
        task = asyncio.create_task(self.check_login())
        self._load_checks.add(task)
        task.add_done_callback(self._load_checks.discard)

    def start_login_monitor(self) -> None:
        self.detector.start()

    async def stop_login_monitor(self) -> None:
        await self.detector.stop()

    # --------------- Navigation ---------------
    async def _run_navigation(self, action) -> None:
        self.is_loading = True
        self._publish()
        try:
            await action()
        except NavigationError as e:
            await self._on_navigation_error(e)
            raise
        finally:
            self.is_loading = False
            self._publish()
        await self.check_login()

    async def _on_navigation_error(self, error: NavigationError) -> None:
        if self.session is not None and not self.session.is_terminal:
            await self._abort(str(error))
        else:
            self._report_error(str(error))

    async def navigate(self, url: str) -> None:
        """Load url in the surface. Raises NavigationError after failing any active session."""
        logger.info("Loading %s", url)
        await self._run_navigation(lambda: self.surface.navigate(url, default_headers()))

    async def load_home(self) -> None:
        await self.navigate(BASE_URL)

    async def load_login(self) -> None:
        await self.navigate(LOGIN_URL)

    async def load_collection(self) -> None:
        if not self.is_logged_in:
            error = NotLoggedIn()
            self._report_error(str(error))
            raise error
        await self.navigate(COLLECTION_URL)

    async def navigate_to_profile(self) -> bool:
        """Click the first profile link or user badge on the page."""
        try:
            clicked = bool(await self.surface.evaluate(PROFILE_LINK_JS))
        except EvalError as e:
            logger.warning("Profile navigation failed: %s", e)
            clicked = False
        if not clicked:
            self._report_error("could not find the user profile page, navigate manually")
        return clicked

    async def go_back(self) -> None:
        if await self.surface.can_go_back():
            await self._run_navigation(self.surface.go_back)

    async def go_forward(self) -> None:
        if await self.surface.can_go_forward():
            await self._run_navigation(self.surface.go_forward)

    async def reload(self) -> None:
        await self._run_navigation(self.surface.reload)

    async def clear_site_data(self) -> None:
        await self.surface.clear_all_site_data()
        self.login_state = LoginState()
        logger.info("Site data cleared")
        self._publish()

    # --------------- Sync control ---------------
    async def start_sync(self) -> SyncSession:
        """
        Open a new session and start extraction on the current page.
        Raises SessionConflict, NotLoggedIn or PageTypeMismatch without creating a session.
        """
        if self.session is not None and not self.session.is_terminal:
            raise SessionConflict(f"sync {self.session.id} is still {self.session.status.value}")
        if self.login_state is None:
            await self.check_login()
        if not self.is_logged_in:
            error = NotLoggedIn()
            self._report_error(str(error))
            raise error
        try:
            sample = await self.driver.sample_page_type()
        except EvalError as e:
            self._report_error(f"page check failed: {e}")
            raise
        if not is_collection_page(sample):
            error = PageTypeMismatch()
            self._report_error(str(error))
            raise error

        session = SyncSession()
        self.session = session
        self.rejected_count = 0
        self.skipped_count = 0
        self._channel = MessageChannel()
        self._extraction = ExtractionSession(self.driver, self._channel, self.timings)
        self._finished = asyncio.Event()
        self._pump_task = asyncio.create_task(self._pump(session))
        await self._extraction.attach()
        session.start()
        logger.info("Sync %s started", session.id)
        self._publish()
        await self._channel.send_command(Command.START)
        return session

    async def pause_sync(self) -> None:
        session = self.session
        if session is None or session.status is not SyncStatus.RUNNING:
            return
        session.pause()
        self._publish()
        await self._channel.send_command(Command.PAUSE)

    async def resume_sync(self) -> None:
        session = self.session
        if session is None or session.status is not SyncStatus.PAUSED:
            return
        session.resume()
        self._publish()
        await self._channel.send_command(Command.RESUME)

    async def stop_sync(self, ack_timeout: float = STOP_ACK_TIMEOUT_SEC) -> None:
        """Cancel the session now; the extractor halts at its next boundary."""
        session = self.session
        if session is None or session.is_terminal:
            return
        session.cancel()
        logger.info("Sync %s cancelled", session.id)
        self._publish()
        await self._channel.send_command(Command.STOP)
        try:
            await asyncio.wait_for(asyncio.shield(self._finished.wait()), ack_timeout)
        except asyncio.TimeoutError:
            logger.warning("Extractor did not acknowledge stop, closing it")
            await self._abort(None)

    async def wait_until_finished(self, timeout: float | None = None) -> SyncSession | None:
        await asyncio.wait_for(self._finished.wait(), timeout)
        return self.session

    async def close(self) -> None:
        await self.stop_login_monitor()
        for task in list(self._load_checks):
            task.cancel()
        await self.stop_sync()
        await self._close_extraction()

    # --------------- Event handling ---------------
    async def _pump(self, session: SyncSession) -> None:
        try:
            while True:
                body = await self._channel.next_event()
                try:
                    event = decode_event(body)
                except ProtocolError as e:
                    logger.warning("Ignoring malformed message: %s", e)
                    continue
                self.handle_event(event)
                if session.is_terminal and isinstance(event, (Complete, Error, Stopped)):
                    break
            await self._close_extraction()
        finally:
            self._finished.set()

    def handle_event(self, event: Event) -> None:
        """Apply one decoded event to the current session. Events after termination are ignored."""
        if isinstance(event, Initialized):
            logger.info("Extractor ready: %s", event.message)
            return
        session = self.session
        if session is None or session.is_terminal:
            logger.debug("Ignoring %s after session end", type(event).__name__)
            return

        if isinstance(event, Progress):
            session.update_total(event.total)
        elif isinstance(event, Data):
            self._accept_record(session, event.data)
        elif isinstance(event, Complete):
            # event.total counts every record the extractor emitted
            expected = event.total - self.rejected_count
            if session.synced_count < expected:
                self._fail(session, f"sync ended early: {session.synced_count}/{expected} records")
                return
            session.update_total(session.synced_count)
            session.complete()
            logger.info("Sync complete: %s (%d saved, %d rejected)", event.message, session.synced_count, self.rejected_count)
        elif isinstance(event, Error):
            self._fail(session, event.message)
            return
        elif isinstance(event, Paused):
            if session.status is SyncStatus.RUNNING:
                session.pause()
        elif isinstance(event, Resumed):
            if session.status is SyncStatus.PAUSED:
                session.resume()
        elif isinstance(event, Stopped):
            session.cancel()
            logger.info("Sync %s stopped by extractor", session.id)
        self._publish()

    def _accept_record(self, session: SyncSession, payload: dict) -> None:
        try:
            record = parse_record(payload)
        except InvalidPayload as e:
            self.rejected_count += 1
            logger.warning("Rejected record: %s", e)
            return
        record_exists = getattr(self.store, "record_exists", None)
        if self.skip_existing and record_exists is not None and record_exists(record.id):
            self.skipped_count += 1
            session.record_synced()
            logger.debug("Already stored: %s", record.id)
            return
        try:
            self.store.save_record(record)
        except Exception as e:
            self.rejected_count += 1
            logger.warning("Saving %s failed: %s", record.id, e)
            return
        session.record_synced()

    def _fail(self, session: SyncSession, message: str) -> None:
        session.fail(message)
        self._report_error(message)

    async def _close_extraction(self) -> None:
        if self._extraction is not None:
            extraction, self._extraction = self._extraction, None
            await extraction.close()

    async def _abort(self, message: str | None) -> None:
        """Controller-side failure: fail the session (when a message is given) and tear down the extractor."""
        session = self.session
        if message is not None:
            if session is not None and not session.is_terminal:
                session.fail(message)
            self._report_error(message)
        await self._close_extraction()
        if self._pump_task is not None and not self._pump_task.done():
            self._pump_task.cancel()
            try:
                await self._pump_task
            except asyncio.CancelledError:
                pass
        self._finished.set()
        self._publish()
