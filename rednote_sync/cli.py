"""
RedNote sync – interactive run: open a persistent Chromium profile, wait for the user to
log in inside the page, load the collection page and sync every collected note into SQLite.
"""
import argparse
import asyncio
import logging
import signal
from pathlib import Path

from playwright.async_api import async_playwright
from tqdm import tqdm

from rednote_sync.config import (
    ACCEPT_LANGUAGE,
    DB_PATH,
    HEADLESS,
    KEEP_BROWSER_OPEN,
    LOGIN_WAIT_TIMEOUT_SEC,
    PAGE_LOAD_WAIT_MS,
    SKIP_EXISTING,
    USER_AGENT,
    USER_DATA_DIR,
    get_proxy_settings,
)
from rednote_sync.controller import SyncController, SyncState
from rednote_sync.errors import EvalError, NavigationError, NotLoggedIn, PageTypeMismatch
from rednote_sync.models import NoteStore, get_connection, get_statistics, init_db
from rednote_sync.surface import BrowserSurface

logger = logging.getLogger("rednote_sync")

_shutdown = False


async def _wait_before_close(keep_browser_open: bool):
    """If keep_browser_open, wait for Enter so the user can inspect the browser."""
    if not keep_browser_open:
        return
    logger.info("Sync finished. Press Enter to close the browser...")
    loop = asyncio.get_running_loop()
    await loop.run_in_executor(None, lambda: input("Press Enter to close the browser... "))


def _set_shutdown(*_):
    global _shutdown
    _shutdown = True
    logger.info("SIGTERM/SIGINT received; stopping sync.")


def _build_launch_options(headless: bool) -> dict:
    """Persistent-context launch options (profile keeps the login between runs)."""
    opts = {
        "headless": headless,
        "viewport": {"width": 1280, "height": 800},
        "user_agent": USER_AGENT,
        "locale": "zh-CN",
        "extra_http_headers": {"Accept-Language": ACCEPT_LANGUAGE},
        "args": [
            "--disable-blink-features=AutomationControlled",
            "--no-sandbox",
            "--disable-setuid-sandbox",
            "--disable-dev-shm-usage",
        ],
    }
    proxy = get_proxy_settings()
    if proxy:
        opts["proxy"] = proxy
    return opts


async def _wait_for_login(controller: SyncController, timeout: float) -> bool:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not controller.is_logged_in:
        if _shutdown or loop.time() >= deadline:
            return False
        await asyncio.sleep(1)
    return True


async def _follow_session(controller: SyncController) -> None:
    """Show progress until the session ends; Ctrl+C requests a stop."""
    session = controller.session
    with tqdm(desc="Syncing notes", unit="note", ncols=100) as pbar:
        def on_state(state: SyncState):
            if state.total_count:
                pbar.total = state.total_count
            pbar.n = state.synced_count
            pbar.refresh()

        unsubscribe = controller.subscribe(on_state)
        try:
            while not session.is_terminal:
                if _shutdown:
                    await controller.stop_sync()
                    break
                await asyncio.sleep(0.5)
            await controller.wait_until_finished()
        finally:
            unsubscribe()


async def _run_sync(
    db_path: Path,
    headless: bool = HEADLESS,
    keep_browser_open: bool = KEEP_BROWSER_OPEN,
    skip_existing: bool = SKIP_EXISTING,
    login_timeout: float = LOGIN_WAIT_TIMEOUT_SEC,
) -> int:
    conn = get_connection(db_path)
    init_db(conn)
    store = NoteStore(conn)
    exit_code = 0
    logger.info("Launching browser (profile %s)...", USER_DATA_DIR)
    async with async_playwright() as p:
        context = await p.chromium.launch_persistent_context(str(USER_DATA_DIR), **_build_launch_options(headless))
        page = context.pages[0] if context.pages else await context.new_page()
        surface = BrowserSurface(page, context)
        controller = SyncController(surface, store, skip_existing=skip_existing)
        try:
            await controller.load_home()
            controller.start_login_monitor()
            if not controller.is_logged_in:
                logger.info("Please log in inside the browser window (waiting up to %d s)...", login_timeout)
                if not await _wait_for_login(controller, login_timeout):
                    logger.error("Not logged in; giving up.")
                    return 1
            logger.info("Logged in.")
            await controller.load_collection()
            await surface.wait_for_load(PAGE_LOAD_WAIT_MS)
            session = await controller.start_sync()
            await _follow_session(controller)
            logger.info(
                "Sync %s %s: %d notes saved, %d rejected, %d already stored (%.1f s)",
                session.id, session.status.value, session.synced_count,
                controller.rejected_count, controller.skipped_count, session.duration or 0.0,
            )
            if session.error_message:
                logger.error("Sync error: %s", session.error_message)
                exit_code = 1
            stats = get_statistics(conn)
            logger.info("Store: %d notes, %d synced today", stats["total_notes"], stats["today_notes"])
        except (NavigationError, NotLoggedIn, PageTypeMismatch, EvalError) as e:
            logger.error("Sync aborted: %s", e)
            exit_code = 1
        finally:
            await controller.close()
            conn.close()
            await _wait_before_close(keep_browser_open)
            await context.close()
    return exit_code


def main():
    ap = argparse.ArgumentParser(description="Sync RedNote collected notes into a local SQLite store")
    ap.add_argument("--db", help=f"Note store path (default {DB_PATH})")
    ap.add_argument("--headless", action="store_true", help="Run the browser headless (requires a saved login)")
    ap.add_argument("--skip-existing", action="store_true", help="Do not re-save notes already in the store")
    ap.add_argument("--login-timeout", type=float, default=LOGIN_WAIT_TIMEOUT_SEC, help="Seconds to wait for login")
    ap.add_argument("--keep-browser-open", action="store_true", help="After run, wait for Enter before closing browser (default when browser is visible)")
    ap.add_argument("--no-keep-browser-open", action="store_true", dest="no_keep_browser_open", help="Close browser immediately when done (no Enter)")
    args = ap.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    headless = HEADLESS or args.headless
    keep_browser_open = KEEP_BROWSER_OPEN and not headless
    if args.keep_browser_open:
        keep_browser_open = True
    if args.no_keep_browser_open:
        keep_browser_open = False

    signal.signal(signal.SIGTERM, _set_shutdown)
    signal.signal(signal.SIGINT, _set_shutdown)
    exit_code = asyncio.run(_run_sync(
        Path(args.db) if args.db else DB_PATH,
        headless=headless,
        keep_browser_open=keep_browser_open,
        skip_existing=SKIP_EXISTING or args.skip_existing,
        login_timeout=args.login_timeout,
    ))
    if exit_code:
        raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
