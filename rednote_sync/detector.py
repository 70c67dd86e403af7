"""
Page readiness heuristics, evaluated from page content only.

Two detectors share this module:
- the page-type gate (is this a collection page?), three signals, any one suffices;
- login detection, six signals OR-combined into LoginState.

Each signal is a pure predicate over a page sample dict, so both can be
exercised against fixture snapshots without a browser.
"""
import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable

from rednote_sync.config import (
    COLLECTION_CONTAINER_SELECTORS,
    COLLECTION_HEADING_MARKER,
    COLLECTION_TITLE_MARKERS,
    COLLECTION_URL_MARKERS,
    LOGIN_CHECK_INTERVAL_SEC,
)
from rednote_sync.errors import EvalError

logger = logging.getLogger(__name__)

# --------------- Page-type gate ---------------
PAGE_TYPE_JS = """(containerSelectors) => {
    const heading = document.querySelector('h1, h2, h3');
    return {
        url: window.location.href,
        hasContainer: document.querySelector(containerSelectors) !== null,
        title: document.title || '',
        heading: heading ? (heading.textContent || '').trim() : '',
    };
}"""


def _url_signal(sample: dict) -> bool:
    url = sample.get("url") or ""
    return any(marker in url for marker in COLLECTION_URL_MARKERS)


def _container_signal(sample: dict) -> bool:
    return bool(sample.get("hasContainer"))


def _title_signal(sample: dict) -> bool:
    title = sample.get("title") or ""
    heading = sample.get("heading") or ""
    return any(marker in title for marker in COLLECTION_TITLE_MARKERS) or COLLECTION_HEADING_MARKER in heading


PAGE_TYPE_SIGNALS: list[tuple[str, Callable[[dict], bool]]] = [
    ("url", _url_signal),
    ("container", _container_signal),
    ("title", _title_signal),
]


def page_type_signals(sample: dict) -> dict[str, bool]:
    return {name: check(sample) for name, check in PAGE_TYPE_SIGNALS}


def is_collection_page(sample: dict) -> bool:
    return any(page_type_signals(sample).values())


async def sample_page_type(surface) -> dict:
    """Evaluate the page-type sample script. Raises EvalError."""
    sample = await surface.evaluate(PAGE_TYPE_JS, COLLECTION_CONTAINER_SELECTORS)
    return sample if isinstance(sample, dict) else {}


# --------------- Login detection ---------------
LOGIN_SAMPLE_JS = """() => {
    const text = (document.body && document.body.innerText) || '';
    const images = Array.from(document.querySelectorAll('img')).map(img => ({
        src: img.src || '',
        alt: img.alt || '',
    }));
    const controls = Array.from(document.querySelectorAll('button, a'))
        .map(el => (el.textContent || el.innerText || '').trim())
        .filter(t => t.length > 0 && t.length <= 10);
    let storageKeys = [];
    try { storageKeys = Object.keys(window.localStorage); } catch (e) {}
    return {
        text: text,
        url: window.location.href,
        title: document.title || '',
        images: images,
        controls: controls,
        storageKeys: storageKeys,
        cookie: document.cookie || '',
    };
}"""

ACCOUNT_ID_PATTERN = re.compile(r"小红书号[：:]\s*\d+")
FOLLOW_LABELS = ("关注", "粉丝")
FAVORITES_LABELS = ("收藏", "获赞与收藏")
AVATAR_ALT_MARKERS = ("头像", "用户")
LOGIN_CONTROL_TEXTS = ("登录", "去登录")
PROFILE_URL_MARKERS = ("/user/", "/profile/")
STORAGE_KEY_MARKERS = ("user", "auth", "token")
COOKIE_MARKERS = ("user", "token", "session")


def has_account_id(sample: dict) -> bool:
    return bool(ACCOUNT_ID_PATTERN.search(sample.get("text") or ""))


def has_user_stats(sample: dict) -> bool:
    text = sample.get("text") or ""
    return all(label in text for label in FOLLOW_LABELS)


def has_favorites_label(sample: dict) -> bool:
    text = sample.get("text") or ""
    return any(label in text for label in FAVORITES_LABELS)


def has_user_avatar(sample: dict) -> bool:
    for img in sample.get("images") or []:
        src = img.get("src") or ""
        alt = img.get("alt") or ""
        if "avatar" in src or any(marker in alt for marker in AVATAR_ALT_MARKERS):
            return True
    return False


def has_login_button(sample: dict) -> bool:
    text = sample.get("text") or ""
    if not any(label in text for label in LOGIN_CONTROL_TEXTS):
        return False
    return any((control or "").strip() in LOGIN_CONTROL_TEXTS for control in sample.get("controls") or [])


def has_avatar_without_login(sample: dict) -> bool:
    # a placeholder avatar sits next to the sign-in prompt on logged-out pages
    return has_user_avatar(sample) and not has_login_button(sample)


def has_profile_url(sample: dict) -> bool:
    url = sample.get("url") or ""
    return any(marker in url for marker in PROFILE_URL_MARKERS)


def has_session_storage(sample: dict) -> bool:
    keys = sample.get("storageKeys") or []
    if any(marker in key for key in keys for marker in STORAGE_KEY_MARKERS):
        return True
    cookie = sample.get("cookie") or ""
    return any(marker in cookie for marker in COOKIE_MARKERS)


LOGIN_SIGNALS: list[tuple[str, Callable[[dict], bool]]] = [
    ("account_id", has_account_id),
    ("user_stats", has_user_stats),
    ("favorites_label", has_favorites_label),
    ("avatar_without_login", has_avatar_without_login),
    ("profile_url", has_profile_url),
    ("session_storage", has_session_storage),
]


@dataclass(frozen=True)
class LoginState:
    is_logged_in: bool = False
    checks: dict[str, bool] = field(default_factory=dict)
    url: str = ""
    title: str = ""
    text_preview: str = ""
    error: str | None = None

    def describe(self) -> str:
        lines = [f"login: {'yes' if self.is_logged_in else 'no'}"]
        lines.extend(f"  {name}: {'y' if ok else 'n'}" for name, ok in self.checks.items())
        if self.title:
            lines.append(f"  page: {self.title}")
        return "\n".join(lines)


def evaluate_login(sample: dict) -> LoginState:
    """Compute a fresh LoginState from one page sample."""
    checks = {name: check(sample) for name, check in LOGIN_SIGNALS}
    # diagnostic only, not a signal
    checks["login_button"] = has_login_button(sample)
    is_logged_in = any(checks[name] for name, _ in LOGIN_SIGNALS)
    return LoginState(
        is_logged_in=is_logged_in,
        checks=checks,
        url=sample.get("url") or "",
        title=sample.get("title") or "",
        text_preview=(sample.get("text") or "")[:200],
    )


class LoginDetector:
    """Samples the page and produces a LoginState per pass; optionally on a fixed interval."""

    def __init__(self, surface, interval: float = LOGIN_CHECK_INTERVAL_SEC, on_state: Callable[[LoginState], Any] | None = None):
        self.surface = surface
        self.interval = interval
        self.on_state = on_state
        self.last_state: LoginState | None = None
        self._task: asyncio.Task | None = None

    async def check(self) -> LoginState:
        """One detection pass. Raises EvalError; the previous state is left untouched."""
        sample = await self.surface.evaluate(LOGIN_SAMPLE_JS)
        state = evaluate_login(sample if isinstance(sample, dict) else {})
        self.last_state = state
        logger.debug("Login check: %s", state.describe())
        if self.on_state is not None:
            try:
                self.on_state(state)
            except Exception:
                logger.exception("Login state callback failed")
        return state

    async def _loop(self) -> None:
        while True:
            try:
                await self.check()
            except EvalError as e:
                # one shot per tick, no retry
                logger.info("Login check failed: %s", e)
            await asyncio.sleep(self.interval)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
