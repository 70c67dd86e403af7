# rednote_sync test fixtures
# Fake page driver / surface and an in-memory note store; no browser is launched.

import asyncio

import pytest

from rednote_sync.config import BASE_URL, COLLECTION_URL
from rednote_sync.controller import PROFILE_LINK_JS
from rednote_sync.detector import LOGIN_SAMPLE_JS
from rednote_sync.errors import EvalError
from rednote_sync.models import NoteStore, get_connection, init_db

TERMINAL_TYPES = {"complete", "error", "stopped"}


def hex_id(n: int) -> str:
    return f"{n:024x}"


def note_snapshot(note_id: str, title: str | None = None, **overrides) -> dict:
    """Element snapshot shaped like the page-side discovery script output."""
    title = title or f"Note {note_id[-4:]}"
    snapshot = {
        "tag": "SECTION",
        "href": f"/explore/{note_id}",
        "dataId": None,
        "text": f"{title} author",
        "image": {
            "src": f"https://sns-img-qc.xhscdn.com/{note_id}.jpg",
            "dataSrc": None,
            "dataOriginal": None,
            "alt": "",
        },
        "fields": {".title": title, ".author": "author"},
        "avatar": None,
        "tags": [],
    }
    snapshot.update(overrides)
    return snapshot


def collection_sample(url: str = COLLECTION_URL) -> dict:
    return {"url": url, "hasContainer": True, "title": "我的收藏 - 小红书", "heading": "收藏"}


def explore_sample(url: str = f"{BASE_URL}/explore") -> dict:
    return {"url": url, "hasContainer": False, "title": "小红书 - 你的生活指南", "heading": "发现"}


def logged_in_sample() -> dict:
    return {
        "text": "小红书号：123456789\n12 关注 34 粉丝",
        "url": f"{BASE_URL}/user/profile/me",
        "title": "小红书",
        "images": [{"src": "https://sns-avatar-qc.xhscdn.com/avatar/1.jpg", "alt": "头像"}],
        "controls": ["发现", "发布"],
        "storageKeys": [],
        "cookie": "",
    }


def logged_out_sample() -> dict:
    return {
        "text": "发现 登录 探索更多内容",
        "url": BASE_URL + "/",
        "title": "小红书",
        "images": [],
        "controls": ["发现", "登录"],
        "storageKeys": ["xhs_theme"],
        "cookie": "a1=xyz",
    }


class FakeDriver:
    """
    Page driver over canned discovery results. pages[i] is what discovery sees after
    i successful pagination steps; scrolling (or load-more when enabled) advances i.
    """

    def __init__(self, pages, sample=None, url=COLLECTION_URL, labels=None, load_more=False):
        self.pages = [list(p) for p in pages] or [[]]
        self.index = 0
        self.sample = sample if sample is not None else collection_sample(url)
        self.current_url = url
        self.labels = list(labels or [])
        self.load_more = load_more
        self.fail_discover: Exception | None = None
        self.discover_calls = 0
        self.scrolls = 0

    async def sample_page_type(self) -> dict:
        return dict(self.sample)

    async def wait_for_load(self) -> None:
        return None

    async def discover(self) -> list[dict]:
        self.discover_calls += 1
        if self.fail_discover is not None:
            raise self.fail_discover
        return list(self.pages[self.index])

    async def count_label_texts(self) -> list[str]:
        return list(self.labels)

    async def click_load_more(self) -> bool:
        if self.load_more and self.index + 1 < len(self.pages):
            self.index += 1
            return True
        return False

    async def scroll_to_bottom(self) -> None:
        self.scrolls += 1
        if not self.load_more and self.index + 1 < len(self.pages):
            self.index += 1

    async def scroll_by(self, px: int) -> None:
        return None


class FakeSurface:
    """Navigation interface double; evaluate answers the login sample and profile-link scripts."""

    def __init__(self, login_sample=None):
        self.current_url = BASE_URL
        self.login_sample = login_sample if login_sample is not None else logged_in_sample()
        self.navigate_error: Exception | None = None
        self.profile_link = True
        self.visited: list[str] = []
        self.cleared = False
        self.load_callbacks = []

    async def navigate(self, url, headers=None):
        if self.navigate_error is not None:
            raise self.navigate_error
        self.visited.append(url)
        self.current_url = url

    async def evaluate(self, script, arg=None):
        if script == LOGIN_SAMPLE_JS:
            if isinstance(self.login_sample, Exception):
                raise self.login_sample
            return dict(self.login_sample)
        if script == PROFILE_LINK_JS:
            return self.profile_link
        raise EvalError("unexpected script")

    async def can_go_back(self):
        return len(self.visited) > 1

    async def can_go_forward(self):
        return False

    async def go_back(self):
        self.visited.pop()
        self.current_url = self.visited[-1]

    async def go_forward(self):
        return None

    async def reload(self):
        return None

    async def clear_all_site_data(self):
        self.cleared = True

    def on_load(self, callback):
        self.load_callbacks.append(callback)

    def fire_load(self, url=None):
        """Simulate a page-initiated navigation finishing."""
        if url is not None:
            self.current_url = url
        for callback in self.load_callbacks:
            callback()


async def drain_until(channel, types=TERMINAL_TYPES, timeout: float = 2.0) -> list[dict]:
    """Read wire messages from the channel until one of `types` arrives."""
    events = []
    while True:
        message = await asyncio.wait_for(channel.next_event(), timeout)
        events.append(message)
        if message.get("type") in types:
            return events


@pytest.fixture
def db_conn():
    conn = get_connection(":memory:")
    init_db(conn)
    yield conn
    conn.close()


@pytest.fixture
def store(db_conn) -> NoteStore:
    return NoteStore(db_conn)
