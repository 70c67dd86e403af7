"""
RedNote sync – centralized configuration.
Timeouts, delays, retries, browser options, page selectors.
"""
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

# Paths
BASE_DIR = Path(__file__).resolve().parent
PROJECT_ROOT = BASE_DIR.parent
load_dotenv(PROJECT_ROOT / ".env")
load_dotenv(BASE_DIR / ".env")

DB_PATH = Path(os.getenv("REDNOTE_DB_PATH", str(PROJECT_ROOT / "rednote.db")))
USER_DATA_DIR = Path(os.getenv("REDNOTE_USER_DATA_DIR", str(PROJECT_ROOT / ".browser-profile")))  # keeps the login between runs

# Base URL
BASE_URL = "https://www.xiaohongshu.com"
LOGIN_URL = f"{BASE_URL}/login"
COLLECTION_URL = f"{BASE_URL}/user/profile/me/collect"
ALLOWED_HOSTS = ("xiaohongshu.com", "xhscdn.com")

USER_AGENT = os.getenv(
    "REDNOTE_USER_AGENT",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.0 Safari/605.1.15",
)
ACCEPT_LANGUAGE = "zh-CN,zh;q=0.9,en;q=0.8"

# Timeouts (ms)
NAVIGATION_TIMEOUT = int(os.getenv("REDNOTE_NAV_TIMEOUT", "30000"))
PAGE_LOAD_WAIT_MS = int(os.getenv("REDNOTE_PAGE_LOAD_WAIT", "5000"))

# Extraction pacing (seconds)
START_DELAY_SEC = float(os.getenv("REDNOTE_START_DELAY", "1.0"))
ELEMENT_DELAY_SEC = float(os.getenv("REDNOTE_ELEMENT_DELAY", "0.1"))
PAGE_DELAY_SEC = float(os.getenv("REDNOTE_PAGE_DELAY", "1.5"))  # between finishing a page and paginating
SETTLE_DELAY_SEC = float(os.getenv("REDNOTE_SETTLE_DELAY", "2.0"))
SCROLL_WAIT_SEC = 1.0
SCROLL_NUDGE_WAIT_SEC = 0.3
SCROLL_NUDGES = 3
SCROLL_NUDGE_PX = 100
NAV_WATCH_INTERVAL_SEC = 1.0

# Retries
MAX_EMPTY_RETRIES = int(os.getenv("REDNOTE_MAX_EMPTY_RETRIES", "3"))
EMPTY_RETRY_DELAY_SEC = float(os.getenv("REDNOTE_EMPTY_RETRY_DELAY", "3.0"))

# Login detection
LOGIN_CHECK_INTERVAL_SEC = float(os.getenv("REDNOTE_LOGIN_CHECK_INTERVAL", "3.0"))
LOGIN_WAIT_TIMEOUT_SEC = int(os.getenv("REDNOTE_LOGIN_WAIT_TIMEOUT", "300"))

# Channel
CHANNEL_MAXSIZE = 256
STOP_ACK_TIMEOUT_SEC = 5.0

# Browser visibility (login happens in the page, so the window is shown by default)
HEADLESS = os.getenv("REDNOTE_HEADLESS", "0").strip().lower() in ("1", "true", "yes")

# Keep browser open after run until user presses Enter (default True when visible)
_env_keep = os.getenv("REDNOTE_KEEP_BROWSER_OPEN", "").strip().lower()
KEEP_BROWSER_OPEN = _env_keep in ("1", "true", "yes") if _env_keep else (not HEADLESS)

# Optional proxy for the browser
PROXY_SERVER = os.getenv("REDNOTE_PROXY_SERVER", "").strip()
PROXY_USER = os.getenv("REDNOTE_PROXY_USER", "")
PROXY_PASS = os.getenv("REDNOTE_PROXY_PASS", "")


def get_proxy_settings() -> dict | None:
    """Playwright proxy dict, or None when no proxy server is configured."""
    if not PROXY_SERVER:
        return None
    server = PROXY_SERVER if "://" in PROXY_SERVER else f"http://{PROXY_SERVER}"
    proxy = {"server": server}
    if PROXY_USER:
        proxy["username"] = PROXY_USER
        proxy["password"] = PROXY_PASS
    return proxy


# Cross-run dedup against the store (records already saved are not re-saved)
SKIP_EXISTING = os.getenv("REDNOTE_SKIP_EXISTING", "0").strip().lower() in ("1", "true", "yes")

# Record limits
MAX_TITLE_LENGTH = 200
MAX_CONTENT_LENGTH = 2000
MAX_TAGS_PER_NOTE = 20

# --------------- Page-type gate ---------------
COLLECTION_URL_MARKERS = ("/collect", "/collection", "/liked")
COLLECTION_CONTAINER_SELECTORS = '.collection-container, [data-testid="collection"], .note-item, .feeds-container'
COLLECTION_TITLE_MARKERS = ("收藏", "喜欢")
COLLECTION_HEADING_MARKER = "收藏"

# --------------- Element discovery ---------------
# Order matters: first selector with any match wins.
NOTE_SELECTORS = [
    ".note-item",
    ".collection-item",
    '[data-testid="note-item"]',
    ".feeds-page .note-item",
    ".col .cover",
    "section .note-item",
    ".note-card",
    ".item",
    ".noteItem",
    'a[href*="/explore/"]',
    'a[href*="/discovery/item/"]',
]
CONTENT_IMAGE_HOSTS = ("ci.xiaohongshu.com", "sns-img", "xhscdn.com")
ANCESTOR_WALK_DEPTH = 5

NOTE_ID_PATTERNS = [
    r"/explore/([a-f0-9]+)",
    r"/discovery/item/([a-f0-9]+)",
    r"/notes/([a-f0-9]+)",
]
TITLE_SELECTORS = [".title", ".note-title", ".item-title", "h1", "h2", "h3", "h4", ".text-content", ".desc", ".content"]
CONTENT_SELECTORS = [".desc", ".description", ".content", ".note-content", "p"]
AUTHOR_SELECTORS = [".author", ".author-name", ".user-name", ".username", '[class*="author"]', '[class*="user"]']
AVATAR_SELECTOR = '.avatar img, .user-avatar img, [class*="avatar"] img'
TAG_SELECTOR = '.tag, .hashtag, [class*="tag"]'
COUNT_LABEL_SELECTOR = '.count, .total, [class*="count"], [class*="total"]'
MAX_COUNT_LABEL = 100000
MIN_TOTAL_ESTIMATE = 20
TOTAL_ESTIMATE_FACTOR = 3

# --------------- Pagination ---------------
LOAD_MORE_SELECTORS = [
    'button[class*="load"]',
    'button[class*="more"]',
    ".load-more",
    ".btn-load",
    '[class*="load-more"]',
]
LOAD_MORE_TEXTS = ("更多", "加载")


@dataclass
class ExtractionTimings:
    """Delays used by an extraction run; tests pass zeros."""

    start_delay: float = START_DELAY_SEC
    element_delay: float = ELEMENT_DELAY_SEC
    page_delay: float = PAGE_DELAY_SEC
    settle_delay: float = SETTLE_DELAY_SEC
    scroll_wait: float = SCROLL_WAIT_SEC
    scroll_nudge_wait: float = SCROLL_NUDGE_WAIT_SEC
    empty_retry_delay: float = EMPTY_RETRY_DELAY_SEC
    max_empty_retries: int = MAX_EMPTY_RETRIES
    nav_watch_interval: float = NAV_WATCH_INTERVAL_SEC

    @classmethod
    def immediate(cls) -> "ExtractionTimings":
        return cls(
            start_delay=0,
            element_delay=0,
            page_delay=0,
            settle_delay=0,
            scroll_wait=0,
            scroll_nudge_wait=0,
            empty_retry_delay=0,
            nav_watch_interval=0.01,
        )
