"""
Rendering surface: a Playwright page behind the navigation interface the controller uses
(navigate, evaluate, current_url, back/forward, reload, clear site data).
"""
import logging
from typing import Any, Callable
from urllib.parse import urlparse

from playwright.async_api import BrowserContext, Page
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from rednote_sync.config import (
    ACCEPT_LANGUAGE,
    ALLOWED_HOSTS,
    NAVIGATION_TIMEOUT,
    USER_AGENT,
)
from rednote_sync.errors import EvalError, NavigationError, NavigationErrorKind

logger = logging.getLogger(__name__)

# Chromium net:: codes (and their Firefox/WebKit counterparts) per failure class
_ERROR_MARKERS: list[tuple[NavigationErrorKind, tuple[str, ...]]] = [
    (NavigationErrorKind.NO_CONNECTIVITY, (
        "ERR_INTERNET_DISCONNECTED",
        "ERR_NETWORK_CHANGED",
        "ERR_NETWORK_ACCESS_DENIED",
        "NS_ERROR_OFFLINE",
    )),
    (NavigationErrorKind.TIMEOUT, (
        "ERR_TIMED_OUT",
        "ERR_CONNECTION_TIMED_OUT",
        "NS_ERROR_NET_TIMEOUT",
    )),
    (NavigationErrorKind.HOST_UNREACHABLE, (
        "ERR_NAME_NOT_RESOLVED",
        "ERR_ADDRESS_UNREACHABLE",
        "ERR_NAME_RESOLUTION_FAILED",
        "NS_ERROR_UNKNOWN_HOST",
        "Could not resolve host",
    )),
    (NavigationErrorKind.CONNECTION_REFUSED, (
        "ERR_CONNECTION_REFUSED",
        "NS_ERROR_CONNECTION_REFUSED",
        "Connection refused",
    )),
]


def default_headers() -> dict[str, str]:
    return {"User-Agent": USER_AGENT, "Accept-Language": ACCEPT_LANGUAGE}


def classify_navigation_error(exc: BaseException, url: str = "") -> NavigationError:
    """Map a Playwright navigation failure onto a NavigationErrorKind."""
    if isinstance(exc, NavigationError):
        return exc
    detail = str(exc).strip().splitlines()[0] if str(exc).strip() else type(exc).__name__
    if isinstance(exc, PlaywrightTimeoutError):
        return NavigationError(NavigationErrorKind.TIMEOUT, detail, url)
    text = str(exc)
    for kind, markers in _ERROR_MARKERS:
        if any(marker in text for marker in markers):
            return NavigationError(kind, detail, url)
    return NavigationError(NavigationErrorKind.OTHER, detail, url)


def is_allowed_url(url: str) -> bool:
    """Platform hosts and any https URL may be loaded; anything else is refused."""
    parsed = urlparse(url)
    host = parsed.hostname or ""
    return parsed.scheme == "https" or any(host == h or host.endswith("." + h) for h in ALLOWED_HOSTS)


class BrowserSurface:
    """Wraps one Playwright page. All evaluation failures surface as EvalError."""

    def __init__(self, page: Page, context: BrowserContext | None = None, navigation_timeout: int = NAVIGATION_TIMEOUT):
        self.page = page
        self.context = context or page.context
        self.navigation_timeout = navigation_timeout

    @property
    def current_url(self) -> str:
        return self.page.url

    async def title(self) -> str:
        try:
            return await self.page.title()
        except PlaywrightError:
            return ""

    async def navigate(self, url: str, headers: dict[str, str] | None = None) -> None:
        """Load url and wait for DOMContentLoaded. Raises NavigationError."""
        if not is_allowed_url(url):
            raise NavigationError(NavigationErrorKind.OTHER, f"refusing non-https url {url}", url)
        extra = dict(headers or default_headers())
        # User-Agent is fixed on the context; only the remaining headers go on the wire
        extra.pop("User-Agent", None)
        try:
            if extra:
                await self.page.set_extra_http_headers(extra)
            response = await self.page.goto(url, wait_until="domcontentloaded", timeout=self.navigation_timeout)
        except PlaywrightError as e:
            error = classify_navigation_error(e, url)
            logger.warning("Navigation to %s failed (%s): %s", url, error.kind.value, error.detail)
            raise error from e
        if response is not None and not response.ok:
            raise NavigationError(NavigationErrorKind.OTHER, f"server responded with status {response.status}", url)

    async def evaluate(self, script: str, arg: Any = None) -> Any:
        try:
            if arg is None:
                return await self.page.evaluate(script)
            return await self.page.evaluate(script, arg)
        except PlaywrightError as e:
            raise EvalError(str(e).strip().splitlines()[0] if str(e).strip() else "script evaluation failed") from e

    async def wait_for_load(self, timeout_ms: int) -> bool:
        """Best-effort wait for the load event. Returns False on timeout, raises EvalError when the page is gone."""
        try:
            await self.page.wait_for_load_state("load", timeout=timeout_ms)
            return True
        except PlaywrightTimeoutError:
            return False
        except PlaywrightError as e:
            raise EvalError(str(e).strip().splitlines()[0] if str(e).strip() else "page load failed") from e

    def on_load(self, callback: Callable[[], Any]) -> None:
        """Call callback after every completed main-frame load, including page-initiated ones."""
        self.page.on("load", lambda _page: callback())

    async def can_go_back(self) -> bool:
        return bool(await self.evaluate("() => window.history.length > 1"))

    async def can_go_forward(self) -> bool:
        # Browsers do not expose forward history; Navigation API where available
        return bool(await self.evaluate("() => !!(window.navigation && window.navigation.canGoForward)"))

    async def go_back(self) -> None:
        try:
            await self.page.go_back(wait_until="domcontentloaded", timeout=self.navigation_timeout)
        except PlaywrightError as e:
            raise classify_navigation_error(e, self.current_url) from e

    async def go_forward(self) -> None:
        try:
            await self.page.go_forward(wait_until="domcontentloaded", timeout=self.navigation_timeout)
        except PlaywrightError as e:
            raise classify_navigation_error(e, self.current_url) from e

    async def reload(self) -> None:
        try:
            await self.page.reload(wait_until="domcontentloaded", timeout=self.navigation_timeout)
        except PlaywrightError as e:
            raise classify_navigation_error(e, self.current_url) from e

    async def clear_all_site_data(self) -> None:
        """Cookies, local/session storage and permissions for every site in the context."""
        await self.context.clear_cookies()
        await self.context.clear_permissions()
        try:
            await self.page.evaluate("() => { try { localStorage.clear(); sessionStorage.clear(); } catch (e) {} }")
        except PlaywrightError as e:
            logger.warning("Clearing page storage failed: %s", e)
