"""
Collection extractor – the page-side actor of a sync run.

PageDriver evaluates small scripts in the page and returns plain element snapshots;
the parse_* functions turn a snapshot into a raw record; ExtractionSession drives
discovery, dedup, progress and pagination and talks to the controller only through
a MessageChannel (wire dicts out, commands in).
"""
import asyncio
import hashlib
import logging
import re
from urllib.parse import urljoin, urlparse

from rednote_sync.config import (
    ANCESTOR_WALK_DEPTH,
    AUTHOR_SELECTORS,
    AVATAR_SELECTOR,
    BASE_URL,
    CONTENT_IMAGE_HOSTS,
    CONTENT_SELECTORS,
    COUNT_LABEL_SELECTOR,
    LOAD_MORE_SELECTORS,
    LOAD_MORE_TEXTS,
    MAX_COUNT_LABEL,
    MIN_TOTAL_ESTIMATE,
    NOTE_ID_PATTERNS,
    NOTE_SELECTORS,
    PAGE_LOAD_WAIT_MS,
    SCROLL_NUDGE_PX,
    SCROLL_NUDGES,
    TAG_SELECTOR,
    TITLE_SELECTORS,
    TOTAL_ESTIMATE_FACTOR,
    ExtractionTimings,
)
from rednote_sync.detector import is_collection_page, sample_page_type
from rednote_sync.errors import DiscoveryExhausted, ElementParseSkip, EvalError, ProtocolError
from rednote_sync.protocol import Command, MessageChannel

logger = logging.getLogger(__name__)

# --------------- In-page scripts ---------------
DISCOVER_JS = """(opts) => {
    const snapshot = (el) => {
        const link = el.tagName === 'A' ? el : el.querySelector('a');
        const img = el.querySelector('img');
        const idHolder = el.querySelector('[data-id]');
        const fields = {};
        for (const sel of opts.fieldSelectors) {
            let found = null;
            try { found = el.querySelector(sel); } catch (e) { found = null; }
            const text = found ? (found.textContent || '').trim() : '';
            if (text) fields[sel] = text;
        }
        const avatar = el.querySelector(opts.avatarSelector);
        const tags = Array.from(el.querySelectorAll(opts.tagSelector))
            .map(t => (t.textContent || '').trim())
            .filter(Boolean);
        return {
            tag: el.tagName,
            href: link ? link.getAttribute('href') : null,
            dataId: el.getAttribute('data-id') || el.getAttribute('data-note-id')
                || (idHolder ? idHolder.getAttribute('data-id') : null),
            text: (el.textContent || '').trim(),
            image: img ? {
                src: img.src || '',
                dataSrc: img.getAttribute('data-src'),
                dataOriginal: img.getAttribute('data-original'),
                alt: img.alt || '',
            } : null,
            fields: fields,
            avatar: avatar ? (avatar.src || avatar.getAttribute('data-src')) : null,
            tags: tags,
        };
    };
    for (const sel of opts.selectors) {
        const found = document.querySelectorAll(sel);
        if (found.length > 0) {
            return { selector: sel, items: Array.from(found).map(snapshot) };
        }
    }
    const containers = [];
    for (const img of document.querySelectorAll('img')) {
        const src = img.src || '';
        if (!opts.imageHosts.some(h => src.includes(h))) continue;
        let parent = img.parentElement;
        let chosen = null;
        for (let i = 0; i < opts.maxDepth && parent; i++) {
            const cls = parent.getAttribute('class') || '';
            if (parent.tagName === 'A' || parent.querySelector('a[href*="explore"]')
                || cls.includes('note') || cls.includes('item')) {
                chosen = parent;
                break;
            }
            parent = parent.parentElement;
        }
        chosen = chosen || img.closest('a') || img.parentElement;
        if (chosen && !containers.includes(chosen)) containers.push(chosen);
    }
    return { selector: containers.length ? 'image-fallback' : null, items: containers.map(snapshot) };
}"""

COUNT_LABELS_JS = """(selector) => Array.from(document.querySelectorAll(selector))
    .map(el => (el.textContent || '').trim())
    .filter(Boolean)"""

CLICK_LOAD_MORE_JS = """(opts) => {
    const usable = (el) => el && el.offsetParent !== null && !el.disabled
        && el.getAttribute('aria-disabled') !== 'true';
    for (const sel of opts.selectors) {
        for (const el of document.querySelectorAll(sel)) {
            if (usable(el)) { el.click(); return true; }
        }
    }
    for (const el of document.querySelectorAll('button')) {
        const text = (el.textContent || '').trim();
        if (opts.texts.some(t => text.includes(t)) && usable(el)) { el.click(); return true; }
    }
    return false;
}"""

SCROLL_TO_BOTTOM_JS = """() => window.scrollTo({ top: document.documentElement.scrollHeight, behavior: 'smooth' })"""

SCROLL_BY_JS = """(px) => window.scrollBy(0, px)"""


class PageDriver:
    """Page operations the extractor needs, on top of a rendering surface."""

    def __init__(self, surface, page_load_wait_ms: int = PAGE_LOAD_WAIT_MS):
        self.surface = surface
        self.page_load_wait_ms = page_load_wait_ms

    @property
    def current_url(self) -> str:
        return self.surface.current_url

    async def sample_page_type(self) -> dict:
        return await sample_page_type(self.surface)

    async def wait_for_load(self) -> None:
        await self.surface.wait_for_load(self.page_load_wait_ms)

    async def discover(self) -> list[dict]:
        result = await self.surface.evaluate(DISCOVER_JS, {
            "selectors": NOTE_SELECTORS,
            "imageHosts": list(CONTENT_IMAGE_HOSTS),
            "maxDepth": ANCESTOR_WALK_DEPTH,
            "fieldSelectors": list(dict.fromkeys(TITLE_SELECTORS + CONTENT_SELECTORS + AUTHOR_SELECTORS)),
            "avatarSelector": AVATAR_SELECTOR,
            "tagSelector": TAG_SELECTOR,
        })
        if not isinstance(result, dict):
            return []
        items = result.get("items") or []
        if items:
            logger.debug("Found %d note elements using %s", len(items), result.get("selector"))
        return items

    async def count_label_texts(self) -> list[str]:
        texts = await self.surface.evaluate(COUNT_LABELS_JS, COUNT_LABEL_SELECTOR)
        return [t for t in texts or [] if isinstance(t, str)]

    async def click_load_more(self) -> bool:
        return bool(await self.surface.evaluate(CLICK_LOAD_MORE_JS, {
            "selectors": LOAD_MORE_SELECTORS,
            "texts": list(LOAD_MORE_TEXTS),
        }))

    async def scroll_to_bottom(self) -> None:
        await self.surface.evaluate(SCROLL_TO_BOTTOM_JS)

    async def scroll_by(self, px: int) -> None:
        await self.surface.evaluate(SCROLL_BY_JS, px)


# --------------- Element parsing ---------------
_ID_PATTERNS = [re.compile(p, re.IGNORECASE) for p in NOTE_ID_PATTERNS]


def _first_field(snapshot: dict, selectors: list[str]) -> str | None:
    fields = snapshot.get("fields") or {}
    for selector in selectors:
        text = (fields.get(selector) or "").strip()
        if text:
            return text
    return None


def fallback_id(snapshot: dict) -> str | None:
    """Stable generated id from link, image and text, so re-discovered elements dedupe."""
    image = snapshot.get("image") or {}
    basis = "|".join([snapshot.get("href") or "", image.get("src") or "", (snapshot.get("text") or "")[:100]])
    if not basis.strip("|"):
        return None
    return "gen_" + hashlib.sha1(basis.encode("utf-8")).hexdigest()[:16]


def extract_id(snapshot: dict) -> str | None:
    href = snapshot.get("href") or ""
    for pattern in _ID_PATTERNS:
        match = pattern.search(href)
        if match:
            return match.group(1)
    data_id = snapshot.get("dataId")
    if data_id and str(data_id).strip():
        return str(data_id).strip()
    return fallback_id(snapshot)


def extract_title(snapshot: dict) -> str | None:
    title = _first_field(snapshot, TITLE_SELECTORS)
    if title:
        return title
    alt = ((snapshot.get("image") or {}).get("alt") or "").strip()
    if len(alt) >= 2:
        return alt
    text = (snapshot.get("text") or "").strip()
    if len(text) > 3:
        return text[:50]
    return None


def extract_content(snapshot: dict) -> str | None:
    return _first_field(snapshot, CONTENT_SELECTORS)


def extract_image_url(snapshot: dict) -> str | None:
    image = snapshot.get("image") or {}
    return image.get("src") or image.get("dataSrc") or image.get("dataOriginal") or None


def resolve_url(href: str | None, base_url: str = BASE_URL) -> str | None:
    """Absolute URLs pass through; relative ones resolve against the platform origin."""
    href = (href or "").strip()
    if not href or href.startswith(("javascript:", "#", "mailto:")):
        return None
    url = urljoin(base_url + "/", href)
    if urlparse(url).scheme not in ("http", "https"):
        return None
    return url


def extract_author_name(snapshot: dict) -> str | None:
    return _first_field(snapshot, AUTHOR_SELECTORS)


def extract_tags(snapshot: dict) -> list[str]:
    tags: list[str] = []
    for tag in snapshot.get("tags") or []:
        tag = (tag or "").strip()
        if tag and tag not in tags:
            tags.append(tag)
    return tags


def parse_element(snapshot: dict) -> dict:
    """Element snapshot -> raw record dict. Raises ElementParseSkip when id, title or url is missing."""
    try:
        record = {
            "id": extract_id(snapshot),
            "title": extract_title(snapshot),
            "content": extract_content(snapshot),
            "imageURL": extract_image_url(snapshot),
            "url": resolve_url(snapshot.get("href")),
            "authorName": extract_author_name(snapshot),
            "authorAvatar": snapshot.get("avatar") or None,
            "tags": extract_tags(snapshot),
        }
    except (AttributeError, TypeError, ValueError) as e:
        raise ElementParseSkip(f"malformed element snapshot: {e}") from e
    missing = [key for key in ("id", "title", "url") if not record[key]]
    if missing:
        raise ElementParseSkip(f"incomplete note data, missing {', '.join(missing)}")
    return record


def estimate_total(label_texts: list[str], visible_count: int) -> int:
    """First plausible count label on the page, else 3x the visible elements (at least 20)."""
    for text in label_texts:
        match = re.search(r"(\d+)", text)
        if match:
            count = int(match.group(1))
            if 0 < count < MAX_COUNT_LABEL:
                return count
    return max(visible_count * TOTAL_ESTIMATE_FACTOR, MIN_TOTAL_ESTIMATE)


# --------------- Extraction session ---------------
_GO = "go"
_RESTART = "restart"
_HALT = "halt"


class ExtractionSession:
    """
    One extraction actor per run. Owns the emitted-id set, counters and run flags.
    Commands arrive on channel.commands; wire messages go out on channel.events.
    """

    def __init__(self, driver: PageDriver, channel: MessageChannel, timings: ExtractionTimings | None = None):
        self.driver = driver
        self.channel = channel
        self.timings = timings or ExtractionTimings()
        self.is_extracting = False
        self.is_paused = False
        self.total_count = 0
        self.extracted_count = 0
        self.current_page = 1
        self.retry_count = 0
        self._emitted_ids: set[str] = set()
        self._resume = asyncio.Event()
        self._resume.set()
        self._start_url = ""
        self._run_task: asyncio.Task | None = None
        self._command_task: asyncio.Task | None = None
        self._watch_task: asyncio.Task | None = None

    # ---- lifecycle ----
    async def attach(self) -> None:
        """Start listening for commands and watching navigation; announce readiness."""
        self._command_task = asyncio.create_task(self._command_loop())
        self._watch_task = asyncio.create_task(self._watch_navigation())
        await self._post({"type": "initialized", "message": "extractor initialized"})

    async def close(self) -> None:
        self.is_extracting = False
        self._resume.set()
        tasks = [t for t in (self._run_task, self._command_task, self._watch_task) if t is not None]
        current = asyncio.current_task()
        for task in tasks:
            if task is not current:
                task.cancel()
        for task in tasks:
            if task is current:
                continue
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._run_task = self._command_task = self._watch_task = None

    async def _post(self, message: dict) -> None:
        await self.channel.post(message)

    async def _command_loop(self) -> None:
        while True:
            try:
                command = await self.channel.next_command()
            except ProtocolError as e:
                logger.warning("Ignoring command: %s", e)
                continue
            if command is Command.START:
                await self.start_extraction()
            elif command is Command.PAUSE:
                await self.pause_extraction()
            elif command is Command.RESUME:
                await self.resume_extraction()
            elif command is Command.STOP:
                await self.stop_extraction()

    # ---- commands ----
    async def start_extraction(self) -> None:
        if self.is_extracting:
            logger.info("Extraction already in progress")
            return
        self.is_paused = False
        self._resume.set()
        self.total_count = 0
        self.extracted_count = 0
        self.current_page = 1
        self.retry_count = 0
        self._emitted_ids = set()

        try:
            sample = await self.driver.sample_page_type()
        except EvalError as e:
            await self._post({"type": "error", "message": f"page check failed: {e}"})
            return
        if not is_collection_page(sample):
            logger.info("Page check failed: %s", sample.get("url"))
            await self._post({"type": "error", "message": "not on the expected page"})
            return

        self.is_extracting = True
        self._start_url = self.driver.current_url
        logger.info("Starting extraction on %s", self._start_url)
        await self._post({"type": "progress", "total": 0, "current": 0})
        self._run_task = asyncio.create_task(self._run())

    async def pause_extraction(self) -> None:
        if not self.is_extracting or self.is_paused:
            return
        self.is_paused = True
        self._resume.clear()
        logger.info("Extraction paused")
        await self._post({"type": "paused", "message": "extraction paused"})

    async def resume_extraction(self) -> None:
        if not self.is_extracting or not self.is_paused:
            return
        self.is_paused = False
        self._resume.set()
        logger.info("Extraction resumed")
        await self._post({"type": "resumed", "message": "extraction resumed"})

    async def stop_extraction(self) -> None:
        self.is_extracting = False
        self.is_paused = False
        self._resume.set()
        logger.info("Extraction stopped")
        await self._post({"type": "stopped", "message": "extraction stopped"})

    # ---- run loop ----
    async def _checkpoint(self) -> str:
        """Cancellation point: halt when stopped, block while paused, restart the cycle after a pause."""
        if not self.is_extracting:
            return _HALT
        if self.is_paused:
            await self._resume.wait()
            return _RESTART if self.is_extracting else _HALT
        return _GO

    async def _run(self) -> None:
        try:
            await asyncio.sleep(self.timings.start_delay)
            while True:
                if await self._checkpoint() == _HALT:
                    return
                await self.driver.wait_for_load()
                snapshots = await self.driver.discover()
                if not snapshots:
                    if self.retry_count < self.timings.max_empty_retries:
                        self.retry_count += 1
                        logger.info("No note elements found, retry %d/%d", self.retry_count, self.timings.max_empty_retries)
                        await asyncio.sleep(self.timings.empty_retry_delay)
                        continue
                    raise DiscoveryExhausted(f"no note elements after {self.retry_count} retries")
                self.retry_count = 0
                logger.info("Page %d: %d note elements", self.current_page, len(snapshots))

                if self.total_count == 0:
                    self.total_count = estimate_total(await self.driver.count_label_texts(), len(snapshots))
                    logger.info("Estimated total: %d", self.total_count)

                step = _GO
                for snapshot in snapshots:
                    step = await self._checkpoint()
                    if step != _GO:
                        break
                    if await self._process(snapshot):
                        await asyncio.sleep(self.timings.element_delay)
                if step == _HALT:
                    return
                if step == _RESTART:
                    continue

                await asyncio.sleep(self.timings.page_delay)
                step = await self._checkpoint()
                if step == _HALT:
                    return
                if step == _RESTART:
                    continue

                grew = await self._load_next_page(len(snapshots))
                step = await self._checkpoint()
                if step == _HALT:
                    return
                if step == _RESTART:
                    continue
                if not grew:
                    logger.info("No more content, finishing extraction")
                    await self._complete()
                    return
                self.current_page += 1
        except DiscoveryExhausted as e:
            logger.info("%s, finishing extraction", e)
            await self._complete()
        except EvalError as e:
            logger.error("Extraction failed: %s", e)
            if self.is_extracting:
                self.is_extracting = False
                await self._post({"type": "error", "message": f"extraction failed: {e}"})
        except Exception as e:
            logger.exception("Extraction crashed")
            if self.is_extracting:
                self.is_extracting = False
                await self._post({"type": "error", "message": f"extraction failed: {e}"})

    async def _process(self, snapshot: dict) -> bool:
        """Parse, dedup and emit one element. Returns True when a record was emitted."""
        try:
            record = parse_element(snapshot)
        except ElementParseSkip as e:
            logger.debug("Skipping element: %s", e)
            return False
        if record["id"] in self._emitted_ids:
            return False
        self._emitted_ids.add(record["id"])
        self.extracted_count += 1
        if self.extracted_count > self.total_count:
            self.total_count = self.extracted_count
        logger.debug("Extracted note: %s", record["title"])
        await self._post({"type": "data", "data": record})
        await self._post({"type": "progress", "total": self.total_count, "current": self.extracted_count})
        return True

    async def _load_next_page(self, initial_count: int) -> bool:
        """Click load-more or scroll, wait to settle, report whether more elements appeared."""
        if await self.driver.click_load_more():
            logger.info("Clicked load-more control")
            await asyncio.sleep(self.timings.settle_delay)
        else:
            logger.info("Scrolling to load more content")
            await self._scroll_load()
        await asyncio.sleep(self.timings.settle_delay)
        if not self.is_extracting:
            return False
        new_count = len(await self.driver.discover())
        if new_count > initial_count:
            logger.info("Loaded more content: %d -> %d elements", initial_count, new_count)
            return True
        return False

    async def _scroll_load(self) -> None:
        await self.driver.scroll_to_bottom()
        await asyncio.sleep(self.timings.scroll_wait)
        for _ in range(SCROLL_NUDGES):
            await self.driver.scroll_by(SCROLL_NUDGE_PX)
            await asyncio.sleep(self.timings.scroll_nudge_wait)

    async def _complete(self) -> None:
        if not self.is_extracting:
            return
        self.is_extracting = False
        logger.info("Extraction complete, %d records", self.extracted_count)
        await self._post({
            "type": "complete",
            "message": f"extraction complete, {self.extracted_count} records",
            "total": self.extracted_count,
        })

    async def _watch_navigation(self) -> None:
        """Force-stop the run when the page leaves the collection page mid-extraction."""
        while True:
            await asyncio.sleep(self.timings.nav_watch_interval)
            if not self.is_extracting:
                continue
            url = self.driver.current_url
            if url == self._start_url:
                continue
            logger.info("Page URL changed: %s", url)
            try:
                sample = await self.driver.sample_page_type()
            except EvalError as e:
                # page still loading; look again next tick
                logger.debug("Page check after URL change failed: %s", e)
                continue
            if is_collection_page(sample):
                self._start_url = url
            elif self.is_extracting:
                logger.warning("Left the collection page, stopping extraction")
                await self.stop_extraction()
