"""Crawl orchestration: session setup/resume and the bounded-concurrency frontier scheduler."""

import asyncio
import logging
import signal
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Deque, Iterable, List, Optional, Set, Tuple, Union
from urllib.parse import urljoin, urlparse

import httpx

from seo_audit.analyzer import analyze
from seo_audit.config import CrawlConfig
from seo_audit.constants import HTML_CONTENT_TYPE_MARKER, ROBOTS_SKIP_REASON, SEED_DEPTH
from seo_audit.database import AbstractCrawlStore, open_site_database, seen_urls
from seo_audit.fetcher import create_http_client, fetch_page
from seo_audit.models import DiscoveredUrl, FetchResult, PageResult, SessionStatus
from seo_audit.robots import PermissiveRobotsPolicy, RobotsPolicy, fetch_robots
from seo_audit.sitemap_parser import get_sitemap_urls

logger = logging.getLogger(__name__)


class CrawlSetupError(Exception):
    """Raised when a crawl cannot start (bad arguments, nothing to resume)."""


class CrawlInterrupted(Exception):
    """Raised when a running crawl was stopped by a signal."""
    def __init__(self, session_id: int):
        self.session_id = session_id
        super().__init__(f"Crawl session {session_id} interrupted")


class Outcome(str, Enum):
    """How a fetched URL is classified before persisting."""
    FETCH_FAILED = "fetch_failed"
    REDIRECT = "redirect"
    HTTP_ERROR = "http_error"
    NON_HTML = "non_html"
    HTML = "html"


@dataclass
class CrawlSession:
    """Everything needed to start the worker pool for a new or resumed session."""
    session_id: int
    site_url: str
    policy: Union[RobotsPolicy, PermissiveRobotsPolicy]
    seen: Set[str] = field(default_factory=set)
    queue: Deque[Tuple[str, int]] = field(default_factory=deque)


def classify_fetch(result: FetchResult) -> Outcome:
    """Map a fetch result onto exactly one outcome branch."""
    if result.failed or result.status_code is None:
        return Outcome.FETCH_FAILED
    if result.is_redirect:
        return Outcome.REDIRECT
    if result.status_code >= 400:
        return Outcome.HTTP_ERROR
    content_type = result.content_type or ""
    if HTML_CONTENT_TYPE_MARKER not in content_type.lower() or not result.body:
        return Outcome.NON_HTML
    return Outcome.HTML


def normalize_site_url(site: str) -> str:
    """Validate a --site value and strip its trailing slash.

    Raises:
        CrawlSetupError: if the value is not an absolute http(s) URL
    """
    parsed = urlparse(site)
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        raise CrawlSetupError(f"--site must be an absolute http(s) URL, got: {site}")
    return site.rstrip("/")


def _seed(session: CrawlSession, store: AbstractCrawlStore, url: str, in_sitemap: bool) -> None:
    if url in session.seen:
        return
    session.seen.add(url)
    store.upsert_page(session.session_id, url, depth=SEED_DEPTH, in_sitemap=in_sitemap)
    session.queue.append((url, SEED_DEPTH))


async def _seed_frontier(
    session: CrawlSession,
    store: AbstractCrawlStore,
    config: CrawlConfig,
    client: httpx.AsyncClient,
) -> None:
    """Queue every sitemap URL, then the site root."""
    logger.info("Fetching sitemap...")
    sitemap_urls = await get_sitemap_urls(
        client, session.site_url, session.policy.get_sitemap_urls(), config
    )
    logger.info(f"Found {len(sitemap_urls)} URL(s) in sitemap")

    for url in sitemap_urls:
        _seed(session, store, url, in_sitemap=True)

    # If the site URL is a subdirectory (e.g. /blog), that path is the start
    # point, not the domain root. Skipped only on an exact match.
    _seed(session, store, session.site_url + "/", in_sitemap=False)


async def init_session(
    store: AbstractCrawlStore,
    site_url: str,
    label: Optional[str],
    config: CrawlConfig,
    client: httpx.AsyncClient,
    session_id: Optional[int] = None,
) -> CrawlSession:
    """Start a new crawl session.

    Creates the session row, loads robots.txt and the sitemap, and seeds the
    frontier with every sitemap URL followed by the site root.

    Args:
        store: Crawl store for the site
        site_url: Site root without trailing slash, e.g. 'https://example.com'
        label: Optional human-readable label, e.g. 'baseline'
        config: Crawl configuration
        client: Shared HTTP client
        session_id: Session row to seed, created here when omitted

    Returns:
        CrawlSession with a seeded seen-set and queue
    """
    if session_id is None:
        session_id = store.create_session(site_url, label)
    logger.info(f"Starting session {session_id} for {urlparse(site_url).hostname}...")

    logger.info("Fetching robots.txt...")
    policy = await fetch_robots(client, site_url, config)

    session = CrawlSession(session_id=session_id, site_url=site_url, policy=policy)
    await _seed_frontier(session, store, config, client)
    return session


async def resume_session(
    store: AbstractCrawlStore,
    config: CrawlConfig,
    client: httpx.AsyncClient,
) -> CrawlSession:
    """Resume the most recent interrupted session.

    The seen-set is rebuilt from every page URL and every link target stored
    before the interruption, so URLs discovered but never dispatched are not
    queued twice. Pending pages are queued shallowest first. A session
    interrupted before any page was stored is seeded like a new one.

    Raises:
        CrawlSetupError: if there is no interrupted session
    """
    interrupted = store.get_latest_interrupted_session()
    if interrupted is None:
        raise CrawlSetupError("No interrupted session found")

    session_id = interrupted.id
    logger.info(f"Resuming session {session_id} ({interrupted.label or 'unlabeled'})...")

    # robots.txt may have changed since the interruption
    logger.info("Fetching robots.txt...")
    policy = await fetch_robots(client, interrupted.site_url, config)

    session = CrawlSession(
        session_id=session_id,
        site_url=interrupted.site_url,
        policy=policy,
        seen=seen_urls(store, session_id),
        queue=deque(store.get_pending_urls(session_id)),
    )
    if not session.seen:
        logger.info("Session was interrupted before it was seeded")
        await _seed_frontier(session, store, config, client)
    store.update_session_status(session_id, SessionStatus.RUNNING)
    return session


class CrawlScheduler:
    """Owns the frontier of one running session and drives the worker pool.

    All frontier state (seen, queue, active_count) is touched only from the
    event loop thread. Workers suspend while fetching and while pausing for
    the crawl delay; store writes are synchronous.
    """

    def __init__(
        self,
        store: AbstractCrawlStore,
        session: CrawlSession,
        config: CrawlConfig,
        client: httpx.AsyncClient,
        crawl_delay: Optional[float] = None,
    ):
        """Initialize the scheduler.

        Args:
            store: Crawl store shared by all workers
            session: Seeded session from init_session/resume_session
            config: Crawl configuration (concurrency, timeout, user agent)
            client: Shared HTTP client
            crawl_delay: Seconds each worker pauses after a unit of work
        """
        self.store = store
        self.session_id = session.session_id
        self.site_url = session.site_url
        self.policy = session.policy
        self.seen = session.seen
        self.queue = session.queue
        self.config = config
        self.client = client
        self.crawl_delay = crawl_delay or None

        self.active_count = 0
        self.dispatched: List[str] = []
        self._shutdown = asyncio.Event()
        self._drained = asyncio.Event()
        self._condition = asyncio.Condition()
        self._workers: List[asyncio.Task] = []

    @property
    def shutting_down(self) -> bool:
        return self._shutdown.is_set()

    def request_shutdown(self) -> None:
        """Stop dispatching new URLs. In-flight units finish normally."""
        self._shutdown.set()

    def abort(self) -> None:
        """Stop dispatching and cancel every worker, abandoning in-flight fetches."""
        self._shutdown.set()
        for worker in self._workers:
            worker.cancel()

    # -------------------------------------------------------------------------
    # Frontier
    # -------------------------------------------------------------------------

    def enqueue(self, discovered: Iterable[DiscoveredUrl]) -> int:
        """Add unseen URLs to the frontier. Returns how many were added.

        The seen-set is checked before anything is queued, which is what
        guarantees at-most-once dispatch per URL.
        """
        added = 0
        for item in discovered:
            if item.url in self.seen:
                continue
            self.seen.add(item.url)
            self.store.upsert_page(self.session_id, item.url, depth=item.depth)
            self.queue.append((item.url, item.depth))
            added += 1
        return added

    def _can_dispatch(self) -> bool:
        return bool(self.queue) and not self.shutting_down

    # -------------------------------------------------------------------------
    # Unit of work
    # -------------------------------------------------------------------------

    async def process_url(self, url: str, depth: int) -> List[DiscoveredUrl]:
        """Fetch, classify and persist one URL.

        Returns:
            URLs discovered on the page (redirect target or internal links)
        """
        if not self.policy.is_allowed(url):
            self.store.mark_page_skipped(self.session_id, url, ROBOTS_SKIP_REASON)
            logger.info(f"  SKIP {url}")
            return []

        self.dispatched.append(url)
        result = await fetch_page(self.client, url, self.config)
        outcome = classify_fetch(result)

        if outcome is Outcome.FETCH_FAILED:
            self.store.mark_page_error(self.session_id, url, None, result.error_message)
            logger.info(f"  ERR  {url} - {result.error_message}")
            return []

        if outcome is Outcome.REDIRECT:
            target = urljoin(url, result.redirect_location) if result.redirect_location else None
            self.store.mark_page_crawled(self.session_id, url, PageResult(
                status_code=result.status_code,
                redirect_url=target,
                is_indexable=0,
                response_time_ms=result.elapsed_ms,
            ))
            logger.info(f"  {result.status_code}  {url} -> {target or '(unknown)'}")
            # A redirect is the same logical page, so depth does not increase
            return [DiscoveredUrl(target, depth)] if target else []

        if outcome is Outcome.HTTP_ERROR:
            self.store.mark_page_error(
                self.session_id, url, result.status_code, f"HTTP {result.status_code}"
            )
            logger.info(f"  {result.status_code} {url}")
            return []

        if outcome is Outcome.NON_HTML:
            # Indexability is not meaningful for PDFs, images, etc.
            self.store.mark_page_crawled(self.session_id, url, PageResult(
                status_code=result.status_code,
                content_type=result.content_type,
                response_time_ms=result.elapsed_ms,
                page_size_bytes=result.size_bytes,
            ))
            logger.info(f"  {result.status_code}  {url} ({result.content_type or 'unknown type'})")
            return []

        analysis = analyze(result.body, result.headers, url)
        page = PageResult(
            status_code=result.status_code,
            content_type=result.content_type,
            response_time_ms=result.elapsed_ms,
            page_size_bytes=result.size_bytes,
            **analysis.seo_fields(),
        )
        self.store.persist_page_result(self.session_id, url, page, analysis.links, analysis.images)
        logger.info(f'  {result.status_code}  {url} - "{analysis.title or "(no title)"}"')

        return [DiscoveredUrl(target, depth + 1) for target in analysis.internal_targets()]

    async def _run_unit(self, url: str, depth: int) -> None:
        try:
            discovered = await self.process_url(url, depth)
            self.enqueue(discovered)
        except Exception:
            logger.exception(f"Worker error while processing {url}")

    # -------------------------------------------------------------------------
    # Worker pool
    # -------------------------------------------------------------------------

    async def _pause(self) -> None:
        """Per-worker crawl delay, cut short by a shutdown request."""
        try:
            await asyncio.wait_for(self._shutdown.wait(), timeout=self.crawl_delay)
        except asyncio.TimeoutError:
            pass

    async def _worker(self, worker_id: int) -> None:
        while True:
            async with self._condition:
                await self._condition.wait_for(
                    lambda: self._can_dispatch() or self.active_count == 0
                )
                if not self._can_dispatch():
                    # Nothing in flight and nothing more to dispatch
                    self._drained.set()
                    self._condition.notify_all()
                    return
                url, depth = self.queue.popleft()
                self.active_count += 1

            try:
                await self._run_unit(url, depth)
            finally:
                self.active_count -= 1

            async with self._condition:
                self._condition.notify_all()
                if self.active_count == 0 and not self._can_dispatch():
                    self._drained.set()
                    return

            if self.crawl_delay and not self.shutting_down:
                await self._pause()

    async def run(self) -> None:
        """Run workers until the frontier drains, or until shutdown lets in-flight work finish."""
        self._workers = [
            asyncio.create_task(self._worker(worker_id), name=f"crawl-worker-{worker_id}")
            for worker_id in range(self.config.concurrency)
        ]
        try:
            await self._drained.wait()
        finally:
            # Remaining workers are idle or pausing; in-flight ones only on cancellation
            for worker in self._workers:
                worker.cancel()
            await asyncio.gather(*self._workers, return_exceptions=True)


class _InterruptHandler:
    """Turns SIGINT/SIGTERM into cancellation of the current crawl stage.

    The stages are session setup and the worker pool. In-flight fetches are
    abandoned rather than awaited; their pages stay pending for --resume.
    """

    def __init__(self):
        self.triggered = False
        self.scheduler: Optional[CrawlScheduler] = None
        self._stage: Optional[asyncio.Future] = None
        self._installed: List[int] = []

    def install(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.trigger)
                self._installed.append(sig)
            except (NotImplementedError, RuntimeError, ValueError):
                # Not supported on this platform or outside the main thread
                pass

    def remove(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in self._installed:
            loop.remove_signal_handler(sig)
        self._installed = []

    def trigger(self) -> None:
        if self.triggered:
            return
        self.triggered = True
        logger.warning("Interrupted - saving progress...")
        if self.scheduler is not None:
            self.scheduler.abort()
        if self._stage is not None:
            self._stage.cancel()

    async def run(self, coro):
        """Await one stage. Raises CancelledError if interrupted before or during it."""
        if self.triggered:
            coro.close()
            raise asyncio.CancelledError()
        self._stage = asyncio.ensure_future(coro)
        try:
            return await self._stage
        finally:
            self._stage = None


async def run_crawl(
    site: Optional[str],
    label: Optional[str] = None,
    resume: bool = False,
    config: Optional[CrawlConfig] = None,
    client: Optional[httpx.AsyncClient] = None,
    store: Optional[AbstractCrawlStore] = None,
) -> int:
    """Main crawl entry point.

    SIGINT/SIGTERM at any point after the store is open, including while
    robots.txt and sitemaps are fetched, leaves the session interrupted.

    Args:
        site: Site URL from --site
        label: Optional session label
        resume: Resume the latest interrupted session instead of starting one
        config: Crawl configuration (defaults to CrawlConfig.from_env())
        client: HTTP client to use (defaults to create_http_client(config))
        store: Crawl store to use (defaults to the site's database)

    Returns:
        The session id

    Raises:
        CrawlSetupError: on invalid arguments or nothing to resume
        CrawlInterrupted: when stopped by SIGINT/SIGTERM
    """
    if not site:
        raise CrawlSetupError(
            "--site is required. Usage: crawl --site <url> [--label <label>] [--resume]"
        )
    config = config or CrawlConfig.from_env()
    site_url = normalize_site_url(site)
    store = store or open_site_database(urlparse(site_url).hostname, config.audits_dir)
    owns_client = client is None
    client = client or create_http_client(config)

    interrupts = _InterruptHandler()
    interrupts.install()
    session: Optional[CrawlSession] = None
    new_session_id: Optional[int] = None

    try:
        if resume:
            setup = resume_session(store, config, client)
        else:
            new_session_id = store.create_session(site_url, label)
            setup = init_session(store, site_url, label, config, client, session_id=new_session_id)
        session = await interrupts.run(setup)

        crawl_delay = session.policy.get_crawl_delay() if config.respect_crawl_delay else None
        scheduler = CrawlScheduler(store, session, config, client, crawl_delay=crawl_delay)
        interrupts.scheduler = scheduler

        delay_note = f" | Crawl delay: {crawl_delay}s" if crawl_delay else ""
        logger.info(
            f"Queue: {len(scheduler.queue)} URL(s) | Concurrency: {config.concurrency}{delay_note}"
        )

        await interrupts.run(scheduler.run())

        store.update_session_status(session.session_id, SessionStatus.COMPLETE)
        counts = store.get_status_counts(session.session_id)
        logger.info(
            f"Done - session {session.session_id} | "
            f"{counts.get('crawled', 0)} crawled, {counts.get('error', 0)} errors, "
            f"{counts.get('skipped', 0)} skipped"
        )
        return session.session_id
    except asyncio.CancelledError:
        if not interrupts.triggered:
            raise
        session_id = _interrupted_session_id(store, session, new_session_id)
        store.update_session_status(session_id, SessionStatus.INTERRUPTED)
        raise CrawlInterrupted(session_id) from None
    finally:
        interrupts.remove()
        store.close()
        if owns_client:
            await client.aclose()


def _interrupted_session_id(
    store: AbstractCrawlStore,
    session: Optional[CrawlSession],
    new_session_id: Optional[int],
) -> int:
    if session is not None:
        return session.session_id
    if new_session_id is not None:
        return new_session_id
    # Resume was interrupted during setup; the session is still marked interrupted
    latest = store.get_latest_interrupted_session()
    if latest is None:
        raise CrawlSetupError("No interrupted session found")
    return latest.id
