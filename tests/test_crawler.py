# tests/test_crawler.py
"""Tests for session setup, the frontier scheduler and run_crawl."""

import asyncio
import logging
import os
import signal
import sqlite3
import sys
import time
from collections import Counter

import httpx
import pytest

from conftest import SITE, html_page, links_to
from seo_audit.crawler import (
    CrawlInterrupted,
    CrawlScheduler,
    CrawlSetupError,
    Outcome,
    classify_fetch,
    init_session,
    normalize_site_url,
    resume_session,
    run_crawl,
)
from seo_audit.database import open_site_database
from seo_audit.models import FetchResult, SessionStatus
from seo_audit.robots import PermissiveRobotsPolicy, RobotsPolicy

ROOT = f"{SITE}/"

SITEMAP = """<?xml version="1.0" encoding="UTF-8"?>
<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">
  <url><loc>https://example.com/a</loc></url>
  <url><loc>https://example.com/b</loc></url>
</urlset>"""


async def start(store, client, config, crawl_delay=None):
    session = await init_session(store, SITE, None, config, client)
    return CrawlScheduler(store, session, config, client, crawl_delay=crawl_delay)


def pages_by_url(store, session_id):
    return {page["url"]: page for page in store.get_pages(session_id)}


class TestClassifyFetch:

    def test_failure(self):
        assert classify_fetch(FetchResult(url=ROOT, error_message="boom")) is Outcome.FETCH_FAILED

    def test_redirect(self):
        result = FetchResult(url=ROOT, status_code=302, redirect_location="/x")
        assert classify_fetch(result) is Outcome.REDIRECT

    def test_http_error(self):
        assert classify_fetch(FetchResult(url=ROOT, status_code=500, body="x")) is Outcome.HTTP_ERROR

    def test_non_html(self):
        result = FetchResult(url=ROOT, status_code=200, headers={"content-type": "application/pdf"}, body="%PDF")
        assert classify_fetch(result) is Outcome.NON_HTML

    def test_empty_html_body_is_non_html(self):
        result = FetchResult(url=ROOT, status_code=200, headers={"content-type": "text/html"}, body="")
        assert classify_fetch(result) is Outcome.NON_HTML

    def test_html(self):
        result = FetchResult(
            url=ROOT, status_code=200, headers={"content-type": "Text/HTML; charset=utf-8"}, body="<p>"
        )
        assert classify_fetch(result) is Outcome.HTML


class TestNormalizeSiteUrl:

    def test_strips_trailing_slash(self):
        assert normalize_site_url("https://example.com/") == "https://example.com"
        assert normalize_site_url("https://example.com/blog/") == "https://example.com/blog"

    @pytest.mark.parametrize("value", ["example.com", "ftp://example.com", "https://"])
    def test_rejects_non_http_urls(self, value):
        with pytest.raises(CrawlSetupError):
            normalize_site_url(value)


class TestInitSession:

    @pytest.mark.asyncio
    async def test_seeds_sitemap_then_root(self, store, site, client, config):
        site.add(f"{SITE}/sitemap.xml", httpx.Response(200, text=SITEMAP))

        session = await init_session(store, SITE, "baseline", config, client)

        assert list(session.queue) == [(f"{SITE}/a", 0), (f"{SITE}/b", 0), (ROOT, 0)]
        assert session.seen == {f"{SITE}/a", f"{SITE}/b", ROOT}
        pages = pages_by_url(store, session.session_id)
        assert pages[f"{SITE}/a"]["in_sitemap"] == 1
        assert pages[ROOT]["in_sitemap"] == 0
        assert all(page["status"] == "pending" for page in pages.values())
        assert store.get_session(session.session_id).label == "baseline"

    @pytest.mark.asyncio
    async def test_root_listed_in_sitemap_is_not_duplicated(self, store, site, client, config):
        site.add(
            f"{SITE}/sitemap.xml",
            httpx.Response(200, text=SITEMAP.replace("https://example.com/b", ROOT)),
        )

        session = await init_session(store, SITE, None, config, client)

        assert [url for url, _ in session.queue] == [f"{SITE}/a", ROOT]
        assert pages_by_url(store, session.session_id)[ROOT]["in_sitemap"] == 1

    @pytest.mark.asyncio
    async def test_uses_sitemap_advertised_in_robots(self, store, site, client, config):
        site.add(f"{SITE}/robots.txt", httpx.Response(200, text=f"Sitemap: {SITE}/custom.xml\n"))
        site.add(f"{SITE}/custom.xml", httpx.Response(200, text=SITEMAP))

        session = await init_session(store, SITE, None, config, client)

        assert f"{SITE}/sitemap.xml" not in site.requests
        assert f"{SITE}/a" in session.seen

    @pytest.mark.asyncio
    async def test_policy_follows_robots_fetch_outcome(self, store, site, client, config):
        session = await init_session(store, SITE, None, config, client)
        assert isinstance(session.policy, RobotsPolicy)

        def unreachable(request):
            raise httpx.ConnectError("connection refused", request=request)

        site.add(f"{SITE}/robots.txt", unreachable)
        session = await init_session(store, SITE, None, config, client)
        assert isinstance(session.policy, PermissiveRobotsPolicy)

    @pytest.mark.asyncio
    async def test_seeds_existing_session_row(self, store, site, client, config):
        session_id = store.create_session(SITE, "precreated")

        session = await init_session(store, SITE, "precreated", config, client, session_id=session_id)

        assert session.session_id == session_id
        assert len(store.list_sessions()) == 1


class TestCrawlScheduler:

    @pytest.mark.asyncio
    async def test_crawls_internal_links_by_depth(self, store, site, client, config):
        site.add(ROOT, html_page(links_to("/a", "/b", "https://other.org/x")))
        site.add(f"{SITE}/a", html_page(links_to("/b", "/c")))
        site.add(f"{SITE}/b", html_page(links_to("/")))
        site.add(f"{SITE}/c", html_page("<p>leaf</p>"))

        scheduler = await start(store, client, config)
        await scheduler.run()

        pages = pages_by_url(store, scheduler.session_id)
        assert set(pages) == {ROOT, f"{SITE}/a", f"{SITE}/b", f"{SITE}/c"}
        assert {url: page["depth"] for url, page in pages.items()} == {
            ROOT: 0, f"{SITE}/a": 1, f"{SITE}/b": 1, f"{SITE}/c": 2,
        }
        assert all(page["status"] == "crawled" for page in pages.values())
        assert "https://other.org/x" not in site.requests
        assert scheduler.active_count == 0
        assert not scheduler.queue

    @pytest.mark.asyncio
    async def test_each_url_dispatched_at_most_once(self, store, site, client, config):
        paths = [f"/p{i}" for i in range(12)]

        async def slow_page(request):
            # Uneven latency so completions interleave
            await asyncio.sleep(0.001 * (len(str(request.url)) % 4))
            return html_page(links_to("/", *paths))

        site.add(ROOT, slow_page)
        for path in paths:
            site.add(f"{SITE}{path}", slow_page)
        config.concurrency = 5

        scheduler = await start(store, client, config)
        await scheduler.run()

        fetch_counts = Counter(site.fetched_pages())
        assert len(fetch_counts) == 13
        assert set(fetch_counts.values()) == {1}
        assert len(scheduler.dispatched) == len(set(scheduler.dispatched)) == 13

    @pytest.mark.asyncio
    async def test_redirect_target_keeps_depth(self, store, site, client, config):
        site.add(ROOT, html_page(links_to("/old")))
        site.add(f"{SITE}/old", httpx.Response(301, headers={"Location": "/new"}))
        site.add(f"{SITE}/new", html_page("<p>moved here</p>"))

        scheduler = await start(store, client, config)
        await scheduler.run()

        pages = pages_by_url(store, scheduler.session_id)
        old = pages[f"{SITE}/old"]
        assert old["status"] == "crawled"
        assert old["status_code"] == 301
        assert old["redirect_url"] == f"{SITE}/new"
        assert old["is_indexable"] == 0
        assert pages[f"{SITE}/new"]["depth"] == old["depth"] == 1
        assert pages[f"{SITE}/new"]["status"] == "crawled"

    @pytest.mark.asyncio
    async def test_redirect_to_seen_url_is_dropped(self, store, site, client, config):
        site.add(ROOT, html_page(links_to("/loop")))
        site.add(f"{SITE}/loop", httpx.Response(302, headers={"Location": ROOT}))

        scheduler = await start(store, client, config)
        await scheduler.run()

        assert Counter(site.fetched_pages()) == {ROOT: 1, f"{SITE}/loop": 1}

    @pytest.mark.asyncio
    async def test_non_html_page_is_crawled_without_analysis(self, store, site, client, config):
        site.add(ROOT, html_page(links_to("/doc.pdf")))
        site.add(
            f"{SITE}/doc.pdf",
            httpx.Response(200, content=b"%PDF-1.4 binary", headers={"content-type": "application/pdf"}),
        )

        scheduler = await start(store, client, config)
        await scheduler.run()

        pdf = pages_by_url(store, scheduler.session_id)[f"{SITE}/doc.pdf"]
        assert pdf["status"] == "crawled"
        assert pdf["status_code"] == 200
        assert pdf["content_type"] == "application/pdf"
        assert pdf["is_indexable"] is None
        assert pdf["title"] is None
        assert pdf["word_count"] == 0
        assert pdf["page_size_bytes"] > 0

    @pytest.mark.asyncio
    async def test_http_error_and_fetch_failure(self, store, site, client, config):
        def refuse(request):
            raise httpx.ConnectError("Connection refused", request=request)

        site.add(ROOT, html_page(links_to("/missing", "/down")))
        site.add(f"{SITE}/down", refuse)

        scheduler = await start(store, client, config)
        await scheduler.run()

        pages = pages_by_url(store, scheduler.session_id)
        missing = pages[f"{SITE}/missing"]
        assert missing["status"] == "error"
        assert missing["status_code"] == 404
        assert missing["error_message"] == "HTTP 404"
        down = pages[f"{SITE}/down"]
        assert down["status"] == "error"
        assert down["status_code"] is None
        assert down["error_message"] == "Connection refused"

    @pytest.mark.asyncio
    async def test_disallowed_url_is_skipped_without_fetch(self, store, site, client, config, caplog):
        site.add(f"{SITE}/robots.txt", httpx.Response(200, text="User-agent: *\nDisallow: /private/\n"))
        site.add(ROOT, html_page(links_to("/private/secret", "/public")))
        site.add(f"{SITE}/public", html_page("<p>hi</p>"))

        scheduler = await start(store, client, config)
        with caplog.at_level(logging.INFO, logger="seo_audit.crawler"):
            await scheduler.run()

        private = pages_by_url(store, scheduler.session_id)[f"{SITE}/private/secret"]
        assert private["status"] == "skipped"
        assert private["error_message"] == "disallowed by robots.txt"
        assert f"{SITE}/private/secret" not in site.requests
        assert f"{SITE}/private/secret" not in scheduler.dispatched
        assert any("SKIP" in record.getMessage() for record in caplog.records)

    @pytest.mark.asyncio
    async def test_failed_page_write_rolls_back_and_crawl_continues(
        self, store, site, client, config, monkeypatch
    ):
        site.add(ROOT, html_page(links_to("/a") + '<img src="/logo.png">'))

        def fail(*args, **kwargs):
            raise sqlite3.OperationalError("disk I/O error")

        monkeypatch.setattr(store, "_write_images", fail)

        scheduler = await start(store, client, config)
        await scheduler.run()

        root = pages_by_url(store, scheduler.session_id)[ROOT]
        assert root["status"] == "pending"
        assert root["title"] is None
        assert store.get_link_target_urls(scheduler.session_id) == []
        assert store.get_images(scheduler.session_id) == []
        # Nothing was discovered from the failed page
        assert set(pages_by_url(store, scheduler.session_id)) == {ROOT}

    @pytest.mark.asyncio
    async def test_process_url_propagates_store_failure(self, store, site, client, config, monkeypatch):
        site.add(ROOT, html_page('<img src="/logo.png">'))

        def fail(*args, **kwargs):
            raise sqlite3.OperationalError("disk I/O error")

        monkeypatch.setattr(store, "_write_images", fail)
        scheduler = await start(store, client, config)

        with pytest.raises(sqlite3.OperationalError):
            await scheduler.process_url(ROOT, 0)

    @pytest.mark.asyncio
    async def test_shutdown_stops_new_dispatch(self, store, site, client, config):
        scheduler = await start(store, client, config)

        def root_then_stop(request):
            scheduler.request_shutdown()
            return html_page(links_to("/a", "/b"))

        site.add(ROOT, root_then_stop)
        await scheduler.run()

        pages = pages_by_url(store, scheduler.session_id)
        assert pages[ROOT]["status"] == "crawled"
        # Discovered while finishing, but never dispatched
        assert pages[f"{SITE}/a"]["status"] == "pending"
        assert pages[f"{SITE}/b"]["status"] == "pending"
        assert site.fetched_pages() == [ROOT]

    @pytest.mark.asyncio
    async def test_empty_frontier_returns_immediately(self, store, client, config):
        scheduler = await start(store, client, config)
        scheduler.queue.clear()
        await asyncio.wait_for(scheduler.run(), timeout=1)


@pytest.mark.slow
class TestCrawlDelay:

    @pytest.mark.asyncio
    async def test_single_worker_waits_between_pages(self, store, site, client, config):
        chain = ["/", "/1", "/2", "/3", "/4"]
        for current, following in zip(chain, chain[1:] + [None]):
            site.add(f"{SITE}{current}", html_page(links_to(following) if following else "<p>end</p>"))
        config.concurrency = 1

        scheduler = await start(store, client, config, crawl_delay=0.05)
        started = time.monotonic()
        await scheduler.run()
        elapsed = time.monotonic() - started

        assert len(site.fetched_pages()) == 5
        # Four pauses between five pages; none after the last
        assert elapsed >= 0.19

    @pytest.mark.asyncio
    async def test_delay_is_per_worker(self, store, site, client, config):
        children = [f"/c{i}" for i in range(10)]
        site.add(ROOT, html_page(links_to(*children)))
        for child in children:
            site.add(f"{SITE}{child}", html_page("<p>leaf</p>"))
        config.concurrency = 5

        scheduler = await start(store, client, config, crawl_delay=0.2)
        started = time.monotonic()
        await scheduler.run()
        elapsed = time.monotonic() - started

        assert len(site.fetched_pages()) == 11
        # A global delay would need at least 10 x 0.2s
        assert elapsed < 0.8


class TestResume:

    @pytest.mark.asyncio
    async def test_resume_finishes_pending_pages_once(self, store, site, client, config):
        site.add(ROOT, html_page(links_to("/a", "/b", "https://other.org/")))
        site.add(f"{SITE}/a", html_page(links_to("/c")))
        site.add(f"{SITE}/b", html_page(links_to("/a")))
        site.add(f"{SITE}/c", html_page("<p>leaf</p>"))

        # First run: only the root is processed before the interruption
        first = await start(store, client, config)
        url, depth = first.queue.popleft()
        first.enqueue(await first.process_url(url, depth))
        store.update_session_status(first.session_id, SessionStatus.INTERRUPTED)

        resumed = await resume_session(store, config, client)

        assert resumed.session_id == first.session_id
        assert list(resumed.queue) == [(f"{SITE}/a", 1), (f"{SITE}/b", 1)]
        assert {ROOT, f"{SITE}/a", f"{SITE}/b", "https://other.org/"} <= resumed.seen
        assert store.get_session(resumed.session_id).status == "running"

        await CrawlScheduler(store, resumed, config, client).run()

        pages = pages_by_url(store, resumed.session_id)
        assert all(page["status"] == "crawled" for page in pages.values())
        assert set(pages) == {ROOT, f"{SITE}/a", f"{SITE}/b", f"{SITE}/c"}
        assert set(Counter(site.fetched_pages()).values()) == {1}

    @pytest.mark.asyncio
    async def test_resume_uses_latest_interrupted_session(self, store, client, config):
        older = store.create_session(SITE, "old")
        newer = store.create_session(SITE, "new")
        store.update_session_status(older, SessionStatus.INTERRUPTED)
        store.update_session_status(newer, SessionStatus.INTERRUPTED)

        resumed = await resume_session(store, config, client)

        assert resumed.session_id == newer

    @pytest.mark.asyncio
    async def test_nothing_to_resume(self, store, client, config):
        store.create_session(SITE)
        with pytest.raises(CrawlSetupError, match="No interrupted session"):
            await resume_session(store, config, client)


class TestRunCrawl:

    @pytest.mark.asyncio
    async def test_full_crawl_completes_session(self, site, client, config):
        site.add(ROOT, html_page(links_to("/a")))
        site.add(f"{SITE}/a", html_page("<p>leaf</p>"))

        session_id = await run_crawl(f"{SITE}/", label="baseline", config=config, client=client)

        store = open_site_database("example.com", config.audits_dir)
        session = store.get_session(session_id)
        assert session.status == "complete"
        assert session.total_pages == 2
        assert session.label == "baseline"
        assert session.site_url == SITE
        store.close()

    @pytest.mark.asyncio
    async def test_resume_picks_up_interrupted_session(self, site, client, config):
        site.add(ROOT, html_page(links_to("/a")))
        site.add(f"{SITE}/a", html_page("<p>leaf</p>"))

        store = open_site_database("example.com", config.audits_dir)
        session_id = store.create_session(SITE, "partial")
        store.upsert_page(session_id, f"{SITE}/a", depth=1)
        store.update_session_status(session_id, SessionStatus.INTERRUPTED)
        store.close()

        assert await run_crawl(SITE, resume=True, config=config, client=client) == session_id

        store = open_site_database("example.com", config.audits_dir)
        assert store.get_session(session_id).status == "complete"
        assert site.fetched_pages() == [f"{SITE}/a"]
        store.close()

    @pytest.mark.asyncio
    async def test_missing_site(self, config):
        with pytest.raises(CrawlSetupError, match="--site is required"):
            await run_crawl(None, config=config)

    @pytest.mark.asyncio
    async def test_resume_without_interrupted_session(self, client, config):
        with pytest.raises(CrawlSetupError):
            await run_crawl(SITE, resume=True, config=config, client=client)

    @pytest.mark.asyncio
    @pytest.mark.skipif(sys.platform == "win32", reason="requires loop signal handlers")
    async def test_sigint_marks_session_interrupted(self, site, client, config):
        async def interrupt(request):
            os.kill(os.getpid(), signal.SIGINT)
            await asyncio.sleep(5)
            return html_page("<p>never</p>")

        site.add(ROOT, interrupt)

        with pytest.raises(CrawlInterrupted) as excinfo:
            await asyncio.wait_for(run_crawl(SITE, config=config, client=client), timeout=3)

        store = open_site_database("example.com", config.audits_dir)
        session = store.get_session(excinfo.value.session_id)
        assert session.status == "interrupted"
        assert store.get_pending_urls(session.id) == [(ROOT, 0)]
        store.close()

    @pytest.mark.asyncio
    @pytest.mark.skipif(sys.platform == "win32", reason="requires loop signal handlers")
    async def test_sigint_during_setup_is_resumable(self, site, client, config):
        async def interrupt(request):
            os.kill(os.getpid(), signal.SIGINT)
            await asyncio.sleep(5)
            return httpx.Response(404)

        site.add(f"{SITE}/robots.txt", interrupt)
        site.add(ROOT, html_page(links_to("/a")))
        site.add(f"{SITE}/a", html_page("<p>leaf</p>"))

        with pytest.raises(CrawlInterrupted) as excinfo:
            await asyncio.wait_for(run_crawl(SITE, config=config, client=client), timeout=3)

        session_id = excinfo.value.session_id
        store = open_site_database("example.com", config.audits_dir)
        assert store.get_session(session_id).status == "interrupted"
        assert store.get_all_page_urls(session_id) == []
        store.close()

        site.add(f"{SITE}/robots.txt", httpx.Response(200, text="User-agent: *\nDisallow:\n"))
        assert await run_crawl(SITE, resume=True, config=config, client=client) == session_id

        store = open_site_database("example.com", config.audits_dir)
        assert store.get_session(session_id).status == "complete"
        assert sorted(store.get_all_page_urls(session_id)) == [ROOT, f"{SITE}/a"]
        store.close()
