# tests/conftest.py
"""Shared fixtures: an in-process fake site served through httpx.MockTransport."""

import inspect

import httpx
import pytest
import pytest_asyncio

from seo_audit.config import CrawlConfig
from seo_audit.database import SqliteCrawlStore
from seo_audit.fetcher import create_http_client

SITE = "https://example.com"


def html_page(body: str, title: str = "Example page", status: int = 200, headers=None) -> httpx.Response:
    """HTML response with a <title> and the given <body> content."""
    html = f"<html><head><title>{title}</title></head><body>{body}</body></html>"
    return httpx.Response(status, html=html, headers=headers)


def links_to(*paths: str) -> str:
    return "".join(f'<a href="{path}">{path}</a>' for path in paths)


class FakeSite:
    """Routes absolute URLs to canned responses and records every request.

    Unknown URLs get a 404. A route may be an httpx.Response or a callable
    taking the request, sync or async.
    """

    def __init__(self, routes=None):
        self.routes = dict(routes or {})
        self.requests = []

    def add(self, url: str, response) -> None:
        self.routes[url] = response

    async def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.requests.append(url)
        route = self.routes.get(url)
        if route is None:
            return httpx.Response(404, text="not found")
        if callable(route):
            result = route(request)
            if inspect.isawaitable(result):
                result = await result
            return result
        # Fresh copy so a canned response can be served more than once
        return httpx.Response(route.status_code, headers=route.headers, content=route.content)

    def fetched_pages(self):
        """Requested URLs other than robots.txt and sitemaps."""
        return [
            url for url in self.requests
            if not url.endswith("/robots.txt") and "sitemap" not in url
        ]

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def config(tmp_path):
    """Fast crawl configuration: no retries, no backoff."""
    return CrawlConfig(
        concurrency=3,
        request_timeout_ms=2000,
        max_retries=0,
        retry_base_delay_ms=1,
        audits_dir=str(tmp_path / "audits"),
    )


@pytest.fixture
def site():
    return FakeSite()


@pytest_asyncio.fixture
async def client(site, config):
    http_client = create_http_client(config, transport=site.transport())
    yield http_client
    await http_client.aclose()


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "example.com" / "crawl.db"


@pytest.fixture
def store(db_path):
    crawl_store = SqliteCrawlStore(db_path)
    yield crawl_store
    crawl_store.close()
