"""HTTP fetch client: one GET per URL, redirects not followed, never raises."""

import asyncio
import logging
import time

import httpx

from seo_audit.config import CrawlConfig
from seo_audit.constants import EXPONENTIAL_BACKOFF_BASE, MAX_BACKOFF_DELAY_SECONDS
from seo_audit.models import FetchResult

logger = logging.getLogger(__name__)


def create_http_client(config: CrawlConfig, **kwargs) -> httpx.AsyncClient:
    """Build the HTTP client shared by every worker of a crawl.

    Args:
        config: Crawl configuration (user agent, timeout, concurrency)
        **kwargs: Extra httpx.AsyncClient arguments (e.g. a test transport)

    Returns:
        httpx.AsyncClient that does not follow redirects
    """
    return httpx.AsyncClient(
        follow_redirects=False,
        timeout=config.timeout_seconds,
        headers={"User-Agent": config.user_agent},
        limits=httpx.Limits(max_connections=config.concurrency * 2),
        **kwargs,
    )


def _describe(error: Exception) -> str:
    # Some httpx timeouts carry an empty message
    return str(error) or type(error).__name__


def calculate_backoff_delay(retry_count: int, config: CrawlConfig) -> float:
    """Seconds to wait before retry number `retry_count` (1-based)."""
    delay = (config.retry_base_delay_ms / 1000) * (EXPONENTIAL_BACKOFF_BASE ** (retry_count - 1))
    return min(delay, MAX_BACKOFF_DELAY_SECONDS)


async def fetch_page(client: httpx.AsyncClient, url: str, config: CrawlConfig) -> FetchResult:
    """Fetch a single URL without following redirects.

    Transport failures (DNS, connect, timeout, reset) are retried up to
    config.max_retries times with exponential backoff. HTTP statuses are
    returned as-is and never retried.

    Args:
        client: Shared HTTP client
        url: The URL to fetch
        config: Crawl configuration

    Returns:
        FetchResult describing a response, a redirect or a failure
    """
    start = time.monotonic()
    last_error = None

    for attempt in range(config.max_retries + 1):
        if attempt > 0:
            delay = calculate_backoff_delay(attempt, config)
            logger.debug(f"Retrying {url} in {delay:.2f}s (attempt {attempt + 1}): {last_error}")
            await asyncio.sleep(delay)

        try:
            response = await client.get(
                url,
                headers={"User-Agent": config.user_agent},
                timeout=config.timeout_seconds,
                follow_redirects=False,
            )
        except httpx.TransportError as e:
            last_error = _describe(e)
            continue
        except Exception as e:
            # Invalid URLs, protocol errors and malformed responses are not retried
            last_error = _describe(e)
            break

        elapsed_ms = int((time.monotonic() - start) * 1000)
        headers = {key.lower(): value for key, value in response.headers.items()}

        if 300 <= response.status_code < 400:
            return FetchResult(
                url=url,
                status_code=response.status_code,
                headers=headers,
                redirect_location=response.headers.get("location"),
                elapsed_ms=elapsed_ms,
            )

        try:
            body = response.text
        except (UnicodeDecodeError, LookupError) as e:
            return FetchResult(
                url=url,
                elapsed_ms=elapsed_ms,
                error_message=f"Could not decode response body: {e}",
            )

        return FetchResult(
            url=url,
            status_code=response.status_code,
            headers=headers,
            body=body,
            elapsed_ms=elapsed_ms,
            size_bytes=len(response.content) or None,
        )

    return FetchResult(
        url=url,
        elapsed_ms=int((time.monotonic() - start) * 1000),
        error_message=last_error or "Request failed",
    )
