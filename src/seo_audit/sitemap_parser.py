"""Sitemap parser that collects page URLs used to seed a crawl."""

import gzip
import logging
import re
from typing import Dict, List, Optional, Sequence
from urllib.parse import urljoin
from xml.etree import ElementTree as ET

import httpx

from seo_audit.config import CrawlConfig
from seo_audit.constants import DEFAULT_SITEMAP_PATH, MAX_SITEMAP_DEPTH

logger = logging.getLogger(__name__)

GZIP_MAGIC = b"\x1f\x8b"


class SitemapParser:
    """
    Parse XML sitemaps to extract URLs for crawling.

    Supports:
    - Standard sitemap.xml files
    - Sitemap index files (nested sitemaps, bounded depth)
    """

    SITEMAP_NS = '{http://www.sitemaps.org/schemas/sitemap/0.9}'

    def __init__(self, client: httpx.AsyncClient, config: CrawlConfig):
        """
        Initialize the sitemap parser.

        Args:
            client: Shared HTTP client
            config: Crawl configuration (user agent, timeout)
        """
        self.client = client
        self.config = config
        # dict keeps first-seen order and de-duplicates
        self._urls: Dict[str, None] = {}
        self._visited_sitemaps: set = set()

    async def parse(self, sitemap_url: str) -> List[str]:
        """
        Parse a sitemap (or sitemap index) and return all page URLs found so far.

        Args:
            sitemap_url: URL to the sitemap.xml or sitemap index

        Returns:
            List of URLs found in the sitemap
        """
        await self._fetch_and_parse(sitemap_url, depth=0)
        return list(self._urls)

    @property
    def urls(self) -> List[str]:
        return list(self._urls)

    async def _fetch_and_parse(self, sitemap_url: str, depth: int) -> None:
        """Fetch one sitemap and parse it, following index entries recursively."""
        if depth > MAX_SITEMAP_DEPTH:
            logger.warning(f"Sitemap nesting too deep, not following {sitemap_url}")
            return
        if sitemap_url in self._visited_sitemaps:
            return
        self._visited_sitemaps.add(sitemap_url)

        content = await self._fetch(sitemap_url)
        if content is None:
            return

        try:
            root = ET.fromstring(self._clean_xml_content(content))
        except ET.ParseError as e:
            logger.warning(f"Failed to parse sitemap XML at {sitemap_url}: {e}")
            return

        root_tag = root.tag.split('}')[-1] if '}' in root.tag else root.tag

        if root_tag == 'sitemapindex':
            for child_url in self._locs(root, 'sitemap'):
                logger.info(f"Found child sitemap: {child_url}")
                await self._fetch_and_parse(urljoin(sitemap_url, child_url), depth + 1)
        elif root_tag == 'urlset':
            count = 0
            for url in self._locs(root, 'url'):
                self._urls.setdefault(url)
                count += 1
            logger.info(f"Extracted {count} URLs from sitemap {sitemap_url}")
        else:
            logger.warning(f"Unknown sitemap root element: {root_tag}")

    async def _fetch(self, sitemap_url: str) -> Optional[str]:
        try:
            response = await self.client.get(
                sitemap_url,
                headers={
                    'User-Agent': self.config.user_agent,
                    'Accept': 'application/xml, text/xml, */*',
                },
                timeout=self.config.timeout_seconds,
                follow_redirects=True,
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(f"Sitemap fetch failed for {sitemap_url}: {e}")
            return None

        # .xml.gz files are usually served without Content-Encoding, so httpx leaves them compressed
        data = response.content
        if data.startswith(GZIP_MAGIC):
            try:
                data = gzip.decompress(data)
            except (OSError, EOFError) as e:
                logger.warning(f"Could not decompress sitemap {sitemap_url}: {e}")
                return None
            return data.decode(response.encoding or "utf-8", errors="replace")
        return response.text

    def _locs(self, root: ET.Element, entry_tag: str) -> List[str]:
        """Text of every <loc> inside <entry_tag> elements, namespaced or not."""
        locs = []
        for element in root.iter():
            tag = element.tag.split('}')[-1]
            if tag != entry_tag:
                continue
            loc = element.find(f'{self.SITEMAP_NS}loc')
            if loc is None:
                loc = element.find('loc')
            if loc is not None and loc.text and loc.text.strip():
                locs.append(loc.text.strip())
        return locs

    def _clean_xml_content(self, content: str) -> str:
        """Strip a DOCTYPE and any leading noise before the XML declaration or root."""
        content = re.sub(r'<!DOCTYPE[^>]*>', '', content)
        match = re.search(r'<\?xml|<(?:urlset|sitemapindex)\b', content)
        if match:
            content = content[match.start():]
        return content.strip()


async def get_sitemap_urls(
    client: httpx.AsyncClient,
    site_url: str,
    sitemap_hints: Sequence[str] = (),
    config: Optional[CrawlConfig] = None,
) -> List[str]:
    """
    Fetch all page URLs from a site's sitemap(s).

    Uses sitemap URLs advertised in robots.txt when there are any, otherwise
    tries /sitemap.xml. Individual sitemap failures are logged and skipped;
    an empty list is returned if nothing could be read.

    Args:
        client: Shared HTTP client
        site_url: Root URL, e.g. 'https://example.com'
        sitemap_hints: Sitemap URLs discovered in robots.txt
        config: Crawl configuration (user agent, timeout)

    Returns:
        De-duplicated list of page URLs, in first-seen order
    """
    candidates = list(sitemap_hints) or [urljoin(site_url, DEFAULT_SITEMAP_PATH)]
    parser = SitemapParser(client, config or CrawlConfig())

    for candidate in candidates:
        await parser.parse(candidate)
    return parser.urls
