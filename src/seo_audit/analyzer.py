"""On-page SEO extraction from fetched HTML. Pure: no I/O."""

import re
from typing import Mapping, Optional
from urllib.parse import urldefrag, urljoin, urlparse

from bs4 import BeautifulSoup

from seo_audit.models import ImageData, LinkData, PageAnalysis

# hrefs that never point at a crawlable page
_SKIPPED_HREF = re.compile(r"^(mailto:|tel:|javascript:|#)", re.IGNORECASE)
_NOINDEX = re.compile(r"noindex", re.IGNORECASE)
_ROBOTS_META_NAMES = ("robots", "googlebot")


def _text_or_none(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def _resolve_link(page_url: str, href: str) -> Optional[str]:
    """Absolute http(s) URL for an href, without its fragment, or None."""
    try:
        absolute, _fragment = urldefrag(urljoin(page_url, href))
        parsed = urlparse(absolute)
    except ValueError:
        return None
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        return None
    return absolute


def _extract_links(soup: BeautifulSoup, url: str, page_host: Optional[str]) -> list[LinkData]:
    links = []
    for anchor in soup.find_all("a", href=True):
        raw = anchor["href"].strip()
        if not raw or _SKIPPED_HREF.match(raw):
            continue

        target_url = _resolve_link(url, raw)
        if target_url is None:
            continue

        links.append(LinkData(
            source_url=url,
            target_url=target_url,
            anchor_text=_text_or_none(anchor.get_text()),
            is_external=urlparse(target_url).hostname != page_host,
        ))
    return links


def _extract_images(soup: BeautifulSoup, url: str) -> list[ImageData]:
    images = []
    for img in soup.find_all("img"):
        src = (img.get("src") or "").strip()
        if not src:
            continue
        try:
            absolute_src = urljoin(url, src)
        except ValueError:
            continue
        # None: attribute absent. '': present but empty.
        images.append(ImageData(page_url=url, src=absolute_src, alt=img.get("alt")))
    return images


def _word_count(soup: BeautifulSoup) -> int:
    body = soup.body
    if body is None:
        return 0
    for element in body.find_all(["script", "style", "noscript"]):
        element.decompose()
    return len(body.get_text(separator=" ").split())


def analyze(html: str, headers: Mapping[str, str], url: str) -> PageAnalysis:
    """Extract SEO-relevant data from a page's HTML and response headers.

    Args:
        html: Raw HTML of the page
        headers: Response headers with lower-cased names
        url: Absolute URL of the page, used to resolve links and images

    Returns:
        PageAnalysis with the SEO fields plus links and images
    """
    soup = BeautifulSoup(html, "lxml")
    page_host = urlparse(url).hostname

    # Title
    title_tag = soup.find("title")
    title = _text_or_none(title_tag.get_text()) if title_tag else None

    # Meta description: present-but-empty stays '' rather than None
    description_tag = soup.find("meta", attrs={"name": "description"})
    meta_description = None
    if description_tag is not None and description_tag.get("content") is not None:
        meta_description = description_tag["content"].strip()

    # Robots directives (meta robots + meta googlebot, joined if both present)
    robots_values = [
        tag["content"]
        for tag in soup.find_all("meta", attrs={"name": list(_ROBOTS_META_NAMES)})
        if tag.get("content")
    ]
    robots_directive = ", ".join(robots_values) if robots_values else None
    x_robots_tag = headers.get("x-robots-tag") or None

    noindex = _NOINDEX.search(robots_directive or "") or _NOINDEX.search(x_robots_tag or "")

    canonical_tag = soup.find("link", rel="canonical")
    canonical_url = (canonical_tag.get("href") or None) if canonical_tag else None

    h1_tags = soup.find_all("h1")
    h1 = _text_or_none(h1_tags[0].get_text()) if h1_tags else None

    has_schema = soup.find("script", attrs={"type": "application/ld+json"}) is not None

    links = _extract_links(soup, url, page_host)
    images = _extract_images(soup, url)
    internal_link_count = sum(1 for link in links if not link.is_external)

    return PageAnalysis(
        title=title,
        title_length=len(title) if title is not None else None,
        meta_description=meta_description,
        meta_desc_length=len(meta_description) if meta_description is not None else None,
        robots_directive=robots_directive,
        x_robots_tag=x_robots_tag,
        is_indexable=0 if noindex else 1,
        canonical_url=canonical_url,
        h1=h1,
        h1_count=len(h1_tags),
        h2_count=len(soup.find_all("h2")),
        has_schema=1 if has_schema else 0,
        # Last: strips script/style/noscript from the tree
        word_count=_word_count(soup),
        internal_link_count=internal_link_count,
        external_link_count=len(links) - internal_link_count,
        image_count=len(images),
        images_missing_alt=sum(1 for image in images if image.alt is None),
        images_empty_alt=sum(1 for image in images if image.alt == ""),
        links=links,
        images=images,
    )
