"""Data models for crawl sessions, pages and page analysis."""

from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Optional


class SessionStatus(str, Enum):
    """Lifecycle states of a crawl session."""
    RUNNING = "running"
    COMPLETE = "complete"
    INTERRUPTED = "interrupted"


class PageStatus(str, Enum):
    """States of a page row. Pending until resolved exactly once."""
    PENDING = "pending"
    CRAWLED = "crawled"
    ERROR = "error"
    SKIPPED = "skipped"


@dataclass
class Session:
    """A row from the sessions table."""

    id: int
    site_url: str
    label: Optional[str] = None
    status: str = SessionStatus.RUNNING.value
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    total_pages: Optional[int] = None


@dataclass
class LinkData:
    """A hyperlink discovered on a crawled page."""

    source_url: str
    target_url: str
    anchor_text: Optional[str] = None
    is_external: bool = False


@dataclass
class ImageData:
    """An image discovered on a crawled page.

    ``alt`` is None when the attribute is absent and '' when it is present
    but empty. Both are reported, but they mean different things.
    """

    page_url: str
    src: str
    alt: Optional[str] = None


@dataclass
class PageResult:
    """Resolved fields written to the pages table for one URL.

    The defaults describe an "empty page": no SEO fields, zero counters and
    indexability left unset. The set of fields is the fixed column contract
    of the pages table (see database.SCHEMA_VERSION).
    """

    status_code: Optional[int] = None
    redirect_url: Optional[str] = None
    content_type: Optional[str] = None
    title: Optional[str] = None
    title_length: Optional[int] = None
    meta_description: Optional[str] = None
    meta_desc_length: Optional[int] = None
    h1: Optional[str] = None
    h1_count: int = 0
    h2_count: int = 0
    canonical_url: Optional[str] = None
    robots_directive: Optional[str] = None
    x_robots_tag: Optional[str] = None
    is_indexable: Optional[int] = None
    word_count: int = 0
    internal_link_count: int = 0
    external_link_count: int = 0
    image_count: int = 0
    images_missing_alt: int = 0
    images_empty_alt: int = 0
    has_schema: int = 0
    response_time_ms: Optional[int] = None
    page_size_bytes: Optional[int] = None

    def to_row(self) -> dict:
        """Column name to value mapping, in column order."""
        return {f.name: getattr(self, f.name) for f in fields(self)}


# Column names written by the store for a resolved page, in order
PAGE_RESULT_COLUMNS = tuple(f.name for f in fields(PageResult))


@dataclass
class PageAnalysis:
    """SEO fields extracted from an HTML page, plus its links and images."""

    title: Optional[str] = None
    title_length: Optional[int] = None
    meta_description: Optional[str] = None
    meta_desc_length: Optional[int] = None
    robots_directive: Optional[str] = None
    x_robots_tag: Optional[str] = None
    is_indexable: int = 1
    canonical_url: Optional[str] = None
    h1: Optional[str] = None
    h1_count: int = 0
    h2_count: int = 0
    has_schema: int = 0
    word_count: int = 0
    internal_link_count: int = 0
    external_link_count: int = 0
    image_count: int = 0
    images_missing_alt: int = 0
    images_empty_alt: int = 0
    links: list[LinkData] = field(default_factory=list)
    images: list[ImageData] = field(default_factory=list)

    def seo_fields(self) -> dict:
        """The analysis without the link and image lists."""
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if f.name not in ("links", "images")
        }

    def internal_targets(self) -> list[str]:
        """Target URLs of same-host links, in document order."""
        return [link.target_url for link in self.links if not link.is_external]


@dataclass
class FetchResult:
    """Normalized outcome of a single non-redirect-following GET."""

    url: str
    status_code: Optional[int] = None
    headers: dict[str, str] = field(default_factory=dict)
    body: Optional[str] = None
    redirect_location: Optional[str] = None
    elapsed_ms: int = 0
    error_message: Optional[str] = None
    # Raw response length, before decoding
    size_bytes: Optional[int] = None

    @property
    def failed(self) -> bool:
        return self.error_message is not None

    @property
    def is_redirect(self) -> bool:
        return self.status_code is not None and 300 <= self.status_code < 400

    @property
    def content_type(self) -> Optional[str]:
        return self.headers.get("content-type")


@dataclass
class DiscoveredUrl:
    """A URL found while processing a page, with the depth it would be crawled at."""

    url: str
    depth: int
