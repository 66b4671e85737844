"""SEO site crawler with resumable SQLite sessions and CSV audit reports."""

__version__ = "0.1.0"

from seo_audit.analyzer import analyze
from seo_audit.config import CrawlConfig, load_config, settings
from seo_audit.crawler import (
    CrawlInterrupted,
    CrawlScheduler,
    CrawlSession,
    CrawlSetupError,
    init_session,
    resume_session,
    run_crawl,
)
from seo_audit.database import AbstractCrawlStore, SqliteCrawlStore, open_site_database
from seo_audit.fetcher import create_http_client, fetch_page
from seo_audit.models import (
    DiscoveredUrl,
    FetchResult,
    ImageData,
    LinkData,
    PageAnalysis,
    PageResult,
    PageStatus,
    Session,
    SessionStatus,
)
from seo_audit.report import ReportError, generate_reports, run_report
from seo_audit.robots import RobotsPolicy, fetch_robots
from seo_audit.sitemap_parser import SitemapParser, get_sitemap_urls

__all__ = [
    # Crawl
    "CrawlScheduler",
    "CrawlSession",
    "CrawlSetupError",
    "CrawlInterrupted",
    "init_session",
    "resume_session",
    "run_crawl",
    # Collaborators
    "analyze",
    "create_http_client",
    "fetch_page",
    "fetch_robots",
    "RobotsPolicy",
    "SitemapParser",
    "get_sitemap_urls",
    # Storage
    "AbstractCrawlStore",
    "SqliteCrawlStore",
    "open_site_database",
    # Reports
    "ReportError",
    "generate_reports",
    "run_report",
    # Models
    "DiscoveredUrl",
    "FetchResult",
    "ImageData",
    "LinkData",
    "PageAnalysis",
    "PageResult",
    "PageStatus",
    "Session",
    "SessionStatus",
    # Config
    "CrawlConfig",
    "load_config",
    "settings",
]
