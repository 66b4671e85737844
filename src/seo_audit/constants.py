# src/seo_audit/constants.py
"""Centralized constants for the SEO audit crawler.

This module contains magic numbers and default values that are used
across multiple modules. For runtime configuration, see config.py
and CrawlConfig.
"""

# =============================================================================
# Crawler Constants
# =============================================================================

# Default number of concurrent workers in the crawl pool
DEFAULT_CONCURRENCY = 5

# Default request timeout in milliseconds
DEFAULT_REQUEST_TIMEOUT_MS = 15000

# Default user agent sent with every request
DEFAULT_USER_AGENT = "Mozilla/5.0 (compatible; SEO-Audit-Bot/1.0)"

# Default maximum retries for transport failures (not HTTP error statuses)
DEFAULT_MAX_RETRIES = 2

# Initial backoff delay in milliseconds before the first retry
DEFAULT_RETRY_BASE_DELAY_MS = 500

# Base for exponential backoff calculation
EXPONENTIAL_BACKOFF_BASE = 2

# Maximum backoff delay in seconds (cap for exponential growth)
MAX_BACKOFF_DELAY_SECONDS = 30.0

# Reason recorded on pages blocked by robots.txt
ROBOTS_SKIP_REASON = "disallowed by robots.txt"

# Content-type marker that identifies an HTML response
HTML_CONTENT_TYPE_MARKER = "text/html"

# Depth assigned to sitemap and site-root seeds
SEED_DEPTH = 0


# =============================================================================
# Robots.txt and Sitemap Constants
# =============================================================================

# Default sitemap location when robots.txt advertises none
DEFAULT_SITEMAP_PATH = "/sitemap.xml"

# Maximum nesting of sitemap index files to follow
MAX_SITEMAP_DEPTH = 3


# =============================================================================
# Storage Constants
# =============================================================================

# Root directory holding one sub-directory per audited hostname
DEFAULT_AUDITS_DIR = "audits"

# SQLite file name inside each hostname directory
DATABASE_FILENAME = "crawl.db"

# Directory (under the hostname directory) for generated CSV reports
REPORTS_DIRNAME = "reports"


# =============================================================================
# Report Thresholds
# =============================================================================

# Titles shorter or longer than this range are flagged
TITLE_MIN_LENGTH = 30
TITLE_MAX_LENGTH = 60

# Meta descriptions longer than this are flagged
META_DESCRIPTION_MAX_LENGTH = 160

# Characters of a duplicate meta description kept in issue details
ISSUE_DETAIL_PREVIEW_CHARS = 80


# =============================================================================
# Exit Codes
# =============================================================================

EXIT_OK = 0
EXIT_FATAL = 1

# 128 + SIGINT(2), conventional exit code for interrupted processes
EXIT_INTERRUPTED = 130
