# src/seo_audit/database.py
"""Crawl persistence: sessions, pages, links and images in a per-site SQLite file."""

import sqlite3
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Iterable, List, Optional, Set, Tuple, Union
import logging

from seo_audit.config import settings
from seo_audit.constants import DATABASE_FILENAME
from seo_audit.models import (
    PAGE_RESULT_COLUMNS,
    ImageData,
    LinkData,
    PageResult,
    PageStatus,
    Session,
    SessionStatus,
)

logger = logging.getLogger(__name__)

# Bumped whenever the pages column contract (models.PageResult) changes
SCHEMA_VERSION = 1

CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS sessions (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    site_url      TEXT NOT NULL,
    label         TEXT,
    status        TEXT NOT NULL DEFAULT 'running',
    started_at    DATETIME NOT NULL DEFAULT (datetime('now')),
    completed_at  DATETIME,
    total_pages   INTEGER
);

CREATE TABLE IF NOT EXISTS pages (
    session_id          INTEGER NOT NULL,
    url                 TEXT NOT NULL,
    status              TEXT NOT NULL DEFAULT 'pending',
    status_code         INTEGER,
    redirect_url        TEXT,
    content_type        TEXT,
    title               TEXT,
    title_length        INTEGER,
    meta_description    TEXT,
    meta_desc_length    INTEGER,
    h1                  TEXT,
    h1_count            INTEGER,
    h2_count            INTEGER,
    canonical_url       TEXT,
    robots_directive    TEXT,
    x_robots_tag        TEXT,
    is_indexable        INTEGER,
    word_count          INTEGER,
    internal_link_count INTEGER,
    external_link_count INTEGER,
    image_count         INTEGER,
    images_missing_alt  INTEGER,
    images_empty_alt    INTEGER,
    has_schema          INTEGER,
    response_time_ms    INTEGER,
    page_size_bytes     INTEGER,
    depth               INTEGER,
    in_sitemap          INTEGER DEFAULT 0,
    crawled_at          DATETIME,
    error_message       TEXT,
    UNIQUE(session_id, url)
);

CREATE TABLE IF NOT EXISTS links (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id  INTEGER NOT NULL,
    source_url  TEXT NOT NULL,
    target_url  TEXT NOT NULL,
    anchor_text TEXT,
    is_external INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS images (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id  INTEGER NOT NULL,
    page_url    TEXT NOT NULL,
    src         TEXT NOT NULL,
    alt         TEXT
);

CREATE INDEX IF NOT EXISTS idx_pages_session_status ON pages(session_id, status);
CREATE INDEX IF NOT EXISTS idx_links_session ON links(session_id);
CREATE INDEX IF NOT EXISTS idx_images_session ON images(session_id);
"""

_MARK_CRAWLED_SQL = (
    "UPDATE pages SET status = 'crawled', crawled_at = datetime('now'), "
    + ", ".join(f"{column} = :{column}" for column in PAGE_RESULT_COLUMNS)
    + " WHERE session_id = :session_id AND url = :url"
)


class AbstractCrawlStore(ABC):
    """Abstract base class defining the operations the crawler needs from storage."""

    @abstractmethod
    def close(self) -> None:
        """Close the store. Safe to call more than once."""

    # Sessions

    @abstractmethod
    def create_session(self, site_url: str, label: Optional[str] = None) -> int:
        """Create a running session and return its id."""

    @abstractmethod
    def update_session_status(self, session_id: int, status: SessionStatus) -> None:
        """Set a session's status; terminal statuses also record completion."""

    @abstractmethod
    def get_session(self, session_id: int) -> Optional[Session]:
        """Return one session, or None."""

    @abstractmethod
    def list_sessions(self) -> List[Session]:
        """Return all sessions in ascending id order."""

    @abstractmethod
    def get_latest_interrupted_session(self) -> Optional[Session]:
        """Return the most recent interrupted session, or None."""

    # Pages

    @abstractmethod
    def upsert_page(self, session_id: int, url: str, depth: int = 0, in_sitemap: bool = False) -> None:
        """Insert a pending page. Does nothing if the URL already exists for the session."""

    @abstractmethod
    def mark_page_crawled(self, session_id: int, url: str, result: PageResult) -> None:
        """Mark a page crawled and write its resolved fields."""

    @abstractmethod
    def mark_page_error(
        self, session_id: int, url: str, status_code: Optional[int], error_message: Optional[str]
    ) -> None:
        """Mark a page errored."""

    @abstractmethod
    def mark_page_skipped(self, session_id: int, url: str, reason: Optional[str] = None) -> None:
        """Mark a page skipped (e.g. disallowed by robots.txt)."""

    @abstractmethod
    def insert_links(self, session_id: int, links: Iterable[LinkData]) -> None:
        """Bulk-insert links found on a page."""

    @abstractmethod
    def insert_images(self, session_id: int, images: Iterable[ImageData]) -> None:
        """Bulk-insert images found on a page."""

    @abstractmethod
    def persist_page_result(
        self,
        session_id: int,
        url: str,
        result: PageResult,
        links: Iterable[LinkData] = (),
        images: Iterable[ImageData] = (),
    ) -> None:
        """Write a page, its links and its images in a single transaction."""

    # Queries

    @abstractmethod
    def get_pending_urls(self, session_id: int) -> List[Tuple[str, int]]:
        """Return (url, depth) for pending pages, shallowest first."""

    @abstractmethod
    def get_all_page_urls(self, session_id: int) -> List[str]:
        """Return every page URL of the session, any status."""

    @abstractmethod
    def get_link_target_urls(self, session_id: int) -> List[str]:
        """Return every distinct link target discovered in the session."""

    @abstractmethod
    def get_pages(self, session_id: int) -> List[dict]:
        """Return all page rows of the session ordered by URL."""

    @abstractmethod
    def get_images(self, session_id: int) -> List[dict]:
        """Return all image rows of the session."""

    @abstractmethod
    def get_internal_links(self, session_id: int) -> List[dict]:
        """Return all internal link rows of the session."""

    @abstractmethod
    def get_status_counts(self, session_id: int) -> dict:
        """Return the number of pages per status."""


class SqliteCrawlStore(AbstractCrawlStore):
    """SQLite implementation of the crawl store.

    One instance per site: open once and share it across all workers of a
    crawl. Every method runs on the event loop thread, so a single
    connection is enough.
    """

    def __init__(self, db_path: Union[str, Path]):
        """Open (or create) the crawl database.

        Args:
            db_path: Path to the SQLite file, or ':memory:'
        """
        self.db_path = str(db_path)
        self.conn: Optional[sqlite3.Connection] = None
        self.connect()
        self.create_schema()

    @property
    def closed(self) -> bool:
        return self.conn is None

    def connect(self) -> None:
        """Establish SQLite connection."""
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(self.db_path)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode = WAL")
        self.conn.execute("PRAGMA foreign_keys = ON")
        logger.debug(f"Connected to crawl database: {self.db_path}")

    def close(self) -> None:
        """Close SQLite connection."""
        if self.conn:
            self.conn.close()
            self.conn = None
            logger.debug("Closed crawl database connection")

    def create_schema(self) -> None:
        """Create the crawl tables if they don't exist and stamp the schema version."""
        with self.conn:
            self.conn.executescript(CREATE_TABLES_SQL)
        version = self.conn.execute("PRAGMA user_version").fetchone()[0]
        if version == 0:
            self.conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        elif version != SCHEMA_VERSION:
            self.close()
            raise sqlite3.DatabaseError(
                f"Crawl database {self.db_path} has schema version {version}, "
                f"expected {SCHEMA_VERSION}"
            )
        logger.debug("Schema verified/created for crawl database")

    # -------------------------------------------------------------------------
    # Sessions
    # -------------------------------------------------------------------------

    def create_session(self, site_url: str, label: Optional[str] = None) -> int:
        with self.conn:
            cursor = self.conn.execute(
                "INSERT INTO sessions (site_url, label) VALUES (?, ?)",
                (site_url, label or None),
            )
        return cursor.lastrowid

    def update_session_status(self, session_id: int, status: SessionStatus) -> None:
        """Update the status of a session.

        When the status is complete or interrupted, completed_at and
        total_pages (number of crawled pages) are set as well.
        """
        status = SessionStatus(status)
        with self.conn:
            if status in (SessionStatus.COMPLETE, SessionStatus.INTERRUPTED):
                (count,) = self.conn.execute(
                    "SELECT COUNT(*) FROM pages WHERE session_id = ? AND status = ?",
                    (session_id, PageStatus.CRAWLED.value),
                ).fetchone()
                self.conn.execute(
                    "UPDATE sessions SET status = ?, completed_at = datetime('now'), total_pages = ? "
                    "WHERE id = ?",
                    (status.value, count, session_id),
                )
            else:
                self.conn.execute(
                    "UPDATE sessions SET status = ? WHERE id = ?",
                    (status.value, session_id),
                )

    def get_session(self, session_id: int) -> Optional[Session]:
        row = self.conn.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)).fetchone()
        return Session(**dict(row)) if row else None

    def list_sessions(self) -> List[Session]:
        rows = self.conn.execute("SELECT * FROM sessions ORDER BY id").fetchall()
        return [Session(**dict(row)) for row in rows]

    def get_latest_interrupted_session(self) -> Optional[Session]:
        row = self.conn.execute(
            "SELECT * FROM sessions WHERE status = ? ORDER BY id DESC LIMIT 1",
            (SessionStatus.INTERRUPTED.value,),
        ).fetchone()
        return Session(**dict(row)) if row else None

    # -------------------------------------------------------------------------
    # Pages
    # -------------------------------------------------------------------------

    def upsert_page(self, session_id: int, url: str, depth: int = 0, in_sitemap: bool = False) -> None:
        with self.conn:
            self.conn.execute(
                "INSERT INTO pages (session_id, url, status, depth, in_sitemap) "
                "VALUES (?, ?, ?, ?, ?) ON CONFLICT(session_id, url) DO NOTHING",
                (session_id, url, PageStatus.PENDING.value, depth, 1 if in_sitemap else 0),
            )

    def mark_page_crawled(self, session_id: int, url: str, result: PageResult) -> None:
        with self.conn:
            self._write_crawled(session_id, url, result)

    def mark_page_error(
        self, session_id: int, url: str, status_code: Optional[int], error_message: Optional[str]
    ) -> None:
        with self.conn:
            self.conn.execute(
                "UPDATE pages SET status = 'error', status_code = ?, error_message = ?, "
                "crawled_at = datetime('now') WHERE session_id = ? AND url = ?",
                (status_code or None, error_message or None, session_id, url),
            )

    def mark_page_skipped(self, session_id: int, url: str, reason: Optional[str] = None) -> None:
        with self.conn:
            self.conn.execute(
                "UPDATE pages SET status = 'skipped', error_message = ? "
                "WHERE session_id = ? AND url = ?",
                (reason or None, session_id, url),
            )

    def insert_links(self, session_id: int, links: Iterable[LinkData]) -> None:
        with self.conn:
            self._write_links(session_id, links)

    def insert_images(self, session_id: int, images: Iterable[ImageData]) -> None:
        with self.conn:
            self._write_images(session_id, images)

    def persist_page_result(
        self,
        session_id: int,
        url: str,
        result: PageResult,
        links: Iterable[LinkData] = (),
        images: Iterable[ImageData] = (),
    ) -> None:
        """Write a crawled page with its links and images atomically.

        Either all three land or none do: a failure part-way rolls back the
        page update as well, leaving the page pending.
        """
        with self.conn:
            self._write_crawled(session_id, url, result)
            self._write_links(session_id, links)
            self._write_images(session_id, images)

    # The _write_* helpers never commit; callers own the transaction.

    def _write_crawled(self, session_id: int, url: str, result: PageResult) -> None:
        params = result.to_row()
        params.update(session_id=session_id, url=url)
        self.conn.execute(_MARK_CRAWLED_SQL, params)

    def _write_links(self, session_id: int, links: Iterable[LinkData]) -> None:
        self.conn.executemany(
            "INSERT INTO links (session_id, source_url, target_url, anchor_text, is_external) "
            "VALUES (?, ?, ?, ?, ?)",
            [
                (
                    session_id,
                    link.source_url,
                    link.target_url,
                    link.anchor_text or None,
                    1 if link.is_external else 0,
                )
                for link in links
            ],
        )

    def _write_images(self, session_id: int, images: Iterable[ImageData]) -> None:
        self.conn.executemany(
            "INSERT INTO images (session_id, page_url, src, alt) VALUES (?, ?, ?, ?)",
            [(session_id, image.page_url, image.src, image.alt) for image in images],
        )

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_pending_urls(self, session_id: int) -> List[Tuple[str, int]]:
        rows = self.conn.execute(
            "SELECT url, depth FROM pages WHERE session_id = ? AND status = ? ORDER BY depth ASC, rowid ASC",
            (session_id, PageStatus.PENDING.value),
        ).fetchall()
        return [(row["url"], row["depth"] or 0) for row in rows]

    def get_all_page_urls(self, session_id: int) -> List[str]:
        rows = self.conn.execute("SELECT url FROM pages WHERE session_id = ?", (session_id,))
        return [row["url"] for row in rows]

    def get_link_target_urls(self, session_id: int) -> List[str]:
        rows = self.conn.execute(
            "SELECT DISTINCT target_url FROM links WHERE session_id = ?", (session_id,)
        )
        return [row["target_url"] for row in rows]

    def get_pages(self, session_id: int) -> List[dict]:
        rows = self.conn.execute(
            "SELECT * FROM pages WHERE session_id = ? ORDER BY url", (session_id,)
        )
        return [dict(row) for row in rows]

    def get_images(self, session_id: int) -> List[dict]:
        rows = self.conn.execute("SELECT * FROM images WHERE session_id = ?", (session_id,))
        return [dict(row) for row in rows]

    def get_internal_links(self, session_id: int) -> List[dict]:
        rows = self.conn.execute(
            "SELECT * FROM links WHERE session_id = ? AND is_external = 0", (session_id,)
        )
        return [dict(row) for row in rows]

    def get_status_counts(self, session_id: int) -> dict:
        """Number of pages per status for a session."""
        rows = self.conn.execute(
            "SELECT status, COUNT(*) AS count FROM pages WHERE session_id = ? GROUP BY status",
            (session_id,),
        )
        return {row["status"]: row["count"] for row in rows}


def site_database_path(hostname: str, audits_dir: Optional[str] = None) -> Path:
    """Location of a site's crawl database: <audits_dir>/<hostname>/crawl.db."""
    return Path(audits_dir or settings.AUDITS_DIR) / hostname / DATABASE_FILENAME


def open_site_database(hostname: str, audits_dir: Optional[str] = None) -> SqliteCrawlStore:
    """Factory function to open the crawl store for a hostname.

    Args:
        hostname: Site hostname, e.g. 'example.com'
        audits_dir: Root directory for per-site data. Defaults to settings.AUDITS_DIR.

    Returns:
        An open SqliteCrawlStore
    """
    path = site_database_path(hostname, audits_dir)
    logger.info(f"Using crawl database {path}")
    return SqliteCrawlStore(path)


def seen_urls(store: AbstractCrawlStore, session_id: int) -> Set[str]:
    """Every URL known to a session: all page URLs plus all link targets."""
    seen = set(store.get_all_page_urls(session_id))
    seen.update(store.get_link_target_urls(session_id))
    return seen
