# tests/test_database.py
"""Tests for the SQLite crawl store."""

import sqlite3

import pytest

from seo_audit.database import (
    SCHEMA_VERSION,
    SqliteCrawlStore,
    open_site_database,
    seen_urls,
    site_database_path,
)
from seo_audit.models import ImageData, LinkData, PageResult, SessionStatus

SITE = "https://example.com"


@pytest.fixture
def session_id(store):
    return store.create_session(SITE, "baseline")


def _page(store, session_id, url):
    return next(page for page in store.get_pages(session_id) if page["url"] == url)


class TestSessions:

    def test_create_and_get_session(self, store, session_id):
        session = store.get_session(session_id)
        assert session.site_url == SITE
        assert session.label == "baseline"
        assert session.status == "running"
        assert session.started_at is not None
        assert session.completed_at is None

    def test_empty_label_is_stored_as_null(self, store):
        session = store.get_session(store.create_session(SITE, ""))
        assert session.label is None

    def test_complete_sets_completion_fields(self, store, session_id):
        store.upsert_page(session_id, f"{SITE}/")
        store.upsert_page(session_id, f"{SITE}/a")
        store.mark_page_crawled(session_id, f"{SITE}/", PageResult(status_code=200))

        store.update_session_status(session_id, SessionStatus.COMPLETE)

        session = store.get_session(session_id)
        assert session.status == "complete"
        assert session.completed_at is not None
        assert session.total_pages == 1

    def test_latest_interrupted_session(self, store):
        first = store.create_session(SITE)
        second = store.create_session(SITE)
        store.create_session(SITE)
        store.update_session_status(first, SessionStatus.INTERRUPTED)
        store.update_session_status(second, SessionStatus.INTERRUPTED)

        assert store.get_latest_interrupted_session().id == second

    def test_no_interrupted_session(self, store, session_id):
        assert store.get_latest_interrupted_session() is None

    def test_list_sessions_in_id_order(self, store):
        ids = [store.create_session(SITE, label) for label in ("a", "b", "c")]
        assert [session.id for session in store.list_sessions()] == ids


class TestPages:

    def test_upsert_is_insert_if_absent(self, store, session_id):
        store.upsert_page(session_id, f"{SITE}/", depth=0, in_sitemap=True)
        store.mark_page_crawled(session_id, f"{SITE}/", PageResult(status_code=200))
        store.upsert_page(session_id, f"{SITE}/", depth=5, in_sitemap=False)

        pages = store.get_pages(session_id)
        assert len(pages) == 1
        assert pages[0]["status"] == "crawled"
        assert pages[0]["depth"] == 0
        assert pages[0]["in_sitemap"] == 1

    def test_same_url_in_two_sessions(self, store, session_id):
        other = store.create_session(SITE)
        store.upsert_page(session_id, f"{SITE}/")
        store.upsert_page(other, f"{SITE}/")
        assert store.get_all_page_urls(session_id) == [f"{SITE}/"]
        assert store.get_all_page_urls(other) == [f"{SITE}/"]

    def test_mark_error_and_skipped(self, store, session_id):
        store.upsert_page(session_id, f"{SITE}/gone")
        store.upsert_page(session_id, f"{SITE}/down")
        store.upsert_page(session_id, f"{SITE}/private")

        store.mark_page_error(session_id, f"{SITE}/gone", 404, "HTTP 404")
        store.mark_page_error(session_id, f"{SITE}/down", None, "Connection refused")
        store.mark_page_skipped(session_id, f"{SITE}/private", "disallowed by robots.txt")

        gone = _page(store, session_id, f"{SITE}/gone")
        assert gone["status"] == "error"
        assert gone["status_code"] == 404
        assert gone["error_message"] == "HTTP 404"
        assert _page(store, session_id, f"{SITE}/down")["status_code"] is None
        private = _page(store, session_id, f"{SITE}/private")
        assert private["status"] == "skipped"
        assert private["error_message"] == "disallowed by robots.txt"

    def test_pending_urls_ordered_by_depth(self, store, session_id):
        store.upsert_page(session_id, f"{SITE}/deep", depth=2)
        store.upsert_page(session_id, f"{SITE}/", depth=0)
        store.upsert_page(session_id, f"{SITE}/mid", depth=1)
        store.upsert_page(session_id, f"{SITE}/done", depth=0)
        store.mark_page_crawled(session_id, f"{SITE}/done", PageResult(status_code=200))

        assert store.get_pending_urls(session_id) == [
            (f"{SITE}/", 0),
            (f"{SITE}/mid", 1),
            (f"{SITE}/deep", 2),
        ]

    def test_status_counts(self, store, session_id):
        store.upsert_page(session_id, f"{SITE}/a")
        store.upsert_page(session_id, f"{SITE}/b")
        store.upsert_page(session_id, f"{SITE}/c")
        store.mark_page_error(session_id, f"{SITE}/a", 500, "HTTP 500")
        assert store.get_status_counts(session_id) == {"pending": 2, "error": 1}


class TestPersistPageResult:

    @pytest.fixture
    def links(self):
        return [
            LinkData(f"{SITE}/", f"{SITE}/about", "About", False),
            LinkData(f"{SITE}/", "https://other.org/", None, True),
        ]

    @pytest.fixture
    def images(self):
        return [ImageData(f"{SITE}/", f"{SITE}/logo.png", None), ImageData(f"{SITE}/", f"{SITE}/x.png", "")]

    def test_writes_page_links_and_images(self, store, session_id, links, images):
        store.upsert_page(session_id, f"{SITE}/")
        result = PageResult(status_code=200, title="Home", title_length=4, is_indexable=1, images_missing_alt=1)

        store.persist_page_result(session_id, f"{SITE}/", result, links, images)

        page = _page(store, session_id, f"{SITE}/")
        assert page["status"] == "crawled"
        assert page["title"] == "Home"
        assert page["images_missing_alt"] == 1
        assert page["crawled_at"] is not None
        internal = store.get_internal_links(session_id)
        assert [link["target_url"] for link in internal] == [f"{SITE}/about"]
        assert sorted(store.get_link_target_urls(session_id)) == ["https://other.org/", f"{SITE}/about"]
        assert [image["alt"] for image in store.get_images(session_id)] == [None, ""]

    def test_failure_rolls_back_everything(self, store, session_id, links, images, monkeypatch):
        store.upsert_page(session_id, f"{SITE}/")

        def fail(*args, **kwargs):
            raise sqlite3.OperationalError("disk I/O error")

        monkeypatch.setattr(store, "_write_images", fail)

        with pytest.raises(sqlite3.OperationalError):
            store.persist_page_result(session_id, f"{SITE}/", PageResult(status_code=200), links, images)

        page = _page(store, session_id, f"{SITE}/")
        assert page["status"] == "pending"
        assert page["status_code"] is None
        assert store.get_link_target_urls(session_id) == []
        assert store.get_images(session_id) == []


class TestStoreLifecycle:

    def test_close_is_idempotent(self, db_path):
        crawl_store = SqliteCrawlStore(db_path)
        crawl_store.close()
        crawl_store.close()
        assert crawl_store.closed

    def test_reopen_keeps_data(self, db_path):
        crawl_store = SqliteCrawlStore(db_path)
        session_id = crawl_store.create_session(SITE)
        crawl_store.close()

        reopened = SqliteCrawlStore(db_path)
        assert reopened.get_session(session_id).site_url == SITE
        reopened.close()

    def test_schema_version_is_stamped(self, store):
        (version,) = store.conn.execute("PRAGMA user_version").fetchone()
        assert version == SCHEMA_VERSION

    def test_mismatched_schema_version_is_rejected(self, db_path):
        crawl_store = SqliteCrawlStore(db_path)
        crawl_store.conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION + 1}")
        crawl_store.close()

        with pytest.raises(sqlite3.DatabaseError, match="schema version"):
            SqliteCrawlStore(db_path)

    def test_site_database_path(self, tmp_path):
        path = site_database_path("example.com", str(tmp_path))
        assert path == tmp_path / "example.com" / "crawl.db"

    def test_open_site_database_creates_directories(self, tmp_path):
        crawl_store = open_site_database("example.com", str(tmp_path / "audits"))
        assert (tmp_path / "audits" / "example.com" / "crawl.db").exists()
        crawl_store.close()


def test_seen_urls_includes_link_targets(store, session_id):
    store.upsert_page(session_id, f"{SITE}/")
    store.persist_page_result(
        session_id,
        f"{SITE}/",
        PageResult(status_code=200),
        [LinkData(f"{SITE}/", f"{SITE}/never-queued"), LinkData(f"{SITE}/", "https://other.org/", None, True)],
    )

    assert seen_urls(store, session_id) == {f"{SITE}/", f"{SITE}/never-queued", "https://other.org/"}
