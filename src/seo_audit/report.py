"""CSV reports and session diffs over a crawl database.

Row builders are pure functions over page/link/image rows (dicts as returned
by the store). HTML-specific builders take pages already filtered with
html_pages().
"""

import csv
import logging
from collections import Counter
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union
from urllib.parse import urlparse

from seo_audit.config import settings
from seo_audit.constants import (
    HTML_CONTENT_TYPE_MARKER,
    ISSUE_DETAIL_PREVIEW_CHARS,
    META_DESCRIPTION_MAX_LENGTH,
    REPORTS_DIRNAME,
    TITLE_MAX_LENGTH,
    TITLE_MIN_LENGTH,
)
from seo_audit.database import AbstractCrawlStore, open_site_database, site_database_path
from seo_audit.models import PageStatus

logger = logging.getLogger(__name__)

Row = Dict[str, object]

# Fields compared between two sessions; the ones most likely to surface SEO regressions
DIFF_FIELDS = (
    "status_code",
    "title",
    "meta_description",
    "canonical_url",
    "is_indexable",
    "h1",
    "robots_directive",
)

# Files written by generate_reports, in order
REPORT_FILES = (
    "all-pages.csv",
    "page-titles.csv",
    "meta-descriptions.csv",
    "h1-tags.csv",
    "canonicals.csv",
    "redirects.csv",
    "images.csv",
    "internal-links.csv",
    "indexability.csv",
    "sitemap-coverage.csv",
    "issues-summary.csv",
)


class ReportError(Exception):
    """Raised for invalid report arguments or when there is nothing to report on."""


def _blank(value):
    return "" if value is None else value


def _is_redirect(page: dict) -> bool:
    return 300 <= (page.get("status_code") or 0) < 400


def is_html_page(page: dict) -> bool:
    return (
        page.get("status") == PageStatus.CRAWLED.value
        and HTML_CONTENT_TYPE_MARKER in (page.get("content_type") or "")
    )


def html_pages(pages: Iterable[dict]) -> List[dict]:
    """Crawled pages served as HTML."""
    return [page for page in pages if is_html_page(page)]


def count_duplicates(items: Iterable[dict], key: str) -> Counter:
    """Occurrences of each non-empty value of `key`."""
    return Counter(item.get(key) for item in items if item.get(key))


# =============================================================================
# Row builders
# =============================================================================

def all_pages_rows(pages: Sequence[dict]) -> List[Row]:
    return [
        {
            "url": page["url"],
            "status": page["status"],
            "status_code": _blank(page.get("status_code")),
            "content_type": _blank(page.get("content_type")),
            "is_indexable": _blank(page.get("is_indexable")),
            "depth": _blank(page.get("depth")),
        }
        for page in pages
    ]


def page_titles_rows(pages: Sequence[dict]) -> List[Row]:
    counts = count_duplicates(pages, "title")
    return [
        {
            "url": page["url"],
            "title": _blank(page.get("title")),
            "title_length": _blank(page.get("title_length")),
            "missing": 1 if page.get("title") is None else 0,
            "duplicate": 1 if page.get("title") and counts[page["title"]] > 1 else 0,
        }
        for page in pages
    ]


def meta_descriptions_rows(pages: Sequence[dict]) -> List[Row]:
    counts = count_duplicates(pages, "meta_description")
    rows = []
    for page in pages:
        description = page.get("meta_description")
        rows.append({
            "url": page["url"],
            "meta_description": _blank(description),
            "meta_desc_length": _blank(page.get("meta_desc_length")),
            "missing": 1 if description is None else 0,
            "duplicate": 1 if description and counts[description] > 1 else 0,
        })
    return rows


def h1_tags_rows(pages: Sequence[dict]) -> List[Row]:
    rows = []
    for page in pages:
        h1_count = page.get("h1_count") or 0
        if h1_count == 0:
            issue = "missing"
        elif h1_count > 1:
            issue = "multiple"
        else:
            issue = "ok"
        rows.append({
            "url": page["url"],
            "h1": _blank(page.get("h1")),
            "h1_count": h1_count,
            "issue": issue,
        })
    return rows


def canonicals_rows(pages: Sequence[dict]) -> List[Row]:
    rows = []
    for page in pages:
        canonical = page.get("canonical_url")
        if not canonical:
            kind = "missing"
        elif canonical == page["url"]:
            kind = "self"
        else:
            kind = "points-elsewhere"
        rows.append({"url": page["url"], "canonical_url": _blank(canonical), "type": kind})
    return rows


def redirects_rows(pages: Sequence[dict]) -> List[Row]:
    return [
        {
            "source_url": page["url"],
            "redirect_url": _blank(page.get("redirect_url")),
            "status_code": page["status_code"],
        }
        for page in pages
        if _is_redirect(page)
    ]


def images_rows(images: Sequence[dict]) -> List[Row]:
    return [
        {
            "page_url": image["page_url"],
            "src": image["src"],
            "alt": _blank(image.get("alt")),
            "missing_alt": 1 if image.get("alt") is None else 0,
            "empty_alt": 1 if image.get("alt") == "" else 0,
        }
        for image in images
    ]


def internal_links_rows(links: Sequence[dict]) -> List[Row]:
    return [
        {
            "source_url": link["source_url"],
            "target_url": link["target_url"],
            "anchor_text": _blank(link.get("anchor_text")),
        }
        for link in links
    ]


def indexability_rows(pages: Sequence[dict]) -> List[Row]:
    """Non-indexable HTML pages and which directive made them so."""
    rows = []
    for page in pages:
        if page.get("is_indexable") != 0:
            continue
        reasons = []
        if "noindex" in (page.get("robots_directive") or "").lower():
            reasons.append("meta robots")
        if "noindex" in (page.get("x_robots_tag") or "").lower():
            reasons.append("x-robots-tag")
        rows.append({
            "url": page["url"],
            "is_indexable": 0,
            "reason": ", ".join(reasons) or "unknown",
        })
    return rows


def sitemap_coverage_rows(pages: Sequence[dict]) -> List[Row]:
    """URLs whose sitemap membership and crawl status disagree."""
    rows = []
    for page in pages:
        crawled = page["status"] == PageStatus.CRAWLED.value
        if page.get("in_sitemap") == 1 and not crawled:
            issue = "in_sitemap_not_crawled"
        elif page.get("in_sitemap") == 0 and crawled:
            issue = "crawled_not_in_sitemap"
        else:
            continue
        rows.append({
            "url": page["url"],
            "in_sitemap": page["in_sitemap"],
            "status": page["status"],
            "issue": issue,
        })
    return rows


def issues_summary_rows(pages: Sequence[dict]) -> List[Row]:
    """One row per issue per URL.

    Takes all pages, not just HTML ones: redirects, broken pages and fetch
    errors are reported too. HTML checks are applied to HTML pages only.

    Issue types: missing_title, title_too_long, title_too_short,
    duplicate_title, missing_meta_description, meta_description_too_long,
    duplicate_meta_description, missing_h1, multiple_h1, noindex,
    missing_canonical, canonical_mismatch, images_missing_alt,
    images_empty_alt, redirect, broken, fetch_error.
    """
    html = html_pages(pages)
    title_counts = count_duplicates(html, "title")
    description_counts = count_duplicates(html, "meta_description")

    rows: List[Row] = []

    def add(page: dict, issue: str, detail: object = "") -> None:
        rows.append({"url": page["url"], "issue": issue, "detail": detail})

    for page in pages:
        if is_html_page(page):
            title = page.get("title")
            title_length = page.get("title_length") or 0
            if title is None:
                add(page, "missing_title")
            elif title_length > TITLE_MAX_LENGTH:
                add(page, "title_too_long", f"{title_length} chars")
            elif title_length < TITLE_MIN_LENGTH:
                add(page, "title_too_short", f"{title_length} chars")
            if title and title_counts[title] > 1:
                add(page, "duplicate_title", title)

            description = page.get("meta_description")
            description_length = page.get("meta_desc_length") or 0
            if description is None:
                add(page, "missing_meta_description")
            elif description_length > META_DESCRIPTION_MAX_LENGTH:
                add(page, "meta_description_too_long", f"{description_length} chars")
            if description and description_counts[description] > 1:
                add(page, "duplicate_meta_description", description[:ISSUE_DETAIL_PREVIEW_CHARS])

            h1_count = page.get("h1_count") or 0
            if h1_count == 0:
                add(page, "missing_h1")
            elif h1_count > 1:
                add(page, "multiple_h1", f"{h1_count} H1s")

            if page.get("is_indexable") == 0:
                add(page, "noindex", page.get("robots_directive") or page.get("x_robots_tag") or "")

            canonical = page.get("canonical_url")
            if canonical is None:
                add(page, "missing_canonical")
            elif canonical != page["url"]:
                add(page, "canonical_mismatch", canonical)

            if (page.get("images_missing_alt") or 0) > 0:
                add(page, "images_missing_alt", f"{page['images_missing_alt']} images")
            if (page.get("images_empty_alt") or 0) > 0:
                add(page, "images_empty_alt", f"{page['images_empty_alt']} images")

        if _is_redirect(page):
            add(page, "redirect", f"{page['status_code']} -> {page.get('redirect_url') or ''}")
        if (page.get("status_code") or 0) >= 400:
            add(page, "broken", f"HTTP {page['status_code']}")
        if page["status"] == PageStatus.ERROR.value and page.get("error_message"):
            add(page, "fetch_error", page["error_message"])

    return rows


def diff_rows(pages_a: Sequence[dict], pages_b: Sequence[dict]) -> List[Row]:
    """Changes between a baseline session (A) and a later one (B).

    Returns:
        Rows with url, change_type (new_page, changed, removed_page), field
        and both session values
    """
    by_url_a = {page["url"]: page for page in pages_a}
    by_url_b = {page["url"]: page for page in pages_b}
    rows: List[Row] = []

    for url, page_b in by_url_b.items():
        page_a = by_url_a.get(url)
        if page_a is None:
            rows.append({
                "url": url, "change_type": "new_page", "field": "",
                "session_a_value": "", "session_b_value": "",
            })
            continue
        for field_name in DIFF_FIELDS:
            if page_a.get(field_name) != page_b.get(field_name):
                rows.append({
                    "url": url,
                    "change_type": "changed",
                    "field": field_name,
                    "session_a_value": _blank(page_a.get(field_name)),
                    "session_b_value": _blank(page_b.get(field_name)),
                })

    for url in by_url_a:
        if url not in by_url_b:
            rows.append({
                "url": url, "change_type": "removed_page", "field": "",
                "session_a_value": "", "session_b_value": "",
            })

    return rows


# =============================================================================
# Writers
# =============================================================================

def write_csv(path: Union[str, Path], rows: Sequence[Row]) -> Path:
    """Write rows to a CSV file, using the first row's keys as the header.

    Zero rows produce an empty file with no header.
    """
    path = Path(path)
    with open(path, "w", newline="", encoding="utf-8") as f:
        if rows:
            writer = csv.DictWriter(f, fieldnames=list(rows[0].keys()))
            writer.writeheader()
            writer.writerows(rows)
    return path


def generate_reports(store: AbstractCrawlStore, session_id: int, out_dir: Union[str, Path]) -> List[Path]:
    """Write every CSV report for a session into out_dir (created if needed).

    Returns:
        Paths of the written files
    """
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)

    pages = store.get_pages(session_id)
    html = html_pages(pages)
    images = store.get_images(session_id)
    links = store.get_internal_links(session_id)

    reports = {
        "all-pages.csv": all_pages_rows(pages),
        "page-titles.csv": page_titles_rows(html),
        "meta-descriptions.csv": meta_descriptions_rows(html),
        "h1-tags.csv": h1_tags_rows(html),
        "canonicals.csv": canonicals_rows(html),
        "redirects.csv": redirects_rows(pages),
        "images.csv": images_rows(images),
        "internal-links.csv": internal_links_rows(links),
        "indexability.csv": indexability_rows(html),
        "sitemap-coverage.csv": sitemap_coverage_rows(pages),
        "issues-summary.csv": issues_summary_rows(pages),
    }
    written = [write_csv(out_dir / name, reports[name]) for name in REPORT_FILES]
    logger.info(f"Wrote {len(written)} reports to {out_dir}")
    return written


def format_duration(started_at: Optional[str], completed_at: Optional[str]) -> str:
    """'1m 5s' / '42s' between two SQLite timestamps, or '' if either is missing."""
    if not started_at or not completed_at:
        return ""
    elapsed = datetime.fromisoformat(completed_at) - datetime.fromisoformat(started_at)
    minutes, seconds = divmod(int(elapsed.total_seconds()), 60)
    return f"{minutes}m {seconds}s" if minutes > 0 else f"{seconds}s"


def print_summary(store: AbstractCrawlStore, session_id: int, out_dir: Union[str, Path]) -> None:
    """Print a short text summary of a session."""
    session = store.get_session(session_id)
    pages = store.get_pages(session_id)
    html = html_pages(pages)

    crawled = sum(1 for page in pages if page["status"] == PageStatus.CRAWLED.value)
    broken = sum(1 for page in pages if (page.get("status_code") or 0) >= 400)
    missing_titles = sum(1 for page in html if page.get("title") is None)
    noindex = sum(1 for page in html if page.get("is_indexable") == 0)

    label = f" - {session.label}" if session and session.label else ""
    site_url = session.site_url if session else ""
    duration = format_duration(session.started_at, session.completed_at) if session else ""

    print(f"\nSession {session_id}{label} - {site_url}")
    if duration:
        print(f"Duration: {duration}")
    print()
    print(f"Pages crawled:      {crawled:,}")
    print(f"Broken links:       {broken:,}")
    print(f"Missing titles:     {missing_titles:,}")
    print(f"Noindex pages:      {noindex:,}")
    print(f"\nReports: {out_dir}")


def print_sessions(store: AbstractCrawlStore, hostname: str) -> None:
    sessions = store.list_sessions()
    if not sessions:
        print("No sessions found.")
        return

    print(f"\nSessions for {hostname}:")
    print(f"{'ID':<4} {'Status':<13} {'Pages':<6} {'Label':<20} Started")
    print("-" * 65)
    for session in sessions:
        pages = "-" if session.total_pages is None else str(session.total_pages)
        print(
            f"{session.id:<4} {session.status:<13} {pages:<6} "
            f"{(session.label or '-'):<20} {session.started_at}"
        )


def run_report(
    site: Optional[str],
    session_id: Optional[int] = None,
    compare: Optional[Tuple[int, int]] = None,
    list_sessions: bool = False,
    audits_dir: Optional[str] = None,
) -> Optional[Path]:
    """Report entry point: list sessions, diff two sessions or write a session's reports.

    Args:
        site: Site URL from --site
        session_id: Session to report on (defaults to the latest)
        compare: Two session ids (baseline, later) to diff
        list_sessions: Only print the session list
        audits_dir: Root directory for per-site data

    Returns:
        The report directory or diff file written, if any

    Raises:
        ReportError: if --site is missing or there are no sessions
    """
    if not site:
        raise ReportError(
            "--site is required. Usage: report --site <url> [--session <id>] "
            "[--compare <a> <b>] [--list-sessions]"
        )
    hostname = urlparse(site).hostname
    if not hostname:
        raise ReportError(f"--site must be an absolute URL, got: {site}")

    audits_dir = audits_dir or settings.AUDITS_DIR
    reports_dir = site_database_path(hostname, audits_dir).parent / REPORTS_DIRNAME
    store = open_site_database(hostname, audits_dir)

    try:
        if list_sessions:
            print_sessions(store, hostname)
            return None

        if compare:
            id_a, id_b = compare
            rows = diff_rows(store.get_pages(id_a), store.get_pages(id_b))
            reports_dir.mkdir(parents=True, exist_ok=True)
            diff_file = write_csv(reports_dir / f"diff-session-{id_a}-vs-{id_b}.csv", rows)
            print(f"Diff: {diff_file} ({len(rows)} change{'' if len(rows) == 1 else 's'})")
            return diff_file

        if session_id is None:
            sessions = store.list_sessions()
            if not sessions:
                raise ReportError("No sessions found. Run a crawl first.")
            session_id = max(session.id for session in sessions)

        out_dir = reports_dir / f"session-{session_id}"
        generate_reports(store, session_id, out_dir)
        print_summary(store, session_id, out_dir)
        return out_dir
    finally:
        store.close()
