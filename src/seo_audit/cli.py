"""Command-line interface for the SEO audit crawler."""

import asyncio
import logging
import sys

from seo_audit.config import load_config, settings
from seo_audit.constants import EXIT_FATAL, EXIT_INTERRUPTED, EXIT_OK
from seo_audit.crawler import CrawlInterrupted, run_crawl
from seo_audit.logging_config import setup_logging
from seo_audit.report import run_report

logger = logging.getLogger(__name__)


def _fatal(e: Exception) -> int:
    logger.debug("Fatal error", exc_info=e)
    print(f"Fatal error: {e}", file=sys.stderr)
    return EXIT_FATAL


def crawl_command(args) -> int:
    """Crawl a site into its SQLite database, or resume an interrupted crawl."""
    config = load_config({"concurrency": args.concurrency})
    try:
        asyncio.run(run_crawl(args.site, label=args.label, resume=args.resume, config=config))
    except CrawlInterrupted as e:
        print(f"Session {e.session_id} interrupted. Resume with --resume.", file=sys.stderr)
        return EXIT_INTERRUPTED
    except Exception as e:
        # CrawlSetupError, and store failures such as a schema mismatch
        return _fatal(e)
    return EXIT_OK


def report_command(args) -> int:
    """Write CSV reports for a session, diff two sessions, or list sessions."""
    try:
        run_report(
            args.site,
            session_id=args.session,
            compare=tuple(args.compare) if args.compare else None,
            list_sessions=args.list_sessions,
        )
    except Exception as e:
        # ReportError, and store failures
        return _fatal(e)
    return EXIT_OK


def build_parser():
    import argparse

    parser = argparse.ArgumentParser(
        description="SEO Audit - Crawl a site into SQLite and generate CSV audit reports"
    )

    # Global flags (before subcommands)
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=settings.LOG_LEVEL.upper(),
        help="Set logging verbosity (default: INFO)",
    )
    parser.add_argument(
        "--log-file",
        help="Write logs to file in addition to console",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Crawl command parser
    crawl_parser = subparsers.add_parser(
        "crawl", help="Crawl a site, or resume the latest interrupted crawl."
    )
    crawl_parser.add_argument(
        "--site", help="Site URL to crawl (e.g., https://example.com)"
    )
    crawl_parser.add_argument(
        "--label", help="Optional label for the session (e.g., baseline)"
    )
    crawl_parser.add_argument(
        "--resume",
        action="store_true",
        help="Resume the most recent interrupted session for --site",
    )
    crawl_parser.add_argument(
        "--concurrency",
        type=int,
        help="Number of concurrent workers (default: CONCURRENCY env or 5)",
    )
    crawl_parser.set_defaults(func=crawl_command)

    # Report command parser
    report_parser = subparsers.add_parser(
        "report", help="Generate CSV reports for a crawl session."
    )
    report_parser.add_argument(
        "--site", help="Site URL whose database to report on"
    )
    report_parser.add_argument(
        "--session", type=int, help="Session id (default: latest session)"
    )
    report_parser.add_argument(
        "--compare",
        nargs=2,
        type=int,
        metavar=("A", "B"),
        help="Diff two sessions, A as the baseline",
    )
    report_parser.add_argument(
        "--list-sessions",
        action="store_true",
        help="List all sessions for the site",
    )
    report_parser.set_defaults(func=report_command)

    return parser


def main(argv=None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    # Configure logging based on flags
    setup_logging(
        level=args.log_level,
        log_file=getattr(args, 'log_file', None),
    )

    if hasattr(args, "func"):
        return args.func(args)
    parser.print_help()
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
