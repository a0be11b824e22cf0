#!/usr/bin/env python3
"""Term rollup CLI — tag posts with every ancestor of their assigned terms.

Finds every post of one post type tagged with the selected terms of a
hierarchical taxonomy and appends the ancestors of those terms that the post
does not carry yet. Nothing is ever removed.

Usage examples:

    # Roll up every term in the category taxonomy
    python3 scripts/term_rollup.py --db content.duckdb category all

    # Only posts of the restaurant type attached to location terms 10, 11 or 12
    python3 scripts/term_rollup.py --db content.duckdb location 10 11 12 \\
      --post_type=restaurant

    # Preview without writing
    python3 scripts/term_rollup.py --db content.duckdb category all --dry-run

Output:
    run summary JSON to stdout, messages and progress to stderr

Exit codes:
    0 success, 1 invalid input, 2 no affected posts, 3 finished with
    per-post write failures
"""
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "src"))

from termrollup.config import RollupConfig, default_db_path  # noqa: E402
from termrollup.content_store import ContentStore  # noqa: E402
from termrollup.io_utils import dumps_pretty, save_json  # noqa: E402
from termrollup.progress import NullProgress, ProgressBar  # noqa: E402
from termrollup.rollup import (  # noqa: E402
    NoAffectedPosts,
    RollupBatchProcessor,
    RollupError,
)

log = logging.getLogger("term_rollup")

EXIT_OK = 0
EXIT_INVALID = 1
EXIT_NO_POSTS = 2
EXIT_PARTIAL = 3


def _log(msg: str) -> None:
    """Write human-readable message to stderr."""
    print(msg, file=sys.stderr)


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for the term rollup CLI."""
    parser = argparse.ArgumentParser(
        description="Attach posts to all ancestors of their terms in a hierarchical taxonomy",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "taxonomy",
        help="Name of the taxonomy to perform the rollup on",
    )
    parser.add_argument(
        "terms", nargs="+", metavar="term",
        help="Term IDs to perform the rollup on, or 'all' for every term in the taxonomy",
    )
    parser.add_argument(
        "--post_type", "--post-type", dest="post_type", default=None,
        help="Post type to restrict the rollup to (default: post)",
    )
    parser.add_argument(
        "--db", default=None,
        help="Path to the content DuckDB (default: $TERMROLLUP_DB)",
    )
    parser.add_argument(
        "--page-size", type=int, default=None, metavar="N",
        help="Posts per page (default: 100)",
    )
    parser.add_argument(
        "--delay", type=float, default=None, metavar="SECONDS",
        help="Pause between pages (default: 1.0)",
    )
    parser.add_argument(
        "--snapshot", action="store_true",
        help="Collect every matching post ID before writing instead of re-querying each page",
    )
    parser.add_argument(
        "--dry-run", action="store_true",
        help="Report the ancestors that would be added without writing",
    )
    parser.add_argument(
        "--save-queries", action="store_true",
        help="Keep a query log between cache flushes (debugging)",
    )
    parser.add_argument(
        "--output", default=None,
        help="Also write the run summary JSON to this path",
    )
    parser.add_argument(
        "-q", "--quiet", action="store_true",
        help="Suppress the per-page progress line",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true",
        help="Verbose output to stderr",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
        stream=sys.stderr,
    )

    try:
        config = RollupConfig.from_env().with_overrides(
            page_size=args.page_size,
            page_delay_seconds=args.delay,
            snapshot=True if args.snapshot else None,
            save_queries=True if args.save_queries else None,
        )
    except ValueError as e:
        _log(f"Error: {e}")
        return EXIT_INVALID

    db_value = args.db or default_db_path()
    if not db_value:
        _log("Error: no content database given (use --db or set TERMROLLUP_DB)")
        return EXIT_INVALID
    db_path = Path(db_value)
    if not db_path.exists():
        _log(f"Error: content database not found: {db_path}")
        return EXIT_INVALID

    store = ContentStore(db_path, save_queries=config.save_queries)
    try:
        processor = RollupBatchProcessor(
            store,
            config=config,
            progress_factory=(lambda _label, _total: NullProgress()) if args.quiet else ProgressBar,
        )
        try:
            summary = processor.rollup(
                args.taxonomy,
                args.terms,
                args.post_type,
                dry_run=args.dry_run,
            )
        except NoAffectedPosts as e:
            _log(f"Error: {e}")
            return EXIT_NO_POSTS
        except RollupError as e:
            _log(f"Error: {e}")
            return EXIT_INVALID
    finally:
        store.close()

    payload = summary.to_dict()
    print(dumps_pretty(payload))
    if args.output:
        save_json(payload, Path(args.output))

    _log(f"Success: {summary.found_posts} affected posts found")
    _log(f"  Pages processed: {summary.pages_processed}")
    _log(f"  Posts updated: {summary.posts_updated}")
    _log(f"  Terms added: {summary.terms_added}")
    if summary.dry_run:
        _log("Success: Dry run complete, nothing written")
        return EXIT_OK
    _log(f"Success: Updated term counts ({summary.terms_recounted} terms)")
    if summary.failures:
        _log(f"Warning: {len(summary.failures)} posts could not be updated")
        return EXIT_PARTIAL
    _log("Success: Terms rolled up")
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
