#!/usr/bin/env python3
"""Seed a content DuckDB from a JSON fixture.

Fixture layout::

    {
      "taxonomies": [{"name": "category", "hierarchical": true, "label": "Categories"}],
      "post_types": [{"name": "post"}],
      "terms": [
        {"term_id": 1, "taxonomy": "category", "name": "Root"},
        {"term_id": 2, "taxonomy": "category", "name": "Mid", "parent": 1}
      ],
      "posts": [
        {"post_id": 100, "post_type": "post", "post_status": "publish",
         "terms": {"category": [2]}}
      ]
    }

Terms may appear in any order; parents are inserted before their children.

Usage:
    python3 scripts/load_content_fixture.py --db content.duckdb --fixture fixture.json
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Any

sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "src"))

from termrollup.content_store import ContentStore, ContentStoreError  # noqa: E402
from termrollup.io_utils import dumps_pretty, load_json  # noqa: E402


def _log(msg: str) -> None:
    """Write human-readable message to stderr."""
    print(msg, file=sys.stderr)


def _order_terms_by_parent(terms: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Order term rows so each parent precedes its children."""
    by_id = {int(t["term_id"]): t for t in terms if t.get("term_id") is not None}
    ordered: list[dict[str, Any]] = []
    placed: set[int] = set()
    visiting: set[int] = set()

    def place(term: dict[str, Any]) -> None:
        term_id = int(term["term_id"])
        if term_id in placed:
            return
        if term_id in visiting:
            raise ValueError(f"Parent cycle at term {term_id}")
        visiting.add(term_id)
        parent = int(term.get("parent") or 0)
        if parent and parent in by_id:
            place(by_id[parent])
        visiting.discard(term_id)
        placed.add(term_id)
        ordered.append(term)

    for term in terms:
        if term.get("term_id") is None:
            raise ValueError(f"Term without term_id: {term}")
        place(term)
    return ordered


def load_fixture(store: ContentStore, fixture: dict[str, Any]) -> dict[str, int]:
    """Insert every fixture row into *store*; return per-table counts."""
    counts = {"taxonomies": 0, "post_types": 0, "terms": 0, "posts": 0, "relationships": 0}

    for tax in fixture.get("taxonomies", []):
        store.register_taxonomy(
            str(tax["name"]),
            hierarchical=bool(tax.get("hierarchical", False)),
            label=str(tax.get("label") or ""),
        )
        counts["taxonomies"] += 1

    for post_type in fixture.get("post_types", []):
        store.register_post_type(str(post_type["name"]), label=str(post_type.get("label") or ""))
        counts["post_types"] += 1

    for term in _order_terms_by_parent(list(fixture.get("terms", []))):
        store.insert_term(
            str(term["taxonomy"]),
            str(term["name"]),
            term_id=int(term["term_id"]),
            parent=int(term.get("parent") or 0),
            slug=str(term.get("slug") or ""),
        )
        counts["terms"] += 1

    with store.deferred_term_counting():
        for post in fixture.get("posts", []):
            post_id = store.insert_post(
                str(post.get("post_type") or "post"),
                post_id=int(post["post_id"]) if post.get("post_id") is not None else None,
                post_status=str(post.get("post_status") or "publish"),
                title=str(post.get("title") or ""),
                post_date=post.get("post_date"),
            )
            counts["posts"] += 1
            for taxonomy, term_ids in (post.get("terms") or {}).items():
                added = store.set_object_terms(post_id, term_ids, taxonomy, append=True)
                counts["relationships"] += len(added)

    return counts


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Seed a content DuckDB from a JSON fixture")
    parser.add_argument("--db", required=True, help="Path to the content DuckDB (created if missing)")
    parser.add_argument("--fixture", required=True, help="Path to the fixture JSON")
    parser.add_argument(
        "--recount", action="store_true",
        help="Recount every term of every fixture taxonomy after loading",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    fixture_path = Path(args.fixture)
    if not fixture_path.exists():
        _log(f"Error: fixture not found: {fixture_path}")
        return 1
    fixture = load_json(fixture_path)
    if not isinstance(fixture, dict):
        _log("Error: fixture must be a JSON object")
        return 1

    with ContentStore(Path(args.db), create_if_missing=True) as store:
        try:
            counts = load_fixture(store, fixture)
        except (ContentStoreError, ValueError, KeyError) as e:
            _log(f"Error: could not load fixture: {e}")
            return 1
        if args.recount:
            counts["recounted"] = sum(
                store.recount_taxonomy(str(tax["name"])) for tax in fixture.get("taxonomies", [])
            )

    print(dumps_pretty({"db": str(args.db), "loaded": counts}))
    return 0


if __name__ == "__main__":
    sys.exit(main())
