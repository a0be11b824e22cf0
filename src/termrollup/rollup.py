"""Term rollup: tag posts with every ancestor of the terms they already carry.

Given a hierarchical taxonomy and a term selector (explicit term IDs or
``all``), finds every post tagged with one of those terms and appends the
missing ancestors of its assigned terms. Assignments are only ever added.

Run shape:

1. Validate taxonomy, hierarchy, post type, then the term selector.
2. Resolve the working term set (``all`` → every term in the taxonomy).
3. Query page 1 once for the total; zero matches stops with
   :class:`NoAffectedPosts` before any write.
4. Walk pages of post IDs (re-querying each page by default), diff each
   post's assigned terms against their ancestor chains, and write the
   missing ancestors with append semantics.
5. After every page: tick progress, flush the store's caches, sleep.
6. Term counting stays deferred for the whole loop and is reconciled once
   when the loop exits, on every exit path.
"""
from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable, Iterator, Sequence
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from termrollup.config import RollupConfig
from termrollup.content_store import ContentStore, ContentStoreError, PostQuery, TermRecord
from termrollup.progress import ProgressBar, ProgressReporter

log = logging.getLogger(__name__)

ALL_TERMS = "all"
PROGRESS_LABEL = "Rolling up terms"

_TERM_ID_RE = re.compile(r"[0-9]+")
# Term IDs are stored as BIGINT.
MAX_TERM_ID = 2**63 - 1


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class RollupError(RuntimeError):
    """Base class for rollup failures."""


class UnknownTaxonomy(RollupError):
    def __init__(self, taxonomy: str) -> None:
        super().__init__(f"The taxonomy {taxonomy} does not exist")
        self.taxonomy = taxonomy


class NonHierarchicalTaxonomy(RollupError):
    def __init__(self, taxonomy: str) -> None:
        super().__init__(
            f"The {taxonomy} taxonomy is not hierarchical, so this command should not be used"
        )
        self.taxonomy = taxonomy


class UnknownPostType(RollupError):
    def __init__(self, post_type: str) -> None:
        super().__init__(f"The post type {post_type} does not exist")
        self.post_type = post_type


class InvalidTermID(RollupError):
    """Raised for a malformed term selector."""


class NoAffectedPosts(RollupError):
    def __init__(self) -> None:
        super().__init__("No affected posts found")


class PerItemWriteFailure(RollupError):
    """A single post's ancestor write failed; recorded, never raised from the loop."""

    def __init__(self, post_id: int, term_ids: Sequence[int], cause: Exception) -> None:
        super().__init__(f"Could not add terms {list(term_ids)} to post {post_id}: {cause}")
        self.post_id = post_id
        self.term_ids = list(term_ids)
        self.cause = cause

    def to_dict(self) -> dict[str, Any]:
        return {
            "post_id": self.post_id,
            "term_ids": self.term_ids,
            "error": str(self.cause),
        }


# ---------------------------------------------------------------------------
# Term selection
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class TermSelection:
    """Either every term in the taxonomy or an explicit list of term IDs."""

    all_terms: bool
    term_ids: tuple[int, ...] = ()

    def includes(self, term_id: int) -> bool:
        return self.all_terms or term_id in self.term_ids

    def describe(self) -> str | list[int]:
        return ALL_TERMS if self.all_terms else list(self.term_ids)


def parse_term_selector(tokens: Sequence[str | int]) -> TermSelection:
    """Parse CLI term tokens into a :class:`TermSelection`.

    ``all`` must be the only token. Every other token must be a positive
    integer; duplicates are dropped, order is kept.
    """
    items = [str(t).strip() for t in tokens]
    if not items:
        raise InvalidTermID("At least one term ID (or 'all') is required")
    if ALL_TERMS in items:
        if len(items) != 1:
            raise InvalidTermID("'all' cannot be combined with explicit term IDs")
        return TermSelection(all_terms=True)

    term_ids: list[int] = []
    for raw in items:
        if not _TERM_ID_RE.fullmatch(raw) or not 1 <= int(raw) <= MAX_TERM_ID:
            raise InvalidTermID(f"Invalid term ID: {raw!r} (expected a positive integer or 'all')")
        value = int(raw)
        if value not in term_ids:
            term_ids.append(value)
    return TermSelection(all_terms=False, term_ids=tuple(term_ids))


def missing_ancestors(
    assigned: Sequence[TermRecord],
    selection: TermSelection,
    ancestors_of: Callable[[int], Sequence[int]],
) -> list[int]:
    """Ancestors of the in-scope *assigned* terms that are not assigned yet."""
    assigned_ids = {term.term_id for term in assigned}
    to_add: list[int] = []
    for term in assigned:
        if not selection.includes(term.term_id):
            continue
        if term.is_root:
            continue
        for ancestor in ancestors_of(term.term_id):
            if ancestor not in assigned_ids and ancestor not in to_add:
                to_add.append(ancestor)
    return to_add


# ---------------------------------------------------------------------------
# Summary
# ---------------------------------------------------------------------------

def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


def generate_run_id(prefix: str = "rollup") -> str:
    ts = datetime.now(UTC).strftime("%Y%m%dT%H%M%SZ")
    return f"{prefix}_{ts}_{uuid4().hex[:8]}"


@dataclass(slots=True)
class RollupSummary:
    """Counters and outcome of one rollup run."""

    run_id: str
    taxonomy: str
    post_type: str
    selection: TermSelection
    term_count: int
    dry_run: bool = False
    snapshot: bool = False
    found_posts: int = 0
    pages_processed: int = 0
    posts_processed: int = 0
    posts_skipped: int = 0
    posts_updated: int = 0
    terms_added: int = 0
    terms_recounted: int = 0
    queries_flushed: int = 0
    cache_entries_flushed: int = 0
    failures: list[PerItemWriteFailure] = field(default_factory=list)
    started_at: str = field(default_factory=utc_now_iso)
    finished_at: str | None = None
    duration_seconds: float = 0.0

    @property
    def status(self) -> str:
        if self.dry_run:
            return "dry_run"
        return "completed_with_failures" if self.failures else "ok"

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "status": self.status,
            "taxonomy": self.taxonomy,
            "post_type": self.post_type,
            "terms": self.selection.describe(),
            "term_count": self.term_count,
            "dry_run": self.dry_run,
            "snapshot": self.snapshot,
            "found_posts": self.found_posts,
            "pages_processed": self.pages_processed,
            "posts_processed": self.posts_processed,
            "posts_skipped": self.posts_skipped,
            "posts_updated": self.posts_updated,
            "terms_added": self.terms_added,
            "terms_recounted": self.terms_recounted,
            "queries_flushed": self.queries_flushed,
            "cache_entries_flushed": self.cache_entries_flushed,
            "failures": [f.to_dict() for f in self.failures],
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "duration_seconds": round(self.duration_seconds, 3),
        }


# ---------------------------------------------------------------------------
# Batch processor
# ---------------------------------------------------------------------------

class RollupBatchProcessor:
    """Runs ancestor rollups against a :class:`ContentStore`."""

    def __init__(
        self,
        store: ContentStore,
        *,
        config: RollupConfig | None = None,
        progress_factory: Callable[[str, int], ProgressReporter] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._store = store
        self._config = config or RollupConfig()
        self._progress_factory = progress_factory or ProgressBar
        self._sleep = sleep

    @property
    def config(self) -> RollupConfig:
        return self._config

    def validate(
        self,
        taxonomy: str,
        term_selector: Sequence[str | int],
        post_type: str,
    ) -> TermSelection:
        """Check inputs in order; raise on the first failure."""
        if not self._store.taxonomy_exists(taxonomy):
            raise UnknownTaxonomy(taxonomy)
        if not self._store.is_taxonomy_hierarchical(taxonomy):
            raise NonHierarchicalTaxonomy(taxonomy)
        if not self._store.post_type_exists(post_type):
            raise UnknownPostType(post_type)
        return parse_term_selector(term_selector)

    def resolve_terms(self, taxonomy: str, selection: TermSelection) -> list[int]:
        known = self._store.get_term_ids(taxonomy)
        if selection.all_terms:
            return known
        known_set = set(known)
        unknown = [t for t in selection.term_ids if t not in known_set]
        if unknown:
            log.warning("Term IDs not found in taxonomy %s: %s", taxonomy, unknown)
        return list(selection.term_ids)

    def build_query(self, taxonomy: str, post_type: str, term_ids: Sequence[int]) -> PostQuery:
        return PostQuery(
            post_type=post_type,
            post_status="any",
            taxonomy=taxonomy,
            terms=tuple(term_ids),
            include_children=False,
            per_page=self._config.page_size,
            page=1,
        )

    def rollup(
        self,
        taxonomy: str,
        term_selector: Sequence[str | int],
        post_type: str | None = None,
        *,
        dry_run: bool = False,
    ) -> RollupSummary:
        """Roll ancestor terms up onto every matching post.

        Raises a :class:`RollupError` subclass for invalid input or when no
        post matches. Per-post write failures are collected in the summary.
        """
        post_type = post_type if post_type is not None else self._config.default_post_type
        selection = self.validate(taxonomy, term_selector, post_type)
        term_ids = self.resolve_terms(taxonomy, selection)
        query = self.build_query(taxonomy, post_type, term_ids)

        preflight = self._store.query_posts(query)
        found = preflight.found_posts or 0
        if found == 0:
            raise NoAffectedPosts()
        log.info("%d affected posts found (%d pages)", found, preflight.max_num_pages or 0)

        summary = RollupSummary(
            run_id=generate_run_id(),
            taxonomy=taxonomy,
            post_type=post_type,
            selection=selection,
            term_count=len(term_ids),
            dry_run=dry_run,
            snapshot=self._config.snapshot,
            found_posts=found,
        )
        t0 = time.monotonic()
        progress = self._progress_factory(PROGRESS_LABEL, found)

        with self._store.deferred_term_counting():
            try:
                for post_ids in self._iter_pages(query):
                    failures_before = len(summary.failures)
                    for post_id in post_ids:
                        self._process_post(post_id, taxonomy, selection, summary)
                    summary.pages_processed += 1
                    summary.posts_processed += len(post_ids)
                    progress.tick(len(post_ids), errors=len(summary.failures) - failures_before)

                    stats = self._store.flush_caches()
                    summary.queries_flushed += stats.queries
                    summary.cache_entries_flushed += stats.cache_entries
                    if self._config.page_delay_seconds > 0:
                        self._sleep(self._config.page_delay_seconds)
            finally:
                progress.finish()
                summary.terms_recounted = self._store.pending_term_counts
                log.info("Updating term counts...")

        summary.finished_at = utc_now_iso()
        summary.duration_seconds = time.monotonic() - t0
        log.info(
            "Terms rolled up: %d posts updated, %d terms added, %d failures",
            summary.posts_updated, summary.terms_added, len(summary.failures),
        )
        return summary

    def _iter_pages(self, query: PostQuery) -> Iterator[list[int]]:
        """Yield pages of post IDs until an empty page comes back."""
        page_query = replace(query, no_found_rows=True)
        if not self._config.snapshot:
            page = 1
            while True:
                post_ids = self._store.query_posts(replace(page_query, page=page)).post_ids
                if not post_ids:
                    return
                yield post_ids
                page += 1

        snapshot: list[int] = []
        page = 1
        while True:
            post_ids = self._store.query_posts(replace(page_query, page=page)).post_ids
            if not post_ids:
                break
            snapshot.extend(post_ids)
            page += 1
        self._store.flush_caches()
        log.debug("Snapshot holds %d post IDs", len(snapshot))
        size = self._config.page_size
        for start in range(0, len(snapshot), size):
            yield snapshot[start:start + size]

    def _process_post(
        self,
        post_id: int,
        taxonomy: str,
        selection: TermSelection,
        summary: RollupSummary,
    ) -> None:
        assigned = self._store.get_object_terms(post_id, taxonomy)
        if not assigned:
            summary.posts_skipped += 1
            return

        to_add = missing_ancestors(
            assigned,
            selection,
            lambda term_id: self._store.get_ancestors(term_id, taxonomy),
        )
        if not to_add:
            return

        if summary.dry_run:
            log.debug("Would add %s to post %d", to_add, post_id)
            summary.posts_updated += 1
            summary.terms_added += len(to_add)
            return

        try:
            added = self._store.set_object_terms(post_id, to_add, taxonomy, append=True)
        except ContentStoreError as exc:
            failure = PerItemWriteFailure(post_id, to_add, exc)
            log.error("%s", failure)
            summary.failures.append(failure)
            return
        if added:
            log.debug("Added %s to post %d", added, post_id)
            summary.posts_updated += 1
            summary.terms_added += len(added)


def rollup(
    store: ContentStore,
    taxonomy: str,
    term_selector: Sequence[str | int],
    post_type: str = "post",
    *,
    config: RollupConfig | None = None,
    dry_run: bool = False,
) -> RollupSummary:
    """Convenience wrapper around :meth:`RollupBatchProcessor.rollup`."""
    processor = RollupBatchProcessor(store, config=config)
    return processor.rollup(taxonomy, term_selector, post_type, dry_run=dry_run)
