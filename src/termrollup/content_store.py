"""DuckDB-backed content store: taxonomies, terms, posts and term assignments.

Stands in for the host CMS that the rollup command talks to. The store owns
four groups of state:

* Registries: ``taxonomies`` and ``post_types``
* Term forest: ``terms`` (``parent = 0`` marks a root), with per-term
  ``post_count`` of published posts
* Content: ``posts`` and the ``term_relationships`` edge table
* Process-local state: an object cache of term, ancestor and object-term
  lookups, an optional query log, and the deferred term-counting flag

The object cache and query log grow with every lookup during a long batch;
callers running large jobs are expected to call :meth:`ContentStore.flush_caches`
periodically.
"""
from __future__ import annotations

import contextlib
import importlib
import logging
from collections.abc import Iterable, Iterator, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

# Dynamic DuckDB import for pyright compatibility
_duckdb_mod = importlib.import_module("duckdb")

log = logging.getLogger(__name__)

SCHEMA_VERSION = "1.0.0"

# Statuses excluded from ``post_status='any'`` queries.
EXCLUDED_FROM_ANY: tuple[str, ...] = ("trash", "auto-draft")

# Status counted towards ``terms.post_count``.
COUNTED_STATUS = "publish"


class ContentStoreError(RuntimeError):
    """Raised when a content store write cannot be applied."""


# ---------------------------------------------------------------------------
# Schema DDL
# ---------------------------------------------------------------------------

_SCHEMA_DDL = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS _schema_version (
    table_name VARCHAR PRIMARY KEY,
    version VARCHAR NOT NULL
);

-- ─── REGISTRIES ──────────────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS taxonomies (
    taxonomy VARCHAR PRIMARY KEY,
    label VARCHAR NOT NULL DEFAULT '',
    hierarchical BOOLEAN NOT NULL DEFAULT FALSE,
    created_at TIMESTAMP DEFAULT current_timestamp
);

CREATE TABLE IF NOT EXISTS post_types (
    post_type VARCHAR PRIMARY KEY,
    label VARCHAR NOT NULL DEFAULT '',
    created_at TIMESTAMP DEFAULT current_timestamp
);

-- ─── TERMS ───────────────────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS terms (
    term_id BIGINT PRIMARY KEY,
    taxonomy VARCHAR NOT NULL,
    name VARCHAR NOT NULL,
    slug VARCHAR NOT NULL DEFAULT '',
    parent BIGINT NOT NULL DEFAULT 0,
    post_count BIGINT NOT NULL DEFAULT 0
);

-- ─── CONTENT ─────────────────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS posts (
    post_id BIGINT PRIMARY KEY,
    post_type VARCHAR NOT NULL,
    post_status VARCHAR NOT NULL DEFAULT 'publish',
    title VARCHAR NOT NULL DEFAULT '',
    post_date TIMESTAMP DEFAULT current_timestamp
);

CREATE TABLE IF NOT EXISTS term_relationships (
    post_id BIGINT NOT NULL,
    term_id BIGINT NOT NULL,
    PRIMARY KEY (post_id, term_id)
);
"""


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class TaxonomyRecord:
    """A registered taxonomy."""

    taxonomy: str
    label: str
    hierarchical: bool


@dataclass(frozen=True, slots=True)
class TermRecord:
    """A single term in a taxonomy's forest."""

    term_id: int
    taxonomy: str
    name: str
    slug: str
    parent: int
    post_count: int

    @property
    def is_root(self) -> bool:
        return self.parent == 0


@dataclass(frozen=True, slots=True)
class PostQuery:
    """Paged post lookup filtered by type, status and taxonomy membership.

    ``terms`` is an "any of" filter against ``taxonomy``. With
    ``include_children`` the filter also matches posts tagged with any
    descendant of the listed terms. ``no_found_rows`` skips the total count.
    """

    post_type: str
    post_status: str = "any"
    taxonomy: str | None = None
    terms: tuple[int, ...] | None = None
    include_children: bool = False
    per_page: int = 100
    page: int = 1
    no_found_rows: bool = False


@dataclass(frozen=True, slots=True)
class PostPage:
    """One page of post IDs plus the total match count (when requested)."""

    post_ids: list[int]
    page: int
    per_page: int
    found_posts: int | None = None

    @property
    def max_num_pages(self) -> int | None:
        if self.found_posts is None:
            return None
        return -(-self.found_posts // self.per_page)


@dataclass(slots=True)
class CacheStats:
    """Entries released by :meth:`ContentStore.flush_caches`."""

    queries: int = 0
    cache_entries: int = 0
    groups: dict[str, int] = field(default_factory=dict)


def _placeholders(n: int) -> str:
    return ", ".join("?" for _ in range(n))


def _term_from_row(row: tuple[Any, ...]) -> TermRecord:
    return TermRecord(
        term_id=int(row[0]),
        taxonomy=str(row[1]),
        name=str(row[2]),
        slug=str(row[3] or ""),
        parent=int(row[4] or 0),
        post_count=int(row[5] or 0),
    )


_TERM_COLUMNS = "term_id, taxonomy, name, slug, parent, post_count"
_T_TERM_COLUMNS = "t.term_id, t.taxonomy, t.name, t.slug, t.parent, t.post_count"


# ---------------------------------------------------------------------------
# ContentStore class
# ---------------------------------------------------------------------------

class ContentStore:
    """Read/write interface to a content DuckDB file."""

    def __init__(
        self,
        db_path: Path | str,
        *,
        create_if_missing: bool = False,
        save_queries: bool = False,
    ) -> None:
        self._db_path = Path(db_path)
        if not self._db_path.exists() and not create_if_missing:
            raise FileNotFoundError(f"Content database not found: {self._db_path}")

        self._conn: Any = _duckdb_mod.connect(str(self._db_path))
        self.save_queries = save_queries
        self.queries: list[tuple[str, tuple[Any, ...]]] = []
        self._cache: dict[str, dict[Any, Any]] = {}
        self._defer_counting = False
        self._deferred_term_ids: set[int] = set()

        self._create_schema()

    def _create_schema(self) -> None:
        """Create all tables if they don't exist."""
        for stmt in _SCHEMA_DDL.split(";"):
            stmt = stmt.strip()
            if stmt:
                self._conn.execute(stmt)
        self._conn.execute(
            "INSERT OR REPLACE INTO _schema_version (table_name, version) VALUES (?, ?)",
            ["content", SCHEMA_VERSION],
        )

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _execute(self, sql: str, params: Sequence[Any] | None = None) -> Any:
        if self.save_queries:
            self.queries.append((sql, tuple(params or ())))
        if params is None:
            return self._conn.execute(sql)
        return self._conn.execute(sql, list(params))

    # ─── Object cache ─────────────────────────────────────────────

    def _cache_get(self, group: str, key: Any) -> Any | None:
        return self._cache.get(group, {}).get(key)

    def _cache_set(self, group: str, key: Any, value: Any) -> None:
        self._cache.setdefault(group, {})[key] = value

    def _cache_delete(self, group: str, key: Any) -> None:
        self._cache.get(group, {}).pop(key, None)

    def cache_size(self) -> int:
        """Number of entries currently held in the object cache."""
        return sum(len(entries) for entries in self._cache.values())

    def flush_caches(self) -> CacheStats:
        """Drop the query log and every object-cache group."""
        stats = CacheStats(
            queries=len(self.queries),
            cache_entries=self.cache_size(),
            groups={group: len(entries) for group, entries in self._cache.items()},
        )
        self.queries = []
        self._cache = {}
        log.debug(
            "Flushed caches: %d queries, %d cache entries %s",
            stats.queries, stats.cache_entries, stats.groups,
        )
        return stats

    # ─── Registries ───────────────────────────────────────────────

    def register_taxonomy(
        self,
        taxonomy: str,
        *,
        hierarchical: bool = False,
        label: str = "",
    ) -> None:
        self._execute(
            "INSERT OR REPLACE INTO taxonomies (taxonomy, label, hierarchical) VALUES (?, ?, ?)",
            [taxonomy, label or taxonomy, bool(hierarchical)],
        )
        self._cache_delete("taxonomies", taxonomy)

    def register_post_type(self, post_type: str, *, label: str = "") -> None:
        self._execute(
            "INSERT OR REPLACE INTO post_types (post_type, label) VALUES (?, ?)",
            [post_type, label or post_type],
        )

    def get_taxonomy(self, taxonomy: str) -> TaxonomyRecord | None:
        cached = self._cache_get("taxonomies", taxonomy)
        if cached is not None:
            return cached
        row = self._execute(
            "SELECT taxonomy, label, hierarchical FROM taxonomies WHERE taxonomy = ?",
            [taxonomy],
        ).fetchone()
        if row is None:
            return None
        record = TaxonomyRecord(taxonomy=str(row[0]), label=str(row[1]), hierarchical=bool(row[2]))
        self._cache_set("taxonomies", taxonomy, record)
        return record

    def taxonomy_exists(self, taxonomy: str) -> bool:
        return self.get_taxonomy(taxonomy) is not None

    def is_taxonomy_hierarchical(self, taxonomy: str) -> bool:
        record = self.get_taxonomy(taxonomy)
        return bool(record and record.hierarchical)

    def post_type_exists(self, post_type: str) -> bool:
        row = self._execute(
            "SELECT 1 FROM post_types WHERE post_type = ?", [post_type]
        ).fetchone()
        return row is not None

    # ─── Terms ────────────────────────────────────────────────────

    def insert_term(
        self,
        taxonomy: str,
        name: str,
        *,
        term_id: int | None = None,
        parent: int = 0,
        slug: str = "",
    ) -> int:
        """Insert a term and return its ID. ``parent`` must be in the same taxonomy."""
        if not self.taxonomy_exists(taxonomy):
            raise ContentStoreError(f"Unknown taxonomy: {taxonomy}")
        if parent:
            parent_term = self.get_term(parent)
            if parent_term is None or parent_term.taxonomy != taxonomy:
                raise ContentStoreError(
                    f"Parent term {parent} does not exist in taxonomy {taxonomy}"
                )
        if term_id is None:
            row = self._execute("SELECT COALESCE(MAX(term_id), 0) + 1 FROM terms").fetchone()
            term_id = int(row[0])
        try:
            self._execute(
                f"INSERT INTO terms ({_TERM_COLUMNS}) VALUES (?, ?, ?, ?, ?, 0)",
                [term_id, taxonomy, name, slug or name.strip().lower().replace(" ", "-"), parent],
            )
        except _duckdb_mod.Error as exc:
            raise ContentStoreError(f"Could not insert term {term_id}: {exc}") from exc
        return term_id

    def get_term(self, term_id: int) -> TermRecord | None:
        cached = self._cache_get("terms", term_id)
        if cached is not None:
            return cached
        row = self._execute(
            f"SELECT {_TERM_COLUMNS} FROM terms WHERE term_id = ?", [term_id]
        ).fetchone()
        if row is None:
            return None
        term = _term_from_row(row)
        self._cache_set("terms", term_id, term)
        return term

    def get_term_ids(self, taxonomy: str) -> list[int]:
        """Every term ID in *taxonomy*, ascending."""
        rows = self._execute(
            "SELECT term_id FROM terms WHERE taxonomy = ? ORDER BY term_id", [taxonomy]
        ).fetchall()
        return [int(r[0]) for r in rows]

    def get_terms(self, taxonomy: str) -> list[TermRecord]:
        rows = self._execute(
            f"SELECT {_TERM_COLUMNS} FROM terms WHERE taxonomy = ? ORDER BY term_id",
            [taxonomy],
        ).fetchall()
        return [_term_from_row(r) for r in rows]

    def get_term_children(self, term_id: int, taxonomy: str) -> list[int]:
        """All descendants of *term_id* in *taxonomy* (breadth-first order)."""
        children: list[int] = []
        seen = {term_id}
        frontier = [term_id]
        while frontier:
            rows = self._execute(
                f"SELECT term_id FROM terms WHERE taxonomy = ? "
                f"AND parent IN ({_placeholders(len(frontier))}) ORDER BY term_id",
                [taxonomy, *frontier],
            ).fetchall()
            frontier = []
            for row in rows:
                child = int(row[0])
                if child in seen:
                    continue
                seen.add(child)
                children.append(child)
                frontier.append(child)
        return children

    def get_ancestors(self, term_id: int, taxonomy: str) -> list[int]:
        """Ancestor IDs of *term_id*, nearest parent first, ending at the root.

        Stops at a parent that is missing or belongs to another taxonomy, and
        at the first repeated ID if the parent links form a loop.
        """
        key = (taxonomy, term_id)
        cached = self._cache_get("ancestors", key)
        if cached is not None:
            return list(cached)

        ancestors: list[int] = []
        term = self.get_term(term_id)
        if term is None or term.taxonomy != taxonomy:
            return ancestors
        seen = {term_id}
        while term is not None and term.parent and term.parent not in seen:
            parent = self.get_term(term.parent)
            if parent is None or parent.taxonomy != taxonomy:
                log.warning(
                    "Term %d in %s points at missing parent %d", term.term_id, taxonomy, term.parent
                )
                break
            ancestors.append(parent.term_id)
            seen.add(parent.term_id)
            term = parent

        self._cache_set("ancestors", key, tuple(ancestors))
        return ancestors

    # ─── Posts ────────────────────────────────────────────────────

    def insert_post(
        self,
        post_type: str,
        *,
        post_id: int | None = None,
        post_status: str = "publish",
        title: str = "",
        post_date: str | None = None,
    ) -> int:
        if not self.post_type_exists(post_type):
            raise ContentStoreError(f"Unknown post type: {post_type}")
        if post_id is None:
            row = self._execute("SELECT COALESCE(MAX(post_id), 0) + 1 FROM posts").fetchone()
            post_id = int(row[0])
        try:
            if post_date is None:
                self._execute(
                    "INSERT INTO posts (post_id, post_type, post_status, title) VALUES (?, ?, ?, ?)",
                    [post_id, post_type, post_status, title],
                )
            else:
                self._execute(
                    "INSERT INTO posts (post_id, post_type, post_status, title, post_date) "
                    "VALUES (?, ?, ?, ?, CAST(? AS TIMESTAMP))",
                    [post_id, post_type, post_status, title, post_date],
                )
        except _duckdb_mod.Error as exc:
            raise ContentStoreError(f"Could not insert post {post_id}: {exc}") from exc
        return post_id

    def post_exists(self, post_id: int) -> bool:
        row = self._execute("SELECT 1 FROM posts WHERE post_id = ?", [post_id]).fetchone()
        return row is not None

    def query_posts(self, query: PostQuery) -> PostPage:
        """Run *query* and return one page of post IDs, newest first."""
        if query.per_page < 1:
            raise ValueError(f"per_page must be >= 1, got {query.per_page}")
        if query.page < 1:
            raise ValueError(f"page must be >= 1, got {query.page}")

        where = ["p.post_type = ?"]
        params: list[Any] = [query.post_type]
        if query.post_status == "any":
            where.append(f"p.post_status NOT IN ({_placeholders(len(EXCLUDED_FROM_ANY))})")
            params.extend(EXCLUDED_FROM_ANY)
        else:
            where.append("p.post_status = ?")
            params.append(query.post_status)

        if query.terms is not None:
            if query.taxonomy is None:
                raise ValueError("PostQuery.terms requires PostQuery.taxonomy")
            term_ids = list(dict.fromkeys(int(t) for t in query.terms))
            if query.include_children:
                for term_id in list(term_ids):
                    for child in self.get_term_children(term_id, query.taxonomy):
                        if child not in term_ids:
                            term_ids.append(child)
            if not term_ids:
                return PostPage(
                    post_ids=[],
                    page=query.page,
                    per_page=query.per_page,
                    found_posts=None if query.no_found_rows else 0,
                )
            where.append(
                "EXISTS (SELECT 1 FROM term_relationships tr "
                "JOIN terms t ON t.term_id = tr.term_id "
                "WHERE tr.post_id = p.post_id AND t.taxonomy = ? "
                f"AND tr.term_id IN ({_placeholders(len(term_ids))}))"
            )
            params.append(query.taxonomy)
            params.extend(term_ids)

        where_sql = " AND ".join(where)
        offset = (int(query.page) - 1) * int(query.per_page)
        rows = self._execute(
            f"SELECT p.post_id FROM posts p WHERE {where_sql} "
            f"ORDER BY p.post_date DESC, p.post_id DESC "
            f"LIMIT {int(query.per_page)} OFFSET {offset}",
            params,
        ).fetchall()

        found: int | None = None
        if not query.no_found_rows:
            count_row = self._execute(
                f"SELECT COUNT(*) FROM posts p WHERE {where_sql}", params
            ).fetchone()
            found = int(count_row[0]) if count_row else 0

        return PostPage(
            post_ids=[int(r[0]) for r in rows],
            page=query.page,
            per_page=query.per_page,
            found_posts=found,
        )

    # ─── Term assignments ─────────────────────────────────────────

    def get_object_terms(self, post_id: int, taxonomy: str) -> list[TermRecord]:
        """Terms in *taxonomy* currently assigned to *post_id*, ordered by name."""
        key = (post_id, taxonomy)
        cached = self._cache_get("object_terms", key)
        if cached is not None:
            return list(cached)
        rows = self._execute(
            f"SELECT {_T_TERM_COLUMNS} "
            "FROM term_relationships tr JOIN terms t ON t.term_id = tr.term_id "
            "WHERE tr.post_id = ? AND t.taxonomy = ? ORDER BY t.name, t.term_id",
            [post_id, taxonomy],
        ).fetchall()
        terms = [_term_from_row(r) for r in rows]
        self._cache_set("object_terms", key, tuple(terms))
        return terms

    def set_object_terms(
        self,
        post_id: int,
        term_ids: Iterable[int],
        taxonomy: str,
        *,
        append: bool = True,
    ) -> list[int]:
        """Assign *term_ids* to *post_id* and return the newly added IDs.

        With ``append=True`` existing assignments are kept; otherwise the
        post's assignments in *taxonomy* are replaced by *term_ids*.
        """
        wanted = list(dict.fromkeys(int(t) for t in term_ids))
        if not self.taxonomy_exists(taxonomy):
            raise ContentStoreError(f"Unknown taxonomy: {taxonomy}")
        if not self.post_exists(post_id):
            raise ContentStoreError(f"Unknown post: {post_id}")
        for term_id in wanted:
            term = self.get_term(term_id)
            if term is None or term.taxonomy != taxonomy:
                raise ContentStoreError(f"Term {term_id} does not exist in taxonomy {taxonomy}")

        existing = {t.term_id for t in self.get_object_terms(post_id, taxonomy)}
        added = [t for t in wanted if t not in existing]
        removed = [] if append else sorted(existing - set(wanted))

        self._execute("BEGIN TRANSACTION")
        try:
            if removed:
                self._execute(
                    f"DELETE FROM term_relationships WHERE post_id = ? "
                    f"AND term_id IN ({_placeholders(len(removed))})",
                    [post_id, *removed],
                )
            for term_id in added:
                self._execute(
                    "INSERT INTO term_relationships (post_id, term_id) VALUES (?, ?) "
                    "ON CONFLICT DO NOTHING",
                    [post_id, term_id],
                )
            self._execute("COMMIT")
        except BaseException as exc:
            with contextlib.suppress(Exception):
                self._execute("ROLLBACK")
            if isinstance(exc, _duckdb_mod.Error):
                raise ContentStoreError(f"Could not assign terms to post {post_id}: {exc}") from exc
            raise
        finally:
            self._cache_delete("object_terms", (post_id, taxonomy))

        touched = set(added) | set(removed)
        if touched:
            if self._defer_counting:
                self._deferred_term_ids.update(touched)
            else:
                self.update_term_count(touched)
        return added

    # ─── Term counts ──────────────────────────────────────────────

    def update_term_count(self, term_ids: Iterable[int]) -> int:
        """Recount published posts for *term_ids*; return how many were recounted."""
        ids = sorted({int(t) for t in term_ids})
        if not ids:
            return 0
        self._execute(
            f"""
            UPDATE terms SET post_count = c.n
            FROM (
                SELECT t.term_id AS tid, COUNT(DISTINCT p.post_id) AS n
                FROM terms t
                LEFT JOIN term_relationships tr ON tr.term_id = t.term_id
                LEFT JOIN posts p ON p.post_id = tr.post_id AND p.post_status = ?
                WHERE t.term_id IN ({_placeholders(len(ids))})
                GROUP BY t.term_id
            ) AS c
            WHERE terms.term_id = c.tid
            """,
            [COUNTED_STATUS, *ids],
        )
        for term_id in ids:
            self._cache_delete("terms", term_id)
        return len(ids)

    def recount_taxonomy(self, taxonomy: str) -> int:
        return self.update_term_count(self.get_term_ids(taxonomy))

    def defer_term_counting(self, defer: bool | None = None) -> bool:
        """Get or set deferred counting.

        Turning deferral off recounts every term touched while it was on.
        """
        if defer is not None:
            was_deferred = self._defer_counting
            self._defer_counting = bool(defer)
            if was_deferred and not self._defer_counting and self._deferred_term_ids:
                pending = sorted(self._deferred_term_ids)
                self._deferred_term_ids.clear()
                recounted = self.update_term_count(pending)
                log.info("Recounted %d deferred terms", recounted)
        return self._defer_counting

    @property
    def pending_term_counts(self) -> int:
        return len(self._deferred_term_ids)

    @contextlib.contextmanager
    def deferred_term_counting(self) -> Iterator[ContentStore]:
        """Suspend per-write counting for the block, then recount once."""
        previous = self.defer_term_counting()
        self.defer_term_counting(True)
        try:
            yield self
        finally:
            self.defer_term_counting(previous)

    # ─── Lifecycle ────────────────────────────────────────────────

    def close(self) -> None:
        """Close the DuckDB connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> ContentStore:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()
