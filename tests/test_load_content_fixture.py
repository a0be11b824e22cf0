"""Tests for the content fixture loader (scripts/load_content_fixture.py)."""
from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any

import pytest

_scripts_dir = str(Path(__file__).resolve().parents[1] / "scripts")
if _scripts_dir not in sys.path:
    sys.path.insert(0, _scripts_dir)

from load_content_fixture import _order_terms_by_parent, load_fixture, main  # noqa: E402

from termrollup.content_store import ContentStore  # noqa: E402

FIXTURE: dict[str, Any] = {
    "taxonomies": [
        {"name": "category", "hierarchical": True, "label": "Categories"},
        {"name": "tag"},
    ],
    "post_types": [{"name": "post"}, {"name": "restaurant", "label": "Restaurants"}],
    "terms": [
        {"term_id": 3, "taxonomy": "category", "name": "Leaf", "parent": 2},
        {"term_id": 1, "taxonomy": "category", "name": "Root"},
        {"term_id": 2, "taxonomy": "category", "name": "Mid", "parent": 1},
        {"term_id": 20, "taxonomy": "tag", "name": "Spicy"},
    ],
    "posts": [
        {"post_id": 100, "post_type": "post", "terms": {"category": [3], "tag": [20]}},
        {"post_id": 101, "post_type": "restaurant", "post_status": "draft",
         "post_date": "2024-01-02 03:04:05", "terms": {"category": [2]}},
        {"post_id": 102},
    ],
}


def test_order_terms_parents_first() -> None:
    ordered = [t["term_id"] for t in _order_terms_by_parent(FIXTURE["terms"])]
    assert ordered.index(1) < ordered.index(2) < ordered.index(3)
    assert sorted(ordered) == [1, 2, 3, 20]


def test_order_terms_cycle() -> None:
    terms = [
        {"term_id": 1, "taxonomy": "category", "name": "A", "parent": 2},
        {"term_id": 2, "taxonomy": "category", "name": "B", "parent": 1},
    ]
    with pytest.raises(ValueError, match="cycle"):
        _order_terms_by_parent(terms)


def test_order_terms_missing_id() -> None:
    with pytest.raises(ValueError, match="term_id"):
        _order_terms_by_parent([{"taxonomy": "category", "name": "Orphan"}])


def test_load_fixture(tmp_path: Path) -> None:
    with ContentStore(tmp_path / "content.duckdb", create_if_missing=True) as store:
        counts = load_fixture(store, FIXTURE)
        assert counts == {
            "taxonomies": 2, "post_types": 2, "terms": 4, "posts": 3, "relationships": 3,
        }
        assert store.is_taxonomy_hierarchical("category")
        assert not store.is_taxonomy_hierarchical("tag")
        assert store.post_type_exists("restaurant")
        assert store.get_ancestors(3, "category") == [2, 1]
        assert [t.term_id for t in store.get_object_terms(100, "category")] == [3]
        assert store.post_exists(102)
        counts_by_term = {t.term_id: t.post_count for t in store.get_terms("category")}
        assert counts_by_term == {1: 0, 2: 0, 3: 1}
        assert not store.defer_term_counting()


def test_main_writes_summary(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    fixture = tmp_path / "fixture.json"
    fixture.write_text(json.dumps(FIXTURE))
    db = tmp_path / "content.duckdb"

    rc = main(["--db", str(db), "--fixture", str(fixture), "--recount"])
    assert rc == 0
    payload = json.loads(capsys.readouterr().out)
    assert payload["db"] == str(db)
    assert payload["loaded"]["terms"] == 4
    assert payload["loaded"]["recounted"] == 4
    assert db.exists()


def test_main_missing_fixture(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    rc = main(["--db", str(tmp_path / "c.duckdb"), "--fixture", str(tmp_path / "none.json")])
    assert rc == 1
    assert "fixture not found" in capsys.readouterr().err


def test_main_rejects_non_object(tmp_path: Path) -> None:
    fixture = tmp_path / "fixture.json"
    fixture.write_text("[1, 2, 3]")
    assert main(["--db", str(tmp_path / "c.duckdb"), "--fixture", str(fixture)]) == 1


def test_main_bad_reference(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    bad = dict(FIXTURE, posts=[{"post_id": 1, "terms": {"category": [999]}}])
    fixture = tmp_path / "fixture.json"
    fixture.write_text(json.dumps(bad))
    assert main(["--db", str(tmp_path / "c.duckdb"), "--fixture", str(fixture)]) == 1
    assert "could not load fixture" in capsys.readouterr().err
