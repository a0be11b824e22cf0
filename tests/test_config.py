"""Tests for termrollup.config."""
from __future__ import annotations

import pytest

from termrollup.config import RollupConfig, default_db_path


def test_defaults() -> None:
    cfg = RollupConfig()
    assert cfg.page_size == 100
    assert cfg.page_delay_seconds == 1.0
    assert cfg.default_post_type == "post"
    assert not cfg.snapshot
    assert not cfg.save_queries


def test_from_env() -> None:
    cfg = RollupConfig.from_env({
        "TERMROLLUP_PAGE_SIZE": "25",
        "TERMROLLUP_PAGE_DELAY": "0.5",
        "TERMROLLUP_POST_TYPE": "restaurant",
    })
    assert cfg.page_size == 25
    assert cfg.page_delay_seconds == 0.5
    assert cfg.default_post_type == "restaurant"


def test_from_env_blank_values_ignored() -> None:
    assert RollupConfig.from_env({"TERMROLLUP_PAGE_SIZE": "  "}) == RollupConfig()


@pytest.mark.parametrize(
    ("env", "match"),
    [
        ({"TERMROLLUP_PAGE_SIZE": "many"}, "TERMROLLUP_PAGE_SIZE"),
        ({"TERMROLLUP_PAGE_DELAY": "soon"}, "TERMROLLUP_PAGE_DELAY"),
        ({"TERMROLLUP_PAGE_SIZE": "0"}, "page_size"),
        ({"TERMROLLUP_PAGE_DELAY": "-1"}, "page_delay_seconds"),
    ],
)
def test_from_env_invalid(env: dict[str, str], match: str) -> None:
    with pytest.raises(ValueError, match=match):
        RollupConfig.from_env(env)


def test_with_overrides_skips_none() -> None:
    base = RollupConfig(page_size=10)
    cfg = base.with_overrides(page_size=None, page_delay_seconds=0.0, snapshot=True)
    assert cfg.page_size == 10
    assert cfg.page_delay_seconds == 0.0
    assert cfg.snapshot
    assert base.with_overrides(page_size=None) is base


def test_with_overrides_validates() -> None:
    with pytest.raises(ValueError):
        RollupConfig().with_overrides(page_size=-5)


def test_empty_post_type_rejected() -> None:
    with pytest.raises(ValueError):
        RollupConfig(default_post_type=" ")


def test_default_db_path() -> None:
    assert default_db_path({"TERMROLLUP_DB": "/data/content.duckdb"}) == "/data/content.duckdb"
    assert default_db_path({"TERMROLLUP_DB": ""}) is None
    assert default_db_path({}) is None
