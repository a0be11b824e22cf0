"""Runtime configuration for term rollup runs.

Defaults match the batch behaviour of the rollup command: 100 posts per page,
a one-second pause between pages, and the ``post`` post type. Environment
variables override the defaults; CLI flags override both.
"""
from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, replace
from typing import Any

DEFAULT_PAGE_SIZE = 100
DEFAULT_PAGE_DELAY_SECONDS = 1.0
DEFAULT_POST_TYPE = "post"

ENV_DB = "TERMROLLUP_DB"
ENV_PAGE_SIZE = "TERMROLLUP_PAGE_SIZE"
ENV_PAGE_DELAY = "TERMROLLUP_PAGE_DELAY"
ENV_POST_TYPE = "TERMROLLUP_POST_TYPE"


@dataclass(frozen=True, slots=True)
class RollupConfig:
    """Tunables for :class:`termrollup.rollup.RollupBatchProcessor`."""

    page_size: int = DEFAULT_PAGE_SIZE
    page_delay_seconds: float = DEFAULT_PAGE_DELAY_SECONDS
    default_post_type: str = DEFAULT_POST_TYPE
    snapshot: bool = False
    save_queries: bool = False

    def __post_init__(self) -> None:
        if self.page_size < 1:
            raise ValueError(f"page_size must be >= 1, got {self.page_size}")
        if self.page_delay_seconds < 0:
            raise ValueError(
                f"page_delay_seconds must be >= 0, got {self.page_delay_seconds}"
            )
        if not self.default_post_type.strip():
            raise ValueError("default_post_type must not be empty")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> RollupConfig:
        """Build a config from ``TERMROLLUP_*`` environment variables."""
        env = os.environ if environ is None else environ
        kwargs: dict[str, Any] = {}
        raw_size = env.get(ENV_PAGE_SIZE, "").strip()
        if raw_size:
            try:
                kwargs["page_size"] = int(raw_size)
            except ValueError:
                raise ValueError(f"{ENV_PAGE_SIZE} must be an integer, got {raw_size!r}") from None
        raw_delay = env.get(ENV_PAGE_DELAY, "").strip()
        if raw_delay:
            try:
                kwargs["page_delay_seconds"] = float(raw_delay)
            except ValueError:
                raise ValueError(f"{ENV_PAGE_DELAY} must be a number, got {raw_delay!r}") from None
        post_type = env.get(ENV_POST_TYPE, "").strip()
        if post_type:
            kwargs["default_post_type"] = post_type
        return cls(**kwargs)

    def with_overrides(self, **overrides: Any) -> RollupConfig:
        """Return a copy with every non-None override applied."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **changes) if changes else self


def default_db_path(environ: Mapping[str, str] | None = None) -> str | None:
    """Content store path from ``$TERMROLLUP_DB``, if set."""
    env = os.environ if environ is None else environ
    value = env.get(ENV_DB, "").strip()
    return value or None
