"""Stderr progress reporting for long-running rollup batches."""
from __future__ import annotations

import platform
import sys
import time
from typing import Protocol, TextIO

try:
    import resource as _resource_mod
except ImportError:  # Windows
    _resource_mod = None  # type: ignore[assignment]


def _get_rss_mb() -> float | None:
    """Return peak process RSS in MB, or None if unavailable."""
    if _resource_mod is None:
        return None
    try:
        usage = _resource_mod.getrusage(_resource_mod.RUSAGE_SELF)
    except (OSError, ValueError):
        return None
    rss = usage.ru_maxrss
    # macOS returns bytes; Linux returns kilobytes
    if platform.system() == "Darwin":
        return rss / (1024 * 1024)
    return rss / 1024


class ProgressReporter(Protocol):
    def tick(self, count: int = 1, *, errors: int = 0) -> None: ...

    def finish(self) -> None: ...


class ProgressBar:
    """Prints one status line per tick: done/total, rate, ETA, errors, memory."""

    def __init__(self, label: str, total: int, *, stream: TextIO | None = None) -> None:
        self._label = label
        self._total = total
        self._stream = stream
        self._count = 0
        self._errors = 0
        self._start = time.monotonic()

    @property
    def count(self) -> int:
        return self._count

    @property
    def errors(self) -> int:
        return self._errors

    def tick(self, count: int = 1, *, errors: int = 0) -> None:
        self._count += count
        self._errors += errors
        self._print_line()

    def finish(self) -> None:
        self._print_line(final=True)

    def _print_line(self, *, final: bool = False) -> None:
        elapsed = time.monotonic() - self._start
        rate = self._count / max(0.01, elapsed)
        remaining = max(0, self._total - self._count)
        eta_sec = remaining / max(0.01, rate)
        pct = 100.0 * self._count / max(1, self._total)
        mem = _get_rss_mb()
        mem_str = f" | mem {mem:.0f}MB" if mem is not None else ""
        tail = f"done in {elapsed:.1f}s" if final else (
            f"ETA {eta_sec / 60:.1f}m" if eta_sec > 60 else f"ETA {eta_sec:.0f}s"
        )
        print(
            f"{self._label} [{self._count}/{self._total}] {pct:.1f}% | "
            f"{rate:.1f} posts/sec | {tail} | "
            f"{self._errors} errors{mem_str}",
            file=self._stream or sys.stderr,
        )


class NullProgress:
    """Progress reporter that discards every update."""

    def tick(self, count: int = 1, *, errors: int = 0) -> None:
        return None

    def finish(self) -> None:
        return None
