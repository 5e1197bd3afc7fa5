"""Single-line progress for scan phases.

Each phase (markets, wallets, resolutions, observations) redraws one
stderr line in place; renders are rate-limited so large batches do not
flood the terminal.
"""

from __future__ import annotations

import sys
import time
from dataclasses import dataclass, field
from typing import TextIO

BAR_WIDTH = 22


def _rate(count: int, elapsed_s: float) -> str:
    per_s = count / max(elapsed_s, 1e-6)
    if per_s >= 1_000:
        return f"{per_s / 1_000:.1f}k/s"
    return f"{per_s:.1f}/s"


@dataclass
class ProgressLine:
    """Phase-aware progress line; a disabled instance is a no-op."""

    enabled: bool
    min_interval_s: float = 0.20
    stream: TextIO | None = None
    stage: str = field(default="", init=False)
    total: int = field(default=0, init=False)
    done: int = field(default=0, init=False)

    def __post_init__(self) -> None:
        self._phase_started = time.monotonic()
        self._last_render = 0.0
        self._width = 0

    def phase(self, stage: str, total: int) -> None:
        """Start counting a new phase of ``total`` units."""
        self.stage = stage
        self.total = total
        self.done = 0
        self._phase_started = time.monotonic()
        self._render(errored=0, force=True)

    def advance(self, n: int = 1, *, errored: int = 0) -> None:
        self.done += n
        self._render(errored=errored, force=self.done >= self.total)

    def _render(self, *, errored: int, force: bool) -> None:
        if not self.enabled:
            return
        now = time.monotonic()
        if not force and now - self._last_render < self.min_interval_s:
            return
        self._last_render = now

        fraction = min(1.0, self.done / self.total) if self.total else 1.0
        filled = round(fraction * BAR_WIDTH)
        line = (
            f"{self.stage:<11} [{'#' * filled}{'-' * (BAR_WIDTH - filled)}] {fraction * 100:5.1f}% "
            f"{self.done:,}/{self.total:,} errored={errored:,} "
            f"rate={_rate(self.done, now - self._phase_started)}"
        )
        self._emit("\r" + line.ljust(self._width))
        self._width = len(line)

    def _emit(self, text: str) -> None:
        out = self.stream or sys.stderr
        out.write(text)
        out.flush()

    def close(self, *, final_line: str | None = None) -> None:
        if not self.enabled:
            return
        if final_line is None:
            self._emit("\n")
        else:
            self._emit("\r" + final_line.ljust(self._width) + "\n")


def default_progress_enabled() -> bool:
    return bool(getattr(sys.stderr, "isatty", lambda: False)())
