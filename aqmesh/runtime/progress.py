"""Lightweight terminal progress reporting."""

from __future__ import annotations

import math
import sys
import time

ETA_EWMA_ALPHA = 0.1
ETA_MIN_SAMPLES = 3


class ProgressReporter:
    """Lightweight terminal progress bar with ETA feedback.

    Counts completed units of work (SR chunks or rows); the ETA is an
    exponentially weighted mean of the wall time per unit.
    """

    def __init__(
        self,
        total: int,
        *,
        label: str = "chunks",
        enabled: bool = False,
    ) -> None:
        self.enabled = bool(enabled and total > 0)
        self.total = max(int(total), 1)
        self.label = label
        self.start = time.monotonic()
        self.done = 0
        self._finished = False
        self._isatty = sys.stdout.isatty()
        self._eta_ewma_s: float | None = None
        self._eta_samples: int = 0
        self._last_wall: float | None = None

    def advance(self, count: int = 1) -> None:
        """Record ``count`` completed units and re-render."""

        if count <= 0:
            return
        now = time.monotonic()
        self._update_eta(count, now)
        self.done = min(self.done + count, self.total)
        self.render()

    def eta_seconds(self) -> float:
        if (
            self._eta_ewma_s is None
            or not math.isfinite(self._eta_ewma_s)
            or self._eta_samples < ETA_MIN_SAMPLES
        ):
            return float("nan")
        return self._eta_ewma_s * max(self.total - self.done, 0)

    def render(self) -> None:
        if not self.enabled or self._finished:
            return
        is_last = self.done >= self.total
        frac = min(max(self.done / self.total, 0.0), 1.0)
        bar_width = 28
        filled = int(bar_width * frac)
        bar = "#" * filled + "-" * (bar_width - filled)
        line = (
            f"[{bar}] {frac * 100:5.1f}% {self.done}/{self.total} {self.label} "
            f"{_format_eta(self.eta_seconds())}"
        )
        if self._isatty:
            sys.stdout.write(f"\r\033[2K{line}")
            if is_last:
                sys.stdout.write("\n")
        else:
            sys.stdout.write(f"{line}\n")
        if is_last:
            self._finished = True
        sys.stdout.flush()

    def _update_eta(self, count: int, now: float) -> None:
        """Update the ETA EWMA using the wall time since the previous update."""

        last = self.start if self._last_wall is None else self._last_wall
        unit_seconds = (now - last) / count
        if math.isfinite(unit_seconds) and unit_seconds > 0.0:
            if self._eta_ewma_s is None:
                self._eta_ewma_s = unit_seconds
            else:
                self._eta_ewma_s = ETA_EWMA_ALPHA * unit_seconds + (1.0 - ETA_EWMA_ALPHA) * self._eta_ewma_s
            self._eta_samples += 1
        self._last_wall = now


def _format_eta(seconds: float) -> str:
    if not math.isfinite(seconds) or seconds < 0.0:
        return "ETA ?"
    if seconds >= 3600.0:
        return f"ETA {seconds/3600.0:.1f}h"
    if seconds >= 60.0:
        return f"ETA {seconds/60.0:.1f}m"
    return f"ETA {seconds:.0f}s"


__all__ = ["ProgressReporter"]
