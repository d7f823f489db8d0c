"""Run-loop termination.

With ``numerics.num_iterations = N >= 1`` the detector ends the run after
exactly ``N`` iterations.  Otherwise it samples, once per check interval of
simulated time, the population-weighted sum of each species' ground-layer
concentration (the ground-layer mass when the grid holds no population)
and ends the run when every species changed by less than the tolerance
since the previous sample and the grid did not mutate in between.  With
``numerics.mutation_quiet_checks = k`` the run also ends after ``k``
consecutive checks without a mutation.
"""
from __future__ import annotations

import logging
from typing import List, Optional

import numpy as np

from .pipeline import Domain, Stage
from .schema import Config

logger = logging.getLogger(__name__)


def ground_metric(domain: Domain) -> np.ndarray:
    """Per-species population-weighted ground-layer concentration sum."""

    arena = domain.require_arena()
    column = domain.config.var_grid.pop_grid_column
    ground = arena.cells_in_layer(0)
    weights = np.array([c.population.get(column, 0.0) for c in ground])
    conc = np.array([c.cf for c in ground]).reshape(len(ground), len(arena.species))
    if weights.sum() > 0.0:
        return weights @ conc
    volumes = np.array([c.volume for c in ground])
    return volumes @ conc


def relative_change(new: np.ndarray, old: np.ndarray) -> np.ndarray:
    """Elementwise ``|new - old| / |old|``; 0 when both are 0, inf when only ``old`` is."""

    new = np.asarray(new, dtype=float)
    old = np.asarray(old, dtype=float)
    diff = np.abs(new - old)
    out = np.full(diff.shape, np.inf)
    nonzero = old != 0.0
    out[nonzero] = diff[nonzero] / np.abs(old[nonzero])
    out[~nonzero & (diff == 0.0)] = 0.0
    return out


class SteadyStateConvergenceCheck(Stage):
    """Sets ``domain.done`` once the run is finished."""

    def __init__(
        self,
        *,
        num_iterations: int = 0,
        tolerance: float = 0.005,
        check_interval: float = 3.0 * 3600.0,
        quiet_checks: Optional[int] = None,
    ) -> None:
        self.num_iterations = int(num_iterations)
        self.tolerance = float(tolerance)
        self.check_interval = float(check_interval)
        self.quiet_checks = quiet_checks
        self.reset()

    @classmethod
    def from_config(cls, cfg: Config) -> "SteadyStateConvergenceCheck":
        n = cfg.numerics
        return cls(
            num_iterations=n.num_iterations,
            tolerance=n.convergence_tolerance,
            check_interval=n.convergence_check_interval_s,
            quiet_checks=n.mutation_quiet_checks,
        )

    def reset(self) -> None:
        self.previous: Optional[np.ndarray] = None
        self.next_check = self.check_interval
        self.quiet = 0
        self.history: List[np.ndarray] = []
        self._seen_mutation: Optional[float] = None

    def apply(self, domain: Domain) -> None:
        if self.num_iterations >= 1:
            if domain.iteration + 1 >= self.num_iterations:
                domain.done = True
            return
        t_end = domain.time + domain.dt
        if t_end < self.next_check:
            return
        while self.next_check <= t_end:
            self.next_check += self.check_interval
        sample = ground_metric(domain)
        self.history.append(sample)
        mutated = domain.last_mutation_time != self._seen_mutation
        self._seen_mutation = domain.last_mutation_time
        self.quiet = 0 if mutated else self.quiet + 1
        previous, self.previous = self.previous, sample
        if previous is None:
            logger.info("Convergence check at t=%.6g s: first sample", t_end)
            return
        change = relative_change(sample, previous)
        logger.info(
            "Convergence check at t=%.6g s: relative change %s%s",
            t_end,
            ", ".join(f"{s}={c:.3g}" for s, c in zip(domain.require_arena().species, change)),
            " (grid mutated)" if mutated else "",
        )
        if not mutated and bool(np.all(change < self.tolerance)):
            logger.info("Converged at t=%.6g s after %d iterations", t_end, domain.iteration + 1)
            domain.done = True
        elif self.quiet_checks is not None and self.quiet >= self.quiet_checks:
            logger.info(
                "Grid unchanged for %d checks; stopping at t=%.6g s after %d iterations",
                self.quiet,
                t_end,
                domain.iteration + 1,
            )
            domain.done = True

    def __repr__(self) -> str:
        if self.num_iterations >= 1:
            return f"SteadyStateConvergenceCheck(num_iterations={self.num_iterations})"
        return f"SteadyStateConvergenceCheck(tolerance={self.tolerance:g})"


__all__ = ["SteadyStateConvergenceCheck", "ground_metric", "relative_change"]
