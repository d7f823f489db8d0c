"""Simulation domain and the staged init/run loop.

A :class:`Domain` owns the cell arena, the simulated clock and two ordered
lists of :class:`Stage` objects.  Init stages run once, in order, before any
time stepping.  Run stages run in order on every iteration, after which the
clock advances by the current time step.  The loop ends when a stage sets
``domain.done`` (normally the convergence detector) or when the optional
``numerics.max_iterations`` bound is reached.

Execution is single-threaded and deterministic; kernels mutate cell state in
place and each kernel sees the state left by the previous one.
"""
from __future__ import annotations

import logging
import math
import time as _time
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Iterable, List, Optional, Sequence

import numpy as np

from .emissions import AllocationReport, EmisRecord, allocate_emissions
from .errors import NumericalError
from .grid import CellArena
from .physics.kernel import Kernel
from .physics.mechanism import Mechanism
from .schema import Config

if TYPE_CHECKING:  # pragma: no cover
    from .vargrid import GridInputs

logger = logging.getLogger(__name__)


class Stage(ABC):
    """One unit of work applied to the whole domain."""

    def reset(self) -> None:
        """Clear per-run state; called before the init phase."""

    @abstractmethod
    def apply(self, domain: "Domain") -> None:
        """Apply the stage to ``domain``."""

    @property
    def name(self) -> str:
        return type(self).__name__

    def __repr__(self) -> str:
        return f"{self.name}()"


class Calculations(Stage):
    """Apply kernels to every cell, in the listed order, once per iteration."""

    def __init__(self, *kernels: Kernel) -> None:
        if not kernels:
            raise ValueError("Calculations needs at least one kernel")
        self.kernels: Sequence[Kernel] = tuple(kernels)

    def apply(self, domain: "Domain") -> None:
        kernels = self.kernels
        for cell in domain.require_arena():
            for kernel in kernels:
                kernel(cell, domain)

    def __repr__(self) -> str:
        return f"Calculations({', '.join(k.name for k in self.kernels)})"


class RunPeriodically(Stage):
    """Run ``stage`` only when simulated time reaches the next interval mark.

    The first mark is one ``interval`` after the start of the run; after a
    firing the mark advances past the current time in whole intervals.
    """

    def __init__(self, interval: float, stage: Stage) -> None:
        if not (interval > 0.0 and math.isfinite(interval)):
            raise ValueError(f"interval must be positive and finite, got {interval!r}")
        self.interval = float(interval)
        self.stage = stage
        self.next_run = self.interval
        self.runs = 0

    def reset(self) -> None:
        self.next_run = self.interval
        self.runs = 0
        self.stage.reset()

    def apply(self, domain: "Domain") -> None:
        if domain.time < self.next_run:
            return
        while self.next_run <= domain.time:
            self.next_run += self.interval
        self.runs += 1
        self.stage.apply(domain)

    def __repr__(self) -> str:
        return f"RunPeriodically({self.interval:g}, {self.stage!r})"


class AllocateEmissions(Stage):
    """Allocate the domain's emission records into its cells."""

    def apply(self, domain: "Domain") -> None:
        domain.allocate_emissions()


class Domain:
    """A single simulation: grid, clock and stage lists."""

    def __init__(
        self,
        config: Config,
        mechanism: Mechanism,
        *,
        inputs: Optional["GridInputs"] = None,
        emissions: Iterable[EmisRecord] = (),
        init_stages: Iterable[Stage] = (),
        run_stages: Iterable[Stage] = (),
    ) -> None:
        self.config = config
        self.mechanism = mechanism
        self.inputs = inputs
        self.emissions: List[EmisRecord] = list(emissions)
        self.init_stages: List[Stage] = list(init_stages)
        self.run_stages: List[Stage] = list(run_stages)
        self.arena: Optional[CellArena] = None
        self.layer_edges: Optional[np.ndarray] = None
        self.time = 0.0
        self.dt = 0.0
        self.iteration = 0
        self.done = False
        self.last_mutation_time: Optional[float] = None
        self.mutation_events = 0
        self.last_allocation: Optional[AllocationReport] = None
        self.info: dict[str, Any] = {}

    @property
    def nlayers(self) -> int:
        if self.arena is not None:
            return self.arena.nlayers
        if self.inputs is not None:
            return self.inputs.ctm.nlayers
        raise NumericalError("domain has no grid yet")

    def require_arena(self) -> CellArena:
        if self.arena is None:
            raise NumericalError("domain grid has not been built; add a grid stage to init_stages")
        return self.arena

    def allocate_emissions(self) -> AllocationReport:
        """Recompute every cell's emission flux from the emission records."""

        arena = self.require_arena()
        report = allocate_emissions(arena, self.emissions, self.mechanism)
        self.last_allocation = report
        return report

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------
    def init(self) -> None:
        """Run every init stage once, in order."""

        for stage in self.init_stages:
            stage.reset()
        for stage in self.run_stages:
            stage.reset()
        self.time = 0.0
        self.iteration = 0
        self.done = False
        logger.info("Initialising domain with %d init stages", len(self.init_stages))
        for stage in self.init_stages:
            logger.debug("init stage %r", stage)
            stage.apply(self)
        arena = self.require_arena()
        logger.info(
            "Domain initialised: %d cells in %d layers, dt=%.6g s",
            len(arena),
            arena.nlayers,
            self.dt,
        )

    def run(self) -> None:
        """Run the run stages repeatedly until a stage sets ``done``."""

        arena = self.require_arena()
        max_iterations = self.config.numerics.max_iterations
        logger.info(
            "Starting run with %d cells; stages: %s",
            len(arena),
            ", ".join(repr(s) for s in self.run_stages),
        )
        started = _time.perf_counter()
        while True:
            if not (self.dt > 0.0 and math.isfinite(self.dt)):
                raise NumericalError(f"invalid time step {self.dt!r}; was a time-step stage configured?")
            for stage in self.run_stages:
                stage.apply(self)
            self.time += self.dt
            self.iteration += 1
            if self.done:
                break
            if max_iterations is not None and self.iteration >= max_iterations:
                logger.warning(
                    "Stopping after max_iterations=%d without convergence (t=%.6g s)",
                    max_iterations,
                    self.time,
                )
                break
        logger.info(
            "Run finished after %d iterations, t=%.6g s, %d cells, %.2f s wall",
            self.iteration,
            self.time,
            len(self.require_arena()),
            _time.perf_counter() - started,
        )

    def execute(self) -> "Domain":
        self.init()
        self.run()
        return self


__all__ = [
    "Stage",
    "Kernel",
    "Calculations",
    "RunPeriodically",
    "AllocateEmissions",
    "Domain",
]
