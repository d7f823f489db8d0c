"""Grid refinement.

A mutation event evaluates a split criterion on every cell, then splits all
selected cells at once, each into ``xnests[d+1] * ynests[d+1]`` children
where ``d`` is the parent's depth.  Cells at or above ``hi_res_layers`` or
already at the deepest nest are never split.

Children inherit the parent's concentrations (so species mass scales with
sub-volume), its mortality rates, and a share of its population.  The share
follows the census polygons under each child and is rescaled so the
children sum to the parent; where the census has nothing under the parent
the share is by sub-area.  Meteorology is resampled from the CTM data.  Every
neighbor relation the parent held is rebuilt against the children on both
sides, and the event fails with :class:`MassConservationError` if any
species mass or population column is not conserved.

Coarsening (merging children back) is not implemented; refinement is
one-directional.
"""
from __future__ import annotations

import logging
import math
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

import numpy as np

from .errors import MassConservationError, NumericalError
from .grid import ALL_FACES, LATERAL_FACES, Cell, CellArena, interface_area
from .physics.mechanism import Mechanism
from .pipeline import Domain, Stage
from .schema import VarGrid
from .vargrid import GridInputs, sample_meteorology

logger = logging.getLogger(__name__)


def can_split(cell: Cell, var_grid: VarGrid) -> bool:
    """Resolution and height limits on refinement."""

    return cell.layer < var_grid.hi_res_layers and cell.depth < var_grid.max_depth


class SplitCriterion(ABC):
    """Decides whether a cell should be refined during one mutation event."""

    def prepare(self, domain: Domain) -> None:
        """Compute grid-wide quantities once before cells are evaluated."""

    @abstractmethod
    def __call__(self, cell: Cell, domain: Domain) -> bool:
        """Return True when ``cell`` should be split."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class PopulationCriterion(SplitCriterion):
    """Static criterion: population count or census density above threshold."""

    def __call__(self, cell: Cell, domain: Domain) -> bool:
        vg = domain.config.var_grid
        pop = cell.population.get(vg.pop_grid_column, 0.0)
        return pop > vg.pop_threshold or cell.max_pop_density > vg.pop_density_threshold


class PopConcCriterion(SplitCriterion):
    """Dynamic criterion weighting concentration gradients by population gradients.

    For a cell ``c`` with lateral neighbors ``n`` the metric is::

        sum_n sum_s |C_n,s - C_c,s| * (V_c + V_n) * |P_n - P_c|
        -------------------------------------------------------
                     total_mass * total_population

    where ``total_mass`` is the summed absolute species mass of the grid and
    ``total_population`` the ground-layer population.  A cell is split when
    the metric exceeds :attr:`threshold`, which starts at
    ``var_grid.pop_conc_threshold`` and may be raised during a run by
    :class:`AdjustGridCriteria`.
    """

    def __init__(self) -> None:
        self.total_mass = 0.0
        self.total_population = 0.0
        self.threshold: Optional[float] = None

    def current_threshold(self, domain: Domain) -> float:
        if self.threshold is None:
            return domain.config.var_grid.pop_conc_threshold
        return self.threshold

    def prepare(self, domain: Domain) -> None:
        arena = domain.require_arena()
        column = domain.config.var_grid.pop_grid_column
        mass = 0.0
        pop = 0.0
        for cell in arena:
            mass += float(np.abs(cell.cf).sum()) * cell.volume
            if cell.layer == 0:
                pop += cell.population.get(column, 0.0)
        self.total_mass = mass
        self.total_population = pop
        if not (math.isfinite(mass) and math.isfinite(pop)):
            raise NumericalError(
                f"non-finite totals in refinement criterion (mass={mass!r}, population={pop!r})"
            )

    def metric(self, cell: Cell, domain: Domain) -> float:
        denom = self.total_mass * self.total_population
        if denom <= 0.0:
            return 0.0
        arena = domain.arena
        column = domain.config.var_grid.pop_grid_column
        pop_c = cell.population.get(column, 0.0)
        total = 0.0
        for face, other, _area in arena.iter_neighbors(cell, LATERAL_FACES):
            dconc = float(np.abs(other.cf - cell.cf).sum())
            dpop = abs(other.population.get(column, 0.0) - pop_c)
            total += dconc * (cell.volume + other.volume) * dpop
        value = total / denom
        if not math.isfinite(value):
            raise NumericalError(f"non-finite refinement metric {value!r} in cell {cell.handle}")
        return value

    def __call__(self, cell: Cell, domain: Domain) -> bool:
        return self.metric(cell, domain) > self.current_threshold(domain)


# ----------------------------------------------------------------------
# Splitting
# ----------------------------------------------------------------------
def make_children(
    arena: CellArena,
    parent: Cell,
    var_grid: VarGrid,
    inputs: Optional[GridInputs] = None,
    mechanism: Optional[Mechanism] = None,
) -> List[Cell]:
    """Create (unlinked) children of ``parent`` for its next nest level."""

    depth = parent.depth + 1
    nxf, nyf = var_grid.xnests[depth], var_grid.ynests[depth]
    xs = np.linspace(parent.x0, parent.x1, nxf + 1)
    ys = np.linspace(parent.y0, parent.y1, nyf + 1)
    children: List[Cell] = []
    for j in range(nyf):
        for i in range(nxf):
            child = arena.new_cell(
                layer=parent.layer,
                depth=depth,
                bounds=(xs[i], ys[j], xs[i + 1], ys[j + 1]),
                z0=parent.z0,
                dz=parent.dz,
            )
            child.check_dimensions()
            child.ci = parent.ci.copy()
            child.cf = parent.cf.copy()
            child.mortality = dict(parent.mortality)
            if inputs is not None and mechanism is not None:
                sample_meteorology(child, inputs.ctm, mechanism)
            else:
                child.u, child.v, child.w = parent.u, parent.v, parent.w
                child.kzz, child.kxxyy = parent.kzz, parent.kxxyy
                child.u_dev, child.v_dev = parent.u_dev, parent.v_dev
                child.met = dict(parent.met)
                child.dry_dep = parent.dry_dep.copy()
                child.wet_dep = parent.wet_dep.copy()
            children.append(child)
    _share_population(parent, children, inputs)
    return children


def _share_population(parent: Cell, children: List[Cell], inputs: Optional[GridInputs]) -> None:
    areas = np.array([c.area for c in children])
    census = inputs.census if inputs is not None else None
    sampled = [census.allocate(c.polygon) for c in children] if census is not None else None
    for n, child in enumerate(children):
        child.population = {}
        child.max_pop_density = sampled[n][1] if sampled is not None else parent.max_pop_density
    for column, total in parent.population.items():
        raw = np.array([s[0].get(column, 0.0) for s in sampled]) if sampled is not None else None
        if raw is not None and raw.sum() > 0.0:
            shares = raw / raw.sum()
        else:
            shares = areas / areas.sum()
        for child, share in zip(children, shares):
            child.population[column] = float(total * share)


def rebuild_neighbors(arena: CellArena, split: Dict[int, List[Cell]]) -> None:
    """Replace the relations of every split parent with relations to its children.

    ``split`` maps parent handles (still present in ``arena``) to their
    children.  Candidates for a child are its siblings plus the parent's
    neighbors on the same face, themselves replaced by their children when
    they are split in the same event.
    """

    for parent_handle, children in split.items():
        parent = arena[parent_handle]
        for face in ALL_FACES:
            candidates: List[Cell] = []
            for handle in parent.neighbors[face]:
                if handle in split:
                    candidates.extend(split[handle])
                else:
                    candidates.append(arena[handle])
            if face.lateral:
                candidates.extend(children)
            for child in children:
                for other in candidates:
                    if other is child:
                        continue
                    area = interface_area(child, other, face)
                    if area > 0.0:
                        child.neighbors[face][other.handle] = area
                        other.neighbors[face.opposite][child.handle] = area
    for parent_handle in split:
        parent = arena[parent_handle]
        for face in ALL_FACES:
            for handle in parent.neighbors[face]:
                if handle not in split:
                    arena[handle].neighbors[face.opposite].pop(parent_handle, None)


def check_conservation(parent: Cell, children: List[Cell], rtol: float) -> None:
    """Raise :class:`MassConservationError` when a split lost or gained mass or people."""

    before = parent.mass()
    after = np.sum([c.mass() for c in children], axis=0)
    if not np.all(np.isclose(after, before, rtol=rtol, atol=0.0)):
        worst = int(np.argmax(np.abs(after - before)))
        raise MassConservationError(
            f"splitting cell {parent.handle} changed species {worst} mass "
            f"from {before[worst]!r} to {after[worst]!r}"
        )
    for column, total in parent.population.items():
        got = sum(c.population.get(column, 0.0) for c in children)
        if not math.isclose(got, total, rel_tol=rtol, abs_tol=0.0):
            raise MassConservationError(
                f"splitting cell {parent.handle} changed {column} from {total!r} to {got!r}"
            )


def split_cells(domain: Domain, parents: List[Cell]) -> Dict[int, List[Cell]]:
    """Split ``parents`` (in traversal order) and splice the children in."""

    arena = domain.require_arena()
    vg = domain.config.var_grid
    rtol = domain.config.numerics.conservation_rtol
    split: Dict[int, List[Cell]] = {}
    for parent in parents:
        children = make_children(arena, parent, vg, domain.inputs, domain.mechanism)
        check_conservation(parent, children, rtol)
        split[parent.handle] = children
    rebuild_neighbors(arena, split)
    arena.replace(split)
    return split


def mutate_once(domain: Domain, criterion: SplitCriterion) -> int:
    """One mutation event; returns the number of cells split."""

    arena = domain.require_arena()
    vg = domain.config.var_grid
    criterion.prepare(domain)
    parents = [cell for cell in arena if can_split(cell, vg) and criterion(cell, domain)]
    if not parents:
        return 0
    split_cells(domain, parents)
    return len(parents)


class MutateGrid(Stage):
    """Run stage: one refinement event with ``criterion``, then re-allocate emissions."""

    def __init__(self, criterion: SplitCriterion) -> None:
        self.criterion = criterion

    def apply(self, domain: Domain) -> None:
        n = mutate_once(domain, self.criterion)
        if n == 0:
            logger.info("Mutation at t=%.6g s: no cells split (%d cells)", domain.time, len(domain.arena))
            return
        domain.last_mutation_time = domain.time
        domain.mutation_events += 1
        domain.allocate_emissions()
        logger.info(
            "Mutation at t=%.6g s: split %d cells; %d cells now, per layer %s",
            domain.time,
            n,
            len(domain.arena),
            domain.arena.layer_counts(),
        )

    def __repr__(self) -> str:
        return f"MutateGrid({self.criterion!r})"


class AdjustGridCriteria(Stage):
    """Run stage: raise the refinement threshold while the grid is too large.

    After every mutation event that leaves more than ``numerics.max_cells``
    cells, the criterion's threshold is multiplied by
    ``numerics.threshold_step`` so later events split fewer cells.  Without
    ``max_cells`` the stage does nothing.
    """

    def __init__(self, criterion: PopConcCriterion) -> None:
        self.criterion = criterion
        self.reset()

    def reset(self) -> None:
        self.criterion.threshold = None
        self._seen_events = 0

    def apply(self, domain: Domain) -> None:
        numerics = domain.config.numerics
        if numerics.max_cells is None or domain.mutation_events == self._seen_events:
            return
        self._seen_events = domain.mutation_events
        ncells = len(domain.require_arena())
        if ncells <= numerics.max_cells:
            return
        old = self.criterion.current_threshold(domain)
        self.criterion.threshold = old * numerics.threshold_step
        logger.info(
            "Grid has %d cells (limit %d); refinement threshold %.6g -> %.6g",
            ncells,
            numerics.max_cells,
            old,
            self.criterion.threshold,
        )

    def __repr__(self) -> str:
        return f"AdjustGridCriteria({self.criterion!r})"


class StaticRefinement(Stage):
    """Init stage: split by population until no cell qualifies."""

    def __init__(self, criterion: Optional[SplitCriterion] = None) -> None:
        self.criterion = criterion if criterion is not None else PopulationCriterion()

    def apply(self, domain: Domain) -> None:
        passes = 0
        while True:
            n = mutate_once(domain, self.criterion)
            if n == 0:
                break
            passes += 1
            logger.info(
                "Static refinement pass %d: split %d cells; %d cells now",
                passes,
                n,
                len(domain.arena),
            )
        logger.info("Static refinement finished: per-layer cell counts %s", domain.arena.layer_counts())


__all__ = [
    "can_split",
    "SplitCriterion",
    "PopulationCriterion",
    "PopConcCriterion",
    "make_children",
    "rebuild_neighbors",
    "check_conservation",
    "split_cells",
    "mutate_once",
    "MutateGrid",
    "AdjustGridCriteria",
    "StaticRefinement",
]
