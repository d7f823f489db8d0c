"""Construction of the variable-resolution grid.

The base mesh is a regular ``xnests[0]`` by ``ynests[0]`` array of outer
cells repeated in every CTM layer.  Each cell samples its meteorology from
the CTM dataset (area-weighted over the cell footprint in its own layer) and
its population and mortality rates from the census polygons under its
footprint.  Population is attached to cells in every layer so the dynamic
refinement criterion can compare neighbors at any height; health impacts
use the ground layer only.
"""
from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Tuple

from .errors import InputDataError
from .grid import Cell, CellArena, Face
from .io.census import CensusData, MortalityData
from .io.ctmdata import TRANSPORT_FIELDS, CTMData
from .io.gridstore import load_grid
from .physics.mechanism import Mechanism
from .pipeline import Domain, Stage
from .schema import Config, VarGrid

logger = logging.getLogger(__name__)


@dataclass
class GridInputs:
    """Read-only datasets a grid is built from."""

    ctm: CTMData
    census: Optional[CensusData] = None
    mortality: Optional[MortalityData] = None

    @classmethod
    def load(cls, cfg: Config, *, need_census: bool = True) -> "GridInputs":
        ctm = CTMData.from_npz(cfg.ctm_data)
        census = mortality = None
        vg = cfg.var_grid
        if need_census:
            if vg.census_file is None or vg.mortality_rate_file is None:
                raise InputDataError("var_grid.census_file and var_grid.mortality_rate_file are required")
            census = CensusData.from_parquet(vg.census_file, vg.census_pop_columns, vg.pop_grid_column)
            mortality = MortalityData.from_parquet(vg.mortality_rate_file, tuple(vg.mortality_rate_columns))
        return cls(ctm=ctm, census=census, mortality=mortality)

    def check_fields(self, mechanism: Mechanism) -> None:
        self.ctm.require(TRANSPORT_FIELDS + tuple(mechanism.required_fields))


def sample_meteorology(cell: Cell, ctm: CTMData, mechanism: Mechanism) -> None:
    """Fill transport, deposition and chemistry fields of ``cell`` from ``ctm``."""

    met = ctm.cell_values((cell.x0, cell.y0, cell.x1, cell.y1), cell.layer)
    cell.u = met["UAvg"]
    cell.v = met["VAvg"]
    cell.w = met["WAvg"]
    cell.kzz = met["Kzz"]
    cell.kxxyy = met["Kxxyy"]
    cell.u_dev = met["UDeviation"]
    cell.v_dev = met["VDeviation"]
    cell.met = {k: v for k, v in met.items() if k not in TRANSPORT_FIELDS}
    cell.dry_dep = mechanism.dry_deposition(met)
    cell.wet_dep = mechanism.wet_deposition(met)


def sample_population(
    cell: Cell,
    inputs: GridInputs,
    var_grid: VarGrid,
) -> Tuple[Dict[str, float], float, Dict[str, float]]:
    """Census population, max census density and mortality rates for ``cell``."""

    polygon = cell.polygon
    if inputs.census is not None:
        pop, density = inputs.census.allocate(polygon)
    else:
        pop, density = {col: 0.0 for col in var_grid.census_pop_columns}, 0.0
    if inputs.mortality is not None:
        mort = inputs.mortality.rates(polygon)
    else:
        mort = {col: 0.0 for col in var_grid.mortality_rate_columns}
    return pop, density, mort


def regular_grid(var_grid: VarGrid, inputs: GridInputs, mechanism: Mechanism) -> CellArena:
    """Build the outermost-nest mesh with sampled inputs and linked neighbors."""

    ctm = inputs.ctm
    inputs.check_fields(mechanism)
    nx, ny, nz = var_grid.xnests[0], var_grid.ynests[0], ctm.nlayers
    arena = CellArena(nz, mechanism.species)
    index: Dict[Tuple[int, int, int], Cell] = {}
    footprint: Dict[Tuple[int, int], Tuple[Dict[str, float], float, Dict[str, float]]] = {}
    for k in range(nz):
        for j in range(ny):
            for i in range(nx):
                bounds = (
                    var_grid.xo + i * var_grid.dx,
                    var_grid.yo + j * var_grid.dy,
                    var_grid.xo + (i + 1) * var_grid.dx,
                    var_grid.yo + (j + 1) * var_grid.dy,
                )
                cell = arena.new_cell(
                    layer=k,
                    depth=0,
                    bounds=bounds,
                    z0=ctm.layer_bottom(k),
                    dz=ctm.layer_thickness(k),
                )
                cell.check_dimensions()
                sample_meteorology(cell, ctm, mechanism)
                if (i, j) not in footprint:
                    footprint[(i, j)] = sample_population(cell, inputs, var_grid)
                pop, density, mort = footprint[(i, j)]
                cell.population = dict(pop)
                cell.max_pop_density = density
                cell.mortality = dict(mort)
                arena.add(cell)
                index[(i, j, k)] = cell
    for (i, j, k), cell in index.items():
        east = index.get((i + 1, j, k))
        if east is not None:
            arena.link(cell, Face.EAST, east, cell.dy * cell.dz)
        north = index.get((i, j + 1, k))
        if north is not None:
            arena.link(cell, Face.NORTH, north, cell.dx * cell.dz)
        above = index.get((i, j, k + 1))
        if above is not None:
            arena.link(cell, Face.ABOVE, above, cell.area)
    logger.info("Built regular grid: %d x %d cells in %d layers", nx, ny, nz)
    return arena


class RegularGrid(Stage):
    """Init stage: build the regular base mesh from the domain's inputs."""

    def apply(self, domain: Domain) -> None:
        if domain.inputs is None:
            raise InputDataError("RegularGrid needs grid inputs on the domain")
        domain.arena = regular_grid(domain.config.var_grid, domain.inputs, domain.mechanism)


class UseGrid(Stage):
    """Init stage: start from a private copy of an already built grid."""

    def __init__(self, arena: CellArena) -> None:
        self.arena = arena

    def apply(self, domain: Domain) -> None:
        domain.mechanism.check_species(self.arena.species)
        domain.arena = copy.deepcopy(self.arena)


class LoadGrid(Stage):
    """Init stage: load a grid saved by the ``grid`` workflow."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def apply(self, domain: Domain) -> None:
        saved = load_grid(
            self.path,
            var_grid=domain.config.var_grid.model_dump(),
            mechanism=domain.mechanism.name,
        )
        domain.mechanism.check_species(saved.arena.species)
        domain.arena = saved.arena

    def __repr__(self) -> str:
        return f"LoadGrid({str(self.path)!r})"


__all__ = [
    "GridInputs",
    "sample_meteorology",
    "sample_population",
    "regular_grid",
    "RegularGrid",
    "UseGrid",
    "LoadGrid",
]
