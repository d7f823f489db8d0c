"""SR worker: runs one unit-emission simulation per source row.

A worker loads its base grid once (from the shared grid file, or from an
arena handed to it in-process) and answers :class:`SRRequest` envelopes.
Each row runs on a private deep copy of the base grid, so rows are
independent and a row's result does not depend on which worker ran it or
in which order.
"""
from __future__ import annotations

import copy
import logging
import socket
from pathlib import Path
from typing import Dict, List, Optional

import numpy as np
from pydantic import ValidationError
from shapely.geometry import Point

from .. import constants
from ..convergence import SteadyStateConvergenceCheck
from ..emissions import EmisRecord
from ..errors import AqMeshError, ConfigurationError, WorkerError
from ..grid import Cell, CellArena
from ..io.gridstore import load_grid
from ..physics import (
    AddEmissionsFlux,
    Chemistry,
    DryDeposition,
    LinearMechanism,
    Mechanism,
    MeanderMixing,
    Mixing,
    UpwindAdvection,
    WetDeposition,
)
from ..pipeline import AllocateEmissions, Calculations, Domain
from ..schema import Config
from ..timestep import SetTimestepCFL
from ..vargrid import UseGrid
from .protocol import SRRequest, SRResponse, SRRow

logger = logging.getLogger(__name__)


def unit_emission(cell: Cell) -> EmisRecord:
    """1 μg s⁻¹ of every emitted pollutant at the centre of ``cell``."""

    x, y = cell.centroid
    rates = {pol: 1.0 for pol in constants.EMITTED_POLLUTANTS}
    return EmisRecord(Point(x, y), rates, height=cell.z0 + 0.5 * cell.dz)


class SRWorker:
    """Computes SR rows against a fixed base grid."""

    def __init__(
        self,
        config: Config,
        *,
        arena: Optional[CellArena] = None,
        mechanism: Optional[Mechanism] = None,
        name: Optional[str] = None,
    ) -> None:
        self.config = config
        self.mechanism = mechanism if mechanism is not None else LinearMechanism()
        self.name = name or socket.gethostname()
        self._grids: Dict[Optional[str], CellArena] = {}
        self._sources: Dict[tuple, List[Cell]] = {}
        if arena is not None:
            self.mechanism.check_species(arena.species)
            self._grids[None] = arena

    @classmethod
    def from_config(cls, config: Config, *, mechanism: Optional[Mechanism] = None) -> "SRWorker":
        """Worker whose base grid is ``config.variable_grid_data``."""

        if config.variable_grid_data is None:
            raise ConfigurationError("the SR workflow needs variable_grid_data (a saved grid)")
        worker = cls(config, mechanism=mechanism)
        worker.base_grid(str(config.variable_grid_data))
        return worker

    def base_grid(self, path: Optional[str]) -> CellArena:
        """Base grid for ``path``, loaded on first use and kept for later requests."""

        arena = self._grids.get(path)
        if arena is None:
            if path is None:
                if not self._grids:
                    raise WorkerError(f"worker {self.name} has no base grid")
                arena = next(iter(self._grids.values()))
            else:
                saved = load_grid(
                    Path(path),
                    var_grid=self.config.var_grid.model_dump(),
                    mechanism=self.mechanism.name,
                )
                self.mechanism.check_species(saved.arena.species)
                arena = saved.arena
            self._grids[path] = arena
        return arena

    def sources(self, path: Optional[str], layer: int) -> List[Cell]:
        key = (path, layer)
        cells = self._sources.get(key)
        if cells is None:
            arena = self.base_grid(path)
            if not 0 <= layer < arena.nlayers:
                raise WorkerError(f"layer {layer} outside grid with {arena.nlayers} layers")
            cells = self._sources[key] = arena.cells_in_layer(layer)
        return cells

    def domain_for(self, config: Config, arena: CellArena, source: Cell) -> Domain:
        """A fresh domain emitting a unit source at ``source``."""

        return Domain(
            config,
            self.mechanism,
            emissions=[unit_emission(source)],
            init_stages=[UseGrid(arena), AllocateEmissions(), SetTimestepCFL()],
            run_stages=[
                Calculations(AddEmissionsFlux()),
                Calculations(
                    UpwindAdvection(),
                    Mixing(),
                    MeanderMixing(),
                    DryDeposition(),
                    WetDeposition(),
                    Chemistry(),
                ),
                SteadyStateConvergenceCheck.from_config(config),
            ],
        )

    def compute_row(self, config: Config, path: Optional[str], layer: int, source: int) -> Dict[str, np.ndarray]:
        """Ground-layer response to a unit emission from source ``source`` of ``layer``."""

        cells = self.sources(path, layer)
        if not 0 <= source < len(cells):
            raise WorkerError(f"source {source} outside layer {layer} with {len(cells)} cells")
        domain = self.domain_for(config, self.base_grid(path), cells[source])
        domain.execute()
        ground = domain.arena.cells_in_layer(0)
        conc = np.array([c.cf for c in ground]).reshape(len(ground), len(domain.arena.species))
        return self.mechanism.output_variables(conc)

    def calculate(self, request: SRRequest) -> SRResponse:
        """Compute every row in the request; failures become ``ok=False`` responses."""

        try:
            config = Config.model_validate(request.config) if request.config else self.config
            rows = []
            for source in range(request.begin, request.end):
                values = self.compute_row(config, request.grid_path, request.layer, source)
                rows.append(
                    SRRow(
                        layer=request.layer,
                        source=source,
                        values={k: [float(x) for x in v] for k, v in values.items()},
                    )
                )
        except (AqMeshError, ValidationError) as exc:
            logger.error(
                "worker %s failed on layer %d rows [%d, %d): %s",
                self.name,
                request.layer,
                request.begin,
                request.end,
                exc,
            )
            return SRResponse(ok=False, error=f"{type(exc).__name__}: {exc}", worker=self.name, id=request.id)
        logger.info(
            "worker %s computed layer %d rows [%d, %d)",
            self.name,
            request.layer,
            request.begin,
            request.end,
        )
        return SRResponse(ok=True, rows=rows, worker=self.name, id=request.id)

    def handle(self, payload: str) -> str:
        """Wire entry point: JSON request in, JSON response out."""

        try:
            request = SRRequest.model_validate_json(payload)
        except ValidationError as exc:
            return SRResponse(ok=False, error=f"invalid request: {exc}", worker=self.name).model_dump_json()
        return self.calculate(request).model_dump_json()

    def clone(self) -> "SRWorker":
        """Independent worker sharing nothing mutable with this one."""

        other = SRWorker(self.config, mechanism=self.mechanism, name=self.name)
        other._grids = {k: copy.deepcopy(v) for k, v in self._grids.items()}
        return other


__all__ = ["SRWorker", "unit_emission"]
