"""Emission records and their allocation into grid cells.

Records carry a point, line or polygon geometry in the grid projection, a
release height and per-pollutant rates already converted to μg s⁻¹.  A
record is allocated to the layer whose ``[bottom, top)`` interval holds its
release height, and within that layer in proportion to its spatial overlap
with each cell: points go wholly to the cell that contains them (cell
bounds are half-open), lines by length fraction and polygons by area
fraction.  Geometry that is empty, malformed or outside the grid contributes
nothing; that is logged, never raised.
"""
from __future__ import annotations

import logging
import math
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import shapely
from shapely.geometry.base import BaseGeometry
from shapely.strtree import STRtree

from . import constants
from .config_utils import check_emission_units
from .errors import InputDataError
from .grid import Cell, CellArena
from .io.writer import write_parquet
from .physics.mechanism import Mechanism
from .warnings import AllocationWarning

logger = logging.getLogger(__name__)

HEIGHT_COLUMN = "height"
GEOMETRY_COLUMN = "geometry"


@dataclass(frozen=True)
class EmisRecord:
    """One emission source.

    Attributes
    ----------
    geometry:
        Source geometry, or ``None`` when the input geometry was unreadable.
    rates:
        Emitted pollutant -> rate [μg s⁻¹].
    height:
        Release height above ground [m].
    """

    geometry: Optional[BaseGeometry]
    rates: Mapping[str, float]
    height: float = 0.0

    def __post_init__(self) -> None:
        for pol, rate in self.rates.items():
            if pol not in constants.EMITTED_POLLUTANTS:
                raise InputDataError(
                    f"unknown pollutant {pol!r}; expected one of {', '.join(constants.EMITTED_POLLUTANTS)}"
                )
            if not math.isfinite(rate):
                raise InputDataError(f"emission rate for {pol} must be finite, got {rate!r}")
        if not math.isfinite(self.height):
            raise InputDataError(f"release height must be finite, got {self.height!r}")

    @classmethod
    def from_units(
        cls,
        geometry: Optional[BaseGeometry],
        rates: Mapping[str, float],
        units: str,
        height: float = 0.0,
    ) -> "EmisRecord":
        """Build a record from rates expressed in ``units``."""

        factor = check_emission_units(units)
        return cls(geometry, {k: float(v) * factor for k, v in rates.items()}, float(height))


@dataclass
class AllocationReport:
    """Summary of one allocation pass."""

    records: int = 0
    allocated: int = 0
    zero_contribution: int = 0
    emitted: Dict[str, float] = field(default_factory=dict)
    allocated_rates: Dict[str, float] = field(default_factory=dict)

    def fraction_allocated(self, pollutant: str) -> float:
        total = self.emitted.get(pollutant, 0.0)
        if total == 0.0:
            return 1.0
        return self.allocated_rates.get(pollutant, 0.0) / total


def load_emissions(paths: Sequence[Path], units: str) -> List[EmisRecord]:
    """Read emission tables (parquet, WKT geometry) into records.

    Each table needs a ``geometry`` column and any subset of the emitted
    pollutant columns; an optional ``height`` column gives the release height.
    """

    factor = check_emission_units(units)
    records: List[EmisRecord] = []
    for path in paths:
        path = Path(path)
        try:
            df = pd.read_parquet(path)
        except (OSError, ValueError) as exc:
            raise InputDataError(f"problem reading emissions {path}: {exc}") from exc
        if GEOMETRY_COLUMN not in df.columns:
            raise InputDataError(f"{path} has no {GEOMETRY_COLUMN!r} column")
        pols = [p for p in constants.EMITTED_POLLUTANTS if p in df.columns]
        if not pols:
            raise InputDataError(
                f"{path} has none of the pollutant columns {', '.join(constants.EMITTED_POLLUTANTS)}"
            )
        geoms = shapely.from_wkt(df[GEOMETRY_COLUMN].to_numpy(), on_invalid="ignore")
        heights = (
            df[HEIGHT_COLUMN].astype(float).to_numpy()
            if HEIGHT_COLUMN in df.columns
            else np.zeros(len(df))
        )
        values = df[pols].astype(float).fillna(0.0).to_numpy()
        for geom, height, row in zip(geoms, heights, values):
            rates = {p: float(v) * factor for p, v in zip(pols, row)}
            records.append(EmisRecord(geom, rates, float(height)))
        logger.info("Loaded %d emission records from %s", len(df), path)
    return records


def write_emissions(records: Iterable[EmisRecord], path: Path) -> Path:
    """Write records (rates in μg s⁻¹) in the layout read by :func:`load_emissions`."""

    rows = []
    for rec in records:
        row = {
            GEOMETRY_COLUMN: None if rec.geometry is None else rec.geometry.wkt,
            HEIGHT_COLUMN: rec.height,
        }
        for pol in constants.EMITTED_POLLUTANTS:
            row[pol] = float(rec.rates.get(pol, 0.0))
        rows.append(row)
    columns = [GEOMETRY_COLUMN, HEIGHT_COLUMN, *constants.EMITTED_POLLUTANTS]
    write_parquet(pd.DataFrame(rows, columns=columns), Path(path))
    return Path(path)


def layer_edges(arena: CellArena) -> np.ndarray:
    """Layer edge heights recovered from the cells of ``arena``."""

    bottoms = [math.nan] * arena.nlayers
    top = 0.0
    for cell in arena:
        bottoms[cell.layer] = cell.z0
        if cell.layer == arena.nlayers - 1:
            top = cell.z1
    return np.array(bottoms + [top], dtype=float)


class _LayerIndex:
    """Spatial index over the cells of one layer."""

    def __init__(self, cells: List[Cell]) -> None:
        self.cells = cells
        self.polygons = shapely.box(
            np.array([c.x0 for c in cells]),
            np.array([c.y0 for c in cells]),
            np.array([c.x1 for c in cells]),
            np.array([c.y1 for c in cells]),
        )
        self.tree = STRtree(self.polygons)
        # the outer east and north edges belong to the cells along them
        self.x_max = max(c.x1 for c in cells)
        self.y_max = max(c.y1 for c in cells)

    def fractions(self, geom: BaseGeometry) -> List[Tuple[Cell, float]]:
        """Cells overlapped by ``geom`` with the fraction of the record each receives."""

        kind = geom.geom_type
        if kind in ("Point", "MultiPoint"):
            points = list(getattr(geom, "geoms", [geom]))
            share = 1.0 / len(points)
            out: Dict[int, float] = {}
            for pt in points:
                cell = self._containing(pt.x, pt.y)
                if cell is not None:
                    out[cell] = out.get(cell, 0.0) + share
            return [(self.cells[i], f) for i, f in sorted(out.items())]
        if kind in ("LineString", "MultiLineString", "LinearRing"):
            total = geom.length
            measure = shapely.length
        elif kind in ("Polygon", "MultiPolygon"):
            total = geom.area
            measure = shapely.area
        else:
            return []
        if not total > 0.0:
            return []
        idx = np.sort(np.asarray(self.tree.query(geom, predicate="intersects"), dtype=int))
        if idx.size == 0:
            return []
        parts = measure(shapely.intersection(self.polygons[idx], geom)) / total
        return [(self.cells[i], float(f)) for i, f in zip(idx, parts) if f > 0.0]

    def _containing(self, x: float, y: float) -> Optional[int]:
        idx = np.sort(np.asarray(self.tree.query(shapely.points(x, y), predicate="intersects"), dtype=int))
        for i in idx:
            c = self.cells[i]
            in_x = c.x0 <= x < c.x1 or x == c.x1 == self.x_max
            in_y = c.y0 <= y < c.y1 or y == c.y1 == self.y_max
            if in_x and in_y:
                return int(i)
        return None


def _release_layer(edges: np.ndarray, height: float) -> int:
    nlayers = len(edges) - 1
    return min(max(int(np.searchsorted(edges, height, side="right")) - 1, 0), nlayers - 1)


def allocate_emissions(
    arena: CellArena,
    records: Sequence[EmisRecord],
    mechanism: Mechanism,
) -> AllocationReport:
    """Reset and recompute ``emis_flux`` [μg m⁻³ s⁻¹] for every cell."""

    for cell in arena:
        cell.emis_flux = np.zeros(len(arena.species))
    report = AllocationReport(records=len(records))
    if not records:
        return report
    edges = layer_edges(arena)
    indices: Dict[int, _LayerIndex] = {}
    for n, rec in enumerate(records):
        for pol, rate in rec.rates.items():
            report.emitted[pol] = report.emitted.get(pol, 0.0) + rate
        geom = rec.geometry
        if geom is None or geom.is_empty:
            report.zero_contribution += 1
            logger.debug("emission record %d has no usable geometry; contributes nothing", n)
            continue
        layer = _release_layer(edges, rec.height)
        index = indices.get(layer)
        if index is None:
            index = indices[layer] = _LayerIndex(arena.cells_in_layer(layer))
        parts = index.fractions(geom)
        if not parts:
            report.zero_contribution += 1
            logger.debug(
                "emission record %d (%s) does not overlap layer %d; contributes nothing",
                n,
                geom.geom_type,
                layer,
            )
            continue
        vec = mechanism.emission_vector(rec.rates)
        frac_total = 0.0
        for cell, frac in parts:
            cell.emis_flux = cell.emis_flux + vec * (frac / cell.volume)
            frac_total += frac
        report.allocated += 1
        for pol, rate in rec.rates.items():
            report.allocated_rates[pol] = report.allocated_rates.get(pol, 0.0) + rate * frac_total
    logger.info(
        "Allocated %d of %d emission records (%d with zero contribution)",
        report.allocated,
        report.records,
        report.zero_contribution,
    )
    if report.records and report.allocated == 0:
        warnings.warn(
            f"none of the {report.records} emission records overlap the grid",
            AllocationWarning,
        )
    return report


def source_rates(arena: CellArena, records: Sequence[EmisRecord]) -> Dict[Tuple[int, int], Dict[str, float]]:
    """Emission rates [μg s⁻¹] per ``(layer, position)`` source cell.

    ``position`` is the cell's index in :meth:`CellArena.cells_in_layer`,
    the numbering SR matrix rows use.  Records are split between cells
    exactly as :func:`allocate_emissions` splits them; records that miss
    the grid contribute nothing.
    """

    out: Dict[Tuple[int, int], Dict[str, float]] = {}
    if not records:
        return out
    edges = layer_edges(arena)
    indices: Dict[int, _LayerIndex] = {}
    positions: Dict[int, Dict[int, int]] = {}
    for rec in records:
        if rec.geometry is None or rec.geometry.is_empty:
            continue
        layer = _release_layer(edges, rec.height)
        index = indices.get(layer)
        if index is None:
            index = indices[layer] = _LayerIndex(arena.cells_in_layer(layer))
            positions[layer] = {c.handle: n for n, c in enumerate(index.cells)}
        for cell, frac in index.fractions(rec.geometry):
            rates = out.setdefault((layer, positions[layer][cell.handle]), {})
            for pol, rate in rec.rates.items():
                rates[pol] = rates.get(pol, 0.0) + rate * frac
    return out


__all__ = [
    "EmisRecord",
    "AllocationReport",
    "load_emissions",
    "write_emissions",
    "allocate_emissions",
    "source_rates",
    "layer_edges",
]
