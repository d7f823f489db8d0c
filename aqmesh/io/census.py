"""Population and baseline-mortality polygon datasets.

Both datasets are parquet tables with a ``geometry`` column holding WKT
polygons in the grid projection and one numeric column per attribute.
Census populations are counts and are allocated to cells by area fraction;
mortality rates are intensive and are averaged by overlap area.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import shapely
from shapely.errors import GEOSException
from shapely.geometry.base import BaseGeometry
from shapely.strtree import STRtree

from ..errors import CoverageError, InputDataError
from .writer import write_parquet

logger = logging.getLogger(__name__)

GEOMETRY_COLUMN = "geometry"


def read_polygon_table(path: Path, columns: Sequence[str]) -> Tuple[np.ndarray, pd.DataFrame]:
    """Load a WKT polygon table and return ``(geometries, attributes)``."""

    path = Path(path)
    try:
        df = pd.read_parquet(path)
    except (OSError, ValueError) as exc:
        raise InputDataError(f"problem reading polygon table {path}: {exc}") from exc
    if GEOMETRY_COLUMN not in df.columns:
        raise InputDataError(f"{path} has no {GEOMETRY_COLUMN!r} column")
    missing = [col for col in columns if col not in df.columns]
    if missing:
        raise InputDataError(f"{path} is missing columns: {', '.join(missing)}")
    try:
        geoms = shapely.from_wkt(df[GEOMETRY_COLUMN].to_numpy())
    except GEOSException as exc:
        raise InputDataError(f"{path} contains malformed WKT: {exc}") from exc
    attrs = df[list(columns)].astype(float).reset_index(drop=True)
    return np.asarray(geoms, dtype=object), attrs


def write_polygon_table(geometries: Sequence[BaseGeometry], attributes: pd.DataFrame, path: Path) -> Path:
    """Persist polygons and their attributes in the layout read above."""

    df = attributes.reset_index(drop=True).copy()
    df.insert(0, GEOMETRY_COLUMN, shapely.to_wkt(np.asarray(geometries, dtype=object)))
    write_parquet(df, Path(path))
    return Path(path)


class _PolygonIndex:
    """Shared spatial index over a polygon table."""

    def __init__(self, geometries: np.ndarray, attributes: pd.DataFrame) -> None:
        keep = np.array(
            [g is not None and not g.is_empty and g.area > 0.0 for g in geometries],
            dtype=bool,
        )
        dropped = int((~keep).sum())
        if dropped:
            logger.debug("Dropping %d empty or zero-area polygons", dropped)
        self.geometries = geometries[keep]
        self.attributes = attributes.loc[keep].reset_index(drop=True)
        self.values = self.attributes.to_numpy(dtype=float)
        self.columns = tuple(self.attributes.columns)
        self.areas = np.array([g.area for g in self.geometries], dtype=float)
        self.tree = STRtree(list(self.geometries))

    def __len__(self) -> int:
        return len(self.geometries)

    def overlaps(self, polygon: BaseGeometry) -> Tuple[np.ndarray, np.ndarray]:
        """Indices of intersecting polygons and their overlap areas."""

        if len(self) == 0:
            return np.empty(0, dtype=int), np.empty(0)
        idx = np.asarray(self.tree.query(polygon, predicate="intersects"), dtype=int)
        idx.sort()
        if idx.size == 0:
            return idx, np.empty(0)
        inter = shapely.area(shapely.intersection(self.geometries[idx], polygon))
        mask = inter > 0.0
        return idx[mask], np.asarray(inter, dtype=float)[mask]


class CensusData(_PolygonIndex):
    """Census polygons with population counts."""

    def __init__(self, geometries: np.ndarray, attributes: pd.DataFrame, grid_column: str) -> None:
        if grid_column not in attributes.columns:
            raise InputDataError(f"census data has no {grid_column!r} column")
        super().__init__(geometries, attributes)
        self.grid_column = grid_column
        self._grid_idx = self.columns.index(grid_column)

    @classmethod
    def from_parquet(cls, path: Path, columns: Sequence[str], grid_column: str) -> "CensusData":
        geoms, attrs = read_polygon_table(path, columns)
        census = cls(geoms, attrs, grid_column)
        logger.info("Loaded %d census polygons from %s", len(census), path)
        return census

    def allocate(self, polygon: BaseGeometry) -> Tuple[Dict[str, float], float]:
        """Population inside ``polygon`` and the densest touching polygon.

        Returns ``(population, max_density)`` where population maps each
        census column to its area-weighted count and ``max_density`` is the
        largest ``grid_column`` density (people per unit area) of any census
        polygon that overlaps ``polygon``.
        """

        idx, inter = self.overlaps(polygon)
        if idx.size == 0:
            return {col: 0.0 for col in self.columns}, 0.0
        frac = inter / self.areas[idx]
        pop = frac @ self.values[idx]
        density = self.values[idx, self._grid_idx] / self.areas[idx]
        return {col: float(v) for col, v in zip(self.columns, pop)}, float(density.max())


class MortalityData(_PolygonIndex):
    """Baseline mortality rates (deaths per 100,000 people per year)."""

    @classmethod
    def from_parquet(cls, path: Path, columns: Sequence[str]) -> "MortalityData":
        geoms, attrs = read_polygon_table(path, columns)
        mort = cls(geoms, attrs)
        logger.info("Loaded %d mortality polygons from %s", len(mort), path)
        return mort

    def rates(self, polygon: BaseGeometry) -> Dict[str, float]:
        """Area-weighted mean rates over ``polygon``.

        Falls back to the nearest polygon when nothing intersects.

        Raises
        ------
        CoverageError
            When the dataset holds no usable polygon.
        """

        if len(self) == 0:
            raise CoverageError("mortality dataset has no polygons to resolve a cell against")
        idx, inter = self.overlaps(polygon)
        if idx.size == 0:
            nearest: Optional[int] = self.tree.nearest(polygon)
            if nearest is None:
                raise CoverageError("no mortality polygon could be matched to the cell")
            row = self.values[int(nearest)]
            return {col: float(v) for col, v in zip(self.columns, row)}
        mean = (inter @ self.values[idx]) / inter.sum()
        return {col: float(v) for col, v in zip(self.columns, mean)}


__all__ = [
    "CensusData",
    "MortalityData",
    "read_polygon_table",
    "write_polygon_table",
    "GEOMETRY_COLUMN",
]
