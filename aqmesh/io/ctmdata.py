"""Gridded meteorology (CTM) dataset.

The baseline meteorology is held on a regular rectilinear grid in the grid
projection: ``nx`` by ``ny`` columns starting at ``(x0, y0)`` with spacing
``dx``/``dy``, and ``nz`` layers described by their edge heights.  Every
field is a ``(nz, ny, nx)`` array.  The container is persisted as a NumPy
``.npz`` archive so it can be shared read-only between SR workers.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, Mapping, Optional, Sequence

import numpy as np

from ..errors import CoverageError, InputDataError

logger = logging.getLogger(__name__)

#: Transport fields every dataset must provide.
TRANSPORT_FIELDS = ("UAvg", "VAvg", "WAvg", "Kzz", "Kxxyy", "UDeviation", "VDeviation")

_META_KEYS = ("x0", "y0", "dx", "dy", "layer_edges")


@dataclass
class CTMData:
    """Regular-grid meteorology fields.

    Attributes
    ----------
    x0, y0:
        Lower-left corner of the CTM grid [m].
    dx, dy:
        Horizontal spacing of the CTM grid [m].
    layer_edges:
        Heights of the ``nz + 1`` layer edges, strictly increasing [m].
    fields:
        Named 3-D arrays with shape ``(nz, ny, nx)``.
    """

    x0: float
    y0: float
    dx: float
    dy: float
    layer_edges: np.ndarray
    fields: Dict[str, np.ndarray] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.layer_edges = np.asarray(self.layer_edges, dtype=float)
        if self.layer_edges.ndim != 1 or self.layer_edges.size < 2:
            raise InputDataError("layer_edges must list at least two heights")
        if not np.all(np.diff(self.layer_edges) > 0.0):
            raise InputDataError("layer_edges must increase strictly with altitude")
        if not (self.dx > 0.0 and self.dy > 0.0):
            raise InputDataError(f"CTM spacing must be positive, got dx={self.dx}, dy={self.dy}")
        shape = None
        for name, values in list(self.fields.items()):
            arr = np.asarray(values, dtype=float)
            if arr.ndim != 3:
                raise InputDataError(f"CTM field {name!r} must be 3-D (nz, ny, nx), got shape {arr.shape}")
            if shape is None:
                shape = arr.shape
            elif arr.shape != shape:
                raise InputDataError(f"CTM field {name!r} has shape {arr.shape}, expected {shape}")
            if not np.all(np.isfinite(arr)):
                raise InputDataError(f"CTM field {name!r} contains non-finite values")
            self.fields[name] = arr
        if shape is not None and shape[0] != self.nlayers:
            raise InputDataError(
                f"CTM fields have {shape[0]} layers but layer_edges describes {self.nlayers}"
            )
        self._x_edges: Optional[np.ndarray] = None
        self._y_edges: Optional[np.ndarray] = None

    # ------------------------------------------------------------------
    # Shape helpers
    # ------------------------------------------------------------------
    @property
    def nlayers(self) -> int:
        return int(self.layer_edges.size - 1)

    @property
    def shape(self) -> tuple:
        for arr in self.fields.values():
            return arr.shape
        return (self.nlayers, 0, 0)

    @property
    def x_edges(self) -> np.ndarray:
        if self._x_edges is None:
            nx = self.shape[2]
            self._x_edges = self.x0 + self.dx * np.arange(nx + 1)
        return self._x_edges

    @property
    def y_edges(self) -> np.ndarray:
        if self._y_edges is None:
            ny = self.shape[1]
            self._y_edges = self.y0 + self.dy * np.arange(ny + 1)
        return self._y_edges

    def layer_bottom(self, layer: int) -> float:
        return float(self.layer_edges[layer])

    def layer_thickness(self, layer: int) -> float:
        return float(self.layer_edges[layer + 1] - self.layer_edges[layer])

    def layer_of_height(self, height: float) -> int:
        """Index of the layer whose ``[bottom, top)`` interval contains ``height``.

        Heights below the ground map to layer 0 and heights at or above the
        model top map to the top layer.
        """

        if not math.isfinite(height):
            raise InputDataError(f"release height must be finite, got {height!r}")
        idx = int(np.searchsorted(self.layer_edges, height, side="right")) - 1
        return min(max(idx, 0), self.nlayers - 1)

    def require(self, names: Iterable[str]) -> None:
        """Raise :class:`InputDataError` listing any missing fields."""

        missing = [name for name in names if name not in self.fields]
        if missing:
            raise InputDataError("CTM dataset is missing fields: " + ", ".join(sorted(missing)))

    # ------------------------------------------------------------------
    # Sampling
    # ------------------------------------------------------------------
    def _weights(self, lo: float, hi: float, edges: np.ndarray) -> np.ndarray:
        return np.clip(np.minimum(hi, edges[1:]) - np.maximum(lo, edges[:-1]), 0.0, None)

    def cell_values(
        self,
        bounds: Sequence[float],
        layer: int,
        names: Optional[Iterable[str]] = None,
    ) -> Dict[str, float]:
        """Area-weighted mean of each field over a rectangle in one layer.

        Raises
        ------
        CoverageError
            When the rectangle does not overlap the CTM grid at all.
        """

        x0, y0, x1, y1 = bounds
        if not 0 <= layer < self.nlayers:
            raise CoverageError(f"layer {layer} is outside the CTM dataset ({self.nlayers} layers)")
        wx = self._weights(x0, x1, self.x_edges)
        wy = self._weights(y0, y1, self.y_edges)
        ix = np.nonzero(wx)[0]
        iy = np.nonzero(wy)[0]
        if ix.size == 0 or iy.size == 0:
            raise CoverageError(
                f"cell ({x0:g}, {y0:g}, {x1:g}, {y1:g}) in layer {layer} does not overlap the CTM grid"
            )
        weights = np.outer(wy[iy], wx[ix])
        total = weights.sum()
        selected = self.fields.keys() if names is None else names
        out: Dict[str, float] = {}
        for name in selected:
            block = self.fields[name][layer][np.ix_(iy, ix)]
            out[name] = float((block * weights).sum() / total)
        return out

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    def to_npz(self, path: Path) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = {f"field_{name}": arr for name, arr in self.fields.items()}
        np.savez_compressed(
            path,
            x0=np.float64(self.x0),
            y0=np.float64(self.y0),
            dx=np.float64(self.dx),
            dy=np.float64(self.dy),
            layer_edges=self.layer_edges,
            **payload,
        )
        return path

    @classmethod
    def from_npz(cls, path: Path) -> "CTMData":
        path = Path(path)
        try:
            with np.load(path, allow_pickle=False) as data:
                missing = [key for key in _META_KEYS if key not in data.files]
                if missing:
                    raise InputDataError(f"{path} is missing CTM metadata: {', '.join(missing)}")
                fields = {
                    key[len("field_"):]: np.array(data[key])
                    for key in data.files
                    if key.startswith("field_")
                }
                ctm = cls(
                    x0=float(data["x0"]),
                    y0=float(data["y0"]),
                    dx=float(data["dx"]),
                    dy=float(data["dy"]),
                    layer_edges=np.array(data["layer_edges"]),
                    fields=fields,
                )
        except (OSError, ValueError) as exc:
            raise InputDataError(f"problem reading CTM data {path}: {exc}") from exc
        ctm.require(TRANSPORT_FIELDS)
        logger.info(
            "Loaded CTM data %s: %d layers, %dx%d columns, %d fields",
            path,
            ctm.nlayers,
            ctm.shape[2],
            ctm.shape[1],
            len(ctm.fields),
        )
        return ctm

    @classmethod
    def uniform(
        cls,
        *,
        x0: float,
        y0: float,
        dx: float,
        dy: float,
        nx: int,
        ny: int,
        layer_edges: Sequence[float],
        values: Mapping[str, float],
    ) -> "CTMData":
        """Build a dataset where every field is spatially constant."""

        nz = len(layer_edges) - 1
        fields = {name: np.full((nz, ny, nx), float(value)) for name, value in values.items()}
        return cls(x0=x0, y0=y0, dx=dx, dy=dy, layer_edges=np.asarray(layer_edges, dtype=float), fields=fields)


__all__ = ["CTMData", "TRANSPORT_FIELDS"]
