"""Cell and neighbor-topology primitives for the variable-resolution grid.

Cells are axis-aligned boxes in the grid projection, stacked in layers whose
indices increase with altitude.  They live in a :class:`CellArena` and are
addressed by stable integer handles; each cell keeps, per face, an ordered
mapping ``handle -> interface area`` that is always mirrored on the neighbor
under the opposite face.  The arena also owns the traversal order used by
the pipeline; that order matters for iteration only.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

import numpy as np
from shapely.geometry import Polygon, box

from .constants import GEOMETRY_RTOL
from .errors import NumericalError, TopologyError

logger = logging.getLogger(__name__)


class Face(str, Enum):
    """Cell faces; lateral faces share a layer, vertical ones cross layers."""

    WEST = "west"
    EAST = "east"
    SOUTH = "south"
    NORTH = "north"
    BELOW = "below"
    ABOVE = "above"

    @property
    def opposite(self) -> "Face":
        return _OPPOSITE[self]

    @property
    def lateral(self) -> bool:
        return self not in (Face.BELOW, Face.ABOVE)

    @property
    def axis(self) -> int:
        """0 (x), 1 (y) or 2 (z)."""
        return _AXIS[self]

    @property
    def sign(self) -> float:
        """+1 for faces on the positive side of the cell along :attr:`axis`."""
        return 1.0 if self in (Face.EAST, Face.NORTH, Face.ABOVE) else -1.0


_OPPOSITE = {
    Face.WEST: Face.EAST,
    Face.EAST: Face.WEST,
    Face.SOUTH: Face.NORTH,
    Face.NORTH: Face.SOUTH,
    Face.BELOW: Face.ABOVE,
    Face.ABOVE: Face.BELOW,
}

_AXIS = {
    Face.WEST: 0,
    Face.EAST: 0,
    Face.SOUTH: 1,
    Face.NORTH: 1,
    Face.BELOW: 2,
    Face.ABOVE: 2,
}

LATERAL_FACES: Tuple[Face, ...] = (Face.WEST, Face.EAST, Face.SOUTH, Face.NORTH)
ALL_FACES: Tuple[Face, ...] = tuple(Face)


@dataclass
class Cell:
    """One grid cell.

    Attributes
    ----------
    handle:
        Stable identity inside the owning arena.
    layer, depth:
        Vertical layer index and nesting depth (index into the nest lists).
    x0, y0, x1, y1:
        Horizontal bounds in the grid projection [m].
    z0, dz:
        Bottom height and thickness of the layer [m].
    ci, cf:
        Per-species concentrations [μg m⁻³] at the start of the current
        iteration and after the kernels applied so far.
    emis_flux:
        Per-species emission tendency [μg m⁻³ s⁻¹].
    u, v, w:
        Cell-centred wind components [m s⁻¹].
    kzz, kxxyy:
        Vertical and horizontal eddy diffusivities [m² s⁻¹].
    u_dev, v_dev:
        Standard deviations of the wind components [m s⁻¹], driving meander
        mixing.
    dry_dep, wet_dep:
        Per-species dry deposition velocity [m s⁻¹] and wet scavenging rate [s⁻¹].
    met:
        Remaining meteorology/chemistry fields sampled from the CTM data.
    population, mortality:
        Footprint population per census column and baseline mortality rates.
    """

    handle: int
    layer: int
    depth: int
    x0: float
    y0: float
    x1: float
    y1: float
    z0: float
    dz: float
    ci: np.ndarray
    cf: np.ndarray
    emis_flux: np.ndarray
    u: float = 0.0
    v: float = 0.0
    w: float = 0.0
    kzz: float = 0.0
    kxxyy: float = 0.0
    u_dev: float = 0.0
    v_dev: float = 0.0
    dry_dep: Optional[np.ndarray] = None
    wet_dep: Optional[np.ndarray] = None
    met: Dict[str, float] = field(default_factory=dict)
    population: Dict[str, float] = field(default_factory=dict)
    max_pop_density: float = 0.0
    mortality: Dict[str, float] = field(default_factory=dict)
    neighbors: Dict[Face, Dict[int, float]] = field(
        default_factory=lambda: {face: {} for face in ALL_FACES}
    )

    @property
    def dx(self) -> float:
        return self.x1 - self.x0

    @property
    def dy(self) -> float:
        return self.y1 - self.y0

    @property
    def area(self) -> float:
        return self.dx * self.dy

    @property
    def volume(self) -> float:
        return self.area * self.dz

    @property
    def z1(self) -> float:
        return self.z0 + self.dz

    @property
    def centroid(self) -> Tuple[float, float]:
        return 0.5 * (self.x0 + self.x1), 0.5 * (self.y0 + self.y1)

    @property
    def polygon(self) -> Polygon:
        return box(self.x0, self.y0, self.x1, self.y1)

    def mass(self) -> np.ndarray:
        """Per-species mass [μg] held in the cell."""

        return self.cf * self.volume

    def dimension(self, axis: int) -> float:
        """Cell extent along axis 0 (x), 1 (y) or 2 (z)."""

        if axis == 0:
            return self.dx
        if axis == 1:
            return self.dy
        return self.dz

    def check_dimensions(self) -> None:
        """Raise :class:`NumericalError` for degenerate extents."""

        for name, value in (("dx", self.dx), ("dy", self.dy), ("dz", self.dz)):
            if not math.isfinite(value) or value <= 0.0:
                raise NumericalError(
                    f"cell {self.handle} (layer {self.layer}) has degenerate {name}={value!r}"
                )


def edge_overlap(a0: float, a1: float, b0: float, b1: float) -> float:
    """Length of the overlap of intervals [a0, a1] and [b0, b1]."""

    return max(0.0, min(a1, b1) - max(a0, b0))


def _touching(a: float, b: float, scale: float) -> bool:
    return abs(a - b) <= GEOMETRY_RTOL * scale


def lateral_interface(a: Cell, b: Cell, face: Face) -> float:
    """Interface area between ``a`` and ``b`` across ``a``'s lateral ``face``.

    Returns zero when the cells do not share that face.
    """

    if a.layer != b.layer:
        return 0.0
    scale = max(a.dx, a.dy, b.dx, b.dy)
    if face is Face.EAST:
        touching = _touching(a.x1, b.x0, scale)
        length = edge_overlap(a.y0, a.y1, b.y0, b.y1)
    elif face is Face.WEST:
        touching = _touching(a.x0, b.x1, scale)
        length = edge_overlap(a.y0, a.y1, b.y0, b.y1)
    elif face is Face.NORTH:
        touching = _touching(a.y1, b.y0, scale)
        length = edge_overlap(a.x0, a.x1, b.x0, b.x1)
    elif face is Face.SOUTH:
        touching = _touching(a.y0, b.y1, scale)
        length = edge_overlap(a.x0, a.x1, b.x0, b.x1)
    else:
        raise ValueError(f"{face} is not a lateral face")
    if not touching or length <= GEOMETRY_RTOL * scale:
        return 0.0
    return length * a.dz


def vertical_interface(a: Cell, b: Cell) -> float:
    """Horizontal overlap area of two cells in adjacent layers."""

    if abs(a.layer - b.layer) != 1:
        return 0.0
    area = edge_overlap(a.x0, a.x1, b.x0, b.x1) * edge_overlap(a.y0, a.y1, b.y0, b.y1)
    scale = max(a.area, b.area)
    if area <= GEOMETRY_RTOL * scale:
        return 0.0
    return area


def interface_area(a: Cell, b: Cell, face: Face) -> float:
    """Geometric interface area between ``a`` and ``b`` across ``face``."""

    if face.lateral:
        return lateral_interface(a, b, face)
    if face is Face.ABOVE and b.layer != a.layer + 1:
        return 0.0
    if face is Face.BELOW and b.layer != a.layer - 1:
        return 0.0
    return vertical_interface(a, b)


class CellArena:
    """Owner of all cells, their handles and the traversal order."""

    def __init__(self, nlayers: int, species: Sequence[str]) -> None:
        if nlayers < 1:
            raise ValueError("nlayers must be at least 1")
        self.nlayers = int(nlayers)
        self.species: Tuple[str, ...] = tuple(species)
        self._cells: Dict[int, Cell] = {}
        self._order: List[int] = []
        self._next_handle = 0

    # ------------------------------------------------------------------
    # Cell collection
    # ------------------------------------------------------------------
    def new_handle(self) -> int:
        handle = self._next_handle
        self._next_handle += 1
        return handle

    def new_cell(
        self,
        *,
        layer: int,
        depth: int,
        bounds: Tuple[float, float, float, float],
        z0: float,
        dz: float,
    ) -> Cell:
        """Create a detached cell with zeroed state; call :meth:`add` to insert it."""

        n = len(self.species)
        x0, y0, x1, y1 = bounds
        return Cell(
            handle=self.new_handle(),
            layer=int(layer),
            depth=int(depth),
            x0=float(x0),
            y0=float(y0),
            x1=float(x1),
            y1=float(y1),
            z0=float(z0),
            dz=float(dz),
            ci=np.zeros(n),
            cf=np.zeros(n),
            emis_flux=np.zeros(n),
            dry_dep=np.zeros(n),
            wet_dep=np.zeros(n),
        )

    def add(self, cell: Cell) -> Cell:
        if cell.handle in self._cells:
            raise TopologyError(f"cell handle {cell.handle} already present")
        if not 0 <= cell.layer < self.nlayers:
            raise TopologyError(f"cell layer {cell.layer} outside [0, {self.nlayers})")
        self._cells[cell.handle] = cell
        self._order.append(cell.handle)
        return cell

    def __getitem__(self, handle: int) -> Cell:
        return self._cells[handle]

    def __contains__(self, handle: object) -> bool:
        return handle in self._cells

    def __iter__(self) -> Iterator[Cell]:
        for handle in self._order:
            yield self._cells[handle]

    def __len__(self) -> int:
        return len(self._order)

    @property
    def order(self) -> List[int]:
        return list(self._order)

    def layer_counts(self) -> List[int]:
        counts = [0] * self.nlayers
        for cell in self:
            counts[cell.layer] += 1
        return counts

    def cells_in_layer(self, layer: int) -> List[Cell]:
        return [cell for cell in self if cell.layer == layer]

    def replace(self, parents: Dict[int, List[Cell]]) -> None:
        """Swap each parent handle for its children in the traversal order.

        Children are spliced in at their parent's position; the parent
        records are removed from the arena.  Neighbor relations must have
        been rebuilt by the caller.
        """

        new_order: List[int] = []
        for handle in self._order:
            children = parents.get(handle)
            if children is None:
                new_order.append(handle)
                continue
            for child in children:
                self._cells[child.handle] = child
                new_order.append(child.handle)
            del self._cells[handle]
        self._order = new_order

    # ------------------------------------------------------------------
    # Neighbor relations
    # ------------------------------------------------------------------
    def link(self, a: Cell, face: Face, b: Cell, area: float) -> None:
        """Record ``b`` as ``a``'s neighbor across ``face`` and mirror it."""

        if a.handle == b.handle:
            raise TopologyError(f"cell {a.handle} cannot neighbor itself")
        if area <= 0.0 or not math.isfinite(area):
            raise TopologyError(f"invalid interface area {area!r} between {a.handle} and {b.handle}")
        a.neighbors[face][b.handle] = float(area)
        b.neighbors[face.opposite][a.handle] = float(area)

    def unlink(self, a: Cell, face: Face, b: Cell) -> None:
        a.neighbors[face].pop(b.handle, None)
        b.neighbors[face.opposite].pop(a.handle, None)

    def neighbors(self, cell: Cell, face: Face) -> List[Tuple[Cell, float]]:
        """Neighbors of ``cell`` across ``face`` with their interface areas."""

        return [(self._cells[h], area) for h, area in cell.neighbors[face].items()]

    def iter_neighbors(self, cell: Cell, faces: Iterable[Face] = ALL_FACES) -> Iterator[Tuple[Face, Cell, float]]:
        for face in faces:
            for handle, area in cell.neighbors[face].items():
                yield face, self._cells[handle], area

    def interface_area(self, a: Cell, b: Cell) -> float:
        """Stored interface area between ``a`` and ``b`` (zero if not adjacent)."""

        for face in ALL_FACES:
            area = a.neighbors[face].get(b.handle)
            if area is not None:
                return area
        return 0.0

    def boundary_area(self, cell: Cell, face: Face) -> float:
        """Part of ``cell``'s face that borders the domain edge."""

        if face.lateral:
            full = (cell.dy if face in (Face.WEST, Face.EAST) else cell.dx) * cell.dz
        else:
            full = cell.area
        covered = sum(cell.neighbors[face].values())
        remainder = full - covered
        if remainder <= GEOMETRY_RTOL * full:
            return 0.0
        return remainder

    def check_topology(self) -> None:
        """Verify that every relation is reciprocal, finite and points to a live cell."""

        for cell in self:
            for face in ALL_FACES:
                for handle, area in cell.neighbors[face].items():
                    if handle not in self._cells:
                        raise TopologyError(
                            f"cell {cell.handle} has dangling {face.value} neighbor {handle}"
                        )
                    other = self._cells[handle]
                    back = other.neighbors[face.opposite].get(cell.handle)
                    if back is None:
                        raise TopologyError(
                            f"relation {cell.handle} -{face.value}-> {handle} is not mirrored"
                        )
                    if not math.isclose(back, area, rel_tol=1e-12):
                        raise TopologyError(
                            f"interface area mismatch between {cell.handle} and {handle}: {area} != {back}"
                        )
                    expected = interface_area(cell, other, face)
                    if not math.isclose(expected, area, rel_tol=1e-9):
                        raise TopologyError(
                            f"stored interface {area} between {cell.handle} and {handle} "
                            f"does not match geometry {expected}"
                        )
                    for other_face in ALL_FACES:
                        if other_face is not face and handle in cell.neighbors[other_face]:
                            raise TopologyError(
                                f"cell {handle} listed on two faces of cell {cell.handle}"
                            )

    def total_mass(self) -> np.ndarray:
        """Per-species mass summed over all cells [μg]."""

        total = np.zeros(len(self.species))
        for cell in self:
            total += cell.mass()
        return total


__all__ = [
    "Face",
    "LATERAL_FACES",
    "ALL_FACES",
    "Cell",
    "CellArena",
    "edge_overlap",
    "lateral_interface",
    "vertical_interface",
    "interface_area",
]
