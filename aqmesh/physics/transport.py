"""Emission, advection, mixing and meander kernels.

All transport fluxes are computed from the concentrations snapshotted in
``ci`` by :class:`AddEmissionsFlux` (before the step's emissions are
added) and applied to the working state ``cf``.
Every interface flux is evaluated identically from both sides (face values
are averages of the two cell-centred values), so the exchange between two
cells conserves mass exactly.  Lateral domain edges and the model top let
material leave with the cell's own velocity but bring nothing in; the
ground is closed.
"""
from __future__ import annotations

from typing import TYPE_CHECKING, Tuple

import numpy as np

from ..grid import LATERAL_FACES, Cell, Face
from .kernel import Kernel

if TYPE_CHECKING:  # pragma: no cover
    from ..pipeline import Domain

# face -> (outward sign, velocity attribute)
_ADVECTION_FACES: Tuple[Tuple[Face, float, str], ...] = (
    (Face.WEST, -1.0, "u"),
    (Face.EAST, 1.0, "u"),
    (Face.SOUTH, -1.0, "v"),
    (Face.NORTH, 1.0, "v"),
    (Face.BELOW, -1.0, "w"),
    (Face.ABOVE, 1.0, "w"),
)


class AddEmissionsFlux(Kernel):
    """Snapshot the state into ``ci`` and add the emissions for one step.

    The transport kernels evaluate their fluxes from ``ci``, so each step is
    the forward-Euler update ``c + dt (E - R c)``.
    """

    def __call__(self, cell: Cell, domain: "Domain") -> None:
        cell.ci[:] = cell.cf
        cell.cf += cell.emis_flux * domain.dt


class UpwindAdvection(Kernel):
    """First-order upwind advection through every face."""

    def __call__(self, cell: Cell, domain: "Domain") -> None:
        arena = domain.arena
        tendency = np.zeros_like(cell.cf)
        for face, sign, attr in _ADVECTION_FACES:
            own = getattr(cell, attr)
            for other, area in arena.neighbors(cell, face):
                outward = sign * 0.5 * (own + getattr(other, attr))
                if outward > 0.0:
                    tendency -= outward * area * cell.ci
                else:
                    tendency -= outward * area * other.ci
            if face is Face.BELOW and cell.layer == 0:
                continue
            edge = arena.boundary_area(cell, face)
            if edge > 0.0:
                outward = sign * own
                if outward > 0.0:
                    tendency -= outward * edge * cell.ci
        cell.cf += tendency * (domain.dt / cell.volume)


class Mixing(Kernel):
    """Eddy diffusion: ``Kzz`` vertically, ``Kxxyy`` laterally."""

    def __call__(self, cell: Cell, domain: "Domain") -> None:
        arena = domain.arena
        tendency = np.zeros_like(cell.cf)
        for face, other, area in arena.iter_neighbors(cell):
            if face.lateral:
                k = 0.5 * (cell.kxxyy + other.kxxyy)
                if face in (Face.WEST, Face.EAST):
                    dist = 0.5 * (cell.dx + other.dx)
                else:
                    dist = 0.5 * (cell.dy + other.dy)
            else:
                k = 0.5 * (cell.kzz + other.kzz)
                dist = 0.5 * (cell.dz + other.dz)
            tendency += (k * area / dist) * (other.ci - cell.ci)
        cell.cf += tendency * (domain.dt / cell.volume)


class MeanderMixing(Kernel):
    """Lateral mixing by wind meanders the mean wind does not resolve.

    Across a west/east face the exchange velocity is half the face-averaged
    ``UDeviation``; across a south/north face it uses ``VDeviation``.
    """

    def __call__(self, cell: Cell, domain: "Domain") -> None:
        arena = domain.arena
        tendency = np.zeros_like(cell.cf)
        for face, other, area in arena.iter_neighbors(cell, LATERAL_FACES):
            if face.axis == 0:
                dev = 0.5 * (cell.u_dev + other.u_dev)
            else:
                dev = 0.5 * (cell.v_dev + other.v_dev)
            tendency += (0.5 * dev * area) * (other.ci - cell.ci)
        cell.cf += tendency * (domain.dt / cell.volume)


__all__ = ["AddEmissionsFlux", "UpwindAdvection", "Mixing", "MeanderMixing"]
