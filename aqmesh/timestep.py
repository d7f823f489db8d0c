"""Courant-Friedrichs-Lewy time-step control.

The step is ``safety / r_max`` where ``r_max`` is the largest exchange rate
over all cells.  A cell's rate is the total fraction of its content per
second that the transport kernels can move out of it, summed over every
face:

* advection: ``max(u_face, 0) * area / volume`` for each interface, with the
  face velocity averaged from both cells exactly as
  :class:`~aqmesh.physics.transport.UpwindAdvection` does, plus the outflow
  through uncovered domain edges at the cell's own velocity;
* mixing: ``K * area / (distance * volume)`` for each interface, as in
  :class:`~aqmesh.physics.transport.Mixing`, plus the lateral meander
  exchange ``0.5 * deviation * area / volume`` of
  :class:`~aqmesh.physics.transport.MeanderMixing`.

The rate is never smaller than any single-axis Courant rate ``|u|/dx``,
``|v|/dy`` or ``|w|/dz`` of the cell.  With ``safety < 1`` advection and
mixing together remove less than the whole content of any cell in one step,
so concentrations stay non-negative, and ``dt |velocity| / dimension < 1``
holds along each axis.  When nothing moves the step falls back to
``numerics.dt_max_s``.
"""
from __future__ import annotations

import logging
import math
import warnings
from typing import List, Tuple

import numpy as np
from numba import njit

from .errors import NumericalError
from .grid import ALL_FACES, Cell, CellArena, Face
from .pipeline import Domain, Stage
from .runtime.numba_config import numba_disabled_env
from .warnings import NumericalWarning

logger = logging.getLogger(__name__)

_RATIO_KINDS = ("x-advection", "y-advection", "z-advection", "diffusion")


@njit(cache=True)
def _max_rate_numba(vel, dev, dims, volume, kxxyy, kzz, src, dst, axis, sign, area, dist):  # pragma: no cover - compiled
    n = vel.shape[0]
    rates = np.zeros((n, 4))
    for f in range(src.shape[0]):
        i = src[f]
        j = dst[f]
        ax = axis[f]
        if j >= 0:
            outward = sign[f] * 0.5 * (vel[i, ax] + vel[j, ax])
            if ax == 2:
                k = 0.5 * (kzz[i] + kzz[j])
            else:
                k = 0.5 * (kxxyy[i] + kxxyy[j])
            rates[i, 3] += (k / dist[f] + 0.25 * (dev[i, ax] + dev[j, ax])) * area[f]
        else:
            outward = sign[f] * vel[i, ax]
        if outward > 0.0:
            rates[i, ax] += outward * area[f]
    best = 0.0
    best_idx = -1
    best_kind = -1
    for i in range(n):
        total = 0.0
        top = 0.0
        kind = -1
        for c in range(4):
            r = rates[i, c] / volume[i]
            total += r
            if r > top:
                top = r
                kind = c
        for ax in range(3):
            courant = abs(vel[i, ax]) / dims[i, ax]
            if courant > total:
                total = courant
                kind = ax
        if total > best:
            best, best_idx, best_kind = total, i, kind
    return best, best_idx, best_kind


def _max_rate_numpy(vel, dev, dims, volume, kxxyy, kzz, src, dst, axis, sign, area, dist):
    n = vel.shape[0]
    linked = dst >= 0
    other = np.where(linked, dst, src)
    own_vel = vel[src, axis]
    outward = np.where(linked, sign * 0.5 * (own_vel + vel[other, axis]), sign * own_vel)
    k = np.where(axis == 2, 0.5 * (kzz[src] + kzz[other]), 0.5 * (kxxyy[src] + kxxyy[other]))
    meander = 0.25 * (dev[src, axis] + dev[other, axis])
    conductance = np.where(linked, (k / np.where(linked, dist, 1.0) + meander) * area, 0.0)

    rates = np.zeros((n, 4))
    np.add.at(rates, (src, axis), np.where(outward > 0.0, outward * area, 0.0))
    np.add.at(rates, (src, np.full_like(src, 3)), conductance)
    rates /= volume[:, None]
    total = rates.sum(axis=1)
    kind = np.argmax(rates, axis=1)

    courant = np.abs(vel) / dims
    by_axis = courant.max(axis=1)
    use_axis = by_axis > total
    ratio = np.where(use_axis, by_axis, total)
    kind = np.where(use_axis, np.argmax(courant, axis=1), kind)

    idx = int(np.argmax(ratio)) if n else -1
    if idx < 0 or ratio[idx] <= 0.0:
        return 0.0, -1, -1
    return float(ratio[idx]), idx, int(kind[idx])


def _face_table(arena: CellArena, cells: List[Cell]):
    """Flatten the neighbor relations into per-face arrays.

    One row per (cell, neighbor) interface and one per uncovered domain
    edge (``dst == -1``).  The ground face of layer 0 is closed and has no
    row.
    """

    index = {c.handle: i for i, c in enumerate(cells)}
    src: List[int] = []
    dst: List[int] = []
    axis: List[int] = []
    sign: List[float] = []
    area: List[float] = []
    dist: List[float] = []
    for i, cell in enumerate(cells):
        for face in ALL_FACES:
            ax = face.axis
            for other, a in arena.neighbors(cell, face):
                src.append(i)
                dst.append(index[other.handle])
                axis.append(ax)
                sign.append(face.sign)
                area.append(a)
                dist.append(0.5 * (cell.dimension(ax) + other.dimension(ax)))
            if face is Face.BELOW and cell.layer == 0:
                continue
            edge = arena.boundary_area(cell, face)
            if edge > 0.0:
                src.append(i)
                dst.append(-1)
                axis.append(ax)
                sign.append(face.sign)
                area.append(edge)
                dist.append(0.0)
    return (
        np.array(src, dtype=np.int64),
        np.array(dst, dtype=np.int64),
        np.array(axis, dtype=np.int64),
        np.array(sign, dtype=np.float64),
        np.array(area, dtype=np.float64),
        np.array(dist, dtype=np.float64),
    )


def max_stability_ratio(arena: CellArena) -> Tuple[float, int, str]:
    """Largest exchange rate over the grid [s⁻¹] with the limiting cell and term.

    The term is the largest contribution to the limiting cell's rate:
    ``"x-advection"``, ``"y-advection"``, ``"z-advection"`` or
    ``"diffusion"``.

    Raises
    ------
    NumericalError
        If any cell has a zero, negative or non-finite dimension, or any
        velocity or diffusivity is non-finite.
    """

    cells = list(arena)
    if not cells:
        raise NumericalError("cannot compute a time step for an empty grid")
    for cell in cells:
        cell.check_dimensions()
    vel = np.array([[c.u, c.v, c.w] for c in cells], dtype=np.float64)
    dev = np.array([[c.u_dev, c.v_dev, 0.0] for c in cells], dtype=np.float64)
    kxxyy = np.array([c.kxxyy for c in cells], dtype=np.float64)
    kzz = np.array([c.kzz for c in cells], dtype=np.float64)
    fields = (
        ("u", vel[:, 0]),
        ("v", vel[:, 1]),
        ("w", vel[:, 2]),
        ("Kxxyy", kxxyy),
        ("Kzz", kzz),
        ("UDeviation", dev[:, 0]),
        ("VDeviation", dev[:, 1]),
    )
    for name, arr in fields:
        if not np.all(np.isfinite(arr)):
            raise NumericalError(f"non-finite {name} in grid; cannot bound the time step")
    dims = np.array([[c.dx, c.dy, c.dz] for c in cells], dtype=np.float64)
    volume = np.array([c.volume for c in cells], dtype=np.float64)
    faces = _face_table(arena, cells)
    if numba_disabled_env():
        best, idx, kind = _max_rate_numpy(vel, dev, dims, volume, kxxyy, kzz, *faces)
    else:
        best, idx, kind = _max_rate_numba(vel, dev, dims, volume, kxxyy, kzz, *faces)
    if idx < 0:
        return 0.0, -1, "none"
    return float(best), cells[int(idx)].handle, _RATIO_KINDS[int(kind)]


def cfl_timestep(arena: CellArena, safety: float, dt_max: float) -> float:
    """Largest stable time step [s] for ``arena``, capped at ``dt_max``."""

    ratio, handle, kind = max_stability_ratio(arena)
    if ratio <= 0.0:
        warnings.warn(
            f"no wind or mixing anywhere in the grid; using dt_max={dt_max:g} s",
            NumericalWarning,
        )
        dt = dt_max
    else:
        dt = min(safety / ratio, dt_max)
    if not (dt > 0.0 and math.isfinite(dt)):
        raise NumericalError(f"time step computed as {dt!r}")
    logger.debug("CFL time step %.6g s (limited by %s in cell %d, ratio %.6g s^-1)", dt, kind, handle, ratio)
    return dt


class SetTimestepCFL(Stage):
    """Recompute ``domain.dt`` from the current grid."""

    def apply(self, domain: Domain) -> None:
        numerics = domain.config.numerics
        domain.dt = cfl_timestep(domain.require_arena(), numerics.cfl_safety, numerics.dt_max_s)


__all__ = ["SetTimestepCFL", "cfl_timestep", "max_stability_ratio"]
