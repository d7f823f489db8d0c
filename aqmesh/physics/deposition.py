"""Dry and wet deposition kernels (exact first-order decay over one step)."""
from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np

from ..grid import Cell
from .kernel import Kernel

if TYPE_CHECKING:  # pragma: no cover
    from ..pipeline import Domain


class DryDeposition(Kernel):
    """Surface removal; only ground-layer cells are affected."""

    def __call__(self, cell: Cell, domain: "Domain") -> None:
        if cell.layer != 0:
            return
        cell.cf *= np.exp(-cell.dry_dep * (domain.dt / cell.dz))


class WetDeposition(Kernel):
    def __call__(self, cell: Cell, domain: "Domain") -> None:
        cell.cf *= np.exp(-cell.wet_dep * domain.dt)


__all__ = ["DryDeposition", "WetDeposition"]
