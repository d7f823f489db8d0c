"""Default linear chemistry mechanism.

Nine species are tracked: gas/particle pairs for organics, ammonia, sulfur
and nitrogen oxides plus primary PM2.5.  Ammonia and NOx are carried as
nitrogen mass and SOx as sulfur mass.  Chemistry is first-order SO2
oxidation followed by instantaneous equilibrium partitioning of each
gas/particle pair; both steps conserve the carried mass exactly.
"""
from __future__ import annotations

import math
from typing import TYPE_CHECKING, Dict, Mapping, Tuple

import numpy as np

from .. import constants
from ..grid import Cell
from .kernel import Kernel
from .mechanism import Mechanism

if TYPE_CHECKING:  # pragma: no cover
    from ..pipeline import Domain

SPECIES: Tuple[str, ...] = ("gOrg", "pOrg", "PM2_5", "gNH", "pNH", "gS", "pS", "gNO", "pNO")

(I_GORG, I_PORG, I_PM25, I_GNH, I_PNH, I_GS, I_PS, I_GNO, I_PNO) = range(len(SPECIES))

# emitted pollutant -> (species index, mass factor)
_EMISSION_MAP: Dict[str, Tuple[int, float]] = {
    "VOC": (I_GORG, 1.0),
    "PM25": (I_PM25, 1.0),
    "NH3": (I_GNH, constants.MW_N / constants.MW_NH3),
    "SOx": (I_GS, constants.MW_S / constants.MW_SO2),
    "NOx": (I_GNO, constants.MW_N / constants.MW_NOX),
}

# output variable -> (species index, mass factor)
_OUTPUT_MAP: Dict[str, Tuple[int, float]] = {
    "VOC": (I_GORG, 1.0),
    "SOA": (I_PORG, 1.0),
    "PrimaryPM25": (I_PM25, 1.0),
    "NH3": (I_GNH, constants.MW_NH3 / constants.MW_N),
    "pNH4": (I_PNH, constants.MW_NH4 / constants.MW_N),
    "SOx": (I_GS, constants.MW_SO2 / constants.MW_S),
    "pSO4": (I_PS, constants.MW_SO4 / constants.MW_S),
    "NOx": (I_GNO, constants.MW_NOX / constants.MW_N),
    "pNO3": (I_PNO, constants.MW_NO3 / constants.MW_N),
}

# species index -> emitted pollutant it is carried from
_FAMILY: Dict[int, str] = {
    I_GORG: "VOC",
    I_PORG: "VOC",
    I_PM25: "PM25",
    I_GNH: "NH3",
    I_PNH: "NH3",
    I_GS: "SOx",
    I_PS: "SOx",
    I_GNO: "NOx",
    I_PNO: "NOx",
}

_PARTITION_PAIRS = (
    (I_GORG, I_PORG, "aOrgPartitioning"),
    (I_GNH, I_PNH, "NHPartitioning"),
    (I_GNO, I_PNO, "NOPartitioning"),
)

_PARTICLES = (I_PORG, I_PM25, I_PNH, I_PS, I_PNO)


class LinearMechanism(Mechanism):
    """Mass-conserving linear mechanism used by default."""

    name = "linear"

    @property
    def species(self) -> Tuple[str, ...]:
        return SPECIES

    @property
    def required_fields(self) -> Tuple[str, ...]:
        return (
            "SO2oxidation",
            "aOrgPartitioning",
            "NHPartitioning",
            "NOPartitioning",
            "ParticleDryDep",
            "SO2DryDep",
            "NOxDryDep",
            "NH3DryDep",
            "VOCDryDep",
            "ParticleWetDep",
            "SO2WetDep",
            "OtherGasWetDep",
        )

    def emission_vector(self, rates: Mapping[str, float]) -> np.ndarray:
        out = np.zeros(len(SPECIES))
        for pol, rate in rates.items():
            try:
                idx, factor = _EMISSION_MAP[pol]
            except KeyError:
                raise ValueError(f"unknown emitted pollutant {pol!r}") from None
            out[idx] += float(rate) * factor
        return out

    def dry_deposition(self, met: Mapping[str, float]) -> np.ndarray:
        vd = np.empty(len(SPECIES))
        for idx in _PARTICLES:
            vd[idx] = met["ParticleDryDep"]
        vd[I_GORG] = met["VOCDryDep"]
        vd[I_GNH] = met["NH3DryDep"]
        vd[I_GS] = met["SO2DryDep"]
        vd[I_GNO] = met["NOxDryDep"]
        return vd

    def wet_deposition(self, met: Mapping[str, float]) -> np.ndarray:
        k = np.full(len(SPECIES), met["OtherGasWetDep"])
        for idx in _PARTICLES:
            k[idx] = met["ParticleWetDep"]
        k[I_GS] = met["SO2WetDep"]
        return k

    def react(self, cell: Cell, dt: float) -> None:
        c = cell.cf
        k = cell.met.get("SO2oxidation", 0.0)
        if k > 0.0:
            converted = c[I_GS] * -math.expm1(-k * dt)
            c[I_GS] -= converted
            c[I_PS] += converted
        for gas, particle, key in _PARTITION_PAIRS:
            frac = min(max(cell.met.get(key, 0.0), 0.0), 1.0)
            total = c[gas] + c[particle]
            c[particle] = total * frac
            c[gas] = total - c[particle]

    def output_variables(self, conc: np.ndarray) -> Dict[str, np.ndarray]:
        conc = np.atleast_2d(conc)
        return {name: conc[:, idx] * factor for name, (idx, factor) in _OUTPUT_MAP.items()}

    @property
    def output_pollutants(self) -> Dict[str, str]:
        return {name: _FAMILY[idx] for name, (idx, _) in _OUTPUT_MAP.items()}


class Chemistry(Kernel):
    """Delegate the reaction step to the domain's mechanism."""

    def __call__(self, cell: Cell, domain: "Domain") -> None:
        domain.mechanism.react(cell, domain.dt)


__all__ = ["LinearMechanism", "Chemistry", "SPECIES"]
