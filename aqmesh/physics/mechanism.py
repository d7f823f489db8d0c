"""Chemical-mechanism contract.

A mechanism decides which species a cell tracks and how they react.  The
pipeline only relies on the operations below, so any implementation can be
swapped in through :class:`~aqmesh.pipeline.Domain`.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Dict, Mapping, Sequence, Tuple

import numpy as np

from ..errors import ConfigurationError

if TYPE_CHECKING:  # pragma: no cover
    from ..grid import Cell


class Mechanism(ABC):
    """Interface every chemical mechanism implements."""

    #: Stable identifier stored with saved grids.
    name: str = "mechanism"

    @property
    @abstractmethod
    def species(self) -> Tuple[str, ...]:
        """Names of the tracked species, in state-vector order."""

    @property
    @abstractmethod
    def required_fields(self) -> Tuple[str, ...]:
        """CTM fields the mechanism reads besides the transport fields."""

    @abstractmethod
    def emission_vector(self, rates: Mapping[str, float]) -> np.ndarray:
        """Map emitted-pollutant rates [μg s⁻¹] to a species-rate vector."""

    @abstractmethod
    def dry_deposition(self, met: Mapping[str, float]) -> np.ndarray:
        """Per-species dry deposition velocity [m s⁻¹]."""

    @abstractmethod
    def wet_deposition(self, met: Mapping[str, float]) -> np.ndarray:
        """Per-species wet scavenging rate [s⁻¹]."""

    @abstractmethod
    def react(self, cell: "Cell", dt: float) -> None:
        """Advance ``cell.cf`` through chemistry for ``dt`` seconds in place."""

    @abstractmethod
    def output_variables(self, conc: np.ndarray) -> Dict[str, np.ndarray]:
        """Named output variables for a ``(ncells, nspecies)`` concentration array."""

    @property
    @abstractmethod
    def output_pollutants(self) -> Dict[str, str]:
        """Emitted pollutant each output variable responds to.

        Every output variable must depend on the emissions of exactly one
        pollutant, and linearly, so that SR predictions can scale each
        variable by that pollutant's emission rate.
        """

    def species_index(self, name: str) -> int:
        return self.species.index(name)

    @property
    def nspecies(self) -> int:
        return len(self.species)

    def check_species(self, names: Sequence[str]) -> None:
        if tuple(names) != self.species:
            raise ConfigurationError(f"grid species {tuple(names)} do not match mechanism {self.species}")


__all__ = ["Mechanism"]
