from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from ..grid import Cell
    from ..pipeline import Domain


class Kernel(ABC):
    """Per-cell numerical operator applied by :class:`~aqmesh.pipeline.Calculations`."""

    @abstractmethod
    def __call__(self, cell: "Cell", domain: "Domain") -> None:
        """Update ``cell`` in place."""

    @property
    def name(self) -> str:
        return type(self).__name__

    def __repr__(self) -> str:
        return f"{self.name}()"


__all__ = ["Kernel"]
