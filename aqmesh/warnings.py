"""Structured warning classes for the :mod:`aqmesh` package."""
from __future__ import annotations


class AqMeshWarning(UserWarning):
    """Base warning class for aqmesh."""


class AllocationWarning(AqMeshWarning):
    """Input geometry contributed nothing to the grid."""


class NumericalWarning(AqMeshWarning):
    """Numerical stability or accuracy warnings."""


__all__ = [
    "AqMeshWarning",
    "AllocationWarning",
    "NumericalWarning",
]
