"""Custom exceptions for the :mod:`aqmesh` package."""
from __future__ import annotations

from typing import Sequence, Tuple


class AqMeshError(Exception):
    """Base exception for air-quality mesh simulation errors."""


class ConfigurationError(AqMeshError, ValueError):
    """Invalid configuration or parameter detected before a run starts."""


class InputDataError(AqMeshError, RuntimeError):
    """An input dataset could not be read or is malformed."""


class CoverageError(InputDataError):
    """A grid cell could not be resolved to any input value."""


class NumericalError(AqMeshError, RuntimeError):
    """Non-finite values, degenerate geometry or stability violations."""


class MassConservationError(NumericalError):
    """A cell split did not conserve mass or population."""


class TopologyError(AqMeshError, RuntimeError):
    """Neighbor relations are asymmetric, dangling or duplicated."""


class WorkerError(AqMeshError, RuntimeError):
    """A distributed job failed on the worker or in transport."""


class SRBuildError(AqMeshError, RuntimeError):
    """One or more SR chunks failed after exhausting their retries."""

    def __init__(self, message: str, failed: Sequence[Tuple[int, int, int]] = ()) -> None:
        super().__init__(message)
        self.failed = list(failed)


__all__ = [
    "AqMeshError",
    "ConfigurationError",
    "InputDataError",
    "CoverageError",
    "NumericalError",
    "MassConservationError",
    "TopologyError",
    "WorkerError",
    "SRBuildError",
]
