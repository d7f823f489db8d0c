"""Runtime helpers shared by the simulation and SR workflows."""

from .numba_config import kernel_backend, numba_disabled_env
from .progress import ProgressReporter

__all__ = ["ProgressReporter", "kernel_backend", "numba_disabled_env"]
