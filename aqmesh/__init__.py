"""Variable-resolution air quality model with a distributed SR matrix build."""
from . import constants, grid
from .errors import AqMeshError

__all__ = ["constants", "grid", "AqMeshError"]
