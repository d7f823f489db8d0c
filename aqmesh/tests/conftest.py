"""Pytest fixtures and hooks for the aqmesh package tests."""

import pytest

from aqmesh.grid import CellArena, Face


@pytest.fixture
def pair_arena() -> CellArena:
    """Two 100 m cells side by side in one 10 m layer."""

    arena = CellArena(1, ("a", "b"))
    west = arena.add(arena.new_cell(layer=0, depth=0, bounds=(0.0, 0.0, 100.0, 100.0), z0=0.0, dz=10.0))
    east = arena.add(arena.new_cell(layer=0, depth=0, bounds=(100.0, 0.0, 200.0, 100.0), z0=0.0, dz=10.0))
    arena.link(west, Face.EAST, east, 100.0 * 10.0)
    return arena
