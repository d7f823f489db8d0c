from pathlib import Path

import numpy as np
import pytest

from aqmesh.errors import ConfigurationError, InputDataError
from aqmesh.io.gridstore import GRID_FORMAT_VERSION, SavedGrid, load_grid, save_grid
from aqmesh.mutation import StaticRefinement
from aqmesh.physics import LinearMechanism
from aqmesh.pipeline import Domain
from aqmesh.vargrid import RegularGrid


def _saved(config, inputs) -> SavedGrid:
    domain = Domain(config, LinearMechanism(), inputs=inputs, init_stages=[RegularGrid(), StaticRefinement()])
    domain.init()
    return SavedGrid(
        version=GRID_FORMAT_VERSION,
        arena=domain.arena,
        var_grid=config.var_grid.model_dump(mode="json"),
        mechanism=LinearMechanism.name,
    )


def test_round_trip_keeps_cells_and_topology(tmp_path: Path, config, inputs) -> None:
    saved = _saved(config, inputs)
    path = save_grid(tmp_path / "grid" / "g.pkl", saved)
    loaded = load_grid(path, var_grid=config.var_grid.model_dump(mode="json"), mechanism=LinearMechanism.name)
    assert loaded.arena.layer_counts() == [28, 28, 16]
    assert loaded.arena.order == saved.arena.order
    loaded.arena.check_topology()
    for a, b in zip(saved.arena, loaded.arena):
        assert (a.x0, a.y0, a.x1, a.y1, a.z0, a.dz) == (b.x0, b.y0, b.x1, b.y1, b.z0, b.dz)
        assert a.population == b.population
        assert np.array_equal(a.cf, b.cf)


def test_different_nesting_is_rejected(tmp_path: Path, config, inputs, make_config) -> None:
    path = save_grid(tmp_path / "g.pkl", _saved(config, inputs))
    other = make_config("var_grid.xnests=[4,3,2]")
    with pytest.raises(ConfigurationError, match="xnests"):
        load_grid(path, var_grid=other.var_grid.model_dump(mode="json"))


def test_thresholds_do_not_invalidate_grid(tmp_path: Path, config, inputs, make_config) -> None:
    path = save_grid(tmp_path / "g.pkl", _saved(config, inputs))
    other = make_config("var_grid.pop_threshold=1.0")
    assert load_grid(path, var_grid=other.var_grid.model_dump(mode="json")).arena is not None


def test_other_mechanism_is_rejected(tmp_path: Path, config, inputs) -> None:
    path = save_grid(tmp_path / "g.pkl", _saved(config, inputs))
    with pytest.raises(ConfigurationError, match="mechanism"):
        load_grid(path, mechanism="other")


def test_unreadable_file(tmp_path: Path) -> None:
    path = tmp_path / "bad.pkl"
    path.write_bytes(b"not a pickle")
    with pytest.raises(InputDataError):
        load_grid(path)
    with pytest.raises(InputDataError):
        load_grid(tmp_path / "missing.pkl")
