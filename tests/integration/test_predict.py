from pathlib import Path

import numpy as np
import pandas as pd
import pytest
from shapely.geometry import Point

from aqmesh.emissions import EmisRecord
from aqmesh.errors import ConfigurationError, InputDataError
from aqmesh.physics import LinearMechanism
from aqmesh.run import build_grid, main, run_predict, run_steady
from aqmesh.sr import Coordinator, LocalWorkerClient, SRMatrix, SRWorker, predict

pytestmark = pytest.mark.integration

RATES = {"VOC": 3.0e5, "NOx": 2.0e5, "NH3": 5.0e4, "SOx": 4.0e5, "PM25": 1.0e6}


@pytest.fixture
def saved_grid(config):
    return build_grid(config)


def _matrix(make_config, tmp_path: Path, saved_grid, begin: int, end: int) -> SRMatrix:
    cfg = make_config(
        f"sr.log_dir={tmp_path / 'sr' / 'log'}",
        f"sr.output_file={tmp_path / 'sr' / 'sr.parquet'}",
        "sr.layers=[0]",
        f"sr.begin={begin}",
        f"sr.end={end}",
        "numerics.num_iterations=4",
    )
    worker = SRWorker(cfg, arena=saved_grid.arena)
    Coordinator(cfg, [LocalWorkerClient(worker)], saved_grid.arena.layer_counts()).build()
    return SRMatrix.load(cfg.sr.output_file)


def test_prediction_matches_a_direct_run(make_config, tmp_path: Path, saved_grid) -> None:
    source = saved_grid.arena.cells_in_layer(0)[3]
    record = EmisRecord(Point(*source.centroid), dict(RATES), height=10.0)
    matrix = _matrix(make_config, tmp_path, saved_grid, 3, 4)

    predicted = predict(matrix, [record], saved_grid.arena)
    domain = run_steady(make_config("numerics.num_iterations=4"), emissions=[record])

    ground = domain.arena.cells_in_layer(0)
    assert len(predicted) == len(ground) == 28
    assert np.array_equal(predicted["x0"].to_numpy(), [c.x0 for c in ground])
    assert np.array_equal(predicted["y1"].to_numpy(), [c.y1 for c in ground])
    conc = np.array([c.cf for c in ground])
    direct = LinearMechanism().output_variables(conc)
    for name, values in direct.items():
        assert np.allclose(predicted[name].to_numpy(), values, rtol=1e-9, atol=1e-20), name
    assert predicted["TotalPM25"].max() > 0.0
    assert int(predicted["TotalPM25"].to_numpy().argmax()) == 3


def test_prediction_scales_with_the_inventory(make_config, tmp_path: Path, saved_grid) -> None:
    source = saved_grid.arena.cells_in_layer(0)[3]
    matrix = _matrix(make_config, tmp_path, saved_grid, 3, 4)
    once = predict(matrix, [EmisRecord(Point(*source.centroid), dict(RATES), height=10.0)], saved_grid.arena)
    doubled = {pol: 2.0 * rate for pol, rate in RATES.items()}
    twice = predict(matrix, [EmisRecord(Point(*source.centroid), doubled, height=10.0)], saved_grid.arena)
    assert np.allclose(twice["TotalPM25"], 2.0 * once["TotalPM25"], rtol=1e-12)


def test_emissions_outside_the_matrix_are_rejected(make_config, tmp_path: Path, saved_grid) -> None:
    ground = saved_grid.arena.cells_in_layer(0)
    matrix = _matrix(make_config, tmp_path, saved_grid, 3, 4)

    other_cell = EmisRecord(Point(*ground[0].centroid), {"PM25": 1.0}, height=10.0)
    with pytest.raises(InputDataError, match="no rows for layer 0"):
        predict(matrix, [other_cell], saved_grid.arena)

    elevated = EmisRecord(Point(*ground[3].centroid), {"PM25": 1.0}, height=100.0)
    with pytest.raises(InputDataError, match="layer 1"):
        predict(matrix, [elevated], saved_grid.arena)


def test_prediction_without_emissions_is_zero(make_config, tmp_path: Path, saved_grid) -> None:
    matrix = _matrix(make_config, tmp_path, saved_grid, 3, 4)
    df = predict(matrix, [], saved_grid.arena)
    assert len(df) == 28
    assert (df["TotalPM25"] == 0.0).all()


def test_run_predict_needs_a_saved_grid(make_config) -> None:
    with pytest.raises(ConfigurationError, match="saved grid"):
        run_predict(make_config("variable_grid_data=null"))


def test_predict_command_writes_table(config_path: Path, config, tmp_path: Path, monkeypatch) -> None:
    monkeypatch.delenv("PBS_NODEFILE", raising=False)
    overrides = ["--override", "sr.layers=[0]", "sr.end=28", "numerics.num_iterations=2"]
    main(["grid", "--config", str(config_path)])
    main(["sr", "--config", str(config_path), *overrides])
    out = tmp_path / "predicted" / "conc.parquet"
    main(["sr", "predict", "--config", str(config_path), "--output", str(out), *overrides])
    df = pd.read_parquet(out)
    assert len(df) == 28
    assert "TotalPM25" in df.columns
    assert df["TotalPM25"].max() > 0.0
