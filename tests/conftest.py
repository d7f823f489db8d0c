"""Shared synthetic inputs for the aqmesh test suite.

The reference domain is a 4 x 4 km square of 1 km base cells in three
layers.  The south-west quadrant holds 40,000 people, so with the default
test thresholds its base cells (10,000 people each) split once in the two
refinable layers and their 2,500-person children stay put.
"""
from __future__ import annotations

import copy
import sys
from pathlib import Path
from typing import Any, Callable, Dict

import pandas as pd
import pytest
from ruamel.yaml import YAML
from shapely.geometry import Point, box

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from aqmesh.config_utils import apply_overrides_dict
from aqmesh.emissions import EmisRecord, write_emissions
from aqmesh.io.census import write_polygon_table
from aqmesh.io.ctmdata import CTMData
from aqmesh.physics import LinearMechanism
from aqmesh.schema import Config
from aqmesh.vargrid import GridInputs

LAYER_EDGES = (0.0, 50.0, 150.0, 300.0)

MET_VALUES: Dict[str, float] = {
    "UAvg": 1.0,
    "VAvg": 0.5,
    "WAvg": 0.0,
    "Kzz": 1.0,
    "Kxxyy": 10.0,
    "UDeviation": 0.2,
    "VDeviation": 0.2,
    "SO2oxidation": 1.0e-6,
    "aOrgPartitioning": 0.3,
    "NHPartitioning": 0.5,
    "NOPartitioning": 0.2,
    "ParticleDryDep": 1.0e-3,
    "SO2DryDep": 5.0e-3,
    "NOxDryDep": 1.0e-3,
    "NH3DryDep": 1.0e-2,
    "VOCDryDep": 1.0e-3,
    "ParticleWetDep": 1.0e-6,
    "SO2WetDep": 1.0e-6,
    "OtherGasWetDep": 1.0e-6,
}


def make_ctm(values: Dict[str, float] = MET_VALUES) -> CTMData:
    return CTMData.uniform(
        x0=0.0,
        y0=0.0,
        dx=1000.0,
        dy=1000.0,
        nx=4,
        ny=4,
        layer_edges=LAYER_EDGES,
        values=values,
    )


@pytest.fixture
def ctm() -> CTMData:
    return make_ctm()


@pytest.fixture
def ctm_factory() -> Callable[..., CTMData]:
    """Build a uniform CTM dataset with some fields replaced."""

    def _make(**changes: float) -> CTMData:
        values = dict(MET_VALUES)
        values.update(changes)
        return make_ctm(values)

    return _make


@pytest.fixture
def mechanism() -> LinearMechanism:
    return LinearMechanism()


@pytest.fixture
def ctm_path(tmp_path: Path, ctm: CTMData) -> Path:
    return ctm.to_npz(tmp_path / "ctm.npz")


@pytest.fixture
def census_path(tmp_path: Path) -> Path:
    quadrants = [
        box(0.0, 0.0, 2000.0, 2000.0),
        box(2000.0, 0.0, 4000.0, 2000.0),
        box(0.0, 2000.0, 2000.0, 4000.0),
        box(2000.0, 2000.0, 4000.0, 4000.0),
    ]
    attrs = pd.DataFrame(
        {
            "TotalPop": [40000.0, 1000.0, 2000.0, 500.0],
            "Black": [8000.0, 100.0, 400.0, 50.0],
        }
    )
    return write_polygon_table(quadrants, attrs, tmp_path / "census.parquet")


@pytest.fixture
def mortality_path(tmp_path: Path) -> Path:
    attrs = pd.DataFrame({"AllCause": [800.0, 600.0], "BlackMort": [900.0, 700.0]})
    halves = [box(0.0, 0.0, 2000.0, 4000.0), box(2000.0, 0.0, 4000.0, 4000.0)]
    return write_polygon_table(halves, attrs, tmp_path / "mortality.parquet")


@pytest.fixture
def emissions_path(tmp_path: Path) -> Path:
    record = EmisRecord(Point(500.0, 500.0), {"PM25": 1.0e6, "SOx": 5.0e5, "NOx": 2.0e5}, height=10.0)
    return write_emissions([record], tmp_path / "emissions.parquet")


@pytest.fixture
def config_dict(
    tmp_path: Path,
    ctm_path: Path,
    census_path: Path,
    mortality_path: Path,
    emissions_path: Path,
) -> Dict[str, Any]:
    return {
        "ctm_data": str(ctm_path),
        "variable_grid_data": str(tmp_path / "grid" / "static.pkl"),
        "var_grid": {
            "xo": 0.0,
            "yo": 0.0,
            "dx": 1000.0,
            "dy": 1000.0,
            "xnests": [4, 2, 2],
            "ynests": [4, 2, 2],
            "hi_res_layers": 2,
            "pop_threshold": 5000.0,
            "pop_density_threshold": 1.0,
            "pop_conc_threshold": 1.0e-9,
            "census_file": str(census_path),
            "census_pop_columns": ["TotalPop", "Black"],
            "pop_grid_column": "TotalPop",
            "mortality_rate_file": str(mortality_path),
            "mortality_rate_columns": {"AllCause": "TotalPop", "BlackMort": "Black"},
        },
        "emissions": {"files": [str(emissions_path)], "units": "ug/s"},
        "numerics": {
            "dynamic": False,
            "num_iterations": 5,
            "mutate_interval_s": 1000.0,
            "convergence_check_interval_s": 1000.0,
        },
        "sr": {
            "log_dir": str(tmp_path / "sr_log"),
            "output_file": str(tmp_path / "sr.parquet"),
            "layers": [0, 1],
            "begin": 0,
            "end": 6,
            "max_attempts": 2,
            "backoff_s": 0.0,
        },
        "io": {"outdir": str(tmp_path / "out"), "output_file": "result.parquet"},
    }


@pytest.fixture
def make_config(config_dict: Dict[str, Any]) -> Callable[..., Config]:
    """Build a :class:`Config` from the test defaults plus dotted overrides."""

    def _make(*overrides: str) -> Config:
        payload = apply_overrides_dict(copy.deepcopy(config_dict), list(overrides))
        return Config(**payload)

    return _make


@pytest.fixture
def config(make_config: Callable[..., Config]) -> Config:
    return make_config()


@pytest.fixture
def config_path(tmp_path: Path, config_dict: Dict[str, Any]) -> Path:
    path = tmp_path / "config.yml"
    yaml = YAML()
    with path.open("w", encoding="utf-8") as fh:
        yaml.dump(config_dict, fh)
    return path


@pytest.fixture
def inputs(config: Config) -> GridInputs:
    return GridInputs.load(config)


@pytest.fixture
def bare_inputs(ctm: CTMData) -> GridInputs:
    """Meteorology only; every cell has zero population."""

    return GridInputs(ctm=ctm)
