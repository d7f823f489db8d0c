from pathlib import Path

import numpy as np
import pandas as pd
import pytest
from shapely.geometry import LineString, Point, box

from aqmesh import constants
from aqmesh.emissions import EmisRecord, allocate_emissions, load_emissions, write_emissions
from aqmesh.errors import ConfigurationError, InputDataError
from aqmesh.physics import LinearMechanism
from aqmesh.vargrid import regular_grid
from aqmesh.warnings import AllocationWarning


@pytest.fixture
def arena(config, bare_inputs):
    return regular_grid(config.var_grid, bare_inputs, LinearMechanism())


def _emitted_mass_rate(arena) -> np.ndarray:
    return np.sum([cell.emis_flux * cell.volume for cell in arena], axis=0)


def test_unit_conversion() -> None:
    rec = EmisRecord.from_units(Point(0, 0), {"PM25": 1.0}, "tons/year")
    assert rec.rates["PM25"] == pytest.approx(907.18474e9 / constants.SECONDS_PER_YEAR)
    assert EmisRecord.from_units(Point(0, 0), {"PM25": 2.0}, "μg/s").rates["PM25"] == 2.0


def test_invalid_units_are_rejected() -> None:
    with pytest.raises(ConfigurationError, match="units"):
        EmisRecord.from_units(Point(0, 0), {"PM25": 1.0}, "lb/day")


def test_unknown_pollutant_is_rejected() -> None:
    with pytest.raises(InputDataError):
        EmisRecord(Point(0, 0), {"CO": 1.0})


def test_point_goes_to_containing_cell(arena) -> None:
    mech = LinearMechanism()
    report = allocate_emissions(arena, [EmisRecord(Point(1500.0, 2500.0), {"PM25": 10.0})], mech)
    assert report.allocated == 1
    hit = [c for c in arena if np.any(c.emis_flux)]
    assert len(hit) == 1
    cell = hit[0]
    assert (cell.x0, cell.y0, cell.layer) == (1000.0, 2000.0, 0)
    assert np.allclose(_emitted_mass_rate(arena), mech.emission_vector({"PM25": 10.0}))


def test_point_on_shared_edge_is_not_double_counted(arena) -> None:
    allocate_emissions(arena, [EmisRecord(Point(1000.0, 1000.0), {"PM25": 1.0})], LinearMechanism())
    hit = [c for c in arena if np.any(c.emis_flux)]
    assert len(hit) == 1
    assert (hit[0].x0, hit[0].y0) == (1000.0, 1000.0)


@pytest.mark.parametrize(
    "x, y, corner",
    [
        (4000.0, 2500.0, (3000.0, 2000.0)),
        (1500.0, 4000.0, (1000.0, 3000.0)),
        (4000.0, 4000.0, (3000.0, 3000.0)),
    ],
)
def test_point_on_outer_east_or_north_edge_is_kept(arena, x, y, corner) -> None:
    mech = LinearMechanism()
    report = allocate_emissions(arena, [EmisRecord(Point(x, y), {"PM25": 1.0})], mech)
    assert report.allocated == 1
    hit = [c for c in arena if np.any(c.emis_flux)]
    assert [(c.x0, c.y0) for c in hit] == [corner]
    assert np.allclose(_emitted_mass_rate(arena), mech.emission_vector({"PM25": 1.0}))


def test_line_and_area_split_by_overlap(arena) -> None:
    mech = LinearMechanism()
    line = EmisRecord(LineString([(500.0, 500.0), (1500.0, 500.0)]), {"NOx": 4.0})
    area = EmisRecord(box(0.0, 0.0, 2000.0, 1000.0), {"VOC": 8.0})
    report = allocate_emissions(arena, [line, area], mech)
    assert report.fraction_allocated("NOx") == pytest.approx(1.0)
    assert report.fraction_allocated("VOC") == pytest.approx(1.0)
    assert np.allclose(_emitted_mass_rate(arena), mech.emission_vector({"NOx": 4.0, "VOC": 8.0}))
    first, second = arena.cells_in_layer(0)[:2]
    assert np.allclose(first.emis_flux * first.volume, second.emis_flux * second.volume)


def test_elevated_release_uses_its_layer(arena) -> None:
    allocate_emissions(arena, [EmisRecord(Point(500.0, 500.0), {"SOx": 1.0}, height=120.0)], LinearMechanism())
    layers = {c.layer for c in arena if np.any(c.emis_flux)}
    assert layers == {1}


def test_non_overlapping_record_contributes_nothing(arena) -> None:
    records = [
        EmisRecord(Point(-50.0, -50.0), {"PM25": 1.0}),
        EmisRecord(None, {"PM25": 1.0}),
    ]
    with pytest.warns(AllocationWarning):
        report = allocate_emissions(arena, records, LinearMechanism())
    assert report.zero_contribution == 2
    assert report.allocated == 0
    assert report.fraction_allocated("PM25") == 0.0
    assert all(not np.any(c.emis_flux) for c in arena)


def test_reallocation_resets_fluxes(arena) -> None:
    mech = LinearMechanism()
    rec = EmisRecord(Point(500.0, 500.0), {"PM25": 1.0})
    allocate_emissions(arena, [rec], mech)
    allocate_emissions(arena, [rec], mech)
    assert np.allclose(_emitted_mass_rate(arena), mech.emission_vector({"PM25": 1.0}))


def test_load_emissions_roundtrip(tmp_path: Path) -> None:
    path = write_emissions([EmisRecord(Point(1.0, 2.0), {"PM25": 3.0}, height=7.0)], tmp_path / "e.parquet")
    (rec,) = load_emissions([path], "ug/s")
    assert rec.geometry.equals(Point(1.0, 2.0))
    assert rec.height == 7.0
    assert rec.rates["PM25"] == 3.0
    assert rec.rates["NOx"] == 0.0


def test_load_emissions_converts_units_and_tolerates_bad_geometry(tmp_path: Path) -> None:
    df = pd.DataFrame({"geometry": ["POINT (1 1)", "not wkt"], "PM25": [1.0, 1.0]})
    path = tmp_path / "raw.parquet"
    df.to_parquet(path)
    records = load_emissions([path], "kg/year")
    assert len(records) == 2
    assert records[1].geometry is None
    assert records[0].rates["PM25"] == pytest.approx(1.0e9 / constants.SECONDS_PER_YEAR)
    assert records[0].height == 0.0


def test_load_emissions_requires_pollutant_columns(tmp_path: Path) -> None:
    path = tmp_path / "bad.parquet"
    pd.DataFrame({"geometry": ["POINT (1 1)"], "CO": [1.0]}).to_parquet(path)
    with pytest.raises(InputDataError):
        load_emissions([path], "ug/s")
