from pathlib import Path

import numpy as np
import pytest

from aqmesh.errors import CoverageError, InputDataError
from aqmesh.io.ctmdata import CTMData


def test_cell_values_area_weighted(ctm: CTMData) -> None:
    fields = dict(ctm.fields)
    kzz = fields["Kzz"].copy()
    kzz[0, 0, 0] = 1.0
    kzz[0, 0, 1] = 3.0
    fields["Kzz"] = kzz
    varied = CTMData(x0=0.0, y0=0.0, dx=1000.0, dy=1000.0, layer_edges=ctm.layer_edges, fields=fields)
    # 750 m over the first CTM column, 250 m over the second
    values = varied.cell_values((250.0, 0.0, 1250.0, 1000.0), 0, names=["Kzz"])
    assert values["Kzz"] == pytest.approx(0.75 * 1.0 + 0.25 * 3.0)


def test_cell_values_outside_raises(ctm: CTMData) -> None:
    with pytest.raises(CoverageError):
        ctm.cell_values((5000.0, 5000.0, 6000.0, 6000.0), 0)
    with pytest.raises(CoverageError):
        ctm.cell_values((0.0, 0.0, 1000.0, 1000.0), 7)


def test_layer_of_height(ctm: CTMData) -> None:
    assert ctm.layer_of_height(0.0) == 0
    assert ctm.layer_of_height(49.9) == 0
    assert ctm.layer_of_height(50.0) == 1
    assert ctm.layer_of_height(1.0e4) == ctm.nlayers - 1
    assert ctm.layer_thickness(1) == pytest.approx(100.0)


def test_npz_roundtrip(tmp_path: Path, ctm: CTMData) -> None:
    path = ctm.to_npz(tmp_path / "ctm.npz")
    loaded = CTMData.from_npz(path)
    assert loaded.shape == ctm.shape
    assert np.allclose(loaded.layer_edges, ctm.layer_edges)
    assert set(loaded.fields) == set(ctm.fields)


def test_validation_rejects_bad_layers() -> None:
    with pytest.raises(InputDataError):
        CTMData.uniform(x0=0.0, y0=0.0, dx=1.0, dy=1.0, nx=1, ny=1, layer_edges=[0.0, 0.0], values={"UAvg": 1.0})


def test_require_lists_missing_fields(ctm: CTMData) -> None:
    with pytest.raises(InputDataError, match="NotAField"):
        ctm.require(["UAvg", "NotAField"])


def test_non_finite_field_rejected() -> None:
    with pytest.raises(InputDataError, match="non-finite"):
        CTMData.uniform(
            x0=0.0, y0=0.0, dx=1.0, dy=1.0, nx=1, ny=1, layer_edges=[0.0, 1.0], values={"UAvg": float("nan")}
        )
