from pathlib import Path

import pytest
from pydantic import ValidationError

from aqmesh import config_utils
from aqmesh.config_utils import apply_overrides_dict, load_config, parse_override_value
from aqmesh.errors import ConfigurationError
from aqmesh.schema import Config, VarGrid


def test_defaults_match_reference_options() -> None:
    cfg = Config()
    assert cfg.var_grid.xnests == (18, 3, 2, 2, 2, 3, 2, 2)
    assert cfg.var_grid.pop_threshold == 40000.0
    assert cfg.emissions.units == "tons/year"
    assert cfg.sr.layers == (0, 2, 4, 6)
    assert cfg.sr.rpc_port == 6060
    assert cfg.numerics.convergence_tolerance == pytest.approx(0.005)


def test_config_is_frozen(config: Config) -> None:
    with pytest.raises(ValidationError):
        config.numerics.num_iterations = 3  # type: ignore[misc]
    changed = config.model_copy(update={"ctm_data": Path("other.npz")})
    assert changed.ctm_data == Path("other.npz")
    assert config.ctm_data != changed.ctm_data


def test_unknown_keys_are_rejected() -> None:
    with pytest.raises(ValidationError):
        Config(numerics={"num_iteration": 3})


@pytest.mark.parametrize("units", ["tons/year", "kg/year", "ug/s", "μg/s"])
def test_accepted_units(units: str) -> None:
    assert Config(emissions={"units": units}).emissions.units == units


def test_invalid_units_fail_validation() -> None:
    with pytest.raises(ValidationError, match="invalid emission units"):
        Config(emissions={"units": "tonnes"})


def test_nest_lengths_must_match() -> None:
    with pytest.raises(ValidationError, match="equal length"):
        VarGrid(xnests=(4, 2), ynests=(4,))


def test_mortality_columns_must_reference_census() -> None:
    with pytest.raises(ValidationError, match="unknown population column"):
        VarGrid(census_pop_columns=("TotalPop",), mortality_rate_columns={"AllCause": "Black"})


def test_sr_range_validation() -> None:
    with pytest.raises(ValidationError):
        Config(sr={"begin": 5, "end": 5})
    assert Config(sr={"begin": 5, "end": -1}).sr.end == -1


def test_env_vars_expand_in_paths(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AQMESH_DATA", "/data/aq")
    cfg = Config(ctm_data="${AQMESH_DATA}/ctm.npz")
    assert cfg.ctm_data == Path("/data/aq/ctm.npz")


def test_override_parsing() -> None:
    assert parse_override_value("true") is True
    assert parse_override_value("12") == 12
    assert parse_override_value("1e-3") == pytest.approx(1e-3)
    assert parse_override_value("[1, 2]") == [1, 2]
    assert parse_override_value("none") is None
    assert parse_override_value("'abc'") == "abc"


def test_overrides_create_nested_paths() -> None:
    payload = apply_overrides_dict({}, ["numerics.num_iterations=4", "sr.layers=[0]"])
    assert payload == {"numerics": {"num_iterations": 4}, "sr": {"layers": [0]}}
    with pytest.raises(ConfigurationError):
        apply_overrides_dict({}, ["numerics.num_iterations"])


def test_load_config_with_overrides(config_path: Path, tmp_path: Path) -> None:
    overrides_file = tmp_path / "overrides.txt"
    overrides_file.write_text("# comment\nnumerics.dynamic=true\n", encoding="utf-8")
    extra = config_utils.read_overrides_file(overrides_file)
    cfg = load_config(config_path, overrides=extra + ["numerics.num_iterations=9"])
    assert cfg.numerics.dynamic is True
    assert cfg.numerics.num_iterations == 9
    assert cfg.var_grid.xnests == (4, 2, 2)


def test_load_config_missing_file(tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError, match="problem reading"):
        load_config(tmp_path / "missing.yml")


def test_check_inputs_exist_lists_missing(make_config) -> None:
    cfg = make_config("ctm_data=/nonexistent/ctm.npz")
    with pytest.raises(ConfigurationError, match="ctm_data"):
        config_utils.check_inputs_exist(cfg)


def test_check_output_file_creates_parent(tmp_path: Path) -> None:
    out = config_utils.check_output_file(tmp_path / "a" / "b" / "out.parquet")
    assert out.parent.is_dir()
    with pytest.raises(ConfigurationError):
        config_utils.check_output_file("")
