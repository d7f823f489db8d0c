"""Configuration schema for air-quality mesh simulations.

This module defines Pydantic models that mirror the structure of the YAML
configuration files read by :func:`aqmesh.config_utils.load_config`.  Every
model is frozen: a single :class:`Config` value is built at start-up and
handed by reference to the grid builder, the pipeline stages and the SR
workers.  Variations (for example the per-row settings of an SR job) are made
with ``model_copy(update=...)`` rather than by mutating a shared instance.
"""
from __future__ import annotations

import math
import os
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from . import constants
from .errors import ConfigurationError

_FROZEN = ConfigDict(frozen=True, extra="forbid")


def _expand_path(value: Any) -> Any:
    """Expand ``${VAR}`` and ``~`` in string paths."""

    if value is None:
        return None
    if isinstance(value, (str, Path)):
        return Path(os.path.expanduser(os.path.expandvars(str(value))))
    return value


class VarGrid(BaseModel):
    """Variable-resolution grid definition and refinement thresholds."""

    model_config = _FROZEN

    xo: float = Field(-2736000.0, description="X coordinate of the lower-left grid corner")
    yo: float = Field(-2088000.0, description="Y coordinate of the lower-left grid corner")
    dx: float = Field(288000.0, gt=0.0, description="X edge length of outermost-nest cells")
    dy: float = Field(288000.0, gt=0.0, description="Y edge length of outermost-nest cells")
    xnests: Tuple[int, ...] = Field(
        (18, 3, 2, 2, 2, 3, 2, 2),
        description="Nesting multiples in X; the first entry is the outer cell count.",
    )
    ynests: Tuple[int, ...] = Field(
        (14, 3, 2, 2, 2, 3, 2, 2),
        description="Nesting multiples in Y; the first entry is the outer cell count.",
    )
    grid_proj: str = Field(
        "+proj=lcc +lat_1=33.000000 +lat_2=45.000000 +lat_0=40.000000 +lon_0=-97.000000 "
        "+x_0=0 +y_0=0 +a=6370997.000000 +b=6370997.000000 +to_meter=1",
        description="Projection of the grid (Proj4 or WKT); all inputs must share it.",
    )
    hi_res_layers: int = Field(
        8,
        ge=0,
        description="Number of layers, from the ground, in which cells may be refined.",
    )
    pop_density_threshold: float = Field(0.0055, ge=0.0, description="People per unit area")
    pop_threshold: float = Field(40000.0, ge=0.0, description="People per grid cell")
    pop_conc_threshold: float = Field(
        1.0e-9,
        gt=0.0,
        description="Threshold for the normalised population/concentration change metric.",
    )
    census_file: Optional[Path] = None
    census_pop_columns: Tuple[str, ...] = ("TotalPop", "WhiteNoLat", "Black", "Native", "Asian", "Latino")
    pop_grid_column: str = "TotalPop"
    mortality_rate_file: Optional[Path] = None
    mortality_rate_columns: Dict[str, str] = Field(
        default_factory=lambda: {
            "AllCause": "TotalPop",
            "WhNoLMort": "WhiteNoLat",
            "BlackMort": "Black",
            "NativeMort": "Native",
            "AsianMort": "Asian",
            "LatinoMort": "Latino",
        },
        description="Mortality rate column (deaths per 100,000 per year) -> population column.",
    )

    @field_validator("census_file", "mortality_rate_file", mode="before")
    def _expand(cls, value: Any) -> Any:
        return _expand_path(value)

    @field_validator("xnests", "ynests")
    def _check_nests(cls, value: Tuple[int, ...]) -> Tuple[int, ...]:
        if len(value) == 0:
            raise ConfigurationError("nest lists must contain at least the outer cell count")
        if any(int(v) < 1 for v in value):
            raise ConfigurationError("nesting multiples must be >= 1")
        return tuple(int(v) for v in value)

    @model_validator(mode="after")
    def _check_consistency(self) -> "VarGrid":
        if len(self.xnests) != len(self.ynests):
            raise ConfigurationError(
                f"xnests ({len(self.xnests)}) and ynests ({len(self.ynests)}) must have equal length"
            )
        if self.pop_grid_column not in self.census_pop_columns:
            raise ConfigurationError(
                f"pop_grid_column {self.pop_grid_column!r} must be one of census_pop_columns"
            )
        for mort, pop in self.mortality_rate_columns.items():
            if pop not in self.census_pop_columns:
                raise ConfigurationError(
                    f"mortality column {mort!r} refers to unknown population column {pop!r}"
                )
        return self

    @property
    def max_depth(self) -> int:
        """Deepest nest index a cell can reach."""

        return len(self.xnests) - 1


class Emissions(BaseModel):
    """Emission inputs."""

    model_config = _FROZEN

    files: Tuple[Path, ...] = ()
    units: str = Field("tons/year", description="One of 'tons/year', 'kg/year', 'ug/s', 'μg/s'.")

    @field_validator("files", mode="before")
    def _expand_files(cls, value: Any) -> Any:
        if value is None:
            return ()
        if isinstance(value, (str, Path)):
            value = [value]
        return tuple(_expand_path(v) for v in value)

    @field_validator("units")
    def _check_units(cls, value: str) -> str:
        if value not in constants.EMISSION_UNIT_FACTORS:
            allowed = ", ".join(repr(k) for k in constants.EMISSION_UNIT_FACTORS)
            raise ConfigurationError(f"invalid emission units {value!r}; expected one of {allowed}")
        return value


class Numerics(BaseModel):
    """Run-loop, time-step and convergence controls."""

    model_config = _FROZEN

    dynamic: bool = Field(
        True,
        description="Refine the grid during the run (dynamic) instead of once before it (static).",
    )
    num_iterations: int = Field(
        0,
        description="Exact number of run iterations; values < 1 select convergence-driven termination.",
    )
    max_iterations: Optional[int] = Field(
        None,
        ge=1,
        description="Optional hard bound on iterations in convergence-driven mode.",
    )
    mutate_interval_s: float = Field(3.0 * 3600.0, gt=0.0)
    cfl_safety: float = Field(constants.DEFAULT_CFL_SAFETY, gt=0.0, lt=1.0)
    dt_max_s: float = Field(
        3600.0,
        gt=0.0,
        description="Upper bound on the time step when velocities and mixing vanish.",
    )
    convergence_tolerance: float = Field(constants.DEFAULT_CONVERGENCE_TOLERANCE, gt=0.0)
    convergence_check_interval_s: float = Field(constants.DEFAULT_CHECK_INTERVAL_S, gt=0.0)
    mutation_quiet_checks: Optional[int] = Field(
        None,
        ge=1,
        description="Declare convergence after this many consecutive checks without a grid mutation.",
    )
    conservation_rtol: float = Field(constants.DEFAULT_CONSERVATION_RTOL, gt=0.0)
    max_cells: Optional[int] = Field(
        None,
        ge=1,
        description="Cell count above which a dynamic run raises its refinement threshold.",
    )
    threshold_step: float = Field(
        2.0,
        gt=1.0,
        description="Factor applied to the refinement threshold each time max_cells is exceeded.",
    )

    @field_validator("convergence_tolerance", "conservation_rtol", "mutate_interval_s")
    def _check_finite(cls, value: float) -> float:
        if not math.isfinite(value):
            raise ConfigurationError("numerics values must be finite")
        return float(value)


class SR(BaseModel):
    """Source-receptor matrix build settings."""

    model_config = _FROZEN

    log_dir: Path = Path("log")
    output_file: Path = Path("sr.parquet")
    layers: Tuple[int, ...] = (0, 2, 4, 6)
    begin: int = Field(0, ge=0)
    end: int = Field(-1, description="Exclusive end row; -1 selects the last row of each layer.")
    rpc_port: int = Field(6060, ge=1, le=65535)
    node_file: Optional[Path] = None
    timeout_s: float = Field(6.0 * 3600.0, gt=0.0)
    max_attempts: int = Field(3, ge=1)
    backoff_s: float = Field(1.0, ge=0.0)
    backoff_factor: float = Field(2.0, ge=1.0)
    backoff_max_s: float = Field(60.0, ge=0.0)

    @field_validator("log_dir", "output_file", "node_file", mode="before")
    def _expand(cls, value: Any) -> Any:
        return _expand_path(value)

    @field_validator("layers")
    def _check_layers(cls, value: Tuple[int, ...]) -> Tuple[int, ...]:
        if not value:
            raise ConfigurationError("sr.layers must not be empty")
        if any(int(v) < 0 for v in value):
            raise ConfigurationError("sr.layers must be non-negative")
        return tuple(sorted(set(int(v) for v in value)))

    @model_validator(mode="after")
    def _check_range(self) -> "SR":
        if self.end != -1 and self.end <= self.begin:
            raise ConfigurationError(f"sr.end ({self.end}) must exceed sr.begin ({self.begin}) or be -1")
        return self


class IO(BaseModel):
    """Output files and console behaviour."""

    model_config = _FROZEN

    outdir: Path = Path("out")
    output_file: Path = Path("aqmesh_output.parquet")
    output_all_layers: bool = False
    output_variables: Dict[str, str] = Field(
        default_factory=lambda: {"TotalPM25": "PrimaryPM25 + pNH4 + pSO4 + pNO3 + SOA"},
        description="Output name -> expression over named variables (pandas eval syntax).",
    )
    quiet: bool = False
    progress: bool = False

    @field_validator("outdir", "output_file", mode="before")
    def _expand(cls, value: Any) -> Any:
        return _expand_path(value)

    @field_validator("output_file")
    def _check_output_file(cls, value: Path) -> Path:
        if str(value).strip() in {"", "."}:
            raise ConfigurationError("io.output_file must be a file path")
        return value


class Config(BaseModel):
    """Top-level configuration object."""

    model_config = _FROZEN

    ctm_data: Path = Field(Path("ctm_data.npz"), description="Baseline meteorology dataset (.npz)")
    variable_grid_data: Optional[Path] = Field(
        None,
        description="Saved variable-resolution grid; built and written here when absent.",
    )
    var_grid: VarGrid = Field(default_factory=VarGrid)
    emissions: Emissions = Field(default_factory=Emissions)
    numerics: Numerics = Field(default_factory=Numerics)
    sr: SR = Field(default_factory=SR)
    io: IO = Field(default_factory=IO)

    @field_validator("ctm_data", "variable_grid_data", mode="before")
    def _expand(cls, value: Any) -> Any:
        return _expand_path(value)


__all__ = [
    "VarGrid",
    "Emissions",
    "Numerics",
    "SR",
    "IO",
    "Config",
]
