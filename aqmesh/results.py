"""Per-cell results and health impacts.

The result table has one row per cell (ground layer only unless all layers
are requested) holding the cell geometry, the mechanism's output variables
[μg m⁻³], the population and mortality attributes, any user-defined
expressions and one ``"<population> deaths"`` column per configured
mortality rate.  Deaths follow a Cox proportional-hazards model with
log-linear relative risk::

    deaths = (exp(beta * TotalPM25) - 1) * population * rate / 1e5

where ``beta = ln(1.06) / 10`` (6% per 10 μg m⁻³).
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Mapping

import numpy as np
import pandas as pd

from . import constants
from .errors import ConfigurationError
from .io.writer import write_parquet, write_summary
from .pipeline import Domain
from .runtime.numba_config import kernel_backend

logger = logging.getLogger(__name__)

TOTAL_PM25 = "TotalPM25"
DEFAULT_TOTAL_PM25 = "PrimaryPM25 + pNH4 + pSO4 + pNO3 + SOA"

_GEOMETRY_COLUMNS = ("layer", "x0", "y0", "x1", "y1", "z0", "dz")


def cell_table(domain: Domain, *, all_layers: bool = False) -> pd.DataFrame:
    """Named per-cell variables in traversal order."""

    arena = domain.require_arena()
    cells = [c for c in arena if all_layers or c.layer == 0]
    vg = domain.config.var_grid
    data: Dict[str, Any] = {
        "layer": np.array([c.layer for c in cells], dtype=np.int64),
        "x0": np.array([c.x0 for c in cells]),
        "y0": np.array([c.y0 for c in cells]),
        "x1": np.array([c.x1 for c in cells]),
        "y1": np.array([c.y1 for c in cells]),
        "z0": np.array([c.z0 for c in cells]),
        "dz": np.array([c.dz for c in cells]),
    }
    conc = np.array([c.cf for c in cells]).reshape(len(cells), len(arena.species))
    data.update(domain.mechanism.output_variables(conc))
    for column in vg.census_pop_columns:
        data[column] = np.array([c.population.get(column, 0.0) for c in cells])
    for column in vg.mortality_rate_columns:
        data[column] = np.array([c.mortality.get(column, 0.0) for c in cells])
    return pd.DataFrame(data)


def evaluate_expressions(df: pd.DataFrame, expressions: Mapping[str, str]) -> pd.DataFrame:
    """Add one column per ``name -> expression`` using :meth:`pandas.DataFrame.eval`."""

    out = df.copy()
    for name, expr in expressions.items():
        try:
            values = out.eval(expr, engine="python")
        except (NameError, KeyError, SyntaxError, pd.errors.UndefinedVariableError) as exc:
            raise ConfigurationError(f"cannot evaluate output variable {name}={expr!r}: {exc}") from exc
        if np.ndim(values) == 0:
            values = np.full(len(out), float(values))
        out[name] = values
    return out


def add_health_impacts(df: pd.DataFrame, mortality_columns: Mapping[str, str]) -> pd.DataFrame:
    """Add ``"<population> deaths"`` columns for each ``rate -> population`` pair."""

    out = df.copy()
    if TOTAL_PM25 not in out.columns:
        out[TOTAL_PM25] = out.eval(DEFAULT_TOTAL_PM25, engine="python")
    rr_minus_one = np.expm1(constants.KREWSKI_BETA * out[TOTAL_PM25].to_numpy(dtype=float))
    for rate_col, pop_col in mortality_columns.items():
        deaths = rr_minus_one * out[pop_col].to_numpy(dtype=float) * out[rate_col].to_numpy(dtype=float)
        out[f"{pop_col} deaths"] = deaths / constants.MORTALITY_RATE_SCALE
    return out


def results(domain: Domain) -> pd.DataFrame:
    """Full result table for a finished domain."""

    cfg = domain.config
    df = cell_table(domain, all_layers=cfg.io.output_all_layers)
    df = evaluate_expressions(df, cfg.io.output_variables)
    df = add_health_impacts(df, cfg.var_grid.mortality_rate_columns)
    return df


def summarise(domain: Domain, df: pd.DataFrame) -> Dict[str, Any]:
    """Scalar run summary: clock, grid size, kernel backend and total deaths per population."""

    arena = domain.require_arena()
    deaths = {
        col: float(df[col].where(df["layer"] == 0, 0.0).sum())
        for col in df.columns
        if col.endswith(" deaths")
    }
    return {
        "iterations": int(domain.iteration),
        "time_s": float(domain.time),
        "dt_s": float(domain.dt),
        "cells": len(arena),
        "cells_per_layer": arena.layer_counts(),
        "mutation_events": int(domain.mutation_events),
        "kernel_backend": kernel_backend(),
        "deaths": deaths,
    }


def write_results(domain: Domain, path: Path) -> Dict[str, Any]:
    """Write the result table to ``path`` and a summary JSON next to it."""

    path = Path(path)
    df = results(domain)
    write_parquet(df, path, units={name: "ug m^-3" for name in domain.config.io.output_variables})
    summary = summarise(domain, df)
    write_summary(summary, path.with_name(path.stem + "_summary.json"))
    logger.info("Wrote %d result rows to %s", len(df), path)
    return summary


__all__ = [
    "cell_table",
    "evaluate_expressions",
    "add_health_impacts",
    "results",
    "summarise",
    "write_results",
    "TOTAL_PM25",
]
