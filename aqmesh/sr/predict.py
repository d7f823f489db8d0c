"""Concentrations predicted from an assembled SR matrix.

Each SR row is the ground-layer response to 1 μg s⁻¹ of every emitted
pollutant at one source cell.  The mechanism's output variables respond
linearly to a single pollutant each, so for an emission inventory::

    C_var[r] = sum over (layer, s) of rate_pol(var)[layer, s] * SR_var[layer][s, r]

The inventory is split between source cells the same way a simulation
allocates it.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from typing import Dict, Optional, Sequence

import numpy as np
import pandas as pd

from ..emissions import EmisRecord, source_rates
from ..errors import InputDataError
from ..grid import CellArena
from ..physics import LinearMechanism, Mechanism
from ..results import DEFAULT_TOTAL_PM25, TOTAL_PM25
from .matrix import SRMatrix

logger = logging.getLogger(__name__)


def predict(
    matrix: SRMatrix,
    emissions: Sequence[EmisRecord],
    arena: CellArena,
    mechanism: Optional[Mechanism] = None,
) -> pd.DataFrame:
    """Ground-layer concentrations [μg m⁻³] caused by ``emissions``.

    ``arena`` must be the grid the matrix was built on.  The result has one
    row per ground cell in traversal order with the cell bounds, every
    output variable and ``TotalPM25``.

    Raises
    ------
    InputDataError
        If an emission falls in a source cell or layer the matrix does not
        cover, or the matrix rows do not match the grid's ground layer.
    """

    mechanism = mechanism if mechanism is not None else LinearMechanism()
    ground = arena.cells_in_layer(0)
    pollutant_of = mechanism.output_pollutants
    out: Dict[str, np.ndarray] = {var: np.zeros(len(ground)) for var in pollutant_of}

    by_layer: Dict[int, Dict[int, Dict[str, float]]] = defaultdict(dict)
    for (layer, source), rates in source_rates(arena, emissions).items():
        by_layer[layer][source] = rates

    for layer in sorted(by_layer):
        sources = by_layer[layer]
        if layer not in matrix.layers:
            raise InputDataError(f"emissions fall in layer {layer}, which the SR matrix does not cover")
        rows = {int(s): n for n, s in enumerate(matrix.sources(layer))}
        missing = sorted(set(sources) - set(rows))
        if missing:
            raise InputDataError(f"SR matrix has no rows for layer {layer} sources {missing}")
        for var, pol in pollutant_of.items():
            try:
                responses = matrix.array(var, layer)
            except KeyError as exc:
                raise InputDataError(f"SR matrix is missing variable {var!r}") from exc
            if responses.shape[1] != len(ground):
                raise InputDataError(
                    f"SR matrix has {responses.shape[1]} receptors but the grid has {len(ground)} ground cells"
                )
            weights = np.zeros(responses.shape[0])
            for source, rates in sources.items():
                weights[rows[source]] += rates.get(pol, 0.0)
            out[var] += weights @ responses
        logger.info("Applied SR rows for %d emitting cells in layer %d", len(sources), layer)

    df = pd.DataFrame(
        {
            "layer": np.zeros(len(ground), dtype=np.int64),
            "x0": np.array([c.x0 for c in ground]),
            "y0": np.array([c.y0 for c in ground]),
            "x1": np.array([c.x1 for c in ground]),
            "y1": np.array([c.y1 for c in ground]),
            **out,
        }
    )
    df[TOTAL_PM25] = df.eval(DEFAULT_TOTAL_PM25, engine="python")
    return df


__all__ = ["predict"]
