"""SR matrix storage: per-chunk parts, completion markers and the assembled matrix.

Layout under the log directory::

    parts/layer{L}_{begin}_{end}.parquet   rows of one finished chunk
    layer{L}_{begin}_{end}.done.json       completion marker

A marker is written only after its part file is complete, and atomically,
so a restarted build can trust every marker it finds.  The assembled matrix
is a parquet table with one row per (layer, source, variable) sorted by
those keys and a ``values`` list column holding the receptor responses in
ground-layer traversal order.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Sequence, Set, Tuple

import numpy as np
import pandas as pd
import pyarrow as pa

from ..errors import InputDataError
from ..io.writer import write_json_atomic, write_parquet
from .protocol import SRRow

logger = logging.getLogger(__name__)

SCHEMA = pa.schema(
    [
        ("layer", pa.int64()),
        ("source", pa.int64()),
        ("variable", pa.string()),
        ("values", pa.list_(pa.float64())),
    ]
)
_KEYS = ["layer", "source", "variable"]


@dataclass(frozen=True, order=True)
class Chunk:
    """Contiguous source rows ``[begin, end)`` of one layer."""

    layer: int
    begin: int
    end: int

    @property
    def key(self) -> str:
        return f"layer{self.layer}_{self.begin}_{self.end}"

    def rows(self) -> range:
        return range(self.begin, self.end)

    def __len__(self) -> int:
        return self.end - self.begin


def rows_to_frame(rows: Iterable[SRRow]) -> pd.DataFrame:
    records = []
    for row in rows:
        for variable, values in row.values.items():
            records.append(
                {
                    "layer": row.layer,
                    "source": row.source,
                    "variable": variable,
                    "values": np.asarray(values, dtype=np.float64),
                }
            )
    return pd.DataFrame(records, columns=["layer", "source", "variable", "values"])


class SRStore:
    """Chunk parts and markers in one log directory."""

    def __init__(self, log_dir: Path) -> None:
        self.log_dir = Path(log_dir)

    def part_path(self, chunk: Chunk) -> Path:
        return self.log_dir / "parts" / f"{chunk.key}.parquet"

    def marker_path(self, chunk: Chunk) -> Path:
        return self.log_dir / f"{chunk.key}.done.json"

    def write_chunk(self, chunk: Chunk, rows: Sequence[SRRow]) -> None:
        """Persist a finished chunk, part first, marker last."""

        got = sorted(r.source for r in rows)
        if got != list(chunk.rows()) or any(r.layer != chunk.layer for r in rows):
            raise InputDataError(f"worker returned rows {got} for chunk {chunk.key}")
        write_parquet(rows_to_frame(rows), self.part_path(chunk), schema=SCHEMA)
        write_json_atomic(
            {"layer": chunk.layer, "begin": chunk.begin, "end": chunk.end, "rows": len(rows)},
            self.marker_path(chunk),
        )

    def completed(self) -> List[Chunk]:
        """Chunks with a marker and a part file."""

        done: List[Chunk] = []
        if not self.log_dir.exists():
            return done
        for marker in sorted(self.log_dir.glob("*.done.json")):
            try:
                with marker.open("r", encoding="utf-8") as fh:
                    meta = json.load(fh)
                chunk = Chunk(int(meta["layer"]), int(meta["begin"]), int(meta["end"]))
            except (OSError, ValueError, KeyError, TypeError) as exc:
                logger.warning("ignoring unreadable SR marker %s: %s", marker, exc)
                continue
            if not self.part_path(chunk).exists():
                logger.warning("SR marker %s has no part file; chunk will be recomputed", marker)
                continue
            done.append(chunk)
        return sorted(done)

    def completed_rows(self) -> Dict[int, Set[int]]:
        rows: Dict[int, Set[int]] = {}
        for chunk in self.completed():
            rows.setdefault(chunk.layer, set()).update(chunk.rows())
        return rows

    def assemble(self, path: Path) -> pd.DataFrame:
        """Combine all completed parts into the matrix file at ``path``."""

        frames = [pd.read_parquet(self.part_path(chunk)) for chunk in self.completed()]
        if frames:
            df = pd.concat(frames, ignore_index=True)
        else:
            df = pd.DataFrame(columns=["layer", "source", "variable", "values"])
        df = df.drop_duplicates(subset=_KEYS, keep="last").sort_values(_KEYS, kind="mergesort")
        df = df.reset_index(drop=True)
        write_parquet(df, Path(path), schema=SCHEMA)
        logger.info("Assembled SR matrix with %d rows into %s", len(df), path)
        return df


class SRMatrix:
    """Read access to an assembled SR matrix."""

    def __init__(self, frame: pd.DataFrame) -> None:
        self.frame = frame.sort_values(_KEYS, kind="mergesort").reset_index(drop=True)

    @classmethod
    def load(cls, path: Path) -> "SRMatrix":
        try:
            frame = pd.read_parquet(Path(path))
        except (OSError, ValueError) as exc:
            raise InputDataError(f"problem reading SR matrix {path}: {exc}") from exc
        return cls(frame)

    @property
    def layers(self) -> Tuple[int, ...]:
        return tuple(int(v) for v in sorted(self.frame["layer"].unique()))

    @property
    def variables(self) -> Tuple[str, ...]:
        return tuple(sorted(self.frame["variable"].unique()))

    def sources(self, layer: int) -> np.ndarray:
        sel = self.frame[self.frame["layer"] == layer]
        return np.sort(sel["source"].unique()).astype(np.int64)

    def array(self, variable: str, layer: int) -> np.ndarray:
        """``(n_sources, n_receptors)`` responses for ``variable`` emitted in ``layer``.

        Rows follow :meth:`sources` order.
        """

        sel = self.frame[(self.frame["layer"] == layer) & (self.frame["variable"] == variable)]
        if sel.empty:
            raise KeyError(f"no SR rows for variable {variable!r} in layer {layer}")
        return np.vstack([np.asarray(v, dtype=np.float64) for v in sel["values"]])


__all__ = ["Chunk", "SRStore", "SRMatrix", "rows_to_frame", "SCHEMA"]
