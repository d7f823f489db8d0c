"""Output helper utilities.

The routines in this module provide thin wrappers around :mod:`pandas` and
:mod:`pyarrow` to serialise results.  Parquet is used for cell tables and SR
matrix parts, JSON for run summaries and SR completion markers.  All
functions ensure that destination directories are created when necessary.
"""
from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Mapping, Optional

import pandas as pd
import pyarrow as pa
import pyarrow.parquet as pq

#: Units attached to well-known output columns.
COLUMN_UNITS = {
    "layer": "index",
    "x0": "m",
    "y0": "m",
    "x1": "m",
    "y1": "m",
    "z0": "m",
    "dz": "m",
    "source": "index",
    "values": "ug m^-3 per ug s^-1",
}


def _ensure_parent(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def write_parquet(
    df: pd.DataFrame,
    path: Path,
    *,
    compression: str = "snappy",
    units: Optional[Mapping[str, str]] = None,
    schema: Optional[pa.Schema] = None,
) -> None:
    """Write a DataFrame to a Parquet file using ``pyarrow``.

    Parameters
    ----------
    df:
        Table to serialise.
    path:
        Destination file path.
    units:
        Extra column units stored in the schema metadata next to the
        defaults in :data:`COLUMN_UNITS`.
    schema:
        Optional explicit Arrow schema.
    """
    _ensure_parent(path)
    table_units = {k: v for k, v in COLUMN_UNITS.items() if k in df.columns}
    if units:
        table_units.update({k: v for k, v in units.items() if k in df.columns})
    table = pa.Table.from_pandas(df, schema=schema, preserve_index=False)
    metadata = dict(table.schema.metadata or {})
    metadata[b"units"] = json.dumps(table_units, sort_keys=True).encode("utf-8")
    table = table.replace_schema_metadata(metadata)
    compression_arg = None if compression == "none" else compression
    pq.write_table(table, path, compression=compression_arg)


def read_units(path: Path) -> dict:
    """Return the column units stored by :func:`write_parquet`."""

    meta = pq.read_schema(path).metadata or {}
    raw = meta.get(b"units")
    return json.loads(raw.decode("utf-8")) if raw else {}


def write_summary(summary: Mapping[str, Any], path: Path) -> None:
    """Write a summary dictionary to ``summary.json``.

    The JSON file is formatted with a small indentation for human
    readability.
    """
    _ensure_parent(path)
    with path.open("w", encoding="utf-8") as fh:
        json.dump(summary, fh, indent=2, sort_keys=True)


def write_json_atomic(payload: Mapping[str, Any], path: Path) -> None:
    """Write JSON via a temporary file and rename it into place.

    Readers never observe a partially written file.
    """
    _ensure_parent(path)
    tmp = path.with_name(path.name + ".tmp")
    with tmp.open("w", encoding="utf-8") as fh:
        json.dump(payload, fh, indent=2, sort_keys=True)
        fh.flush()
        os.fsync(fh.fileno())
    os.replace(tmp, path)


__all__ = ["write_parquet", "read_units", "write_summary", "write_json_atomic", "COLUMN_UNITS"]
