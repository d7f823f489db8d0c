from __future__ import annotations

import logging
import pickle
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

from ..errors import ConfigurationError, InputDataError
from ..grid import CellArena

logger = logging.getLogger(__name__)

GRID_FORMAT_VERSION = 1


@dataclass
class SavedGrid:
    """A built variable-resolution grid and the settings it was built with."""

    version: int
    arena: CellArena
    var_grid: Dict[str, Any]
    mechanism: str
    meta: Dict[str, Any] = field(default_factory=dict)


def _ensure_parent(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def save_grid(path: Path, saved: SavedGrid) -> Path:
    """Serialise a built grid to disk."""

    path = Path(path)
    _ensure_parent(path)
    with path.open("wb") as fh:
        pickle.dump(saved, fh, protocol=pickle.HIGHEST_PROTOCOL)
    logger.info("Saved grid with %d cells to %s", len(saved.arena), path)
    return path


def load_grid(
    path: Path,
    *,
    var_grid: Optional[Dict[str, Any]] = None,
    mechanism: Optional[str] = None,
) -> SavedGrid:
    """Load a grid written by :func:`save_grid`.

    When ``var_grid`` or ``mechanism`` is given, the stored values must match
    so a grid is never reused under different nesting or species settings.
    """

    path = Path(path)
    try:
        with path.open("rb") as fh:
            saved = pickle.load(fh)
    except (OSError, pickle.UnpicklingError, EOFError) as exc:
        raise InputDataError(f"problem reading saved grid {path}: {exc}") from exc
    if not isinstance(saved, SavedGrid):
        raise InputDataError(f"{path} does not contain a saved grid")
    if saved.version != GRID_FORMAT_VERSION:
        raise InputDataError(
            f"{path} has grid format version {saved.version}, expected {GRID_FORMAT_VERSION}"
        )
    if var_grid is not None:
        keys = ("xo", "yo", "dx", "dy", "xnests", "ynests", "hi_res_layers")
        diff = [k for k in keys if _normalise(saved.var_grid.get(k)) != _normalise(var_grid.get(k))]
        if diff:
            raise ConfigurationError(
                f"saved grid {path} was built with different var_grid settings: {', '.join(diff)}"
            )
    if mechanism is not None and saved.mechanism != mechanism:
        raise ConfigurationError(
            f"saved grid {path} was built for mechanism {saved.mechanism!r}, not {mechanism!r}"
        )
    logger.info("Loaded grid with %d cells from %s", len(saved.arena), path)
    return saved


def _normalise(value: Any) -> Any:
    if isinstance(value, (list, tuple)):
        return tuple(value)
    return value


__all__ = ["SavedGrid", "save_grid", "load_grid", "GRID_FORMAT_VERSION"]
