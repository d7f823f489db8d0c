"""Helper utilities for loading and checking configuration inputs."""
from __future__ import annotations

import logging
import warnings
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from ruamel.yaml import YAML

from . import constants
from .errors import ConfigurationError
from .schema import Config

logger = logging.getLogger(__name__)


def parse_override_value(raw: str) -> Any:
    """Parse a CLI override value into a Python object."""

    text = raw.strip()
    lower = text.lower()
    if lower in {"true", "false"}:
        return lower == "true"
    if lower in {"none", "null"}:
        return None
    try:
        return int(text)
    except ValueError:
        try:
            return float(text)
        except ValueError:
            pass
    if text.startswith("[") and text.endswith("]"):
        inner = text[1:-1].strip()
        if not inner:
            return []
        return [parse_override_value(part) for part in inner.split(",")]
    if (text.startswith('"') and text.endswith('"')) or (text.startswith("'") and text.endswith("'")):
        return text[1:-1]
    return text


def apply_overrides_dict(payload: Dict[str, Any], overrides: Sequence[str]) -> Dict[str, Any]:
    """Apply dotted-path overrides to a configuration dictionary."""

    if not overrides:
        return payload
    for item in overrides:
        key, sep, value_str = item.partition("=")
        if not sep:
            raise ConfigurationError(f"Invalid override '{item}'; expected path=value")
        parts = [segment for segment in key.strip().split(".") if segment]
        if not parts:
            raise ConfigurationError(f"Invalid override '{item}'; empty path")
        target: Any = payload
        for segment in parts[:-1]:
            if not isinstance(target, dict):
                raise ConfigurationError(
                    f"Cannot traverse into non-mapping for override '{item}' at '{segment}'"
                )
            if segment not in target or target[segment] is None:
                target[segment] = {}
            target = target[segment]
        if not isinstance(target, dict):
            raise ConfigurationError(f"Cannot set override '{item}'; target is not a mapping")
        target[parts[-1]] = parse_override_value(value_str)
    return payload


def read_overrides_file(path: Path) -> List[str]:
    """Return ``path=value`` lines from an overrides file, skipping comments."""

    lines: List[str] = []
    with Path(path).open("r", encoding="utf-8") as fh:
        for raw in fh:
            text = raw.strip()
            if not text or text.startswith("#"):
                continue
            lines.append(text)
    return lines


def load_config(path: Optional[Path] = None, overrides: Optional[Sequence[str]] = None) -> Config:
    """Load a YAML configuration file into a :class:`Config` instance.

    ``path`` may be ``None``, in which case the defaults are used and only
    ``overrides`` are applied.
    """

    data: Dict[str, Any] = {}
    if path is not None:
        yaml = YAML(typ="safe")
        source_path = Path(path).resolve()
        try:
            with source_path.open("r", encoding="utf-8") as fh:
                loaded = yaml.load(fh)
        except OSError as exc:
            raise ConfigurationError(f"problem reading configuration file {source_path}: {exc}") from exc
        if loaded is not None:
            if not isinstance(loaded, dict):
                raise ConfigurationError("Configuration root must be a mapping")
            data = loaded
    if overrides:
        data = apply_overrides_dict(data, overrides)
    cfg = Config(**data)
    logger.debug("load_config: loaded configuration from %s", path)
    return cfg


def check_emission_units(units: str) -> float:
    """Return the factor converting ``units`` to μg s⁻¹."""

    try:
        return constants.EMISSION_UNIT_FACTORS[units]
    except KeyError:
        allowed = ", ".join(repr(k) for k in constants.EMISSION_UNIT_FACTORS)
        raise ConfigurationError(f"invalid emission units {units!r}; expected one of {allowed}") from None


def check_output_file(path: Path) -> Path:
    """Ensure the directory for ``path`` exists or can be created."""

    if path is None or str(path).strip() == "":
        raise ConfigurationError("an output file path is required")
    out = Path(path)
    try:
        out.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise ConfigurationError(f"cannot create output directory {out.parent}: {exc}") from exc
    return out


def check_inputs_exist(cfg: Config, *, need_census: bool = True) -> None:
    """Fail fast when a required input dataset is missing."""

    missing: List[str] = []
    if not Path(cfg.ctm_data).exists():
        missing.append(f"ctm_data={cfg.ctm_data}")
    if need_census:
        if cfg.var_grid.census_file is None or not Path(cfg.var_grid.census_file).exists():
            missing.append(f"var_grid.census_file={cfg.var_grid.census_file}")
        if cfg.var_grid.mortality_rate_file is None or not Path(cfg.var_grid.mortality_rate_file).exists():
            missing.append(f"var_grid.mortality_rate_file={cfg.var_grid.mortality_rate_file}")
    for emis_path in cfg.emissions.files:
        if not Path(emis_path).exists():
            missing.append(f"emissions.files={emis_path}")
    if missing:
        raise ConfigurationError("missing input datasets: " + ", ".join(missing))


def configure_logging(level: int, suppress_warnings: bool = False) -> None:
    """Configure root logging and optionally silence Python warnings."""

    logging.basicConfig(level=level, format="%(asctime)s %(name)s %(levelname)s %(message)s")
    root = logging.getLogger()
    root.setLevel(level)
    if suppress_warnings:
        warnings.filterwarnings("ignore")
    logging.captureWarnings(True)


__all__ = [
    "parse_override_value",
    "apply_overrides_dict",
    "read_overrides_file",
    "load_config",
    "check_emission_units",
    "check_output_file",
    "check_inputs_exist",
    "configure_logging",
]
