"""Workflows and command line entry point.

Five workflows are exposed:

``grid``
    Build the regular base mesh, refine it statically by population and save
    it to ``variable_grid_data``.
``steady``
    Run one simulation to steady state and write the per-cell results.
``sr``
    Build the source-receptor matrix with a pool of workers.
``sr predict``
    Apply the emission inventory to a built SR matrix.
``worker``
    Serve SR requests over XML-RPC on ``sr.rpc_port``.
"""
from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import List, Optional, Sequence

import pandas as pd

from . import config_utils
from .config_utils import check_inputs_exist, check_output_file, load_config
from .convergence import SteadyStateConvergenceCheck
from .emissions import EmisRecord, load_emissions
from .errors import ConfigurationError
from .io.gridstore import GRID_FORMAT_VERSION, SavedGrid, load_grid, save_grid
from .io.writer import write_parquet
from .mutation import AdjustGridCriteria, MutateGrid, PopConcCriterion, StaticRefinement
from .physics import (
    AddEmissionsFlux,
    Chemistry,
    DryDeposition,
    LinearMechanism,
    Mechanism,
    MeanderMixing,
    Mixing,
    UpwindAdvection,
    WetDeposition,
)
from .pipeline import AllocateEmissions, Calculations, Domain, RunPeriodically, Stage
from .results import write_results
from .schema import Config
from .sr import (
    Coordinator,
    LocalWorkerClient,
    RPCWorkerClient,
    SRMatrix,
    SRWorker,
    WorkerClient,
    discover_nodes,
    predict,
    serve_worker,
)
from .timestep import SetTimestepCFL
from .vargrid import GridInputs, LoadGrid, RegularGrid

logger = logging.getLogger(__name__)


def physics_stage() -> Calculations:
    """Transport, deposition and chemistry, in operator-splitting order."""

    return Calculations(UpwindAdvection(), Mixing(), MeanderMixing(), DryDeposition(), WetDeposition(), Chemistry())


def steady_domain(
    cfg: Config,
    inputs: Optional[GridInputs],
    mechanism: Mechanism,
    emissions: Sequence[EmisRecord],
) -> Domain:
    """Assemble the steady-state pipeline for ``cfg``.

    A dynamic run starts from the regular mesh and refines it every
    ``numerics.mutate_interval_s`` with the population/concentration
    criterion, recomputing the time step after each refinement and raising
    the criterion's threshold while the grid exceeds ``numerics.max_cells``.
    A static run uses the saved grid when ``variable_grid_data`` exists and
    otherwise refines the regular mesh by population before time stepping.
    """

    numerics = cfg.numerics
    init: List[Stage] = []
    if numerics.dynamic:
        init.append(RegularGrid())
    elif cfg.variable_grid_data is not None and Path(cfg.variable_grid_data).exists():
        init.append(LoadGrid(cfg.variable_grid_data))
    else:
        init.extend([RegularGrid(), StaticRefinement()])
    init.extend([AllocateEmissions(), SetTimestepCFL()])

    run: List[Stage] = [Calculations(AddEmissionsFlux()), physics_stage()]
    if numerics.dynamic:
        criterion = PopConcCriterion()
        run.append(RunPeriodically(numerics.mutate_interval_s, MutateGrid(criterion)))
        run.append(RunPeriodically(numerics.mutate_interval_s, SetTimestepCFL()))
    run.append(SteadyStateConvergenceCheck.from_config(cfg))
    if numerics.dynamic:
        run.append(AdjustGridCriteria(criterion))
    return Domain(cfg, mechanism, inputs=inputs, emissions=emissions, init_stages=init, run_stages=run)


def run_steady(
    cfg: Config,
    *,
    inputs: Optional[GridInputs] = None,
    emissions: Optional[Sequence[EmisRecord]] = None,
    mechanism: Optional[Mechanism] = None,
) -> Domain:
    """Run one simulation to steady state and write its results."""

    out_path = check_output_file(Path(cfg.io.outdir) / cfg.io.output_file)
    mechanism = mechanism if mechanism is not None else LinearMechanism()
    if inputs is None:
        check_inputs_exist(cfg)
        inputs = GridInputs.load(cfg)
    if emissions is None:
        emissions = load_emissions(cfg.emissions.files, cfg.emissions.units)
    domain = steady_domain(cfg, inputs, mechanism, emissions).execute()
    domain.info["summary"] = write_results(domain, out_path)
    return domain


def build_grid(
    cfg: Config,
    *,
    inputs: Optional[GridInputs] = None,
    mechanism: Optional[Mechanism] = None,
) -> SavedGrid:
    """Build the statically refined grid and save it to ``variable_grid_data``."""

    mechanism = mechanism if mechanism is not None else LinearMechanism()
    if inputs is None:
        check_inputs_exist(cfg)
        inputs = GridInputs.load(cfg)
    domain = Domain(cfg, mechanism, inputs=inputs, init_stages=[RegularGrid(), StaticRefinement()])
    for stage in domain.init_stages:
        stage.apply(domain)
    arena = domain.require_arena()
    saved = SavedGrid(
        version=GRID_FORMAT_VERSION,
        arena=arena,
        var_grid=cfg.var_grid.model_dump(mode="json"),
        mechanism=mechanism.name,
        meta={"cells_per_layer": arena.layer_counts()},
    )
    if cfg.variable_grid_data is not None:
        save_grid(cfg.variable_grid_data, saved)
    return saved


def run_sr(
    cfg: Config,
    *,
    clients: Optional[Sequence[WorkerClient]] = None,
    node_file: Optional[Path] = None,
    progress: bool = False,
) -> pd.DataFrame:
    """Build the SR matrix for ``cfg`` and write ``sr.output_file``."""

    if cfg.variable_grid_data is None:
        raise ConfigurationError("the SR workflow needs variable_grid_data (a saved grid path)")
    check_output_file(Path(cfg.sr.output_file))
    grid_path = Path(cfg.variable_grid_data)
    if grid_path.exists():
        saved = load_grid(grid_path, var_grid=cfg.var_grid.model_dump(mode="json"))
    else:
        logger.info("No saved grid at %s; building it first", grid_path)
        saved = build_grid(cfg)
    remote_path: Optional[str] = str(grid_path)
    if clients is None:
        hosts = discover_nodes(node_file if node_file is not None else cfg.sr.node_file)
        if hosts:
            clients = [RPCWorkerClient(h, cfg.sr.rpc_port, timeout=cfg.sr.timeout_s) for h in hosts]
        else:
            logger.info("No worker nodes configured; computing SR rows locally")
            clients = [LocalWorkerClient(SRWorker(cfg, arena=saved.arena))]
            remote_path = None
    coordinator = Coordinator(cfg, clients, saved.arena.layer_counts(), grid_path=remote_path)
    return coordinator.build(progress=progress)


def run_predict(cfg: Config, *, output: Optional[Path] = None) -> pd.DataFrame:
    """Predict ground-layer concentrations for the configured emissions from ``sr.output_file``.

    The result goes to ``output`` or, by default, ``io.outdir/io.output_file``.
    """

    if cfg.variable_grid_data is None or not Path(cfg.variable_grid_data).exists():
        raise ConfigurationError("SR prediction needs the saved grid at variable_grid_data; run 'grid' first")
    out_path = check_output_file(Path(output) if output is not None else Path(cfg.io.outdir) / cfg.io.output_file)
    saved = load_grid(cfg.variable_grid_data, var_grid=cfg.var_grid.model_dump(mode="json"))
    matrix = SRMatrix.load(cfg.sr.output_file)
    emissions = load_emissions(cfg.emissions.files, cfg.emissions.units)
    df = predict(matrix, emissions, saved.arena)
    variables = [c for c in df.columns if c not in ("layer", "x0", "y0", "x1", "y1")]
    write_parquet(df, out_path, units={name: "ug m^-3" for name in variables})
    logger.info("Wrote %d predicted rows to %s", len(df), out_path)
    return df


def run_worker(cfg: Config) -> None:
    serve_worker(SRWorker.from_config(cfg), "", cfg.sr.rpc_port)


def _build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", type=Path, required=True, help="Path to YAML configuration")
    common.add_argument(
        "--override",
        action="append",
        nargs="+",
        metavar="PATH=VALUE",
        help="Apply configuration overrides using dotted paths; e.g. --override numerics.dynamic=false",
    )
    common.add_argument(
        "--overrides-file",
        action="append",
        type=Path,
        help="Load overrides from a file (one PATH=VALUE per line).",
    )
    common.add_argument(
        "--quiet",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Suppress INFO logs and Python warnings (defaults to io.quiet).",
    )
    common.add_argument("--progress", action="store_true", help="Show SR chunk progress with ETA.")

    parser = argparse.ArgumentParser(description="Variable-resolution air quality model")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("grid", parents=[common], help="Build and save the statically refined grid")
    sub.add_parser("steady", parents=[common], help="Run to steady state and write results")
    sr = sub.add_parser("sr", parents=[common], help="Build the source-receptor matrix or predict from it")
    sr.add_argument(
        "action",
        nargs="?",
        choices=("build", "predict"),
        default="build",
        help="build the matrix (default) or apply it to the configured emissions",
    )
    sr.add_argument(
        "--node-file",
        type=Path,
        default=None,
        help="Worker host list (one host per line); defaults to sr.node_file or $PBS_NODEFILE.",
    )
    sr.add_argument(
        "--output",
        type=Path,
        default=None,
        help="Prediction output Parquet path; defaults to io.outdir/io.output_file.",
    )
    sub.add_parser("worker", parents=[common], help="Serve SR requests over XML-RPC")
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """Command line entry point."""

    args = _build_parser().parse_args(argv)
    override_list: List[str] = []
    if args.overrides_file:
        for override_path in args.overrides_file:
            override_list.extend(config_utils.read_overrides_file(override_path))
    if args.override:
        for group in args.override:
            override_list.extend(group)
    cfg = load_config(args.config, overrides=override_list)
    quiet = cfg.io.quiet if args.quiet is None else bool(args.quiet)
    config_utils.configure_logging(logging.WARNING if quiet else logging.INFO, suppress_warnings=quiet)
    progress = bool(args.progress or cfg.io.progress)

    if args.command == "grid":
        saved = build_grid(cfg)
        logger.info("Grid cells per layer: %s", saved.arena.layer_counts())
    elif args.command == "steady":
        run_steady(cfg)
    elif args.command == "sr" and args.action == "predict":
        run_predict(cfg, output=args.output)
    elif args.command == "sr":
        df = run_sr(cfg, node_file=args.node_file, progress=progress)
        logger.info("SR matrix has %d rows", len(df))
    else:
        run_worker(cfg)


__all__ = [
    "physics_stage",
    "steady_domain",
    "run_steady",
    "build_grid",
    "run_sr",
    "run_predict",
    "run_worker",
    "main",
]


if __name__ == "__main__":  # pragma: no cover - standard CLI entrypoint
    main()
