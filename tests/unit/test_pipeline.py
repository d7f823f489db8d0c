from typing import List

import numpy as np
import pytest

from aqmesh.convergence import SteadyStateConvergenceCheck
from aqmesh.errors import InputDataError, NumericalError
from aqmesh.grid import CellArena
from aqmesh.physics import LinearMechanism
from aqmesh.physics.kernel import Kernel
from aqmesh.pipeline import Calculations, Domain, RunPeriodically, Stage
from aqmesh.vargrid import RegularGrid, UseGrid


class FixedStep(Stage):
    def __init__(self, dt: float) -> None:
        self.dt = dt

    def apply(self, domain: Domain) -> None:
        domain.dt = self.dt


class Counter(Stage):
    def __init__(self) -> None:
        self.times: List[float] = []

    def reset(self) -> None:
        self.times = []

    def apply(self, domain: Domain) -> None:
        self.times.append(domain.time)


class Recorder(Kernel):
    def __init__(self, tag: str, log: list) -> None:
        self.tag = tag
        self.log = log

    def __call__(self, cell, domain) -> None:
        self.log.append((cell.handle, self.tag, float(cell.cf[0])))
        cell.cf[0] += 1.0


def _tiny_arena() -> CellArena:
    arena = CellArena(1, LinearMechanism().species)
    for i in range(2):
        arena.add(arena.new_cell(layer=0, depth=0, bounds=(i * 10.0, 0.0, (i + 1) * 10.0, 10.0), z0=0.0, dz=1.0))
    return arena


def test_exact_iteration_count(make_config) -> None:
    cfg = make_config("numerics.num_iterations=7")
    counter = Counter()
    domain = Domain(
        cfg,
        LinearMechanism(),
        init_stages=[UseGrid(_tiny_arena()), FixedStep(10.0)],
        run_stages=[counter, SteadyStateConvergenceCheck.from_config(cfg)],
    ).execute()
    assert domain.iteration == 7
    assert len(counter.times) == 7
    assert domain.time == pytest.approx(70.0)


def test_max_iterations_bounds_convergence_mode(make_config) -> None:
    cfg = make_config("numerics.num_iterations=0", "numerics.max_iterations=4")
    domain = Domain(
        cfg,
        LinearMechanism(),
        init_stages=[UseGrid(_tiny_arena()), FixedStep(1.0)],
        run_stages=[Counter()],
    ).execute()
    assert domain.iteration == 4
    assert not domain.done


def test_kernels_run_in_listed_order_per_cell(config) -> None:
    log: list = []
    arena = _tiny_arena()
    domain = Domain(config, LinearMechanism(), init_stages=[UseGrid(arena)])
    domain.init()
    Calculations(Recorder("a", log), Recorder("b", log)).apply(domain)
    handles = domain.arena.order
    assert [(h, t) for h, t, _ in log] == [
        (handles[0], "a"),
        (handles[0], "b"),
        (handles[1], "a"),
        (handles[1], "b"),
    ]
    # the second kernel sees the state left by the first
    assert [v for _, _, v in log] == [0.0, 1.0, 0.0, 1.0]


def test_run_periodically_gates_on_simulated_time(config) -> None:
    inner = Counter()
    stage = RunPeriodically(25.0, inner)
    domain = Domain(config, LinearMechanism(), init_stages=[UseGrid(_tiny_arena()), FixedStep(10.0)], run_stages=[stage])
    domain.init()
    for _ in range(10):
        for s in domain.run_stages:
            s.apply(domain)
        domain.time += domain.dt
    # time seen by the stage: 0, 10, ..., 90; marks at 25, 50, 75
    assert inner.times == [30.0, 50.0, 80.0]
    assert stage.runs == 3
    assert stage.next_run == pytest.approx(100.0)


def test_run_periodically_skips_missed_marks(config) -> None:
    inner = Counter()
    stage = RunPeriodically(10.0, inner)
    domain = Domain(config, LinearMechanism())
    domain.time = 35.0
    stage.apply(domain)
    assert inner.times == [35.0]
    assert stage.next_run == pytest.approx(40.0)
    stage.reset()
    assert stage.next_run == 10.0 and stage.runs == 0


def test_run_periodically_rejects_bad_interval() -> None:
    with pytest.raises(ValueError):
        RunPeriodically(0.0, Counter())


def test_run_without_timestep_is_fatal(config) -> None:
    domain = Domain(config, LinearMechanism(), init_stages=[UseGrid(_tiny_arena())], run_stages=[Counter()])
    with pytest.raises(NumericalError, match="time step"):
        domain.execute()


def test_missing_grid_stage_is_reported(config) -> None:
    with pytest.raises(NumericalError, match="grid"):
        Domain(config, LinearMechanism()).init()


def test_regular_grid_stage_needs_inputs(config) -> None:
    domain = Domain(config, LinearMechanism(), init_stages=[RegularGrid()])
    with pytest.raises(InputDataError, match="inputs"):
        domain.init()


def test_use_grid_copies_state(config) -> None:
    arena = _tiny_arena()
    domain = Domain(config, LinearMechanism(), init_stages=[UseGrid(arena)])
    domain.init()
    next(iter(domain.arena)).cf[:] = 5.0
    assert np.all(next(iter(arena)).cf == 0.0)
