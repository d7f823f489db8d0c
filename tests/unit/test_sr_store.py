import json
from pathlib import Path
from typing import List

import numpy as np
import pytest

from aqmesh.errors import ConfigurationError, InputDataError, SRBuildError
from aqmesh.sr import CallableClient, Chunk, Coordinator, SRMatrix, SRStore
from aqmesh.sr.coordinator import discover_nodes, partition, read_node_file
from aqmesh.sr.protocol import SRRequest, SRResponse, SRRow


def _rows(layer: int, begin: int, end: int) -> List[SRRow]:
    return [
        SRRow(layer=layer, source=s, values={"PrimaryPM25": [float(s), float(layer)], "pSO4": [0.5, float(s)]})
        for s in range(begin, end)
    ]


def _fake_handler(calls: list, fail_on=()):
    """Worker stand-in answering with deterministic rows."""

    def handle(payload: str) -> str:
        request = SRRequest.model_validate_json(payload)
        calls.append((request.layer, request.begin, request.end))
        if (request.layer, request.begin) in fail_on:
            return SRResponse(ok=False, error="boom", id=request.id).model_dump_json()
        rows = _rows(request.layer, request.begin, request.end)
        return SRResponse(rows=rows, id=request.id).model_dump_json()

    return handle


def test_partition_is_contiguous_and_balanced() -> None:
    assert partition(0, 10, 3) == [(0, 4), (4, 7), (7, 10)]
    assert partition(2, 4, 5) == [(2, 3), (3, 4)]
    assert partition(5, 5, 2) == []


def test_store_writes_part_then_marker(tmp_path: Path) -> None:
    store = SRStore(tmp_path / "log")
    chunk = Chunk(0, 0, 3)
    store.write_chunk(chunk, _rows(0, 0, 3))
    assert store.part_path(chunk).exists()
    marker = json.loads(store.marker_path(chunk).read_text())
    assert marker == {"layer": 0, "begin": 0, "end": 3, "rows": 3}
    assert store.completed() == [chunk]
    assert store.completed_rows() == {0: {0, 1, 2}}


def test_store_rejects_wrong_rows(tmp_path: Path) -> None:
    store = SRStore(tmp_path / "log")
    with pytest.raises(InputDataError):
        store.write_chunk(Chunk(0, 0, 3), _rows(0, 0, 2))
    assert store.completed() == []


def test_marker_without_part_is_ignored(tmp_path: Path) -> None:
    store = SRStore(tmp_path / "log")
    chunk = Chunk(1, 0, 2)
    store.write_chunk(chunk, _rows(1, 0, 2))
    store.part_path(chunk).unlink()
    (store.log_dir / "junk.done.json").write_text("{not json")
    assert store.completed() == []


def test_assemble_sorts_rows(tmp_path: Path) -> None:
    store = SRStore(tmp_path / "log")
    store.write_chunk(Chunk(1, 0, 2), _rows(1, 0, 2))
    store.write_chunk(Chunk(0, 2, 4), _rows(0, 2, 4))
    store.write_chunk(Chunk(0, 0, 2), _rows(0, 0, 2))
    df = store.assemble(tmp_path / "sr.parquet")
    keys = list(zip(df["layer"], df["source"], df["variable"]))
    assert keys == sorted(keys)
    assert len(df) == 12
    matrix = SRMatrix.load(tmp_path / "sr.parquet")
    assert matrix.layers == (0, 1)
    assert matrix.variables == ("PrimaryPM25", "pSO4")
    assert list(matrix.sources(0)) == [0, 1, 2, 3]
    arr = matrix.array("PrimaryPM25", 0)
    assert arr.shape == (4, 2)
    assert np.allclose(arr[:, 0], [0.0, 1.0, 2.0, 3.0])
    with pytest.raises(KeyError):
        matrix.array("NOx", 0)


def test_missing_matrix_file(tmp_path: Path) -> None:
    with pytest.raises(InputDataError):
        SRMatrix.load(tmp_path / "absent.parquet")


def test_plan_covers_layers_and_clamps_end(config) -> None:
    clients = [CallableClient(_fake_handler([]), name=f"w{i}") for i in range(2)]
    coord = Coordinator(config, clients, [5, 8, 3], sleep=lambda s: None)
    assert coord.full_plan() == [Chunk(0, 0, 3), Chunk(0, 3, 5), Chunk(1, 0, 3), Chunk(1, 3, 6)]


def test_plan_end_minus_one_means_whole_layer(make_config) -> None:
    cfg = make_config("sr.end=-1", "sr.layers=[2]")
    coord = Coordinator(cfg, [CallableClient(_fake_handler([]))], [5, 8, 3], sleep=lambda s: None)
    assert coord.full_plan() == [Chunk(2, 0, 3)]


def test_plan_rejects_missing_layer(make_config) -> None:
    cfg = make_config("sr.layers=[4]")
    coord = Coordinator(cfg, [CallableClient(_fake_handler([]))], [5, 8, 3], sleep=lambda s: None)
    with pytest.raises(ConfigurationError):
        coord.full_plan()


def test_coordinator_needs_workers(config) -> None:
    with pytest.raises(ConfigurationError):
        Coordinator(config, [], [5])


def test_plan_skips_completed_rows(config) -> None:
    coord = Coordinator(config, [CallableClient(_fake_handler([]))], [10, 10], sleep=lambda s: None)
    coord.store.write_chunk(Chunk(0, 2, 4), _rows(0, 2, 4))
    coord.store.write_chunk(Chunk(1, 0, 6), _rows(1, 0, 6))
    assert coord.plan() == [Chunk(0, 0, 2), Chunk(0, 4, 6)]


def test_retries_with_capped_exponential_backoff(make_config) -> None:
    cfg = make_config(
        "sr.max_attempts=4",
        "sr.backoff_s=1.0",
        "sr.backoff_factor=3.0",
        "sr.backoff_max_s=5.0",
        "sr.layers=[0]",
    )
    attempts = {"n": 0}
    inner = _fake_handler([])

    def flaky(payload: str) -> str:
        attempts["n"] += 1
        if attempts["n"] < 4:
            return SRResponse(ok=False, error="transient").model_dump_json()
        return inner(payload)

    delays: list = []
    coord = Coordinator(cfg, [CallableClient(flaky)], [6], sleep=delays.append)
    assert coord.run() == [Chunk(0, 0, 6)]
    assert delays == [1.0, 3.0, 5.0]


def test_failed_chunk_raises_and_keeps_finished_work(config) -> None:
    calls: list = []
    clients = [CallableClient(_fake_handler(calls, fail_on={(1, 3)}), name=f"w{i}") for i in range(2)]
    coord = Coordinator(config, clients, [6, 6], sleep=lambda s: None)
    with pytest.raises(SRBuildError) as excinfo:
        coord.run()
    assert excinfo.value.failed == [(1, 3, 6)]
    assert calls.count((1, 3, 6)) == config.sr.max_attempts
    assert coord.plan() == [Chunk(1, 3, 6)]


def test_read_node_file_dedupes(tmp_path: Path) -> None:
    path = tmp_path / "nodes"
    path.write_text("n1\nn2\n\nn1\n# comment\nn3\n")
    assert read_node_file(path) == ["n1", "n2", "n3"]
    assert read_node_file(None) == []


def test_discover_nodes_from_environment(tmp_path: Path) -> None:
    path = tmp_path / "pbs_nodes"
    path.write_text("a\nb\n")
    assert discover_nodes(env={"PBS_NODEFILE": str(path)}) == ["a", "b"]
    assert discover_nodes(env={}) == []


def test_unexpected_worker_exception_is_retried(make_config) -> None:
    cfg = make_config("sr.layers=[0]", "sr.max_attempts=3")
    inner = _fake_handler([])
    attempts = {"n": 0}

    def overflowing(payload: str) -> str:
        attempts["n"] += 1
        if attempts["n"] == 1:
            raise FloatingPointError("overflow in kernel")
        return inner(payload)

    coord = Coordinator(cfg, [CallableClient(overflowing)], [6], sleep=lambda s: None)
    assert coord.run() == [Chunk(0, 0, 6)]
    assert attempts["n"] == 2
    assert coord.store.completed_rows() == {0: set(range(6))}


def test_persistent_worker_exception_becomes_build_error(make_config) -> None:
    cfg = make_config("sr.layers=[0]", "sr.max_attempts=2")

    def broken(payload: str) -> str:
        raise IndexError("source index out of range")

    coord = Coordinator(cfg, [CallableClient(broken)], [6], sleep=lambda s: None)
    with pytest.raises(SRBuildError) as excinfo:
        coord.run()
    assert excinfo.value.failed == [(0, 0, 6)]
    assert "IndexError" in str(excinfo.value)


def test_wrong_rows_are_retried_then_reported(make_config) -> None:
    cfg = make_config("sr.layers=[0]", "sr.max_attempts=3")
    calls: list = []

    def short(payload: str) -> str:
        request = SRRequest.model_validate_json(payload)
        calls.append(request.begin)
        rows = _rows(request.layer, request.begin, request.end - 1)
        return SRResponse(rows=rows, id=request.id).model_dump_json()

    coord = Coordinator(cfg, [CallableClient(short)], [6], sleep=lambda s: None)
    with pytest.raises(SRBuildError) as excinfo:
        coord.run()
    assert len(calls) == 3
    assert excinfo.value.failed == [(0, 0, 6)]
    assert coord.store.completed() == []


def test_wrong_rows_once_then_recovers(make_config) -> None:
    cfg = make_config("sr.layers=[0]")
    inner = _fake_handler([])
    attempts = {"n": 0}

    def shuffled(payload: str) -> str:
        attempts["n"] += 1
        if attempts["n"] == 1:
            request = SRRequest.model_validate_json(payload)
            return SRResponse(rows=_rows(request.layer + 1, request.begin, request.end)).model_dump_json()
        return inner(payload)

    coord = Coordinator(cfg, [CallableClient(shuffled)], [6], sleep=lambda s: None)
    assert coord.run() == [Chunk(0, 0, 6)]
    assert attempts["n"] == 2
