"""SR build coordinator.

For every configured layer the source range ``[begin, end)`` (``end = -1``
meaning the layer's last cell) is cut into one contiguous chunk per worker.
Chunks already recorded as complete in the log directory are skipped, and
chunks that are only partly complete keep just their missing sub-ranges.
Chunks are dispatched concurrently, at most one per idle worker.  A failed
attempt (transport error, timeout, worker-side failure or a response
holding the wrong rows) is retried on the
next idle worker after an exponential backoff::

    delay_k = min(backoff_s * backoff_factor ** (k - 1), backoff_max_s)

for at most ``max_attempts`` attempts.  Finished chunks are written to the
log directory immediately, so a build that ends in :class:`SRBuildError`
keeps its completed work for the next run.
"""
from __future__ import annotations

import concurrent.futures
import logging
import os
import queue
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import pandas as pd

from ..errors import ConfigurationError, InputDataError, SRBuildError, WorkerError
from ..runtime.progress import ProgressReporter
from ..schema import Config
from .matrix import Chunk, SRStore
from .protocol import SRRequest
from .rpc import WorkerClient

logger = logging.getLogger(__name__)


def read_node_file(path: Optional[Path]) -> List[str]:
    """Unique host names from a PBS-style node file, in first-seen order."""

    if path is None:
        return []
    hosts: List[str] = []
    with Path(path).open("r", encoding="utf-8") as fh:
        for raw in fh:
            host = raw.strip()
            if host and not host.startswith("#") and host not in hosts:
                hosts.append(host)
    return hosts


def discover_nodes(node_file: Optional[Path] = None, env: Optional[Dict[str, str]] = None) -> List[str]:
    """Worker hosts from ``node_file`` or ``$PBS_NODEFILE``; empty means run locally."""

    if node_file is None:
        env_map = os.environ if env is None else env
        value = env_map.get("PBS_NODEFILE")
        node_file = Path(value) if value else None
    return read_node_file(node_file)


def partition(begin: int, end: int, parts: int) -> List[Tuple[int, int]]:
    """Split ``[begin, end)`` into at most ``parts`` contiguous, near-equal ranges."""

    total = end - begin
    if total <= 0:
        return []
    parts = max(1, min(parts, total))
    size, extra = divmod(total, parts)
    out = []
    start = begin
    for i in range(parts):
        stop = start + size + (1 if i < extra else 0)
        out.append((start, stop))
        start = stop
    return out


def _missing_runs(chunk: Chunk, done: set) -> List[Chunk]:
    runs: List[Chunk] = []
    start = None
    for row in chunk.rows():
        if row in done:
            if start is not None:
                runs.append(Chunk(chunk.layer, start, row))
                start = None
        elif start is None:
            start = row
    if start is not None:
        runs.append(Chunk(chunk.layer, start, chunk.end))
    return runs


class Coordinator:
    """Plans, dispatches and records an SR build."""

    def __init__(
        self,
        config: Config,
        clients: Sequence[WorkerClient],
        layer_sizes: Sequence[int],
        *,
        grid_path: Optional[str] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if not clients:
            raise ConfigurationError("the SR coordinator needs at least one worker")
        self.config = config
        self.clients = list(clients)
        self.layer_sizes = list(layer_sizes)
        self.grid_path = grid_path
        self.store = SRStore(config.sr.log_dir)
        self._sleep = sleep
        self._idle: "queue.Queue[WorkerClient]" = queue.Queue()
        for client in self.clients:
            self._idle.put(client)
        self._payload = config.model_dump(mode="json")

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------
    def full_plan(self) -> List[Chunk]:
        """Every chunk of the build, ignoring completed work."""

        sr = self.config.sr
        plan: List[Chunk] = []
        for layer in sr.layers:
            if layer >= len(self.layer_sizes):
                raise ConfigurationError(
                    f"sr.layers includes {layer} but the grid has {len(self.layer_sizes)} layers"
                )
            size = self.layer_sizes[layer]
            end = size if sr.end == -1 else min(sr.end, size)
            for b, e in partition(sr.begin, end, len(self.clients)):
                plan.append(Chunk(layer, b, e))
        return plan

    def plan(self) -> List[Chunk]:
        """Chunks still to compute."""

        done = self.store.completed_rows()
        todo: List[Chunk] = []
        for chunk in self.full_plan():
            todo.extend(_missing_runs(chunk, done.get(chunk.layer, set())))
        return todo

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------
    def _attempt_delay(self, attempt: int) -> float:
        sr = self.config.sr
        return min(sr.backoff_s * sr.backoff_factor ** (attempt - 1), sr.backoff_max_s)

    def _store(self, chunk: Chunk, rows, client: WorkerClient) -> None:
        try:
            self.store.write_chunk(chunk, rows)
        except InputDataError as exc:
            raise WorkerError(f"{client.name} answered {chunk.key} with the wrong rows: {exc}") from exc

    def run_chunk(self, chunk: Chunk) -> Chunk:
        """Compute and store one chunk, retrying on :class:`WorkerError`."""

        request = SRRequest(
            layer=chunk.layer,
            begin=chunk.begin,
            end=chunk.end,
            config=self._payload,
            grid_path=self.grid_path,
            id=chunk.key,
        )
        max_attempts = self.config.sr.max_attempts
        attempt = 0
        while True:
            attempt += 1
            client = self._idle.get()
            try:
                logger.info("dispatching %s to %s (attempt %d)", chunk.key, client.name, attempt)
                response = client.calculate(request)
                self._store(chunk, response.rows, client)
            except WorkerError as exc:
                logger.warning("%s failed on %s (attempt %d/%d): %s", chunk.key, client.name, attempt, max_attempts, exc)
                if attempt >= max_attempts:
                    raise
            else:
                logger.info("completed %s on %s", chunk.key, client.name)
                return chunk
            finally:
                self._idle.put(client)
            self._sleep(self._attempt_delay(attempt))

    def run(self, *, progress: bool = False) -> List[Chunk]:
        """Compute every outstanding chunk; returns the chunks computed now.

        Raises
        ------
        SRBuildError
            If any chunk still fails after ``sr.max_attempts`` attempts.
        """

        todo = self.plan()
        skipped = len(self.full_plan()) - len(todo)
        logger.info(
            "SR build: %d chunks to compute on %d workers (%d already complete)",
            len(todo),
            len(self.clients),
            max(skipped, 0),
        )
        reporter = ProgressReporter(len(todo), label="chunks", enabled=progress)
        finished: List[Chunk] = []
        failed: List[Tuple[int, int, int]] = []
        errors: List[str] = []
        with concurrent.futures.ThreadPoolExecutor(max_workers=len(self.clients)) as pool:
            futures = {pool.submit(self.run_chunk, chunk): chunk for chunk in todo}
            for future in concurrent.futures.as_completed(futures):
                chunk = futures[future]
                try:
                    future.result()
                except WorkerError as exc:
                    failed.append((chunk.layer, chunk.begin, chunk.end))
                    errors.append(f"{chunk.key}: {exc}")
                    logger.error("giving up on %s: %s", chunk.key, exc)
                else:
                    finished.append(chunk)
                reporter.advance()
        if failed:
            raise SRBuildError(
                f"{len(failed)} SR chunks failed after {self.config.sr.max_attempts} attempts: "
                + "; ".join(sorted(errors)),
                failed=sorted(failed),
            )
        return sorted(finished)

    def build(self, *, progress: bool = False) -> pd.DataFrame:
        """Run outstanding chunks and assemble ``sr.output_file``."""

        self.run(progress=progress)
        return self.store.assemble(self.config.sr.output_file)


__all__ = [
    "Coordinator",
    "partition",
    "read_node_file",
    "discover_nodes",
]
