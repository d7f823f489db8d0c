"""Worker transports: in-process calls and blocking XML-RPC.

The worker registers a single method, ``Worker.Calculate``, that takes and
returns a JSON envelope string.  Clients turn every transport problem
(refused connection, timeout, protocol error), every exception escaping
an in-process handler and every ``ok=False`` response into
:class:`~aqmesh.errors.WorkerError`, which the coordinator treats as
retryable.
"""
from __future__ import annotations

import http.client
import logging
import socket
import xmlrpc.client
from typing import Callable, Optional
from xmlrpc.server import SimpleXMLRPCRequestHandler, SimpleXMLRPCServer

from pydantic import ValidationError

from ..errors import WorkerError
from .protocol import SRRequest, SRResponse
from .worker import SRWorker

logger = logging.getLogger(__name__)

METHOD = "Worker.Calculate"


class WorkerClient:
    """Request/response transport to one worker."""

    name = "worker"

    def request(self, payload: str) -> str:  # pragma: no cover - interface
        raise NotImplementedError

    def calculate(self, request: SRRequest) -> SRResponse:
        raw = self.request(request.model_dump_json())
        try:
            response = SRResponse.model_validate_json(raw)
        except ValidationError as exc:
            raise WorkerError(f"{self.name} returned a malformed response: {exc}") from exc
        if not response.ok:
            raise WorkerError(f"{self.name} failed: {response.error}")
        return response

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r})"


class CallableClient(WorkerClient):
    """Client backed by a callable ``handler(payload) -> payload``."""

    def __init__(self, handler: Callable[[str], str], name: str = "callable") -> None:
        self._handler = handler
        self.name = name

    def request(self, payload: str) -> str:
        try:
            return self._handler(payload)
        except WorkerError:
            raise
        except Exception as exc:
            raise WorkerError(f"{self.name} raised {type(exc).__name__}: {exc}") from exc


class LocalWorkerClient(CallableClient):
    """Client calling an :class:`SRWorker` in the current process."""

    def __init__(self, worker: SRWorker) -> None:
        super().__init__(worker.handle, name=f"local:{worker.name}")
        self.worker = worker


class _TimeoutTransport(xmlrpc.client.Transport):
    def __init__(self, timeout: float) -> None:
        super().__init__()
        self._timeout = timeout

    def make_connection(self, host):
        conn = super().make_connection(host)
        conn.timeout = self._timeout
        return conn


class RPCWorkerClient(WorkerClient):
    """Client for a worker served with :func:`serve_worker` on ``host:port``."""

    def __init__(self, host: str, port: int, *, timeout: float = 6.0 * 3600.0) -> None:
        self.host = host
        self.port = int(port)
        self.timeout = float(timeout)
        self.name = f"{host}:{self.port}"

    def _proxy(self) -> xmlrpc.client.ServerProxy:
        return xmlrpc.client.ServerProxy(
            f"http://{self.host}:{self.port}/RPC2",
            transport=_TimeoutTransport(self.timeout),
            allow_none=True,
        )

    def request(self, payload: str) -> str:
        try:
            with self._proxy() as proxy:
                return proxy.Worker.Calculate(payload)
        except socket.timeout as exc:
            raise WorkerError(f"{self.name} timed out after {self.timeout:g} s") from exc
        except (OSError, xmlrpc.client.Error, http.client.HTTPException) as exc:
            raise WorkerError(f"{self.name} unreachable: {exc}") from exc


class _RequestHandler(SimpleXMLRPCRequestHandler):
    rpc_paths = ("/RPC2",)


def make_server(worker: SRWorker, host: str = "", port: int = 6060) -> SimpleXMLRPCServer:
    """XML-RPC server exposing ``worker`` (``port=0`` picks a free port)."""

    server = SimpleXMLRPCServer(
        (host, port),
        requestHandler=_RequestHandler,
        allow_none=True,
        logRequests=False,
    )
    server.register_function(worker.handle, METHOD)
    server.register_function(lambda: worker.name, "Worker.Ping")
    return server


def serve_worker(worker: SRWorker, host: str = "", port: int = 6060, *, server: Optional[SimpleXMLRPCServer] = None) -> None:
    """Serve ``worker`` until interrupted."""

    server = server if server is not None else make_server(worker, host, port)
    logger.info("SR worker %s listening on %s:%d", worker.name, *server.server_address[:2])
    with server:
        try:
            server.serve_forever()
        except KeyboardInterrupt:
            logger.info("SR worker %s shutting down", worker.name)


__all__ = [
    "WorkerClient",
    "CallableClient",
    "LocalWorkerClient",
    "RPCWorkerClient",
    "make_server",
    "serve_worker",
    "METHOD",
]
