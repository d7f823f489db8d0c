"""Distributed source-receptor (SR) matrix build."""
from .coordinator import Coordinator, discover_nodes, partition, read_node_file
from .matrix import Chunk, SRMatrix, SRStore
from .predict import predict
from .protocol import SRRequest, SRResponse, SRRow
from .rpc import CallableClient, LocalWorkerClient, RPCWorkerClient, WorkerClient, make_server, serve_worker
from .worker import SRWorker, unit_emission

__all__ = [
    "Coordinator",
    "discover_nodes",
    "partition",
    "read_node_file",
    "Chunk",
    "SRMatrix",
    "SRStore",
    "predict",
    "SRRequest",
    "SRResponse",
    "SRRow",
    "CallableClient",
    "LocalWorkerClient",
    "RPCWorkerClient",
    "WorkerClient",
    "make_server",
    "serve_worker",
    "SRWorker",
    "unit_emission",
]
