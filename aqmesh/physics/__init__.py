"""Per-cell physics kernels and the chemical-mechanism contract."""
from . import chemistry, deposition, kernel, mechanism, transport
from .chemistry import Chemistry, LinearMechanism
from .deposition import DryDeposition, WetDeposition
from .kernel import Kernel
from .mechanism import Mechanism
from .transport import AddEmissionsFlux, MeanderMixing, Mixing, UpwindAdvection

__all__ = [
    "chemistry",
    "deposition",
    "kernel",
    "mechanism",
    "transport",
    "Chemistry",
    "LinearMechanism",
    "DryDeposition",
    "WetDeposition",
    "Kernel",
    "Mechanism",
    "AddEmissionsFlux",
    "MeanderMixing",
    "Mixing",
    "UpwindAdvection",
]
