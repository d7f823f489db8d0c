"""I/O helper subpackage."""
from . import census, ctmdata, gridstore, writer

__all__ = ["census", "ctmdata", "gridstore", "writer"]
