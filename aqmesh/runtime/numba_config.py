"""Selection between the compiled and the plain numpy kernels.

``AQMESH_NUMBA_DISABLE`` (or its alias ``AQMESH_DISABLE_NUMBA``) set to a
truthy value routes the time-step kernel through numpy.  The first variable
holding a recognised value wins; unrecognised values are ignored.
"""
from __future__ import annotations

import os
from typing import Mapping, Optional

SWITCH_VARS = ("AQMESH_NUMBA_DISABLE", "AQMESH_DISABLE_NUMBA")

_FLAG_VALUES = {
    "1": True,
    "true": True,
    "yes": True,
    "on": True,
    "enable": True,
    "enabled": True,
    "0": False,
    "false": False,
    "no": False,
    "off": False,
    "disable": False,
    "disabled": False,
}


def numba_disabled_env(env: Optional[Mapping[str, str]] = None) -> bool:
    """True when the environment asks for the numpy kernels."""

    env_map = os.environ if env is None else env
    for key in SWITCH_VARS:
        raw = env_map.get(key)
        if raw is None:
            continue
        flag = _FLAG_VALUES.get(raw.strip().lower())
        if flag is not None:
            return flag
    return False


def kernel_backend(env: Optional[Mapping[str, str]] = None) -> str:
    """``"numpy"`` or ``"numba"``, as recorded in run summaries."""

    return "numpy" if numba_disabled_env(env) else "numba"


__all__ = ["numba_disabled_env", "kernel_backend", "SWITCH_VARS"]
