"""Request/response envelopes exchanged between the SR coordinator and workers.

Envelopes travel as JSON strings so the transport (in-process call or
XML-RPC) only ever carries one text argument and one text result.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class SRRequest(BaseModel):
    """One chunk of SR rows: sources ``[begin, end)`` of ``layer``."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    layer: int = Field(ge=0)
    begin: int = Field(ge=0)
    end: int
    config: Dict[str, Any] = Field(default_factory=dict)
    grid_path: Optional[str] = None
    id: Optional[str] = None

    @model_validator(mode="after")
    def _check_range(self) -> "SRRequest":
        if self.end <= self.begin:
            raise ValueError(f"empty row range [{self.begin}, {self.end})")
        return self


class SRRow(BaseModel):
    """Receptor responses of one source row, per output variable."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    layer: int
    source: int
    values: Dict[str, List[float]]


class SRResponse(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    ok: bool = True
    rows: List[SRRow] = Field(default_factory=list)
    error: Optional[str] = None
    worker: Optional[str] = None
    id: Optional[str] = None


__all__ = ["SRRequest", "SRRow", "SRResponse"]
