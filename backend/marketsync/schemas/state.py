from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict

from marketsync.errors import ErrorKind


class LoadingState(BaseModel):
    model_config = ConfigDict(frozen=True)

    is_loading: bool = False
    error: str | None = None
    error_kind: ErrorKind | None = None
    retry_after_ms: int | None = None
    retry_count: int = 0


class RateLimitDecision(BaseModel):
    allowed: bool
    remaining: int
    retry_after_ms: int = 0
    reset_at_ms: int
    backend: Literal["redis", "memory"]
