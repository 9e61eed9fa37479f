from __future__ import annotations

from pydantic import BaseModel, Field


class FinancialDataRequest(BaseModel):
    ticker: str


class CacheStats(BaseModel):
    size: int
    keys: list[str] = Field(default_factory=list)
    pending: list[str] = Field(default_factory=list)
