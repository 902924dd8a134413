"""
Pydantic schemas for the database health endpoint.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class PoolStatsResponse(BaseModel):
    idle: int = Field(..., ge=0)
    leased: int = Field(..., ge=0)
    pending: int = Field(..., ge=0)
    max_size: int = Field(..., ge=1)
    closing: bool
    closed: bool


class CapabilityResponse(BaseModel):
    name: str
    outcome: str
    error: str | None = None


class DatabaseHealthResponse(BaseModel):
    status: str
    server_time: datetime | None = None
    pool: PoolStatsResponse
    capabilities: list[CapabilityResponse] = Field(default_factory=list)
