"""
Database health endpoint.
"""

from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Request

from . import schemas

router = APIRouter()


@router.get("/health/db", response_model=schemas.DatabaseHealthResponse)
async def database_health(request: Request) -> schemas.DatabaseHealthResponse:
    pool = request.app.state.pool
    report = getattr(request.app.state, "bootstrap_report", None)

    stats = pool.stats()
    status = "closed" if stats.closing else "ok"
    if status == "ok" and report is not None and report.missing:
        status = "degraded"

    return schemas.DatabaseHealthResponse(
        status=status,
        server_time=report.server_time if report is not None else None,
        pool=schemas.PoolStatsResponse(**asdict(stats)),
        capabilities=[
            schemas.CapabilityResponse(name=c.name, outcome=c.outcome.value, error=c.error)
            for c in (report.capabilities if report is not None else [])
        ],
    )
