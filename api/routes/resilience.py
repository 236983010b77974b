"""Administrative endpoints for the resilience core.

Handlers are ``async def`` so they run on the event loop alongside
orchestrated calls and observe a consistent view of circuit, cache and
rate-limit state.
"""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query

from api.deps import get_orchestrator
from api.schemas.resilience import (
    CacheClearResponse,
    CircuitResetResponse,
    ErrorReportResponse,
    StatusResponse,
)
from infrastructure.orchestrator import ResilienceOrchestrator

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/resilience", tags=["resilience"])

Orchestrator = Annotated[ResilienceOrchestrator, Depends(get_orchestrator)]


@router.get("/status", response_model=StatusResponse)
async def status(orchestrator: Orchestrator) -> StatusResponse:
    """Circuit states, cache size, active rate-limit keys and metrics."""
    return StatusResponse.model_validate(orchestrator.status())


@router.get("/errors", response_model=ErrorReportResponse)
async def error_report(orchestrator: Orchestrator) -> ErrorReportResponse:
    """Error breakdown by kind plus circuit and rate-limit rejections."""
    return ErrorReportResponse.model_validate(orchestrator.error_report())


@router.post("/cache/clear", response_model=CacheClearResponse)
async def clear_cache(
    orchestrator: Orchestrator,
    dependency: Annotated[str | None, Query(min_length=1)] = None,
) -> CacheClearResponse:
    """Drop cached results, for one dependency or all of them."""
    cleared = orchestrator.clear_cache(dependency)
    logger.info("admin: cache cleared (%d entries, dependency=%s)", cleared, dependency or "*")
    return CacheClearResponse(cleared=cleared)


@router.post("/circuits/reset", response_model=CircuitResetResponse)
async def reset_circuits(
    orchestrator: Orchestrator,
    dependency: Annotated[str | None, Query(min_length=1)] = None,
) -> CircuitResetResponse:
    """Force circuits back to CLOSED, for one dependency or all of them."""
    reset = orchestrator.reset_circuits(dependency)
    if dependency is not None and not reset:
        raise HTTPException(status_code=404, detail=f"No circuit for dependency {dependency!r}")
    logger.warning("admin: circuits reset %s", reset)
    return CircuitResetResponse(reset=reset)
