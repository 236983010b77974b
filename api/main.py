from typing import Annotated

from fastapi import Depends, FastAPI
from fastapi.responses import Response

from api.deps import get_orchestrator
from api.routes.resilience import router as resilience_router
from api.schemas.resilience import HealthResponse
from infrastructure.metrics import get_metrics_response
from infrastructure.orchestrator import ResilienceOrchestrator

app = FastAPI(title="Clinical Resilience Core")

app.include_router(resilience_router)


@app.get("/health", response_model=HealthResponse)
async def health(
    orchestrator: Annotated[ResilienceOrchestrator, Depends(get_orchestrator)],
) -> HealthResponse:
    """Liveness check with the resilience verdict.

    Always 200 while the process is up; ``resilience`` is ``DEGRADED`` when
    any circuit is open or half-open.
    """
    verdict = orchestrator.health()
    return HealthResponse(resilience=verdict["status"], issues=verdict["issues"])


@app.get("/metrics")
def metrics() -> Response:
    """Prometheus metrics endpoint.

    Returns metrics in Prometheus text exposition format.
    """
    body, content_type = get_metrics_response()
    return Response(content=body, media_type=content_type)
