"""
Health Check Routes
===================

GET /health            quick status for load balancers (503 when unhealthy)
GET /health/detailed   per-component report: admission, breakers, cache
GET /metrics           Prometheus exposition

Keep liveness checks cheap: every check here reads in-process state only and
never calls the upstream.
"""

from fastapi import APIRouter, Response, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from src.application.api.dependencies import BreakerManagerDep, HealthCheckerDep
from src.infrastructure.monitoring.metrics_collector import get_metrics_collector

router = APIRouter(prefix="/health", tags=["Health"])
metrics_router = APIRouter(tags=["Monitoring"])


class HealthResponse(BaseModel):
    """Standard health check response model."""

    status: str  # "healthy", "degraded", "unhealthy"
    timestamp: str
    version: str | None = None
    components: dict | None = None


@router.get("", response_model=HealthResponse)
async def health_check(checker: HealthCheckerDep):
    """Quick health check endpoint for load balancers."""
    health = checker.check_health()
    if health["status"] == "unhealthy":
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=health)
    return health


@router.get("/detailed")
async def detailed_health(checker: HealthCheckerDep):
    """Detailed health report for debugging and monitoring."""
    return checker.detailed_health_report()


@router.post("/circuit-breakers/reset")
async def reset_circuit_breakers(breakers: BreakerManagerDep):
    """Force every circuit breaker back to closed."""
    breakers.reset_all()
    return {"status": "reset", "breakers": breakers.get_all_stats()}


@metrics_router.get("/metrics")
async def prometheus_metrics():
    """Prometheus metrics endpoint."""
    metrics = get_metrics_collector()
    return Response(content=metrics.get_prometheus_metrics(), media_type=metrics.get_content_type())
