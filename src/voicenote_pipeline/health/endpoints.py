"""Health check endpoint factory."""

import inspect
from collections.abc import Awaitable, Callable

import structlog
from fastapi import APIRouter
from fastapi.responses import JSONResponse

from voicenote_pipeline.models import HealthStatus
from voicenote_pipeline.queue import JobQueue

logger = structlog.get_logger()

CheckResult = bool | HealthStatus
HealthCheck = Callable[[], CheckResult | Awaitable[CheckResult]]


def queue_check(queue: JobQueue) -> HealthCheck:
    """Health check that pings the queue broker."""

    async def check() -> HealthStatus:
        return await queue.health_check()

    return check


async def _run_check(check_fn: HealthCheck) -> dict:
    outcome = check_fn()
    if inspect.isawaitable(outcome):
        outcome = await outcome
    if isinstance(outcome, HealthStatus):
        entry: dict = {"status": "ok" if outcome.ok else "failing"}
        if outcome.latency_ms is not None:
            entry["latency_ms"] = outcome.latency_ms
        if outcome.error:
            entry["error"] = outcome.error
        return entry
    return {"status": "ok" if outcome else "failing"}


def create_health_router(
    service_name: str,
    version: str,
    checks: dict[str, HealthCheck],
) -> APIRouter:
    """Return a router with a ``/health`` endpoint that runs all checks.

    Args:
        service_name: Human-readable service identifier included in the response.
        version: Semantic version string included in the response.
        checks: Mapping of check name to a callable, sync or async, that
            returns ``True`` or an ok ``HealthStatus`` when the dependency is
            healthy. If any check fails or raises, the overall status is
            ``unhealthy`` and the endpoint returns HTTP 503.

    Returns:
        A FastAPI ``APIRouter`` with a single ``GET /health`` route.
    """
    router = APIRouter()

    @router.get("/health")
    async def health() -> JSONResponse:
        results: dict[str, dict] = {}
        all_ok = True
        for name, check_fn in checks.items():
            try:
                entry = await _run_check(check_fn)
            except Exception:
                logger.warning("health_check_failed", check=name, exc_info=True)
                entry = {"status": "failing"}
            results[name] = entry
            if entry["status"] != "ok":
                all_ok = False

        status = "healthy" if all_ok else "unhealthy"
        status_code = 200 if all_ok else 503
        return JSONResponse(
            status_code=status_code,
            content={
                "status": status,
                "service": service_name,
                "version": version,
                "checks": results,
            },
        )

    return router
