"""
Route definitions for the liveness and readiness probes.

- ``GET /health`` returns 200 whenever the process is running.

- ``GET /health/ready`` reports whether a new image generation request
  could succeed right now: the provider token must be configured and the
  request queue must still be able to accept work.  A not-ready response
  is HTTP 503 with a ``Retry-After`` header.

Both probes send ``Cache-Control: no-store, no-cache`` and
``Pragma: no-cache`` so that proxies never serve a stale status.
"""

import fastapi
import fastapi.responses

health_router = fastapi.APIRouter(tags=["Health"])

_INFRASTRUCTURE_CACHE_SUPPRESSION_HEADERS: dict[str, str] = {
    "Cache-Control": "no-store, no-cache",
    "Pragma": "no-cache",
}


@health_router.get(
    "/health",
    summary="Liveness check",
    description="Returns a simple healthy status when the service is running.",
    status_code=200,
    responses={
        200: {
            "description": "The service process is running and accepting requests.",
            "content": {"application/json": {"example": {"status": "healthy"}}},
        },
    },
)
async def health_check() -> fastapi.responses.JSONResponse:
    return fastapi.responses.JSONResponse(
        content={"status": "healthy"},
        headers=_INFRASTRUCTURE_CACHE_SUPPRESSION_HEADERS,
    )


@health_router.get(
    "/health/ready",
    summary="Readiness check",
    description=(
        "Checks that the image generation provider is configured and that "
        "the request queue can accept new work. Returns HTTP 503 with a "
        "Retry-After header otherwise."
    ),
    status_code=200,
    responses={
        200: {
            "description": "The service can accept image generation requests.",
            "content": {
                "application/json": {
                    "example": {
                        "status": "ready",
                        "checks": {"image_generation": "ok", "request_queue": "ok"},
                    },
                },
            },
        },
        503: {
            "description": (
                "Service Unavailable — the provider is not configured or the "
                "request queue is saturated. The ``Retry-After`` header "
                "indicates how long to wait before retrying."
            ),
            "content": {
                "application/json": {
                    "example": {
                        "status": "not_ready",
                        "checks": {"image_generation": "ok", "request_queue": "saturated"},
                    },
                },
            },
        },
    },
)
async def readiness_check(request: fastapi.Request) -> fastapi.responses.JSONResponse:
    """
    Aggregate the provider and queue checks into one readiness verdict.

    The queue counts as saturated when every execution slot is busy and
    the waiting list is full, i.e. exactly when the next submission would
    be rejected with ``queue_full``.
    """
    checks: dict[str, str] = {}

    image_generation_service = getattr(request.app.state, "image_generation_service", None)
    if image_generation_service is not None and image_generation_service.check_health():
        checks["image_generation"] = "ok"
    else:
        checks["image_generation"] = "unavailable"

    request_queue = getattr(request.app.state, "request_queue", None)
    if request_queue is None:
        checks["request_queue"] = "unavailable"
    elif (
        request_queue.processing_count >= request_queue.maximum_concurrent
        and request_queue.queued_count >= request_queue.maximum_queue_size
    ):
        checks["request_queue"] = "saturated"
    else:
        checks["request_queue"] = "ok"

    all_checks_passed = all(check_status == "ok" for check_status in checks.values())

    response_headers: dict[str, str] = dict(_INFRASTRUCTURE_CACHE_SUPPRESSION_HEADERS)
    if not all_checks_passed:
        retry_after_not_ready_seconds = getattr(request.app.state, "retry_after_not_ready_seconds", 10)
        response_headers["Retry-After"] = str(retry_after_not_ready_seconds)

    return fastapi.responses.JSONResponse(
        content={
            "status": "ready" if all_checks_passed else "not_ready",
            "checks": checks,
        },
        status_code=200 if all_checks_passed else 503,
        headers=response_headers,
    )
