"""
Route definitions for the operational request queue endpoints.

- ``GET /admin/queue-status`` returns the queue status report: occupancy,
  cumulative metrics, utilisation, process memory and alerts.
- ``POST /admin/queue-status`` resets the cumulative metrics.

Both require the administrator bearer token.  Responses are never cached.
"""

import typing

import fastapi
import fastapi.responses
import structlog

import renderlab.authorization
import renderlab.dependencies
import renderlab.models
import renderlab.queue_monitoring

logger = structlog.get_logger()

queue_status_router = fastapi.APIRouter(
    prefix="/admin",
    tags=["Operations"],
    dependencies=[fastapi.Depends(renderlab.authorization.require_administrator_token)],
    responses={
        401: {
            "description": (
                "Unauthorized — the administrator bearer token is missing or "
                "wrong, or no administrator key is configured (``unauthorized``)."
            ),
            "model": renderlab.models.ErrorResponse,
        },
    },
)

_QUEUE_STATUS_CACHE_SUPPRESSION_HEADERS: dict[str, str] = {
    "Cache-Control": "no-store, no-cache",
    "Pragma": "no-cache",
}


@queue_status_router.get(
    "/queue-status",
    response_model=renderlab.models.QueueStatusReport,
    summary="Request queue status",
    description=(
        "Returns current queue occupancy, cumulative metrics since start or "
        "last reset, utilisation percentages, process memory usage and any "
        "threshold alerts."
    ),
)
async def get_queue_status(
    queue_monitor: typing.Annotated[
        renderlab.queue_monitoring.QueueMonitor,
        fastapi.Depends(renderlab.dependencies.get_queue_monitor),
    ],
) -> fastapi.responses.JSONResponse:
    queue_status_report = queue_monitor.build_report()

    if queue_status_report.alerts != [renderlab.queue_monitoring.ALL_SYSTEMS_NORMAL_ALERT]:
        logger.warning("queue_status_alerts_raised", alerts=queue_status_report.alerts)

    return fastapi.responses.JSONResponse(
        content=queue_status_report.model_dump(),
        headers=_QUEUE_STATUS_CACHE_SUPPRESSION_HEADERS,
    )


@queue_status_router.post(
    "/queue-status",
    response_model=renderlab.models.QueueMetricsResetResponse,
    summary="Reset request queue metrics",
    description=(
        "Sets every cumulative metric back to zero. Current occupancy is "
        "unaffected; in-flight and waiting requests continue normally."
    ),
)
async def reset_queue_metrics(
    queue_monitor: typing.Annotated[
        renderlab.queue_monitoring.QueueMonitor,
        fastapi.Depends(renderlab.dependencies.get_queue_monitor),
    ],
) -> fastapi.responses.JSONResponse:
    queue_monitor.reset_metrics()

    return fastapi.responses.JSONResponse(
        content=renderlab.models.QueueMetricsResetResponse(
            success=True,
            message="Queue metrics reset",
        ).model_dump(),
        headers=_QUEUE_STATUS_CACHE_SUPPRESSION_HEADERS,
    )
