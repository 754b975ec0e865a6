"""
Operational monitoring for the request queue.

The ``QueueMonitor`` turns a ``RequestQueue`` status snapshot into the
report served by ``GET /admin/queue-status``: current occupancy, the
cumulative metrics, utilisation percentages, a memory snapshot of the
host process, and a list of human-readable alerts.

Alerts
------
An alert is raised for each threshold that is strictly exceeded:

- concurrency utilisation above ``concurrent_alert_percent`` (default 80),
- waiting-list utilisation above ``queue_alert_percent`` (default 50),
- resident set size above ``memory_alert_megabytes`` (default 400).

When nothing is exceeded the list holds the single entry
``"All systems normal"`` so dashboards always have something to show.

The memory figures come from ``psutil`` and describe the whole process,
not the queue.
"""

import collections.abc
import dataclasses
import datetime
import math

import psutil

import renderlab.models
import renderlab.request_queue

ALL_SYSTEMS_NORMAL_ALERT = "All systems normal"

_BYTES_PER_MEGABYTE = 1024 * 1024


@dataclasses.dataclass(frozen=True)
class MonitoringThresholds:
    concurrent_alert_percent: int = 80
    queue_alert_percent: int = 50
    memory_alert_megabytes: int = 400


def capture_process_memory_usage() -> renderlab.models.MemoryUsage:
    """Read the resident and virtual memory size of the current process."""
    memory_information = psutil.Process().memory_info()
    return renderlab.models.MemoryUsage(
        resident_set_size_megabytes=round(memory_information.rss / _BYTES_PER_MEGABYTE),
        virtual_memory_size_megabytes=round(memory_information.vms / _BYTES_PER_MEGABYTE),
    )


def compute_utilisation_percent(current: int, maximum: int) -> int:
    """
    Return ``current / maximum`` as a whole percentage, rounding halves up.

    A zero ``maximum`` (a queue configured without a waiting list) always
    reports 0 %, since there is no capacity to utilise.
    """
    if maximum <= 0:
        return 0
    return math.floor(current * 100 / maximum + 0.5)


class QueueMonitor:
    """
    Builds status reports for one ``RequestQueue`` and resets its metrics.

    The memory probe is injectable so tests can simulate a process that
    is over the memory threshold.
    """

    def __init__(
        self,
        request_queue: renderlab.request_queue.RequestQueue,
        thresholds: MonitoringThresholds | None = None,
        memory_probe: collections.abc.Callable[[], renderlab.models.MemoryUsage] = capture_process_memory_usage,
    ) -> None:
        self._request_queue = request_queue
        self._thresholds = thresholds or MonitoringThresholds()
        self._memory_probe = memory_probe

    @property
    def thresholds(self) -> MonitoringThresholds:
        return self._thresholds

    def build_report(self) -> renderlab.models.QueueStatusReport:
        """Return the full status report for the monitored queue."""
        queue_status = self._request_queue.get_status()
        memory_usage = self._memory_probe()

        concurrent_percent = compute_utilisation_percent(
            queue_status.processing,
            queue_status.maximum_concurrent,
        )
        queue_percent = compute_utilisation_percent(
            queue_status.queued,
            queue_status.maximum_queue_size,
        )

        alerts: list[str] = []
        if concurrent_percent > self._thresholds.concurrent_alert_percent:
            alerts.append(f"High concurrent load (>{self._thresholds.concurrent_alert_percent}%)")
        if queue_percent > self._thresholds.queue_alert_percent:
            alerts.append(f"Queue is filling up (>{self._thresholds.queue_alert_percent}%)")
        if memory_usage.resident_set_size_megabytes > self._thresholds.memory_alert_megabytes:
            alerts.append(f"High memory usage (>{self._thresholds.memory_alert_megabytes}MB)")

        return renderlab.models.QueueStatusReport(
            timestamp=format_current_utc_timestamp(),
            queue=renderlab.models.QueueOccupancy(
                processing=queue_status.processing,
                queued=queue_status.queued,
                maximum_concurrent=queue_status.maximum_concurrent,
                maximum_queue_size=queue_status.maximum_queue_size,
                metrics=renderlab.models.QueueMetricsSnapshot(
                    **dataclasses.asdict(queue_status.metrics),
                ),
            ),
            memory=memory_usage,
            capacity_utilization=renderlab.models.CapacityUtilization(
                concurrent_percent=concurrent_percent,
                queue_percent=queue_percent,
                concurrent=f"{queue_status.processing}/{queue_status.maximum_concurrent} ({concurrent_percent}%)",
                queue=f"{queue_status.queued}/{queue_status.maximum_queue_size} ({queue_percent}%)",
            ),
            alerts=alerts or [ALL_SYSTEMS_NORMAL_ALERT],
        )

    def reset_metrics(self) -> None:
        self._request_queue.reset_metrics()


def format_current_utc_timestamp() -> str:
    """
    Return the current UTC time as an ISO 8601 string with microsecond
    precision and a ``Z`` suffix, e.g. ``"2026-10-19T14:32:10.123456Z"``.
    """
    return datetime.datetime.now(datetime.UTC).strftime("%Y-%m-%dT%H:%M:%S.%fZ")
