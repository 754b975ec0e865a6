"""Tests for renderlab/queue_monitoring.py — status reports and alerts."""

import asyncio
import re

import pytest

import renderlab.models
import renderlab.queue_monitoring
import renderlab.request_queue


def _memory_probe_returning(resident_megabytes: int):
    def probe() -> renderlab.models.MemoryUsage:
        return renderlab.models.MemoryUsage(
            resident_set_size_megabytes=resident_megabytes,
            virtual_memory_size_megabytes=resident_megabytes * 2,
        )

    return probe


async def _fill_queue(request_queue, running: int, waiting: int, release_signal: asyncio.Event) -> list[asyncio.Task]:
    async def blocking_work() -> None:
        await release_signal.wait()

    tasks = [asyncio.create_task(request_queue.submit(blocking_work)) for _ in range(running + waiting)]
    for _ in range(5):
        await asyncio.sleep(0)
    return tasks


class TestComputeUtilisationPercent:

    @pytest.mark.parametrize(
        ("current", "maximum", "expected"),
        [
            (0, 100, 0),
            (42, 100, 42),
            (1, 3, 33),
            (2, 3, 67),
            (1, 8, 13),
            (10, 10, 100),
        ],
    )
    def test_rounds_half_up(self, current, maximum, expected):
        assert renderlab.queue_monitoring.compute_utilisation_percent(current, maximum) == expected

    def test_zero_maximum_reports_zero(self):
        assert renderlab.queue_monitoring.compute_utilisation_percent(0, 0) == 0


class TestCaptureProcessMemoryUsage:

    def test_reports_positive_resident_size(self):
        memory_usage = renderlab.queue_monitoring.capture_process_memory_usage()
        assert memory_usage.resident_set_size_megabytes > 0
        assert memory_usage.virtual_memory_size_megabytes >= memory_usage.resident_set_size_megabytes


class TestQueueMonitorBuildReport:

    def test_idle_queue_reports_all_systems_normal(self):
        request_queue = renderlab.request_queue.RequestQueue(maximum_concurrent=100, maximum_queue_size=500)
        monitor = renderlab.queue_monitoring.QueueMonitor(request_queue, memory_probe=_memory_probe_returning(50))

        report = monitor.build_report()

        assert report.alerts == ["All systems normal"]
        assert report.queue.processing == 0
        assert report.queue.queued == 0
        assert report.queue.maximum_concurrent == 100
        assert report.queue.maximum_queue_size == 500
        assert report.capacity_utilization.concurrent == "0/100 (0%)"
        assert report.capacity_utilization.queue == "0/500 (0%)"
        assert report.memory.resident_set_size_megabytes == 50
        assert re.fullmatch(r"\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\.\d{6}Z", report.timestamp)

    async def test_busy_queue_raises_load_and_backlog_alerts(self):
        """
        With 9 of 10 slots busy and 3 of 4 waiting places taken, both the
        concurrency (90% > 80%) and backlog (75% > 50%) alerts fire.
        """
        request_queue = renderlab.request_queue.RequestQueue(maximum_concurrent=10, maximum_queue_size=4)
        monitor = renderlab.queue_monitoring.QueueMonitor(request_queue, memory_probe=_memory_probe_returning(50))
        release_signal = asyncio.Event()

        running_tasks = await _fill_queue(request_queue, running=9, waiting=0, release_signal=release_signal)
        report = monitor.build_report()
        assert report.capacity_utilization.concurrent_percent == 90
        assert report.alerts == ["High concurrent load (>80%)"]

        more_tasks = await _fill_queue(request_queue, running=1, waiting=3, release_signal=release_signal)
        report = monitor.build_report()
        assert report.capacity_utilization.concurrent == "10/10 (100%)"
        assert report.capacity_utilization.queue == "3/4 (75%)"
        assert report.alerts == ["High concurrent load (>80%)", "Queue is filling up (>50%)"]
        assert report.queue.metrics.total_queued == 3

        release_signal.set()
        await asyncio.gather(*running_tasks, *more_tasks)

    async def test_exactly_at_threshold_does_not_alert(self):
        request_queue = renderlab.request_queue.RequestQueue(maximum_concurrent=10, maximum_queue_size=10)
        monitor = renderlab.queue_monitoring.QueueMonitor(request_queue, memory_probe=_memory_probe_returning(400))
        release_signal = asyncio.Event()

        tasks = await _fill_queue(request_queue, running=8, waiting=0, release_signal=release_signal)

        report = monitor.build_report()
        assert report.capacity_utilization.concurrent_percent == 80
        assert report.alerts == ["All systems normal"]

        release_signal.set()
        await asyncio.gather(*tasks)

    def test_high_memory_alert(self):
        request_queue = renderlab.request_queue.RequestQueue()
        monitor = renderlab.queue_monitoring.QueueMonitor(request_queue, memory_probe=_memory_probe_returning(401))

        assert monitor.build_report().alerts == ["High memory usage (>400MB)"]

    def test_custom_thresholds_appear_in_alert_text(self):
        request_queue = renderlab.request_queue.RequestQueue()
        monitor = renderlab.queue_monitoring.QueueMonitor(
            request_queue,
            thresholds=renderlab.queue_monitoring.MonitoringThresholds(memory_alert_megabytes=100),
            memory_probe=_memory_probe_returning(150),
        )

        assert monitor.build_report().alerts == ["High memory usage (>100MB)"]

    def test_zero_queue_size_reports_zero_percent(self):
        request_queue = renderlab.request_queue.RequestQueue(maximum_concurrent=1, maximum_queue_size=0)
        monitor = renderlab.queue_monitoring.QueueMonitor(request_queue, memory_probe=_memory_probe_returning(10))

        report = monitor.build_report()
        assert report.capacity_utilization.queue_percent == 0
        assert report.capacity_utilization.queue == "0/0 (0%)"


class TestQueueMonitorResetMetrics:

    async def test_reset_clears_reported_metrics(self):
        request_queue = renderlab.request_queue.RequestQueue()
        monitor = renderlab.queue_monitoring.QueueMonitor(request_queue, memory_probe=_memory_probe_returning(10))

        async def work() -> None:
            return None

        await request_queue.submit(work)
        assert monitor.build_report().queue.metrics.total_processed == 1

        monitor.reset_metrics()

        metrics = monitor.build_report().queue.metrics
        assert metrics.total_submitted == 0
        assert metrics.total_processed == 0
        assert metrics.peak_concurrent == 0
