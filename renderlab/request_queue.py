"""
In-process admission-control queue for expensive upstream operations.

Every call to the image generation provider is an independent network
operation with unpredictable latency.  The ``RequestQueue`` bounds how many
of those operations may be in flight at once, smooths bursts through a
bounded FIFO waiting list, and rejects work outright once both limits are
reached.

Admission decision
------------------
``submit`` takes a parameterless coroutine function (the *work item*) and
makes one of three decisions in a single critical section:

1. **Execute**: fewer than ``maximum_concurrent`` items are running and
   nobody is waiting.  The work runs immediately in the caller's task.
2. **Wait**: the execution slots are full but the waiting list has room.
   The item is appended with its enqueue timestamp and the caller is
   suspended on an ``asyncio.Future`` until the item is promoted and run.
3. **Reject**: both limits are reached.  ``QueueCapacityExceededError`` is
   raised and the work function is never invoked.

When any executing item finishes (successfully or not) its slot is
released and, inside the same critical section, the head of the waiting
list is promoted.  Promotion is strictly FIFO; the measured wait time is
logged but never influences ordering.

Bookkeeping
-----------
``processing_count``, the waiting list, and ``QueueMetrics`` are the only
shared mutable state.  They are mutated only while holding a
``threading.Lock`` and never across an ``await``, so the capacity check and
the matching increment or append form one atomic step.  The lock also makes
``get_status`` safe to call from synchronous contexts.

Cancellation
------------
A caller cancelled while its item is waiting has the item removed from the
waiting list straight away; it is counted in ``total_abandoned`` and never
runs.  A caller cancelled after promotion does not pre-empt the work: the
work finishes, keeps its slot until then, and its outcome is discarded.
A failure discarded this way is still logged.

On shutdown, ``drop_waiting_items`` cancels every waiter and
``wait_for_promoted_items`` gives promoted work a grace period before
cancelling it.

Usage in route handlers::

    generation_result = await request_queue.submit(
        lambda: image_generation_service.generate_image(prompt=prompt),
    )
"""

import asyncio
import collections
import collections.abc
import contextvars
import dataclasses
import threading
import time
import typing

import structlog

import renderlab.exceptions

logger = structlog.get_logger()

DEFAULT_MAXIMUM_CONCURRENT = 100
DEFAULT_MAXIMUM_QUEUE_SIZE = 500

ResultType = typing.TypeVar("ResultType")

WorkFunction = collections.abc.Callable[[], collections.abc.Awaitable[ResultType]]


@dataclasses.dataclass
class QueueMetrics:
    """
    Cumulative counters since construction or the last ``reset_metrics``.

    ``total_processed`` counts every item that occupied an execution slot
    and finished, whether its work succeeded or raised.  For any window
    the following holds::

        total_submitted == total_processed + total_rejected
                           + total_abandoned + processing + queued

    where ``processing`` and ``queued`` are the items still in flight
    (only exact when no items were in flight at the start of the window).
    """

    total_submitted: int = 0
    total_processed: int = 0
    total_queued: int = 0
    total_rejected: int = 0
    total_abandoned: int = 0
    peak_concurrent: int = 0
    peak_queue_size: int = 0


@dataclasses.dataclass(frozen=True)
class QueueStatus:
    """Read-only snapshot of queue occupancy and cumulative metrics."""

    processing: int
    queued: int
    maximum_concurrent: int
    maximum_queue_size: int
    metrics: QueueMetrics


@dataclasses.dataclass(eq=False)
class _WaitingWorkItem:
    work: WorkFunction
    completion_future: asyncio.Future
    enqueued_at: float
    submission_context: contextvars.Context


class RequestQueue:
    """
    Bounds concurrent execution of work items and queues the overflow.

    One instance is created per process by the application factory and
    handed to route handlers through FastAPI dependency injection.  The
    limits are fixed for the lifetime of the instance.
    """

    def __init__(
        self,
        maximum_concurrent: int = DEFAULT_MAXIMUM_CONCURRENT,
        maximum_queue_size: int = DEFAULT_MAXIMUM_QUEUE_SIZE,
    ) -> None:
        """
        Initialise an empty queue.

        Args:
            maximum_concurrent: The maximum number of work items that may
                execute at the same time.  Must be at least 1.
            maximum_queue_size: The maximum number of work items that may
                wait for an execution slot.  Zero disables waiting: any
                submission that cannot run immediately is rejected.

        Raises:
            ValueError: When either limit is out of range.
        """
        if maximum_concurrent < 1:
            raise ValueError(f"maximum_concurrent must be >= 1, got {maximum_concurrent}")
        if maximum_queue_size < 0:
            raise ValueError(f"maximum_queue_size must be >= 0, got {maximum_queue_size}")

        self._maximum_concurrent = maximum_concurrent
        self._maximum_queue_size = maximum_queue_size
        self._processing_count: int = 0
        self._waiting_items: collections.deque[_WaitingWorkItem] = collections.deque()
        self._metrics = QueueMetrics()
        self._state_lock = threading.Lock()

        # Strong references to tasks running promoted items.  The event
        # loop only keeps weak references to tasks.
        self._promoted_tasks: set[asyncio.Task] = set()

    async def submit(self, work: WorkFunction[ResultType]) -> ResultType:
        """
        Run ``work`` under the queue's concurrency limit.

        Args:
            work: A parameterless coroutine function.  All of its inputs
                must be closed over by the caller.

        Returns:
            Whatever ``work`` returns.  Exceptions raised by ``work`` are
            propagated unchanged.

        Raises:
            renderlab.exceptions.QueueCapacityExceededError:
                When every execution slot is busy and the waiting list is
                full.  ``work`` is not invoked.
        """
        waiting_item: _WaitingWorkItem | None = None
        rejected = False

        with self._state_lock:
            self._metrics.total_submitted += 1

            if self._processing_count < self._maximum_concurrent and not self._waiting_items:
                self._occupy_execution_slot()
            elif len(self._waiting_items) < self._maximum_queue_size:
                waiting_item = _WaitingWorkItem(
                    work=work,
                    completion_future=asyncio.get_running_loop().create_future(),
                    enqueued_at=time.monotonic(),
                    submission_context=contextvars.copy_context(),
                )
                self._waiting_items.append(waiting_item)
                self._metrics.total_queued += 1
                self._metrics.peak_queue_size = max(
                    self._metrics.peak_queue_size,
                    len(self._waiting_items),
                )
                queue_position = len(self._waiting_items)
                processing_count = self._processing_count
            else:
                self._metrics.total_rejected += 1
                rejected = True
                processing_count = self._processing_count
                queued_count = len(self._waiting_items)

        if rejected:
            logger.warning(
                "work_item_rejected_queue_full",
                processing=processing_count,
                queued=queued_count,
                maximum_queue_size=self._maximum_queue_size,
            )
            raise renderlab.exceptions.QueueCapacityExceededError(
                maximum_queue_size=self._maximum_queue_size,
            )

        if waiting_item is None:
            try:
                return await work()
            finally:
                self._release_execution_slot()

        logger.info(
            "work_item_queued",
            queue_position=queue_position,
            processing=processing_count,
        )

        try:
            return await waiting_item.completion_future  # type: ignore[no-any-return]
        except asyncio.CancelledError:
            self._abandon_waiting_item(waiting_item)
            raise

    def get_status(self) -> QueueStatus:
        """Return a snapshot of current occupancy and a copy of the metrics."""
        with self._state_lock:
            return QueueStatus(
                processing=self._processing_count,
                queued=len(self._waiting_items),
                maximum_concurrent=self._maximum_concurrent,
                maximum_queue_size=self._maximum_queue_size,
                metrics=dataclasses.replace(self._metrics),
            )

    def reset_metrics(self) -> None:
        """
        Zero the cumulative counters and peak values.

        Items currently executing or waiting are not affected.
        """
        with self._state_lock:
            self._metrics = QueueMetrics()
            processing_count = self._processing_count
            queued_count = len(self._waiting_items)

        logger.info(
            "queue_metrics_reset",
            processing=processing_count,
            queued=queued_count,
        )

    def drop_waiting_items(self) -> int:
        """
        Cancel every item still in the waiting list and return how many
        were dropped.  Called on shutdown; there is no recovery of
        dropped items.
        """
        with self._state_lock:
            dropped_items = list(self._waiting_items)
            self._waiting_items.clear()
            self._metrics.total_abandoned += len(dropped_items)

        for dropped_item in dropped_items:
            dropped_item.completion_future.cancel()

        return len(dropped_items)

    async def wait_for_promoted_items(self, timeout_seconds: float) -> int:
        """
        Wait up to ``timeout_seconds`` for promoted items to finish, then
        cancel whatever is still running.

        Promoted items run in tasks owned by the queue rather than by an
        HTTP request, so the server's own graceful shutdown does not wait
        for them.  Returns the number of tasks that had to be cancelled.
        """
        pending_tasks = set(self._promoted_tasks)
        if not pending_tasks:
            return 0

        _, still_running = await asyncio.wait(pending_tasks, timeout=timeout_seconds)
        for running_task in still_running:
            running_task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)

        return len(still_running)

    @property
    def processing_count(self) -> int:
        """Return the number of work items currently executing."""
        return self._processing_count

    @property
    def queued_count(self) -> int:
        """Return the number of work items waiting for a slot."""
        return len(self._waiting_items)

    @property
    def maximum_concurrent(self) -> int:
        return self._maximum_concurrent

    @property
    def maximum_queue_size(self) -> int:
        return self._maximum_queue_size

    # Callers of the two helpers below must hold ``_state_lock``.

    def _occupy_execution_slot(self) -> None:
        self._processing_count += 1
        self._metrics.peak_concurrent = max(
            self._metrics.peak_concurrent,
            self._processing_count,
        )

    def _pop_next_live_waiting_item(self) -> _WaitingWorkItem | None:
        while self._waiting_items:
            waiting_item = self._waiting_items.popleft()
            if not waiting_item.completion_future.done():
                return waiting_item
            # The submitter was cancelled but has not yet run its own
            # cleanup; it will find the item gone.
            self._metrics.total_abandoned += 1
        return None

    def _release_execution_slot(self) -> None:
        """
        Free one execution slot and promote the head of the waiting list
        into it, if anyone is waiting.
        """
        promoted_item: _WaitingWorkItem | None = None

        with self._state_lock:
            self._processing_count -= 1
            self._metrics.total_processed += 1

            if self._processing_count < self._maximum_concurrent:
                promoted_item = self._pop_next_live_waiting_item()
                if promoted_item is not None:
                    self._occupy_execution_slot()

        if promoted_item is not None:
            self._start_promoted_item(promoted_item)

    def _start_promoted_item(self, promoted_item: _WaitingWorkItem) -> None:
        wait_milliseconds = (time.monotonic() - promoted_item.enqueued_at) * 1000
        logger.info(
            "queued_work_item_promoted",
            wait_milliseconds=round(wait_milliseconds, 1),
            processing=self._processing_count,
            queued=len(self._waiting_items),
        )

        # Run the item in the context captured at submission so that the
        # submitter's correlation ID stays bound in its log events.
        promoted_task = asyncio.get_running_loop().create_task(
            self._execute_promoted_item(promoted_item),
            context=promoted_item.submission_context,
        )
        self._promoted_tasks.add(promoted_task)
        promoted_task.add_done_callback(self._promoted_tasks.discard)

    async def _execute_promoted_item(self, promoted_item: _WaitingWorkItem) -> None:
        completion_future = promoted_item.completion_future
        try:
            work_result = await promoted_item.work()
        except asyncio.CancelledError:
            completion_future.cancel()
            raise
        except Exception as work_error:
            if not completion_future.done():
                completion_future.set_exception(work_error)
            else:
                # The submitter was cancelled after promotion.
                logger.warning(
                    "promoted_work_item_failure_discarded",
                    error_type=type(work_error).__name__,
                    error=str(work_error),
                )
        else:
            if not completion_future.done():
                completion_future.set_result(work_result)
        finally:
            self._release_execution_slot()

    def _abandon_waiting_item(self, waiting_item: _WaitingWorkItem) -> None:
        with self._state_lock:
            try:
                self._waiting_items.remove(waiting_item)
            except ValueError:
                # Already promoted or dropped; the slot accounting is
                # handled by whoever removed it.
                return
            self._metrics.total_abandoned += 1
            queued_count = len(self._waiting_items)

        logger.info(
            "queued_work_item_abandoned",
            wait_milliseconds=round((time.monotonic() - waiting_item.enqueued_at) * 1000, 1),
            queued=queued_count,
        )
