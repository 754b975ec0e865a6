"""
HTTP middleware for the FastAPI application.

Both middlewares are pure ASGI classes (not ``BaseHTTPMiddleware``) so
that unhandled exceptions are not wrapped in ``ExceptionGroup`` and
cancellation reaches the route handler directly.

- **CorrelationIdMiddleware** (outermost): assigns a UUID v4 correlation ID
  to every request, binds it into the structlog context, echoes it in the
  ``X-Correlation-ID`` header, logs request start and completion, tracks
  the in-flight request count, and turns unhandled exceptions into a JSON
  500 response.

- **RequestTimeoutMiddleware**: bounds the whole request, including any
  time spent waiting in the request queue, by
  ``timeout_for_requests_in_seconds``.  On expiry the handler task is
  cancelled (which abandons a still-waiting queue item) and the client
  receives 504 ``request_timeout``.

Execution order::

    Request → CorrelationId → RequestTimeout → CORS → App
"""

import asyncio
import json
import threading
import time
import uuid

import starlette.types
import structlog
import structlog.contextvars

logger = structlog.get_logger()


class InFlightRequestCounter:
    """
    Thread-safe count of HTTP requests currently being processed.

    Read during graceful shutdown for the ``graceful_shutdown_initiated``
    log event.
    """

    def __init__(self) -> None:
        self._count: int = 0
        self._lock = threading.Lock()

    def increment(self) -> None:
        with self._lock:
            self._count += 1

    def decrement(self) -> None:
        with self._lock:
            self._count -= 1

    @property
    def count(self) -> int:
        return self._count


async def _send_json_error_response(
    send: starlette.types.Send,
    status_code: int,
    code: str,
    message: str,
    correlation_id: str,
) -> int:
    """Send a complete JSON error response and return its body size."""
    response_body = json.dumps(
        {
            "error": {
                "code": code,
                "message": message,
                "correlation_id": correlation_id,
            }
        }
    ).encode()

    await send(
        {
            "type": "http.response.start",
            "status": status_code,
            "headers": [
                (b"content-type", b"application/json"),
                (b"content-length", str(len(response_body)).encode()),
            ],
        }
    )
    await send({"type": "http.response.body", "body": response_body})
    return len(response_body)


class CorrelationIdMiddleware:
    """
    Assign a unique correlation ID (UUID v4) to every incoming request.

    The ID is stored on ``request.state.correlation_id`` for the error
    handlers and added to the response as ``X-Correlation-ID``.  Work items
    promoted by the request queue run in the context captured at
    submission, so their log events carry the ID of the request that
    submitted them.
    """

    def __init__(
        self,
        app: starlette.types.ASGIApp,
        in_flight_request_counter: InFlightRequestCounter | None = None,
    ) -> None:
        self.app = app
        self._in_flight_request_counter = in_flight_request_counter

    async def __call__(
        self,
        scope: starlette.types.Scope,
        receive: starlette.types.Receive,
        send: starlette.types.Send,
    ) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        correlation_id = str(uuid.uuid4())
        method = scope.get("method", "")
        path = scope.get("path", "")
        start_time = time.monotonic()
        response_status = 0
        response_headers_sent = False

        scope.setdefault("state", {})
        scope["state"]["correlation_id"] = correlation_id

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(correlation_id=correlation_id)

        logger.info("http_request_received", method=method, path=path)

        if self._in_flight_request_counter is not None:
            self._in_flight_request_counter.increment()

        async def send_with_correlation_id(
            message: starlette.types.Message,
        ) -> None:
            nonlocal response_status, response_headers_sent
            if message["type"] == "http.response.start":
                response_status = message.get("status", 0)
                response_headers_sent = True
                message["headers"] = [
                    *message.get("headers", []),
                    (b"x-correlation-id", correlation_id.encode()),
                ]
            await send(message)

        try:
            await self.app(scope, receive, send_with_correlation_id)
        except Exception:
            logger.exception("unexpected_exception")
            if not response_headers_sent:
                response_status = 500
                await _send_json_error_response(
                    send_with_correlation_id,
                    500,
                    "internal_server_error",
                    "An unexpected internal error occurred.",
                    correlation_id,
                )
        finally:
            if self._in_flight_request_counter is not None:
                self._in_flight_request_counter.decrement()

            logger.info(
                "http_request_completed",
                method=method,
                path=path,
                status=response_status,
                duration_milliseconds=round((time.monotonic() - start_time) * 1000, 1),
            )


class RequestTimeoutMiddleware:
    """
    Enforce an end-to-end timeout on every HTTP request.

    If the inner application has already started its response when the
    timeout fires, the status code is committed; the timeout is logged
    and the partial response is left as is.
    """

    def __init__(
        self,
        app: starlette.types.ASGIApp,
        request_timeout_seconds: float = 300.0,
    ) -> None:
        self.app = app
        self._request_timeout_seconds = request_timeout_seconds

    async def __call__(
        self,
        scope: starlette.types.Scope,
        receive: starlette.types.Receive,
        send: starlette.types.Send,
    ) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        response_headers_already_sent = False

        async def send_with_header_tracking(
            message: starlette.types.Message,
        ) -> None:
            nonlocal response_headers_already_sent
            if message["type"] == "http.response.start":
                response_headers_already_sent = True
            await send(message)

        try:
            await asyncio.wait_for(
                self.app(scope, receive, send_with_header_tracking),
                timeout=self._request_timeout_seconds,
            )
        except TimeoutError:
            logger.error(
                "request_timeout_exceeded",
                timeout_seconds=self._request_timeout_seconds,
                path=scope.get("path", ""),
                method=scope.get("method", ""),
            )

            if response_headers_already_sent:
                return

            await _send_json_error_response(
                send,
                504,
                "request_timeout",
                "The request exceeded the maximum allowed processing time and was aborted.",
                scope.get("state", {}).get("correlation_id", "unknown"),
            )
