"""
Per-IP rate limiting for the image generation endpoint.

Uses slowapi (backed by the ``limits`` library).  The limit comes from
``RENDERLAB_RATE_LIMIT`` (default ``10/minute``).

Rate limiting and the request queue are independent:

- **Rate limiting** restricts how *often* a single client IP may call the
  endpoint → 429 ``rate_limit_exceeded``.
- **The request queue** bounds how many upstream calls are in flight
  across *all* clients → 429 ``queue_full`` once the backlog is full.

Deferred configuration
----------------------
slowapi's ``limit()`` decorator is applied at import time, before the
configuration has been read.  The decorator therefore receives the
``InferenceRateLimitConfiguration`` callable, which slowapi invokes on
every request; the factory calls ``configure()`` once at startup.  These
objects are module-level because of that decorator contract, so test
fixtures reset them between tests.
"""

import fastapi
import fastapi.responses
import slowapi
import slowapi.errors
import slowapi.util

import renderlab.models


class InferenceRateLimitConfiguration:
    """Holds the rate limit string handed to slowapi on every request."""

    def __init__(self, default_rate_limit: str = "10/minute") -> None:
        self._rate_limit_string: str = default_rate_limit

    def configure(self, rate_limit_string: str) -> None:
        """Set the limit, e.g. ``"10/minute"``.  Called once at startup."""
        self._rate_limit_string = rate_limit_string

    def __call__(self) -> str:
        return self._rate_limit_string


inference_rate_limit_configuration = InferenceRateLimitConfiguration()

rate_limiter = slowapi.Limiter(key_func=slowapi.util.get_remote_address)

inference_rate_limit = rate_limiter.limit(inference_rate_limit_configuration)


async def rate_limit_exceeded_handler(
    request: fastapi.Request,
    rate_limit_exceeded_exception: slowapi.errors.RateLimitExceeded,
) -> fastapi.responses.JSONResponse:
    """
    Return a structured 429 response with a ``Retry-After`` header taken
    from ``retry_after_rate_limit_seconds`` on ``app.state``.
    """
    correlation_id = getattr(request.state, "correlation_id", "unknown")
    retry_after_seconds = getattr(request.app.state, "retry_after_rate_limit_seconds", 60)

    response = fastapi.responses.JSONResponse(
        status_code=429,
        content=renderlab.models.ErrorResponse(
            error=renderlab.models.ErrorDetail(
                code="rate_limit_exceeded",
                message=f"Rate limit exceeded: {rate_limit_exceeded_exception.detail}",
                correlation_id=correlation_id,
            ),
        ).model_dump(exclude_unset=True),
    )
    response.headers["Retry-After"] = str(retry_after_seconds)
    return response
