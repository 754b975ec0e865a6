"""
Custom exception classes for the RenderLab request queue service.

Each exception class maps to one category of operational failure and is
handled by the centralised error-handling layer (``error_handling.py``),
which produces a consistent JSON error response with a machine-readable
error code.

Exception hierarchy
-------------------
::

    Exception (Python built-in)
    └── ServiceError (base class for all service exceptions)
        ├── QueueCapacityExceededError             → HTTP 429
        ├── ImageGenerationError                   → HTTP 502
        ├── ImageGenerationServiceUnavailableError → HTTP 502
        └── UnauthorizedError                      → HTTP 401

Only ``QueueCapacityExceededError`` is raised by the request queue itself.
Failures raised by a work item while it executes are propagated to the
submitter untouched; the queue never wraps, classifies, or retries them.
"""


class ServiceError(Exception):
    """
    Base exception for all service-level errors.

    Every service exception carries a ``detail`` attribute containing a
    human-readable description of the failure, safe for inclusion in API
    responses.  Subclasses define ``default_detail`` as the fallback when
    no explicit detail is passed at the raise site.
    """

    default_detail: str = "A service error occurred."

    def __init__(self, detail: str | None = None) -> None:
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class QueueCapacityExceededError(ServiceError):
    """
    Raised by ``RequestQueue.submit`` when every execution slot is busy
    and the waiting list is full.

    The error-handling layer maps this to HTTP 429 (Too Many Requests)
    with the error code ``queue_full`` and a ``Retry-After`` header.  The
    work function of the rejected submission is never invoked.
    """

    default_detail = "The system is busy. Please try again in a few seconds."

    def __init__(
        self,
        detail: str | None = None,
        maximum_queue_size: int | None = None,
    ) -> None:
        self.maximum_queue_size = maximum_queue_size
        if detail is None and maximum_queue_size == 0:
            detail = "All execution slots are busy. Please try again in a few seconds."
        elif detail is None and maximum_queue_size is not None:
            detail = (
                f"Queue full ({maximum_queue_size} requests waiting). "
                "The system is busy. Please try again in a few seconds."
            )
        super().__init__(detail)


class ImageGenerationError(ServiceError):
    """
    Raised when the upstream inference provider accepted the request but
    the prediction itself failed, was cancelled, or produced no output.

    Mapped to HTTP 502 (Bad Gateway) with the error code
    ``image_generation_failed``.
    """

    default_detail = "Image generation failed."


class ImageGenerationServiceUnavailableError(ServiceError):
    """
    Raised when the upstream inference provider cannot be used at all:
    no API token is configured, the connection fails, the request times
    out, or the provider answers with a non-success status code.

    Mapped to HTTP 502 (Bad Gateway) with the error code
    ``upstream_service_unavailable``.
    """

    default_detail = "The image generation provider is unavailable."


class UnauthorizedError(ServiceError):
    """
    Raised by the operational endpoints when the bearer token is missing
    or does not match the configured administrator key.

    Mapped to HTTP 401 (Unauthorized) with the error code
    ``unauthorized``.  No queue state is included in the response.
    """

    default_detail = "Unauthorized."
