"""
Pydantic models for request validation and response serialisation.

Request models enforce strict validation (unknown fields are rejected).
Response models use field names matching the JSON API contract exactly.

Conditional field presence
--------------------------
Optional request fields of ``ImageGenerationRequest`` that the client
omits are not forwarded to the inference provider at all, so the
provider's own model defaults apply.
"""

import pydantic

# ──────────────────────────────────────────────────────────────────────────────
#  Request Constants
# ──────────────────────────────────────────────────────────────────────────────

MAXIMUM_PROMPT_LENGTH = 2000
MAXIMUM_REFERENCE_IMAGES = 4

# ──────────────────────────────────────────────────────────────────────────────
#  Image Generation Models
# ──────────────────────────────────────────────────────────────────────────────


class ImageGenerationRequest(pydantic.BaseModel):
    """
    Request body for the POST /v1/images/generations endpoint.

    Each request becomes exactly one prediction on the inference provider,
    submitted through the request queue.
    """

    prompt: str = pydantic.Field(
        ...,
        min_length=1,
        max_length=MAXIMUM_PROMPT_LENGTH,
        pattern=r".*\S.*",
        description=(
            f"The text prompt describing the desired image. Must be between "
            f"1 and {MAXIMUM_PROMPT_LENGTH} characters and contain at least "
            f"one non-whitespace character."
        ),
        examples=["A brutalist museum interior at golden hour"],
    )

    model: str | None = pydantic.Field(
        default=None,
        min_length=1,
        description=(
            "Provider model version identifier. When omitted, the "
            "operator-configured default model version is used."
        ),
    )

    image_urls: list[pydantic.HttpUrl] = pydantic.Field(
        default=[],
        max_length=MAXIMUM_REFERENCE_IMAGES,
        description=(
            f"Optional reference images for image-to-image models. At most "
            f"{MAXIMUM_REFERENCE_IMAGES} URLs."
        ),
    )

    negative_prompt: str | None = pydantic.Field(
        default=None,
        max_length=MAXIMUM_PROMPT_LENGTH,
        description="Content the model should avoid.",
    )

    guidance_scale: float | None = pydantic.Field(
        default=None,
        ge=0.0,
        le=50.0,
        description="Classifier-free guidance scale forwarded to the model.",
    )

    number_of_inference_steps: int | None = pydantic.Field(
        default=None,
        ge=1,
        le=500,
        description="Number of denoising steps forwarded to the model.",
    )

    model_config = pydantic.ConfigDict(extra="forbid")


class ImageGenerationResponse(pydantic.BaseModel):
    """Response body for the POST /v1/images/generations endpoint."""

    created: int = pydantic.Field(
        ...,
        description="Unix timestamp (seconds since epoch) of when the prediction completed.",
    )

    prompt: str = pydantic.Field(..., description="The prompt that was submitted.")

    model: str = pydantic.Field(..., description="The model version that produced the output.")

    output_urls: list[str] = pydantic.Field(
        ...,
        min_length=1,
        description="URLs of the generated images, as issued by the provider.",
    )


# ──────────────────────────────────────────────────────────────────────────────
#  Queue Monitoring Models
# ──────────────────────────────────────────────────────────────────────────────


class QueueMetricsSnapshot(pydantic.BaseModel):
    """Cumulative queue counters since startup or the last reset."""

    total_submitted: int
    total_processed: int = pydantic.Field(
        ...,
        description="Items that ran to an outcome, whether success or failure.",
    )
    total_queued: int = pydantic.Field(
        ...,
        description="Items that had to wait before executing.",
    )
    total_rejected: int = pydantic.Field(
        ...,
        description="Items rejected because the waiting list was full.",
    )
    total_abandoned: int = pydantic.Field(
        ...,
        description="Waiting items whose caller went away before promotion.",
    )
    peak_concurrent: int
    peak_queue_size: int


class QueueOccupancy(pydantic.BaseModel):
    """Current occupancy of the request queue."""

    processing: int
    queued: int
    maximum_concurrent: int
    maximum_queue_size: int
    metrics: QueueMetricsSnapshot


class MemoryUsage(pydantic.BaseModel):
    """Memory of the host process, in whole megabytes."""

    resident_set_size_megabytes: int
    virtual_memory_size_megabytes: int


class CapacityUtilization(pydantic.BaseModel):
    """Derived utilisation of the execution slots and the waiting list."""

    concurrent_percent: int
    queue_percent: int
    concurrent: str = pydantic.Field(..., examples=["42/100 (42%)"])
    queue: str = pydantic.Field(..., examples=["0/500 (0%)"])


class QueueStatusReport(pydantic.BaseModel):
    """Response body for GET /admin/queue-status."""

    timestamp: str = pydantic.Field(
        ...,
        description="ISO 8601 UTC timestamp of when the report was generated.",
    )
    queue: QueueOccupancy
    memory: MemoryUsage
    capacity_utilization: CapacityUtilization
    alerts: list[str] = pydantic.Field(
        ...,
        min_length=1,
        description="Threshold alerts, or a single 'All systems normal' entry.",
    )


class QueueMetricsResetResponse(pydantic.BaseModel):
    """Response body for POST /admin/queue-status."""

    success: bool
    message: str


# ──────────────────────────────────────────────────────────────────────────────
#  Error Models
# ──────────────────────────────────────────────────────────────────────────────


class ErrorDetail(pydantic.BaseModel):
    """
    Detailed error information nested inside the error response.

    ``details`` is only present for validation failures, where it holds
    an array of sanitised validation error objects.
    """

    code: str = pydantic.Field(
        ...,
        description="A machine-readable error code in snake_case format.",
    )

    message: str = pydantic.Field(
        ...,
        description="A human-readable error description safe for display to end users.",
    )

    details: str | list | None = pydantic.Field(
        default=None,
        description="Additional context about the error, when available.",
    )

    correlation_id: str = pydantic.Field(
        ...,
        description="UUID v4 correlation identifier matching the X-Correlation-ID response header.",
    )


class ErrorResponse(pydantic.BaseModel):
    """Standardised error response returned for all error conditions."""

    error: ErrorDetail
