"""
Application configuration module.

Loads all configuration values from environment variables with the prefix
RENDERLAB_. Default values are provided for local development. A .env
file is also supported via pydantic-settings.

Values are read once at startup.  The request queue limits in particular
are fixed for the lifetime of the process and cannot be reloaded.
"""

import pydantic
import pydantic_settings


class ApplicationConfiguration(pydantic_settings.BaseSettings):
    """
    Centralised configuration for the RenderLab request queue service.

    Every field maps to an environment variable prefixed with RENDERLAB_.
    For example, the field ``queue_maximum_concurrent`` is populated from
    the environment variable RENDERLAB_QUEUE_MAXIMUM_CONCURRENT.

    Configuration categories
    ------------------------
    - **Application**: host, port, CORS, log level, rate limit
    - **Request queue**: execution ceiling, waiting-list ceiling, alert
      thresholds for the status report
    - **Operations**: administrator bearer token for the queue endpoints
    - **Replicate**: API URL, token, default model version, polling
    - **Resilience**: Retry-After durations and end-to-end request timeout
    """

    # ── Application settings ─────────────────────────────────────────────

    application_host: str = "127.0.0.1"

    application_port: int = pydantic.Field(default=8000, ge=1, le=65535)

    cors_allowed_origins: list[str] = pydantic.Field(
        default=[],
        description=(
            "Allowed CORS origins as a JSON list. An empty list disables CORS "
            "entirely. Example: '[\"http://localhost:3000\"]'."
        ),
    )

    log_level: str = pydantic.Field(
        default="INFO",
        description=(
            "Minimum log level for structured JSON logging. "
            "Accepted values: DEBUG, INFO, WARNING, ERROR, CRITICAL."
        ),
    )

    rate_limit: str = pydantic.Field(
        default="10/minute",
        description=(
            "Per-IP rate limit for the image generation endpoint, in the "
            "format 'count/period' where period is one of: second, minute, "
            "hour, day."
        ),
    )

    # ── Request queue settings ───────────────────────────────────────────

    queue_maximum_concurrent: int = pydantic.Field(
        default=100,
        ge=1,
        description=(
            "Maximum number of upstream image generation calls that may be "
            "in flight at the same time within this process."
        ),
    )

    queue_maximum_queue_size: int = pydantic.Field(
        default=500,
        ge=0,
        description=(
            "Maximum number of requests that may wait for an execution slot. "
            "Requests beyond this are rejected with HTTP 429 (queue_full). "
            "Zero disables waiting entirely."
        ),
    )

    queue_concurrent_alert_percent: int = pydantic.Field(
        default=80,
        ge=0,
        le=100,
        description="Concurrency utilisation above which the status report raises an alert.",
    )

    queue_backlog_alert_percent: int = pydantic.Field(
        default=50,
        ge=0,
        le=100,
        description="Waiting-list utilisation above which the status report raises an alert.",
    )

    memory_alert_megabytes: int = pydantic.Field(
        default=400,
        ge=1,
        description="Process resident set size above which the status report raises an alert.",
    )

    # ── Operations settings ──────────────────────────────────────────────

    admin_api_key: pydantic.SecretStr = pydantic.Field(
        default=pydantic.SecretStr(""),
        description=(
            "Bearer token required by the /admin/queue-status endpoints. "
            "When empty, every request to those endpoints is rejected."
        ),
    )

    # ── Replicate settings ───────────────────────────────────────────────

    replicate_api_base_url: str = pydantic.Field(
        default="https://api.replicate.com",
        description="Base URL of the Replicate HTTP API.",
    )

    replicate_api_token: pydantic.SecretStr = pydantic.Field(
        default=pydantic.SecretStr(""),
        description=(
            "Replicate API token. When empty the service starts, but image "
            "generation requests fail with HTTP 502 and the readiness probe "
            "reports not_ready."
        ),
    )

    replicate_model_version: str = pydantic.Field(
        default="black-forest-labs/flux-schnell",
        min_length=1,
        description="Model version used when a request does not name one.",
    )

    replicate_poll_interval_seconds: float = pydantic.Field(
        default=2.0,
        gt=0,
        description="Delay between two status checks of a running prediction.",
    )

    replicate_maximum_poll_attempts: int = pydantic.Field(
        default=60,
        ge=1,
        description="Status checks after which a running prediction is reported as failed.",
    )

    timeout_for_replicate_requests_in_seconds: float = pydantic.Field(
        default=60.0,
        gt=0,
        description="Timeout for each individual HTTP request to Replicate.",
    )

    # ── Resilience settings ──────────────────────────────────────────────

    retry_after_queue_full_seconds: int = pydantic.Field(
        default=5,
        ge=0,
        description=(
            "Value (in seconds) of the Retry-After header on HTTP 429 "
            "responses caused by a full request queue (queue_full)."
        ),
    )

    retry_after_rate_limit_seconds: int = pydantic.Field(
        default=60,
        ge=0,
        description=(
            "Value (in seconds) of the Retry-After header on HTTP 429 "
            "responses caused by the per-IP rate limit (rate_limit_exceeded)."
        ),
    )

    retry_after_not_ready_seconds: int = pydantic.Field(
        default=10,
        ge=0,
        description="Value (in seconds) of the Retry-After header on HTTP 503 readiness responses.",
    )

    timeout_for_requests_in_seconds: float = pydantic.Field(
        default=300.0,
        gt=0,
        description=(
            "Maximum end-to-end duration in seconds for any single HTTP "
            "request, including time spent waiting in the request queue. "
            "Requests exceeding this ceiling are aborted with HTTP 504."
        ),
    )

    timeout_for_promoted_work_on_shutdown_in_seconds: float = pydantic.Field(
        default=30.0,
        ge=0,
        description=(
            "Grace period on shutdown for queued work that was already "
            "promoted to an execution slot. Work still running afterwards "
            "is cancelled."
        ),
    )

    model_config = pydantic_settings.SettingsConfigDict(
        env_file=".env",
        env_prefix="RENDERLAB_",
    )
