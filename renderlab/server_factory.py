"""
FastAPI application factory.

``create_application`` builds a fully configured FastAPI instance: the
lifespan that owns the request queue and the upstream client, error
handlers, rate limiting, middleware and routes.  A factory (rather than a
module-level global) lets tests build fresh applications with their own
configuration.
"""

import collections.abc
import contextlib
import copy

import fastapi
import fastapi.middleware.cors
import fastapi.openapi.utils
import slowapi.errors
import structlog

import configuration
import renderlab.error_handling
import renderlab.logging_config
import renderlab.middleware
import renderlab.queue_monitoring
import renderlab.rate_limiting
import renderlab.request_queue
import renderlab.routes.health_routes
import renderlab.routes.image_generation_routes
import renderlab.routes.queue_status_routes
import renderlab.services.image_generation_service

logger = structlog.get_logger()


def create_application(
    application_configuration: configuration.ApplicationConfiguration | None = None,
) -> fastapi.FastAPI:
    """
    Create and fully configure the FastAPI application.

    When no configuration is passed, it is read from the environment.
    """
    if application_configuration is None:
        application_configuration = configuration.ApplicationConfiguration()

    renderlab.logging_config.configure_logging(
        log_level=application_configuration.log_level,
    )

    in_flight_request_counter = renderlab.middleware.InFlightRequestCounter()

    @contextlib.asynccontextmanager
    async def application_lifespan(
        fastapi_application: fastapi.FastAPI,
    ) -> collections.abc.AsyncIterator[None]:
        """
        Create the request queue, its monitor and the upstream client on
        startup; drain the waiting list, let promoted work finish within a
        grace period and close the client on shutdown.
        """
        request_queue_instance = renderlab.request_queue.RequestQueue(
            maximum_concurrent=application_configuration.queue_maximum_concurrent,
            maximum_queue_size=application_configuration.queue_maximum_queue_size,
        )
        queue_monitor_instance = renderlab.queue_monitoring.QueueMonitor(
            request_queue_instance,
            thresholds=renderlab.queue_monitoring.MonitoringThresholds(
                concurrent_alert_percent=application_configuration.queue_concurrent_alert_percent,
                queue_alert_percent=application_configuration.queue_backlog_alert_percent,
                memory_alert_megabytes=application_configuration.memory_alert_megabytes,
            ),
        )
        image_generation_service_instance = renderlab.services.image_generation_service.ImageGenerationService(
            api_token=application_configuration.replicate_api_token.get_secret_value(),
            default_model_version=application_configuration.replicate_model_version,
            replicate_api_base_url=application_configuration.replicate_api_base_url,
            request_timeout_seconds=application_configuration.timeout_for_replicate_requests_in_seconds,
            poll_interval_seconds=application_configuration.replicate_poll_interval_seconds,
            maximum_poll_attempts=application_configuration.replicate_maximum_poll_attempts,
            connection_pool_size=application_configuration.queue_maximum_concurrent,
        )

        if not image_generation_service_instance.check_health():
            logger.warning("replicate_api_token_not_configured")
        if not application_configuration.admin_api_key.get_secret_value():
            logger.warning("admin_api_key_not_configured")

        fastapi_application.state.request_queue = request_queue_instance
        fastapi_application.state.queue_monitor = queue_monitor_instance
        fastapi_application.state.image_generation_service = image_generation_service_instance
        fastapi_application.state.admin_api_key = application_configuration.admin_api_key.get_secret_value()
        fastapi_application.state.retry_after_queue_full_seconds = (
            application_configuration.retry_after_queue_full_seconds
        )
        fastapi_application.state.retry_after_rate_limit_seconds = (
            application_configuration.retry_after_rate_limit_seconds
        )
        fastapi_application.state.retry_after_not_ready_seconds = (
            application_configuration.retry_after_not_ready_seconds
        )

        logger.info(
            "services_initialised",
            replicate_api_base_url=application_configuration.replicate_api_base_url,
            replicate_model_version=application_configuration.replicate_model_version,
            queue_maximum_concurrent=application_configuration.queue_maximum_concurrent,
            queue_maximum_queue_size=application_configuration.queue_maximum_queue_size,
        )

        yield

        logger.info(
            "graceful_shutdown_initiated",
            in_flight_requests=in_flight_request_counter.count,
            queue_processing=request_queue_instance.processing_count,
            queue_waiting=request_queue_instance.queued_count,
        )

        dropped_waiting_items = request_queue_instance.drop_waiting_items()
        if dropped_waiting_items:
            logger.warning("waiting_work_items_dropped", count=dropped_waiting_items)

        cancelled_promoted_items = await request_queue_instance.wait_for_promoted_items(
            application_configuration.timeout_for_promoted_work_on_shutdown_in_seconds,
        )
        if cancelled_promoted_items:
            logger.warning("promoted_work_items_cancelled", count=cancelled_promoted_items)

        await image_generation_service_instance.close()
        logger.info("services_shutdown_complete")

    fastapi_application = fastapi.FastAPI(
        title="RenderLab Image Generation API",
        description=(
            "Image generation API whose upstream inference calls go through "
            "a bounded, FIFO request queue with operational monitoring."
        ),
        version="1.0.0",
        lifespan=application_lifespan,
    )

    renderlab.error_handling.register_error_handlers(fastapi_application)

    renderlab.rate_limiting.inference_rate_limit_configuration.configure(
        application_configuration.rate_limit,
    )
    fastapi_application.state.limiter = renderlab.rate_limiting.rate_limiter
    fastapi_application.add_exception_handler(
        slowapi.errors.RateLimitExceeded,
        renderlab.rate_limiting.rate_limit_exceeded_handler,  # type: ignore[arg-type]
    )

    if application_configuration.cors_allowed_origins:
        fastapi_application.add_middleware(
            fastapi.middleware.cors.CORSMiddleware,
            allow_origins=application_configuration.cors_allowed_origins,
            allow_methods=["GET", "POST"],
            allow_headers=["Authorization", "Content-Type", "Accept"],
        )

    # The last middleware added is the outermost:
    #   Request → CorrelationId → RequestTimeout → CORS → App
    fastapi_application.add_middleware(
        renderlab.middleware.RequestTimeoutMiddleware,
        request_timeout_seconds=application_configuration.timeout_for_requests_in_seconds,
    )
    fastapi_application.add_middleware(
        renderlab.middleware.CorrelationIdMiddleware,
        in_flight_request_counter=in_flight_request_counter,
    )

    fastapi_application.include_router(
        renderlab.routes.image_generation_routes.image_generation_router,
    )
    fastapi_application.include_router(
        renderlab.routes.queue_status_routes.queue_status_router,
    )
    fastapi_application.include_router(
        renderlab.routes.health_routes.health_router,
    )

    _customise_openapi_schema(fastapi_application)

    return fastapi_application


def _customise_openapi_schema(fastapi_application: fastapi.FastAPI) -> None:
    """
    Replace the generated OpenAPI schema with one that matches the wire
    behaviour: validation failures are 400, never 422, and 404/405/500
    can come back from any operation.
    """
    error_response_content = {
        "content": {
            "application/json": {
                "schema": {"$ref": "#/components/schemas/ErrorResponse"},
            },
        },
    }
    global_error_responses = {
        "404": {
            **error_response_content,
            "description": "Not Found — the requested endpoint does not exist (``not_found``).",
        },
        "405": {
            **error_response_content,
            "description": (
                "Method Not Allowed — the HTTP method is not supported for "
                "this endpoint (``method_not_allowed``). The ``Allow`` header "
                "lists permitted methods."
            ),
        },
        "500": {
            **error_response_content,
            "description": "Internal Server Error — an unexpected error occurred (``internal_server_error``).",
        },
    }

    def customised_openapi() -> dict:
        if fastapi_application.openapi_schema:
            return fastapi_application.openapi_schema

        openapi_schema = fastapi.openapi.utils.get_openapi(
            title=fastapi_application.title,
            version=fastapi_application.version,
            description=fastapi_application.description,
            routes=fastapi_application.routes,
        )

        for path_item in openapi_schema.get("paths", {}).values():
            for operation in path_item.values():
                if not isinstance(operation, dict) or "responses" not in operation:
                    continue
                operation["responses"].pop("422", None)
                for status_code, response_schema in global_error_responses.items():
                    operation["responses"].setdefault(status_code, copy.deepcopy(response_schema))

        component_schemas = openapi_schema.get("components", {}).get("schemas", {})
        component_schemas.pop("HTTPValidationError", None)
        component_schemas.pop("ValidationError", None)

        fastapi_application.openapi_schema = openapi_schema
        return openapi_schema

    fastapi_application.openapi = customised_openapi  # type: ignore[method-assign]
