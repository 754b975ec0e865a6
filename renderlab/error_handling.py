"""
Centralised error-handling registration for the FastAPI application.

Every exception type that can be raised while handling a request is
mapped to an HTTP status code and the shared JSON error envelope::

    {"error": {"code": "...", "message": "...", "correlation_id": "..."}}

Mapping:

    - Invalid JSON                         →  400 invalid_request_json
    - Request validation failure           →  400 request_validation_failed
    - Missing or wrong admin bearer token  →  401 unauthorized
    - Undefined endpoint                   →  404 not_found
    - Wrong HTTP method                    →  405 method_not_allowed
    - Request queue full                   →  429 queue_full
    - Prediction failed                    →  502 image_generation_failed
    - Provider unreachable / misconfigured →  502 upstream_service_unavailable
    - Unexpected internal errors           →  500 internal_server_error

A full queue and a failed prediction are deliberately distinct: the first
reads as "the system is busy, try again shortly", the second as a
generation failure.

The catch-all for unexpected exceptions (HTTP 500) lives in
``CorrelationIdMiddleware`` rather than here, because Starlette re-raises
after running ``Exception`` handlers.
"""

import fastapi
import fastapi.exceptions
import fastapi.responses
import fastapi.routing
import starlette.exceptions
import starlette.routing
import structlog

import renderlab.exceptions
import renderlab.models

logger = structlog.get_logger()

_HTTP_STATUS_CODE_TO_ERROR_CODE: dict[int, str] = {
    404: "not_found",
    405: "method_not_allowed",
}

_HTTP_STATUS_CODE_TO_ERROR_MESSAGE: dict[int, str] = {
    404: "The requested endpoint does not exist.",
    405: "The HTTP method is not allowed for this endpoint.",
}

_HTTP_STATUS_CODE_TO_LOG_EVENT_NAME: dict[int, str] = {
    404: "http_not_found",
    405: "http_method_not_allowed",
}


def _get_correlation_id(request: fastapi.Request) -> str:
    return getattr(request.state, "correlation_id", "unknown")


def _discover_allowed_methods_for_path(
    fastapi_application: fastapi.FastAPI,
    request_path: str,
) -> str:
    """
    Return the methods registered for ``request_path`` as a sorted,
    comma-separated string for the ``Allow`` header of a 405 response.

    HEAD is added whenever GET is present because Starlette answers HEAD
    for every GET route.
    """
    allowed_methods: set[str] = set()

    for route in fastapi_application.routes:
        if (
            isinstance(route, (fastapi.routing.APIRoute, starlette.routing.Route))
            and route.path == request_path
            and route.methods
        ):
            allowed_methods.update(route.methods)

    if "GET" in allowed_methods:
        allowed_methods.add("HEAD")

    return ", ".join(sorted(allowed_methods))


def build_error_response(
    status_code: int,
    code: str,
    message: str,
    correlation_id: str,
    details: list | None = None,
) -> fastapi.responses.JSONResponse:
    """
    Build a JSON error response in the shared envelope.

    ``details`` is omitted from the payload entirely when it is ``None``.
    """
    error_detail_keyword_arguments: dict = {
        "code": code,
        "message": message,
        "correlation_id": correlation_id,
    }
    if details is not None:
        error_detail_keyword_arguments["details"] = details

    error_response = renderlab.models.ErrorResponse(
        error=renderlab.models.ErrorDetail(**error_detail_keyword_arguments),
    )

    return fastapi.responses.JSONResponse(
        status_code=status_code,
        content=error_response.model_dump(exclude_unset=True),
    )


def register_error_handlers(fastapi_application: fastapi.FastAPI) -> None:
    """
    Register all custom exception handlers on the given FastAPI application.

    Called once by ``server_factory.create_application``; route test
    fixtures call it on their own bare applications.
    """

    @fastapi_application.exception_handler(
        fastapi.exceptions.RequestValidationError,
    )
    async def handle_request_validation_error(
        request: fastapi.Request,
        validation_error: fastapi.exceptions.RequestValidationError,
    ) -> fastapi.responses.JSONResponse:
        """
        Return 400 Bad Request for invalid request bodies, separating
        unparseable JSON from schema violations.
        """
        errors = validation_error.errors()
        logger.warning("http_validation_failed", error_count=len(errors))

        if any(error.get("type", "").startswith("json") for error in errors):
            return build_error_response(
                status_code=400,
                code="invalid_request_json",
                message="The request body contains invalid JSON.",
                correlation_id=_get_correlation_id(request),
            )

        # Only location, message and type are exposed; raw pydantic errors
        # carry the rejected input and documentation URLs.
        sanitised_validation_error_details = [
            {
                "loc": error.get("loc", []),
                "msg": error.get("msg", ""),
                "type": error.get("type", ""),
            }
            for error in errors
        ]

        return build_error_response(
            status_code=400,
            code="request_validation_failed",
            message="Request body failed schema validation.",
            correlation_id=_get_correlation_id(request),
            details=sanitised_validation_error_details,
        )

    @fastapi_application.exception_handler(
        renderlab.exceptions.QueueCapacityExceededError,
    )
    async def handle_queue_capacity_exceeded(
        request: fastapi.Request,
        capacity_error: renderlab.exceptions.QueueCapacityExceededError,
    ) -> fastapi.responses.JSONResponse:
        """
        Return 429 Too Many Requests when the request queue rejected the
        submission.  ``Retry-After`` comes from the operator-configured
        ``retry_after_queue_full_seconds`` stored on ``app.state``.
        """
        retry_after_seconds = getattr(request.app.state, "retry_after_queue_full_seconds", 5)

        response = build_error_response(
            429,
            "queue_full",
            capacity_error.detail,
            _get_correlation_id(request),
        )
        response.headers["Retry-After"] = str(retry_after_seconds)
        return response

    @fastapi_application.exception_handler(
        renderlab.exceptions.ImageGenerationError,
    )
    async def handle_image_generation_error(
        request: fastapi.Request,
        generation_error: renderlab.exceptions.ImageGenerationError,
    ) -> fastapi.responses.JSONResponse:
        logger.error(
            "upstream_service_error",
            upstream="image_generation",
            detail=generation_error.detail,
        )
        return build_error_response(
            502,
            "image_generation_failed",
            generation_error.detail,
            _get_correlation_id(request),
        )

    @fastapi_application.exception_handler(
        renderlab.exceptions.ImageGenerationServiceUnavailableError,
    )
    async def handle_image_generation_unavailable(
        request: fastapi.Request,
        unavailable_error: renderlab.exceptions.ImageGenerationServiceUnavailableError,
    ) -> fastapi.responses.JSONResponse:
        logger.error(
            "upstream_service_error",
            upstream="image_generation",
            detail=unavailable_error.detail,
        )
        return build_error_response(
            502,
            "upstream_service_unavailable",
            unavailable_error.detail,
            _get_correlation_id(request),
        )

    @fastapi_application.exception_handler(
        renderlab.exceptions.UnauthorizedError,
    )
    async def handle_unauthorized_error(
        request: fastapi.Request,
        unauthorized_error: renderlab.exceptions.UnauthorizedError,
    ) -> fastapi.responses.JSONResponse:
        """Return 401 Unauthorized with a ``WWW-Authenticate: Bearer`` challenge."""
        response = build_error_response(
            401,
            "unauthorized",
            unauthorized_error.detail,
            _get_correlation_id(request),
        )
        response.headers["WWW-Authenticate"] = "Bearer"
        return response

    @fastapi_application.exception_handler(
        starlette.exceptions.HTTPException,
    )
    async def handle_starlette_http_exception(
        request: fastapi.Request,
        http_exception: starlette.exceptions.HTTPException,
    ) -> fastapi.responses.JSONResponse:
        """
        Return structured JSON for framework-raised HTTP errors such as
        404 and 405.  A 405 response carries an ``Allow`` header built
        from the registered routes.
        """
        error_code = _HTTP_STATUS_CODE_TO_ERROR_CODE.get(
            http_exception.status_code,
            "unexpected_error",
        )
        error_message = _HTTP_STATUS_CODE_TO_ERROR_MESSAGE.get(
            http_exception.status_code,
            str(http_exception.detail),
        )

        logger.warning(
            _HTTP_STATUS_CODE_TO_LOG_EVENT_NAME.get(http_exception.status_code, "http_framework_error"),
            status_code=http_exception.status_code,
            error_code=error_code,
        )

        response = build_error_response(
            http_exception.status_code,
            error_code,
            error_message,
            _get_correlation_id(request),
        )

        if http_exception.status_code == 405:
            response.headers["Allow"] = _discover_allowed_methods_for_path(
                fastapi_application=request.app,  # type: ignore[arg-type]
                request_path=request.url.path,
            )

        return response
