"""
FastAPI dependency injection providers.

Each function in this module retrieves a shared instance from the FastAPI
application state.  The instances are created once by the lifespan in
``server_factory.create_application``; route handlers receive them through
``fastapi.Depends`` and never reach for module-level globals.
"""

import fastapi

import renderlab.exceptions
import renderlab.queue_monitoring
import renderlab.request_queue
import renderlab.services.image_generation_service


def get_request_queue(
    request: fastapi.Request,
) -> renderlab.request_queue.RequestQueue:
    """
    Retrieve the process-wide ``RequestQueue`` that bounds concurrent
    calls to the image generation provider.
    """
    return request.app.state.request_queue  # type: ignore[no-any-return]


def get_queue_monitor(
    request: fastapi.Request,
) -> renderlab.queue_monitoring.QueueMonitor:
    return request.app.state.queue_monitor  # type: ignore[no-any-return]


def get_image_generation_service(
    request: fastapi.Request,
) -> renderlab.services.image_generation_service.ImageGenerationService:
    """
    Retrieve the shared ImageGenerationService instance from application state.

    When the service is missing from the state (the lifespan did not run),
    this raises ``ImageGenerationServiceUnavailableError`` so the client
    receives a 502 rather than an opaque 500.
    """
    image_generation_service_instance = getattr(request.app.state, "image_generation_service", None)
    if image_generation_service_instance is None:
        raise renderlab.exceptions.ImageGenerationServiceUnavailableError(
            detail="The image generation service is not initialised.",
        )
    return image_generation_service_instance  # type: ignore[no-any-return]
