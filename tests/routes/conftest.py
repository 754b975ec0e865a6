"""Shared fixtures for route integration tests."""

from unittest.mock import AsyncMock, MagicMock

import fastapi
import httpx
import pytest
import pytest_asyncio
import slowapi.errors

import renderlab.error_handling
import renderlab.middleware
import renderlab.models
import renderlab.queue_monitoring
import renderlab.rate_limiting
import renderlab.request_queue
import renderlab.routes.health_routes
import renderlab.routes.image_generation_routes
import renderlab.routes.queue_status_routes
import renderlab.services.image_generation_service

ADMIN_API_KEY = "test-admin-key"


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {ADMIN_API_KEY}"}


@pytest.fixture
def mock_image_generation_service():
    """
    A mock image generation service whose ``generate_image`` returns one
    output URL.
    """
    service = MagicMock(spec=renderlab.services.image_generation_service.ImageGenerationService)
    service.generate_image = AsyncMock(
        return_value=renderlab.services.image_generation_service.ImageGenerationResult(
            prediction_id="prediction-1",
            model="black-forest-labs/flux-schnell",
            output_urls=["https://replicate.delivery/output-1.webp"],
        ),
    )
    service.check_health.return_value = True
    return service


@pytest.fixture
def request_queue():
    """A real queue, small enough that route tests can fill it."""
    return renderlab.request_queue.RequestQueue(maximum_concurrent=2, maximum_queue_size=2)


@pytest.fixture
def queue_monitor(request_queue):
    def memory_probe() -> renderlab.models.MemoryUsage:
        return renderlab.models.MemoryUsage(resident_set_size_megabytes=120, virtual_memory_size_megabytes=900)

    return renderlab.queue_monitoring.QueueMonitor(request_queue, memory_probe=memory_probe)


@pytest.fixture
def test_app(mock_image_generation_service, request_queue, queue_monitor):
    app = fastapi.FastAPI()
    renderlab.error_handling.register_error_handlers(app)

    app.add_middleware(
        renderlab.middleware.RequestTimeoutMiddleware,
        request_timeout_seconds=300.0,
    )
    app.add_middleware(renderlab.middleware.CorrelationIdMiddleware)

    app.include_router(renderlab.routes.image_generation_routes.image_generation_router)
    app.include_router(renderlab.routes.queue_status_routes.queue_status_router)
    app.include_router(renderlab.routes.health_routes.health_router)

    app.state.limiter = renderlab.rate_limiting.rate_limiter
    renderlab.rate_limiting.inference_rate_limit_configuration.configure("1000/minute")
    app.add_exception_handler(
        slowapi.errors.RateLimitExceeded,
        renderlab.rate_limiting.rate_limit_exceeded_handler,
    )

    app.state.image_generation_service = mock_image_generation_service
    app.state.request_queue = request_queue
    app.state.queue_monitor = queue_monitor
    app.state.admin_api_key = ADMIN_API_KEY
    app.state.retry_after_queue_full_seconds = 5
    app.state.retry_after_rate_limit_seconds = 60
    app.state.retry_after_not_ready_seconds = 10

    return app


@pytest_asyncio.fixture
async def client(test_app):
    transport = httpx.ASGITransport(app=test_app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac
