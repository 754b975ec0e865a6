"""Tests for GET /health and GET /health/ready."""

import asyncio


class TestHealthCheck:

    async def test_liveness(self, client) -> None:
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}
        assert response.headers["cache-control"] == "no-store, no-cache"
        assert response.headers["pragma"] == "no-cache"


class TestReadinessCheck:

    async def test_ready(self, client) -> None:
        response = await client.get("/health/ready")

        assert response.status_code == 200
        assert response.json() == {
            "status": "ready",
            "checks": {"image_generation": "ok", "request_queue": "ok"},
        }
        assert "Retry-After" not in response.headers

    async def test_not_ready_without_provider_token(self, client, mock_image_generation_service) -> None:
        mock_image_generation_service.check_health.return_value = False

        response = await client.get("/health/ready")

        assert response.status_code == 503
        assert response.headers["Retry-After"] == "10"
        body = response.json()
        assert body["status"] == "not_ready"
        assert body["checks"]["image_generation"] == "unavailable"

    async def test_not_ready_when_queue_saturated(self, client, request_queue) -> None:
        release_signal = asyncio.Event()

        async def blocking_work() -> None:
            await release_signal.wait()

        tasks = [asyncio.create_task(request_queue.submit(blocking_work)) for _ in range(4)]
        for _ in range(5):
            await asyncio.sleep(0)

        response = await client.get("/health/ready")

        assert response.status_code == 503
        assert response.json()["checks"]["request_queue"] == "saturated"

        release_signal.set()
        await asyncio.gather(*tasks)

    async def test_ready_while_queue_has_room(self, client, request_queue) -> None:
        release_signal = asyncio.Event()

        async def blocking_work() -> None:
            await release_signal.wait()

        tasks = [asyncio.create_task(request_queue.submit(blocking_work)) for _ in range(3)]
        for _ in range(5):
            await asyncio.sleep(0)

        response = await client.get("/health/ready")

        assert response.status_code == 200

        release_signal.set()
        await asyncio.gather(*tasks)
