"""
Tests for renderlab/services/image_generation_service.py.

Covers:
- Prediction creation payload and polling until a terminal status.
- Output URL normalisation across model output shapes.
- Failed, cancelled, empty and never-finishing predictions.
- Network-level failures: connection error, HTTP status error, timeout.
- Missing API token, health check and client lifecycle.
"""

from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

import renderlab.exceptions
import renderlab.services.image_generation_service


def _make_service(
    api_token: str = "r8_test",
    maximum_poll_attempts: int = 3,
) -> renderlab.services.image_generation_service.ImageGenerationService:
    return renderlab.services.image_generation_service.ImageGenerationService(
        api_token=api_token,
        default_model_version="black-forest-labs/flux-schnell",
        poll_interval_seconds=0,
        maximum_poll_attempts=maximum_poll_attempts,
    )


def _mock_json_response(response_body) -> MagicMock:
    response = MagicMock(spec=httpx.Response)
    response.status_code = 200
    response.json.return_value = response_body
    response.raise_for_status = MagicMock()
    return response


def _prediction(status: str, output=None, error=None) -> dict:
    return {
        "id": "prediction-1",
        "status": status,
        "output": output,
        "error": error,
        "urls": {"get": "https://api.replicate.com/v1/predictions/prediction-1"},
    }


def _service_answering(*response_bodies, **service_keyword_arguments):
    service = _make_service(**service_keyword_arguments)
    service.http_client = AsyncMock()
    service.http_client.request = AsyncMock(
        side_effect=[_mock_json_response(response_body) for response_body in response_bodies],
    )
    return service


class TestExtractOutputUrls:

    @pytest.mark.parametrize(
        ("prediction_output", "expected"),
        [
            ("https://x/a.png", ["https://x/a.png"]),
            (["https://x/a.png", "https://x/b.png"], ["https://x/a.png", "https://x/b.png"]),
            ({"image": "https://x/a.png"}, ["https://x/a.png"]),
            ({"images": ["https://x/a.png", 3]}, ["https://x/a.png"]),
            ("", []),
            (None, []),
            (42, []),
        ],
    )
    def test_shapes(self, prediction_output, expected):
        assert renderlab.services.image_generation_service.extract_output_urls(prediction_output) == expected


class TestGenerateImage:

    async def test_success_after_polling(self):
        service = _service_answering(
            _prediction("starting"),
            _prediction("processing"),
            _prediction("succeeded", output=["https://replicate.delivery/out.webp"]),
        )

        result = await service.generate_image(prompt="A cat")

        assert result.prediction_id == "prediction-1"
        assert result.model == "black-forest-labs/flux-schnell"
        assert result.output_urls == ["https://replicate.delivery/out.webp"]
        assert service.http_client.request.await_count == 3

        create_call = service.http_client.request.await_args_list[0]
        assert create_call.args == ("POST", "/v1/predictions")
        assert create_call.kwargs["json"] == {
            "version": "black-forest-labs/flux-schnell",
            "input": {"prompt": "A cat"},
        }
        poll_call = service.http_client.request.await_args_list[1]
        assert poll_call.args == ("GET", "https://api.replicate.com/v1/predictions/prediction-1")

    async def test_immediate_success_does_not_poll(self):
        service = _service_answering(_prediction("succeeded", output="https://replicate.delivery/out.webp"))

        result = await service.generate_image(prompt="A cat")

        assert result.output_urls == ["https://replicate.delivery/out.webp"]
        assert service.http_client.request.await_count == 1

    async def test_optional_inputs_are_sent(self):
        service = _service_answering(_prediction("succeeded", output=["https://x/out.png"]))

        await service.generate_image(
            prompt="A cat",
            model="owner/model:abc",
            image_urls=["https://x/ref-1.png", "https://x/ref-2.png"],
            negative_prompt="blurry",
            guidance_scale=3.5,
            number_of_inference_steps=28,
        )

        request_json = service.http_client.request.await_args_list[0].kwargs["json"]
        assert request_json["version"] == "owner/model:abc"
        assert request_json["input"] == {
            "prompt": "A cat",
            "image": "https://x/ref-1.png",
            "image_input": ["https://x/ref-1.png", "https://x/ref-2.png"],
            "input_image": ["https://x/ref-1.png", "https://x/ref-2.png"],
            "init_image": "https://x/ref-1.png",
            "negative_prompt": "blurry",
            "guidance_scale": 3.5,
            "num_inference_steps": 28,
        }

    async def test_poll_falls_back_to_prediction_path(self):
        created = _prediction("starting")
        del created["urls"]
        service = _service_answering(created, _prediction("succeeded", output=["https://x/out.png"]))

        await service.generate_image(prompt="A cat")

        poll_call = service.http_client.request.await_args_list[1]
        assert poll_call.args == ("GET", "/v1/predictions/prediction-1")

    async def test_failed_prediction(self):
        service = _service_answering(_prediction("starting"), _prediction("failed", error="NSFW content detected"))

        with pytest.raises(renderlab.exceptions.ImageGenerationError, match="NSFW content detected"):
            await service.generate_image(prompt="A cat")

    async def test_canceled_prediction(self):
        service = _service_answering(_prediction("canceled"))

        with pytest.raises(renderlab.exceptions.ImageGenerationError, match="canceled"):
            await service.generate_image(prompt="A cat")

    async def test_success_without_output(self):
        service = _service_answering(_prediction("succeeded", output=[]))

        with pytest.raises(renderlab.exceptions.ImageGenerationError, match="no image URL"):
            await service.generate_image(prompt="A cat")

    async def test_poll_budget_exhausted(self):
        service = _service_answering(
            _prediction("starting"),
            _prediction("processing"),
            _prediction("processing"),
            maximum_poll_attempts=2,
        )

        with pytest.raises(renderlab.exceptions.ImageGenerationError, match="did not complete after 2"):
            await service.generate_image(prompt="A cat")

    async def test_missing_prediction_identifier(self):
        service = _service_answering({"status": "starting"})

        with pytest.raises(renderlab.exceptions.ImageGenerationError):
            await service.generate_image(prompt="A cat")

    async def test_missing_token(self):
        service = _make_service(api_token="")
        service.http_client = AsyncMock()

        with pytest.raises(renderlab.exceptions.ImageGenerationServiceUnavailableError):
            await service.generate_image(prompt="A cat")

        service.http_client.request.assert_not_awaited()


class TestUpstreamFailures:

    @pytest.mark.parametrize(
        "transport_error",
        [
            httpx.ConnectError("Connection refused"),
            httpx.TimeoutException("Timed out"),
            httpx.RemoteProtocolError("Peer closed connection"),
        ],
    )
    async def test_transport_errors_are_unavailable(self, transport_error):
        service = _make_service()
        service.http_client = AsyncMock()
        service.http_client.request = AsyncMock(side_effect=transport_error)

        with pytest.raises(renderlab.exceptions.ImageGenerationServiceUnavailableError):
            await service.generate_image(prompt="A cat")

    async def test_http_status_error(self):
        service = _make_service()
        error_response = MagicMock(spec=httpx.Response)
        error_response.status_code = 401
        response = _mock_json_response({})
        response.raise_for_status.side_effect = httpx.HTTPStatusError(
            "Unauthorized",
            request=MagicMock(),
            response=error_response,
        )
        service.http_client = AsyncMock()
        service.http_client.request = AsyncMock(return_value=response)

        with pytest.raises(renderlab.exceptions.ImageGenerationServiceUnavailableError, match="401"):
            await service.generate_image(prompt="A cat")

    async def test_non_json_body(self):
        service = _make_service()
        response = _mock_json_response(None)
        response.json.side_effect = ValueError("not json")
        service.http_client = AsyncMock()
        service.http_client.request = AsyncMock(return_value=response)

        with pytest.raises(renderlab.exceptions.ImageGenerationError, match="not JSON"):
            await service.generate_image(prompt="A cat")

    async def test_non_object_body(self):
        service = _service_answering(["unexpected"])

        with pytest.raises(renderlab.exceptions.ImageGenerationError, match="unexpected response structure"):
            await service.generate_image(prompt="A cat")


class TestHealthAndLifecycle:

    def test_check_health_requires_token(self):
        assert _make_service().check_health() is True
        assert _make_service(api_token="").check_health() is False

    async def test_close(self):
        service = _make_service()
        service.http_client = AsyncMock()

        await service.close()

        service.http_client.aclose.assert_awaited_once()
