"""
Service for running image generation predictions on Replicate.

A generation is one Replicate *prediction*: the service creates it with
``POST /v1/predictions`` and then polls the prediction's ``urls.get``
endpoint until it reaches a terminal status (``succeeded``, ``failed`` or
``canceled``) or the configured number of poll attempts is used up.

Each call to ``generate_image`` is independent, which makes the service
safe to share between concurrently running work items of the request
queue.  The queue treats the call as an opaque unit of work; this module
does not know about the queue.

Failure mapping
---------------
- No API token, connection failures, timeouts, and non-success HTTP
  status codes raise ``ImageGenerationServiceUnavailableError`` (HTTP 502,
  ``upstream_service_unavailable``).
- A prediction that fails, is cancelled, never finishes within the poll
  budget, or succeeds without an image URL raises ``ImageGenerationError``
  (HTTP 502, ``image_generation_failed``).

Neither is retried here; retry policy belongs to the client.
"""

import asyncio
import dataclasses
import typing

import httpx
import structlog

import renderlab.exceptions

logger = structlog.get_logger()

DEFAULT_REPLICATE_API_BASE_URL = "https://api.replicate.com"

_TERMINAL_PREDICTION_STATUSES = frozenset({"succeeded", "failed", "canceled"})


@dataclasses.dataclass(frozen=True)
class ImageGenerationResult:
    """Outcome of a successful prediction."""

    prediction_id: str
    model: str
    output_urls: list[str]


def extract_output_urls(prediction_output: typing.Any) -> list[str]:
    """
    Normalise the ``output`` field of a prediction into a list of URLs.

    Models disagree on the shape of their output: a single URL string, a
    list of URL strings, or an object with an ``image`` or ``images`` key
    are all seen in practice.  Anything that is not a string is ignored.
    """
    if isinstance(prediction_output, str):
        return [prediction_output] if prediction_output else []

    if isinstance(prediction_output, list):
        return [output_item for output_item in prediction_output if isinstance(output_item, str) and output_item]

    if isinstance(prediction_output, dict):
        if isinstance(prediction_output.get("image"), str):
            return [prediction_output["image"]]
        if isinstance(prediction_output.get("images"), list):
            return extract_output_urls(prediction_output["images"])

    return []


def _describe_prediction_error(prediction: dict) -> str:
    prediction_error = prediction.get("error")
    if isinstance(prediction_error, dict):
        prediction_error = prediction_error.get("detail")
    return str(prediction_error or prediction.get("status") or "unknown error")


class ImageGenerationService:
    """
    Asynchronous HTTP client for the Replicate predictions API.

    Holds a persistent ``httpx.AsyncClient``.  The client must be closed
    with ``close`` when the application shuts down.
    """

    def __init__(
        self,
        api_token: str,
        default_model_version: str,
        replicate_api_base_url: str = DEFAULT_REPLICATE_API_BASE_URL,
        request_timeout_seconds: float = 60.0,
        poll_interval_seconds: float = 2.0,
        maximum_poll_attempts: int = 60,
        connection_pool_size: int = 100,
    ) -> None:
        """
        Initialise the image generation service.

        Args:
            api_token: Replicate API token.  An empty token leaves the
                service constructed but unusable: every generation raises
                ``ImageGenerationServiceUnavailableError`` and the
                readiness probe reports the backend as unavailable.
            default_model_version: Model version used when a request does
                not name one.
            replicate_api_base_url: Base URL of the Replicate API.
            request_timeout_seconds: Timeout for each individual HTTP
                request (creation and every poll), not the whole prediction.
            poll_interval_seconds: Delay between two polls of a running
                prediction.
            maximum_poll_attempts: Number of polls after which a prediction
                that is still running is reported as failed.
            connection_pool_size: Maximum number of pooled connections.
                Should be at least the queue's ``maximum_concurrent``.
        """
        self._api_token = api_token
        self.default_model_version = default_model_version
        self._poll_interval_seconds = poll_interval_seconds
        self._maximum_poll_attempts = maximum_poll_attempts
        self.http_client = httpx.AsyncClient(
            base_url=replicate_api_base_url,
            timeout=httpx.Timeout(request_timeout_seconds),
            limits=httpx.Limits(
                max_connections=connection_pool_size,
                max_keepalive_connections=connection_pool_size,
            ),
            headers={"Authorization": f"Token {api_token}"},
        )

    async def generate_image(
        self,
        prompt: str,
        model: str | None = None,
        image_urls: typing.Sequence[str] = (),
        negative_prompt: str | None = None,
        guidance_scale: float | None = None,
        number_of_inference_steps: int | None = None,
    ) -> ImageGenerationResult:
        """
        Create a prediction and wait for it to finish.

        Reference images are sent under every input name commonly used by
        image-to-image models (``image``, ``image_input``, ``input_image``,
        ``init_image``) so the same request works across models.

        Raises:
            ImageGenerationServiceUnavailableError:
                When the provider cannot be reached or rejects the request.
            ImageGenerationError:
                When the prediction does not produce an image.
        """
        if not self._api_token:
            raise renderlab.exceptions.ImageGenerationServiceUnavailableError(
                detail="The image generation provider API token is not configured.",
            )

        model_version = model or self.default_model_version

        prediction_input: dict[str, typing.Any] = {"prompt": prompt}
        if image_urls:
            prediction_input["image"] = image_urls[0]
            prediction_input["image_input"] = list(image_urls)
            prediction_input["input_image"] = list(image_urls)
            prediction_input["init_image"] = image_urls[0]
        if negative_prompt:
            prediction_input["negative_prompt"] = negative_prompt
        if guidance_scale is not None:
            prediction_input["guidance_scale"] = guidance_scale
        if number_of_inference_steps is not None:
            prediction_input["num_inference_steps"] = number_of_inference_steps

        logger.info(
            "image_generation_initiated",
            model=model_version,
            prompt_length=len(prompt),
            reference_image_count=len(image_urls),
        )

        prediction = await self._send_request(
            "POST",
            "/v1/predictions",
            json={"version": model_version, "input": prediction_input},
        )

        prediction_id = prediction.get("id")
        poll_url = (prediction.get("urls") or {}).get("get") or (
            f"/v1/predictions/{prediction_id}" if prediction_id else None
        )
        if poll_url is None:
            raise renderlab.exceptions.ImageGenerationError(
                detail="The image generation provider did not return a prediction identifier.",
            )

        poll_attempt = 0
        while prediction.get("status") not in _TERMINAL_PREDICTION_STATUSES:
            if poll_attempt >= self._maximum_poll_attempts:
                logger.error(
                    "image_generation_poll_budget_exhausted",
                    prediction_id=prediction_id,
                    poll_attempts=poll_attempt,
                )
                raise renderlab.exceptions.ImageGenerationError(
                    detail=(f"The prediction did not complete after {self._maximum_poll_attempts} status checks."),
                )
            await asyncio.sleep(self._poll_interval_seconds)
            prediction = await self._send_request("GET", poll_url)
            poll_attempt += 1

        if prediction.get("status") != "succeeded":
            error_description = _describe_prediction_error(prediction)
            logger.error(
                "image_generation_prediction_failed",
                prediction_id=prediction_id,
                status=prediction.get("status"),
                error=error_description,
            )
            raise renderlab.exceptions.ImageGenerationError(
                detail=f"Image generation failed: {error_description}",
            )

        output_urls = extract_output_urls(prediction.get("output"))
        if not output_urls:
            raise renderlab.exceptions.ImageGenerationError(
                detail="The prediction succeeded but returned no image URL.",
            )

        logger.info(
            "image_generation_completed",
            prediction_id=prediction_id,
            poll_attempts=poll_attempt,
            output_count=len(output_urls),
        )

        return ImageGenerationResult(
            prediction_id=str(prediction_id),
            model=model_version,
            output_urls=output_urls,
        )

    async def _send_request(self, method: str, url: str, **request_keyword_arguments: typing.Any) -> dict:
        try:
            http_response = await self.http_client.request(method, url, **request_keyword_arguments)
            http_response.raise_for_status()
        except httpx.ConnectError as connection_error:
            logger.error("replicate_connection_failed", error=str(connection_error))
            raise renderlab.exceptions.ImageGenerationServiceUnavailableError(
                detail="The image generation provider is not reachable.",
            ) from connection_error
        except httpx.HTTPStatusError as http_status_error:
            logger.error(
                "replicate_http_error",
                status_code=http_status_error.response.status_code,
            )
            raise renderlab.exceptions.ImageGenerationServiceUnavailableError(
                detail=(
                    f"The image generation provider returned HTTP status {http_status_error.response.status_code}."
                ),
            ) from http_status_error
        except httpx.TimeoutException as timeout_error:
            logger.error("replicate_timeout", error=str(timeout_error))
            raise renderlab.exceptions.ImageGenerationServiceUnavailableError(
                detail="The request to the image generation provider timed out.",
            ) from timeout_error
        except httpx.RequestError as request_error:
            logger.error(
                "replicate_request_failed",
                error_type=type(request_error).__name__,
                error=str(request_error),
            )
            raise renderlab.exceptions.ImageGenerationServiceUnavailableError(
                detail=(
                    f"An unexpected communication error occurred with the "
                    f"image generation provider: {type(request_error).__name__}."
                ),
            ) from request_error

        try:
            response_body = http_response.json()
        except ValueError as decoding_error:
            raise renderlab.exceptions.ImageGenerationError(
                detail="The image generation provider returned a response that is not JSON.",
            ) from decoding_error

        if not isinstance(response_body, dict):
            raise renderlab.exceptions.ImageGenerationError(
                detail="The image generation provider returned an unexpected response structure.",
            )
        return response_body

    def check_health(self) -> bool:
        """Return ``True`` when an API token is configured."""
        return bool(self._api_token)

    async def close(self) -> None:
        """Close the underlying HTTP client and release its connections."""
        await self.http_client.aclose()
