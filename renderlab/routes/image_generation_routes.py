"""
Route definitions for the image generation endpoint.

``POST /v1/images/generations`` turns one request into one prediction on
the inference provider.  The prediction is never called directly: it is
submitted to the process-wide ``RequestQueue`` as a work item, so the
handler either

- runs it at once when an execution slot is free,
- waits in the FIFO backlog until a slot frees up, or
- fails fast with 429 ``queue_full`` when the backlog is full.

A failed prediction surfaces as 502 ``image_generation_failed``; the queue
passes it through untouched and nothing is retried.
"""

import functools
import time
import typing

import fastapi
import fastapi.responses

import renderlab.dependencies
import renderlab.models
import renderlab.rate_limiting
import renderlab.request_queue
import renderlab.services.image_generation_service

image_generation_router = fastapi.APIRouter(
    prefix="/v1/images",
    tags=["Image Generation"],
)


@image_generation_router.post(
    "/generations",
    response_model=renderlab.models.ImageGenerationResponse,
    summary="Generate an image from a text prompt",
    description=(
        "Runs one prediction on the image generation provider. The call "
        "goes through the request queue, which bounds concurrent provider "
        "calls and rejects requests once its backlog is full."
    ),
    status_code=200,
    responses={
        400: {
            "description": (
                "Bad Request — the request body contains invalid JSON "
                "(``invalid_request_json``) or fails schema validation "
                "(``request_validation_failed``)."
            ),
            "model": renderlab.models.ErrorResponse,
        },
        429: {
            "description": (
                "Too Many Requests — either the per-IP rate limit has been "
                "exceeded (``rate_limit_exceeded``) or the request queue is "
                "full (``queue_full``). The ``Retry-After`` header indicates "
                "how long to wait before retrying."
            ),
            "model": renderlab.models.ErrorResponse,
        },
        502: {
            "description": (
                "Bad Gateway — the prediction failed "
                "(``image_generation_failed``) or the provider could not be "
                "used (``upstream_service_unavailable``)."
            ),
            "model": renderlab.models.ErrorResponse,
        },
        504: {
            "description": (
                "Gateway Timeout — the request, including time spent waiting "
                "in the queue, exceeded the end-to-end timeout "
                "(``request_timeout``)."
            ),
            "model": renderlab.models.ErrorResponse,
        },
    },
)
@renderlab.rate_limiting.inference_rate_limit
async def handle_image_generation_request(
    request: fastapi.Request,
    image_generation_request: renderlab.models.ImageGenerationRequest,
    image_generation_service: typing.Annotated[
        renderlab.services.image_generation_service.ImageGenerationService,
        fastapi.Depends(renderlab.dependencies.get_image_generation_service),
    ],
    request_queue: typing.Annotated[
        renderlab.request_queue.RequestQueue,
        fastapi.Depends(renderlab.dependencies.get_request_queue),
    ],
) -> fastapi.responses.JSONResponse:
    """
    Submit one prediction through the request queue and return its output
    URLs.  The response carries ``Cache-Control: no-store``.
    """
    generation_result = await request_queue.submit(
        functools.partial(
            image_generation_service.generate_image,
            prompt=image_generation_request.prompt,
            model=image_generation_request.model,
            image_urls=[str(image_url) for image_url in image_generation_request.image_urls],
            negative_prompt=image_generation_request.negative_prompt,
            guidance_scale=image_generation_request.guidance_scale,
            number_of_inference_steps=image_generation_request.number_of_inference_steps,
        ),
    )

    response_model = renderlab.models.ImageGenerationResponse(
        created=int(time.time()),
        prompt=image_generation_request.prompt,
        model=generation_result.model,
        output_urls=generation_result.output_urls,
    )

    return fastapi.responses.JSONResponse(
        content=response_model.model_dump(),
        headers={"Cache-Control": "no-store"},
    )
