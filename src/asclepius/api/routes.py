"""API route definitions."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Annotated

from fastapi import APIRouter, Depends, Form, Request, UploadFile, status
from fastapi.responses import JSONResponse

from asclepius.api.dependencies import (
    get_adapter,
    get_inference_pool,
    get_model_manager,
    get_settings,
    verify_api_key,
)
from asclepius.api.schemas import (
    ClassifyImageResponse,
    ErrorResponse,
    HealthResponse,
    ImageTag,
    ModelInfo,
    ModelsResponse,
)
from asclepius.errors import ImageDecodeError
from asclepius.ml.classification_adapter import ModelState
from asclepius.ml.model_manager import resolve_spec
from asclepius.ml.preprocessing import CropBox, crop_image, load_image
from asclepius.ml.results import FailureReason, Success, format_results

if TYPE_CHECKING:
    from asclepius.ml.classification_adapter import ClassificationAdapter
    from asclepius.ml.results import Outcome

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])

_FAILURE_STATUS: dict[FailureReason, int] = {
    FailureReason.IMAGE_DECODE: status.HTTP_422_UNPROCESSABLE_CONTENT,
    FailureReason.MODEL_LOAD: status.HTTP_503_SERVICE_UNAVAILABLE,
    FailureReason.INFERENCE: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def _error(status_code: int, detail: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": detail})


def _classify_upload(
    adapter: ClassificationAdapter,
    data: bytes,
    box: CropBox | None,
    max_pixels: int,
) -> Outcome:
    """Decode, optionally crop, and classify. Runs on the inference pool."""
    if box is None:
        return adapter.classify_source(data, max_pixels=max_pixels)

    try:
        pixels = crop_image(load_image(data, max_pixels=max_pixels), box)
    except ImageDecodeError as exc:
        logger.warning("Image decode failed: %s", exc)
        pixels = None
    return adapter.classify(pixels)


@router.post(
    "/classify-image",
    response_model=ClassifyImageResponse,
    responses={
        status.HTTP_413_CONTENT_TOO_LARGE: {"model": ErrorResponse},
        status.HTTP_422_UNPROCESSABLE_CONTENT: {"model": ErrorResponse},
        status.HTTP_500_INTERNAL_SERVER_ERROR: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Classify an image",
)
async def classify_image(
    request: Request,
    file: UploadFile,
    crop_left: Annotated[float | None, Form()] = None,
    crop_top: Annotated[float | None, Form()] = None,
    crop_right: Annotated[float | None, Form()] = None,
    crop_bottom: Annotated[float | None, Form()] = None,
) -> ClassifyImageResponse | JSONResponse:
    """Classify an uploaded image, optionally cropped to a relative box first."""
    settings = get_settings(request)
    adapter = get_adapter(request)
    pool = get_inference_pool(request)

    box: CropBox | None = None
    if any(value is not None for value in (crop_left, crop_top, crop_right, crop_bottom)):
        try:
            box = CropBox(
                left=crop_left if crop_left is not None else 0.0,
                top=crop_top if crop_top is not None else 0.0,
                right=crop_right if crop_right is not None else 1.0,
                bottom=crop_bottom if crop_bottom is not None else 1.0,
            )
        except ValueError as exc:
            return _error(status.HTTP_422_UNPROCESSABLE_CONTENT, str(exc))

    data = await file.read(settings.max_file_size + 1)
    if len(data) > settings.max_file_size:
        return _error(
            status.HTTP_413_CONTENT_TOO_LARGE,
            f"File exceeds {settings.max_file_size} bytes",
        )

    try:
        outcome = await pool.run(_classify_upload, adapter, data, box, settings.max_image_pixels)
    except TimeoutError:
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, "Inference queue is full, retry later")

    if not isinstance(outcome, Success):
        return _error(_FAILURE_STATUS[outcome.reason], outcome.message)

    result = outcome.result
    return ClassifyImageResponse(
        model=adapter.model_name,
        results=[ImageTag(label=item.label, score=item.score, percentage=item.percentage) for item in result],
        summary=format_results(result),
    )


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = get_settings(request)
    pool = get_inference_pool(request)
    adapter = get_adapter(request)
    loaded = adapter.state == ModelState.LOADED
    return HealthResponse(
        status="ok" if loaded else "degraded",
        model_state=adapter.state.value,
        gpu=settings.device == "cuda",
        models_loaded=[adapter.model_name] if loaded else [],
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List available models",
)
async def list_models(request: Request) -> ModelsResponse:
    """Return registered models, marking the configured one as active."""
    settings = get_settings(request)
    manager = get_model_manager(request)

    specs = manager.available_models()
    try:
        active = resolve_spec(settings.model_name)
    except KeyError:
        logger.warning("Configured model %s is not registered", settings.model_name)
        active = None
    if active is not None and active not in specs:
        specs.append(active)

    models = [
        ModelInfo(
            name=spec.name,
            task=spec.task.value,
            status="active" if spec == active else "available",
            license=spec.license,
        )
        for spec in specs
    ]
    return ModelsResponse(models=models)
