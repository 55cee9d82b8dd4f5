"""API route definitions."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Annotated

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse

from snaptag.api.dependencies import (
    get_app_settings,
    get_model_status,
    get_pipeline,
    read_image_upload,
    verify_api_key,
)
from snaptag.api.schemas import (
    ClassifyImageResponse,
    ErrorResponse,
    HealthResponse,
    ImageTag,
    ModelInfo,
    ModelsResponse,
)
from snaptag.api.state import AwaitingOwner, ModelStatus
from snaptag.config import Settings  # noqa: TC001
from snaptag.ml.image_classifier import Failure
from snaptag.ml.model_manager import MODEL_REGISTRY
from snaptag.pipeline import ClassificationPipeline  # noqa: TC001
from snaptag.view import render_outcome

if TYPE_CHECKING:
    from snaptag.ml.image_classifier import Outcome

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])

SettingsDep = Annotated[Settings, Depends(get_app_settings)]
PipelineDep = Annotated[ClassificationPipeline, Depends(get_pipeline)]
ModelStatusDep = Annotated[ModelStatus, Depends(get_model_status)]
ImageBytes = Annotated[bytes, Depends(read_image_upload)]


def _error(status_code: int, detail: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": detail})


@router.post(
    "/classify-image",
    response_model=ClassifyImageResponse,
    responses={
        status.HTTP_413_REQUEST_ENTITY_TOO_LARGE: {"model": ErrorResponse},
        status.HTTP_422_UNPROCESSABLE_ENTITY: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Classify an image with tags",
)
async def classify_image(
    image: ImageBytes,
    settings: SettingsDep,
    pipeline: PipelineDep,
    model_status: ModelStatusDep,
) -> ClassifyImageResponse | JSONResponse:
    """Classify an uploaded image and return ranked tags."""
    if not pipeline.ready:
        return _error(
            status.HTTP_503_SERVICE_UNAVAILABLE,
            model_status.load_error or "Classification model is not loaded",
        )

    future: asyncio.Future[Outcome] = asyncio.get_running_loop().create_future()
    owner = AwaitingOwner(future)
    pipeline.submit(image, owner=owner)
    try:
        outcome = await asyncio.wait_for(future, timeout=settings.request_timeout)
    except TimeoutError:
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, "Classification timed out")

    if isinstance(outcome, Failure):
        return _error(status.HTTP_422_UNPROCESSABLE_ENTITY, outcome.message)

    return ClassifyImageResponse(
        model=pipeline.model.model_name if pipeline.model is not None else settings.model_name,
        tags=[ImageTag(label=label.identifier, confidence=label.confidence) for label in outcome.labels],
        lines=render_outcome(outcome),
    )


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(settings: SettingsDep, pipeline: PipelineDep, model_status: ModelStatusDep) -> HealthResponse:
    """Return service health status."""
    return HealthResponse(
        status="ok" if pipeline.ready else "degraded",
        gpu=settings.device == "cuda",
        model_loaded=pipeline.model.model_name if pipeline.model is not None else None,
        load_error=model_status.load_error,
        concurrent_requests=pipeline.executor.active_count,
        queue_depth=pipeline.executor.queue_depth,
    )


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List available models",
)
async def list_models(settings: SettingsDep) -> ModelsResponse:
    """Return registered classification models and which one is configured."""
    return ModelsResponse(
        models=[
            ModelInfo(
                name=spec.name,
                status="active" if spec.name == settings.model_name else "available",
                license=spec.license,
            )
            for spec in MODEL_REGISTRY.values()
        ]
    )
