"""API route definitions."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, Request, UploadFile, status

from imagescanner.api.middleware import verify_api_key
from imagescanner.api.schemas import (
    ErrorResponse,
    HealthResponse,
    ModelInfo,
    ModelsResponse,
    Prediction,
)
from imagescanner.errors import DecodeFailure
from imagescanner.ml.model_manager import MODEL_REGISTRY
from imagescanner.session import classify_pixels, decode_upload

if TYPE_CHECKING:
    from imagescanner.config import Settings
    from imagescanner.ml.acquisition import ClassifierProvider
    from imagescanner.ml.inference import InferencePool
    from imagescanner.ml.model_manager import ModelManager

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _get_provider(request: Request) -> ClassifierProvider:
    provider: ClassifierProvider = request.app.state.classifier_provider
    return provider


def _get_model_manager(request: Request) -> ModelManager:
    manager: ModelManager = request.app.state.model_manager
    return manager


@router.post(
    "/classify-image",
    response_model=Prediction,
    responses={
        status.HTTP_409_CONFLICT: {"model": ErrorResponse},
        status.HTTP_415_UNSUPPORTED_MEDIA_TYPE: {"model": ErrorResponse},
        DecodeFailure.status_code: {"model": ErrorResponse},
        status.HTTP_500_INTERNAL_SERVER_ERROR: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Classify an image",
)
async def classify_image(request: Request, file: UploadFile) -> Prediction:
    """Classify an uploaded image and return the top label with its confidence."""
    settings = _get_settings(request)
    pool = _get_inference_pool(request)
    provider = _get_provider(request)

    data = await file.read()
    pixels = await decode_upload(pool, settings, file.content_type, data)
    result = await classify_pixels(provider, pool, pixels)
    return Prediction(label=result.label, confidence=result.confidence, mode=provider.classifier.mode)


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = _get_settings(request)
    pool = _get_inference_pool(request)
    provider = _get_provider(request)
    manager = _get_model_manager(request)
    return HealthResponse(
        status="ok",
        gpu=settings.device == "cuda",
        model_status=provider.status,
        models_loaded=manager.get_loaded_models(),
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
    settings = _get_settings(request)

    models = [
        ModelInfo(
            name=spec.name,
            task=spec.task,
            status="active" if spec.name == settings.model_name else "available",
            license=spec.license,
            input_size=spec.input_size,
        )
        for spec in MODEL_REGISTRY.values()
    ]
    return ModelsResponse(models=models)
