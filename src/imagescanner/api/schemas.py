"""Pydantic request/response schemas for the ImageScanner API."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class Prediction(BaseModel):
    """Top-1 classification result."""

    label: str
    confidence: str = Field(description="Percentage with two decimals, e.g. '70.00'")
    mode: str = Field(description="'model' for real inference, 'demo' for the fallback")


class NotificationOut(BaseModel):
    id: str
    level: str
    message: str


class SelectedImageOut(BaseModel):
    image_id: str
    filename: str
    media_type: str
    width: int
    height: int


class SessionResponse(BaseModel):
    """Everything the browser page needs to render."""

    model_config = ConfigDict(protected_namespaces=())

    model_status: str = Field(description="'loading', 'ready' or 'degraded'")
    model_loading: bool
    demo_mode: bool
    analyzing: bool
    can_analyze: bool
    image: SelectedImageOut | None = None
    result: Prediction | None = None
    notifications: list[NotificationOut]


class HealthResponse(BaseModel):
    """Health check response."""

    model_config = ConfigDict(protected_namespaces=())

    status: str = "ok"
    gpu: bool
    model_status: str
    models_loaded: list[str]
    concurrent_requests: int
    queue_depth: int


class ModelInfo(BaseModel):
    """Information about an available model."""

    name: str
    task: str = Field(description="Model task, currently always 'image_classification'")
    status: str = Field(description="Model status: 'active' or 'available'")
    license: str
    input_size: int


class ModelsResponse(BaseModel):
    """Response for the models listing endpoint."""

    models: list[ModelInfo]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
