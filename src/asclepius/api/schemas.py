"""Pydantic request/response schemas for the Asclepius API."""

from __future__ import annotations

from pydantic import BaseModel, Field


class ImageTag(BaseModel):
    """A single predicted label with confidence score."""

    label: str
    score: float = Field(ge=0.0, le=1.0)
    percentage: str = Field(description="Score formatted as a whole percentage, e.g. '82%'")


class ClassifyImageResponse(BaseModel):
    """Response for the image classification endpoint."""

    model: str
    results: list[ImageTag] = Field(description="Predictions sorted by score (descending)")
    summary: str = Field(description="One line per prediction: label and percentage")


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(description="'ok' when the model is loaded, otherwise 'degraded'")
    model_state: str
    gpu: bool
    models_loaded: list[str]
    concurrent_requests: int
    queue_depth: int


class ModelInfo(BaseModel):
    """Information about an available model."""

    name: str
    task: str
    status: str = Field(description="Model status: 'active' or 'available'")
    license: str


class ModelsResponse(BaseModel):
    """Response for the models listing endpoint."""

    models: list[ModelInfo]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
