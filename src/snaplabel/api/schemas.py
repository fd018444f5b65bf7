"""Pydantic request/response schemas for the SnapLabel API."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field


class AcceptedResponse(BaseModel):
    """Response for an image accepted into the pipeline."""

    status: Literal["accepted"] = "accepted"


class PredictionResponse(BaseModel):
    """Notification for the latest (or just finished) classification."""

    busy: bool
    message: str
    outcome: Literal["reported", "none", "failed"] | None = Field(
        default=None, description="None until the first run finishes"
    )
    label: str | None = None
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    error_kind: str | None = None


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    gpu: bool
    model_loaded: bool
    busy: bool


class ModelInfo(BaseModel):
    """Information about the configured model."""

    name: str
    task: str = "image_classification"
    status: str = Field(description="Model status: 'active', 'available', or 'unavailable'")
    source: str
    detail: str | None = None


class ModelsResponse(BaseModel):
    """Response for the models listing endpoint."""

    models: list[ModelInfo]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
