"""Pydantic request/response schemas for the FacePass API."""

from __future__ import annotations

from datetime import datetime  # noqa: TC003

from pydantic import BaseModel, Field


class VerifyResponse(BaseModel):
    """Outcome of a register or authenticate request."""

    outcome: str = Field(description="'success', 'face-not-detected' or 'no-match'")
    action: str = Field(description="'authenticate' or 'register'")
    subject_id: str | None = Field(default=None, description="Enrolled or matched subject identifier")
    distance: float | None = Field(default=None, ge=0.0, description="Euclidean distance of the match")


class ModelStatusInfo(BaseModel):
    """Model lifecycle state."""

    loaded: bool
    loading: bool
    is_valid: bool
    last_load_time: datetime | None
    time_since_last_load: float | None = Field(description="Seconds since the last successful load")
    models: list[str]


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    gpu: bool
    models: ModelStatusInfo
    cache_size: int
    enrolled: int
    concurrent_requests: int
    queue_depth: int


class ModelInfo(BaseModel):
    """Information about an available model."""

    name: str
    task: str = Field(description="Model task: 'face_detection', 'face_landmarks' or 'face_recognition'")
    status: str = Field(description="Model status: 'active', 'available', or 'requires_license'")
    license: str


class ModelsResponse(BaseModel):
    """Response for the models listing endpoint."""

    models: list[ModelInfo]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
