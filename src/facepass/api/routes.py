"""API route definitions."""

from __future__ import annotations

import base64
import binascii
import logging
from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse
from starlette.datastructures import UploadFile

from facepass.api.middleware import verify_admin_token, verify_api_key
from facepass.api.schemas import (
    ErrorResponse,
    HealthResponse,
    ModelInfo,
    ModelsResponse,
    ModelStatusInfo,
    VerifyResponse,
)
from facepass.core.authenticator import AuthAction, AuthOutcome
from facepass.errors import ModelsUnavailableError
from facepass.ml.model_manager import MODEL_REGISTRY

if TYPE_CHECKING:
    from facepass.config import Settings
    from facepass.core.authenticator import AuthResult, FaceAuthenticator
    from facepass.core.extractor import DescriptorExtractor
    from facepass.ml.inference import InferencePool
    from facepass.ml.lifecycle import ModelLifecycleManager, ModelStatus

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])

# Base64 inflates by 4/3; the slack covers a data-URL prefix and line breaks.
_BASE64_SLACK = 4096

_OUTCOME_STATUS: dict[AuthOutcome, int] = {
    AuthOutcome.SUCCESS: status.HTTP_200_OK,
    AuthOutcome.FACE_NOT_DETECTED: status.HTTP_422_UNPROCESSABLE_CONTENT,
    AuthOutcome.NO_MATCH: status.HTTP_401_UNAUTHORIZED,
}

_VERIFY_BODY: dict[str, object] = {
    "requestBody": {
        "required": True,
        "content": {
            "multipart/form-data": {
                "schema": {
                    "type": "object",
                    "properties": {
                        "action": {
                            "type": "string",
                            "enum": [a.value for a in AuthAction],
                            "default": AuthAction.AUTHENTICATE.value,
                        },
                        "file": {"type": "string", "format": "binary"},
                        "face_image": {"type": "string", "description": "Base64 image, optionally a data URL"},
                    },
                }
            }
        },
    }
}


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _get_lifecycle(request: Request) -> ModelLifecycleManager:
    lifecycle: ModelLifecycleManager = request.app.state.lifecycle
    return lifecycle


def _get_extractor(request: Request) -> DescriptorExtractor:
    extractor: DescriptorExtractor = request.app.state.extractor
    return extractor


def _get_authenticator(request: Request) -> FaceAuthenticator:
    authenticator: FaceAuthenticator = request.app.state.authenticator
    return authenticator


def _status_info(model_status: ModelStatus) -> ModelStatusInfo:
    return ModelStatusInfo(
        loaded=model_status.loaded,
        loading=model_status.loading,
        is_valid=model_status.is_valid,
        last_load_time=model_status.last_load_time,
        time_since_last_load=model_status.time_since_last_load,
        models=model_status.models,
    )


def _decode_base64_image(data: str) -> bytes:
    """Decode a base64 image, with or without a 'data:image/...;base64,' prefix."""
    payload = data.split("base64,", 1)[1] if "base64," in data else data
    try:
        return base64.b64decode(payload.strip(), validate=False)
    except (binascii.Error, ValueError) as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid image data received") from exc


async def _read_image(settings: Settings, file: UploadFile | None, face_image: str | None) -> bytes:
    if file is not None:
        image_bytes = await file.read(settings.max_file_size + 1)
    elif face_image:
        image_bytes = _decode_base64_image(face_image)
    else:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing face image")

    if len(image_bytes) > settings.max_file_size:
        raise HTTPException(
            status_code=status.HTTP_413_CONTENT_TOO_LARGE,
            detail=f"Image exceeds {settings.max_file_size} bytes",
        )
    if len(image_bytes) < settings.min_image_bytes:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid image data received")
    return image_bytes


@router.post(
    "/verify",
    response_model=VerifyResponse,
    responses={
        status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
        status.HTTP_401_UNAUTHORIZED: {"model": VerifyResponse},
        status.HTTP_413_CONTENT_TOO_LARGE: {"model": ErrorResponse},
        status.HTTP_422_UNPROCESSABLE_CONTENT: {"model": VerifyResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Register or authenticate a face",
    openapi_extra=_VERIFY_BODY,
)
async def verify(request: Request) -> JSONResponse:
    """Enrol a new identity (action=register) or match against enrolled ones.

    The form is parsed here rather than through FastAPI form parameters so a
    base64 `face_image` field may be as large as `max_file_size` allows.
    """
    settings = _get_settings(request)
    max_part_size = settings.max_file_size * 4 // 3 + _BASE64_SLACK
    async with request.form(max_part_size=max_part_size) as form:
        action = form.get("action") or AuthAction.AUTHENTICATE.value
        try:
            resolved = AuthAction(str(action))
        except ValueError:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Unknown action: {action}") from None

        file = form.get("file")
        face_image = form.get("face_image")
        image_bytes = await _read_image(
            settings,
            file if isinstance(file, UploadFile) else None,
            face_image if isinstance(face_image, str) else None,
        )

    pool = _get_inference_pool(request)
    authenticator = _get_authenticator(request)
    try:
        result: AuthResult = await pool.run(authenticator.handle, image_bytes, resolved)
    except ModelsUnavailableError as exc:
        logger.error("Face verification unavailable: %s", exc)
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"detail": "Face models are not available, try again later"},
        )
    except TimeoutError:
        logger.warning("Inference queue full, rejecting request")
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"detail": "Server busy, try again later"},
        )

    status_code = _OUTCOME_STATUS[result.outcome]
    if result.ok and result.action is AuthAction.REGISTER:
        status_code = status.HTTP_201_CREATED

    body = VerifyResponse(
        outcome=result.outcome.value,
        action=result.action.value,
        subject_id=result.subject_id,
        distance=result.distance,
    )
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status. Never triggers a model load."""
    settings = _get_settings(request)
    pool = _get_inference_pool(request)
    repository = request.app.state.repository
    return HealthResponse(
        status="ok",
        gpu=settings.device == "cuda",
        models=_status_info(_get_lifecycle(request).status()),
        cache_size=len(_get_extractor(request).cache),
        enrolled=repository.count(),
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )


@router.post(
    "/models/load",
    response_model=ModelStatusInfo,
    responses={status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse}},
    summary="Load the face models if needed",
)
async def load_models(request: Request) -> ModelStatusInfo:
    """Ensure models are loaded and fresh, then report their status."""
    lifecycle = _get_lifecycle(request)
    try:
        await _get_inference_pool(request).run(lifecycle.ensure_loaded)
    except ModelsUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except TimeoutError:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Server busy") from None
    return _status_info(lifecycle.status())


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List available models",
)
async def list_models(request: Request) -> ModelsResponse:
    """Return available models and their status based on current configuration."""
    settings = _get_settings(request)
    active_models = {
        settings.face_detection_model,
        settings.face_landmark_model,
        settings.face_recognition_model,
    }

    models: list[ModelInfo] = []
    for spec in MODEL_REGISTRY.values():
        if spec.name in active_models:
            model_status = "active"
        elif spec.insightface and not settings.accept_insightface_license:
            model_status = "requires_license"
        else:
            model_status = "available"

        models.append(
            ModelInfo(
                name=spec.name,
                task=spec.task.value,
                status=model_status,
                license=spec.license,
            )
        )

    return ModelsResponse(models=models)


@router.delete(
    "/cache",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(verify_admin_token)],
    summary="Clear the descriptor cache",
)
async def clear_cache(request: Request) -> Response:
    """Drop every memoized descriptor (admin/debug)."""
    cache = _get_extractor(request).cache
    cleared = len(cache)
    cache.clear()
    logger.info("Descriptor cache cleared (%d entries)", cleared)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
