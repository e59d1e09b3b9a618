"""Model lifecycle: load once, share across requests, reconfirm when stale.

One :class:`ModelLifecycleManager` is owned by the application and handed to
the descriptor extractor. Concurrent callers that arrive while a load is in
progress wait on the same future instead of starting their own load.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from facepass.errors import ModelsUnavailableError
from facepass.ml.face_detector import RetinaFaceDetector
from facepass.ml.face_landmarks import Landmark68
from facepass.ml.face_recognizer import ArcFaceRecognizer
from facepass.ml.model_manager import ModelTask, get_spec

if TYPE_CHECKING:
    from collections.abc import Callable

    from onnxruntime import InferenceSession

    from facepass.config import Settings
    from facepass.ml.face_detector import FaceDetector
    from facepass.ml.face_landmarks import FaceLandmarker
    from facepass.ml.face_recognizer import FaceRecognizer
    from facepass.ml.model_manager import ModelManager

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LoadedModels:
    """The model set one extraction runs against."""

    detector: FaceDetector
    recognizer: FaceRecognizer
    landmarker: FaceLandmarker | None = None

    @property
    def names(self) -> list[str]:
        names = [self.detector.model_name]
        if self.landmarker is not None:
            names.append(self.landmarker.model_name)
        names.append(self.recognizer.model_name)
        return names


@dataclass(frozen=True)
class ModelStatus:
    """Snapshot of the lifecycle state for health checks."""

    loaded: bool
    loading: bool
    is_valid: bool
    last_load_time: datetime | None = None
    time_since_last_load: float | None = None
    models: list[str] = field(default_factory=list)


class ModelLifecycleManager:
    """Loads the detector, landmark and recognition models as one unit."""

    def __init__(
        self,
        model_manager: ModelManager,
        settings: Settings,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._model_manager = model_manager
        self._settings = settings
        self._clock = clock

        self._lock = threading.Lock()
        self._models: LoadedModels | None = None
        self._loaded_at: float | None = None
        self._loaded_at_wall: datetime | None = None
        self._inflight: Future[LoadedModels] | None = None

    # -- Public API ---------------------------------------------------------

    def ensure_loaded(self) -> LoadedModels:
        """Return loaded models, loading them if absent or stale.

        Raises:
            ModelsUnavailableError: If loading failed. State is reset so a
                later call retries.
        """
        with self._lock:
            if self._models is not None and self._is_fresh():
                return self._models
            future = self._inflight
            owner = future is None
            if future is None:
                future = Future()
                self._inflight = future

        if not owner:
            logger.debug("Models already loading, waiting for completion")
            return future.result()

        logger.info("Loading face models...")
        started = time.perf_counter()
        try:
            models = self._load_all()
        except Exception as exc:
            logger.exception("Error loading face models")
            error = ModelsUnavailableError(f"Face models failed to load: {exc}")
            error.__cause__ = exc
            with self._lock:
                self._models = None
                self._loaded_at = None
                self._loaded_at_wall = None
                self._inflight = None
            future.set_exception(error)
            raise error

        with self._lock:
            self._models = models
            self._loaded_at = self._clock()
            self._loaded_at_wall = datetime.now(UTC)
            self._inflight = None
        future.set_result(models)
        elapsed_ms = (time.perf_counter() - started) * 1000
        logger.info("Face models loaded (%s) in %.1f ms", ", ".join(models.names), elapsed_ms)
        return models

    def status(self) -> ModelStatus:
        """Report the current state without triggering a load."""
        with self._lock:
            loaded = self._models is not None
            since = self._clock() - self._loaded_at if loaded and self._loaded_at is not None else None
            return ModelStatus(
                loaded=loaded,
                loading=self._inflight is not None,
                is_valid=loaded and self._is_fresh(),
                last_load_time=self._loaded_at_wall,
                time_since_last_load=since,
                models=self._models.names if self._models is not None else [],
            )

    def invalidate(self) -> None:
        """Drop the loaded models; the next ``ensure_loaded`` reloads them."""
        with self._lock:
            self._models = None
            self._loaded_at = None
            self._loaded_at_wall = None
        logger.info("Face models released")

    # -- Internal -----------------------------------------------------------

    def _is_fresh(self) -> bool:
        validity = self._settings.model_validity
        if self._loaded_at is None:
            return False
        if validity == 0:
            return True
        return (self._clock() - self._loaded_at) < validity

    def _load_all(self) -> LoadedModels:
        settings = self._settings
        with ThreadPoolExecutor(max_workers=3, thread_name_prefix="model-load") as pool:
            # Detector first: it is the first model every extraction needs.
            detector_future = pool.submit(self._load_detector, settings.face_detection_model)
            landmark_future = (
                pool.submit(self._load_landmarker, settings.face_landmark_model)
                if settings.face_landmark_model
                else None
            )
            recognizer_future = pool.submit(self._load_recognizer, settings.face_recognition_model)

            detector = detector_future.result()
            landmarker = landmark_future.result() if landmark_future is not None else None
            recognizer = recognizer_future.result()

        return LoadedModels(detector=detector, recognizer=recognizer, landmarker=landmarker)

    def _session_for(self, model_name: str, task: ModelTask) -> InferenceSession:
        spec = get_spec(model_name)
        if spec.task != task:
            raise ValueError(f"Model '{model_name}' is a {spec.task} model, expected {task}")
        return self._model_manager.load(model_name)

    def _load_detector(self, model_name: str) -> FaceDetector:
        session = self._session_for(model_name, ModelTask.FACE_DETECTION)
        return RetinaFaceDetector(
            session,
            model_name,
            input_size=self._settings.detection_input_size,
            score_threshold=self._settings.detection_threshold,
            nms_threshold=self._settings.nms_threshold,
            scores_are_logits=get_spec(model_name).scores_are_logits,
        )

    def _load_landmarker(self, model_name: str) -> FaceLandmarker:
        return Landmark68(self._session_for(model_name, ModelTask.FACE_LANDMARKS), model_name)

    def _load_recognizer(self, model_name: str) -> FaceRecognizer:
        return ArcFaceRecognizer(self._session_for(model_name, ModelTask.FACE_RECOGNITION), model_name)
