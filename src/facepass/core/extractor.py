"""Descriptor extraction: image bytes in, one face descriptor out.

Pipeline:
    ensure models -> cache lookup -> decode -> downscale -> detect
    -> crop (original resolution, with margin) -> landmarks -> align -> embed -> cache

Detection runs on an image whose longer side is at most
``detection_input_size`` pixels (320 by default). Smaller working images
detect faster at the cost of missing small faces; the crop for the
descriptor is always taken from the full-resolution original.
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING

import numpy as np

from facepass.core.cache import DescriptorCache, content_key
from facepass.errors import DescriptorComputationFailedError, ModelsUnavailableError, NoFaceDetectedError
from facepass.ml.face_detector import RawDetection
from facepass.ml.preprocessing import align_face, crop, decode_image, downscale, expand_box

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from facepass.config import Settings
    from facepass.ml.lifecycle import LoadedModels, ModelLifecycleManager

logger = logging.getLogger(__name__)

_WARMUP_SIZE = 150


class DescriptorExtractor:
    """Turns raw image bytes into a read-only face descriptor."""

    def __init__(
        self,
        lifecycle: ModelLifecycleManager,
        settings: Settings,
        cache: DescriptorCache | None = None,
    ) -> None:
        self._lifecycle = lifecycle
        self._settings = settings
        self._cache = cache if cache is not None else DescriptorCache(settings.descriptor_cache_size)

    @property
    def cache(self) -> DescriptorCache:
        return self._cache

    def extract(self, image_bytes: bytes) -> NDArray[np.float32]:
        """Compute the descriptor of the most confident face in ``image_bytes``.

        Raises:
            ModelsUnavailableError: If the models cannot be loaded.
            InvalidImageError: If the bytes are not a decodable image.
            NoFaceDetectedError: If no face passes the detection threshold.
            DescriptorComputationFailedError: If alignment or embedding fails.
        """
        models = self._lifecycle.ensure_loaded()

        key = content_key(image_bytes)
        cached = self._cache.get(key)
        if cached is not None:
            logger.debug("Using cached face descriptor %s", key[:8])
            return cached

        started = time.perf_counter()
        image = decode_image(image_bytes, self._settings.max_image_pixels)
        detection = self._detect(models, image)
        descriptor = self._describe(models, image, detection)

        self._cache.put(key, descriptor)
        logger.info(
            "Extracted %d-d descriptor (score=%.3f) in %.1f ms",
            descriptor.size,
            detection.score,
            (time.perf_counter() - started) * 1000,
        )
        return descriptor

    def warmup(self) -> None:
        """Run the detector once so the first real request skips session warm-up."""
        models = self._lifecycle.ensure_loaded()
        blank = np.full((_WARMUP_SIZE, _WARMUP_SIZE, 3), 255, dtype=np.uint8)
        try:
            models.detector.detect(blank)
        except Exception:
            logger.warning("Model warmup failed", exc_info=True)
            return
        logger.info("Models warmed up")

    # -- Internal -----------------------------------------------------------

    def _detect(self, models: LoadedModels, image: NDArray[np.uint8]) -> RawDetection:
        working, scale = downscale(image, self._settings.detection_input_size)
        try:
            detections = models.detector.detect(working)
        except Exception as exc:
            logger.error("Face detector failed: %s", exc, exc_info=True)
            raise ModelsUnavailableError(f"Face detector failed: {exc}") from exc
        if not detections:
            logger.info("No face detected (%dx%d)", image.shape[1], image.shape[0])
            raise NoFaceDetectedError("No face detected")

        best = max(detections, key=lambda d: d.score)
        return RawDetection(
            bbox=np.asarray(best.bbox, dtype=np.float32) / scale,
            score=best.score,
            landmarks=np.asarray(best.landmarks, dtype=np.float32) / scale,
        )

    def _describe(
        self, models: LoadedModels, image: NDArray[np.uint8], detection: RawDetection
    ) -> NDArray[np.float32]:
        height, width = image.shape[:2]
        box = expand_box(detection.bbox, self._settings.crop_margin, width, height)
        face = crop(image, box)

        try:
            if models.landmarker is not None:
                landmarks = models.landmarker.locate(face)
            else:
                landmarks = detection.landmarks - np.array(box[:2], dtype=np.float32)

            aligned = align_face(face, landmarks, models.recognizer.input_size)
            if aligned is None:
                raise DescriptorComputationFailedError("Face alignment failed")

            embedding = models.recognizer.get_embeddings(aligned[np.newaxis, ...])[0]
        except DescriptorComputationFailedError:
            logger.warning("Face detected but descriptor extraction failed: alignment")
            raise
        except Exception as exc:
            logger.warning("Face detected but descriptor extraction failed: %s", exc, exc_info=True)
            raise DescriptorComputationFailedError(f"Descriptor computation failed: {exc}") from exc

        descriptor = np.array(embedding, dtype=np.float32).reshape(-1)
        if descriptor.size == 0 or not np.all(np.isfinite(descriptor)) or not np.any(descriptor):
            logger.warning("Face detected but recognizer returned an unusable embedding")
            raise DescriptorComputationFailedError("Recognizer returned an unusable embedding")

        descriptor.flags.writeable = False
        return descriptor
