"""Shared fixtures: stand-in face models that run without ONNX weights.

Synthetic "faces" are solid squares whose red channel exceeds 200 on a
grey background. The fake recognizer embeds the colour at the centre of
the aligned face, so two squares of the same colour are the same person.
"""

from __future__ import annotations

import io
from typing import TYPE_CHECKING

import numpy as np
import pytest
from PIL import Image, ImageDraw

from facepass.config import Settings
from facepass.ml.face_detector import RawDetection
from facepass.ml.lifecycle import LoadedModels, ModelStatus
from facepass.ml.preprocessing import ARCFACE_TEMPLATE

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

    from numpy.typing import NDArray

BACKGROUND = (100, 100, 100)
FACE_A = (250, 20, 20)
FACE_B = (210, 20, 250)
EMBEDDING_DIM = 128


def make_image(
    face_color: tuple[int, int, int] | None = FACE_A,
    size: tuple[int, int] = (640, 480),
    box: tuple[int, int, int, int] = (200, 140, 400, 340),
    fmt: str = "PNG",
) -> bytes:
    """Encode a grey image, optionally with a solid square 'face'."""
    img = Image.new("RGB", size, BACKGROUND)
    if face_color is not None:
        ImageDraw.Draw(img).rectangle(box, fill=face_color)
    buf = io.BytesIO()
    img.save(buf, format=fmt)
    return buf.getvalue()


def _red_box(image: NDArray[np.uint8]) -> NDArray[np.float32] | None:
    ys, xs = np.nonzero(image[:, :, 0] > 200)
    if xs.size == 0:
        return None
    return np.array([xs.min(), ys.min(), xs.max() + 1, ys.max() + 1], dtype=np.float32)


def template_points(bbox: NDArray[np.float32]) -> NDArray[np.float32]:
    """Five landmarks laid out inside ``bbox`` like the ArcFace template."""
    x1, y1, x2, y2 = bbox
    rel = ARCFACE_TEMPLATE / 112.0
    return np.stack([x1 + rel[:, 0] * (x2 - x1), y1 + rel[:, 1] * (y2 - y1)], axis=1).astype(np.float32)


class FakeDetector:
    model_name = "fake_detector"

    def __init__(self) -> None:
        self.calls = 0
        self.image_sizes: list[tuple[int, int]] = []

    def detect(self, image: NDArray[np.uint8]) -> list[RawDetection]:
        self.calls += 1
        self.image_sizes.append((image.shape[1], image.shape[0]))
        bbox = _red_box(image)
        if bbox is None:
            return []
        return [RawDetection(bbox=bbox, score=0.95, landmarks=template_points(bbox))]


class FakeLandmarker:
    model_name = "fake_landmarks"

    def __init__(self) -> None:
        self.calls = 0

    def locate(self, face_crop: NDArray[np.uint8]) -> NDArray[np.float32]:
        self.calls += 1
        bbox = _red_box(face_crop)
        assert bbox is not None
        return template_points(bbox)


class FakeRecognizer:
    model_name = "fake_recognizer"
    embedding_dim = EMBEDDING_DIM
    input_size = (112, 112)

    def __init__(self) -> None:
        self.calls = 0

    def get_embeddings(self, faces: NDArray[np.uint8]) -> NDArray[np.float32]:
        self.calls += 1
        out = np.zeros((len(faces), EMBEDDING_DIM), dtype=np.float32)
        for i, face in enumerate(faces):
            height, width = face.shape[:2]
            color = face[height // 2, width // 2].astype(np.float32)
            out[i, :3] = color / np.linalg.norm(color)
        return out


class FakeLifecycle:
    """Lifecycle stand-in that hands out fake models or fails."""

    def __init__(self, models: LoadedModels | None = None, error: Exception | None = None) -> None:
        self.models = models
        self.error = error
        self.ensure_calls = 0

    def ensure_loaded(self) -> LoadedModels:
        self.ensure_calls += 1
        if self.error is not None:
            raise self.error
        assert self.models is not None
        return self.models

    def status(self) -> ModelStatus:
        loaded = self.models is not None and self.error is None
        return ModelStatus(
            loaded=loaded,
            loading=False,
            is_valid=loaded,
            models=self.models.names if loaded and self.models is not None else [],
        )

    def invalidate(self) -> None:
        self.models = None


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(models_dir=str(tmp_path / "models"))


@pytest.fixture()
def detector() -> FakeDetector:
    return FakeDetector()


@pytest.fixture()
def recognizer() -> FakeRecognizer:
    return FakeRecognizer()


@pytest.fixture()
def fake_models(detector: FakeDetector, recognizer: FakeRecognizer) -> LoadedModels:
    return LoadedModels(detector=detector, recognizer=recognizer)


@pytest.fixture()
def fake_lifecycle(fake_models: LoadedModels) -> FakeLifecycle:
    return FakeLifecycle(fake_models)


@pytest.fixture()
def image_factory() -> Callable[..., bytes]:
    return make_image


@pytest.fixture()
def face_a() -> bytes:
    return make_image(FACE_A)


@pytest.fixture()
def face_b() -> bytes:
    return make_image(FACE_B)


@pytest.fixture()
def no_face() -> bytes:
    return make_image(None)


@pytest.fixture()
def landmarker() -> FakeLandmarker:
    return FakeLandmarker()


@pytest.fixture()
def lifecycle_factory() -> type[FakeLifecycle]:
    return FakeLifecycle
