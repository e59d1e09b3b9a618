"""Facial landmark model.

Implementation: InsightFace ``1k3d68`` (68-point iBUG layout, opt-in). When no
landmark model is configured, the detector's five points are used instead.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

import cv2
import numpy as np

from facepass.ml.preprocessing import to_nchw

if TYPE_CHECKING:
    from numpy.typing import NDArray
    from onnxruntime import InferenceSession

_NUM_POINTS = 68


class FaceLandmarker(Protocol):
    """Protocol for landmark models."""

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        ...

    def locate(self, face_crop: NDArray[np.uint8]) -> NDArray[np.float32]:
        """Locate the five alignment points in a face crop.

        Args:
            face_crop: HxWx3 RGB uint8 crop around a detected face.

        Returns:
            5x2 float32 array (eyes, nose, mouth corners) in crop pixel coordinates.
        """
        ...


def five_point_from_68(points: NDArray[np.float32]) -> NDArray[np.float32]:
    """Reduce iBUG 68-point landmarks to the ArcFace five-point layout."""
    return np.stack(
        [
            points[36:42].mean(axis=0),
            points[42:48].mean(axis=0),
            points[30],
            points[48],
            points[54],
        ]
    ).astype(np.float32)


class Landmark68:
    """68-point landmark regressor with outputs in [-1, 1] crop space."""

    def __init__(
        self,
        session: InferenceSession,
        model_name: str,
        input_mean: float = 0.0,
        input_std: float = 1.0,
    ) -> None:
        self._session = session
        self._model_name = model_name
        model_input = session.get_inputs()[0]
        self._input_name = model_input.name
        self._input_size = int(model_input.shape[-1]) if isinstance(model_input.shape[-1], int) else 192
        self._mean = (input_mean,) * 3
        self._std = (input_std,) * 3

    @property
    def model_name(self) -> str:
        return self._model_name

    def locate(self, face_crop: NDArray[np.uint8]) -> NDArray[np.float32]:
        height, width = face_crop.shape[:2]
        resized = cv2.resize(face_crop, (self._input_size, self._input_size), interpolation=cv2.INTER_LINEAR)
        tensor = to_nchw(resized, self._mean, self._std)

        pred = np.asarray(self._session.run(None, {self._input_name: tensor})[0], dtype=np.float32).reshape(-1)
        # 3D variants emit (x, y, z) triples, the last 68 of which are the landmarks.
        dims = 3 if pred.size % 3 == 0 and pred.size >= _NUM_POINTS * 3 else 2
        points = pred.reshape(-1, dims)[-_NUM_POINTS:, :2]

        half = self._input_size / 2
        points = (points + 1.0) * half
        points[:, 0] *= width / self._input_size
        points[:, 1] *= height / self._input_size
        return five_point_from_68(points)
