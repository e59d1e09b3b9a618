"""Face detection.

Implementations: RetinaFace (MobileNetV2 default, ResNet34 opt-in) exported to ONNX
with ``loc`` / ``conf`` / ``landms`` heads.
"""

from __future__ import annotations

import itertools
import logging
import math
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

import numpy as np

from facepass.ml.preprocessing import to_nchw

if TYPE_CHECKING:
    from numpy.typing import NDArray
    from onnxruntime import InferenceSession

logger = logging.getLogger(__name__)

# RetinaFace anchor configuration (cfg_mnet / cfg_re50 share these).
_MIN_SIZES: tuple[tuple[int, ...], ...] = ((16, 32), (64, 128), (256, 512))
_STEPS: tuple[int, ...] = (8, 16, 32)
_VARIANCES: tuple[float, float] = (0.1, 0.2)
# Per-channel BGR mean the network was trained with.
_BGR_MEAN: tuple[float, float, float] = (104.0, 117.0, 123.0)


@dataclass(frozen=True)
class RawDetection:
    """Raw face detection result before coordinate normalization.

    Coordinates are in pixel space of the image passed to ``detect``.
    """

    bbox: NDArray[np.float32]
    score: float
    landmarks: NDArray[np.float32]


class FaceDetector(Protocol):
    """Protocol for face detection models."""

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        ...

    def detect(self, image: NDArray[np.uint8]) -> list[RawDetection]:
        """Detect faces in an image.

        Args:
            image: HxWx3 RGB uint8 array.

        Returns:
            Detections above the confidence threshold, highest score first.
        """
        ...


def prior_boxes(size: int) -> NDArray[np.float32]:
    """Anchor priors (cx, cy, w, h), normalized to a square input of ``size`` pixels."""
    priors: list[list[float]] = []
    for step, min_sizes in zip(_STEPS, _MIN_SIZES, strict=True):
        cells = math.ceil(size / step)
        for row, col in itertools.product(range(cells), repeat=2):
            cx = (col + 0.5) * step / size
            cy = (row + 0.5) * step / size
            for min_size in min_sizes:
                priors.append([cx, cy, min_size / size, min_size / size])
    return np.asarray(priors, dtype=np.float32)


def nms(boxes: NDArray[np.float32], scores: NDArray[np.float32], threshold: float) -> NDArray[np.int32]:
    """Perform NMS on boxes in (x1, y1, x2, y2) format."""
    if len(boxes) == 0:
        return np.array([], dtype=np.int32)

    x1 = boxes[:, 0]
    y1 = boxes[:, 1]
    x2 = boxes[:, 2]
    y2 = boxes[:, 3]

    areas = (x2 - x1) * (y2 - y1)
    order = scores.argsort(kind="stable")[::-1]

    keep: list[int] = []
    while order.size > 0:
        i = int(order[0])
        keep.append(i)

        xx1 = np.maximum(x1[i], x1[order[1:]])
        yy1 = np.maximum(y1[i], y1[order[1:]])
        xx2 = np.minimum(x2[i], x2[order[1:]])
        yy2 = np.minimum(y2[i], y2[order[1:]])

        w = np.maximum(0.0, xx2 - xx1)
        h = np.maximum(0.0, yy2 - yy1)
        inter = w * h
        iou = inter / (areas[i] + areas[order[1:]] - inter + 1e-8)

        order = order[np.where(iou <= threshold)[0] + 1]

    return np.array(keep, dtype=np.int32)


class RetinaFaceDetector:
    """RetinaFace ONNX detector.

    Input images are letterboxed (top-left, zero padding) onto a square
    canvas of ``input_size`` pixels, so callers should downscale first.
    Class scores are read as probabilities unless ``scores_are_logits`` is
    set, in which case they are softmaxed per anchor.
    """

    def __init__(
        self,
        session: InferenceSession,
        model_name: str,
        input_size: int = 320,
        score_threshold: float = 0.4,
        nms_threshold: float = 0.4,
        scores_are_logits: bool = False,
    ) -> None:
        self._session = session
        self._model_name = model_name
        self._input_name = session.get_inputs()[0].name
        self._input_size = input_size
        self._score_threshold = score_threshold
        self._nms_threshold = nms_threshold
        self._scores_are_logits = scores_are_logits
        self._priors = prior_boxes(input_size)

    @property
    def model_name(self) -> str:
        return self._model_name

    @property
    def input_size(self) -> int:
        return self._input_size

    def detect(self, image: NDArray[np.uint8]) -> list[RawDetection]:
        height, width = image.shape[:2]
        if max(height, width) > self._input_size:
            raise ValueError(f"Image {width}x{height} exceeds detector input size {self._input_size}")

        canvas = np.zeros((self._input_size, self._input_size, 3), dtype=np.uint8)
        canvas[:height, :width] = image[:, :, ::-1]  # RGB -> BGR
        tensor = to_nchw(canvas, _BGR_MEAN, (1.0, 1.0, 1.0))

        outputs = self._session.run(None, {self._input_name: tensor})
        loc, conf, landms = self._split_outputs(outputs)

        scores = conf[:, 1]
        mask = scores >= self._score_threshold
        if not np.any(mask):
            logger.debug("No detection above %.2f (best=%.3f)", self._score_threshold, float(scores.max(initial=0.0)))
            return []

        priors = self._priors[mask]
        boxes = self._decode_boxes(loc[mask], priors) * self._input_size
        points = self._decode_landmarks(landms[mask], priors) * self._input_size
        scores = scores[mask]

        boxes[:, [0, 2]] = np.clip(boxes[:, [0, 2]], 0, width)
        boxes[:, [1, 3]] = np.clip(boxes[:, [1, 3]], 0, height)

        keep = nms(boxes, scores, self._nms_threshold)
        return [
            RawDetection(
                bbox=boxes[i].astype(np.float32),
                score=float(scores[i]),
                landmarks=points[i].reshape(5, 2).astype(np.float32),
            )
            for i in keep
        ]

    # -- Internal -----------------------------------------------------------

    def _split_outputs(
        self, outputs: list[NDArray[np.float32]]
    ) -> tuple[NDArray[np.float32], NDArray[np.float32], NDArray[np.float32]]:
        by_width = {int(out.shape[-1]): np.asarray(out, dtype=np.float32).reshape(-1, out.shape[-1]) for out in outputs}
        try:
            loc, conf, landms = by_width[4], by_width[2], by_width[10]
        except KeyError:
            raise RuntimeError(
                f"Unexpected RetinaFace outputs: {[tuple(out.shape) for out in outputs]}"
            ) from None
        if len(loc) != len(self._priors):
            raise RuntimeError(f"Detector produced {len(loc)} anchors, expected {len(self._priors)}")
        if self._scores_are_logits:
            shifted = conf - conf.max(axis=1, keepdims=True)
            exp = np.exp(shifted)
            conf = exp / exp.sum(axis=1, keepdims=True)
        return loc, conf, landms

    @staticmethod
    def _decode_boxes(loc: NDArray[np.float32], priors: NDArray[np.float32]) -> NDArray[np.float32]:
        centers = priors[:, :2] + loc[:, :2] * _VARIANCES[0] * priors[:, 2:]
        sizes = priors[:, 2:] * np.exp(loc[:, 2:] * _VARIANCES[1])
        return np.concatenate((centers - sizes / 2, centers + sizes / 2), axis=1)

    @staticmethod
    def _decode_landmarks(landms: NDArray[np.float32], priors: NDArray[np.float32]) -> NDArray[np.float32]:
        offsets = landms.reshape(-1, 5, 2)
        points = priors[:, np.newaxis, :2] + offsets * _VARIANCES[0] * priors[:, np.newaxis, 2:]
        return points.reshape(-1, 10)
