"""Face recognition (embedding) model.

Implementations: AuraFace v1 (default), ArcFace w600k_r50 (opt-in). Both take
112x112 RGB crops aligned to the ArcFace template, normalized to [-1, 1].
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

import numpy as np

from facepass.ml.preprocessing import to_nchw

if TYPE_CHECKING:
    from numpy.typing import NDArray
    from onnxruntime import InferenceSession

_PIXEL_MEAN = (127.5, 127.5, 127.5)
_PIXEL_STD = (127.5, 127.5, 127.5)


class FaceRecognizer(Protocol):
    """Protocol for face recognition (embedding) models."""

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        ...

    @property
    def embedding_dim(self) -> int:
        """Return the embedding dimensionality (e.g., 512)."""
        ...

    @property
    def input_size(self) -> tuple[int, int]:
        """Return the (height, width) the aligned face must have."""
        ...

    def get_embeddings(self, faces: NDArray[np.uint8]) -> NDArray[np.float32]:
        """Generate embeddings for a batch of aligned faces.

        Args:
            faces: Aligned RGB uint8 faces, shape (N, H, W, 3).

        Returns:
            L2-normalized embedding vectors, shape (N, embedding_dim).
        """
        ...


class ArcFaceRecognizer:
    """ArcFace-family ONNX embedding model."""

    def __init__(self, session: InferenceSession, model_name: str) -> None:
        self._session = session
        self._model_name = model_name
        model_input = session.get_inputs()[0]
        self._input_name = model_input.name
        height, width = model_input.shape[2:4]
        self._input_size = (
            height if isinstance(height, int) else 112,
            width if isinstance(width, int) else 112,
        )
        dim = session.get_outputs()[0].shape[-1]
        self._embedding_dim = dim if isinstance(dim, int) else 512

    @property
    def model_name(self) -> str:
        return self._model_name

    @property
    def embedding_dim(self) -> int:
        return self._embedding_dim

    @property
    def input_size(self) -> tuple[int, int]:
        return self._input_size

    def get_embeddings(self, faces: NDArray[np.uint8]) -> NDArray[np.float32]:
        embeddings = np.empty((len(faces), self._embedding_dim), dtype=np.float32)
        for i, face in enumerate(faces):
            tensor = to_nchw(face, _PIXEL_MEAN, _PIXEL_STD)
            output = self._session.run(None, {self._input_name: tensor})[0]
            embeddings[i] = np.asarray(output, dtype=np.float32).reshape(-1)

        norms = np.linalg.norm(embeddings, axis=1, keepdims=True)
        return np.divide(embeddings, norms, out=np.zeros_like(embeddings), where=norms > 0)
