"""Image preprocessing pipeline.

Decoding (with EXIF orientation), bounded downscaling for detection,
margin cropping, 5-point similarity alignment and tensor conversion.
All images are HxWx3 RGB uint8 numpy arrays.
"""

from __future__ import annotations

import io
from typing import TYPE_CHECKING

import cv2
import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from facepass.errors import InvalidImageError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

# ArcFace reference landmarks in 112x112 space: left eye, right eye, nose,
# left mouth corner, right mouth corner.
ARCFACE_TEMPLATE: NDArray[np.float32] = np.array(
    [
        [38.2946, 51.6963],
        [73.5318, 51.5014],
        [56.0252, 71.7366],
        [41.5493, 92.3655],
        [70.7299, 92.2041],
    ],
    dtype=np.float32,
)


def decode_image(image_bytes: bytes, max_pixels: int) -> NDArray[np.uint8]:
    """Decode raw image bytes into an RGB uint8 numpy array.

    Args:
        image_bytes: Raw file bytes (any format Pillow can read).
        max_pixels: Upper bound on width * height.

    Returns:
        HxWx3 RGB uint8 numpy array.

    Raises:
        InvalidImageError: If the image cannot be decoded or exceeds size limits.
    """
    try:
        with Image.open(io.BytesIO(image_bytes)) as img:
            width, height = img.size
            if width * height > max_pixels:
                raise InvalidImageError(f"Image too large: {width}x{height} exceeds {max_pixels} pixels")
            oriented = ImageOps.exif_transpose(img)
            rgb = oriented.convert("RGB")
            return np.asarray(rgb, dtype=np.uint8).copy()
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as exc:
        raise InvalidImageError(f"Could not decode image: {exc}") from exc


def downscale(image: NDArray[np.uint8], max_side: int) -> tuple[NDArray[np.uint8], float]:
    """Shrink ``image`` so its longer side is at most ``max_side``.

    Never upscales. Returns the working image and the scale factor applied
    (working = original * scale).
    """
    height, width = image.shape[:2]
    scale = min(1.0, max_side / max(height, width))
    if scale >= 1.0:
        return image, 1.0
    new_w = max(1, round(width * scale))
    new_h = max(1, round(height * scale))
    resized = cv2.resize(image, (new_w, new_h), interpolation=cv2.INTER_AREA)
    return resized, scale


def expand_box(
    bbox: Sequence[float], margin: float, width: int, height: int
) -> tuple[int, int, int, int]:
    """Grow an (x1, y1, x2, y2) box by ``margin`` of its size on every side.

    The result is clamped to the image bounds and is at least one pixel wide.
    """
    x1, y1, x2, y2 = (float(v) for v in bbox)
    pad_x = (x2 - x1) * margin
    pad_y = (y2 - y1) * margin
    left = int(np.clip(np.floor(x1 - pad_x), 0, width - 1))
    top = int(np.clip(np.floor(y1 - pad_y), 0, height - 1))
    right = int(np.clip(np.ceil(x2 + pad_x), left + 1, width))
    bottom = int(np.clip(np.ceil(y2 + pad_y), top + 1, height))
    return left, top, right, bottom


def crop(image: NDArray[np.uint8], box: tuple[int, int, int, int]) -> NDArray[np.uint8]:
    left, top, right, bottom = box
    return np.ascontiguousarray(image[top:bottom, left:right])


def align_face(
    image: NDArray[np.uint8],
    landmarks: NDArray[np.float32],
    output_size: tuple[int, int] = (112, 112),
) -> NDArray[np.uint8] | None:
    """Warp a face onto the ArcFace template using five landmarks.

    Args:
        image: HxWx3 RGB uint8 array containing the face.
        landmarks: 5x2 float32 array in ``image`` pixel coordinates.
        output_size: (height, width) of the aligned face.

    Returns:
        Aligned face of ``output_size``, or None if no transform could be estimated.
    """
    points = np.asarray(landmarks, dtype=np.float32).reshape(-1, 2)
    if points.shape != (5, 2) or not np.all(np.isfinite(points)):
        return None

    out_h, out_w = output_size
    dst = ARCFACE_TEMPLATE.copy()
    dst[:, 0] *= out_w / 112.0
    dst[:, 1] *= out_h / 112.0

    transform, _ = cv2.estimateAffinePartial2D(points, dst, method=cv2.LMEDS)
    if transform is None:
        return None

    return cv2.warpAffine(
        image,
        transform,
        (out_w, out_h),
        borderMode=cv2.BORDER_CONSTANT,
        borderValue=(0, 0, 0),
    )


def to_nchw(
    image: NDArray[np.uint8],
    mean: Sequence[float],
    std: Sequence[float],
) -> NDArray[np.float32]:
    """Normalize ``(pixel - mean) / std`` per channel and return a 1x3xHxW tensor."""
    normalized = (image.astype(np.float32) - np.asarray(mean, dtype=np.float32)) / np.asarray(std, dtype=np.float32)
    return np.ascontiguousarray(np.transpose(normalized, (2, 0, 1))[np.newaxis, ...], dtype=np.float32)
