"""Nearest-match search over enrolled face descriptors.

Exhaustive and exact: every usable candidate is compared, the smallest
Euclidean distance wins, and it is accepted only within the threshold.
Ties go to the candidate seen first.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from numpy.typing import NDArray

    from facepass.core.repository import EnrolledIdentity

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 0.6


@dataclass(frozen=True)
class Match:
    """The closest enrolled identity and its distance to the query."""

    identity: EnrolledIdentity
    distance: float


def euclidean_distance(a: Sequence[float] | NDArray[np.floating], b: Sequence[float] | NDArray[np.floating]) -> float:
    """Return sqrt(sum((a[i] - b[i]) ** 2)).

    Raises:
        ValueError: If the vectors differ in length.
    """
    va = np.asarray(a, dtype=np.float64).reshape(-1)
    vb = np.asarray(b, dtype=np.float64).reshape(-1)
    if va.shape != vb.shape:
        raise ValueError(f"Descriptor length mismatch: {va.size} != {vb.size}")
    return float(np.linalg.norm(va - vb))


def _as_vector(descriptor: object, dim: int) -> NDArray[np.float64] | None:
    if descriptor is None:
        return None
    try:
        vector = np.asarray(descriptor, dtype=np.float64).reshape(-1)
    except (TypeError, ValueError):
        return None
    if vector.size != dim or not np.all(np.isfinite(vector)):
        return None
    return vector


def find_match(
    query: Sequence[float] | NDArray[np.floating],
    candidates: Iterable[EnrolledIdentity],
    threshold: float = DEFAULT_THRESHOLD,
) -> Match | None:
    """Find the enrolled identity closest to ``query``.

    Candidates with a missing or malformed descriptor (wrong length,
    non-numeric, non-finite) are skipped.

    Returns:
        The best match if its distance is ``<= threshold``, otherwise None.
    """
    pool = list(candidates)
    if not pool:
        return None

    target = np.asarray(query, dtype=np.float64).reshape(-1)
    dim = target.size

    usable: list[EnrolledIdentity] = []
    rows: list[NDArray[np.float64]] = []
    for identity in pool:
        vector = _as_vector(identity.descriptor, dim)
        if vector is None:
            logger.debug("Skipping identity %s: unusable descriptor", identity.subject_id)
            continue
        usable.append(identity)
        rows.append(vector)

    if not rows:
        return None

    distances = np.linalg.norm(np.vstack(rows) - target, axis=1)
    best = int(np.argmin(distances))
    best_distance = float(distances[best])
    logger.debug("Best match distance: %.4f over %d candidates", best_distance, len(rows))

    if math.isnan(best_distance) or best_distance > threshold:
        return None
    return Match(identity=usable[best], distance=best_distance)
