"""Enrollment / verification orchestration.

States per request::

    Received -> Extracting -> {ExtractionFailed | Extracted}
        register:     Persist -> Done
        authenticate: Matching -> {MatchFailed | Matched} -> Done

Extraction failures of every kind collapse into ``face-not-detected`` for
the caller; the finer-grained reason stays on the result and in the logs.
``ModelsUnavailableError`` is not translated and propagates.
"""

from __future__ import annotations

import logging
import secrets
import time
import uuid
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

from facepass.core.matching import DEFAULT_THRESHOLD, find_match
from facepass.core.repository import EnrolledIdentity
from facepass.errors import ExtractionError

if TYPE_CHECKING:
    from collections.abc import Callable

    import numpy as np
    from numpy.typing import NDArray

    from facepass.core.extractor import DescriptorExtractor
    from facepass.core.repository import EnrollmentRepository

logger = logging.getLogger(__name__)


class AuthAction(StrEnum):
    AUTHENTICATE = "authenticate"
    REGISTER = "register"


class AuthOutcome(StrEnum):
    SUCCESS = "success"
    FACE_NOT_DETECTED = "face-not-detected"
    NO_MATCH = "no-match"


@dataclass(frozen=True)
class AuthResult:
    """Caller-visible decision for one request."""

    outcome: AuthOutcome
    action: AuthAction
    subject_id: str | None = None
    distance: float | None = None
    reason: str | None = None

    @property
    def ok(self) -> bool:
        return self.outcome is AuthOutcome.SUCCESS


def new_subject_id() -> str:
    """Opaque random subject identifier (32 hex characters)."""
    return secrets.token_hex(16)


class FaceAuthenticator:
    """Runs registration and authentication requests through the core."""

    def __init__(
        self,
        extractor: DescriptorExtractor,
        repository: EnrollmentRepository,
        threshold: float = DEFAULT_THRESHOLD,
        subject_id_factory: Callable[[], str] = new_subject_id,
    ) -> None:
        self._extractor = extractor
        self._repository = repository
        self._threshold = threshold
        self._subject_id_factory = subject_id_factory

    @property
    def threshold(self) -> float:
        return self._threshold

    def handle(
        self,
        image_bytes: bytes,
        action: AuthAction | str = AuthAction.AUTHENTICATE,
        image_ref: str | None = None,
    ) -> AuthResult:
        """Dispatch on ``action``.

        Raises:
            ValueError: If ``action`` is not a known action.
        """
        resolved = AuthAction(action)
        if resolved is AuthAction.REGISTER:
            return self.register(image_bytes, image_ref=image_ref)
        return self.authenticate(image_bytes)

    def register(self, image_bytes: bytes, image_ref: str | None = None) -> AuthResult:
        """Enrol a new identity for the face in ``image_bytes``."""
        request_id = uuid.uuid4().hex[:8]
        logger.debug("[%s] register: received %d bytes", request_id, len(image_bytes))

        try:
            descriptor = self._extract(request_id, AuthAction.REGISTER, image_bytes)
        except ExtractionError as exc:
            return self._face_not_detected(request_id, AuthAction.REGISTER, exc)

        identity = EnrolledIdentity(
            subject_id=self._subject_id_factory(),
            descriptor=tuple(float(v) for v in descriptor),
            image_ref=image_ref,
        )
        logger.debug("[%s] register: persisting", request_id)
        self._repository.save(identity)
        logger.info("[%s] New identity registered: %s", request_id, identity.subject_id)
        return AuthResult(outcome=AuthOutcome.SUCCESS, action=AuthAction.REGISTER, subject_id=identity.subject_id)

    def authenticate(self, image_bytes: bytes) -> AuthResult:
        """Match the face in ``image_bytes`` against every enrolled identity."""
        request_id = uuid.uuid4().hex[:8]
        logger.debug("[%s] authenticate: received %d bytes", request_id, len(image_bytes))

        try:
            descriptor = self._extract(request_id, AuthAction.AUTHENTICATE, image_bytes)
        except ExtractionError as exc:
            return self._face_not_detected(request_id, AuthAction.AUTHENTICATE, exc)

        candidates = self._repository.list_all()
        if not candidates:
            logger.info("[%s] No registered face profiles found", request_id)
            return AuthResult(
                outcome=AuthOutcome.NO_MATCH,
                action=AuthAction.AUTHENTICATE,
                reason="no_enrolled_identities",
            )

        logger.debug("[%s] authenticate: matching against %d profiles", request_id, len(candidates))
        started = time.perf_counter()
        match = find_match(descriptor, candidates, self._threshold)
        elapsed_ms = (time.perf_counter() - started) * 1000

        if match is None:
            logger.info("[%s] No matching face found (%.1f ms)", request_id, elapsed_ms)
            return AuthResult(
                outcome=AuthOutcome.NO_MATCH,
                action=AuthAction.AUTHENTICATE,
                reason="no_match_found",
            )

        logger.info(
            "[%s] Face match found with distance %.4f for subject %s (%.1f ms)",
            request_id,
            match.distance,
            match.identity.subject_id,
            elapsed_ms,
        )
        return AuthResult(
            outcome=AuthOutcome.SUCCESS,
            action=AuthAction.AUTHENTICATE,
            subject_id=match.identity.subject_id,
            distance=match.distance,
        )

    # -- Internal -----------------------------------------------------------

    def _extract(self, request_id: str, action: AuthAction, image_bytes: bytes) -> NDArray[np.float32]:
        logger.debug("[%s] %s: extracting", request_id, action)
        descriptor = self._extractor.extract(image_bytes)
        logger.debug("[%s] %s: extracted", request_id, action)
        return descriptor

    @staticmethod
    def _face_not_detected(request_id: str, action: AuthAction, exc: ExtractionError) -> AuthResult:
        logger.info("[%s] %s: extraction failed (%s): %s", request_id, action, exc.reason, exc)
        return AuthResult(outcome=AuthOutcome.FACE_NOT_DETECTED, action=action, reason=exc.reason)
