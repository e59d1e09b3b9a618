"""Tests for the enrollment / verification orchestrator."""

from __future__ import annotations

import re
from unittest.mock import patch

import numpy as np
import pytest
from conftest import FakeLifecycle

from facepass.config import Settings
from facepass.core.authenticator import AuthAction, AuthOutcome, FaceAuthenticator, new_subject_id
from facepass.core.extractor import DescriptorExtractor
from facepass.core.repository import EnrolledIdentity, InMemoryEnrollmentRepository
from facepass.errors import ModelsUnavailableError


@pytest.fixture()
def repository() -> InMemoryEnrollmentRepository:
    return InMemoryEnrollmentRepository()


@pytest.fixture()
def authenticator(
    fake_lifecycle: FakeLifecycle, settings: Settings, repository: InMemoryEnrollmentRepository
) -> FaceAuthenticator:
    extractor = DescriptorExtractor(fake_lifecycle, settings)  # type: ignore[arg-type]
    ids = iter(["U1", "U2", "U3"])
    return FaceAuthenticator(extractor, repository, subject_id_factory=lambda: next(ids))


class TestSubjectIds:
    def test_new_subject_id_is_hex(self) -> None:
        assert re.fullmatch(r"[0-9a-f]{32}", new_subject_id())

    def test_new_subject_ids_differ(self) -> None:
        assert new_subject_id() != new_subject_id()


class TestRegister:
    def test_register_persists_identity(
        self, authenticator: FaceAuthenticator, repository: InMemoryEnrollmentRepository, face_a: bytes
    ) -> None:
        result = authenticator.handle(face_a, AuthAction.REGISTER, image_ref="uploads/a.png")

        assert result.ok
        assert result.outcome is AuthOutcome.SUCCESS
        assert result.action is AuthAction.REGISTER
        assert result.subject_id == "U1"
        [identity] = repository.list_all()
        assert identity.subject_id == "U1"
        assert identity.image_ref == "uploads/a.png"
        assert len(identity.descriptor) == 128  # type: ignore[arg-type]

    def test_register_accepts_string_action(self, authenticator: FaceAuthenticator, face_a: bytes) -> None:
        assert authenticator.handle(face_a, "register").subject_id == "U1"

    def test_register_without_face(
        self, authenticator: FaceAuthenticator, repository: InMemoryEnrollmentRepository, no_face: bytes
    ) -> None:
        result = authenticator.register(no_face)

        assert result.outcome is AuthOutcome.FACE_NOT_DETECTED
        assert result.reason == "no_face_detected"
        assert repository.count() == 0

    def test_same_face_registers_twice(
        self, authenticator: FaceAuthenticator, repository: InMemoryEnrollmentRepository, face_a: bytes
    ) -> None:
        authenticator.register(face_a)
        authenticator.register(face_a)
        assert [i.subject_id for i in repository.list_all()] == ["U1", "U2"]


class TestAuthenticate:
    def test_registered_face_authenticates(self, authenticator: FaceAuthenticator, face_a: bytes) -> None:
        authenticator.handle(face_a, AuthAction.REGISTER)

        result = authenticator.handle(face_a, AuthAction.AUTHENTICATE)

        assert result.outcome is AuthOutcome.SUCCESS
        assert result.action is AuthAction.AUTHENTICATE
        assert result.subject_id == "U1"
        assert result.distance == 0.0

    def test_picks_the_right_identity(self, authenticator: FaceAuthenticator, face_a: bytes, face_b: bytes) -> None:
        authenticator.register(face_a)
        authenticator.register(face_b)

        assert authenticator.authenticate(face_b).subject_id == "U2"
        assert authenticator.authenticate(face_a).subject_id == "U1"

    def test_unknown_face_does_not_match(self, authenticator: FaceAuthenticator, face_a: bytes, face_b: bytes) -> None:
        authenticator.register(face_a)

        result = authenticator.authenticate(face_b)

        assert result.outcome is AuthOutcome.NO_MATCH
        assert result.reason == "no_match_found"
        assert result.subject_id is None
        assert not result.ok

    def test_no_face_never_reaches_matching(
        self, authenticator: FaceAuthenticator, face_a: bytes, no_face: bytes
    ) -> None:
        authenticator.register(face_a)

        with patch("facepass.core.authenticator.find_match") as mock_find:
            result = authenticator.authenticate(no_face)

        assert result.outcome is AuthOutcome.FACE_NOT_DETECTED
        mock_find.assert_not_called()

    def test_invalid_image_is_face_not_detected(self, authenticator: FaceAuthenticator) -> None:
        result = authenticator.authenticate(b"definitely not an image" * 10)

        assert result.outcome is AuthOutcome.FACE_NOT_DETECTED
        assert result.reason == "invalid_image"

    def test_empty_repository(self, authenticator: FaceAuthenticator, face_a: bytes) -> None:
        result = authenticator.authenticate(face_a)

        assert result.outcome is AuthOutcome.NO_MATCH
        assert result.reason == "no_enrolled_identities"

    def test_malformed_enrollments_are_skipped(
        self, authenticator: FaceAuthenticator, repository: InMemoryEnrollmentRepository, face_a: bytes
    ) -> None:
        repository.save(EnrolledIdentity(subject_id="broken", descriptor=None))
        repository.save(EnrolledIdentity(subject_id="short", descriptor=(0.1, 0.2)))
        authenticator.register(face_a)

        assert authenticator.authenticate(face_a).subject_id == "U1"

    def test_threshold_controls_acceptance(
        self,
        fake_lifecycle: FakeLifecycle,
        settings: Settings,
        repository: InMemoryEnrollmentRepository,
        face_a: bytes,
        face_b: bytes,
    ) -> None:
        extractor = DescriptorExtractor(fake_lifecycle, settings)  # type: ignore[arg-type]
        a = extractor.extract(face_a)
        b = extractor.extract(face_b)
        gap = float(np.linalg.norm(a - b))
        repository.save(EnrolledIdentity(subject_id="A", descriptor=tuple(float(v) for v in a)))

        strict = FaceAuthenticator(extractor, repository, threshold=gap - 0.01)
        loose = FaceAuthenticator(extractor, repository, threshold=gap + 0.01)

        assert strict.authenticate(face_b).outcome is AuthOutcome.NO_MATCH
        assert loose.authenticate(face_b).subject_id == "A"
        assert loose.threshold == pytest.approx(gap + 0.01)


class TestDispatch:
    def test_unknown_action_raises(self, authenticator: FaceAuthenticator, face_a: bytes) -> None:
        with pytest.raises(ValueError):
            authenticator.handle(face_a, "delete")

    def test_default_action_is_authenticate(self, authenticator: FaceAuthenticator, face_a: bytes) -> None:
        assert authenticator.handle(face_a).action is AuthAction.AUTHENTICATE

    def test_models_unavailable_propagates(
        self, lifecycle_factory: type[FakeLifecycle], settings: Settings, face_a: bytes
    ) -> None:
        lifecycle = lifecycle_factory(error=ModelsUnavailableError("offline"))
        extractor = DescriptorExtractor(lifecycle, settings)  # type: ignore[arg-type]
        authenticator = FaceAuthenticator(extractor, InMemoryEnrollmentRepository())

        with pytest.raises(ModelsUnavailableError):
            authenticator.handle(face_a, AuthAction.AUTHENTICATE)


class TestInMemoryRepository:
    def test_count_tracks_saves(self, repository: InMemoryEnrollmentRepository) -> None:
        assert repository.count() == 0

        repository.save(EnrolledIdentity(subject_id="A", descriptor=(0.1,)))
        repository.save(EnrolledIdentity(subject_id="B", descriptor=(0.2,)))

        assert repository.count() == 2

    def test_duplicate_subject_rejected(self, repository: InMemoryEnrollmentRepository) -> None:
        repository.save(EnrolledIdentity(subject_id="A", descriptor=(0.1,)))

        with pytest.raises(ValueError, match="already enrolled"):
            repository.save(EnrolledIdentity(subject_id="A", descriptor=(0.2,)))
        assert repository.count() == 1
