"""Enrolled identities and the repository the core persists them through."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from collections.abc import Sequence


@dataclass(frozen=True)
class EnrolledIdentity:
    """A subject id bound to the face descriptor captured at registration."""

    subject_id: str
    descriptor: Sequence[float] | None
    image_ref: str | None = None
    registered_at: datetime = field(default_factory=lambda: datetime.now(UTC))


class EnrollmentRepository(Protocol):
    """Storage collaborator supplied by the persistence layer."""

    def save(self, identity: EnrolledIdentity) -> None:
        """Persist a newly enrolled identity."""
        ...

    def list_all(self) -> list[EnrolledIdentity]:
        """Return every enrolled identity."""
        ...

    def count(self) -> int:
        """Return how many identities are enrolled."""
        ...


class InMemoryEnrollmentRepository:
    """Process-local repository, in insertion order."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._identities: dict[str, EnrolledIdentity] = {}

    def save(self, identity: EnrolledIdentity) -> None:
        with self._lock:
            if identity.subject_id in self._identities:
                raise ValueError(f"Subject already enrolled: {identity.subject_id}")
            self._identities[identity.subject_id] = identity

    def list_all(self) -> list[EnrolledIdentity]:
        with self._lock:
            return list(self._identities.values())

    def count(self) -> int:
        with self._lock:
            return len(self._identities)
