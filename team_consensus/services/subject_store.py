"""
Subject Store: the persistence collaborator contract.

The engine is agnostic to the storage technology. Any store works provided it
offers the version-checked write: ``save_subject_if_version`` must persist the
subject (and any votes passed with it) atomically, and only if the stored
version still equals ``expected_version``.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Sequence
from datetime import datetime
from uuid import UUID

from ..schemas import (
    PlanningSession,
    Subject,
    SubjectKind,
    SubjectStatus,
    Vote,
    is_expirable,
)
from .errors import (
    InvalidSubjectError,
    SessionNotFoundError,
    SubjectNotFoundError,
    VersionConflictError,
)


logger = logging.getLogger(__name__)


# =============================================================================
# CONTRACT
# =============================================================================


class SubjectStore(ABC):
    """Abstract persistence collaborator for subjects, votes and sessions."""

    # Subjects

    @abstractmethod
    async def create_subject(self, subject: Subject) -> Subject:
        """Insert a new subject at version 0."""

    @abstractmethod
    async def load_subject(self, subject_id: UUID) -> Subject:
        """Return the subject or raise SubjectNotFoundError."""

    @abstractmethod
    async def save_subject_if_version(
        self,
        subject: Subject,
        expected_version: int,
        votes: Sequence[Vote] = (),
    ) -> Subject:
        """
        Persist ``subject`` and upsert ``votes`` in one atomic write.

        Returns the stored subject with ``version == expected_version + 1``.

        Raises:
            VersionConflictError: the stored version moved on
            SubjectNotFoundError: the subject no longer exists
        """

    @abstractmethod
    async def delete_subject(self, subject_id: UUID, expected_version: int) -> None:
        """Delete a subject and its votes if the version still matches."""

    @abstractmethod
    async def list_subjects(
        self,
        kind: SubjectKind | None = None,
        status: SubjectStatus | None = None,
        session_id: UUID | None = None,
        to_user_id: str | None = None,
    ) -> list[Subject]:
        """List subjects matching every given filter, oldest first."""

    @abstractmethod
    async def list_overdue(self, now: datetime, limit: int | None = None) -> list[Subject]:
        """Subjects whose deadline passed while still expirable."""

    # Votes

    @abstractmethod
    async def load_votes(self, subject_id: UUID) -> list[Vote]:
        """Current votes on a subject, one per voter."""

    @abstractmethod
    async def upsert_vote(self, vote: Vote) -> Vote:
        """Insert or replace the vote keyed by (subject_id, voter_id)."""

    # Planning sessions

    @abstractmethod
    async def create_session(self, session: PlanningSession) -> PlanningSession:
        """Insert a new planning session at version 0."""

    @abstractmethod
    async def load_session(self, session_id: UUID) -> PlanningSession:
        """Return the session or raise SessionNotFoundError."""

    @abstractmethod
    async def save_session_if_version(
        self,
        session: PlanningSession,
        expected_version: int,
    ) -> PlanningSession:
        """Version-checked write of a planning session."""


# =============================================================================
# IN-MEMORY IMPLEMENTATION
# =============================================================================


class InMemorySubjectStore(SubjectStore):
    """In-memory store for tests and single-process embedding.

    Every method runs under one asyncio lock, so each call is atomic.
    """

    def __init__(self) -> None:
        self._subjects: dict[UUID, Subject] = {}
        self._votes: dict[UUID, dict[str, Vote]] = {}
        self._sessions: dict[UUID, PlanningSession] = {}
        self._lock = asyncio.Lock()

    async def create_subject(self, subject: Subject) -> Subject:
        async with self._lock:
            if subject.id in self._subjects:
                raise InvalidSubjectError(f"Subject {subject.id} already exists")
            if subject.session_id is not None and subject.session_id not in self._sessions:
                raise SessionNotFoundError(f"Planning session {subject.session_id} not found")
            stored = subject.model_copy(update={"version": 0})
            self._subjects[stored.id] = stored
            self._votes[stored.id] = {}
            logger.debug(f"Created {stored.kind.value} {stored.id}")
            return stored

    async def load_subject(self, subject_id: UUID) -> Subject:
        async with self._lock:
            return self._get_subject(subject_id)

    async def save_subject_if_version(
        self,
        subject: Subject,
        expected_version: int,
        votes: Sequence[Vote] = (),
    ) -> Subject:
        async with self._lock:
            current = self._get_subject(subject.id)
            if current.version != expected_version:
                raise VersionConflictError(
                    f"Subject {subject.id}: expected v{expected_version}, "
                    f"but current is v{current.version}"
                )
            stored = subject.model_copy(update={"version": expected_version + 1})
            self._subjects[stored.id] = stored
            for vote in votes:
                self._votes[stored.id][vote.voter_id] = vote
            return stored

    async def delete_subject(self, subject_id: UUID, expected_version: int) -> None:
        async with self._lock:
            current = self._get_subject(subject_id)
            if current.version != expected_version:
                raise VersionConflictError(
                    f"Subject {subject_id}: expected v{expected_version}, "
                    f"but current is v{current.version}"
                )
            del self._subjects[subject_id]
            self._votes.pop(subject_id, None)

    async def list_subjects(
        self,
        kind: SubjectKind | None = None,
        status: SubjectStatus | None = None,
        session_id: UUID | None = None,
        to_user_id: str | None = None,
    ) -> list[Subject]:
        async with self._lock:
            subjects = [
                s for s in self._subjects.values()
                if (kind is None or s.kind == kind)
                and (status is None or s.status == status)
                and (session_id is None or s.session_id == session_id)
                and (to_user_id is None or s.to_user_id == to_user_id)
            ]
        return sorted(subjects, key=lambda s: s.created_at)

    async def list_overdue(self, now: datetime, limit: int | None = None) -> list[Subject]:
        async with self._lock:
            overdue = [
                s for s in self._subjects.values()
                if s.deadline is not None
                and s.deadline <= now
                and is_expirable(s.kind, s.status)
            ]
        overdue.sort(key=lambda s: s.deadline)
        return overdue[:limit] if limit is not None else overdue

    async def load_votes(self, subject_id: UUID) -> list[Vote]:
        async with self._lock:
            self._get_subject(subject_id)
            return sorted(self._votes[subject_id].values(), key=lambda v: v.cast_at)

    async def upsert_vote(self, vote: Vote) -> Vote:
        async with self._lock:
            self._get_subject(vote.subject_id)
            self._votes[vote.subject_id][vote.voter_id] = vote
            return vote

    async def create_session(self, session: PlanningSession) -> PlanningSession:
        async with self._lock:
            if session.id in self._sessions:
                raise InvalidSubjectError(f"Planning session {session.id} already exists")
            stored = session.model_copy(update={"version": 0})
            self._sessions[stored.id] = stored
            return stored

    async def load_session(self, session_id: UUID) -> PlanningSession:
        async with self._lock:
            return self._get_session(session_id)

    async def save_session_if_version(
        self,
        session: PlanningSession,
        expected_version: int,
    ) -> PlanningSession:
        async with self._lock:
            current = self._get_session(session.id)
            if current.version != expected_version:
                raise VersionConflictError(
                    f"Session {session.id}: expected v{expected_version}, "
                    f"but current is v{current.version}"
                )
            stored = session.model_copy(update={"version": expected_version + 1})
            self._sessions[stored.id] = stored
            return stored

    # Internal helpers (caller holds the lock)

    def _get_subject(self, subject_id: UUID) -> Subject:
        subject = self._subjects.get(subject_id)
        if subject is None:
            raise SubjectNotFoundError(f"Subject {subject_id} not found")
        return subject

    def _get_session(self, session_id: UUID) -> PlanningSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"Planning session {session_id} not found")
        return session
