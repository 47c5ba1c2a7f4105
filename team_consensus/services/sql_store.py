"""
SQLAlchemy Subject Store: relational persistence with version-checked writes.

Each call runs in its own transaction. ``save_subject_if_version`` issues

    UPDATE subjects SET ..., version = :expected + 1
    WHERE id = :id AND version = :expected

and upserts the accompanying votes in the same transaction, so a vote and the
status it produced are committed together or not at all.
"""

import logging
from collections.abc import Sequence
from datetime import datetime
from uuid import UUID

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.database import get_session_context
from ..models import PlanningSessionRecord, SubjectRecord, VoteRecord
from ..schemas import (
    EXPIRABLE_STATUSES,
    PlanningSession,
    Subject,
    SubjectKind,
    SubjectStatus,
    Vote,
)
from .errors import (
    InvalidSubjectError,
    SessionNotFoundError,
    StorageError,
    SubjectNotFoundError,
    VersionConflictError,
)
from .subject_store import SubjectStore


logger = logging.getLogger(__name__)


# =============================================================================
# ROW MAPPING
# =============================================================================


def _subject_values(subject: Subject) -> dict:
    """Column values for a subject (everything except id and version)."""
    return {
        "kind": subject.kind,
        "status": subject.status,
        "created_by": subject.created_by,
        "title": subject.title,
        "payload": subject.payload,
        "voting_policy": subject.voting_policy,
        "eligible_voters": (
            sorted(subject.eligible_voters) if subject.eligible_voters is not None else None
        ),
        "required_approvals": subject.required_approvals,
        "approver_id": subject.approver_id,
        "deadline": subject.deadline,
        "session_id": subject.session_id,
        "dependencies": sorted(str(dep) for dep in subject.dependencies),
        "insert_at_position": subject.insert_at_position,
        "to_user_id": subject.to_user_id,
        "resolved_by": subject.resolved_by,
        "resolved_at": subject.resolved_at,
        "resolution_note": subject.resolution_note,
        "overridden": subject.overridden,
        "applied_by": subject.applied_by,
        "applied_at": subject.applied_at,
        "created_at": subject.created_at,
        "updated_at": subject.updated_at,
    }


def _to_subject(row: SubjectRecord) -> Subject:
    return Subject(
        id=row.id,
        kind=row.kind,
        status=row.status,
        created_by=row.created_by,
        title=row.title or "",
        payload=row.payload or {},
        voting_policy=row.voting_policy,
        eligible_voters=(
            frozenset(row.eligible_voters) if row.eligible_voters is not None else None
        ),
        required_approvals=row.required_approvals,
        approver_id=row.approver_id,
        deadline=row.deadline,
        session_id=row.session_id,
        dependencies=frozenset(UUID(dep) for dep in (row.dependencies or [])),
        insert_at_position=row.insert_at_position,
        to_user_id=row.to_user_id,
        resolved_by=row.resolved_by,
        resolved_at=row.resolved_at,
        resolution_note=row.resolution_note,
        overridden=bool(row.overridden),
        applied_by=row.applied_by,
        applied_at=row.applied_at,
        version=row.version,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _to_vote(row: VoteRecord) -> Vote:
    return Vote(
        subject_id=row.subject_id,
        voter_id=row.voter_id,
        choice=row.choice,
        comment=row.comment,
        cast_at=row.cast_at,
    )


def _session_values(session: PlanningSession) -> dict:
    return {
        "created_by": session.created_by,
        "name": session.name,
        "description": session.description,
        "status": session.status,
        "adopted_plan": [str(sid) for sid in session.adopted_plan],
        "created_at": session.created_at,
        "updated_at": session.updated_at,
        "finalized_at": session.finalized_at,
    }


def _to_session(row: PlanningSessionRecord) -> PlanningSession:
    return PlanningSession(
        id=row.id,
        created_by=row.created_by,
        name=row.name,
        description=row.description,
        status=row.status,
        adopted_plan=tuple(UUID(sid) for sid in (row.adopted_plan or [])),
        version=row.version,
        created_at=row.created_at,
        updated_at=row.updated_at,
        finalized_at=row.finalized_at,
    )


# =============================================================================
# STORE
# =============================================================================


class SqlAlchemySubjectStore(SubjectStore):
    """Subject store backed by an async SQLAlchemy session factory."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None):
        self._session_factory = session_factory

    # =========================================================================
    # SUBJECTS
    # =========================================================================

    async def create_subject(self, subject: Subject) -> Subject:
        try:
            async with get_session_context(self._session_factory) as session:
                if subject.session_id is not None:
                    await self._get_session_row(session, subject.session_id)
                session.add(SubjectRecord(id=subject.id, version=0, **_subject_values(subject)))
                await session.flush()
        except IntegrityError as e:
            raise InvalidSubjectError(f"Subject {subject.id} could not be created: {e}") from e
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to create subject: {e}") from e
        return subject.model_copy(update={"version": 0})

    async def load_subject(self, subject_id: UUID) -> Subject:
        try:
            async with get_session_context(self._session_factory) as session:
                row = await self._get_subject_row(session, subject_id)
                return _to_subject(row)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to load subject {subject_id}: {e}") from e

    async def save_subject_if_version(
        self,
        subject: Subject,
        expected_version: int,
        votes: Sequence[Vote] = (),
    ) -> Subject:
        try:
            async with get_session_context(self._session_factory) as session:
                result = await session.execute(
                    update(SubjectRecord)
                    .where(
                        SubjectRecord.id == subject.id,
                        SubjectRecord.version == expected_version,
                    )
                    .values(version=expected_version + 1, **_subject_values(subject))
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    # Distinguish a vanished row from a stale version
                    await self._get_subject_row(session, subject.id)
                    raise VersionConflictError(
                        f"Subject {subject.id}: expected v{expected_version} no longer current"
                    )
                for vote in votes:
                    await self._upsert_vote_row(session, vote)
                await session.flush()
        except IntegrityError as e:
            # Concurrent first vote by the same voter from another process
            raise VersionConflictError(f"Subject {subject.id}: concurrent vote write") from e
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to save subject {subject.id}: {e}") from e
        return subject.model_copy(update={"version": expected_version + 1})

    async def delete_subject(self, subject_id: UUID, expected_version: int) -> None:
        try:
            async with get_session_context(self._session_factory) as session:
                await session.execute(delete(VoteRecord).where(VoteRecord.subject_id == subject_id))
                result = await session.execute(
                    delete(SubjectRecord).where(
                        SubjectRecord.id == subject_id,
                        SubjectRecord.version == expected_version,
                    )
                )
                if result.rowcount != 1:
                    await self._get_subject_row(session, subject_id)
                    raise VersionConflictError(
                        f"Subject {subject_id}: expected v{expected_version} no longer current"
                    )
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to delete subject {subject_id}: {e}") from e

    async def list_subjects(
        self,
        kind: SubjectKind | None = None,
        status: SubjectStatus | None = None,
        session_id: UUID | None = None,
        to_user_id: str | None = None,
    ) -> list[Subject]:
        query = select(SubjectRecord).order_by(SubjectRecord.created_at.asc())
        if kind:
            query = query.where(SubjectRecord.kind == kind)
        if status:
            query = query.where(SubjectRecord.status == status)
        if session_id:
            query = query.where(SubjectRecord.session_id == session_id)
        if to_user_id:
            query = query.where(SubjectRecord.to_user_id == to_user_id)
        try:
            async with get_session_context(self._session_factory) as session:
                result = await session.execute(query)
                return [_to_subject(row) for row in result.scalars().all()]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to list subjects: {e}") from e

    async def list_overdue(self, now: datetime, limit: int | None = None) -> list[Subject]:
        # The expirable set differs by kind
        expirable = or_(*(
            and_(SubjectRecord.kind == kind, SubjectRecord.status.in_(list(statuses)))
            for kind, statuses in EXPIRABLE_STATUSES.items()
        ))
        query = (
            select(SubjectRecord)
            .where(
                SubjectRecord.deadline.isnot(None),
                SubjectRecord.deadline <= now,
                expirable,
            )
            .order_by(SubjectRecord.deadline.asc())
        )
        if limit is not None:
            query = query.limit(limit)
        try:
            async with get_session_context(self._session_factory) as session:
                result = await session.execute(query)
                return [_to_subject(row) for row in result.scalars().all()]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to list overdue subjects: {e}") from e

    # =========================================================================
    # VOTES
    # =========================================================================

    async def load_votes(self, subject_id: UUID) -> list[Vote]:
        try:
            async with get_session_context(self._session_factory) as session:
                await self._get_subject_row(session, subject_id)
                result = await session.execute(
                    select(VoteRecord)
                    .where(VoteRecord.subject_id == subject_id)
                    .order_by(VoteRecord.cast_at.asc())
                )
                return [_to_vote(row) for row in result.scalars().all()]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to load votes for {subject_id}: {e}") from e

    async def upsert_vote(self, vote: Vote) -> Vote:
        try:
            async with get_session_context(self._session_factory) as session:
                await self._get_subject_row(session, vote.subject_id)
                await self._upsert_vote_row(session, vote)
        except IntegrityError as e:
            raise VersionConflictError(f"Concurrent vote write on {vote.subject_id}") from e
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to record vote on {vote.subject_id}: {e}") from e
        return vote

    # =========================================================================
    # PLANNING SESSIONS
    # =========================================================================

    async def create_session(self, session: PlanningSession) -> PlanningSession:
        try:
            async with get_session_context(self._session_factory) as db:
                db.add(PlanningSessionRecord(id=session.id, version=0, **_session_values(session)))
                await db.flush()
        except IntegrityError as e:
            raise InvalidSubjectError(f"Planning session {session.id} could not be created: {e}") from e
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to create planning session: {e}") from e
        return session.model_copy(update={"version": 0})

    async def load_session(self, session_id: UUID) -> PlanningSession:
        try:
            async with get_session_context(self._session_factory) as db:
                return _to_session(await self._get_session_row(db, session_id))
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to load planning session {session_id}: {e}") from e

    async def save_session_if_version(
        self,
        session: PlanningSession,
        expected_version: int,
    ) -> PlanningSession:
        try:
            async with get_session_context(self._session_factory) as db:
                result = await db.execute(
                    update(PlanningSessionRecord)
                    .where(
                        PlanningSessionRecord.id == session.id,
                        PlanningSessionRecord.version == expected_version,
                    )
                    .values(version=expected_version + 1, **_session_values(session))
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    await self._get_session_row(db, session.id)
                    raise VersionConflictError(
                        f"Session {session.id}: expected v{expected_version} no longer current"
                    )
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to save planning session {session.id}: {e}") from e
        return session.model_copy(update={"version": expected_version + 1})

    # =========================================================================
    # INTERNAL HELPERS
    # =========================================================================

    async def _get_subject_row(self, session: AsyncSession, subject_id: UUID) -> SubjectRecord:
        result = await session.execute(select(SubjectRecord).where(SubjectRecord.id == subject_id))
        row = result.scalar_one_or_none()
        if row is None:
            raise SubjectNotFoundError(f"Subject {subject_id} not found")
        return row

    async def _get_session_row(self, session: AsyncSession, session_id: UUID) -> PlanningSessionRecord:
        result = await session.execute(
            select(PlanningSessionRecord).where(PlanningSessionRecord.id == session_id)
        )
        row = result.scalar_one_or_none()
        if row is None:
            raise SessionNotFoundError(f"Planning session {session_id} not found")
        return row

    async def _upsert_vote_row(self, session: AsyncSession, vote: Vote) -> None:
        result = await session.execute(
            select(VoteRecord).where(
                VoteRecord.subject_id == vote.subject_id,
                VoteRecord.voter_id == vote.voter_id,
            )
        )
        row = result.scalar_one_or_none()
        if row is None:
            session.add(VoteRecord(
                subject_id=vote.subject_id,
                voter_id=vote.voter_id,
                choice=vote.choice,
                comment=vote.comment,
                cast_at=vote.cast_at,
            ))
        else:
            row.choice = vote.choice
            row.comment = vote.comment
            row.cast_at = vote.cast_at
