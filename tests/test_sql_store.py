"""
Tests for the SQLAlchemy store against SQLite (aiosqlite).

These tests verify:
1. Subjects, votes and sessions survive a round trip through the database
2. Version-checked writes reject stale versions
3. The engine runs end to end on the relational store
4. The expiry job sweeps a real database
"""

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from team_consensus.core.database import build_engine, build_session_factory, close_db, init_db
from team_consensus.jobs.expiry_cron import run_expiry_job
from team_consensus.schemas import (
    ActivityAction,
    PlanningSession,
    SessionStatus,
    Subject,
    SubjectKind,
    SubjectStatus,
    Vote,
    VoteChoice,
    VotingPolicy,
)
from team_consensus.services import (
    ConsensusEngine,
    CreateSubjectInput,
    ExpiryConfig,
    PlanningService,
    SessionNotFoundError,
    SqlActivityLog,
    SqlAlchemySubjectStore,
    SubjectNotFoundError,
    SuggestionInput,
    VersionConflictError,
)

from .conftest import ALICE, BOB, CAROL


# =============================================================================
# FIXTURES
# =============================================================================


@pytest.fixture
async def session_factory(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'consensus.db'}")
    await init_db(engine)
    yield build_session_factory(engine)
    await close_db(engine)


@pytest.fixture
def sql_store(session_factory) -> SqlAlchemySubjectStore:
    return SqlAlchemySubjectStore(session_factory)


@pytest.fixture
def sql_engine(sql_store, session_factory, settings, clock, notifier) -> ConsensusEngine:
    return ConsensusEngine(
        sql_store,
        notifier=notifier,
        activity_log=SqlActivityLog(session_factory),
        settings=settings,
        clock=clock,
    )


def new_subject(clock, **kwargs) -> Subject:
    kwargs.setdefault("kind", SubjectKind.DECISION)
    kwargs.setdefault("created_by", ALICE)
    return Subject(created_at=clock(), updated_at=clock(), **kwargs)


# =============================================================================
# TEST: ROUND TRIP
# =============================================================================


class TestRoundTrip:
    async def test_subject_round_trip(self, sql_store, clock):
        subject = new_subject(
            clock,
            title="Switch CI provider",
            payload={"provider": "buildkite"},
            voting_policy=VotingPolicy.THRESHOLD,
            eligible_voters=frozenset({BOB, CAROL}),
            required_approvals=2,
            deadline=clock() + timedelta(days=2),
        )

        await sql_store.create_subject(subject)
        loaded = await sql_store.load_subject(subject.id)

        assert loaded.version == 0
        assert loaded.title == "Switch CI provider"
        assert loaded.payload == {"provider": "buildkite"}
        assert loaded.voting_policy == VotingPolicy.THRESHOLD
        assert loaded.eligible_voters == frozenset({BOB, CAROL})
        assert loaded.deadline == clock() + timedelta(days=2)
        assert loaded.created_at == clock()

    async def test_missing_subject(self, sql_store):
        with pytest.raises(SubjectNotFoundError):
            await sql_store.load_subject(uuid4())

    async def test_session_and_suggestion_round_trip(self, sql_store, clock):
        session = PlanningSession(created_by=ALICE, created_at=clock())
        await sql_store.create_session(session)
        first = new_subject(clock, kind=SubjectKind.PHASE_SUGGESTION, session_id=session.id)
        second = new_subject(
            clock,
            kind=SubjectKind.PHASE_SUGGESTION,
            session_id=session.id,
            dependencies=frozenset({first.id}),
            insert_at_position=0,
        )
        await sql_store.create_subject(first)
        await sql_store.create_subject(second)

        loaded = await sql_store.load_subject(second.id)
        listed = await sql_store.list_subjects(session_id=session.id)

        assert loaded.dependencies == frozenset({first.id})
        assert loaded.insert_at_position == 0
        assert {s.id for s in listed} == {first.id, second.id}

    async def test_suggestion_needs_existing_session(self, sql_store, clock):
        orphan = new_subject(clock, kind=SubjectKind.PHASE_SUGGESTION, session_id=uuid4())

        with pytest.raises(SessionNotFoundError):
            await sql_store.create_subject(orphan)


# =============================================================================
# TEST: VERSION-CHECKED WRITES
# =============================================================================


class TestVersionedWrites:
    async def test_save_bumps_version_and_writes_votes(self, sql_store, clock):
        subject = await sql_store.create_subject(new_subject(clock))
        vote = Vote(subject_id=subject.id, voter_id=BOB, choice=VoteChoice.APPROVE, cast_at=clock())

        saved = await sql_store.save_subject_if_version(
            subject.model_copy(update={"status": SubjectStatus.IN_REVIEW}), 0, [vote]
        )

        assert saved.version == 1
        assert (await sql_store.load_subject(subject.id)).status == SubjectStatus.IN_REVIEW
        assert [v.voter_id for v in await sql_store.load_votes(subject.id)] == [BOB]

    async def test_stale_version_is_rejected_with_its_votes(self, sql_store, clock):
        subject = await sql_store.create_subject(new_subject(clock))
        await sql_store.save_subject_if_version(subject, 0)
        vote = Vote(subject_id=subject.id, voter_id=BOB, choice=VoteChoice.REJECT, cast_at=clock())

        with pytest.raises(VersionConflictError):
            await sql_store.save_subject_if_version(subject, 0, [vote])

        assert await sql_store.load_votes(subject.id) == []
        assert (await sql_store.load_subject(subject.id)).version == 1

    async def test_upsert_replaces_vote(self, sql_store, clock):
        subject = await sql_store.create_subject(new_subject(clock))
        await sql_store.upsert_vote(
            Vote(subject_id=subject.id, voter_id=BOB, choice=VoteChoice.APPROVE, cast_at=clock())
        )
        await sql_store.upsert_vote(
            Vote(subject_id=subject.id, voter_id=BOB, choice=VoteChoice.ABSTAIN, cast_at=clock())
        )

        votes = await sql_store.load_votes(subject.id)

        assert len(votes) == 1
        assert votes[0].choice == VoteChoice.ABSTAIN

    async def test_delete_checks_version(self, sql_store, clock):
        subject = await sql_store.create_subject(new_subject(clock))

        with pytest.raises(VersionConflictError):
            await sql_store.delete_subject(subject.id, 3)
        await sql_store.delete_subject(subject.id, 0)

        with pytest.raises(SubjectNotFoundError):
            await sql_store.load_subject(subject.id)

    async def test_list_overdue(self, sql_store, clock):
        due = await sql_store.create_subject(new_subject(clock, deadline=clock() + timedelta(hours=1)))
        await sql_store.create_subject(new_subject(clock, deadline=clock() + timedelta(days=1)))
        await sql_store.create_subject(new_subject(clock))

        overdue = await sql_store.list_overdue(clock() + timedelta(hours=2))

        assert [s.id for s in overdue] == [due.id]

    async def test_list_overdue_limit_keeps_earliest_deadlines(self, sql_store, clock):
        await sql_store.create_subject(new_subject(clock, deadline=clock() + timedelta(minutes=90)))
        earliest = await sql_store.create_subject(
            new_subject(clock, deadline=clock() + timedelta(minutes=30))
        )
        await sql_store.create_subject(new_subject(
            clock, status=SubjectStatus.APPROVED, deadline=clock() + timedelta(minutes=10)
        ))
        review = await sql_store.create_subject(new_subject(
            clock,
            kind=SubjectKind.REVIEW,
            status=SubjectStatus.APPROVED,
            deadline=clock() + timedelta(minutes=20),
        ))

        overdue = await sql_store.list_overdue(clock() + timedelta(hours=2), limit=2)

        assert [s.id for s in overdue] == [review.id, earliest.id]


# =============================================================================
# TEST: ENGINE ON THE RELATIONAL STORE
# =============================================================================


class TestEngineOnSql:
    async def test_vote_flow_and_activity_log(self, sql_engine, session_factory):
        subject = await sql_engine.create_subject(
            CreateSubjectInput(
                kind=SubjectKind.REVIEW,
                voting_policy=VotingPolicy.THRESHOLD,
                required_approvals=2,
            ),
            ALICE,
        )

        await sql_engine.cast_vote(subject.id, BOB, VoteChoice.APPROVE)
        approved = await sql_engine.cast_vote(subject.id, CAROL, VoteChoice.APPROVE)

        assert approved.status == SubjectStatus.APPROVED
        assert approved.version == 2
        history = await SqlActivityLog(session_factory).history(subject.id)
        assert [e.action for e in history] == [
            ActivityAction.CREATE,
            ActivityAction.VOTE,
            ActivityAction.VOTE,
        ]

    async def test_finalize_persists_plan(self, sql_engine, sql_store, clock):
        planning = PlanningService(sql_engine)
        session = await planning.create_session(ALICE)
        design = await planning.add_suggestion(session.id, BOB, SuggestionInput(title="Design"))
        await planning.approve_suggestion(design.id, ALICE)

        await planning.finalize(session.id, ALICE)

        stored = await sql_store.load_session(session.id)
        assert stored.status == SessionStatus.FINALIZED
        assert stored.adopted_plan == (design.id,)
        assert stored.version == 1
        assert (await sql_store.load_subject(design.id)).status == SubjectStatus.APPLIED


# =============================================================================
# TEST: EXPIRY JOB
# =============================================================================


class TestExpiryJob:
    async def test_job_expires_overdue_subjects(self, sql_store, tmp_path):
        now = datetime.now(timezone.utc)
        overdue = await sql_store.create_subject(Subject(
            kind=SubjectKind.DECISION,
            created_by=ALICE,
            created_at=now - timedelta(days=1),
            deadline=now - timedelta(hours=1),
        ))
        upcoming = await sql_store.create_subject(Subject(
            kind=SubjectKind.DECISION,
            created_by=ALICE,
            created_at=now,
            deadline=now + timedelta(days=1),
        ))

        results = await run_expiry_job(f"sqlite+aiosqlite:///{tmp_path / 'consensus.db'}")

        assert results["checked"] == 1
        assert results["expired_count"] == 1
        assert results["errors"] == []
        assert results["completed_at"] is not None
        assert (await sql_store.load_subject(overdue.id)).status == SubjectStatus.EXPIRED
        assert (await sql_store.load_subject(upcoming.id)).status == SubjectStatus.PENDING

    async def test_dry_run_changes_nothing(self, sql_store, tmp_path):
        now = datetime.now(timezone.utc)
        overdue = await sql_store.create_subject(Subject(
            kind=SubjectKind.DECISION,
            created_by=ALICE,
            created_at=now - timedelta(days=1),
            deadline=now - timedelta(hours=1),
        ))

        results = await run_expiry_job(
            f"sqlite+aiosqlite:///{tmp_path / 'consensus.db'}",
            ExpiryConfig(dry_run=True),
        )

        assert results["checked"] == 1
        assert (await sql_store.load_subject(overdue.id)).status == SubjectStatus.PENDING
