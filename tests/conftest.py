"""Shared fixtures for consensus engine tests."""

from datetime import datetime, timedelta, timezone
from uuid import UUID

import pytest

from team_consensus.core.config import Settings
from team_consensus.schemas import SubjectKind, VotingPolicy
from team_consensus.services import (
    ApplyHandler,
    ConsensusEngine,
    CreateSubjectInput,
    HandoffService,
    InMemoryActivityLog,
    InMemorySubjectStore,
    PlanningService,
    StatusNotifier,
)


ALICE = "alice"
BOB = "bob"
CAROL = "carol"
DAVE = "dave"


# =============================================================================
# TEST DOUBLES
# =============================================================================


class FakeClock:
    """Deterministic clock; advance it explicitly."""

    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


class RecordingNotifier(StatusNotifier):
    def __init__(self) -> None:
        self.changes: list[tuple[UUID, str | None, str]] = []

    async def on_status_changed(self, subject_id, old_status, new_status) -> None:
        self.changes.append((subject_id, old_status, new_status))


class FailingNotifier(StatusNotifier):
    async def on_status_changed(self, subject_id, old_status, new_status) -> None:
        raise RuntimeError("push relay unavailable")


class RecordingApplyHandler(ApplyHandler):
    def __init__(self) -> None:
        self.applied: list[tuple[UUID, dict]] = []

    async def on_applied(self, subject_id, payload) -> None:
        self.applied.append((subject_id, payload))


# =============================================================================
# FIXTURES
# =============================================================================


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def settings() -> Settings:
    return Settings(max_version_retries=5, default_handoff_expiry_hours=24)


@pytest.fixture
def store() -> InMemorySubjectStore:
    return InMemorySubjectStore()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def apply_handler() -> RecordingApplyHandler:
    return RecordingApplyHandler()


@pytest.fixture
def activity_log() -> InMemoryActivityLog:
    return InMemoryActivityLog()


@pytest.fixture
def engine(store, notifier, apply_handler, activity_log, settings, clock) -> ConsensusEngine:
    return ConsensusEngine(
        store,
        notifier=notifier,
        activity_log=activity_log,
        apply_handler=apply_handler,
        settings=settings,
        clock=clock,
    )


@pytest.fixture
def planning(engine) -> PlanningService:
    return PlanningService(engine)


@pytest.fixture
def handoffs(engine) -> HandoffService:
    return HandoffService(engine)


@pytest.fixture
def make_subject(engine):
    """Create a subject with sensible defaults; keyword arguments override them."""

    async def _make(created_by: str = ALICE, **kwargs):
        kwargs.setdefault("kind", SubjectKind.DECISION)
        kwargs.setdefault("title", "Adopt trunk-based development")
        kwargs.setdefault("voting_policy", VotingPolicy.MAJORITY)
        return await engine.create_subject(CreateSubjectInput(**kwargs), created_by)

    return _make
