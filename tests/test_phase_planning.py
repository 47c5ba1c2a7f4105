"""
Tests for Phase Planning - dependency gating, position projection, finalize.
"""

from uuid import uuid4

import pytest

from team_consensus.schemas import SessionStatus, SubjectStatus, VoteChoice
from team_consensus.services import (
    DependencyNotMetError,
    ForbiddenError,
    InvalidStateError,
    InvalidVoteError,
    SessionNotFoundError,
    SuggestionInput,
)

from .conftest import ALICE, BOB, CAROL


@pytest.fixture
async def session(planning):
    return await planning.create_session(ALICE, name="Q3 roadmap")


# =============================================================================
# TEST: SUGGESTIONS
# =============================================================================


class TestAddSuggestion:
    async def test_suggestion_is_owned_by_session_owner(self, planning, session):
        suggestion = await planning.add_suggestion(
            session.id, BOB, SuggestionInput(title="Design", description="Sketch the API")
        )

        assert suggestion.status == SubjectStatus.PENDING
        assert suggestion.created_by == BOB
        assert suggestion.designated_approver == ALICE
        assert suggestion.payload["description"] == "Sketch the API"

    async def test_unknown_session(self, planning):
        with pytest.raises(SessionNotFoundError):
            await planning.add_suggestion(uuid4(), BOB, SuggestionInput(title="Design"))

    async def test_dependency_must_belong_to_session(self, planning, session):
        other = await planning.create_session(CAROL)
        foreign = await planning.add_suggestion(other.id, CAROL, SuggestionInput(title="Elsewhere"))

        with pytest.raises(DependencyNotMetError):
            await planning.add_suggestion(
                session.id, BOB, SuggestionInput(title="Build", dependencies={foreign.id})
            )


class TestSuggestionVotes:
    async def test_votes_are_advisory(self, planning, session):
        suggestion = await planning.add_suggestion(session.id, BOB, SuggestionInput(title="Design"))

        await planning.vote_suggestion(suggestion.id, BOB, VoteChoice.UP)
        result = await planning.vote_suggestion(suggestion.id, CAROL, VoteChoice.UP)

        assert result.status == SubjectStatus.IN_REVIEW

    async def test_only_up_and_down(self, planning, session):
        suggestion = await planning.add_suggestion(session.id, BOB, SuggestionInput(title="Design"))

        with pytest.raises(InvalidVoteError):
            await planning.vote_suggestion(suggestion.id, CAROL, VoteChoice.APPROVE)

    async def test_ranked_by_net_score_then_creation(self, planning, session, clock):
        design = await planning.add_suggestion(session.id, BOB, SuggestionInput(title="Design"))
        clock.advance(minutes=1)
        build = await planning.add_suggestion(session.id, BOB, SuggestionInput(title="Build"))
        clock.advance(minutes=1)
        ship = await planning.add_suggestion(session.id, BOB, SuggestionInput(title="Ship"))

        await planning.vote_suggestion(design.id, BOB, VoteChoice.UP)
        await planning.vote_suggestion(design.id, CAROL, VoteChoice.UP)
        await planning.vote_suggestion(build.id, CAROL, VoteChoice.DOWN)

        ranked = await planning.ranked_suggestions(session.id)

        assert [r.suggestion.id for r in ranked] == [design.id, ship.id, build.id]
        assert [r.net_score for r in ranked] == [2, 0, -1]


# =============================================================================
# TEST: APPROVAL
# =============================================================================


class TestApproveSuggestion:
    async def test_dependency_gating(self, planning, session, clock):
        design = await planning.add_suggestion(session.id, BOB, SuggestionInput(title="Design"))
        build = await planning.add_suggestion(
            session.id, BOB, SuggestionInput(title="Build", dependencies={design.id})
        )

        with pytest.raises(DependencyNotMetError):
            await planning.approve_suggestion(build.id, ALICE)

        await planning.approve_suggestion(design.id, ALICE)
        clock.advance(minutes=1)
        approved = await planning.approve_suggestion(build.id, ALICE)

        assert approved.status == SubjectStatus.APPROVED

    async def test_only_session_owner_approves(self, planning, session):
        suggestion = await planning.add_suggestion(session.id, BOB, SuggestionInput(title="Design"))

        with pytest.raises(ForbiddenError):
            await planning.approve_suggestion(suggestion.id, BOB)

    async def test_position_must_be_within_approved_list(self, planning, session):
        suggestion = await planning.add_suggestion(
            session.id, BOB, SuggestionInput(title="Design", insert_at_position=1)
        )

        with pytest.raises(InvalidStateError):
            await planning.approve_suggestion(suggestion.id, ALICE)

    async def test_position_projection(self, planning, session, clock):
        design = await planning.add_suggestion(session.id, BOB, SuggestionInput(title="Design"))
        build = await planning.add_suggestion(session.id, BOB, SuggestionInput(title="Build"))
        research = await planning.add_suggestion(
            session.id, CAROL, SuggestionInput(title="Research", insert_at_position=0)
        )

        await planning.approve_suggestion(design.id, ALICE)
        clock.advance(minutes=1)
        await planning.approve_suggestion(build.id, ALICE)
        clock.advance(minutes=1)
        await planning.approve_suggestion(research.id, ALICE)

        plan = await planning.project_plan(session.id)

        assert [s.id for s in plan] == [research.id, design.id, build.id]

    async def test_rejected_suggestion_leaves_plan(self, planning, session):
        design = await planning.add_suggestion(session.id, BOB, SuggestionInput(title="Design"))

        rejected = await planning.reject_suggestion(design.id, ALICE, "not this quarter")

        assert rejected.status == SubjectStatus.REJECTED
        assert await planning.project_plan(session.id) == []


# =============================================================================
# TEST: FINALIZE
# =============================================================================


class TestFinalize:
    async def test_finalize_applies_approved_and_locks_session(self, planning, session, store, clock):
        design = await planning.add_suggestion(session.id, BOB, SuggestionInput(title="Design"))
        pending = await planning.add_suggestion(session.id, BOB, SuggestionInput(title="Maybe"))
        await planning.approve_suggestion(design.id, ALICE)

        finalized = await planning.finalize(session.id, ALICE)

        assert finalized.status == SessionStatus.FINALIZED
        assert finalized.adopted_plan == (design.id,)
        assert finalized.finalized_at == clock()
        plan = await planning.project_plan(session.id)
        assert [s.status for s in plan] == [SubjectStatus.APPLIED]
        untouched = await store.load_subject(pending.id)
        assert untouched.status == SubjectStatus.PENDING

    async def test_finalize_requires_an_approved_suggestion(self, planning, session):
        await planning.add_suggestion(session.id, BOB, SuggestionInput(title="Design"))

        with pytest.raises(InvalidStateError):
            await planning.finalize(session.id, ALICE)

    async def test_only_owner_finalizes(self, planning, session):
        design = await planning.add_suggestion(session.id, BOB, SuggestionInput(title="Design"))
        await planning.approve_suggestion(design.id, ALICE)

        with pytest.raises(ForbiddenError):
            await planning.finalize(session.id, BOB)

    async def test_finalized_session_accepts_no_changes(self, planning, session):
        design = await planning.add_suggestion(session.id, BOB, SuggestionInput(title="Design"))
        pending = await planning.add_suggestion(session.id, BOB, SuggestionInput(title="Maybe"))
        await planning.approve_suggestion(design.id, ALICE)
        await planning.finalize(session.id, ALICE)

        with pytest.raises(InvalidStateError):
            await planning.finalize(session.id, ALICE)
        with pytest.raises(InvalidStateError):
            await planning.add_suggestion(session.id, BOB, SuggestionInput(title="Late"))
        with pytest.raises(InvalidStateError):
            await planning.vote_suggestion(pending.id, CAROL, VoteChoice.UP)
        with pytest.raises(InvalidStateError):
            await planning.approve_suggestion(pending.id, ALICE)
