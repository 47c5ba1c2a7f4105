"""
Tests for the Expiry Sweeper.
"""

from datetime import timedelta

from team_consensus.schemas import SubjectKind, SubjectStatus, VoteChoice, VotingPolicy
from team_consensus.services import ExpiryConfig, ExpirySweeper

from .conftest import ALICE, BOB


class TestExpirySweeper:
    async def test_sweep_expires_only_overdue(self, engine, make_subject, clock, notifier):
        overdue = await make_subject(deadline=clock() + timedelta(hours=1))
        voted = await make_subject(
            deadline=clock() + timedelta(hours=1),
            voting_policy=VotingPolicy.THRESHOLD,
            required_approvals=2,
        )
        await engine.cast_vote(voted.id, BOB, VoteChoice.APPROVE)
        later = await make_subject(deadline=clock() + timedelta(days=3))
        clock.advance(hours=2)

        result = await ExpirySweeper(engine).sweep()

        assert result.checked == 2
        assert result.expired_count == 2
        assert result.errors == []
        assert (await engine.store.load_subject(overdue.id)).status == SubjectStatus.EXPIRED
        assert (await engine.store.load_subject(voted.id)).status == SubjectStatus.EXPIRED
        assert (await engine.store.load_subject(later.id)).status == SubjectStatus.PENDING
        assert (voted.id, "in_review", "expired") in notifier.changes

    async def test_resolved_subjects_are_not_swept(self, engine, make_subject, clock):
        approved = await make_subject(deadline=clock() + timedelta(hours=1))
        await engine.approve(approved.id, ALICE)
        clock.advance(hours=2)

        result = await ExpirySweeper(engine).sweep()

        assert result.checked == 0
        assert (await engine.store.load_subject(approved.id)).status == SubjectStatus.APPROVED

    async def test_approved_review_still_expires(self, engine, make_subject, clock):
        review = await make_subject(kind=SubjectKind.REVIEW, deadline=clock() + timedelta(hours=1))
        await engine.approve(review.id, ALICE)
        clock.advance(hours=2)

        result = await ExpirySweeper(engine).sweep()

        assert result.expired_count == 1

    async def test_second_sweep_finds_nothing(self, engine, make_subject, clock):
        await make_subject(deadline=clock() + timedelta(hours=1))
        clock.advance(hours=2)
        sweeper = ExpirySweeper(engine)

        await sweeper.sweep()
        again = await sweeper.sweep()

        assert again.checked == 0
        assert again.expired_count == 0

    async def test_dry_run_changes_nothing(self, engine, make_subject, clock):
        subject = await make_subject(deadline=clock() + timedelta(hours=1))
        clock.advance(hours=2)

        result = await ExpirySweeper(engine, ExpiryConfig(dry_run=True)).sweep()

        assert result.checked == 1
        assert result.expired_count == 0
        assert (await engine.store.load_subject(subject.id)).status == SubjectStatus.PENDING

    async def test_batch_size_limits_work(self, engine, make_subject, clock):
        for _ in range(3):
            await make_subject(deadline=clock() + timedelta(hours=1))
        clock.advance(hours=2)

        result = await ExpirySweeper(engine, ExpiryConfig(batch_size=2)).sweep()

        assert result.checked == 2
        assert result.expired_count == 2
