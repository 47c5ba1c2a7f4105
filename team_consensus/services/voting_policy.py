"""
Voting Policy Evaluator: turns a vote snapshot into a subject status.

This module is pure:
- No I/O, no clock, no logging
- Deterministic for a given (policy, votes, roster, threshold)
- Never raises for well-formed input; an unresolved aggregate simply
  yields PENDING or IN_REVIEW
"""

from collections.abc import Callable, Iterable
from dataclasses import dataclass

from ..schemas import Subject, SubjectKind, SubjectStatus, Vote, VoteChoice, VotingPolicy


RESOLVED_STATUSES = frozenset({
    SubjectStatus.APPROVED,
    SubjectStatus.REJECTED,
    SubjectStatus.CHANGES_REQUESTED,
})


# =============================================================================
# DATA TRANSFER OBJECTS
# =============================================================================


@dataclass(frozen=True)
class VoteTally:
    """Counts per choice over the current (one-per-voter) vote set."""
    approve: int = 0
    reject: int = 0
    abstain: int = 0
    request_changes: int = 0
    up: int = 0
    down: int = 0

    @property
    def total(self) -> int:
        return (
            self.approve + self.reject + self.abstain
            + self.request_changes + self.up + self.down
        )

    @property
    def net_score(self) -> int:
        """Advisory score used to order phase suggestions for display."""
        return self.up - self.down

    def to_dict(self) -> dict:
        return {
            "approve": self.approve,
            "reject": self.reject,
            "abstain": self.abstain,
            "request_changes": self.request_changes,
            "up": self.up,
            "down": self.down,
            "total": self.total,
            "net_score": self.net_score,
        }


@dataclass(frozen=True)
class Evaluation:
    """Outcome of evaluating a vote snapshot."""
    next_status: SubjectStatus
    resolved: bool
    tally: VoteTally


# =============================================================================
# TALLY
# =============================================================================


def latest_votes(votes: Iterable[Vote]) -> dict[str, Vote]:
    """Keep only the most recent vote per voter."""
    current: dict[str, Vote] = {}
    for vote in votes:
        seen = current.get(vote.voter_id)
        if seen is None or vote.cast_at >= seen.cast_at:
            current[vote.voter_id] = vote
    return current


def tally(votes: Iterable[Vote]) -> VoteTally:
    counts = {choice: 0 for choice in VoteChoice}
    for vote in latest_votes(votes).values():
        counts[vote.choice] += 1
    return VoteTally(
        approve=counts[VoteChoice.APPROVE],
        reject=counts[VoteChoice.REJECT],
        abstain=counts[VoteChoice.ABSTAIN],
        request_changes=counts[VoteChoice.REQUEST_CHANGES],
        up=counts[VoteChoice.UP],
        down=counts[VoteChoice.DOWN],
    )


# =============================================================================
# POLICIES
# =============================================================================


def _majority(
    current: dict[str, Vote],
    counts: VoteTally,
    eligible_voters: frozenset[str] | None,
    required_approvals: int | None,
) -> SubjectStatus | None:
    # Divides by votes cast, not by the roster; ties never resolve.
    if counts.total == 0:
        return None
    if counts.approve * 2 > counts.total:
        return SubjectStatus.APPROVED
    if counts.reject * 2 > counts.total:
        return SubjectStatus.REJECTED
    return None


def _unanimous(
    current: dict[str, Vote],
    counts: VoteTally,
    eligible_voters: frozenset[str] | None,
    required_approvals: int | None,
) -> SubjectStatus | None:
    if counts.reject:
        return SubjectStatus.REJECTED
    if eligible_voters is None:
        minimum = required_approvals or 1
        if counts.total >= minimum and counts.approve == counts.total:
            return SubjectStatus.APPROVED
        return None
    if eligible_voters and all(
        voter in current and current[voter].choice == VoteChoice.APPROVE
        for voter in eligible_voters
    ):
        return SubjectStatus.APPROVED
    return None


def _threshold(
    current: dict[str, Vote],
    counts: VoteTally,
    eligible_voters: frozenset[str] | None,
    required_approvals: int | None,
) -> SubjectStatus | None:
    if counts.approve >= (required_approvals or 1):
        return SubjectStatus.APPROVED
    return None


_AGGREGATORS: dict[VotingPolicy, Callable[..., SubjectStatus | None]] = {
    VotingPolicy.MAJORITY: _majority,
    VotingPolicy.UNANIMOUS: _unanimous,
    VotingPolicy.THRESHOLD: _threshold,
}


def _owner_decision(
    current: dict[str, Vote],
    approver_id: str | None,
    kind: SubjectKind,
) -> SubjectStatus | None:
    vote = current.get(approver_id) if approver_id else None
    if vote is None:
        return None
    if vote.choice == VoteChoice.APPROVE:
        return SubjectStatus.APPROVED
    if vote.choice == VoteChoice.REJECT:
        return SubjectStatus.REJECTED
    if vote.choice == VoteChoice.REQUEST_CHANGES and kind == SubjectKind.REVIEW:
        return SubjectStatus.CHANGES_REQUESTED
    return None


def _review_override(counts: VoteTally) -> SubjectStatus | None:
    """Reviews: reject > request_changes > whatever the policy says."""
    if counts.reject:
        return SubjectStatus.REJECTED
    if counts.request_changes:
        return SubjectStatus.CHANGES_REQUESTED
    return None


# =============================================================================
# EVALUATE
# =============================================================================


def evaluate(
    policy: VotingPolicy,
    votes: Iterable[Vote],
    eligible_voters: frozenset[str] | None = None,
    required_approvals: int | None = None,
    *,
    kind: SubjectKind = SubjectKind.DECISION,
    approver_id: str | None = None,
) -> Evaluation:
    """
    Evaluate the current vote set under ``policy``.

    Order of precedence:
    1. Phase suggestions and handoffs never resolve from votes
    2. Owner approval only listens to the designated approver
    3. Reviews apply the reject / request_changes ladder
    4. The policy aggregator decides approval (or rejection)
    5. Otherwise IN_REVIEW once any vote exists, else PENDING
    """
    current = latest_votes(votes)
    counts = tally(current.values())
    unresolved = SubjectStatus.IN_REVIEW if counts.total else SubjectStatus.PENDING

    if kind in (SubjectKind.PHASE_SUGGESTION, SubjectKind.HANDOFF):
        return Evaluation(next_status=unresolved, resolved=False, tally=counts)

    if policy == VotingPolicy.OWNER_APPROVAL:
        status = _owner_decision(current, approver_id, kind)
    else:
        status = _review_override(counts) if kind == SubjectKind.REVIEW else None
        if status is None:
            status = _AGGREGATORS[policy](current, counts, eligible_voters, required_approvals)

    if status is None:
        status = unresolved
    return Evaluation(next_status=status, resolved=status in RESOLVED_STATUSES, tally=counts)


def evaluate_subject(subject: Subject, votes: Iterable[Vote]) -> Evaluation:
    """Evaluate using the voting configuration stored on ``subject``."""
    return evaluate(
        subject.voting_policy,
        votes,
        subject.eligible_voters,
        subject.required_approvals,
        kind=subject.kind,
        approver_id=subject.designated_approver,
    )
