"""Base schemas and common types for the consensus engine."""

from enum import Enum

from pydantic import BaseModel, ConfigDict


# =============================================================================
# ENUMS (Mirror database enums)
# =============================================================================


class SubjectKind(str, Enum):
    """The kind of item a group is deciding on."""

    DECISION = "decision"
    REVIEW = "review"
    PHASE_SUGGESTION = "phase_suggestion"
    HANDOFF = "handoff"


class SubjectStatus(str, Enum):
    """Status of a subject in its lifecycle."""

    PENDING = "pending"
    IN_REVIEW = "in_review"  # At least one vote cast, unresolved
    APPROVED = "approved"
    REJECTED = "rejected"
    CHANGES_REQUESTED = "changes_requested"
    EXPIRED = "expired"
    WITHDRAWN = "withdrawn"
    APPLIED = "applied"
    # Handoff only
    ACCEPTED = "accepted"
    DECLINED = "declined"
    COMPLETED = "completed"


class VotingPolicy(str, Enum):
    """Rule used to turn a set of votes into a status."""

    MAJORITY = "majority"
    UNANIMOUS = "unanimous"
    THRESHOLD = "threshold"
    OWNER_APPROVAL = "owner_approval"


class VoteChoice(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"
    ABSTAIN = "abstain"
    REQUEST_CHANGES = "request_changes"
    # Phase suggestions
    UP = "up"
    DOWN = "down"


class SessionStatus(str, Enum):
    """Status of a phase planning session."""

    ACTIVE = "active"
    FINALIZED = "finalized"


class ActivityAction(str, Enum):
    """Types of recorded transitions."""

    CREATE = "create"
    VOTE = "vote"
    APPROVE = "approve"
    REJECT = "reject"
    WITHDRAW = "withdraw"
    APPLY = "apply"
    EXPIRE = "expire"
    ACCEPT = "accept"
    DECLINE = "decline"
    COMPLETE = "complete"
    FINALIZE = "finalize"
    DELETE = "delete"


# =============================================================================
# STATUS TABLES
# =============================================================================

# An approved decision is locked for application, while an approved review
# can still be flipped by later votes until it is applied.
TERMINAL_STATUSES: dict[SubjectKind, frozenset[SubjectStatus]] = {
    SubjectKind.DECISION: frozenset({
        SubjectStatus.APPROVED,
        SubjectStatus.CHANGES_REQUESTED,
        SubjectStatus.REJECTED,
        SubjectStatus.EXPIRED,
        SubjectStatus.WITHDRAWN,
        SubjectStatus.APPLIED,
    }),
    SubjectKind.REVIEW: frozenset({
        SubjectStatus.REJECTED,
        SubjectStatus.EXPIRED,
        SubjectStatus.WITHDRAWN,
        SubjectStatus.APPLIED,
    }),
    SubjectKind.PHASE_SUGGESTION: frozenset({
        SubjectStatus.APPROVED,
        SubjectStatus.REJECTED,
        SubjectStatus.EXPIRED,
        SubjectStatus.WITHDRAWN,
        SubjectStatus.APPLIED,
    }),
    SubjectKind.HANDOFF: frozenset({
        SubjectStatus.DECLINED,
        SubjectStatus.EXPIRED,
        SubjectStatus.COMPLETED,
        SubjectStatus.WITHDRAWN,
    }),
}

# Statuses a passed deadline forces to EXPIRED.
EXPIRABLE_STATUSES: dict[SubjectKind, frozenset[SubjectStatus]] = {
    SubjectKind.DECISION: frozenset({SubjectStatus.PENDING, SubjectStatus.IN_REVIEW}),
    SubjectKind.REVIEW: frozenset({
        SubjectStatus.PENDING,
        SubjectStatus.IN_REVIEW,
        SubjectStatus.APPROVED,
        SubjectStatus.CHANGES_REQUESTED,
    }),
    SubjectKind.PHASE_SUGGESTION: frozenset({SubjectStatus.PENDING, SubjectStatus.IN_REVIEW}),
    SubjectKind.HANDOFF: frozenset({SubjectStatus.PENDING}),
}

VALID_CHOICES: dict[SubjectKind, frozenset[VoteChoice]] = {
    SubjectKind.DECISION: frozenset({
        VoteChoice.APPROVE,
        VoteChoice.REJECT,
        VoteChoice.ABSTAIN,
        VoteChoice.REQUEST_CHANGES,
    }),
    SubjectKind.REVIEW: frozenset({
        VoteChoice.APPROVE,
        VoteChoice.REJECT,
        VoteChoice.ABSTAIN,
        VoteChoice.REQUEST_CHANGES,
    }),
    SubjectKind.PHASE_SUGGESTION: frozenset({VoteChoice.UP, VoteChoice.DOWN}),
    SubjectKind.HANDOFF: frozenset(),
}


def is_terminal(kind: SubjectKind, status: SubjectStatus) -> bool:
    return status in TERMINAL_STATUSES[kind]


def is_expirable(kind: SubjectKind, status: SubjectStatus) -> bool:
    return status in EXPIRABLE_STATUSES[kind]


# =============================================================================
# BASE SCHEMAS
# =============================================================================


class ConsensusBaseModel(BaseModel):
    """Immutable value object with ORM-attribute loading."""

    model_config = ConfigDict(
        from_attributes=True,  # Enable ORM mode
        populate_by_name=True,
        frozen=True,
    )
