"""Pydantic schemas for subjects, votes and planning sessions."""

from datetime import datetime, timezone
from typing import Any
from uuid import UUID, uuid4

from pydantic import Field, field_validator, model_validator

from .base import (
    ConsensusBaseModel,
    SessionStatus,
    SubjectKind,
    SubjectStatus,
    VoteChoice,
    VotingPolicy,
    is_expirable,
    is_terminal,
)


def as_utc(value: datetime | None) -> datetime | None:
    """Treat naive timestamps (e.g. read back from SQLite) as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# =============================================================================
# SUBJECT
# =============================================================================


class Subject(ConsensusBaseModel):
    """An item under group decision.

    Decisions, reviews, phase suggestions and handoffs share this shape;
    the kind-specific fields are validated against ``kind``.
    """

    id: UUID = Field(default_factory=uuid4)
    kind: SubjectKind
    status: SubjectStatus = SubjectStatus.PENDING
    created_by: str = Field(..., min_length=1)
    title: str = ""
    payload: dict[str, Any] = Field(
        default_factory=dict,
        description="Opaque content forwarded to the apply side effect",
    )

    # Voting configuration (immutable after creation)
    voting_policy: VotingPolicy = VotingPolicy.MAJORITY
    eligible_voters: frozenset[str] | None = Field(
        default=None,
        description="Closed roster of voters; None means anyone with access",
    )
    required_approvals: int | None = Field(default=None, ge=1)
    approver_id: str | None = Field(
        default=None,
        description="Designated owner/approver; defaults to the creator",
    )
    deadline: datetime | None = None

    # Phase suggestion
    session_id: UUID | None = None
    dependencies: frozenset[UUID] = frozenset()
    insert_at_position: int | None = Field(default=None, ge=0)

    # Handoff
    to_user_id: str | None = None

    # Resolution
    resolved_by: str | None = None
    resolved_at: datetime | None = None
    resolution_note: str | None = None
    overridden: bool = False
    applied_by: str | None = None
    applied_at: datetime | None = None

    version: int = 0
    created_at: datetime
    updated_at: datetime | None = None

    @field_validator(
        "deadline", "resolved_at", "applied_at", "created_at", "updated_at", mode="after"
    )
    @classmethod
    def normalize_timestamps(cls, v: datetime | None) -> datetime | None:
        return as_utc(v)

    @model_validator(mode="after")
    def check_kind_fields(self) -> "Subject":
        if self.voting_policy == VotingPolicy.THRESHOLD and self.required_approvals is None:
            raise ValueError("threshold policy requires required_approvals")
        if self.kind == SubjectKind.PHASE_SUGGESTION:
            if self.session_id is None:
                raise ValueError("phase suggestions belong to a planning session")
            if self.id in self.dependencies:
                raise ValueError("a suggestion cannot depend on itself")
        elif self.dependencies or self.insert_at_position is not None:
            raise ValueError("dependencies and positions only apply to phase suggestions")
        if self.kind == SubjectKind.HANDOFF:
            if not self.to_user_id:
                raise ValueError("handoffs require to_user_id")
            if self.to_user_id == self.created_by:
                raise ValueError("cannot hand a conversation off to yourself")
        elif self.to_user_id is not None:
            raise ValueError("to_user_id only applies to handoffs")
        return self

    @property
    def designated_approver(self) -> str:
        return self.approver_id or self.created_by

    @property
    def from_user_id(self) -> str:
        return self.created_by

    @property
    def is_open_roster(self) -> bool:
        return self.eligible_voters is None

    @property
    def is_terminal(self) -> bool:
        return is_terminal(self.kind, self.status)

    def is_overdue(self, now: datetime) -> bool:
        """Deadline passed while the status can still expire."""
        return (
            self.deadline is not None
            and self.deadline <= now
            and is_expirable(self.kind, self.status)
        )

    def may_vote(self, voter_id: str) -> bool:
        if self.eligible_voters is None:
            return True
        if self.voting_policy == VotingPolicy.OWNER_APPROVAL and voter_id == self.designated_approver:
            return True
        return voter_id in self.eligible_voters


# =============================================================================
# VOTE
# =============================================================================


class Vote(ConsensusBaseModel):
    """One voter's current choice on a subject; (subject_id, voter_id) is unique."""

    subject_id: UUID
    voter_id: str = Field(..., min_length=1)
    choice: VoteChoice
    comment: str | None = None
    cast_at: datetime

    @field_validator("cast_at", mode="after")
    @classmethod
    def normalize_cast_at(cls, v: datetime) -> datetime:
        return as_utc(v)

    def same_as(self, other: "Vote | None") -> bool:
        """True when ``other`` records the same choice and comment."""
        return (
            other is not None
            and other.voter_id == self.voter_id
            and other.choice == self.choice
            and other.comment == self.comment
        )


# =============================================================================
# PLANNING SESSION
# =============================================================================


class PlanningSession(ConsensusBaseModel):
    """Collaborative phase planning session owning a set of suggestions."""

    id: UUID = Field(default_factory=uuid4)
    created_by: str = Field(..., min_length=1)
    name: str = Field(default="Phase Planning Session", max_length=255)
    description: str | None = None
    status: SessionStatus = SessionStatus.ACTIVE
    adopted_plan: tuple[UUID, ...] = ()
    version: int = 0
    created_at: datetime
    updated_at: datetime | None = None
    finalized_at: datetime | None = None

    @field_validator("created_at", "updated_at", "finalized_at", mode="after")
    @classmethod
    def normalize_timestamps(cls, v: datetime | None) -> datetime | None:
        return as_utc(v)

    @property
    def owner_id(self) -> str:
        return self.created_by

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE
