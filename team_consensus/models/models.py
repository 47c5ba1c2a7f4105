"""SQLAlchemy ORM models for the consensus engine.

Enum columns reuse the domain enums from ``schemas.base`` so the stored
values and the evaluator can never drift apart.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..schemas.base import (
    ActivityAction,
    SessionStatus,
    SubjectKind,
    SubjectStatus,
    VoteChoice,
    VotingPolicy,
)
from .base import Base, TimestampMixin, UUIDMixin, VersionedMixin


def _enum(enum_cls, name: str) -> Enum:
    return Enum(enum_cls, name=name, values_callable=lambda x: [e.value for e in x])


# =============================================================================
# PLANNING SESSIONS
# =============================================================================


class PlanningSessionRecord(Base, UUIDMixin, TimestampMixin, VersionedMixin):
    """Phase planning session owning a set of suggestions."""

    __tablename__ = "planning_sessions"

    created_by: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    status: Mapped[SessionStatus] = mapped_column(
        _enum(SessionStatus, "session_status"),
        default=SessionStatus.ACTIVE,
        nullable=False,
    )
    adopted_plan: Mapped[list] = mapped_column(
        JSON,
        default=list,
        comment="Ordered suggestion ids adopted on finalize",
    )
    finalized_at: Mapped[datetime | None] = mapped_column()

    # Relationships
    suggestions: Mapped[list["SubjectRecord"]] = relationship(back_populates="session")

    __table_args__ = (
        Index("idx_planning_sessions_owner", "created_by"),
    )


# =============================================================================
# SUBJECTS & VOTES
# =============================================================================


class SubjectRecord(Base, UUIDMixin, TimestampMixin, VersionedMixin):
    """Decision, review, phase suggestion or handoff under group decision."""

    __tablename__ = "subjects"

    kind: Mapped[SubjectKind] = mapped_column(_enum(SubjectKind, "subject_kind"), nullable=False)
    status: Mapped[SubjectStatus] = mapped_column(
        _enum(SubjectStatus, "subject_status"),
        default=SubjectStatus.PENDING,
        nullable=False,
    )
    created_by: Mapped[str] = mapped_column(String(255), nullable=False)
    title: Mapped[str] = mapped_column(String(500), default="")
    payload: Mapped[dict] = mapped_column(JSON, default=dict)

    # Voting configuration
    voting_policy: Mapped[VotingPolicy] = mapped_column(
        _enum(VotingPolicy, "voting_policy"),
        default=VotingPolicy.MAJORITY,
        nullable=False,
    )
    eligible_voters: Mapped[list | None] = mapped_column(
        JSON,
        nullable=True,
        comment="Closed voter roster; NULL means open to anyone with access",
    )
    required_approvals: Mapped[int | None] = mapped_column(Integer)
    approver_id: Mapped[str | None] = mapped_column(String(255))
    deadline: Mapped[datetime | None] = mapped_column()

    # Phase suggestion
    session_id: Mapped[UUID | None] = mapped_column(ForeignKey("planning_sessions.id"))
    dependencies: Mapped[list] = mapped_column(JSON, default=list)
    insert_at_position: Mapped[int | None] = mapped_column(Integer)

    # Handoff
    to_user_id: Mapped[str | None] = mapped_column(String(255))

    # Resolution
    resolved_by: Mapped[str | None] = mapped_column(String(255))
    resolved_at: Mapped[datetime | None] = mapped_column()
    resolution_note: Mapped[str | None] = mapped_column(Text)
    overridden: Mapped[bool] = mapped_column(Boolean, default=False)
    applied_by: Mapped[str | None] = mapped_column(String(255))
    applied_at: Mapped[datetime | None] = mapped_column()

    # Relationships
    session: Mapped["PlanningSessionRecord | None"] = relationship(back_populates="suggestions")
    votes: Mapped[list["VoteRecord"]] = relationship(
        back_populates="subject",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("idx_subjects_kind_status", "kind", "status"),
        Index("idx_subjects_session", "session_id"),
        Index("idx_subjects_deadline", "deadline"),
        Index("idx_subjects_to_user", "to_user_id"),
    )


class VoteRecord(Base, UUIDMixin):
    """A voter's current vote; re-voting replaces the row."""

    __tablename__ = "votes"

    subject_id: Mapped[UUID] = mapped_column(
        ForeignKey("subjects.id", ondelete="CASCADE"), nullable=False
    )
    voter_id: Mapped[str] = mapped_column(String(255), nullable=False)
    choice: Mapped[VoteChoice] = mapped_column(_enum(VoteChoice, "vote_choice"), nullable=False)
    comment: Mapped[str | None] = mapped_column(Text)
    cast_at: Mapped[datetime] = mapped_column(nullable=False)

    # Relationships
    subject: Mapped["SubjectRecord"] = relationship(back_populates="votes")

    __table_args__ = (
        UniqueConstraint("subject_id", "voter_id"),
        Index("idx_votes_subject", "subject_id"),
    )


# =============================================================================
# ACTIVITY LOG
# =============================================================================


class ActivityLogEntry(Base, UUIDMixin):
    """Append-only record of every transition, for audit display."""

    __tablename__ = "activity_log"

    # Not a foreign key: entries outlive deleted subjects
    subject_id: Mapped[UUID] = mapped_column(nullable=False)
    actor_id: Mapped[str | None] = mapped_column(String(255))
    action: Mapped[ActivityAction] = mapped_column(
        _enum(ActivityAction, "activity_action"), nullable=False
    )
    old_status: Mapped[str | None] = mapped_column(String(50))
    new_status: Mapped[str | None] = mapped_column(String(50))
    details: Mapped[dict] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(nullable=False)

    __table_args__ = (
        Index("idx_activity_log_subject", "subject_id", "created_at"),
        Index("idx_activity_log_actor", "actor_id", "created_at"),
    )
