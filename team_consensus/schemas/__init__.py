"""Domain schemas for the consensus engine."""

from .base import (
    EXPIRABLE_STATUSES,
    TERMINAL_STATUSES,
    VALID_CHOICES,
    ActivityAction,
    ConsensusBaseModel,
    SessionStatus,
    SubjectKind,
    SubjectStatus,
    VoteChoice,
    VotingPolicy,
    is_expirable,
    is_terminal,
)
from .subjects import PlanningSession, Subject, Vote

__all__ = [
    # Enums
    "SubjectKind",
    "SubjectStatus",
    "VotingPolicy",
    "VoteChoice",
    "SessionStatus",
    "ActivityAction",
    # Status tables
    "TERMINAL_STATUSES",
    "EXPIRABLE_STATUSES",
    "VALID_CHOICES",
    "is_terminal",
    "is_expirable",
    # Models
    "ConsensusBaseModel",
    "Subject",
    "Vote",
    "PlanningSession",
]
