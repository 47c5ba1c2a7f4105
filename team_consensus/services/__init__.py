"""Consensus services: evaluator, engine, stores and collaborators."""

from .collaborators import (
    ActivityLog,
    ActivityRecord,
    ApplyHandler,
    InMemoryActivityLog,
    LoggingApplyHandler,
    LoggingNotifier,
    SqlActivityLog,
    StatusNotifier,
    WebhookApplyHandler,
    WebhookConfig,
    WebhookNotifier,
    build_apply_handler,
    build_notifier,
)
from .consensus_engine import (
    ConsensusEngine,
    CreateSubjectInput,
    SubjectChange,
    SubjectStats,
)
from .dependency_validator import (
    approved_in_order,
    project_plan,
    rank_for_display,
    validate_approval,
)
from .errors import (
    AlreadyAppliedError,
    ConsensusError,
    DependencyNotMetError,
    ForbiddenError,
    InvalidStateError,
    InvalidSubjectError,
    InvalidVoteError,
    NotEligibleError,
    NotFoundError,
    SessionNotFoundError,
    StorageError,
    SubjectNotFoundError,
    SubjectResolvedError,
    VersionConflictError,
)
from .expiry_engine import ExpiryConfig, ExpirySweeper, SweepResult
from .handoffs import HandoffService
from .phase_planning import PlanningService, RankedSuggestion, SuggestionInput
from .sql_store import SqlAlchemySubjectStore
from .subject_store import InMemorySubjectStore, SubjectStore
from .voting_policy import Evaluation, VoteTally, evaluate, evaluate_subject, tally

__all__ = [
    # Engine (primary)
    "ConsensusEngine",
    "CreateSubjectInput",
    "SubjectChange",
    "SubjectStats",
    # Workflows
    "PlanningService",
    "SuggestionInput",
    "RankedSuggestion",
    "HandoffService",
    "ExpirySweeper",
    "ExpiryConfig",
    "SweepResult",
    # Evaluator
    "evaluate",
    "evaluate_subject",
    "tally",
    "Evaluation",
    "VoteTally",
    # Ordering
    "approved_in_order",
    "project_plan",
    "rank_for_display",
    "validate_approval",
    # Stores
    "SubjectStore",
    "InMemorySubjectStore",
    "SqlAlchemySubjectStore",
    # Collaborators
    "StatusNotifier",
    "LoggingNotifier",
    "WebhookNotifier",
    "WebhookConfig",
    "ActivityLog",
    "ActivityRecord",
    "InMemoryActivityLog",
    "SqlActivityLog",
    "ApplyHandler",
    "LoggingApplyHandler",
    "WebhookApplyHandler",
    "build_notifier",
    "build_apply_handler",
    # Errors
    "ConsensusError",
    "NotFoundError",
    "SubjectNotFoundError",
    "SessionNotFoundError",
    "NotEligibleError",
    "ForbiddenError",
    "InvalidStateError",
    "SubjectResolvedError",
    "AlreadyAppliedError",
    "DependencyNotMetError",
    "VersionConflictError",
    "InvalidVoteError",
    "InvalidSubjectError",
    "StorageError",
]
