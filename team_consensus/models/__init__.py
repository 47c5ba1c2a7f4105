"""SQLAlchemy ORM Models for the consensus engine."""

from .base import Base, TimestampMixin, UUIDMixin, VersionedMixin
from .models import (
    ActivityLogEntry,
    PlanningSessionRecord,
    SubjectRecord,
    VoteRecord,
)

__all__ = [
    # Base
    "Base",
    "UUIDMixin",
    "TimestampMixin",
    "VersionedMixin",
    # Consensus
    "PlanningSessionRecord",
    "SubjectRecord",
    "VoteRecord",
    # Audit
    "ActivityLogEntry",
]
