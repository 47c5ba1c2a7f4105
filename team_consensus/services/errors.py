"""Error taxonomy for consensus operations.

Every domain error is an expected, recoverable condition surfaced to the
caller. ``StorageError`` sits outside the hierarchy so callers can tell
"your vote was invalid" from "we couldn't record your vote".
"""


class ConsensusError(Exception):
    """Base exception for consensus operations."""
    pass


class NotFoundError(ConsensusError):
    """Requested entity does not exist."""
    pass


class SubjectNotFoundError(NotFoundError):
    """Subject does not exist."""
    pass


class SessionNotFoundError(NotFoundError):
    """Planning session does not exist."""
    pass


class NotEligibleError(ConsensusError):
    """Voter is not on the subject's closed roster."""
    pass


class ForbiddenError(ConsensusError):
    """Actor lacks the creator/owner role required for the action."""
    pass


class InvalidStateError(ConsensusError):
    """Action not allowed from the subject's current status."""
    pass


class SubjectResolvedError(ConsensusError):
    """Subject is terminal and no longer accepts votes."""
    pass


class AlreadyAppliedError(ConsensusError):
    """Subject was already applied; the side effect will not repeat."""
    pass


class DependencyNotMetError(ConsensusError):
    """Phase suggestion approved before its prerequisites."""
    pass


class VersionConflictError(ConsensusError):
    """Concurrent modification detected by a version-checked write."""
    pass


class InvalidVoteError(ConsensusError):
    """Vote choice is not valid for the subject kind."""
    pass


class InvalidSubjectError(ConsensusError):
    """Subject construction input violates the data model."""
    pass


class StorageError(Exception):
    """Unexpected infrastructure failure in the persistence collaborator."""
    pass
