"""
Expiry Sweeper: eager, deadline-driven expiry.

Expiry is already lazy (any touch of an overdue subject expires it first).
The sweeper walks overdue subjects periodically so statuses, notifications
and the activity log catch up even for subjects nobody touches. Each subject
goes through the engine's locked path, so a sweep racing a vote or an
approval produces exactly one transition.
"""

import logging
from dataclasses import dataclass, field

from ..schemas import SubjectStatus
from .consensus_engine import ConsensusEngine
from .errors import ConsensusError, StorageError, SubjectNotFoundError


logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURATION
# =============================================================================


@dataclass
class ExpiryConfig:
    """Configuration for sweeper behavior."""

    # Maximum subjects examined per sweep
    batch_size: int = 500

    # Only report what would expire
    dry_run: bool = False


DEFAULT_CONFIG = ExpiryConfig()


# =============================================================================
# DATA TRANSFER OBJECTS
# =============================================================================


@dataclass
class SweepResult:
    """Outcome of one sweep."""
    checked: int = 0
    expired_count: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "checked": self.checked,
            "expired_count": self.expired_count,
            "errors": list(self.errors),
        }


# =============================================================================
# SWEEPER
# =============================================================================


class ExpirySweeper:
    def __init__(self, engine: ConsensusEngine, config: ExpiryConfig | None = None):
        self._engine = engine
        self._config = config or DEFAULT_CONFIG

    async def sweep(self) -> SweepResult:
        """
        Expire every overdue subject once.

        Failures on individual subjects are collected in ``errors`` so one bad
        row does not stop the batch.
        """
        result = SweepResult()
        overdue = await self._engine.store.list_overdue(
            self._engine.now(), limit=self._config.batch_size
        )

        for subject in overdue:
            result.checked += 1
            if self._config.dry_run:
                logger.info(f"[DRY RUN] Would expire {subject.kind.value} {subject.id}")
                continue
            try:
                current = await self._engine.expire_if_due(subject.id)
            except SubjectNotFoundError:
                # Deleted since listing
                continue
            except (ConsensusError, StorageError) as e:
                message = f"Failed to expire {subject.id}: {e}"
                logger.error(message)
                result.errors.append(message)
                continue
            if current.status == SubjectStatus.EXPIRED and subject.status != SubjectStatus.EXPIRED:
                result.expired_count += 1

        logger.info(
            f"Expiry sweep: {result.checked} checked, {result.expired_count} expired, "
            f"{len(result.errors)} errors"
        )
        return result
