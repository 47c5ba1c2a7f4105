"""
Handoffs: passing a conversation from one user to exactly one other.

    pending --accept (recipient)--> accepted --complete (holder)--> completed
       |--decline (recipient)-----> declined
       |---withdraw (creator)-----> withdrawn
       +---deadline passed--------> expired

Runs on the engine's transition primitive, so locking, compare-and-swap,
lazy expiry and notifications behave exactly as for votes.
"""

import logging
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from ..schemas import ActivityAction, Subject, SubjectKind, SubjectStatus, Vote
from .consensus_engine import ConsensusEngine, CreateSubjectInput, Mutation, SubjectChange
from .errors import ForbiddenError, InvalidStateError, InvalidSubjectError


logger = logging.getLogger(__name__)


class HandoffService:
    """Two-party accept/decline workflow."""

    def __init__(self, engine: ConsensusEngine):
        self._engine = engine

    async def create_handoff(
        self,
        from_user_id: str,
        to_user_id: str,
        context: dict[str, Any] | None = None,
        title: str = "",
        deadline: datetime | None = None,
    ) -> Subject:
        """
        Offer a conversation to ``to_user_id``.

        Without an explicit deadline the offer expires after
        ``default_handoff_expiry_hours``.
        """
        if deadline is None:
            hours = self._engine.settings.default_handoff_expiry_hours
            deadline = self._engine.now() + timedelta(hours=hours)
        handoff = await self._engine.create_subject(
            CreateSubjectInput(
                kind=SubjectKind.HANDOFF,
                title=title,
                payload=context or {},
                deadline=deadline,
                to_user_id=to_user_id,
            ),
            created_by=from_user_id,
        )
        logger.info(f"Handoff {handoff.id} offered by {from_user_id} to {to_user_id}")
        return handoff

    async def accept(self, handoff_id: UUID, actor_id: str) -> Subject:
        return await self._respond(
            handoff_id, actor_id, SubjectStatus.ACCEPTED, ActivityAction.ACCEPT
        )

    async def decline(self, handoff_id: UUID, actor_id: str, reason: str | None = None) -> Subject:
        return await self._respond(
            handoff_id, actor_id, SubjectStatus.DECLINED, ActivityAction.DECLINE, reason
        )

    async def complete(self, handoff_id: UUID, actor_id: str) -> Subject:
        """Close an accepted handoff; only the recipient now holds the conversation."""

        def mutate(subject: Subject, votes: list[Vote]) -> SubjectChange | None:
            _require_handoff(subject)
            if subject.status != SubjectStatus.ACCEPTED:
                raise InvalidStateError(
                    f"Only accepted handoffs can be completed (status is {subject.status.value})"
                )
            if actor_id != subject.to_user_id:
                raise ForbiddenError("Only the current holder can complete this handoff")
            return SubjectChange(
                subject=subject.model_copy(update={
                    "status": SubjectStatus.COMPLETED,
                    "updated_at": self._engine.now(),
                }),
                action=ActivityAction.COMPLETE,
                actor_id=actor_id,
            )

        return await self._engine.run_transition(handoff_id, mutate)

    async def withdraw(self, handoff_id: UUID, actor_id: str) -> Subject:
        return await self._engine.withdraw(handoff_id, actor_id)

    async def pending_handoffs(self, user_id: str) -> list[Subject]:
        """Offers still waiting on ``user_id``; overdue ones are expired first."""
        return await self._engine.list_subjects(
            kind=SubjectKind.HANDOFF,
            status=SubjectStatus.PENDING,
            to_user_id=user_id,
        )

    async def _respond(
        self,
        handoff_id: UUID,
        actor_id: str,
        outcome: SubjectStatus,
        action: ActivityAction,
        reason: str | None = None,
    ) -> Subject:
        return await self._engine.run_transition(
            handoff_id, self._response(actor_id, outcome, action, reason)
        )

    def _response(
        self,
        actor_id: str,
        outcome: SubjectStatus,
        action: ActivityAction,
        reason: str | None,
    ) -> Mutation:
        def mutate(subject: Subject, votes: list[Vote]) -> SubjectChange | None:
            _require_handoff(subject)
            if actor_id != subject.to_user_id:
                raise ForbiddenError("Only the recipient can respond to this handoff")
            if subject.status != SubjectStatus.PENDING:
                raise InvalidStateError(
                    f"Handoff {subject.id} is {subject.status.value}, not pending"
                )
            now = self._engine.now()
            return SubjectChange(
                subject=subject.model_copy(update={
                    "status": outcome,
                    "resolved_by": actor_id,
                    "resolved_at": now,
                    "resolution_note": reason,
                    "updated_at": now,
                }),
                action=action,
                actor_id=actor_id,
                details={"reason": reason} if reason else {},
            )

        return mutate


def _require_handoff(subject: Subject) -> None:
    if subject.kind != SubjectKind.HANDOFF:
        raise InvalidSubjectError(f"Subject {subject.id} is not a handoff")
