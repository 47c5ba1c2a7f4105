"""
Phase Planning: collaborative sessions of ordered, dependent suggestions.

Members vote suggestions up or down (advisory only), the session owner
approves them one at a time, and finalizing adopts the projected order.
Session-level work always takes the session lock before any subject lock.
"""

import logging
from dataclasses import dataclass
from typing import Any
from uuid import UUID

from ..schemas import (
    PlanningSession,
    Subject,
    SubjectKind,
    Vote,
    VoteChoice,
    VotingPolicy,
)
from .consensus_engine import ConsensusEngine, CreateSubjectInput
from .dependency_validator import approved_in_order, project_plan, rank_for_display
from .errors import DependencyNotMetError, InvalidStateError, InvalidSubjectError
from .voting_policy import VoteTally, tally


logger = logging.getLogger(__name__)


# =============================================================================
# DATA TRANSFER OBJECTS
# =============================================================================


@dataclass
class SuggestionInput:
    """Input for proposing a phase."""
    title: str
    description: str | None = None
    details: dict[str, Any] | None = None
    dependencies: set[UUID] | None = None
    insert_at_position: int | None = None


@dataclass
class RankedSuggestion:
    """A suggestion with its advisory vote score."""
    suggestion: Subject
    tally: VoteTally

    @property
    def net_score(self) -> int:
        return self.tally.net_score


# =============================================================================
# PLANNING SERVICE
# =============================================================================


class PlanningService:
    """Phase planning sessions built on the consensus engine's primitives."""

    def __init__(self, engine: ConsensusEngine):
        self._engine = engine
        self._store = engine.store

    async def create_session(
        self,
        owner_id: str,
        name: str | None = None,
        description: str | None = None,
    ) -> PlanningSession:
        now = self._engine.now()
        session = PlanningSession(
            created_by=owner_id,
            name=name or "Phase Planning Session",
            description=description,
            created_at=now,
            updated_at=now,
        )
        stored = await self._store.create_session(session)
        logger.info(f"Created planning session {stored.id} for {owner_id}")
        return stored

    async def get_session(self, session_id: UUID) -> PlanningSession:
        return await self._store.load_session(session_id)

    async def add_suggestion(
        self,
        session_id: UUID,
        suggested_by: str,
        data: SuggestionInput,
    ) -> Subject:
        """
        Propose a phase in an active session.

        Raises:
            SessionNotFoundError: unknown session
            InvalidStateError: session is finalized
            DependencyNotMetError: a dependency is not a suggestion of this session
        """
        async with self._engine.session_lock(session_id):
            session = await self._store.load_session(session_id)
            if not session.is_active:
                raise InvalidStateError(f"Planning session {session_id} is finalized")

            dependencies = set(data.dependencies or ())
            if dependencies:
                known = {
                    s.id for s in await self._store.list_subjects(
                        kind=SubjectKind.PHASE_SUGGESTION, session_id=session_id
                    )
                }
                missing = sorted(str(dep) for dep in dependencies - known)
                if missing:
                    raise DependencyNotMetError(
                        f"Dependencies are not suggestions of session {session_id}: "
                        f"{', '.join(missing)}"
                    )

            payload: dict[str, Any] = {"description": data.description}
            if data.details:
                payload["details"] = data.details
            return await self._engine.create_subject(
                CreateSubjectInput(
                    kind=SubjectKind.PHASE_SUGGESTION,
                    title=data.title,
                    payload=payload,
                    voting_policy=VotingPolicy.OWNER_APPROVAL,
                    approver_id=session.owner_id,
                    session_id=session_id,
                    dependencies=dependencies,
                    insert_at_position=data.insert_at_position,
                ),
                created_by=suggested_by,
            )

    async def vote_suggestion(
        self,
        suggestion_id: UUID,
        voter_id: str,
        choice: VoteChoice,
        comment: str | None = None,
    ) -> Subject:
        """Cast an advisory up/down vote; never approves the suggestion."""
        suggestion = await self._load_suggestion(suggestion_id)
        session = await self._store.load_session(suggestion.session_id)
        if not session.is_active:
            raise InvalidStateError(f"Planning session {session.id} is finalized")
        return await self._engine.cast_vote(suggestion_id, voter_id, choice, comment)

    async def approve_suggestion(self, suggestion_id: UUID, actor_id: str) -> Subject:
        await self._load_suggestion(suggestion_id)
        return await self._engine.approve(suggestion_id, actor_id)

    async def reject_suggestion(
        self,
        suggestion_id: UUID,
        actor_id: str,
        reason: str | None = None,
    ) -> Subject:
        await self._load_suggestion(suggestion_id)
        return await self._engine.reject(suggestion_id, actor_id, reason)

    async def finalize(self, session_id: UUID, actor_id: str) -> PlanningSession:
        return await self._engine.finalize(session_id, actor_id)

    async def project_plan(self, session_id: UUID) -> list[Subject]:
        """Approved suggestions in their current projected plan order."""
        session = await self._store.load_session(session_id)
        suggestions = await self._engine.list_subjects(
            kind=SubjectKind.PHASE_SUGGESTION, session_id=session_id
        )
        by_id = {s.id: s for s in suggestions}
        if not session.is_active:
            return [by_id[sid] for sid in session.adopted_plan if sid in by_id]
        return [by_id[sid] for sid in project_plan(approved_in_order(suggestions))]

    async def ranked_suggestions(self, session_id: UUID) -> list[RankedSuggestion]:
        """All suggestions of a session, highest net score first."""
        await self._store.load_session(session_id)
        suggestions = await self._engine.list_subjects(
            kind=SubjectKind.PHASE_SUGGESTION, session_id=session_id
        )
        tallies: dict[UUID, VoteTally] = {}
        for suggestion in suggestions:
            votes: list[Vote] = await self._store.load_votes(suggestion.id)
            tallies[suggestion.id] = tally(votes)
        return [
            RankedSuggestion(suggestion=s, tally=t)
            for s, t in rank_for_display(suggestions, tallies)
        ]

    async def _load_suggestion(self, suggestion_id: UUID) -> Subject:
        subject = await self._store.load_subject(suggestion_id)
        if subject.kind != SubjectKind.PHASE_SUGGESTION:
            raise InvalidSubjectError(f"Subject {suggestion_id} is not a phase suggestion")
        return subject
