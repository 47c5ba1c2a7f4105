"""
Consensus Engine: vote intake, status recomputation and transitions.

Every status-mutating operation is one serialized critical section per subject:

    async with locks.hold(subject_id):        # in-process serialization
        load -> expire if overdue -> check -> evaluate
        store.save_subject_if_version(...)     # cross-process compare-and-swap

A VersionConflictError from the store restarts the whole section, up to
``max_version_retries`` attempts. Votes are written in the same
version-checked call as the status they produce, so neither can be lost.

Notifications, activity records and the apply side effect run only after
the write commits and outside the lock.
"""

import logging
from collections import Counter
from collections.abc import Awaitable, Callable, Sequence
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, TypeVar
from uuid import UUID

from pydantic import ValidationError

from ..core.config import Settings, get_settings
from ..core.locks import KeyedLocks
from ..schemas import (
    VALID_CHOICES,
    ActivityAction,
    PlanningSession,
    SessionStatus,
    Subject,
    SubjectKind,
    SubjectStatus,
    Vote,
    VoteChoice,
    VotingPolicy,
)
from .collaborators import (
    ActivityLog,
    ApplyHandler,
    StatusNotifier,
    build_apply_handler,
    build_notifier,
)
from .dependency_validator import approved_in_order, project_plan, validate_approval
from .errors import (
    AlreadyAppliedError,
    ForbiddenError,
    InvalidStateError,
    InvalidSubjectError,
    InvalidVoteError,
    NotEligibleError,
    SubjectResolvedError,
    VersionConflictError,
)
from .subject_store import SubjectStore
from .voting_policy import VoteTally, evaluate_subject, tally


logger = logging.getLogger(__name__)

T = TypeVar("T")

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# DATA TRANSFER OBJECTS
# =============================================================================


@dataclass
class CreateSubjectInput:
    """Input for creating a new subject."""
    kind: SubjectKind
    title: str = ""
    payload: dict[str, Any] | None = None
    voting_policy: VotingPolicy = VotingPolicy.MAJORITY
    eligible_voters: set[str] | None = None
    required_approvals: int | None = None
    approver_id: str | None = None
    deadline: datetime | None = None
    session_id: UUID | None = None
    dependencies: set[UUID] | None = None
    insert_at_position: int | None = None
    to_user_id: str | None = None


@dataclass
class SubjectChange:
    """What a transition writes: the new subject state plus any votes."""
    subject: Subject
    action: ActivityAction
    actor_id: str | None
    votes: tuple[Vote, ...] = ()
    details: dict[str, Any] = field(default_factory=dict)


# (subject, current votes) -> change to write, or None for a no-op
Mutation = Callable[[Subject, list[Vote]], SubjectChange | None]


@dataclass
class SubjectStats:
    """Counts of subjects by kind and by status."""
    total: int
    by_kind: dict[str, int]
    by_status: dict[str, int]
    by_kind_and_status: dict[str, dict[str, int]]

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "by_kind": self.by_kind,
            "by_status": self.by_status,
            "by_kind_and_status": self.by_kind_and_status,
        }


@dataclass
class _Event:
    subject_id: UUID
    action: ActivityAction
    actor_id: str | None
    old_status: str | None
    new_status: str | None
    details: dict[str, Any]
    notify: bool = True


# =============================================================================
# CONSENSUS ENGINE
# =============================================================================


class ConsensusEngine:
    """
    Coordinates votes and administrative actions on subjects.

    Usage:
        engine = ConsensusEngine(InMemorySubjectStore())
        subject = await engine.create_subject(CreateSubjectInput(kind=...), "alice")
        subject = await engine.cast_vote(subject.id, "bob", VoteChoice.APPROVE)
    """

    def __init__(
        self,
        store: SubjectStore,
        *,
        notifier: StatusNotifier | None = None,
        activity_log: ActivityLog | None = None,
        apply_handler: ApplyHandler | None = None,
        settings: Settings | None = None,
        clock: Clock | None = None,
    ):
        self._store = store
        self._notifier = notifier
        self._activity_log = activity_log
        self._apply_handler = apply_handler
        self._settings = settings or get_settings()
        self._clock = clock or utc_now
        self._locks = KeyedLocks()

    @classmethod
    def from_settings(
        cls,
        store: SubjectStore,
        *,
        activity_log: ActivityLog | None = None,
        settings: Settings | None = None,
        clock: Clock | None = None,
    ) -> "ConsensusEngine":
        """Engine with the notifier and apply handler chosen by the webhook settings."""
        settings = settings or get_settings()
        return cls(
            store,
            notifier=build_notifier(settings),
            activity_log=activity_log,
            apply_handler=build_apply_handler(settings),
            settings=settings,
            clock=clock,
        )

    @property
    def store(self) -> SubjectStore:
        return self._store

    @property
    def settings(self) -> Settings:
        return self._settings

    def now(self) -> datetime:
        return self._clock()

    # =========================================================================
    # CREATE / DELETE
    # =========================================================================

    async def create_subject(self, data: CreateSubjectInput, created_by: str) -> Subject:
        """
        Create a subject in ``pending``.

        Raises:
            InvalidSubjectError: the input violates the data model
            SessionNotFoundError: a phase suggestion names an unknown session
        """
        if data.eligible_voters is not None and not data.eligible_voters:
            raise InvalidSubjectError("eligible_voters must name at least one voter")
        if (
            data.voting_policy == VotingPolicy.THRESHOLD
            and data.eligible_voters is not None
            and data.required_approvals is not None
            and data.required_approvals > len(data.eligible_voters)
        ):
            raise InvalidSubjectError(
                f"required_approvals {data.required_approvals} exceeds "
                f"the {len(data.eligible_voters)} eligible voters"
            )

        now = self.now()
        try:
            subject = Subject(
                kind=data.kind,
                created_by=created_by,
                title=data.title,
                payload=data.payload or {},
                voting_policy=data.voting_policy,
                eligible_voters=(
                    frozenset(data.eligible_voters) if data.eligible_voters is not None else None
                ),
                required_approvals=data.required_approvals,
                approver_id=data.approver_id,
                deadline=data.deadline,
                session_id=data.session_id,
                dependencies=frozenset(data.dependencies or ()),
                insert_at_position=data.insert_at_position,
                to_user_id=data.to_user_id,
                created_at=now,
                updated_at=now,
            )
        except ValidationError as e:
            raise InvalidSubjectError(str(e)) from e

        stored = await self._store.create_subject(subject)
        logger.info(f"Created {stored.kind.value} {stored.id} by {created_by}")
        await self._dispatch([_Event(
            subject_id=stored.id,
            action=ActivityAction.CREATE,
            actor_id=created_by,
            old_status=None,
            new_status=stored.status.value,
            details={"kind": stored.kind.value, "title": stored.title},
            notify=False,
        )])
        return stored

    async def delete_subject(self, subject_id: UUID, actor_id: str) -> None:
        """Delete a pending or withdrawn subject; creator only."""
        events: list[_Event] = []

        async def operation() -> None:
            subject = await self._load_current(subject_id, events)
            if subject.created_by != actor_id:
                raise ForbiddenError("Only the creator can delete this item")
            if subject.status not in (SubjectStatus.PENDING, SubjectStatus.WITHDRAWN):
                raise InvalidStateError(
                    f"Cannot delete a {subject.status.value} item; resolved items are kept"
                )
            await self._store.delete_subject(subject_id, subject.version)
            events.append(_Event(
                subject_id=subject_id,
                action=ActivityAction.DELETE,
                actor_id=actor_id,
                old_status=subject.status.value,
                new_status=None,
                details={},
                notify=False,
            ))

        try:
            await self._with_retries(subject_id, operation)
        finally:
            await self._dispatch(events)
        logger.info(f"Deleted subject {subject_id} by {actor_id}")

    # =========================================================================
    # READS
    # =========================================================================

    async def get_subject(self, subject_id: UUID) -> Subject:
        """Current subject; an overdue one is expired first."""
        subject = await self._store.load_subject(subject_id)
        if subject.is_overdue(self.now()):
            return await self.expire_if_due(subject_id)
        return subject

    async def list_votes(self, subject_id: UUID) -> list[Vote]:
        return await self._store.load_votes(subject_id)

    async def list_subjects(
        self,
        kind: SubjectKind | None = None,
        status: SubjectStatus | None = None,
        session_id: UUID | None = None,
        to_user_id: str | None = None,
    ) -> list[Subject]:
        # The status filter is applied after expiry; stored statuses may be stale
        subjects = await self._store.list_subjects(
            kind=kind, session_id=session_id, to_user_id=to_user_id
        )
        now = self.now()
        refreshed = []
        for subject in subjects:
            if subject.is_overdue(now):
                subject = await self.expire_if_due(subject.id)
            if status is None or subject.status == status:
                refreshed.append(subject)
        return refreshed

    async def vote_summary(self, subject_id: UUID) -> VoteTally:
        return tally(await self._store.load_votes(subject_id))

    async def get_stats(self) -> SubjectStats:
        subjects = await self.list_subjects()
        by_kind = Counter(s.kind.value for s in subjects)
        by_status = Counter(s.status.value for s in subjects)
        nested: dict[str, dict[str, int]] = {}
        for subject in subjects:
            counts = nested.setdefault(subject.kind.value, {})
            counts[subject.status.value] = counts.get(subject.status.value, 0) + 1
        return SubjectStats(
            total=len(subjects),
            by_kind=dict(by_kind),
            by_status=dict(by_status),
            by_kind_and_status=nested,
        )

    # =========================================================================
    # VOTING
    # =========================================================================

    async def cast_vote(
        self,
        subject_id: UUID,
        voter_id: str,
        choice: VoteChoice,
        comment: str | None = None,
    ) -> Subject:
        """
        Record (or replace) a vote and recompute the subject status.

        Repeating an identical vote is a no-op.

        Raises:
            SubjectNotFoundError: unknown subject
            InvalidStateError: handoffs are answered, not voted on
            InvalidVoteError: choice not valid for the subject kind
            NotEligibleError: voter not on the closed roster
            SubjectResolvedError: subject already terminal (including just expired)
        """

        def mutate(subject: Subject, votes: list[Vote]) -> SubjectChange | None:
            try:
                picked = VoteChoice(choice)
            except ValueError as e:
                raise InvalidVoteError(f"'{choice}' is not a vote choice") from e
            if subject.kind == SubjectKind.HANDOFF:
                raise InvalidStateError("Handoffs are accepted or declined, not voted on")
            if picked not in VALID_CHOICES[subject.kind]:
                raise InvalidVoteError(
                    f"'{picked.value}' is not a valid vote on a {subject.kind.value}"
                )
            if not subject.may_vote(voter_id):
                raise NotEligibleError(f"{voter_id} is not an eligible voter on {subject.id}")
            if subject.is_terminal:
                raise SubjectResolvedError(
                    f"Subject {subject.id} is {subject.status.value} and accepts no votes"
                )

            now = self.now()
            current = {v.voter_id: v for v in votes}
            vote = Vote(
                subject_id=subject.id,
                voter_id=voter_id,
                choice=picked,
                comment=comment,
                cast_at=now,
            )
            if vote.same_as(current.get(voter_id)):
                return None
            current[voter_id] = vote

            evaluation = evaluate_subject(subject, current.values())
            updates: dict[str, Any] = {"updated_at": now}
            if evaluation.resolved:
                updates["status"] = evaluation.next_status
                updates["overridden"] = False
                if evaluation.next_status != subject.status:
                    updates["resolved_by"] = voter_id
                    updates["resolved_at"] = now
            elif not subject.overridden:
                # An administrative override stays until votes resolve it
                updates["status"] = evaluation.next_status

            return SubjectChange(
                subject=subject.model_copy(update=updates),
                action=ActivityAction.VOTE,
                actor_id=voter_id,
                votes=(vote,),
                details={"choice": vote.choice.value, "tally": evaluation.tally.to_dict()},
            )

        return await self.run_transition(subject_id, mutate, load_votes=True)

    # =========================================================================
    # ADMINISTRATIVE ACTIONS
    # =========================================================================

    async def approve(self, subject_id: UUID, actor_id: str) -> Subject:
        """
        Approve regardless of policy; designated approver only.

        Phase suggestions are checked against their dependencies and
        position inside the session lock.

        Raises:
            ForbiddenError: actor is not the designated approver
            InvalidStateError: subject is terminal, or a handoff
            DependencyNotMetError: a suggestion's prerequisites are unapproved
        """
        subject = await self._store.load_subject(subject_id)
        if subject.kind == SubjectKind.PHASE_SUGGESTION:
            async with self.session_lock(subject.session_id):
                session = await self._store.load_session(subject.session_id)
                if not session.is_active:
                    raise InvalidStateError(f"Planning session {session.id} is finalized")
                siblings = await self._store.list_subjects(session_id=subject.session_id)
                return await self.run_transition(
                    subject_id, self._approval(actor_id, siblings)
                )
        return await self.run_transition(subject_id, self._approval(actor_id))

    def _approval(self, actor_id: str, siblings: Sequence[Subject] | None = None) -> Mutation:
        def mutate(subject: Subject, votes: list[Vote]) -> SubjectChange | None:
            if subject.kind == SubjectKind.HANDOFF:
                raise InvalidStateError("Handoffs are accepted by their recipient")
            if actor_id != subject.designated_approver:
                raise ForbiddenError(f"Only {subject.designated_approver} can approve this item")
            if subject.is_terminal:
                raise InvalidStateError(f"Cannot approve a {subject.status.value} item")
            if subject.status == SubjectStatus.APPROVED:
                return None
            if siblings is not None:
                validate_approval(subject, siblings)

            now = self.now()
            return SubjectChange(
                subject=subject.model_copy(update={
                    "status": SubjectStatus.APPROVED,
                    "overridden": True,
                    "resolved_by": actor_id,
                    "resolved_at": now,
                    "updated_at": now,
                }),
                action=ActivityAction.APPROVE,
                actor_id=actor_id,
            )

        return mutate

    async def reject(self, subject_id: UUID, actor_id: str, reason: str | None = None) -> Subject:
        """Reject regardless of policy; designated approver only."""

        def mutate(subject: Subject, votes: list[Vote]) -> SubjectChange | None:
            if subject.kind == SubjectKind.HANDOFF:
                raise InvalidStateError("Handoffs are declined by their recipient")
            if actor_id != subject.designated_approver:
                raise ForbiddenError(f"Only {subject.designated_approver} can reject this item")
            if subject.is_terminal:
                raise InvalidStateError(f"Cannot reject a {subject.status.value} item")

            now = self.now()
            return SubjectChange(
                subject=subject.model_copy(update={
                    "status": SubjectStatus.REJECTED,
                    "overridden": True,
                    "resolved_by": actor_id,
                    "resolved_at": now,
                    "resolution_note": reason,
                    "updated_at": now,
                }),
                action=ActivityAction.REJECT,
                actor_id=actor_id,
                details={"reason": reason} if reason else {},
            )

        return await self.run_transition(subject_id, mutate)

    async def withdraw(self, subject_id: UUID, actor_id: str) -> Subject:
        """Withdraw a pending subject; creator only."""

        def mutate(subject: Subject, votes: list[Vote]) -> SubjectChange | None:
            if subject.created_by != actor_id:
                raise ForbiddenError("Only the creator can withdraw this item")
            if subject.status != SubjectStatus.PENDING:
                raise InvalidStateError(
                    f"Only pending items can be withdrawn (status is {subject.status.value})"
                )
            return SubjectChange(
                subject=subject.model_copy(update={
                    "status": SubjectStatus.WITHDRAWN,
                    "updated_at": self.now(),
                }),
                action=ActivityAction.WITHDRAW,
                actor_id=actor_id,
            )

        return await self.run_transition(subject_id, mutate)

    async def apply(self, subject_id: UUID, actor_id: str) -> Subject:
        """
        Apply an approved subject and run the apply side effect exactly once.

        Raises:
            ForbiddenError: actor is not the creator
            AlreadyAppliedError: subject was applied before
            InvalidStateError: subject is not approved (or is a suggestion/handoff)
        """

        def mutate(subject: Subject, votes: list[Vote]) -> SubjectChange | None:
            if subject.kind == SubjectKind.PHASE_SUGGESTION:
                raise InvalidStateError("Phase suggestions are applied by finalizing their session")
            if subject.kind == SubjectKind.HANDOFF:
                raise InvalidStateError("Handoffs are completed, not applied")
            if subject.created_by != actor_id:
                raise ForbiddenError("Only the creator can apply this item")
            if subject.status == SubjectStatus.APPLIED:
                raise AlreadyAppliedError(f"Subject {subject.id} was already applied")
            if subject.status != SubjectStatus.APPROVED:
                raise InvalidStateError(
                    f"Only approved items can be applied (status is {subject.status.value})"
                )
            now = self.now()
            return SubjectChange(
                subject=subject.model_copy(update={
                    "status": SubjectStatus.APPLIED,
                    "applied_by": actor_id,
                    "applied_at": now,
                    "updated_at": now,
                }),
                action=ActivityAction.APPLY,
                actor_id=actor_id,
            )

        applied = await self.run_transition(subject_id, mutate)

        if self._apply_handler is not None:
            try:
                await self._apply_handler.on_applied(applied.id, dict(applied.payload))
            except Exception as e:
                logger.error(f"Apply side effect failed for {applied.id}: {e}")
                raise
        return applied

    async def finalize(self, session_id: UUID, actor_id: str) -> PlanningSession:
        """
        Adopt the projected plan of a planning session and lock it.

        All approved suggestions move to ``applied``; pending ones stay as
        they are but the finalized session accepts no further changes.

        Raises:
            ForbiddenError: actor is not the session owner
            InvalidStateError: session already finalized, or nothing approved
        """
        events: list[_Event] = []
        try:
            async with self.session_lock(session_id):
                session = await self._store.load_session(session_id)
                if session.owner_id != actor_id:
                    raise ForbiddenError("Only the session owner can finalize the plan")
                if not session.is_active:
                    raise InvalidStateError(f"Planning session {session_id} is already finalized")

                approved = approved_in_order(
                    await self._store.list_subjects(
                        kind=SubjectKind.PHASE_SUGGESTION, session_id=session_id
                    )
                )
                if not approved:
                    raise InvalidStateError("At least one approved suggestion is required")
                plan = project_plan(approved)

                for suggestion in approved:
                    await self.run_transition(suggestion.id, self._finalized(actor_id, session_id))

                now = self.now()
                finalized = await self._store.save_session_if_version(
                    session.model_copy(update={
                        "status": SessionStatus.FINALIZED,
                        "adopted_plan": tuple(plan),
                        "finalized_at": now,
                        "updated_at": now,
                    }),
                    session.version,
                )
                events.append(_Event(
                    subject_id=session_id,
                    action=ActivityAction.FINALIZE,
                    actor_id=actor_id,
                    old_status=session.status.value,
                    new_status=finalized.status.value,
                    details={"adopted_plan": [str(sid) for sid in plan]},
                    notify=False,
                ))
        finally:
            await self._dispatch(events)

        logger.info(f"Finalized planning session {session_id} with {len(plan)} phases")
        return finalized

    def _finalized(self, actor_id: str, session_id: UUID) -> Mutation:
        def mutate(subject: Subject, votes: list[Vote]) -> SubjectChange | None:
            if subject.status == SubjectStatus.APPLIED:
                return None
            if subject.status != SubjectStatus.APPROVED:
                raise InvalidStateError(
                    f"Suggestion {subject.id} changed to {subject.status.value} during finalize"
                )
            now = self.now()
            return SubjectChange(
                subject=subject.model_copy(update={
                    "status": SubjectStatus.APPLIED,
                    "applied_by": actor_id,
                    "applied_at": now,
                    "updated_at": now,
                }),
                action=ActivityAction.APPLY,
                actor_id=actor_id,
                details={"session_id": str(session_id)},
            )

        return mutate

    # =========================================================================
    # EXPIRY
    # =========================================================================

    async def expire_if_due(self, subject_id: UUID) -> Subject:
        """Expire the subject if its deadline passed; otherwise return it unchanged."""
        return await self.run_transition(subject_id, lambda subject, votes: None)

    # =========================================================================
    # TRANSITION PRIMITIVE
    # =========================================================================

    async def run_transition(
        self,
        subject_id: UUID,
        mutate: Mutation,
        *,
        load_votes: bool = False,
    ) -> Subject:
        """
        Run ``mutate`` in the subject's critical section and write its change.

        An overdue subject is expired (and that expiry committed) before
        ``mutate`` sees it, so checks in ``mutate`` observe the expired status.
        Returning None from ``mutate`` leaves the subject untouched.
        """
        events: list[_Event] = []

        async def operation() -> Subject:
            subject = await self._load_current(subject_id, events)
            votes = await self._store.load_votes(subject_id) if load_votes else []
            change = mutate(subject, votes)
            if change is None:
                return subject

            stored = await self._store.save_subject_if_version(
                change.subject, subject.version, change.votes
            )
            events.append(_Event(
                subject_id=stored.id,
                action=change.action,
                actor_id=change.actor_id,
                old_status=subject.status.value,
                new_status=stored.status.value,
                details=change.details,
            ))
            if stored.status != subject.status:
                logger.info(
                    f"{stored.kind.value} {stored.id}: {subject.status.value} -> "
                    f"{stored.status.value} ({change.action.value} by {change.actor_id})"
                )
            return stored

        try:
            return await self._with_retries(subject_id, operation)
        finally:
            await self._dispatch(events)

    async def _load_current(self, subject_id: UUID, events: list[_Event]) -> Subject:
        """Load inside the lock, committing expiry first when the deadline passed."""
        subject = await self._store.load_subject(subject_id)
        if not subject.is_overdue(self.now()):
            return subject

        expired = await self._store.save_subject_if_version(
            subject.model_copy(update={
                "status": SubjectStatus.EXPIRED,
                "updated_at": self.now(),
            }),
            subject.version,
        )
        events.append(_Event(
            subject_id=subject_id,
            action=ActivityAction.EXPIRE,
            actor_id=None,
            old_status=subject.status.value,
            new_status=expired.status.value,
            details={"deadline": subject.deadline.isoformat()},
        ))
        logger.info(f"{subject.kind.value} {subject_id} expired (deadline {subject.deadline.isoformat()})")
        return expired

    async def _with_retries(self, subject_id: UUID, operation: Callable[[], Awaitable[T]]) -> T:
        retries = self._settings.max_version_retries
        for attempt in range(1, retries + 1):
            try:
                async with self._locks.hold(subject_id):
                    return await operation()
            except VersionConflictError:
                if attempt >= retries:
                    logger.warning(
                        f"Giving up on {subject_id} after {attempt} version conflicts"
                    )
                    raise
                logger.debug(f"Version conflict on {subject_id}, retrying ({attempt}/{retries})")
        raise VersionConflictError(f"No attempts made on {subject_id}")

    @staticmethod
    def _session_key(session_id: UUID | None) -> tuple[str, UUID | None]:
        return ("session", session_id)

    def session_lock(self, session_id: UUID) -> AbstractAsyncContextManager[None]:
        """Session lock context; always taken before any subject lock."""
        return self._locks.hold(self._session_key(session_id))

    # =========================================================================
    # POST-COMMIT COLLABORATORS
    # =========================================================================

    async def _dispatch(self, events: list[_Event]) -> None:
        """Best-effort fan-out; collaborator failures never undo a committed transition."""
        for event in events:
            if self._activity_log is not None:
                try:
                    await self._activity_log.record(
                        event.subject_id,
                        event.action,
                        event.actor_id,
                        old_status=event.old_status,
                        new_status=event.new_status,
                        details=event.details,
                    )
                except Exception as e:
                    logger.warning(f"Activity log failed for {event.subject_id}: {e}")

            if (
                self._notifier is not None
                and event.notify
                and event.new_status is not None
                and event.new_status != event.old_status
            ):
                try:
                    await self._notifier.on_status_changed(
                        event.subject_id, event.old_status, event.new_status
                    )
                except Exception as e:
                    logger.warning(f"Status notification failed for {event.subject_id}: {e}")
        events.clear()
