"""
Phase-suggestion ordering and dependency checks.

Plan order is a projection over the live approved set: suggestions are
replayed in approval order and each one with an ``insert_at_position`` is
inserted at that index, shifting later entries. Stored suggestions are never
renumbered.
"""

from collections.abc import Iterable, Sequence
from datetime import datetime, timezone
from uuid import UUID

from ..schemas import Subject, SubjectStatus
from .errors import DependencyNotMetError, InvalidStateError
from .voting_policy import VoteTally


_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def approved_in_order(suggestions: Iterable[Subject]) -> list[Subject]:
    """Approved suggestions ordered by approval time (ties by creation)."""
    approved = [s for s in suggestions if s.status == SubjectStatus.APPROVED]
    return sorted(approved, key=lambda s: (s.resolved_at or _EPOCH, s.created_at, str(s.id)))


def project_plan(approved: Sequence[Subject]) -> list[UUID]:
    """Effective plan order for suggestions already sorted by approval time."""
    plan: list[UUID] = []
    for suggestion in approved:
        position = suggestion.insert_at_position
        if position is None or position >= len(plan):
            plan.append(suggestion.id)
        else:
            plan.insert(position, suggestion.id)
    return plan


def validate_approval(suggestion: Subject, siblings: Iterable[Subject]) -> None:
    """
    Check that ``suggestion`` may be approved now.

    Raises:
        DependencyNotMetError: a dependency is missing from the session or
            is not approved yet
        InvalidStateError: insert_at_position lies outside [0, approved_count]
    """
    by_id = {s.id: s for s in siblings if s.session_id == suggestion.session_id}
    approved_count = sum(
        1 for s in by_id.values()
        if s.status == SubjectStatus.APPROVED and s.id != suggestion.id
    )

    unmet = sorted(
        str(dep) for dep in suggestion.dependencies
        if dep not in by_id or by_id[dep].status != SubjectStatus.APPROVED
    )
    if unmet:
        raise DependencyNotMetError(
            f"Suggestion {suggestion.id} depends on unapproved suggestions: {', '.join(unmet)}"
        )

    position = suggestion.insert_at_position
    if position is not None and not 0 <= position <= approved_count:
        raise InvalidStateError(
            f"insert_at_position {position} is outside [0, {approved_count}]"
        )


def rank_for_display(
    suggestions: Iterable[Subject],
    tallies: dict[UUID, VoteTally],
) -> list[tuple[Subject, VoteTally]]:
    """Order suggestions by net score (desc), then creation time; advisory only."""
    empty = VoteTally()
    ranked = [(s, tallies.get(s.id, empty)) for s in suggestions]
    ranked.sort(key=lambda pair: (-pair[1].net_score, pair[0].created_at))
    return ranked
