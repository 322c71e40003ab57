"""Behavior suggestion diffing and human review.

A suggestion's diff is snapshotted when the suggestion is created, so a
review decision always applies exactly what the reviewer saw even if the
live profile changed in between.
"""

from datetime import timedelta
from enum import StrEnum
from uuid import UUID, uuid4

import structlog

from attune.config import settings
from attune.db.models import BehaviorSuggestion, utcnow_naive
from attune.errors import ConnectionBusyError, InvalidTransitionError
from attune.gate import GateService
from attune.models import (
    PROFILE_FIELDS,
    BehaviorProfile,
    FieldChange,
    ProfileDiff,
    dump_diff,
)
from attune.states import SuggestionStatus
from attune.store.base import Store

log = structlog.get_logger()


class ReviewDecision(StrEnum):
    """A reviewer's verdict on a suggestion."""

    ACCEPT = "accept"
    REJECT = "reject"


_DECISION_STATUS = {
    ReviewDecision.ACCEPT: SuggestionStatus.ACCEPTED,
    ReviewDecision.REJECT: SuggestionStatus.REJECTED,
}


def diff_profiles(current: BehaviorProfile, suggested: BehaviorProfile) -> ProfileDiff:
    """Compute field -> {from, to} for every suggested value that differs.

    Fields the suggestion leaves unset are not part of the diff.
    """
    diff: ProfileDiff = {}
    for name in PROFILE_FIELDS:
        old = getattr(current, name)
        new = getattr(suggested, name)
        if new is not None and new != old:
            diff[name] = FieldChange(from_=old, to=new)
    return diff


def apply_diff(profile: BehaviorProfile, diff: ProfileDiff) -> BehaviorProfile:
    return profile.model_copy(update={name: change.to for name, change in diff.items()})


def revert_diff(profile: BehaviorProfile, diff: ProfileDiff) -> BehaviorProfile:
    return profile.model_copy(update={name: change.from_ for name, change in diff.items()})


class ReviewService:
    """Accepts or rejects behavior suggestions under the connection lease."""

    def __init__(
        self,
        store: Store,
        gate: GateService,
        *,
        lease_stale_after: timedelta | None = None,
    ) -> None:
        self._store = store
        self._gate = gate
        self._lease_stale_after = lease_stale_after or timedelta(
            seconds=settings.lease_stale_seconds
        )

    async def review(
        self,
        suggestion_id: UUID,
        decision: ReviewDecision | str,
        reviewer_id: str,
        notes: str | None = None,
    ) -> BehaviorSuggestion:
        """Record a review decision.

        Accepting applies the snapshotted diff to the live profile in the
        same write as the status change, then counts drift when any applied
        field moved materially.

        Raises:
            ConnectionBusyError: The connection lease is held by someone else.
            InvalidTransitionError: The suggestion was already reviewed.
        """
        decision = ReviewDecision(decision)
        suggestion = await self._store.get_suggestion(suggestion_id)
        connection_id = suggestion.connection_id
        holder = f"review:{uuid4()}"

        acquired = await self._store.acquire_lease(
            connection_id, holder, now=utcnow_naive(), stale_after=self._lease_stale_after
        )
        if not acquired:
            connection = await self._store.get_connection(connection_id)
            log.info(
                "Review rejected, connection busy",
                connection_id=str(connection_id),
                suggestion_id=str(suggestion_id),
                holder=connection.state_locked_by,
            )
            raise ConnectionBusyError(connection_id, connection.state_locked_by)

        try:
            suggestion = await self._store.get_suggestion(suggestion_id)
            target = _DECISION_STATUS[decision]
            if suggestion.status != SuggestionStatus.PENDING:
                raise InvalidTransitionError("suggestion", suggestion.status, target)

            material = False
            profile = None
            if decision == ReviewDecision.ACCEPT:
                connection = await self._store.get_connection(connection_id)
                current = connection.behavior_profile()
                diff = suggestion.profile_diff
                material = any(
                    self._gate.gate.is_material(name, getattr(current, name), change.to)
                    for name, change in diff.items()
                )
                profile = {name: change.to for name, change in diff.items()}

            reviewed = await self._store.commit_review(
                suggestion_id,
                status=target,
                reviewer=reviewer_id,
                notes=notes,
                now=utcnow_naive(),
                profile=profile,
            )
            log.info(
                "Suggestion reviewed",
                connection_id=str(connection_id),
                suggestion_id=str(suggestion_id),
                decision=decision.value,
                reviewer=reviewer_id,
                fields=sorted(profile or {}),
                material=material,
            )
            if material:
                await self._gate.record_drift(connection_id)
            return reviewed
        finally:
            await self._store.release_lease(connection_id, holder)

    async def propose(
        self,
        connection_id: UUID,
        suggested: BehaviorProfile,
        *,
        confidence: float,
        reasoning: str | None = None,
        behavior_document_id: UUID | None = None,
    ) -> BehaviorSuggestion | None:
        """Create a PENDING suggestion with its diff snapshotted now.

        Returns None when the suggestion matches the live profile.
        """
        connection = await self._store.get_connection(connection_id)
        diff = diff_profiles(connection.behavior_profile(), suggested)
        if not diff:
            log.info(
                "Suggestion matches current profile",
                connection_id=str(connection_id),
                document_id=str(behavior_document_id) if behavior_document_id else None,
            )
            return None

        suggestion = await self._store.add_suggestion(
            BehaviorSuggestion(
                connection_id=connection_id,
                behavior_document_id=behavior_document_id,
                **{name: getattr(suggested, name) for name in PROFILE_FIELDS},
                reasoning=reasoning or None,
                confidence_score=confidence,
                diff=dump_diff(diff),
            )
        )
        log.info(
            "Behavior suggestion created",
            connection_id=str(connection_id),
            document_id=str(behavior_document_id) if behavior_document_id else None,
            suggestion_id=str(suggestion.id),
            fields=sorted(diff),
            confidence=confidence,
        )
        return suggestion
