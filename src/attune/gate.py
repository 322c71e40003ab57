"""Confidence gate: per-connection health tracking and automation guard.

``ConfidenceGate`` is pure: it maps a ``GateState`` and an observation to
a new ``GateState``. ``GateService`` applies it to a stored connection
under the store's row lock so concurrent observations never lose updates.

Rules:

- A confidence below the warning threshold costs ``penalty`` health and
  moves an ACTIVE gate to WARNING. Chat answers also grow a low-confidence
  streak; each time the streak reaches its limit it counts as one drift
  event and the streak restarts.
- A confidence at or above the recovery threshold restores
  ``recovery_step`` health (capped at 100) and clears the streak. A
  WARNING gate whose health reaches the clear level returns to ACTIVE.
- The gate FAILS when health drops below the floor or the drift events
  inside the rolling window reach the ceiling. FAILED is sticky until an
  operator reset, which never lowers ``drift_count``.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import StrEnum
from uuid import UUID

import structlog

from attune.capability.base import LENGTHS, LEVELS, STRICTNESS, clamp_unit
from attune.config import settings
from attune.db.models import utcnow_naive
from attune.models import GateState
from attune.states import GateStatus, ensure_transition
from attune.store.base import Store

log = structlog.get_logger()

MAX_HEALTH = 100.0

# Ordered vocabularies for fields whose change size is measurable
LEVELED_FIELDS: dict[str, tuple[str, ...]] = {
    "sales_intensity": LEVELS,
    "response_length": LENGTHS,
    "empathy_level": LEVELS,
    "compliance_strictness": STRICTNESS,
}


class ObservationSource(StrEnum):
    """Where a confidence observation came from."""

    EXTRACTION = "extraction"
    CHAT = "chat"


@dataclass(frozen=True)
class GateConfig:
    """Thresholds for the confidence gate."""

    warning_threshold: float = 0.5
    recovery_threshold: float = 0.8
    penalty: float = 5.0
    recovery_step: float = 1.0
    health_floor: float = 40.0
    warning_clear: float = 80.0
    drift_ceiling: int = 5
    drift_window: timedelta = timedelta(hours=24)
    low_streak_limit: int = 3
    materiality: float = 0.5

    @classmethod
    def from_settings(cls) -> "GateConfig":
        return cls(
            warning_threshold=settings.gate_warning_threshold,
            recovery_threshold=settings.gate_recovery_threshold,
            penalty=settings.gate_penalty,
            recovery_step=settings.gate_recovery_step,
            health_floor=settings.gate_health_floor,
            warning_clear=settings.gate_warning_clear,
            drift_ceiling=settings.gate_drift_ceiling,
            drift_window=timedelta(hours=settings.gate_drift_window_hours),
            low_streak_limit=settings.gate_low_streak_limit,
            materiality=settings.gate_materiality,
        )


def is_material(field: str, old: str | None, new: str | None, threshold: float = 0.5) -> bool:
    """Decide whether a profile field change counts as drift.

    Unset prior values are never material. Tone changes always are.
    Leveled fields are material when the normalized ordinal distance
    exceeds ``threshold``; values outside the known scale count as a full
    step.
    """
    if not old or not new or old.strip().lower() == new.strip().lower():
        return False
    scale = LEVELED_FIELDS.get(field)
    if scale is None:
        return True
    lowered = [level.lower() for level in scale]
    try:
        distance = abs(lowered.index(old.strip().lower()) - lowered.index(new.strip().lower()))
    except ValueError:
        return True
    return distance / (len(scale) - 1) > threshold


class ConfidenceGate:
    """Pure gate rules over ``GateState``."""

    def __init__(self, config: GateConfig | None = None) -> None:
        self.config = config or GateConfig.from_settings()

    def _prune(self, window: list[datetime], now: datetime) -> list[datetime]:
        cutoff = now - self.config.drift_window
        return [moment for moment in window if moment > cutoff]

    def _settle(self, state: GateState) -> GateState:
        if state.status != GateStatus.FAILED and (
            state.health_score < self.config.health_floor
            or len(state.drift_window) >= self.config.drift_ceiling
        ):
            state.status = GateStatus.FAILED
        return state

    def observe(
        self,
        state: GateState,
        confidence: float,
        *,
        source: ObservationSource,
        now: datetime,
    ) -> GateState:
        """Fold one confidence observation into the gate."""
        confidence = clamp_unit(confidence)
        new = state.model_copy(deep=True)
        new.drift_window = self._prune(new.drift_window, now)

        if confidence < self.config.warning_threshold:
            new.health_score = max(0.0, new.health_score - self.config.penalty)
            if new.status == GateStatus.ACTIVE:
                new.status = GateStatus.WARNING
            if source == ObservationSource.CHAT:
                new.low_confidence_streak += 1
                if new.low_confidence_streak >= self.config.low_streak_limit:
                    new.drift_count += 1
                    new.drift_window.append(now)
                    new.low_confidence_streak = 0
        elif confidence >= self.config.recovery_threshold:
            new.health_score = min(MAX_HEALTH, new.health_score + self.config.recovery_step)
            new.low_confidence_streak = 0
            if new.status == GateStatus.WARNING and new.health_score >= self.config.warning_clear:
                new.status = GateStatus.ACTIVE

        return self._settle(new)

    def record_drift(self, state: GateState, *, now: datetime) -> GateState:
        """Count one material profile change."""
        new = state.model_copy(deep=True)
        new.drift_count += 1
        new.drift_window = [*self._prune(new.drift_window, now), now]
        return self._settle(new)

    def reset(self, state: GateState) -> GateState:
        """Operator reset: back to a healthy ACTIVE gate, keeping drift_count."""
        return GateState(
            health_score=MAX_HEALTH,
            drift_count=state.drift_count,
            status=GateStatus.ACTIVE,
            low_confidence_streak=0,
            drift_window=[],
        )

    @staticmethod
    def allows_automation(state: GateState) -> bool:
        return state.status != GateStatus.FAILED

    def is_material(self, field: str, old: str | None, new: str | None) -> bool:
        return is_material(field, old, new, self.config.materiality)


class GateService:
    """Applies gate rules to stored connections."""

    def __init__(self, store: Store, gate: ConfidenceGate | None = None) -> None:
        self._store = store
        self.gate = gate or ConfidenceGate()

    async def _mutate(self, connection_id: UUID, step, trigger: str) -> GateState:
        before: dict[str, GateStatus] = {}

        def apply(state: GateState) -> GateState:
            new = step(state)
            if new.status != state.status:
                ensure_transition("gate", state.status, new.status)
            before["status"] = state.status
            return new

        state = await self._store.mutate_gate(connection_id, apply)
        previous = before.get("status")
        if previous is not None and previous != state.status:
            level = log.warning if state.status == GateStatus.FAILED else log.info
            level(
                "Confidence gate transition",
                connection_id=str(connection_id),
                trigger=trigger,
                previous=previous.value,
                status=state.status.value,
                health_score=state.health_score,
                drift_count=state.drift_count,
            )
        return state

    async def observe(
        self,
        connection_id: UUID,
        confidence: float,
        *,
        source: ObservationSource = ObservationSource.EXTRACTION,
        now: datetime | None = None,
    ) -> GateState:
        now = now or utcnow_naive()
        return await self._mutate(
            connection_id,
            lambda state: self.gate.observe(state, confidence, source=source, now=now),
            f"observe:{source.value}",
        )

    async def record_drift(self, connection_id: UUID, *, now: datetime | None = None) -> GateState:
        now = now or utcnow_naive()
        return await self._mutate(
            connection_id, lambda state: self.gate.record_drift(state, now=now), "drift"
        )

    async def reset(self, connection_id: UUID) -> GateState:
        state = await self._mutate(connection_id, self.gate.reset, "reset")
        log.info("Confidence gate reset", connection_id=str(connection_id))
        return state

    async def state(self, connection_id: UUID) -> GateState:
        connection = await self._store.get_connection(connection_id)
        return connection.gate_state()
