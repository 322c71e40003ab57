"""Tests for the confidence gate."""

from datetime import timedelta

import pytest

from attune.db.models import Connection, utcnow_naive
from attune.gate import ConfidenceGate, GateConfig, GateService, ObservationSource, is_material
from attune.models import GateState
from attune.states import GateStatus
from attune.store.memory import MemoryStore

CHAT = ObservationSource.CHAT
EXTRACTION = ObservationSource.EXTRACTION


@pytest.fixture
def gate(gate_config: GateConfig) -> ConfidenceGate:
    return ConfidenceGate(gate_config)


class TestObserve:
    """Tests for folding confidence observations."""

    def test_low_confidence_warns(self, gate: ConfidenceGate) -> None:
        """A low score costs health and moves ACTIVE to WARNING."""
        state = gate.observe(GateState(), 0.3, source=EXTRACTION, now=utcnow_naive())
        assert (state.health_score, state.status) == (95.0, GateStatus.WARNING)
        assert state.low_confidence_streak == 0

    def test_input_not_mutated(self, gate: ConfidenceGate) -> None:
        """Observation returns a new state."""
        original = GateState()
        gate.observe(original, 0.1, source=CHAT, now=utcnow_naive())
        assert original == GateState()

    def test_middle_band_is_neutral(self, gate: ConfidenceGate) -> None:
        """Scores between the thresholds change nothing."""
        start = GateState(health_score=90.0, low_confidence_streak=2)
        state = gate.observe(start, 0.65, source=CHAT, now=utcnow_naive())
        assert state == start

    def test_recovery_caps_and_clears_warning(self, gate: ConfidenceGate) -> None:
        """High scores restore health up to 100 and clear WARNING at 80."""
        now = utcnow_naive()
        state = GateState(health_score=77.5, status=GateStatus.WARNING, low_confidence_streak=2)
        state = gate.observe(state, 0.9, source=CHAT, now=now)
        assert (state.health_score, state.status) == (78.5, GateStatus.WARNING)
        assert state.low_confidence_streak == 0
        state = gate.observe(state, 0.9, source=CHAT, now=now)
        state = gate.observe(state, 0.9, source=CHAT, now=now)
        assert (state.health_score, state.status) == (80.5, GateStatus.ACTIVE)

        full = gate.observe(GateState(), 1.0, source=EXTRACTION, now=now)
        assert full.health_score == 100.0

    def test_chat_streak_counts_as_drift(self, gate: ConfidenceGate) -> None:
        """Three low chat answers in a row are one drift event."""
        now = utcnow_naive()
        state = GateState()
        for _ in range(3):
            state = gate.observe(state, 0.2, source=CHAT, now=now)
        assert (state.drift_count, state.low_confidence_streak) == (1, 0)
        assert state.drift_window == [now]

    def test_extraction_never_grows_streak(self, gate: ConfidenceGate) -> None:
        """Only chat observations build a streak."""
        state = GateState()
        for _ in range(5):
            state = gate.observe(state, 0.2, source=EXTRACTION, now=utcnow_naive())
        assert (state.drift_count, state.low_confidence_streak) == (0, 0)

    def test_health_floor_fails(self, gate: ConfidenceGate) -> None:
        """Dropping below 40 health fails the gate."""
        now = utcnow_naive()
        state = GateState()
        for _ in range(12):
            state = gate.observe(state, 0.1, source=EXTRACTION, now=now)
        assert (state.health_score, state.status) == (40.0, GateStatus.WARNING)
        state = gate.observe(state, 0.1, source=EXTRACTION, now=now)
        assert state.status == GateStatus.FAILED

    def test_failed_is_sticky(self, gate: ConfidenceGate) -> None:
        """Recovery scores never lift a FAILED gate."""
        state = GateState(health_score=30.0, status=GateStatus.FAILED)
        for _ in range(80):
            state = gate.observe(state, 1.0, source=CHAT, now=utcnow_naive())
        assert state.health_score == 100.0
        assert state.status == GateStatus.FAILED

    def test_health_bounds(self, gate: ConfidenceGate) -> None:
        """Health stays within [0, 100]."""
        state = GateState(health_score=2.0, status=GateStatus.FAILED)
        state = gate.observe(state, 0.0, source=EXTRACTION, now=utcnow_naive())
        assert state.health_score == 0.0


class TestDrift:
    """Tests for drift counting and reset."""

    def test_ceiling_fails_within_window(self, gate: ConfidenceGate) -> None:
        """Five drift events inside 24 hours fail the gate."""
        now = utcnow_naive()
        state = GateState()
        for minute in range(5):
            state = gate.record_drift(state, now=now + timedelta(minutes=minute))
        assert state.status == GateStatus.FAILED

    def test_old_events_leave_window(self, gate: ConfidenceGate) -> None:
        """Events older than the window no longer count toward the ceiling."""
        now = utcnow_naive()
        state = GateState()
        for _ in range(4):
            state = gate.record_drift(state, now=now)
        state = gate.record_drift(state, now=now + timedelta(hours=25))
        assert state.status == GateStatus.ACTIVE
        assert state.drift_count == 5
        assert len(state.drift_window) == 1

    def test_drift_count_monotonic(self, gate: ConfidenceGate) -> None:
        """Reset restores health and status but keeps the lifetime drift count."""
        now = utcnow_naive()
        state = GateState()
        counts = []
        for _ in range(6):
            state = gate.record_drift(state, now=now)
            counts.append(state.drift_count)
        state = gate.reset(state)
        counts.append(state.drift_count)
        assert counts == sorted(counts)
        assert state == GateState(drift_count=6)

    def test_allows_automation(self, gate: ConfidenceGate) -> None:
        """Only FAILED blocks automation."""
        assert gate.allows_automation(GateState(status=GateStatus.WARNING))
        assert not gate.allows_automation(GateState(status=GateStatus.FAILED))


class TestIsMaterial:
    """Tests for materiality of profile changes."""

    @pytest.mark.parametrize(
        ("field", "old", "new", "expected"),
        [
            ("tone", "Formal", "Friendly", True),
            ("tone", "friendly", "Friendly", False),
            ("tone", None, "Friendly", False),
            ("sales_intensity", "Low", "High", True),
            ("sales_intensity", "Low", "Medium", False),
            ("response_length", "Short", "Long", True),
            ("compliance_strictness", "Standard", "Strict", False),
            ("empathy_level", "Low", "Extreme", True),
        ],
    )
    def test_cases(self, field: str, old: str | None, new: str | None, expected: bool) -> None:
        """Tone always counts; leveled fields count past half the scale."""
        assert is_material(field, old, new) is expected


class TestGateService:
    """Tests for the stored gate."""

    @pytest.mark.asyncio
    async def test_observe_persists(self, store: MemoryStore, gate_config: GateConfig) -> None:
        """Observations are written to the connection."""
        connection = await store.create_connection(Connection())
        service = GateService(store, ConfidenceGate(gate_config))

        await service.observe(connection.id, 0.1, source=CHAT)

        state = await service.state(connection.id)
        assert (state.health_score, state.status) == (95.0, GateStatus.WARNING)
        assert connection.low_confidence_streak == 1

    @pytest.mark.asyncio
    async def test_reset_after_failure(self, store: MemoryStore, gate_config: GateConfig) -> None:
        """An operator reset is the only way out of FAILED."""
        connection = await store.create_connection(Connection())
        service = GateService(store, ConfidenceGate(gate_config))
        for _ in range(5):
            await service.record_drift(connection.id)
        assert (await service.state(connection.id)).status == GateStatus.FAILED

        state = await service.reset(connection.id)

        assert (state.status, state.health_score, state.drift_count) == (
            GateStatus.ACTIVE,
            100.0,
            5,
        )
