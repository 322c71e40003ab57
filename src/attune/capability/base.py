"""Classification and embedding capability interface."""

from collections.abc import Sequence
from enum import StrEnum
from typing import Any, Protocol

from attune.errors import CapabilityError
from attune.models import (
    BehaviorProfile,
    BehaviorSignals,
    BrandAnalysis,
    Classification,
    EmbeddingBatch,
    Usage,
)
from attune.states import DocumentClass


class ClassificationTask(StrEnum):
    """What a classification call is asked to produce."""

    KNOWLEDGE = "knowledge"
    BEHAVIOR = "behavior"
    BRAND = "brand"


KNOWLEDGE_CATEGORIES = frozenset(
    {"about", "product", "pricing", "support", "policy", "contact", "faq", "other"}
)

# Vocabulary the classifier is asked to answer in
TONES = ("Professional", "Friendly", "Casual", "Technical", "Sales-Oriented")
LEVELS = ("Low", "Medium", "High")
LENGTHS = ("Short", "Medium", "Long")
STRICTNESS = ("Relaxed", "Standard", "Strict")
BRAND_TONES = ("Formal", "Casual", "Technical", "Luxury", "Playful")

_PROFILE_KEYS: dict[str, tuple[tuple[str, ...], tuple[str, ...]]] = {
    "tone": (("tone",), TONES),
    "sales_intensity": (("sales_intensity", "salesIntensity"), LEVELS),
    "response_length": (("response_length", "responseLength"), LENGTHS),
    "empathy_level": (("empathy_level", "empathyLevel", "empathy"), LEVELS),
    "compliance_strictness": (("compliance_strictness", "complianceStrictness"), STRICTNESS),
}


class ClassificationCapability(Protocol):
    """An external model that classifies text and produces embeddings."""

    chat_model: str
    embedding_model: str

    async def classify(self, text: str, *, task: ClassificationTask) -> Classification: ...

    async def embed(self, texts: Sequence[str]) -> EmbeddingBatch: ...


def clamp_unit(value: Any) -> float:
    """Coerce a model-provided score into [0, 1]."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if number != number:  # NaN
        return 0.0
    return min(1.0, max(0.0, number))


def _pick(data: dict[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        if key in data:
            return data[key]
    return None


def _choose(value: Any, allowed: tuple[str, ...]) -> str | None:
    if not isinstance(value, str):
        return None
    for option in allowed:
        if value.strip().lower() == option.lower():
            return option
    return None


def parse_classification(
    data: Any, *, task: ClassificationTask, usage: Usage | None = None
) -> Classification:
    """Validate a raw JSON classification response.

    Raises:
        CapabilityError: If the response is not an object or lacks a label.
    """
    if not isinstance(data, dict):
        raise CapabilityError("classify", "response is not a JSON object")
    if task == ClassificationTask.BRAND:
        return _parse_brand(data, usage)
    label = data.get("label") or data.get("classification") or data.get("category")
    if not isinstance(label, str) or not label.strip():
        raise CapabilityError("classify", "response has no label")

    confidence = clamp_unit(data.get("confidence"))
    reasoning = data.get("reasoning") if isinstance(data.get("reasoning"), str) else ""

    if task == ClassificationTask.KNOWLEDGE:
        category = label.strip().lower()
        return Classification(
            label=category if category in KNOWLEDGE_CATEGORIES else "other",
            confidence=confidence,
            reasoning=reasoning,
            usage=usage,
        )

    try:
        document_class = DocumentClass(label.strip().lower())
    except ValueError:
        document_class = DocumentClass.UNKNOWN

    raw_signals = data.get("signals") if isinstance(data.get("signals"), dict) else {}
    signals = BehaviorSignals(
        **{name: clamp_unit(raw_signals.get(name)) for name in BehaviorSignals.model_fields}
    )
    raw_profile = data.get("suggestion") if isinstance(data.get("suggestion"), dict) else {}
    profile = BehaviorProfile(
        **{
            field: _choose(_pick(raw_profile, keys), allowed)
            for field, (keys, allowed) in _PROFILE_KEYS.items()
        }
    )
    return Classification(
        label=document_class.value,
        confidence=confidence,
        reasoning=reasoning,
        signals=signals,
        suggested_profile=profile,
        usage=usage,
    )


def _text(value: Any) -> str | None:
    if not isinstance(value, str) or not value.strip():
        return None
    return value.strip()[:128]


def _parse_brand(data: dict[str, Any], usage: Usage | None) -> Classification:
    industry = _text(_pick(data, ("industry", "label")))
    if industry is None:
        raise CapabilityError("classify", "brand response has no industry")
    brand = BrandAnalysis(
        industry=industry,
        tone=_choose(data.get("tone"), BRAND_TONES),
        target_audience=_text(_pick(data, ("target_audience", "audience"))),
        primary_goal=_text(_pick(data, ("primary_goal", "primaryGoal"))),
        sales_aggressiveness=clamp_unit(_pick(data, ("sales_aggressiveness", "salesIntensity"))),
        reading_complexity=clamp_unit(_pick(data, ("reading_complexity", "complexity"))),
        emotional_positioning=_text(data.get("emotional_positioning")),
    )
    reasoning = data.get("reasoning") if isinstance(data.get("reasoning"), str) else ""
    return Classification(
        label=industry,
        confidence=clamp_unit(data.get("confidence")),
        reasoning=reasoning,
        brand=brand,
        usage=usage,
    )
