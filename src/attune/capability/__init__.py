"""Classification and embedding capability."""

from attune.capability.base import (
    ClassificationCapability,
    ClassificationTask,
    clamp_unit,
    parse_classification,
)
from attune.capability.metered import MODEL_PRICING, MeteredCapability, estimate_cost

__all__ = [
    "MODEL_PRICING",
    "ClassificationCapability",
    "ClassificationTask",
    "MeteredCapability",
    "clamp_unit",
    "estimate_cost",
    "parse_classification",
]
