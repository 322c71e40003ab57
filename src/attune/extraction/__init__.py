"""Extraction engine and worker pool."""

from attune.extraction.chunker import chunk_text
from attune.extraction.engine import (
    AUTO_APPLY_REVIEWER,
    EngineConfig,
    ExtractionEngine,
    ExtractionOutcome,
)
from attune.extraction.worker import ExtractionWorker, WorkerReport

__all__ = [
    "AUTO_APPLY_REVIEWER",
    "EngineConfig",
    "ExtractionEngine",
    "ExtractionOutcome",
    "ExtractionWorker",
    "WorkerReport",
    "chunk_text",
]
