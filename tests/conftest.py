"""Pytest configuration and fixtures."""

import asyncio
import hashlib
from collections.abc import Callable, Sequence
from datetime import timedelta

import httpx
import pytest

from attune.capability.base import ClassificationTask
from attune.brand import BrandConfig
from attune.capability.metered import MeteredCapability
from attune.coverage import CoverageConfig
from attune.extraction.engine import EngineConfig
from attune.gate import GateConfig
from attune.ingestion.discovery import DiscoveryConfig
from attune.ingestion.fetcher import FetchConfig
from attune.models import (
    BehaviorProfile,
    BehaviorSignals,
    BrandAnalysis,
    Classification,
    EmbeddingBatch,
    Usage,
)
from attune.retrieval.service import RetrievalConfig
from attune.service import Pipeline
from attune.store.memory import MemoryStore

DIMENSIONS = 8


def hashed_vector(text: str, dimensions: int = DIMENSIONS) -> list[float]:
    """Deterministic pseudo-embedding derived from the text's digest."""
    digest = hashlib.sha256(text.encode("utf-8")).digest()
    return [(digest[i] - 127.5) / 127.5 for i in range(dimensions)]


class FakeCapability:
    """Scripted stand-in for the OpenAI capability."""

    chat_model = "gpt-4o-mini"
    embedding_model = "text-embedding-3-small"

    def __init__(self) -> None:
        self.knowledge = Classification(label="about", confidence=0.9)
        self.behavior = Classification(
            label="brand_guidelines",
            confidence=0.95,
            reasoning="Brand voice guide",
            signals=BehaviorSignals(empathy=0.7),
            suggested_profile=BehaviorProfile(tone="friendly"),
        )
        self.brand = Classification(
            label="SaaS",
            confidence=0.85,
            brand=BrandAnalysis(
                industry="SaaS",
                tone="Playful",
                target_audience="Developer",
                primary_goal="Lead Generation",
                sales_aggressiveness=0.8,
                reading_complexity=0.7,
                emotional_positioning="Trust",
            ),
        )
        self.vectors: dict[str, list[float]] = {}
        self.classify_error: Exception | None = None
        self.embed_error: Exception | None = None
        self.delay = 0.0
        self.classify_calls: list[tuple[str, ClassificationTask]] = []
        self.embed_calls: list[list[str]] = []

    async def classify(self, text: str, *, task: ClassificationTask) -> Classification:
        self.classify_calls.append((text, task))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.classify_error is not None:
            raise self.classify_error
        result = {
            ClassificationTask.KNOWLEDGE: self.knowledge,
            ClassificationTask.BEHAVIOR: self.behavior,
            ClassificationTask.BRAND: self.brand,
        }[task]
        return result.model_copy(
            update={"usage": Usage(model=self.chat_model, prompt_tokens=1000, completion_tokens=200)}
        )

    async def embed(self, texts: Sequence[str]) -> EmbeddingBatch:
        self.embed_calls.append(list(texts))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.embed_error is not None:
            raise self.embed_error
        return EmbeddingBatch(
            vectors=[self.vectors.get(text) or hashed_vector(text) for text in texts],
            usage=Usage(model=self.embedding_model, prompt_tokens=10 * len(texts)),
        )


@pytest.fixture
def store() -> MemoryStore:
    """Return an empty in-memory store."""
    return MemoryStore()


@pytest.fixture
def capability() -> FakeCapability:
    """Return a scripted capability."""
    return FakeCapability()


@pytest.fixture
def metered(capability: FakeCapability, store: MemoryStore) -> MeteredCapability:
    """Return the fake capability behind timeouts and usage logging."""
    return MeteredCapability(capability, store, timeout=1.0)


@pytest.fixture
def gate_config() -> GateConfig:
    """Return the default gate thresholds."""
    return GateConfig()


@pytest.fixture
def site() -> dict[str, tuple[int, str, str]]:
    """Routes served by the mock HTTP transport: path -> (status, content type, body)."""
    return {}


@pytest.fixture
def http_client(site: dict[str, tuple[int, str, str]]) -> httpx.AsyncClient:
    """Return an httpx client answering from ``site``."""

    def handler(request: httpx.Request) -> httpx.Response:
        route = site.get(request.url.path)
        if route is None:
            return httpx.Response(404, text="not found")
        status, content_type, body = route
        return httpx.Response(status, headers={"content-type": content_type}, text=body)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def make_pipeline(
    store: MemoryStore,
    metered: MeteredCapability,
    http_client: httpx.AsyncClient,
    gate_config: GateConfig,
) -> Callable[..., Pipeline]:
    """Return a factory for pipelines over the in-memory store."""

    def factory(**overrides: object) -> Pipeline:
        options: dict[str, object] = {
            "gate_config": gate_config,
            "engine_config": EngineConfig(),
            "fetch_config": FetchConfig(),
            "discovery_config": DiscoveryConfig(),
            "retrieval_config": RetrievalConfig(),
            "coverage_config": CoverageConfig(),
            "brand_config": BrandConfig(),
            "worker_concurrency": 3,
            "claim_timeout": timedelta(seconds=120),
            "lease_stale_after": timedelta(seconds=30),
        }
        options.update(overrides)
        return Pipeline(store, metered, http_client, **options)  # type: ignore[arg-type]

    return factory


@pytest.fixture
def pipeline(make_pipeline: Callable[..., Pipeline]) -> Pipeline:
    """Return a pipeline with default configuration."""
    return make_pipeline()

