"""Tests for classification parsing, the OpenAI provider and usage metering."""

import asyncio
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest
from pydantic import SecretStr

from attune.capability import provider
from attune.capability.base import ClassificationTask, clamp_unit, parse_classification
from attune.capability.metered import MeteredCapability, estimate_cost
from attune.capability.provider import OpenAICapability
from attune.errors import CapabilityError, CapabilityTimeoutError, ConfigurationError
from attune.models import Usage
from attune.states import DocumentClass, UsageOperation
from attune.store.memory import MemoryStore


def chat_response(payload: object, prompt_tokens: int = 900, completion_tokens: int = 100):
    content = payload if isinstance(payload, str) else json.dumps(payload)
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
        usage=SimpleNamespace(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens),
    )


def mock_openai(**responses: object) -> MagicMock:
    client = MagicMock()
    client.chat.completions.create = AsyncMock(return_value=responses.get("chat"))
    client.embeddings.create = AsyncMock(return_value=responses.get("embeddings"))
    return client


class TestParseClassification:
    """Tests for validating raw model output."""

    def test_behavior_response(self) -> None:
        """Labels, signals and the suggested profile are normalized."""
        result = parse_classification(
            {
                "label": "SALES_GUIDE",
                "confidence": 0.82,
                "reasoning": "Pushes upgrades",
                "signals": {"persuasion": 0.9, "empathy": "0.4", "authority": 3},
                "suggestion": {"tone": "friendly", "salesIntensity": "HIGH", "empathy": "weird"},
            },
            task=ClassificationTask.BEHAVIOR,
        )
        assert result.document_class == DocumentClass.SALES_GUIDE
        assert result.confidence == 0.82
        assert result.signals is not None
        assert result.signals.persuasion == 0.9
        assert result.signals.empathy == 0.4
        assert result.signals.authority == 1.0
        assert result.suggested_profile is not None
        assert result.suggested_profile.tone == "Friendly"
        assert result.suggested_profile.sales_intensity == "High"
        assert result.suggested_profile.empathy_level is None

    def test_unknown_behavior_label(self) -> None:
        """Unrecognized document labels become UNKNOWN."""
        result = parse_classification(
            {"label": "recipe", "confidence": 0.7}, task=ClassificationTask.BEHAVIOR
        )
        assert result.document_class == DocumentClass.UNKNOWN

    def test_knowledge_category(self) -> None:
        """Knowledge labels outside the category set become 'other'."""
        result = parse_classification(
            {"category": "Pricing", "confidence": 0.6}, task=ClassificationTask.KNOWLEDGE
        )
        assert result.label == "pricing"
        other = parse_classification(
            {"label": "weather", "confidence": 0.6}, task=ClassificationTask.KNOWLEDGE
        )
        assert other.label == "other"

    def test_brand_response(self) -> None:
        """Brand fields are trimmed, the tone matched and scores clamped."""
        result = parse_classification(
            {
                "industry": " SaaS ",
                "tone": "playful",
                "audience": "Developer",
                "primary_goal": "Lead Generation",
                "sales_aggressiveness": 1.4,
                "reading_complexity": "0.3",
                "confidence": 0.8,
            },
            task=ClassificationTask.BRAND,
        )
        assert (result.label, result.confidence) == ("SaaS", 0.8)
        assert result.brand is not None
        assert (result.brand.tone, result.brand.target_audience) == ("Playful", "Developer")
        assert (result.brand.sales_aggressiveness, result.brand.reading_complexity) == (1.0, 0.3)
        assert result.brand.emotional_positioning is None

    def test_brand_without_industry_rejected(self) -> None:
        with pytest.raises(CapabilityError, match="no industry"):
            parse_classification({"tone": "Formal"}, task=ClassificationTask.BRAND)

    @pytest.mark.parametrize("data", [[], "text", {"confidence": 0.9}, {"label": "  "}])
    def test_malformed_rejected(self, data: object) -> None:
        """Responses without an object or label raise CapabilityError."""
        with pytest.raises(CapabilityError):
            parse_classification(data, task=ClassificationTask.KNOWLEDGE)

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [(0.5, 0.5), (-1, 0.0), (7, 1.0), ("0.25", 0.25), (None, 0.0), ("x", 0.0), (float("nan"), 0.0)],
    )
    def test_clamp_unit(self, raw: object, expected: float) -> None:
        """Scores are coerced into [0, 1]."""
        assert clamp_unit(raw) == expected


class TestOpenAICapability:
    """Tests for the OpenAI provider with a mocked client."""

    @pytest.mark.asyncio
    async def test_classify(self) -> None:
        """The JSON reply is parsed and token usage reported."""
        client = mock_openai(
            chat=chat_response({"label": "faq", "confidence": 0.77, "reasoning": "Q&A"})
        )
        capability = OpenAICapability(client=client, chat_model="gpt-4o-mini")

        result = await capability.classify("Q: hours? A: 9-5", task=ClassificationTask.KNOWLEDGE)

        assert (result.label, result.confidence) == ("faq", 0.77)
        assert result.usage == Usage(model="gpt-4o-mini", prompt_tokens=900, completion_tokens=100)
        kwargs = client.chat.completions.create.call_args.kwargs
        assert kwargs["response_format"] == {"type": "json_object"}
        assert kwargs["messages"][1]["content"] == "Q: hours? A: 9-5"

    @pytest.mark.asyncio
    async def test_classify_brand_prompt(self) -> None:
        """Brand samples get the brand prompt and a larger input cap."""
        client = mock_openai(chat=chat_response({"industry": "Retail", "confidence": 0.6}))
        capability = OpenAICapability(client=client)
        sample = "x" * (provider.MAX_INPUT_CHARS + 1000)

        result = await capability.classify(sample, task=ClassificationTask.BRAND)

        assert result.brand is not None
        assert result.brand.industry == "Retail"
        messages = client.chat.completions.create.call_args.kwargs["messages"]
        assert messages[0]["content"] == provider.BRAND_PROMPT
        assert messages[1]["content"] == sample

    @pytest.mark.asyncio
    async def test_classify_malformed_json(self) -> None:
        """A non-JSON reply is a capability failure."""
        capability = OpenAICapability(client=mock_openai(chat=chat_response("not json")))
        with pytest.raises(CapabilityError, match="malformed JSON"):
            await capability.classify("text", task=ClassificationTask.BEHAVIOR)

    @pytest.mark.asyncio
    async def test_embed_orders_by_index(self) -> None:
        """Vectors are returned in input order."""
        response = SimpleNamespace(
            data=[
                SimpleNamespace(index=1, embedding=[0.0, 1.0]),
                SimpleNamespace(index=0, embedding=[1.0, 0.0]),
            ],
            usage=SimpleNamespace(prompt_tokens=12),
        )
        capability = OpenAICapability(client=mock_openai(embeddings=response), dimensions=2)

        batch = await capability.embed(["first", "second"])

        assert batch.vectors == [[1.0, 0.0], [0.0, 1.0]]
        assert batch.usage is not None and batch.usage.prompt_tokens == 12

    @pytest.mark.asyncio
    async def test_missing_key_raises_on_first_call(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Construction succeeds without a key; calling the API does not."""
        monkeypatch.setattr(provider.settings, "openai_api_key", SecretStr(""))
        capability = OpenAICapability()
        with pytest.raises(ConfigurationError):
            await capability.embed(["hello"])


class TestMeteredCapability:
    """Tests for timeouts and usage logging."""

    def test_estimate_cost(self) -> None:
        """Cost uses per-million-token pricing; unknown models cost nothing."""
        usage = Usage(model="gpt-4o-mini", prompt_tokens=1_000_000, completion_tokens=1_000_000)
        assert estimate_cost(usage) == pytest.approx(0.75)
        assert estimate_cost(Usage(model="mystery", prompt_tokens=10)) == 0.0

    @pytest.mark.asyncio
    async def test_success_logs_usage(self, capability, store: MemoryStore) -> None:
        """Each call writes one usage row with tokens and cost."""
        metered = MeteredCapability(capability, store, timeout=1.0)
        connection_id = uuid4()

        await metered.classify("text", task=ClassificationTask.KNOWLEDGE, connection_id=connection_id)
        await metered.embed(["a", "b"], connection_id=connection_id)

        classify_row, embed_row = await store.list_usage(connection_id=connection_id)
        assert classify_row.operation == UsageOperation.CLASSIFY
        assert (classify_row.prompt_tokens, classify_row.completion_tokens) == (1000, 200)
        assert classify_row.total_tokens == 1200
        expected = Usage(model="gpt-4o-mini", prompt_tokens=1000, completion_tokens=200)
        assert classify_row.cost_usd == pytest.approx(estimate_cost(expected))
        assert classify_row.success
        assert embed_row.operation == UsageOperation.EMBED
        assert embed_row.model == "text-embedding-3-small"
        assert embed_row.prompt_tokens == 20

    @pytest.mark.asyncio
    async def test_timeout(self, capability, store: MemoryStore) -> None:
        """A slow call raises CapabilityTimeoutError and logs a failed row."""
        capability.delay = 0.5
        metered = MeteredCapability(capability, store, timeout=0.05)

        with pytest.raises(CapabilityTimeoutError):
            await metered.classify("text", task=ClassificationTask.BEHAVIOR)

        [row] = await store.list_usage()
        assert not row.success
        assert row.model == "gpt-4o-mini"

    @pytest.mark.asyncio
    async def test_unexpected_error_wrapped(self, capability, store: MemoryStore) -> None:
        """Arbitrary provider exceptions become CapabilityError."""
        capability.embed_error = RuntimeError("socket closed")
        metered = MeteredCapability(capability, store, timeout=1.0)

        with pytest.raises(CapabilityError, match="socket closed"):
            await metered.embed(["a"])
        [row] = await store.list_usage()
        assert not row.success

    @pytest.mark.asyncio
    async def test_usage_store_failure_does_not_fail_call(self, capability) -> None:
        """A broken usage log never fails the unit of work."""
        store = MemoryStore()
        store.add_usage = AsyncMock(side_effect=RuntimeError("db down"))  # type: ignore[method-assign]
        metered = MeteredCapability(capability, store, timeout=1.0)

        result = await metered.classify("text", task=ClassificationTask.KNOWLEDGE)

        assert result.label == "about"

    @pytest.mark.asyncio
    async def test_concurrent_calls_each_logged(self, capability, store: MemoryStore) -> None:
        """Concurrent calls write one row each."""
        metered = MeteredCapability(capability, store, timeout=1.0)
        await asyncio.gather(*(metered.embed([f"t{i}"]) for i in range(5)))
        assert len(await store.list_usage()) == 5
