"""Timeout enforcement and usage accounting around a capability.

Every classify/embed call made by the pipeline goes through
``MeteredCapability``: it bounds the call with a timeout, normalizes
failures into ``CapabilityError`` and writes one ``UsageLog`` row per
invocation (successful or not) with tokens, cost and latency.
"""

import asyncio
import time
from collections.abc import Awaitable, Sequence
from typing import TypeVar
from uuid import UUID

import structlog

from attune.capability.base import ClassificationCapability, ClassificationTask
from attune.db.models import UsageLog
from attune.errors import CapabilityError, CapabilityTimeoutError
from attune.models import Classification, EmbeddingBatch, Usage
from attune.states import UsageOperation
from attune.store.base import Store

log = structlog.get_logger()

T = TypeVar("T")

# USD per million tokens: (input, output)
MODEL_PRICING: dict[str, tuple[float, float]] = {
    "gpt-4o-mini": (0.15, 0.60),
    "gpt-4o": (2.50, 10.00),
    "text-embedding-3-small": (0.02, 0.0),
    "text-embedding-3-large": (0.13, 0.0),
}


def estimate_cost(usage: Usage) -> float:
    """Estimate the USD cost of a call from its token usage."""
    rates = MODEL_PRICING.get(usage.model)
    if rates is None:
        return 0.0
    input_rate, output_rate = rates
    cost = (usage.prompt_tokens * input_rate + usage.completion_tokens * output_rate) / 1_000_000
    return round(cost, 8)


class MeteredCapability:
    """Wraps a capability with timeouts and usage logging."""

    def __init__(
        self,
        inner: ClassificationCapability,
        store: Store,
        *,
        timeout: float,
    ) -> None:
        self._inner = inner
        self._store = store
        self._timeout = timeout

    @property
    def chat_model(self) -> str:
        return self._inner.chat_model

    @property
    def embedding_model(self) -> str:
        return self._inner.embedding_model

    async def classify(
        self,
        text: str,
        *,
        task: ClassificationTask,
        connection_id: UUID | None = None,
    ) -> Classification:
        return await self._call(
            "classify",
            UsageOperation.CLASSIFY,
            self._inner.classify(text, task=task),
            connection_id=connection_id,
            default_model=self._inner.chat_model,
        )

    async def embed(
        self, texts: Sequence[str], *, connection_id: UUID | None = None
    ) -> EmbeddingBatch:
        batch = await self._call(
            "embed",
            UsageOperation.EMBED,
            self._inner.embed(texts),
            connection_id=connection_id,
            default_model=self._inner.embedding_model,
        )
        if len(batch.vectors) != len(texts):
            raise CapabilityError("embed", f"expected {len(texts)} vectors, got {len(batch.vectors)}")
        return batch

    async def _call(
        self,
        name: str,
        operation: UsageOperation,
        call: Awaitable[T],
        *,
        connection_id: UUID | None,
        default_model: str,
    ) -> T:
        start = time.monotonic()
        try:
            result = await asyncio.wait_for(call, timeout=self._timeout)
        except TimeoutError as e:
            await self._record(operation, None, start, connection_id, default_model, success=False)
            log.warning(
                "Capability call timed out",
                operation=name,
                timeout=self._timeout,
                connection_id=str(connection_id) if connection_id else None,
            )
            raise CapabilityTimeoutError(name, self._timeout) from e
        except CapabilityError:
            await self._record(operation, None, start, connection_id, default_model, success=False)
            raise
        except Exception as e:
            await self._record(operation, None, start, connection_id, default_model, success=False)
            raise CapabilityError(name, str(e) or type(e).__name__) from e

        usage = getattr(result, "usage", None)
        await self._record(operation, usage, start, connection_id, default_model, success=True)
        return result

    async def _record(
        self,
        operation: UsageOperation,
        usage: Usage | None,
        start: float,
        connection_id: UUID | None,
        default_model: str,
        *,
        success: bool,
    ) -> None:
        usage = usage or Usage(model=default_model)
        entry = UsageLog(
            connection_id=connection_id,
            operation=operation,
            model=usage.model,
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            total_tokens=usage.total_tokens,
            cost_usd=estimate_cost(usage),
            latency_ms=round((time.monotonic() - start) * 1000),
            success=success,
        )
        try:
            await self._store.add_usage(entry)
        except Exception:
            # Usage logging is accounting only; never fail the unit of work over it
            log.exception("Failed to record usage", operation=operation.value)
