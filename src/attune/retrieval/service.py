"""Chat-time retrieval and knowledge gap logging.

The read path takes no lease and never waits on writers: fragments being
indexed concurrently simply show up on a later query.
"""

from dataclasses import dataclass
from uuid import UUID

import structlog

from attune.capability.metered import MeteredCapability
from attune.config import settings
from attune.db.models import MissedQuestion
from attune.errors import CapabilityError
from attune.gate import GateService, ObservationSource
from attune.ingestion.sanitizer import sanitize
from attune.models import GroundedPrompt, RetrievedFragment
from attune.retrieval.index import KnowledgeIndex
from attune.retrieval.prompt import assemble_prompt
from attune.store.base import Store

log = structlog.get_logger()

REFUSAL_PHRASES = (
    "i'm not sure",
    "i am not sure",
    "i don't have information",
    "i don't have that information",
    "i don't know",
    "i do not know",
)


@dataclass(frozen=True)
class RetrievalConfig:
    """Retrieval limits."""

    top_k: int = 3
    similarity_floor: float = 0.6
    snippet_chars: int = 1500
    context_chars: int = 4000
    missed_threshold: float = 0.65
    max_chars: int = 1024 * 1024

    @classmethod
    def from_settings(cls) -> "RetrievalConfig":
        return cls(
            top_k=settings.retrieval_top_k,
            similarity_floor=settings.retrieval_similarity_floor,
            snippet_chars=settings.retrieval_snippet_chars,
            context_chars=settings.retrieval_context_chars,
            missed_threshold=settings.missed_question_threshold,
            max_chars=settings.max_content_chars,
        )


def is_refusal(answer: str) -> bool:
    """Whether an answer admits the assistant lacked the information."""
    normalized = answer.lower().replace("’", "'")
    return any(phrase in normalized for phrase in REFUSAL_PHRASES)


class RetrievalService:
    """Builds grounded prompts and records unanswered questions."""

    def __init__(
        self,
        store: Store,
        capability: MeteredCapability,
        index: KnowledgeIndex,
        gate: GateService,
        config: RetrievalConfig | None = None,
    ) -> None:
        self._store = store
        self._capability = capability
        self._index = index
        self._gate = gate
        self._config = config or RetrievalConfig.from_settings()

    async def retrieve_grounded_prompt(
        self, connection_id: UUID, user_message: str
    ) -> GroundedPrompt:
        """Assemble the prompt for one chat turn.

        When no fragment clears the similarity floor the prompt says no
        grounding is available and ``grounded`` is False; the caller should
        then log a missed question rather than let the model guess.
        """
        connection = await self._store.get_connection(connection_id)
        result = sanitize(user_message, max_chars=self._config.max_chars, min_chars=0)
        if any(w.startswith("Potential prompt injection") for w in result.warnings):
            log.warning(
                "Prompt injection redacted from chat message",
                connection_id=str(connection_id),
                warnings=result.warnings,
            )

        candidates: list[RetrievedFragment] = []
        if result.text:
            try:
                batch = await self._capability.embed([result.text], connection_id=connection_id)
            except CapabilityError as e:
                log.warning(
                    "Query embedding failed, answering without grounding",
                    connection_id=str(connection_id),
                    error=e.message,
                )
            else:
                candidates = await self._index.query(
                    connection_id, batch.vectors[0], self._config.top_k
                )

        passing = [f for f in candidates if f.similarity >= self._config.similarity_floor]
        prompt_text, used = assemble_prompt(
            connection.behavior_profile(),
            passing,
            snippet_chars=self._config.snippet_chars,
            context_chars=self._config.context_chars,
        )
        top = candidates[0].similarity if candidates else None
        log.debug(
            "Grounded prompt assembled",
            connection_id=str(connection_id),
            candidates=len(candidates),
            used=len(used),
            top_similarity=top,
        )
        return GroundedPrompt(
            prompt_text=prompt_text,
            fragments_used=used,
            grounded=bool(used),
            top_similarity=top,
        )

    async def log_missed_question(
        self,
        connection_id: UUID,
        question: str,
        confidence: float | None = None,
        context_used: str | None = None,
    ) -> MissedQuestion:
        missed = await self._store.add_missed_question(
            MissedQuestion(
                connection_id=connection_id,
                question=question,
                confidence_score=confidence,
                context_used=context_used,
            )
        )
        log.warning(
            "Knowledge gap detected",
            connection_id=str(connection_id),
            missed_question_id=str(missed.id),
            confidence=confidence,
        )
        return missed

    async def record_answer(
        self, connection_id: UUID, question: str, answer: str, confidence: float
    ) -> MissedQuestion | None:
        """Feed a chat answer's confidence to the gate and log it if it missed.

        Returns:
            The MissedQuestion created, or None when the answer was adequate.
        """
        await self._gate.observe(connection_id, confidence, source=ObservationSource.CHAT)
        if confidence >= self._config.missed_threshold and not is_refusal(answer):
            return None
        return await self.log_missed_question(
            connection_id, question, confidence=confidence, context_used=answer
        )
