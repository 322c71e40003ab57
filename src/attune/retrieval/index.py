"""Knowledge index over the store's embedded fragments."""

from collections.abc import Sequence
from uuid import UUID

import structlog

from attune.db.models import ConnectionKnowledge
from attune.models import RetrievedFragment
from attune.store.base import Store

log = structlog.get_logger()


class KnowledgeIndex:
    """Stores fragments per connection and answers nearest-neighbor queries.

    Every query is scoped to one connection; fragments of other
    connections are never candidates regardless of similarity.
    """

    def __init__(self, store: Store) -> None:
        self._store = store

    async def index(self, fragment: ConnectionKnowledge, embedding: Sequence[float]) -> bool:
        """Index one fragment. Returns False if its content is already indexed."""
        return await self.index_many([fragment], [embedding]) == 1

    async def index_many(
        self, fragments: Sequence[ConnectionKnowledge], embeddings: Sequence[Sequence[float]]
    ) -> int:
        if len(fragments) != len(embeddings):
            raise ValueError(f"{len(fragments)} fragments but {len(embeddings)} embeddings")
        for fragment, embedding in zip(fragments, embeddings, strict=True):
            fragment.embedding = [float(x) for x in embedding]
        added = await self._store.add_knowledge(fragments)
        if added < len(fragments):
            log.debug(
                "Duplicate fragments skipped",
                submitted=len(fragments),
                added=added,
            )
        return added

    async def query(
        self, connection_id: UUID, embedding: Sequence[float], k: int
    ) -> list[RetrievedFragment]:
        """Top-k fragments by cosine similarity, newest first on ties."""
        if k <= 0:
            return []
        rows = await self._store.query_knowledge(connection_id, embedding, k)
        return [
            RetrievedFragment(
                knowledge_id=row.id,
                connection_id=row.connection_id,
                content=row.content,
                similarity=similarity,
                title=row.title,
                source_url=row.source_url,
                created_at=row.created_at,
            )
            for row, similarity in rows
        ]
