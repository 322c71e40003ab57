"""Storage backends for the pipeline."""

from attune.store.base import GateMutator, Store
from attune.store.memory import MemoryStore, cosine_similarity
from attune.store.postgres import PostgresStore

__all__ = [
    "GateMutator",
    "MemoryStore",
    "PostgresStore",
    "Store",
    "cosine_similarity",
]
