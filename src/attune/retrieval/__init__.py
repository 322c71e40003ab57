"""Knowledge index and chat-time prompt assembly."""

from attune.retrieval.index import KnowledgeIndex
from attune.retrieval.prompt import assemble_prompt, build_style_instructions
from attune.retrieval.service import RetrievalConfig, RetrievalService

__all__ = [
    "KnowledgeIndex",
    "RetrievalConfig",
    "RetrievalService",
    "assemble_prompt",
    "build_style_instructions",
]
