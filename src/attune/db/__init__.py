"""PostgreSQL persistence for Attune."""

from attune.db.connection import close_db, get_engine, get_session, get_session_factory, init_db
from attune.db.models import (
    BehaviorDocument,
    BehaviorSuggestion,
    Connection,
    ConnectionDiscovery,
    ConnectionKnowledge,
    CrawlSession,
    MissedQuestion,
    PageContent,
    PendingExtraction,
    UsageLog,
    source_key_for,
    utcnow_naive,
)

__all__ = [
    "BehaviorDocument",
    "BehaviorSuggestion",
    "Connection",
    "ConnectionDiscovery",
    "ConnectionKnowledge",
    "CrawlSession",
    "MissedQuestion",
    "PageContent",
    "PendingExtraction",
    "UsageLog",
    "close_db",
    "get_engine",
    "get_session",
    "get_session_factory",
    "init_db",
    "source_key_for",
    "utcnow_naive",
]
