"""
WhatsApp indexer: hybrid (lexical + vector) search over WhatsApp messages in Hebrew and English.

Messages are enriched by a heuristic feature extractor (URLs, people, places,
activities, times, scheduling intent), stored in SQLite with FTS5 and embedded
with a local Ollama model into an append-only numpy vector index. Query tools
are served over MCP (stdio).
"""

from whatsapp_indexer.config import EmbedConfig, IndexerConfig
from whatsapp_indexer.errors import (
    EmbeddingError,
    IndexerError,
    NotReadyError,
    PersistenceError,
    ValidationError,
)
from whatsapp_indexer.extraction import detect_languages, detect_meeting_context, extract
from whatsapp_indexer.indexer import WhatsAppIndexer, build_message
from whatsapp_indexer.models import Message, RawMessageEvent, SearchResult
from whatsapp_indexer.normalizer import normalize
from whatsapp_indexer.parser import load_export, parse_chat
from whatsapp_indexer.ranking import merge
from whatsapp_indexer.store import MessageStore
from whatsapp_indexer.vector_index import VectorIndex

__all__ = [
    "EmbedConfig",
    "IndexerConfig",
    "IndexerError",
    "ValidationError",
    "NotReadyError",
    "PersistenceError",
    "EmbeddingError",
    "extract",
    "detect_languages",
    "detect_meeting_context",
    "normalize",
    "merge",
    "MessageStore",
    "VectorIndex",
    "WhatsAppIndexer",
    "build_message",
    "Message",
    "RawMessageEvent",
    "SearchResult",
    "load_export",
    "parse_chat",
]
