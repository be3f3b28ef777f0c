"""
Shared fixtures: a deterministic bag-of-words embedder, a fixed clock and a
factory for raw message events. No Ollama server is needed.
"""

import shutil
import tempfile
import zlib
from datetime import datetime

import pytest

from whatsapp_indexer.config import IndexerConfig
from whatsapp_indexer.dates import to_epoch_ms
from whatsapp_indexer.errors import EmbeddingError
from whatsapp_indexer.extraction import TOKEN
from whatsapp_indexer.indexer import WhatsAppIndexer
from whatsapp_indexer.models import RawMessageEvent

# Wednesday
NOW = datetime(2026, 10, 14, 12, 0)


def ts(day: int, hour: int = 12, minute: int = 0) -> int:
    """Epoch ms for a day in October 2026."""
    return to_epoch_ms(datetime(2026, 10, day, hour, minute))


class FakeEmbedder:
    """Hashes lowercased tokens into a fixed-size count vector. The entity context suffix is ignored."""

    def __init__(self, dimension: int = 2048):
        self.dimension = dimension
        self.calls = 0
        self.fail = False

    def __call__(self, texts):
        if self.fail:
            raise EmbeddingError("embedding backend down")
        self.calls += 1
        return [self._vector(t) for t in texts]

    def _vector(self, text: str) -> list[float]:
        text = text.split(" [Context:", 1)[0]
        vector = [0.0] * self.dimension
        for token in TOKEN.findall(text.lower()):
            vector[zlib.crc32(token.encode("utf-8")) % self.dimension] += 1.0
        return vector


def make_event(
    message_id: str,
    body: str,
    *,
    timestamp: int | None = None,
    chat_id: str = "chat-dana",
    chat_name: str = "Dana",
    is_group: bool = False,
    sender_name: str = "Dana",
    from_me: bool = False,
    media_type: str | None = None,
) -> RawMessageEvent:
    return RawMessageEvent(
        id=message_id,
        chat_id=chat_id,
        chat_name=chat_name,
        is_group=is_group,
        sender_name=sender_name,
        body=body,
        timestamp=timestamp if timestamp is not None else ts(13),
        from_me=from_me,
        media_type=media_type,
        has_media=media_type is not None,
    )


@pytest.fixture
def data_dir():
    path = tempfile.mkdtemp(prefix="wa_indexer_test_")
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def make_indexer(data_dir, embedder):
    """Build (and later close) indexers sharing one data directory."""
    created = []

    def _make(init: bool = True, **overrides) -> WhatsAppIndexer:
        config = IndexerConfig.for_directory(data_dir, **overrides)
        indexer = WhatsAppIndexer(config, embed_fn=embedder, clock=lambda: NOW)
        created.append(indexer)
        return indexer.init() if init else indexer

    yield _make
    for indexer in created:
        indexer.close()


@pytest.fixture
def indexer(make_indexer):
    return make_indexer()
