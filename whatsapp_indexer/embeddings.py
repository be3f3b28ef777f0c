"""Ollama-based embedding function for the vector index (local model only)."""

import logging
from typing import Any, Callable, Sequence

from whatsapp_indexer.config import EmbedConfig
from whatsapp_indexer.errors import EmbeddingError

logger = logging.getLogger(__name__)

EmbedFn = Callable[[list[str]], list[list[float]]]


def _get_ollama_client(base_url: str):
    from ollama import Client
    return Client(host=base_url)


class OllamaEmbeddingFunction:
    """
    Embed a batch of texts with Ollama.
    Use with nomic-embed-text: ollama pull nomic-embed-text
    """

    def __init__(self, config: EmbedConfig | None = None):
        cfg = config or EmbedConfig.from_env()
        self.model = cfg.model
        self.batch_size = cfg.batch_size
        self._base_url = cfg.get_base_url()
        self._client = None

    def _client_once(self):
        if self._client is None:
            self._client = _get_ollama_client(self._base_url)
        return self._client

    def _embed_batch(self, texts: list[str]) -> list[list[float]]:
        try:
            out = self._client_once().embed(model=self.model, input=texts)
        except Exception as e:
            logger.error("Ollama embedding failed for %d texts: %s", len(texts), e)
            raise EmbeddingError(f"Ollama embedding failed. Run: ollama pull {self.model}") from e
        embeddings = getattr(out, "embeddings", None)
        if embeddings is None and isinstance(out, dict):
            embeddings = out.get("embeddings")
        if not embeddings:
            raise EmbeddingError("Ollama embed response missing embeddings")
        if isinstance(embeddings[0], (int, float)):
            return [list(embeddings)]
        return [list(e) for e in embeddings]

    def __call__(self, input: Any) -> list[list[float]]:
        if not input:
            return []
        texts = list(input) if isinstance(input, (list, tuple)) else [str(input)]
        vectors: list[list[float]] = []
        for start in range(0, len(texts), self.batch_size):
            vectors.extend(self._embed_batch(texts[start:start + self.batch_size]))
        if len(vectors) != len(texts):
            raise EmbeddingError(f"Expected {len(texts)} embeddings, got {len(vectors)}")
        return vectors


def build_embedding_text(
    text: str,
    people: Sequence[str] = (),
    places: Sequence[str] = (),
    activities: Sequence[str] = (),
) -> str:
    """Fold extracted entities into the text so shared context pulls vectors together."""
    context = []
    if people:
        context.append(f"People: {', '.join(people)}")
    if places:
        context.append(f"Places: {', '.join(places)}")
    if activities:
        context.append(f"Activities: {', '.join(activities)}")
    if not context:
        return text
    return f"{text} [Context: {'; '.join(context)}]"
