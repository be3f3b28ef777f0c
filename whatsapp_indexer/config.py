"""Configuration for the WhatsApp indexer (local stores + Ollama embeddings)."""

import os
from pathlib import Path

from pydantic import BaseModel, Field

try:
    from dotenv import load_dotenv
    load_dotenv()
except ImportError:
    pass


def _env(key: str, default: str = "") -> str:
    return os.environ.get(key, default).strip()


def _env_bool(key: str, default: bool) -> bool:
    value = _env(key)
    if not value:
        return default
    return value.lower() in ("1", "true", "yes", "on")


class EmbedConfig(BaseModel):
    """Ollama embedding settings."""

    model: str = Field(default="nomic-embed-text", description="Ollama embedding model")
    base_url: str | None = Field(default=None, description="Ollama API URL")
    dimension: int | None = Field(
        default=None,
        gt=0,
        description="Expected vector size; inferred from the first embedding when unset",
    )
    batch_size: int = Field(default=32, gt=0)

    @classmethod
    def from_env(cls) -> "EmbedConfig":
        base = _env("OLLAMA_HOST") or _env("LLAMA_BASE_URL") or None
        dimension = _env("EMBED_DIMENSION")
        return cls(
            model=_env("OLLAMA_EMBED_MODEL", "nomic-embed-text"),
            base_url=base if base else None,
            dimension=int(dimension) if dimension else None,
            batch_size=int(_env("EMBED_BATCH_SIZE", "32")),
        )

    def get_base_url(self) -> str:
        url = self.base_url or os.environ.get("OLLAMA_HOST") or "http://localhost:11434"
        return url if url.startswith("http") else f"http://{url}"


class IndexerConfig(BaseModel):
    """Paths, search tuning and maintenance thresholds for the indexer."""

    database_path: Path = Field(default=Path("./data/messages.db"), description="SQLite message store")
    vector_store_path: Path = Field(
        default=Path("./data/vector_store"),
        description="Directory holding vectors.npy and metadata.json",
    )
    embed: EmbedConfig = Field(default_factory=EmbedConfig)
    search_overfetch: int = Field(default=3, ge=1, description="Neighbours fetched per requested hit")
    similarity_threshold: float = Field(default=0.1, ge=-1.0, le=1.0)
    compaction_threshold: float = Field(
        default=0.2,
        ge=0.0,
        lt=1.0,
        description="Deleted fraction above which the vector index is rebuilt",
    )
    auto_compact: bool = Field(default=True, description="Compact after delete notifications")
    vector_autosave_every: int = Field(default=10, ge=1)
    context_window_minutes: int = Field(default=30, ge=0)
    plans_lookback_days: int = Field(default=7, ge=0)
    url_context_chars: int = Field(default=50, ge=0)
    log_level: str = Field(default="INFO")

    @classmethod
    def from_env(cls) -> "IndexerConfig":
        return cls(
            database_path=Path(_env("DATABASE_PATH", "./data/messages.db")),
            vector_store_path=Path(_env("VECTOR_STORE_PATH", "./data/vector_store")),
            embed=EmbedConfig.from_env(),
            search_overfetch=int(_env("SEARCH_OVERFETCH", "3")),
            similarity_threshold=float(_env("SIMILARITY_THRESHOLD", "0.1")),
            compaction_threshold=float(_env("COMPACTION_THRESHOLD", "0.2")),
            auto_compact=_env_bool("AUTO_COMPACT", True),
            vector_autosave_every=int(_env("VECTOR_AUTOSAVE_EVERY", "10")),
            context_window_minutes=int(_env("CONTEXT_WINDOW_MINUTES", "30")),
            plans_lookback_days=int(_env("PLANS_LOOKBACK_DAYS", "7")),
            log_level=_env("LOG_LEVEL", "INFO"),
        )

    @classmethod
    def for_directory(cls, data_dir: str | Path, **overrides) -> "IndexerConfig":
        """Config with both stores placed under one data directory."""
        data_dir = Path(data_dir)
        return cls(
            database_path=data_dir / "messages.db",
            vector_store_path=data_dir / "vector_store",
            **overrides,
        )
