"""Configuration settings for the Cortex memory core.

This module provides Pydantic Settings for configuration management with:
- Environment variable support (CORTEX_ prefix)
- CLI argument override support
- Range validation for similarity thresholds
"""

from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class CortexSettings(BaseSettings):
    """Configuration settings for the Cortex memory core.

    Settings are loaded from environment variables with the CORTEX_ prefix.
    CLI arguments can override these settings when provided.

    Attributes:
        sqlite_path: Path to SQLite database (default: ~/.cortex/cortex.db)
        chroma_path: Path to ChromaDB storage (default: ~/.cortex/chroma_db)
        collection_name: ChromaDB collection name (default: embeddings)
        vector_index_enabled: Use ChromaDB as the vector index (default: True)
        ollama_host: Ollama server host URL (default: http://localhost:11434)
        ollama_model: Embedding model name (default: all-minilm)
        embedding_only_threshold: Cosine floor for vector-only search hits

    Example:
        >>> settings = CortexSettings()
        >>> settings.embedding_only_threshold
        0.28

        >>> # CORTEX_EMBEDDING_ONLY_THRESHOLD=0.35
        >>> CortexSettings().embedding_only_threshold
        0.35
    """

    model_config = SettingsConfigDict(
        env_prefix="CORTEX_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Storage paths
    sqlite_path: Optional[Path] = Field(
        default=None,
        description="Path to SQLite database (default: ~/.cortex/cortex.db)",
    )
    chroma_path: Optional[Path] = Field(
        default=None,
        description="Path to ChromaDB storage (default: ~/.cortex/chroma_db)",
    )
    collection_name: str = Field(
        default="embeddings",
        description="ChromaDB collection name",
    )
    vector_index_enabled: bool = Field(
        default=True,
        description="Mirror embeddings into ChromaDB; brute-force search otherwise",
    )

    # Ollama configuration
    ollama_host: str = Field(
        default="http://localhost:11434",
        description="Ollama server host URL",
    )
    ollama_model: str = Field(
        default="all-minilm",
        description="Embedding model name",
    )
    ollama_timeout: int = Field(
        default=30,
        description="Ollama request timeout in seconds",
    )
    embedding_dimensions: int = Field(
        default=384,
        gt=0,
        description="Expected embedding vector length",
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )

    # Similarity thresholds
    embedding_only_threshold: float = Field(
        default=0.28,
        ge=0.0,
        le=1.0,
        description="Minimum cosine similarity for results found only by vector search",
    )
    semantic_association_threshold: float = Field(
        default=0.8,
        ge=0.0,
        le=1.0,
        description="Minimum cosine similarity for a semantic association edge",
    )
    duplicate_threshold: float = Field(
        default=0.92,
        ge=0.0,
        le=1.0,
        description="Cosine similarity at which two items are flagged as duplicates",
    )
    lexical_duplicate_threshold: float = Field(
        default=0.85,
        ge=0.0,
        le=1.0,
        description="TF-IDF similarity at which a new item is reported as a duplicate",
    )

    # Background work and maintenance
    background_concurrency: int = Field(
        default=2,
        ge=1,
        description="Maximum concurrent background tasks (embedding, semantic links)",
    )
    decay_max_tables: int = Field(
        default=5,
        ge=1,
        description="Item tables processed per maintenance sweep",
    )
    default_search_limit: int = Field(
        default=15,
        ge=1,
        description="Default number of search results",
    )

    def get_sqlite_path(self) -> Optional[Path]:
        """Get the SQLite path, resolving to default if not set."""
        if self.sqlite_path:
            return self.sqlite_path.expanduser().resolve()
        return None

    def get_chroma_path(self) -> Optional[Path]:
        """Get the ChromaDB path, resolving to default if not set."""
        if self.chroma_path:
            return self.chroma_path.expanduser().resolve()
        return None
