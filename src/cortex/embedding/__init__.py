"""Embedding layer for cortex."""

from cortex.embedding.ollama import EmbeddingError, OllamaClient

__all__ = ["OllamaClient", "EmbeddingError"]
