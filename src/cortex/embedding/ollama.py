"""Ollama embedding client with async httpx.

This module provides an async HTTP client for the Ollama embeddings API with:
- Exponential backoff retry for connection failures
- Dimension checking against the configured model (384 for all-minilm)
- Batch embedding for backfills
"""

import asyncio
import logging
from typing import Any, List, Optional

import httpx

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "all-minilm"
DEFAULT_DIMENSIONS = 384


class EmbeddingError(Exception):
    """Custom exception for embedding-related errors."""

    pass


class OllamaClient:
    """Async HTTP client for the Ollama embeddings API.

    Args:
        host: Ollama server host URL (default: "http://localhost:11434")
        model: Embedding model name (default: "all-minilm")
        timeout: Request timeout in seconds (default: 30)
        dimensions: Expected vector length; None disables the check

    Example:
        >>> async with OllamaClient() as client:
        ...     vector = await client.embed("Use connection pooling for SQLite")
        ...     len(vector)
        384
    """

    def __init__(
        self,
        host: str = "http://localhost:11434",
        model: str = DEFAULT_MODEL,
        timeout: float = 30.0,
        dimensions: Optional[int] = DEFAULT_DIMENSIONS,
    ):
        self.host = host.rstrip("/")
        self.model = model
        self.timeout = timeout
        self.dimensions = dimensions
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the async HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "OllamaClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def _post_embed(
        self,
        payload: dict,
        max_retries: int = 3,
        base_delay: float = 1.0,
    ) -> dict:
        """POST to /api/embed, retrying connection and transport failures.

        Timeouts and HTTP error statuses are not retried.

        Args:
            payload: Request payload dictionary
            max_retries: Maximum number of attempts (default: 3)
            base_delay: Delay before the first retry, doubled each time

        Returns:
            Response JSON data

        Raises:
            EmbeddingError: If the request fails
        """
        client = await self._get_client()
        url = f"{self.host}/api/embed"

        for attempt in range(1, max_retries + 1):
            try:
                response = await client.post(url, json=payload)
                response.raise_for_status()
                result: dict[str, Any] = response.json()
                return result

            except httpx.TimeoutException as e:
                raise EmbeddingError(
                    f"Ollama request timed out after {self.timeout}s (model {self.model})"
                ) from e

            except httpx.HTTPStatusError as e:
                raise EmbeddingError(
                    f"Ollama API error: {e.response.status_code} - {e.response.text}"
                ) from e

            except httpx.RequestError as e:
                if attempt == max_retries:
                    raise EmbeddingError(
                        f"Ollama unreachable at {self.host} after {max_retries} attempts: {e}"
                    ) from e
                delay = base_delay * (2 ** (attempt - 1))
                logger.warning(
                    f"Ollama request failed (attempt {attempt}/{max_retries}), "
                    f"retrying in {delay}s: {e}"
                )
                await asyncio.sleep(delay)

        raise EmbeddingError("Ollama request was never attempted")

    def _check_vector(self, vector: Any) -> List[float]:
        if not isinstance(vector, list) or not vector:
            raise EmbeddingError("Ollama returned an empty embedding")
        if self.dimensions is not None and len(vector) != self.dimensions:
            raise EmbeddingError(
                f"Model {self.model} returned {len(vector)} dimensions, "
                f"expected {self.dimensions}"
            )
        return [float(x) for x in vector]

    async def embed(self, text: str) -> List[float]:
        """Generate the embedding of one text.

        Raises:
            EmbeddingError: If embedding generation fails
            ValueError: If text is empty
        """
        if not text or not text.strip():
            raise ValueError("Text cannot be empty")

        data = await self._post_embed({"model": self.model, "input": text})
        embeddings = data.get("embeddings")
        if not embeddings:
            raise EmbeddingError("No embedding returned from Ollama API")
        return self._check_vector(embeddings[0])

    async def embed_batch(
        self,
        texts: List[str],
        batch_size: int = 32,
    ) -> List[List[float]]:
        """Generate embeddings for several texts, ``batch_size`` per request.

        Raises:
            EmbeddingError: If embedding generation fails
            ValueError: If texts list is empty
        """
        if not texts:
            raise ValueError("Texts list cannot be empty")

        vectors: List[List[float]] = []
        for start in range(0, len(texts), batch_size):
            batch = texts[start : start + batch_size]
            data = await self._post_embed({"model": self.model, "input": batch})
            embeddings = data.get("embeddings") or []
            if len(embeddings) != len(batch):
                raise EmbeddingError(
                    f"Expected {len(batch)} embeddings, got {len(embeddings)}"
                )
            vectors.extend(self._check_vector(v) for v in embeddings)
        return vectors
