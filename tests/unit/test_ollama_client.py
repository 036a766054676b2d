"""Unit tests for Ollama embedding client."""

import json

import httpx
import pytest

from cortex.embedding.ollama import EmbeddingError, OllamaClient

EMBED_URL = "http://localhost:11434/api/embed"


class TestOllamaClientInit:
    """Tests for OllamaClient initialization."""

    def test_default_values(self):
        """Test default initialization values."""
        client = OllamaClient()
        assert client.host == "http://localhost:11434"
        assert client.model == "all-minilm"
        assert client.timeout == 30.0
        assert client.dimensions == 384

    def test_custom_values(self):
        """Test custom initialization values."""
        client = OllamaClient(
            host="http://custom:8080/",
            model="nomic-embed-text",
            timeout=60.0,
            dimensions=768,
        )
        assert client.host == "http://custom:8080"  # Trailing slash stripped
        assert client.model == "nomic-embed-text"
        assert client.timeout == 60.0
        assert client.dimensions == 768


class TestEmbed:
    """Tests for single text embedding."""

    @pytest.mark.asyncio
    async def test_embed(self, httpx_mock):
        """Test a single text is embedded with the configured model."""
        mock_embedding = [0.1, 0.2, 0.3]
        httpx_mock.add_response(
            method="POST",
            url=EMBED_URL,
            json={"embeddings": [mock_embedding]},
        )

        async with OllamaClient(dimensions=3) as client:
            result = await client.embed("connection pooling")

        assert result == mock_embedding
        request = httpx_mock.get_request()
        assert json.loads(request.content) == {"model": "all-minilm", "input": "connection pooling"}

    @pytest.mark.asyncio
    async def test_embed_empty_text_raises(self):
        """Test that empty text raises ValueError."""
        client = OllamaClient()
        with pytest.raises(ValueError, match="Text cannot be empty"):
            await client.embed("")

    @pytest.mark.asyncio
    async def test_embed_whitespace_only_raises(self):
        """Test that whitespace-only text raises ValueError."""
        client = OllamaClient()
        with pytest.raises(ValueError, match="Text cannot be empty"):
            await client.embed("   ")

    @pytest.mark.asyncio
    async def test_embed_no_embeddings_returned(self, httpx_mock):
        """Test error when API returns no embeddings."""
        httpx_mock.add_response(method="POST", url=EMBED_URL, json={"embeddings": []})

        async with OllamaClient() as client:
            with pytest.raises(EmbeddingError, match="No embedding returned"):
                await client.embed("test")

    @pytest.mark.asyncio
    async def test_embed_wrong_dimensions(self, httpx_mock):
        """Test vectors of the wrong length are rejected."""
        httpx_mock.add_response(method="POST", url=EMBED_URL, json={"embeddings": [[0.1, 0.2]]})

        async with OllamaClient() as client:
            with pytest.raises(EmbeddingError, match="returned 2 dimensions, expected 384"):
                await client.embed("test")

    @pytest.mark.asyncio
    async def test_embed_dimension_check_disabled(self, httpx_mock):
        """Test dimensions=None accepts any length."""
        httpx_mock.add_response(method="POST", url=EMBED_URL, json={"embeddings": [[1, 2]]})

        async with OllamaClient(dimensions=None) as client:
            assert await client.embed("test") == [1.0, 2.0]


class TestEmbedBatch:
    """Tests for batch embedding."""

    @pytest.mark.asyncio
    async def test_embed_batch_multiple_batches(self, httpx_mock):
        """Test texts are split into batches."""
        httpx_mock.add_response(
            method="POST", url=EMBED_URL, json={"embeddings": [[0.1], [0.2]]}
        )
        httpx_mock.add_response(method="POST", url=EMBED_URL, json={"embeddings": [[0.3]]})

        async with OllamaClient(dimensions=1) as client:
            result = await client.embed_batch(["a", "b", "c"], batch_size=2)

        assert result == [[0.1], [0.2], [0.3]]
        requests = httpx_mock.get_requests()
        assert [json.loads(r.content)["input"] for r in requests] == [["a", "b"], ["c"]]

    @pytest.mark.asyncio
    async def test_embed_batch_empty_list_raises(self):
        """Test that an empty list raises ValueError."""
        client = OllamaClient()
        with pytest.raises(ValueError, match="Texts list cannot be empty"):
            await client.embed_batch([])

    @pytest.mark.asyncio
    async def test_embed_batch_wrong_count(self, httpx_mock):
        """Test error when fewer embeddings than texts come back."""
        httpx_mock.add_response(method="POST", url=EMBED_URL, json={"embeddings": [[0.1]]})

        async with OllamaClient(dimensions=1) as client:
            with pytest.raises(EmbeddingError, match="Expected 2 embeddings, got 1"):
                await client.embed_batch(["a", "b"])


class TestRetry:
    """Tests for retry behaviour."""

    @pytest.mark.asyncio
    async def test_retry_on_connect_error(self, httpx_mock, mocker):
        """Test connection failures are retried with exponential backoff."""
        mock_sleep = mocker.patch("cortex.embedding.ollama.asyncio.sleep", return_value=None)
        httpx_mock.add_exception(httpx.ConnectError("Connection refused"))
        httpx_mock.add_exception(httpx.ConnectError("Connection refused"))
        httpx_mock.add_response(method="POST", url=EMBED_URL, json={"embeddings": [[0.5]]})

        async with OllamaClient(dimensions=1) as client:
            result = await client.embed("retry me")

        assert result == [0.5]
        assert [call.args[0] for call in mock_sleep.call_args_list] == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_retry_exhausted(self, httpx_mock, mocker):
        """Test EmbeddingError after the last attempt fails."""
        mocker.patch("cortex.embedding.ollama.asyncio.sleep", return_value=None)
        for _ in range(3):
            httpx_mock.add_exception(httpx.ConnectError("Connection refused"))

        async with OllamaClient() as client:
            with pytest.raises(EmbeddingError, match="unreachable"):
                await client.embed("test")

    @pytest.mark.asyncio
    async def test_timeout_error_no_retry(self, httpx_mock):
        """Test timeouts fail immediately."""
        httpx_mock.add_exception(httpx.ReadTimeout("Request timed out"))

        async with OllamaClient() as client:
            with pytest.raises(EmbeddingError, match="timed out"):
                await client.embed("test")

        assert len(httpx_mock.get_requests()) == 1

    @pytest.mark.asyncio
    async def test_http_status_error_no_retry(self, httpx_mock):
        """Test HTTP error statuses fail immediately."""
        httpx_mock.add_response(method="POST", url=EMBED_URL, status_code=404, text="model not found")

        async with OllamaClient() as client:
            with pytest.raises(EmbeddingError, match="404"):
                await client.embed("test")


class TestClientLifecycle:
    """Tests for HTTP client management."""

    @pytest.mark.asyncio
    async def test_close_resets_client(self, httpx_mock):
        """Test close releases the HTTP client and a later call reopens it."""
        httpx_mock.add_response(method="POST", url=EMBED_URL, json={"embeddings": [[1.0]]})
        httpx_mock.add_response(method="POST", url=EMBED_URL, json={"embeddings": [[1.0]]})

        client = OllamaClient(dimensions=1)
        await client.embed("first")
        assert client._client is not None
        await client.close()
        assert client._client is None

        await client.embed("second")
        await client.close()
