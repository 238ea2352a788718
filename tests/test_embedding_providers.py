"""Tests for embedding providers (HTTP mocked)."""

import base64
import os
from unittest.mock import patch

import httpx
import pytest

from dreamvec.core.embedding_providers import (
    DimensionMismatchError,
    EmbeddingError,
    OllamaProvider,
    OpenAIProvider,
    deserialize_f32,
    get_provider,
    normalize,
    serialize_f32,
    validate_vectors,
)


def response(status_code, **kwargs):
    return httpx.Response(status_code, request=httpx.Request("POST", "http://test/api"), **kwargs)


def test_serialize_f32_roundtrip():
    vec = [1.0, 0.5, -2.0]
    blob = serialize_f32(vec)
    assert len(blob) == 12  # 3 floats * 4 bytes
    assert deserialize_f32(blob) == vec


def test_normalize():
    assert normalize([3.0, 4.0]) == pytest.approx([0.6, 0.8])
    assert normalize([0.0, 0.0]) == [0.0, 0.0]


def test_validate_vectors_count_mismatch():
    with pytest.raises(DimensionMismatchError) as exc:
        validate_vectors([[0.1, 0.2]], expected_count=2, dimensions=2, provider="Test")
    assert exc.value.retriable is False


def test_validate_vectors_dimension_mismatch():
    with pytest.raises(DimensionMismatchError) as exc:
        validate_vectors([[0.1, 0.2], [0.1]], expected_count=2, dimensions=2, provider="Test")
    assert exc.value.expected == 2
    assert exc.value.actual == 1
    assert isinstance(exc.value, EmbeddingError)


def test_validate_vectors_ok():
    validate_vectors([[0.1, 0.2], [0.3, 0.4]], expected_count=2, dimensions=2, provider="Test")


def test_get_provider():
    assert isinstance(get_provider("ollama"), OllamaProvider)
    assert get_provider("ollama").dimensions == 1024
    assert isinstance(get_provider("OpenAI", dimensions=512), OpenAIProvider)
    assert get_provider("openai", dimensions=512).dimensions == 512

    with pytest.raises(ValueError, match="Unknown provider"):
        get_provider("nope")


def test_unknown_model_rejected():
    with pytest.raises(ValueError, match="Unknown Ollama model"):
        OllamaProvider(model="does-not-exist")


@pytest.mark.asyncio
async def test_ollama_embed_mocked():
    vectors = [[0.1] * 1024, [0.2] * 1024]

    async def mock_post(*args, **kwargs):
        assert kwargs["json"] == {"model": "bge-m3", "input": ["a", "b"]}
        return response(200, json={"embeddings": vectors})

    with patch("httpx.AsyncClient.post", side_effect=mock_post):
        result = await OllamaProvider(base_url="http://test").embed(["a", "b"])

    assert result == vectors


@pytest.mark.asyncio
async def test_ollama_empty_input():
    assert await OllamaProvider().embed([]) == []


@pytest.mark.asyncio
async def test_ollama_connect_error_is_retriable():
    with patch("httpx.AsyncClient.post", side_effect=httpx.ConnectError("refused")):
        with pytest.raises(EmbeddingError) as exc:
            await OllamaProvider(base_url="http://test").embed(["a"])
    assert exc.value.retriable is True
    assert exc.value.provider == "Ollama"


@pytest.mark.asyncio
async def test_ollama_missing_model_is_permanent():
    async def mock_post(*args, **kwargs):
        return response(404, text="model not found")

    with patch("httpx.AsyncClient.post", side_effect=mock_post):
        with pytest.raises(EmbeddingError) as exc:
            await OllamaProvider(base_url="http://test").embed(["a"])
    assert exc.value.retriable is False
    assert "ollama pull" in str(exc.value)


@pytest.mark.asyncio
async def test_ollama_server_error_is_retriable():
    async def mock_post(*args, **kwargs):
        return response(503, text="busy")

    with patch("httpx.AsyncClient.post", side_effect=mock_post):
        with pytest.raises(EmbeddingError) as exc:
            await OllamaProvider(base_url="http://test").embed(["a"])
    assert exc.value.retriable is True


@pytest.mark.asyncio
async def test_openai_no_api_key():
    with patch.dict(os.environ, {"OPENAI_API_KEY": ""}, clear=False):
        provider = OpenAIProvider()
        with pytest.raises(EmbeddingError, match="OPENAI_API_KEY") as exc:
            await provider.embed(["text"])
    assert exc.value.retriable is False


@pytest.mark.asyncio
async def test_openai_decodes_base64_in_index_order():
    first = base64.b64encode(serialize_f32([0.5, 0.25])).decode()
    second = base64.b64encode(serialize_f32([1.0, -1.0])).decode()

    async def mock_post(*args, **kwargs):
        assert kwargs["json"]["dimensions"] == 2
        assert kwargs["json"]["encoding_format"] == "base64"
        return response(
            200,
            json={"data": [{"embedding": second, "index": 1}, {"embedding": first, "index": 0}]},
        )

    provider = OpenAIProvider(dimensions=2, api_key="test-key")
    with patch("httpx.AsyncClient.post", side_effect=mock_post):
        result = await provider.embed(["a", "b"])

    assert result == [[0.5, 0.25], [1.0, -1.0]]


@pytest.mark.asyncio
async def test_openai_invalid_key_is_permanent():
    async def mock_post(*args, **kwargs):
        return response(401, text="unauthorized")

    provider = OpenAIProvider(api_key="bad-key")
    with patch("httpx.AsyncClient.post", side_effect=mock_post):
        with pytest.raises(EmbeddingError) as exc:
            await provider.embed(["a"])
    assert exc.value.retriable is False


@pytest.mark.asyncio
async def test_openai_quota_exhausted_is_permanent():
    async def mock_post(*args, **kwargs):
        return response(429, text="You exceeded your current quota")

    provider = OpenAIProvider(api_key="test-key")
    with patch("httpx.AsyncClient.post", side_effect=mock_post):
        with pytest.raises(EmbeddingError, match="quota") as exc:
            await provider.embed(["a"])
    assert exc.value.retriable is False


@pytest.mark.asyncio
async def test_health_check_reports_dimension_mismatch():
    async def mock_post(*args, **kwargs):
        return response(200, json={"embeddings": [[0.1] * 10]})

    with patch("httpx.AsyncClient.post", side_effect=mock_post):
        health = await OllamaProvider(base_url="http://test").health_check()

    assert health.healthy is False
    assert "Dimension mismatch" in health.message


@pytest.mark.asyncio
async def test_health_check_unreachable():
    with patch("httpx.AsyncClient.post", side_effect=httpx.ConnectError("refused")):
        health = await OllamaProvider(base_url="http://test").health_check()

    assert health.healthy is False
    assert health.to_dict()["details"] == {"retriable": True}
