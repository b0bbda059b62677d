"""Tests for the embedding client with a mocked OpenAI API."""

from types import SimpleNamespace
from unittest.mock import MagicMock

import numpy as np
import pytest

from mosaic.embedding.embedder import MAX_INPUT_CHARS, Embedder
from mosaic.errors import ConfigurationError, ExternalServiceError
from tests.fakes import DIMS, FakeEmbeddingClient


def test_embed_returns_vector_of_configured_size(embedder, embedding_client):
    vector = embedder.embed("Hello world")
    assert len(vector) == DIMS
    assert all(isinstance(v, float) for v in vector)
    assert embedding_client.calls == 1
    assert embedder.total_api_calls == 1
    assert embedder.total_tokens_used > 0


def test_embed_texts_keeps_input_order_and_normalises(embedder, embedding_client):
    embedding_client.vectors["a"] = [3.0, 4.0] + [0.0] * (DIMS - 2)
    embedding_client.vectors["b"] = [0.0, 2.0] + [0.0] * (DIMS - 2)

    # The fake client returns data in reverse order; results follow `index`
    matrix = embedder.embed_texts(["a", "b"])

    assert matrix.shape == (2, DIMS)
    assert matrix.dtype == np.float32
    np.testing.assert_allclose(matrix[0][:2], [0.6, 0.8], rtol=1e-6)
    np.testing.assert_allclose(matrix[1][:2], [0.0, 1.0], rtol=1e-6)


def test_embed_texts_empty_list_makes_no_call(embedder, embedding_client):
    assert embedder.embed_texts([]).shape == (0, DIMS)
    assert embedding_client.calls == 0


def test_empty_and_long_inputs_are_sanitised():
    client = MagicMock()
    client.embeddings.create.return_value = SimpleNamespace(
        data=[SimpleNamespace(index=i, embedding=[0.1] * DIMS) for i in range(2)],
        usage=SimpleNamespace(total_tokens=10),
    )
    embedder = Embedder(dimensions=DIMS, client=client)

    embedder.embed_texts(["   ", "x" * (MAX_INPUT_CHARS + 500)])

    sent = client.embeddings.create.call_args.kwargs["input"]
    assert sent[0] == " "
    assert len(sent[1]) == MAX_INPUT_CHARS


def test_service_failure_raises_external_service_error(embedder, embedding_client):
    embedding_client.fail = True
    with pytest.raises(ExternalServiceError) as exc_info:
        embedder.embed("anything")
    assert exc_info.value.service == "embedding"


def test_dimension_mismatch_is_rejected():
    embedder = Embedder(dimensions=DIMS, client=FakeEmbeddingClient(dimensions=DIMS + 1))
    with pytest.raises(ExternalServiceError, match="dimension mismatch"):
        embedder.embed("text")


def test_missing_api_key_fails_fast(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    with pytest.raises(ConfigurationError):
        Embedder()


def test_from_config_reads_openai_section(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "test-openai-key")
    embedder = Embedder.from_config({"openai": {"embedding_model": "custom-model", "embedding_dimensions": 256}})
    assert embedder.model == "custom-model"
    assert embedder.dimensions == 256


def test_usage_summary(embedder):
    embedder.embed("some text to embed")
    summary = embedder.usage_summary()
    assert summary["total_api_calls"] == 1
    assert summary["model"] == "text-embedding-3-small"
    assert summary["estimated_cost_usd"] >= 0
