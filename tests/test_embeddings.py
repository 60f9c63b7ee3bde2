# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

import json

import httpx
import numpy as np
import pytest

from code_context.embeddings import (
    OllamaEmbeddingProvider,
    OpenAIEmbeddingProvider,
    build_embed_fn_from_config,
    create_embedding_provider,
    make_embed_fn,
    placeholder_vectors,
)
from code_context.errors import EmbedderError


def _client(handler, base_url):
    return httpx.Client(transport=httpx.MockTransport(handler), base_url=base_url)


def test_ollama_request_and_response():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"embeddings": [[1.0, 0.0], [0.0, 1.0]]})

    provider = OllamaEmbeddingProvider(
        "jina", 2, context_size=4096, client=_client(handler, "http://ollama")
    )
    vectors = make_embed_fn(provider, 2)(["a", "b"])

    assert seen["path"] == "/api/embed"
    assert seen["body"] == {"model": "jina", "input": ["a", "b"], "options": {"num_ctx": 4096}}
    assert vectors.dtype == np.float32
    assert vectors.shape == (2, 2)


def test_ollama_http_error_is_embedder_error():
    provider = OllamaEmbeddingProvider(
        "jina", 2, client=_client(lambda r: httpx.Response(500, text="oops"), "http://ollama")
    )
    with pytest.raises(EmbedderError):
        provider.embed_documents(["a"])


def test_ollama_missing_embeddings_key():
    provider = OllamaEmbeddingProvider(
        "jina", 2, client=_client(lambda r: httpx.Response(200, json={"error": "x"}), "http://o")
    )
    with pytest.raises(EmbedderError):
        provider.embed_documents(["a"])


def test_openai_rows_are_ordered_by_index():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1/embeddings"
        return httpx.Response(
            200,
            json={"data": [{"index": 1, "embedding": [0.0, 1.0]}, {"index": 0, "embedding": [1.0, 0.0]}]},
        )

    provider = OpenAIEmbeddingProvider("m", 2, client=_client(handler, "https://api.test/v1"))
    assert provider.embed_documents(["first", "second"]) == [[1.0, 0.0], [0.0, 1.0]]


def test_embed_fn_rejects_wrong_count():
    class Short:
        def embed_documents(self, texts):
            return [[0.0, 1.0]]

    with pytest.raises(EmbedderError):
        make_embed_fn(Short(), 2)(["a", "b"])


def test_unknown_provider():
    with pytest.raises(ValueError):
        create_embedding_provider("mystery", "m", 8)


def test_placeholder_vectors_are_deterministic_unit_vectors():
    first = placeholder_vectors(["x", "y"], 32)
    second = placeholder_vectors(["x", "y"], 32)
    assert np.array_equal(first, second)
    assert np.allclose(np.linalg.norm(first, axis=1), 1.0, atol=1e-5)
    assert not np.array_equal(first[0], first[1])


def test_build_from_config(test_config):
    embed_fn, model_id = build_embed_fn_from_config(test_config)
    assert callable(embed_fn)
    assert model_id == "ollama:test-model"
