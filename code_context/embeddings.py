# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""
Embedding providers for code chunks.

Providers expose ``embed_documents(texts) -> list[list[float]]``; the indexer
works with the plain :data:`EmbeddingFn` callable returned by
:func:`make_embed_fn`, which yields a float32 matrix with one row per input.
"""

from __future__ import annotations

import hashlib
import logging
from collections.abc import Callable, Sequence
from typing import Any

import httpx
import numpy as np
from numpy.random import default_rng

from .errors import EmbedderError

logger = logging.getLogger(__name__)

EmbeddingFn = Callable[[Sequence[str]], np.ndarray]

PLACEHOLDER_MODEL = "placeholder"


class OllamaEmbeddingProvider:
    """Calls a local Ollama server's ``/api/embed`` endpoint."""

    def __init__(
        self,
        model: str,
        dimension: int,
        base_url: str = "http://localhost:11434",
        context_size: int = 8192,
        timeout: float = 120.0,
        client: httpx.Client | None = None,
    ):
        self.model = model
        self.dimension = dimension
        self.context_size = context_size
        self._client = client or httpx.Client(base_url=base_url.rstrip("/"), timeout=timeout)

    def embed_documents(self, texts: Sequence[str]) -> list[list[float]]:
        payload = {
            "model": self.model,
            "input": list(texts),
            "options": {"num_ctx": self.context_size},
        }
        try:
            response = self._client.post("/api/embed", json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as exc:
            raise EmbedderError(f"Ollama embedding request failed: {exc}") from exc
        except ValueError as exc:
            raise EmbedderError(f"Ollama returned invalid JSON: {exc}") from exc

        embeddings = data.get("embeddings") if isinstance(data, dict) else None
        if not isinstance(embeddings, list):
            raise EmbedderError("Ollama response has no 'embeddings' list")
        return embeddings

    def close(self) -> None:
        self._client.close()


class OpenAIEmbeddingProvider:
    """OpenAI-compatible ``/embeddings`` endpoint."""

    def __init__(
        self,
        model: str,
        dimension: int,
        base_url: str = "https://api.openai.com/v1",
        api_key: str | None = None,
        timeout: float = 120.0,
        client: httpx.Client | None = None,
    ):
        self.model = model
        self.dimension = dimension
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = client or httpx.Client(
            base_url=base_url.rstrip("/"), timeout=timeout, headers=headers
        )

    def embed_documents(self, texts: Sequence[str]) -> list[list[float]]:
        try:
            response = self._client.post(
                "/embeddings", json={"model": self.model, "input": list(texts)}
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as exc:
            raise EmbedderError(f"Embedding request failed: {exc}") from exc
        except ValueError as exc:
            raise EmbedderError(f"Embedding endpoint returned invalid JSON: {exc}") from exc

        rows = data.get("data") if isinstance(data, dict) else None
        if not isinstance(rows, list):
            raise EmbedderError("Embedding response has no 'data' list")
        rows = sorted(rows, key=lambda r: r.get("index", 0))
        return [r.get("embedding") for r in rows]

    def close(self) -> None:
        self._client.close()


_PROVIDERS: dict[str, type] = {
    "ollama": OllamaEmbeddingProvider,
    "openai": OpenAIEmbeddingProvider,
}


def create_embedding_provider(provider: str, model: str, dimension: int, **kwargs: Any):
    """Instantiate a provider by name."""
    try:
        cls = _PROVIDERS[provider.lower()]
    except KeyError:
        raise ValueError(
            f"Unknown embeddings provider {provider!r}; expected one of {sorted(_PROVIDERS)}"
        ) from None
    return cls(model=model, dimension=dimension, **kwargs)


def make_embed_fn(provider_impl, dimension: int) -> EmbeddingFn:
    """Wrap a provider into an EmbeddingFn that validates shape."""

    def _embed(texts: Sequence[str]) -> np.ndarray:
        if not texts:
            return np.zeros((0, dimension), dtype="float32")
        vectors = provider_impl.embed_documents(list(texts))
        try:
            arr = np.asarray(vectors, dtype="float32")
        except (TypeError, ValueError) as exc:
            raise EmbedderError(f"Embedder returned non-numeric vectors: {exc}") from exc
        if arr.ndim != 2 or arr.shape[0] != len(texts):
            raise EmbedderError(
                f"Embedder returned {arr.shape[0] if arr.ndim else 0} vectors "
                f"for {len(texts)} inputs"
            )
        if arr.shape[1] != dimension:
            logger.warning(
                "Embedder returned dimension %s, configured dimension is %s",
                arr.shape[1],
                dimension,
            )
        return arr

    return _embed


def placeholder_vectors(texts: Sequence[str], dimension: int) -> np.ndarray:
    """Deterministic unit vectors seeded from each text; carry no meaning."""
    out = np.empty((len(texts), dimension), dtype="float32")
    for i, text in enumerate(texts):
        digest = hashlib.sha256(text.encode("utf-8", errors="replace")).digest()
        rng = default_rng(int.from_bytes(digest[:8], "big", signed=False))
        out[i] = rng.standard_normal(dimension).astype("float32")
    norms = np.linalg.norm(out, axis=1, keepdims=True)
    return out / (norms + 1e-8)


def build_embed_fn_from_config(config) -> tuple[EmbeddingFn, str]:
    """Build the configured provider; returns the callable and a model identifier."""
    provider = config.embeddings_provider
    model = config.embeddings_model
    kwargs: dict[str, Any] = {
        "base_url": config.embeddings_base_url,
        "timeout": config.embeddings_timeout,
    }
    if provider == "ollama":
        kwargs["context_size"] = config.embeddings_context_size
    elif config.embeddings_api_key:
        kwargs["api_key"] = config.embeddings_api_key

    provider_impl = create_embedding_provider(
        provider=provider,
        model=model,
        dimension=config.embeddings_dimension,
        **kwargs,
    )
    logger.info(
        "Initialized embedding provider: provider=%s model=%s dim=%s",
        provider,
        model,
        config.embeddings_dimension,
    )
    return make_embed_fn(provider_impl, config.embeddings_dimension), f"{provider}:{model}"
