# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""Similarity search over a branch's stored chunk vectors.

Every query is a linear scan: all embedded chunks of the branch are loaded,
filtered by path, scored against the query vector and the top N returned.
When nothing scores because chunks are still missing vectors, the branch is
embedded once and the scan repeated.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

import numpy as np

from .analysis.patterns import PathFilter
from .orchestrator import EmbeddingOrchestrator, blob_to_vector
from .progress import ProgressFn
from .schema import EmbeddedChunk, SearchResult
from .storage.db import Store
from .storage.metadata import MetadataStore

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 10


def score_vectors(query: np.ndarray, matrix: np.ndarray, metric: str = "cosine") -> np.ndarray:
    """
    Score each row of ``matrix`` against ``query``.

    ``cosine`` is the normalized dot product. ``dot`` is the raw coordinate-wise
    product sum divided by the dimension, which ranks correctly only when all
    vectors have comparable magnitude.
    """
    if matrix.size == 0:
        return np.zeros((0,), dtype="float32")
    if metric == "dot":
        return (matrix @ query) / float(query.shape[0])
    q_norm = float(np.linalg.norm(query)) or 1.0
    row_norms = np.linalg.norm(matrix, axis=1)
    row_norms[row_norms == 0] = 1.0
    return (matrix @ query) / (row_norms * q_norm)


def keyword_filter(results: list[SearchResult], keywords: Sequence[str] | None) -> list[SearchResult]:
    """Keep results whose content contains at least one keyword (case-insensitive)."""
    terms = [k.strip().lower() for k in (keywords or []) if k and k.strip()]
    if not terms:
        return results
    return [r for r in results if any(t in r.content.lower() for t in terms)]


class RetrievalEngine:
    def __init__(
        self,
        store: Store,
        orchestrator: EmbeddingOrchestrator,
        *,
        metric: str = "cosine",
        default_limit: int = DEFAULT_LIMIT,
    ):
        self.store = store
        self.metadata = MetadataStore(store)
        self.orchestrator = orchestrator
        self.metric = metric
        self.default_limit = default_limit

    def _embed_query(self, query: str) -> np.ndarray:
        vectors, _model = self.orchestrator.embed_texts([query])
        return np.asarray(vectors[0], dtype="float32")

    def _rank(
        self,
        branch_id: int,
        query_vec: np.ndarray,
        path_filter: PathFilter,
        limit: int,
    ) -> list[SearchResult]:
        candidates: list[EmbeddedChunk] = [
            c for c in self.metadata.embedded_chunks(branch_id) if path_filter.allows(c.file_path)
        ]
        if not candidates:
            return []

        rows: list[np.ndarray] = []
        kept: list[EmbeddedChunk] = []
        for chunk in candidates:
            vec = blob_to_vector(chunk.embedding)
            if vec.shape[0] != query_vec.shape[0]:
                logger.debug(
                    "Skipping chunk %s: dimension %s != query %s",
                    chunk.id,
                    vec.shape[0],
                    query_vec.shape[0],
                )
                continue
            rows.append(vec)
            kept.append(chunk)
        if not kept:
            return []

        scores = score_vectors(query_vec, np.vstack(rows), self.metric)
        order = np.argsort(-scores, kind="stable")[:limit]
        return [
            SearchResult(
                file_path=kept[i].file_path,
                chunk_number=kept[i].chunk_number,
                content=kept[i].content,
                similarity=float(scores[i]),
            )
            for i in order
        ]

    def search(
        self,
        branch_id: int,
        query: str,
        *,
        limit: int | None = None,
        include: Sequence[str] | None = None,
        exclude: Sequence[str] | None = None,
        keywords: Sequence[str] | None = None,
        progress: ProgressFn | None = None,
    ) -> list[SearchResult]:
        """Rank the branch's chunks against ``query``.

        Args:
            branch_id: Branch whose chunks are searched
            query: Text embedded as the query vector
            limit: Maximum number of results (defaults to ``default_limit``)
            include: Glob patterns; a result's path must match one of them
            exclude: Glob patterns; a result's path must match none of them
            keywords: Post-filter terms; applied after ranking
            progress: Observer for a backfill pass, if one runs

        Returns:
            Results sorted by descending similarity
        """
        limit = limit or self.default_limit
        path_filter = PathFilter(include, exclude)
        query_vec = self._embed_query(query)

        results = self._rank(branch_id, query_vec, path_filter, limit)
        if not results and self.metadata.count_chunks(branch_id, missing_vectors=True) > 0:
            logger.info("No embedded chunks matched for branch %s; backfilling", branch_id)
            self.orchestrator.embed_branch(branch_id, progress=progress)
            results = self._rank(branch_id, query_vec, path_filter, limit)

        return keyword_filter(results, keywords)
