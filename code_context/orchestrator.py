# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""
Batched embedding of chunks that lack a vector.

Batches are embedded one after another and each batch's vectors are written
in a single transaction, so a batch is either fully stored or not at all.
After the batches, files whose chunks are all embedded move to ``ingested``
and the branch moves to ``embeddings_generated`` once none of its files is
still mid-pipeline.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from time import perf_counter

import numpy as np

from .embeddings import PLACEHOLDER_MODEL, EmbeddingFn, placeholder_vectors
from .errors import CodeContextError, EmbedderError
from .progress import ProgressFn
from .schema import PendingChunk
from .state import FILE_TERMINAL, BranchStatus, FileStatus, StateTracker
from .storage.db import Store
from .storage.metadata import MetadataStore

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 100


@dataclass
class EmbedStats:
    chunks_total: int = 0
    chunks_embedded: int = 0
    batches: int = 0
    placeholder_batches: int = 0
    files_ingested: int = 0
    branch_completed: bool = False
    stopped: bool = False

    def as_dict(self) -> dict[str, object]:
        return {
            "chunks_total": self.chunks_total,
            "chunks_embedded": self.chunks_embedded,
            "batches": self.batches,
            "placeholder_batches": self.placeholder_batches,
            "files_ingested": self.files_ingested,
            "branch_completed": self.branch_completed,
            "stopped": self.stopped,
        }


def vector_to_blob(vector: np.ndarray) -> bytes:
    return np.asarray(vector, dtype="<f4").tobytes()


def blob_to_vector(blob: bytes) -> np.ndarray:
    return np.frombuffer(blob, dtype="<f4")


class EmbeddingOrchestrator:
    def __init__(
        self,
        store: Store,
        embed_fn: EmbeddingFn | None,
        embed_model: str,
        *,
        dimension: int = 768,
        batch_size: int = DEFAULT_BATCH_SIZE,
        placeholder_on_failure: bool = False,
    ):
        self.store = store
        self.metadata = MetadataStore(store)
        self.state = StateTracker(self.metadata)
        self.embed_fn = embed_fn
        self.embed_model = embed_model
        self.dimension = dimension
        self.batch_size = max(1, int(batch_size))
        self.placeholder_on_failure = placeholder_on_failure

    def embed_texts(self, texts: list[str]) -> tuple[np.ndarray, str]:
        """Embed texts, returning the vectors and the model id that produced them."""
        if self.embed_fn is None:
            if not self.placeholder_on_failure:
                raise EmbedderError("No embedding function configured")
            return placeholder_vectors(texts, self.dimension), PLACEHOLDER_MODEL
        try:
            vectors = np.asarray(self.embed_fn(texts), dtype="float32")
            if vectors.ndim != 2 or vectors.shape[0] != len(texts):
                raise EmbedderError(
                    f"Embedder returned {len(vectors)} vectors for {len(texts)} inputs"
                )
            return vectors, self.embed_model
        except Exception as exc:
            if not self.placeholder_on_failure:
                if isinstance(exc, CodeContextError):
                    raise
                raise EmbedderError(f"Embedding batch failed: {exc}") from exc
            logger.warning(
                "Embedding batch of %d failed (%s); storing placeholder vectors",
                len(texts),
                exc,
            )
            return placeholder_vectors(texts, self.dimension), PLACEHOLDER_MODEL

    def embed_chunks(
        self,
        chunks: Sequence[PendingChunk],
        progress: ProgressFn | None = None,
        should_stop: Callable[[], bool] | None = None,
    ) -> EmbedStats:
        """Embed and persist ``chunks`` batch by batch."""
        stats = EmbedStats(chunks_total=len(chunks))
        total = len(chunks)
        if total == 0:
            if progress is not None:
                progress(1.0, 1.0)
            return stats

        started = perf_counter()
        for offset in range(0, total, self.batch_size):
            if should_stop is not None and should_stop():
                stats.stopped = True
                logger.info("Embedding stopped after %d of %d chunks", offset, total)
                break
            batch = chunks[offset : offset + self.batch_size]
            vectors, model = self.embed_texts([c.content for c in batch])
            with self.store.transaction():
                for chunk, vector in zip(batch, vectors):
                    self.metadata.store_vector(chunk.id, vector_to_blob(vector), model)
            stats.batches += 1
            stats.chunks_embedded += len(batch)
            if model == PLACEHOLDER_MODEL:
                stats.placeholder_batches += 1
            if progress is not None:
                progress(stats.chunks_embedded / total, 1.0)

        logger.info(
            "Embedded %d/%d chunks in %d batches with %s (%.2fs)",
            stats.chunks_embedded,
            total,
            stats.batches,
            self.embed_model,
            perf_counter() - started,
        )
        return stats

    def embed_branch(
        self,
        branch_id: int,
        progress: ProgressFn | None = None,
        should_stop: Callable[[], bool] | None = None,
    ) -> EmbedStats:
        """Embed every chunk of the branch that has no vector, then update statuses."""
        pending = self.metadata.chunks_missing_vectors(branch_id)
        stats = self.embed_chunks(pending, progress=progress, should_stop=should_stop)
        ingested, completed = self.refresh_completion(branch_id)
        stats.files_ingested = ingested
        stats.branch_completed = completed
        return stats

    def refresh_completion(self, branch_id: int) -> tuple[int, bool]:
        """Advance file and branch statuses that are now satisfied.

        Returns the number of files moved to ``ingested`` and whether the
        branch moved to ``embeddings_generated`` during this call.
        """
        with self.store.transaction():
            branch = self.metadata.get_branch_by_id(branch_id)
            if branch is None:
                return 0, False
            ready = self.metadata.files_ready_for_ingest(branch_id)
            for file_id in ready:
                self.state.transition_file(file_id, FileStatus.INGESTED)

            if branch.status is not BranchStatus.FILES_PROCESSED:
                return len(ready), False
            counts = self.metadata.branch_status_counts(branch_id)
            unfinished = {
                status: n
                for status, n in counts.items()
                if FileStatus(status) not in FILE_TERMINAL
            }
            if unfinished:
                logger.debug("Branch %s not complete: %s", branch_id, unfinished)
                return len(ready), False
            self.state.transition_branch(branch_id, BranchStatus.EMBEDDINGS_GENERATED)
        logger.info("Branch %s (%s) embeddings generated", branch.name, branch_id)
        return len(ready), True
