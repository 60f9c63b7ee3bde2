# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""Tests for batched embedding and completion tracking."""

from pathlib import Path

import numpy as np
import pytest

from code_context.embeddings import PLACEHOLDER_MODEL
from code_context.errors import EmbedderError
from code_context.ingest import ChunkingStage
from code_context.orchestrator import EmbeddingOrchestrator, blob_to_vector, vector_to_blob
from code_context.state import BranchStatus, FileStatus, StateTracker
from code_context.sync import Synchronizer


@pytest.fixture
def processed_branch(store, metadata, fake_vcs):
    """A branch whose files are synced and chunked (status files_processed)."""
    repo = metadata.ensure_repository("https://example.com/acme/widgets", "widgets", "/wc")
    branch = metadata.create_branch(repo.id, "main", "c1")
    listing, _commit = fake_vcs.list_files(Path("/wc"), "main")
    Synchronizer(store).sync(repo.id, branch.id, listing)
    ChunkingStage(store, fake_vcs.read_blob).process_branch(branch.id, Path("/wc"))
    StateTracker(metadata).transition_branch(branch.id, BranchStatus.FILES_PROCESSED)
    return branch


def test_vector_blob_round_trip():
    vec = np.array([0.5, -1.25, 3.0], dtype="float32")
    assert np.array_equal(blob_to_vector(vector_to_blob(vec)), vec)
    assert len(vector_to_blob(vec)) == 12


def test_embed_branch_in_batches(store, metadata, processed_branch, dummy_embed_fn):
    orchestrator = EmbeddingOrchestrator(store, dummy_embed_fn, "test-model", batch_size=2)
    reports = []

    stats = orchestrator.embed_branch(
        processed_branch.id, progress=lambda p, t: reports.append((p, t))
    )

    assert stats.chunks_total == 3
    assert stats.chunks_embedded == 3
    assert stats.batches == 2
    assert [len(call) for call in dummy_embed_fn.calls] == [2, 1]
    assert reports == [(2 / 3, 1.0), (1.0, 1.0)]
    assert metadata.count_chunks(processed_branch.id, missing_vectors=True) == 0

    assert stats.files_ingested == 3
    assert stats.branch_completed
    assert metadata.get_branch_by_id(processed_branch.id).status is BranchStatus.EMBEDDINGS_GENERATED
    statuses = {f.status for f in metadata.list_branch_files(processed_branch.id)}
    assert statuses == {FileStatus.INGESTED, FileStatus.DONE}

    models = store.all("SELECT DISTINCT model_version FROM file_chunk")
    assert [r["model_version"] for r in models] == ["test-model"]


def test_second_run_is_a_noop(store, processed_branch, dummy_embed_fn):
    orchestrator = EmbeddingOrchestrator(store, dummy_embed_fn, "test-model")
    orchestrator.embed_branch(processed_branch.id)
    calls = len(dummy_embed_fn.calls)
    reports = []

    stats = orchestrator.embed_branch(processed_branch.id, progress=lambda p, t: reports.append(p))

    assert stats.chunks_total == 0
    assert len(dummy_embed_fn.calls) == calls
    assert reports == [1.0]


def test_failed_batch_keeps_earlier_batches(store, metadata, processed_branch, dummy_embed_fn):
    calls = []

    def flaky(texts):
        calls.append(texts)
        if len(calls) == 2:
            raise RuntimeError("embedder went away")
        return dummy_embed_fn(texts)

    orchestrator = EmbeddingOrchestrator(store, flaky, "test-model", batch_size=2)
    with pytest.raises(EmbedderError):
        orchestrator.embed_branch(processed_branch.id)

    assert metadata.count_chunks(processed_branch.id, missing_vectors=True) == 1
    assert metadata.get_branch_by_id(processed_branch.id).status is BranchStatus.FILES_PROCESSED

    # retry only embeds what is missing
    retry = EmbeddingOrchestrator(store, dummy_embed_fn, "test-model").embed_branch(
        processed_branch.id
    )
    assert retry.chunks_total == 1
    assert retry.branch_completed


def test_wrong_vector_count_is_an_error(store, processed_branch):
    orchestrator = EmbeddingOrchestrator(
        store, lambda texts: np.zeros((1, 768), dtype="float32"), "test-model", batch_size=3
    )
    with pytest.raises(EmbedderError):
        orchestrator.embed_branch(processed_branch.id)


def test_placeholder_vectors_on_failure(store, metadata, processed_branch):
    def broken(texts):
        raise EmbedderError("connection refused")

    orchestrator = EmbeddingOrchestrator(
        store, broken, "test-model", dimension=16, placeholder_on_failure=True
    )
    stats = orchestrator.embed_branch(processed_branch.id)

    assert stats.placeholder_batches == 1
    assert stats.branch_completed
    row = store.get("SELECT model_version, embedding FROM file_chunk LIMIT 1")
    assert row["model_version"] == PLACEHOLDER_MODEL
    assert blob_to_vector(row["embedding"]).shape == (16,)


def test_no_embedder_without_placeholders_raises(store, processed_branch):
    orchestrator = EmbeddingOrchestrator(store, None, "none")
    with pytest.raises(EmbedderError):
        orchestrator.embed_texts(["hello"])


def test_stop_request_ends_between_batches(store, metadata, processed_branch, dummy_embed_fn):
    orchestrator = EmbeddingOrchestrator(store, dummy_embed_fn, "test-model", batch_size=1)
    stats = orchestrator.embed_branch(
        processed_branch.id, should_stop=lambda: len(dummy_embed_fn.calls) >= 1
    )
    assert stats.stopped
    assert stats.chunks_embedded == 1
    assert not stats.branch_completed


def test_pending_branch_is_not_completed(store, metadata, fake_vcs, dummy_embed_fn):
    repo = metadata.ensure_repository("loc", "name", "/wc")
    branch = metadata.create_branch(repo.id, "main", "c1")
    orchestrator = EmbeddingOrchestrator(store, dummy_embed_fn, "test-model")

    stats = orchestrator.embed_branch(branch.id)

    assert not stats.branch_completed
    assert metadata.get_branch_by_id(branch.id).status is BranchStatus.PENDING
