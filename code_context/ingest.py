# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""Chunk the pending files of a branch and persist the chunks."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from .analysis.chunking import ChunkSettings, chunk_document, count_tokens
from .analysis.languages import ChunkStrategy, classify_path
from .errors import CodeContextError
from .schema import ChunkDraft, FileRecord
from .state import FileStatus, StateTracker
from .storage.db import Store
from .storage.metadata import MetadataStore

logger = logging.getLogger(__name__)

BlobReader = Callable[[Path, str], bytes]
TokenCounter = Callable[[str], int]


@dataclass
class ChunkingStats:
    processed: int = 0
    ignored: int = 0
    failed: int = 0
    chunks: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "files_processed": self.processed,
            "files_ignored": self.ignored,
            "files_failed": self.failed,
            "chunks_created": self.chunks,
        }


class ChunkingStage:
    """
    Turns pending files into chunks.

    Each file is handled in its own transaction; a file that cannot be read or
    stored is logged and left pending so a later run retries it.
    """

    def __init__(
        self,
        store: Store,
        read_blob: BlobReader,
        settings: ChunkSettings | None = None,
        token_counter: TokenCounter | None = None,
    ):
        self.store = store
        self.metadata = MetadataStore(store)
        self.state = StateTracker(self.metadata)
        self.read_blob = read_blob
        self.settings = settings or ChunkSettings()
        self.token_counter = token_counter or count_tokens

    def process_branch(self, branch_id: int, working_copy: Path) -> ChunkingStats:
        stats = ChunkingStats()
        pending = self.metadata.list_branch_files(branch_id, FileStatus.PENDING)
        for record in pending:
            try:
                self._process_file(record, working_copy, stats)
            except (CodeContextError, OSError) as exc:
                stats.failed += 1
                logger.warning("Skipping %s (file %s): %s", record.path, record.id, exc)

        logger.info(
            "Chunked branch %s: %d files, %d ignored, %d failed, %d chunks",
            branch_id,
            stats.processed,
            stats.ignored,
            stats.failed,
            stats.chunks,
        )
        return stats

    def _process_file(self, record: FileRecord, working_copy: Path, stats: ChunkingStats) -> None:
        if classify_path(record.path).strategy is ChunkStrategy.IGNORE:
            with self.store.transaction():
                self.metadata.delete_chunks(record.id)
                self.state.transition_file(record.id, FileStatus.DONE)
            stats.ignored += 1
            return

        data = self.read_blob(working_copy, record.sha)
        chunks = chunk_document(record.path, data, self.settings)
        drafts = [
            ChunkDraft(
                chunk_number=chunk.chunk_number,
                content=chunk.content,
                token_count=self.token_counter(chunk.content),
            )
            for chunk in chunks
        ]

        with self.store.transaction():
            self.metadata.replace_chunks(record.id, drafts)
            self.state.transition_file(record.id, FileStatus.FETCHED)
            if not drafts:
                # nothing to embed
                self.state.transition_file(record.id, FileStatus.INGESTED)

        stats.processed += 1
        stats.chunks += len(drafts)
