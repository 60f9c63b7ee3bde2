# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""Typed records returned by the metadata store."""

from __future__ import annotations

from dataclasses import dataclass, field

from .state import BranchStatus, FileStatus


@dataclass
class Repository:
    id: int
    path: str
    name: str
    local_path: str


@dataclass
class Branch:
    id: int
    repository_id: int
    name: str
    last_commit_sha: str | None
    status: BranchStatus


@dataclass
class FileRecord:
    id: int
    repository_id: int
    path: str
    sha: str
    status: FileStatus


@dataclass
class ListedFile:
    """One entry of a VCS tree listing."""

    path: str
    sha: str


@dataclass
class FileRef:
    """A file that needs (re-)chunking after a sync."""

    id: int
    path: str
    sha: str


@dataclass
class ChunkDraft:
    """A chunk produced by the chunker, not yet persisted."""

    chunk_number: int
    content: str
    token_count: int | None = None


@dataclass
class PendingChunk:
    """A persisted chunk that still lacks a vector."""

    id: int
    file_id: int
    content: str


@dataclass
class EmbeddedChunk:
    id: int
    file_path: str
    chunk_number: int
    content: str
    embedding: bytes


@dataclass
class SearchResult:
    """Represents a ranked retrieval hit."""

    file_path: str
    chunk_number: int
    content: str
    similarity: float

    def to_payload(self) -> dict[str, object]:
        return {
            "filePath": self.file_path,
            "chunkNumber": self.chunk_number,
            "content": self.content,
            "similarity": self.similarity,
        }


@dataclass
class SyncResult:
    """Partition of a branch listing against its persisted file set."""

    added: list[FileRef] = field(default_factory=list)
    updated: list[FileRef] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)

    @property
    def to_process(self) -> list[FileRef]:
        return [*self.added, *self.updated]

    @property
    def changed(self) -> bool:
        return bool(self.added or self.updated or self.removed)
