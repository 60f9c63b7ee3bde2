# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""Typed accessors over the relational schema.

Rows are turned into the records in :mod:`code_context.schema` here, so the
rest of the pipeline never sees raw SQL rows.
"""

from __future__ import annotations

import logging
import posixpath
import sqlite3
from collections.abc import Sequence

from ..errors import StoreError
from ..schema import (
    Branch,
    ChunkDraft,
    EmbeddedChunk,
    FileRecord,
    PendingChunk,
    Repository,
)
from ..state import BranchStatus, FileStatus
from .db import Store

logger = logging.getLogger(__name__)


def _branch(row: sqlite3.Row) -> Branch:
    return Branch(
        id=row["id"],
        repository_id=row["repository_id"],
        name=row["name"],
        last_commit_sha=row["last_commit_sha"],
        status=BranchStatus(row["status"]),
    )


def _file(row: sqlite3.Row) -> FileRecord:
    return FileRecord(
        id=row["id"],
        repository_id=row["repository_id"],
        path=row["path"],
        sha=row["sha"],
        status=FileStatus(row["status"]),
    )


class MetadataStore:
    def __init__(self, db: Store):
        self.db = db

    # -- repositories -------------------------------------------------------

    def get_repository(self, location: str) -> Repository | None:
        row = self.db.get("SELECT * FROM repository WHERE path = ?", (location,))
        if row is None:
            return None
        return Repository(
            id=row["id"], path=row["path"], name=row["name"], local_path=row["local_path"]
        )

    def ensure_repository(self, location: str, name: str, local_path: str) -> Repository:
        """Ensure a repository row exists and return it."""
        self.db.run(
            "INSERT OR IGNORE INTO repository (path, name, local_path) VALUES (?, ?, ?)",
            (location, name, local_path),
        )
        self.db.run(
            "UPDATE repository SET local_path = ? WHERE path = ? AND local_path != ?",
            (local_path, location, local_path),
        )
        repo = self.get_repository(location)
        if repo is None:
            raise StoreError(f"Repository row for {location} was not written")
        return repo

    def list_repositories(self) -> list[Repository]:
        rows = self.db.all("SELECT * FROM repository ORDER BY id")
        return [
            Repository(id=r["id"], path=r["path"], name=r["name"], local_path=r["local_path"])
            for r in rows
        ]

    # -- branches -----------------------------------------------------------

    def get_branch(self, repository_id: int, name: str) -> Branch | None:
        row = self.db.get(
            "SELECT * FROM branch WHERE repository_id = ? AND name = ?",
            (repository_id, name),
        )
        return _branch(row) if row else None

    def get_branch_by_id(self, branch_id: int) -> Branch | None:
        row = self.db.get("SELECT * FROM branch WHERE id = ?", (branch_id,))
        return _branch(row) if row else None

    def create_branch(self, repository_id: int, name: str, commit: str | None) -> Branch:
        self.db.run(
            "INSERT OR IGNORE INTO branch (name, repository_id, last_commit_sha, status) "
            "VALUES (?, ?, ?, ?)",
            (name, repository_id, commit, BranchStatus.PENDING.value),
        )
        branch = self.get_branch(repository_id, name)
        if branch is None:
            raise StoreError(f"Branch row {name!r} was not written")
        return branch

    def list_branches(self, repository_id: int | None = None) -> list[Branch]:
        if repository_id is None:
            rows = self.db.all("SELECT * FROM branch ORDER BY id")
        else:
            rows = self.db.all(
                "SELECT * FROM branch WHERE repository_id = ? ORDER BY id", (repository_id,)
            )
        return [_branch(r) for r in rows]

    def set_branch_commit(self, branch_id: int, commit: str) -> None:
        self.db.run(
            "UPDATE branch SET last_commit_sha = ?, updated_at = CURRENT_TIMESTAMP "
            "WHERE id = ?",
            (commit, branch_id),
        )

    def set_branch_status(self, branch_id: int, status: BranchStatus) -> None:
        self.db.run(
            "UPDATE branch SET status = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
            (status.value, branch_id),
        )

    # -- files --------------------------------------------------------------

    def get_file(self, file_id: int) -> FileRecord | None:
        row = self.db.get("SELECT * FROM file WHERE id = ?", (file_id,))
        return _file(row) if row else None

    def find_file(self, repository_id: int, path: str, sha: str) -> FileRecord | None:
        row = self.db.get(
            "SELECT * FROM file WHERE repository_id = ? AND path = ? AND sha = ?",
            (repository_id, path, sha),
        )
        return _file(row) if row else None

    def insert_file(self, repository_id: int, path: str, sha: str) -> FileRecord:
        result = self.db.run(
            "INSERT INTO file (repository_id, path, sha, name, status) VALUES (?, ?, ?, ?, ?)",
            (repository_id, path, sha, posixpath.basename(path), FileStatus.PENDING.value),
        )
        return FileRecord(
            id=int(result.lastrowid or 0),
            repository_id=repository_id,
            path=path,
            sha=sha,
            status=FileStatus.PENDING,
        )

    def update_file_sha(self, file_id: int, sha: str) -> None:
        self.db.run(
            "UPDATE file SET sha = ? WHERE id = ?",
            (sha, file_id),
        )

    def set_file_status(self, file_id: int, status: FileStatus) -> None:
        self.db.run("UPDATE file SET status = ? WHERE id = ?", (status.value, file_id))

    def list_branch_files(
        self, branch_id: int, status: FileStatus | None = None
    ) -> list[FileRecord]:
        sql = (
            "SELECT f.* FROM file f "
            "JOIN branch_file_association bfa ON bfa.file_id = f.id "
            "WHERE bfa.branch_id = ?"
        )
        params: list[object] = [branch_id]
        if status is not None:
            sql += " AND f.status = ?"
            params.append(status.value)
        return [_file(r) for r in self.db.all(sql + " ORDER BY f.path", params)]

    def associate(self, branch_id: int, file_id: int) -> None:
        self.db.run(
            "INSERT OR IGNORE INTO branch_file_association (branch_id, file_id) VALUES (?, ?)",
            (branch_id, file_id),
        )

    def dissociate(self, branch_id: int, file_id: int) -> None:
        self.db.run(
            "DELETE FROM branch_file_association WHERE branch_id = ? AND file_id = ?",
            (branch_id, file_id),
        )

    def association_count(self, file_id: int, *, excluding_branch: int | None = None) -> int:
        if excluding_branch is None:
            row = self.db.get(
                "SELECT COUNT(*) AS n FROM branch_file_association WHERE file_id = ?",
                (file_id,),
            )
        else:
            row = self.db.get(
                "SELECT COUNT(*) AS n FROM branch_file_association "
                "WHERE file_id = ? AND branch_id != ?",
                (file_id, excluding_branch),
            )
        return int(row["n"]) if row else 0

    def delete_file(self, file_id: int) -> None:
        """Delete a file and its chunks."""
        self.delete_chunks(file_id)
        self.db.run("DELETE FROM file WHERE id = ?", (file_id,))

    # -- chunks -------------------------------------------------------------

    def delete_chunks(self, file_id: int) -> int:
        return self.db.run("DELETE FROM file_chunk WHERE file_id = ?", (file_id,)).rowcount

    def replace_chunks(self, file_id: int, chunks: Sequence[ChunkDraft]) -> None:
        """Drop existing chunks of a file and insert the new ones."""
        self.delete_chunks(file_id)
        if not chunks:
            return
        self.db.run_many(
            "INSERT INTO file_chunk (file_id, content, chunk_number, token_count) "
            "VALUES (?, ?, ?, ?)",
            [(file_id, c.content, c.chunk_number, c.token_count) for c in chunks],
        )

    def chunk_count(self, file_id: int) -> int:
        row = self.db.get("SELECT COUNT(*) AS n FROM file_chunk WHERE file_id = ?", (file_id,))
        return int(row["n"]) if row else 0

    def chunks_missing_vectors(self, branch_id: int) -> list[PendingChunk]:
        rows = self.db.all(
            "SELECT fc.id, fc.file_id, fc.content FROM file_chunk fc "
            "JOIN branch_file_association bfa ON bfa.file_id = fc.file_id "
            "WHERE bfa.branch_id = ? AND fc.embedding IS NULL "
            "ORDER BY fc.file_id, fc.chunk_number",
            (branch_id,),
        )
        return [PendingChunk(id=r["id"], file_id=r["file_id"], content=r["content"]) for r in rows]

    def count_chunks(self, branch_id: int, *, missing_vectors: bool = False) -> int:
        sql = (
            "SELECT COUNT(*) AS n FROM file_chunk fc "
            "JOIN branch_file_association bfa ON bfa.file_id = fc.file_id "
            "WHERE bfa.branch_id = ?"
        )
        if missing_vectors:
            sql += " AND fc.embedding IS NULL"
        row = self.db.get(sql, (branch_id,))
        return int(row["n"]) if row else 0

    def store_vector(self, chunk_id: int, vector: bytes, model: str) -> None:
        self.db.run(
            "UPDATE file_chunk SET embedding = ?, model_version = ? WHERE id = ?",
            (vector, model, chunk_id),
        )

    def embedded_chunks(self, branch_id: int) -> list[EmbeddedChunk]:
        rows = self.db.all(
            "SELECT fc.id, f.path, fc.chunk_number, fc.content, fc.embedding "
            "FROM file_chunk fc "
            "JOIN file f ON f.id = fc.file_id "
            "JOIN branch_file_association bfa ON bfa.file_id = f.id "
            "WHERE bfa.branch_id = ? AND fc.embedding IS NOT NULL "
            "ORDER BY f.path, fc.chunk_number",
            (branch_id,),
        )
        return [
            EmbeddedChunk(
                id=r["id"],
                file_path=r["path"],
                chunk_number=r["chunk_number"],
                content=r["content"],
                embedding=r["embedding"],
            )
            for r in rows
        ]

    def files_ready_for_ingest(self, branch_id: int) -> list[int]:
        """Fetched files of a branch whose chunks all carry a vector."""
        rows = self.db.all(
            "SELECT f.id FROM file f "
            "JOIN branch_file_association bfa ON bfa.file_id = f.id "
            "WHERE bfa.branch_id = ? AND f.status = ? "
            "AND NOT EXISTS (SELECT 1 FROM file_chunk fc "
            "                WHERE fc.file_id = f.id AND fc.embedding IS NULL)",
            (branch_id, FileStatus.FETCHED.value),
        )
        return [int(r["id"]) for r in rows]

    def branch_status_counts(self, branch_id: int) -> dict[str, int]:
        rows = self.db.all(
            "SELECT f.status AS status, COUNT(*) AS n FROM file f "
            "JOIN branch_file_association bfa ON bfa.file_id = f.id "
            "WHERE bfa.branch_id = ? GROUP BY f.status",
            (branch_id,),
        )
        return {r["status"]: int(r["n"]) for r in rows}

    def table_counts(self, repository_id: int | None = None) -> dict[str, int]:
        """Row counts across the index, optionally scoped to one repository."""
        if repository_id is None:
            row = self.db.get(
                "SELECT "
                "(SELECT COUNT(*) FROM repository) AS repositories, "
                "(SELECT COUNT(*) FROM branch) AS branches, "
                "(SELECT COUNT(*) FROM file) AS files, "
                "(SELECT COUNT(*) FROM file_chunk) AS chunks, "
                "(SELECT COUNT(*) FROM file_chunk WHERE embedding IS NOT NULL) AS embedded"
            )
        else:
            row = self.db.get(
                "SELECT "
                "1 AS repositories, "
                "(SELECT COUNT(*) FROM branch WHERE repository_id = :r) AS branches, "
                "(SELECT COUNT(*) FROM file WHERE repository_id = :r) AS files, "
                "(SELECT COUNT(*) FROM file_chunk fc JOIN file f ON f.id = fc.file_id "
                " WHERE f.repository_id = :r) AS chunks, "
                "(SELECT COUNT(*) FROM file_chunk fc JOIN file f ON f.id = fc.file_id "
                " WHERE f.repository_id = :r AND fc.embedding IS NOT NULL) AS embedded",
                {"r": repository_id},
            )
        if row is None:
            raise StoreError("Count query returned no row")
        return {key: int(row[key]) for key in row.keys()}

    def close(self) -> None:
        self.db.close()
