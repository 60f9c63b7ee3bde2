# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""
Incremental synchronization of a branch's file set.

A sync compares the VCS listing of a branch against the files currently
associated with it and applies the difference in a single transaction:

* new path: insert a pending file record, or reuse the record another branch
  already created for the same (path, sha), and associate it;
* same path, different sha: point the branch at the new content and reset the
  file to pending, dropping its stale chunks;
* same path and sha: nothing;
* path gone: drop the association and delete the file and its chunks once no
  branch references it.

Renames show up as a removal plus an addition.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from .schema import FileRecord, FileRef, ListedFile, SyncResult
from .state import FileStatus, StateTracker
from .storage.db import Store
from .storage.metadata import MetadataStore

logger = logging.getLogger(__name__)


class Synchronizer:
    def __init__(self, store: Store):
        self.store = store
        self.metadata = MetadataStore(store)
        self.state = StateTracker(self.metadata)

    def sync(
        self, repository_id: int, branch_id: int, listing: Iterable[ListedFile]
    ) -> SyncResult:
        """Apply the listing to the branch and return the partition."""
        result = SyncResult()
        with self.store.transaction():
            previous: dict[str, FileRecord] = {
                record.path: record for record in self.metadata.list_branch_files(branch_id)
            }
            seen: set[str] = set()

            for entry in listing:
                if entry.path in seen:
                    logger.debug("Duplicate path %s in listing; ignoring", entry.path)
                    continue
                seen.add(entry.path)

                existing = previous.pop(entry.path, None)
                if existing is None:
                    record = self._add(repository_id, branch_id, entry)
                    result.added.append(FileRef(record.id, record.path, record.sha))
                elif existing.sha == entry.sha:
                    result.unchanged.append(entry.path)
                else:
                    record = self._update(repository_id, branch_id, existing, entry.sha)
                    result.updated.append(FileRef(record.id, record.path, record.sha))

            for path, record in previous.items():
                self._remove(branch_id, record)
                result.removed.append(path)

        logger.info(
            "Synced branch %s: %d added, %d updated, %d unchanged, %d removed",
            branch_id,
            len(result.added),
            len(result.updated),
            len(result.unchanged),
            len(result.removed),
        )
        return result

    def _add(self, repository_id: int, branch_id: int, entry: ListedFile) -> FileRecord:
        record = self.metadata.find_file(repository_id, entry.path, entry.sha)
        if record is None:
            record = self.metadata.insert_file(repository_id, entry.path, entry.sha)
        self.metadata.associate(branch_id, record.id)
        return record

    def _update(
        self, repository_id: int, branch_id: int, existing: FileRecord, sha: str
    ) -> FileRecord:
        shared = self.metadata.association_count(existing.id, excluding_branch=branch_id) > 0
        target = self.metadata.find_file(repository_id, existing.path, sha)
        if not shared and target is None:
            # sole owner: rewrite the record in place
            self.metadata.delete_chunks(existing.id)
            self.metadata.update_file_sha(existing.id, sha)
            self.state.reset_file(existing.id)
            return FileRecord(
                id=existing.id,
                repository_id=repository_id,
                path=existing.path,
                sha=sha,
                status=FileStatus.PENDING,
            )

        # other branches still need the old content, or the new content is
        # already known: move this branch's association instead of mutating
        self._remove(branch_id, existing)
        if target is None:
            target = self.metadata.insert_file(repository_id, existing.path, sha)
        self.metadata.associate(branch_id, target.id)
        return target

    def _remove(self, branch_id: int, record: FileRecord) -> None:
        self.metadata.dissociate(branch_id, record.id)
        if self.metadata.association_count(record.id) == 0:
            self.metadata.delete_file(record.id)
            logger.debug("Deleted orphaned file %s (%s)", record.path, record.id)
