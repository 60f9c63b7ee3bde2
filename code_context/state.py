# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""
Lifecycle state machines for branches and files.

Branch: pending -> files_processed -> embeddings_generated
File:   pending -> fetched -> ingested -> done   (ignored files: pending -> done)

Either entity may be reset to ``pending`` from any state when its content
changes (new commit for a branch, new blob sha for a file).
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import TYPE_CHECKING

from .errors import ConsistencyError, InvalidTransitionError

if TYPE_CHECKING:
    from .storage.metadata import MetadataStore

logger = logging.getLogger(__name__)


class BranchStatus(str, Enum):
    PENDING = "pending"
    FILES_PROCESSED = "files_processed"
    EMBEDDINGS_GENERATED = "embeddings_generated"


class FileStatus(str, Enum):
    PENDING = "pending"
    FETCHED = "fetched"
    INGESTED = "ingested"
    DONE = "done"


BRANCH_TRANSITIONS: dict[BranchStatus, frozenset[BranchStatus]] = {
    BranchStatus.PENDING: frozenset({BranchStatus.FILES_PROCESSED}),
    BranchStatus.FILES_PROCESSED: frozenset(
        {BranchStatus.PENDING, BranchStatus.EMBEDDINGS_GENERATED}
    ),
    BranchStatus.EMBEDDINGS_GENERATED: frozenset({BranchStatus.PENDING}),
}

FILE_TRANSITIONS: dict[FileStatus, frozenset[FileStatus]] = {
    FileStatus.PENDING: frozenset({FileStatus.FETCHED, FileStatus.DONE}),
    FileStatus.FETCHED: frozenset({FileStatus.PENDING, FileStatus.INGESTED}),
    FileStatus.INGESTED: frozenset({FileStatus.PENDING, FileStatus.DONE}),
    FileStatus.DONE: frozenset({FileStatus.PENDING}),
}

# Statuses that satisfy the branch completion check
FILE_TERMINAL = frozenset({FileStatus.INGESTED, FileStatus.DONE})


def can_transition_branch(current: BranchStatus, target: BranchStatus) -> bool:
    return current == target or target in BRANCH_TRANSITIONS[current]


def can_transition_file(current: FileStatus, target: FileStatus) -> bool:
    return current == target or target in FILE_TRANSITIONS[current]


def check_branch_transition(current: BranchStatus, target: BranchStatus) -> bool:
    """Validate a branch transition; return False for a self-transition no-op."""
    if not can_transition_branch(current, target):
        raise InvalidTransitionError("branch", current.value, target.value)
    return current != target


def check_file_transition(current: FileStatus, target: FileStatus) -> bool:
    """Validate a file transition; return False for a self-transition no-op."""
    if not can_transition_file(current, target):
        raise InvalidTransitionError("file", current.value, target.value)
    return current != target


class StateTracker:
    """Reads current statuses from the store and applies validated transitions."""

    def __init__(self, metadata: "MetadataStore"):
        self.metadata = metadata

    def transition_branch(self, branch_id: int, target: BranchStatus) -> bool:
        branch = self.metadata.get_branch_by_id(branch_id)
        if branch is None:
            raise ConsistencyError(f"Branch {branch_id} not found")
        if not check_branch_transition(branch.status, target):
            return False
        self.metadata.set_branch_status(branch_id, target)
        logger.debug(
            "Branch %s (%s): %s -> %s",
            branch.name,
            branch_id,
            branch.status.value,
            target.value,
        )
        return True

    def transition_file(self, file_id: int, target: FileStatus) -> bool:
        record = self.metadata.get_file(file_id)
        if record is None:
            raise ConsistencyError(f"File {file_id} not found")
        if not check_file_transition(record.status, target):
            return False
        self.metadata.set_file_status(file_id, target)
        return True

    def reset_branch(self, branch_id: int) -> bool:
        return self.transition_branch(branch_id, BranchStatus.PENDING)

    def reset_file(self, file_id: int) -> bool:
        return self.transition_file(file_id, FileStatus.PENDING)
