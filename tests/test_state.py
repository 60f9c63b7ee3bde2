# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

import pytest

from code_context.errors import ConsistencyError, InvalidTransitionError
from code_context.state import (
    BranchStatus,
    FileStatus,
    StateTracker,
    can_transition_branch,
    can_transition_file,
    check_branch_transition,
)


@pytest.mark.parametrize(
    "current,target,allowed",
    [
        (BranchStatus.PENDING, BranchStatus.FILES_PROCESSED, True),
        (BranchStatus.PENDING, BranchStatus.EMBEDDINGS_GENERATED, False),
        (BranchStatus.FILES_PROCESSED, BranchStatus.EMBEDDINGS_GENERATED, True),
        (BranchStatus.FILES_PROCESSED, BranchStatus.PENDING, True),
        (BranchStatus.EMBEDDINGS_GENERATED, BranchStatus.PENDING, True),
        (BranchStatus.EMBEDDINGS_GENERATED, BranchStatus.FILES_PROCESSED, False),
    ],
)
def test_branch_transitions(current, target, allowed):
    assert can_transition_branch(current, target) is allowed


@pytest.mark.parametrize(
    "current,target,allowed",
    [
        (FileStatus.PENDING, FileStatus.FETCHED, True),
        (FileStatus.PENDING, FileStatus.DONE, True),
        (FileStatus.PENDING, FileStatus.INGESTED, False),
        (FileStatus.FETCHED, FileStatus.INGESTED, True),
        (FileStatus.FETCHED, FileStatus.DONE, False),
        (FileStatus.INGESTED, FileStatus.DONE, True),
        (FileStatus.DONE, FileStatus.PENDING, True),
        (FileStatus.DONE, FileStatus.FETCHED, False),
    ],
)
def test_file_transitions(current, target, allowed):
    assert can_transition_file(current, target) is allowed


def test_self_transition_is_noop():
    assert check_branch_transition(BranchStatus.PENDING, BranchStatus.PENDING) is False


def test_invalid_transition_raises():
    with pytest.raises(InvalidTransitionError) as exc_info:
        check_branch_transition(BranchStatus.PENDING, BranchStatus.EMBEDDINGS_GENERATED)
    assert exc_info.value.entity == "branch"
    assert exc_info.value.current == "pending"


def test_tracker_applies_and_rejects(metadata):
    repo = metadata.ensure_repository("https://example.com/a/b", "b", "/tmp/b")
    branch = metadata.create_branch(repo.id, "main", "c1")
    tracker = StateTracker(metadata)

    assert tracker.transition_branch(branch.id, BranchStatus.FILES_PROCESSED) is True
    assert metadata.get_branch_by_id(branch.id).status is BranchStatus.FILES_PROCESSED
    assert tracker.transition_branch(branch.id, BranchStatus.FILES_PROCESSED) is False

    tracker.transition_branch(branch.id, BranchStatus.EMBEDDINGS_GENERATED)
    with pytest.raises(InvalidTransitionError):
        tracker.transition_branch(branch.id, BranchStatus.FILES_PROCESSED)
    assert metadata.get_branch_by_id(branch.id).status is BranchStatus.EMBEDDINGS_GENERATED

    assert tracker.reset_branch(branch.id) is True
    assert metadata.get_branch_by_id(branch.id).status is BranchStatus.PENDING


def test_tracker_missing_entities(metadata):
    tracker = StateTracker(metadata)
    with pytest.raises(ConsistencyError):
        tracker.transition_branch(999, BranchStatus.PENDING)
    with pytest.raises(ConsistencyError):
        tracker.transition_file(999, FileStatus.DONE)
