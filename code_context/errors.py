# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""Exception hierarchy shared by the indexing pipeline."""

from __future__ import annotations


class CodeContextError(Exception):
    """Base class for all errors raised by code_context."""


class InputValidationError(CodeContextError):
    """A request parameter is missing or cannot be parsed."""


class CollaboratorError(CodeContextError):
    """An external collaborator (git, embedder, database) failed."""


class VCSError(CollaboratorError):
    """A git command failed or timed out."""


class EmbedderError(CollaboratorError):
    """The embedding service failed or returned an unusable response."""


class StoreError(CollaboratorError):
    """The SQLite store rejected an operation."""


class ConsistencyError(CodeContextError):
    """Persisted state does not match what the caller expected."""


class InvalidTransitionError(ConsistencyError):
    """A lifecycle status change is not allowed by the state machine."""

    def __init__(self, entity: str, current: str, target: str):
        super().__init__(f"Invalid {entity} transition: {current} -> {target}")
        self.entity = entity
        self.current = current
        self.target = target
