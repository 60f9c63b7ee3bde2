# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""
Repository indexing pipeline for the code context MCP server.

A query walks a repository branch through clone/fetch, file sync, chunking and
embedding, then ranks the branch's chunks against the query. Work is only
redone when the branch head moved or an earlier run did not finish.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from time import perf_counter
from typing import Any

from .analysis.chunking import ChunkSettings, count_tokens
from .config import Config, get_config
from .embeddings import EmbeddingFn, build_embed_fn_from_config
from .errors import CodeContextError, ConsistencyError, EmbedderError, InputValidationError
from .ingest import ChunkingStage
from .orchestrator import EmbeddingOrchestrator
from .progress import ProgressFn, ProgressTracker
from .retrieval import RetrievalEngine
from .schema import Branch, Repository
from .state import BranchStatus, StateTracker
from .storage.db import Store
from .storage.metadata import MetadataStore
from .sync import Synchronizer
from .vcs import GitClient, normalize_location, repository_name, working_copy_dir

logger = logging.getLogger(__name__)

# request keys accepted from MCP clients, camelCase first
_REQUEST_KEYS = {
    "repo_url": ("repoUrl", "repo_url"),
    "branch": ("branch",),
    "semantic_search": ("semanticSearch", "semantic_search"),
    "keywords_search": ("keywordsSearch", "keywords_search"),
    "file_patterns": ("filePatterns", "file_patterns"),
    "exclude_patterns": ("excludePatterns", "exclude_patterns"),
    "limit": ("limit",),
}


def _string_list(name: str, value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str) or not isinstance(value, Sequence):
        raise InputValidationError(f"{name} must be a list of strings")
    if not all(isinstance(item, str) for item in value):
        raise InputValidationError(f"{name} must contain only strings")
    return list(value)


@dataclass
class QueryRequest:
    """Parameters of one ``query_repo`` call."""

    repo_url: str
    semantic_search: str | None = None
    keywords_search: list[str] = field(default_factory=list)
    file_patterns: list[str] = field(default_factory=list)
    exclude_patterns: list[str] = field(default_factory=list)
    branch: str | None = None
    limit: int | None = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "QueryRequest":
        if not isinstance(data, Mapping):
            raise InputValidationError("Request must be an object")
        values: dict[str, Any] = {}
        for attr, keys in _REQUEST_KEYS.items():
            for key in keys:
                if key in data:
                    values[attr] = data[key]
                    break
        if "repo_url" not in values:
            raise InputValidationError("repoUrl is required")
        return cls(**values)

    def validate(self) -> None:
        """Check types and required fields, normalizing list fields in place.

        Raises:
            InputValidationError: on the first invalid field.
        """
        if not isinstance(self.repo_url, str) or not self.repo_url.strip():
            raise InputValidationError("repoUrl is required")
        if self.branch is not None and (not isinstance(self.branch, str) or not self.branch.strip()):
            raise InputValidationError("branch must be a non-empty string")
        if self.semantic_search is not None and not isinstance(self.semantic_search, str):
            raise InputValidationError("semanticSearch must be a string")

        self.keywords_search = _string_list("keywordsSearch", self.keywords_search)
        self.file_patterns = _string_list("filePatterns", self.file_patterns)
        self.exclude_patterns = _string_list("excludePatterns", self.exclude_patterns)

        if not (self.semantic_search or "").strip() and not any(
            k.strip() for k in self.keywords_search
        ):
            raise InputValidationError("semanticSearch or keywordsSearch is required")

        if self.limit is not None:
            if isinstance(self.limit, bool) or not isinstance(self.limit, int):
                raise InputValidationError("limit must be an integer")
            if self.limit < 1:
                raise InputValidationError("limit must be at least 1")

    @property
    def query_text(self) -> str:
        """Text embedded as the query; keywords stand in when no semantic text is given."""
        text = (self.semantic_search or "").strip()
        if text:
            return text
        return " ".join(k.strip() for k in self.keywords_search if k.strip())


@dataclass
class BranchState:
    """A checked-out branch and whether its index needs work."""

    repository: Repository
    branch: Branch
    working_copy: Path
    commit: str
    needs_update: bool


class CodeContextIndex:
    """Owns the store and collaborators and runs the query pipeline."""

    def __init__(
        self,
        config: Config | None = None,
        store: Store | None = None,
        vcs: Any | None = None,
        embed_fn: EmbeddingFn | None = None,
        embed_model: str | None = None,
    ):
        """
        Args:
            config: Configuration; the global config when omitted
            store: Store to use instead of opening ``config.db_path``
            vcs: VCS adapter with the ``GitClient`` interface
            embed_fn: Embedding function; built from config when omitted
            embed_model: Model identifier stored alongside vectors
        """
        self.config = config or get_config()
        cfg = self.config

        self.store = store or Store(cfg.db_path, busy_timeout_ms=cfg.busy_timeout_ms)
        self.metadata = MetadataStore(self.store)
        self.state = StateTracker(self.metadata)
        self.vcs = vcs or GitClient(cfg.git_binary, cfg.vcs_timeout)

        if embed_fn is None:
            try:
                embed_fn, built_model = build_embed_fn_from_config(cfg)
            except ValueError as exc:
                if not cfg.embeddings_placeholder_on_failure:
                    raise EmbedderError(str(exc)) from exc
                logger.warning("Embedding provider unavailable (%s); using placeholders", exc)
                embed_fn, built_model = None, None
            embed_model = embed_model or built_model
        self.embed_fn = embed_fn
        self.embed_model = embed_model or "custom"

        provider = cfg.embeddings_provider
        model = cfg.embeddings_model
        chars_per_token = cfg.chars_per_token

        def _count(text: str) -> int:
            return count_tokens(text, model, provider, chars_per_token)

        self.synchronizer = Synchronizer(self.store)
        self.chunker = ChunkingStage(
            self.store,
            self.vcs.read_blob,
            ChunkSettings.from_config(cfg),
            token_counter=_count,
        )
        self.orchestrator = EmbeddingOrchestrator(
            self.store,
            self.embed_fn,
            self.embed_model,
            dimension=cfg.embeddings_dimension,
            batch_size=cfg.embeddings_batch_size,
            placeholder_on_failure=cfg.embeddings_placeholder_on_failure,
        )
        self.retrieval = RetrievalEngine(
            self.store,
            self.orchestrator,
            metric=cfg.search_similarity,
            default_limit=cfg.search_default_limit,
        )

    # -- pipeline stages ----------------------------------------------------

    def ingest_branch(self, repo_url: str, branch: str | None = None) -> BranchState:
        """Bring the working copy up to date and upsert the repository and branch rows."""
        location = normalize_location(repo_url)
        working_copy = working_copy_dir(self.config.repo_cache_dir, location)
        source = location if Path(location).is_absolute() else repo_url.strip()

        self.vcs.ensure_clone(source, working_copy)
        branch_name = branch.strip() if branch else self.vcs.default_branch_name(working_copy)
        self.vcs.checkout(working_copy, branch_name)
        commit = self.vcs.head_commit(working_copy, branch_name)

        with self.store.transaction():
            repository = self.metadata.ensure_repository(
                location, repository_name(location), str(working_copy)
            )
            record = self.metadata.get_branch(repository.id, branch_name)
            if record is None:
                record = self.metadata.create_branch(repository.id, branch_name, commit)
                commit_changed = True
            else:
                commit_changed = record.last_commit_sha != commit
                if commit_changed:
                    logger.info(
                        "Branch %s moved %s -> %s",
                        branch_name,
                        (record.last_commit_sha or "none")[:12],
                        commit[:12],
                    )
                    self.metadata.set_branch_commit(record.id, commit)
                    self.state.reset_branch(record.id)
                    refreshed = self.metadata.get_branch_by_id(record.id)
                    if refreshed is None:
                        raise ConsistencyError(f"Branch {branch_name!r} vanished during update")
                    record = refreshed

        needs_update = commit_changed or record.status is not BranchStatus.EMBEDDINGS_GENERATED
        return BranchState(
            repository=repository,
            branch=record,
            working_copy=working_copy,
            commit=commit,
            needs_update=needs_update,
        )

    def process_files(self, state: BranchState) -> dict[str, int]:
        """Sync the branch's file set with the VCS tree and chunk pending files."""
        listing, _commit = self.vcs.list_files(state.working_copy, state.branch.name)
        sync_result = self.synchronizer.sync(state.repository.id, state.branch.id, listing)
        chunk_stats = self.chunker.process_branch(state.branch.id, state.working_copy)
        self.state.transition_branch(state.branch.id, BranchStatus.FILES_PROCESSED)
        summary = {
            "files_added": len(sync_result.added),
            "files_updated": len(sync_result.updated),
            "files_unchanged": len(sync_result.unchanged),
            "files_removed": len(sync_result.removed),
        }
        summary.update(chunk_stats.as_dict())
        return summary

    def embed_branch(self, branch_id: int, progress: ProgressFn | None = None) -> dict[str, object]:
        return self.orchestrator.embed_branch(branch_id, progress=progress).as_dict()

    # -- operations ---------------------------------------------------------

    def query_repo(
        self,
        request: QueryRequest | Mapping[str, Any],
        progress: ProgressTracker | ProgressFn | None = None,
    ) -> dict[str, Any]:
        """
        Run the full pipeline for one request.

        Never raises: failures come back as ``{"error": {"message": ...}}``.
        """
        started = perf_counter()
        tracker = progress if isinstance(progress, ProgressTracker) else ProgressTracker(sink=progress)
        try:
            req = request if isinstance(request, QueryRequest) else QueryRequest.from_mapping(request)
            req.validate()
            tracker.report(0.05)

            state = self.ingest_branch(req.repo_url, req.branch)
            tracker.report(0.25)

            if state.needs_update:
                summary = self.process_files(state)
                logger.info("Processed %s@%s: %s", state.repository.name, state.branch.name, summary)
                tracker.report(0.5)
                if self.config.embed_on_sync:
                    self.embed_branch(state.branch.id, progress=tracker.scaled(0.5, 0.75))
            tracker.report(0.75)

            results = self.retrieval.search(
                state.branch.id,
                req.query_text,
                limit=req.limit,
                include=req.file_patterns,
                exclude=req.exclude_patterns,
                keywords=req.keywords_search,
                progress=tracker.scaled(0.75, 0.9),
            )
            tracker.report(0.9)

            elapsed_ms = int((perf_counter() - started) * 1000)
            logger.info(
                "query_repo %s@%s returned %d results in %dms",
                state.repository.name,
                state.branch.name,
                len(results),
                elapsed_ms,
            )
            payload = {
                "output": {
                    "success": True,
                    "repoUrl": req.repo_url,
                    "branch": state.branch.name,
                    "semanticSearch": req.semantic_search,
                    "keywordsSearch": req.keywords_search,
                    "filePatterns": req.file_patterns,
                    "excludePatterns": req.exclude_patterns,
                    "limit": req.limit or self.retrieval.default_limit,
                    "processingTimeMs": elapsed_ms,
                    "results": [r.to_payload() for r in results],
                }
            }
            tracker.report(1.0)
            return payload
        except CodeContextError as exc:
            logger.error("query_repo failed: %s", exc)
            return {"error": {"message": str(exc)}}
        except Exception as exc:
            logger.exception("query_repo failed unexpectedly: %s", exc)
            return {"error": {"message": f"Unexpected error: {exc}"}}

    def _find_branch(self, repo_url: str, branch: str) -> tuple[Repository, Branch]:
        location = normalize_location(repo_url)
        repository = self.metadata.get_repository(location)
        if repository is None:
            raise ConsistencyError(f"Repository not indexed: {location}")
        record = self.metadata.get_branch(repository.id, branch)
        if record is None:
            raise ConsistencyError(f"Branch {branch!r} not indexed for {location}")
        return repository, record

    def embed_branch_op(self, repo_url: str, branch: str) -> dict[str, object]:
        """Embed the missing chunks of an already indexed branch."""
        repository, record = self._find_branch(repo_url, branch)
        stats = self.embed_branch(record.id)
        return {"repository": repository.path, "branch": record.name, **stats}

    def list_branches(self) -> list[dict[str, object]]:
        repos = {r.id: r for r in self.metadata.list_repositories()}
        out: list[dict[str, object]] = []
        for record in self.metadata.list_branches():
            repository = repos.get(record.repository_id)
            out.append(
                {
                    "repository": repository.path if repository else None,
                    "branch": record.name,
                    "status": record.status.value,
                    "last_commit_sha": record.last_commit_sha,
                    "files": self.metadata.branch_status_counts(record.id),
                    "chunks": self.metadata.count_chunks(record.id),
                    "chunks_missing_vectors": self.metadata.count_chunks(
                        record.id, missing_vectors=True
                    ),
                }
            )
        return out

    def get_index_stats(self, repo_url: str | None = None) -> dict[str, object]:
        """Get statistics about the index."""
        if not repo_url:
            stats: dict[str, object] = dict(self.metadata.table_counts())
            stats["embed_model"] = self.embed_model
            return stats

        location = normalize_location(repo_url)
        repository = self.metadata.get_repository(location)
        if repository is None:
            return {"error": "Repository not found", "repository": location}
        counts = self.metadata.table_counts(repository.id)
        return {
            "repository": repository.path,
            "name": repository.name,
            "branches": counts["branches"],
            "files": counts["files"],
            "chunks": counts["chunks"],
            "embedded": counts["embedded"],
        }

    def close(self) -> None:
        self.store.close()
