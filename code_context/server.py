# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""
MCP server exposing repository search as the ``query_repo`` tool.

The pipeline is blocking (git, SQLite, HTTP embedding calls) and runs in a
worker thread; a heartbeat task on the event loop keeps re-sending the last
progress value so clients do not time out during long clones or embeddings.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import sys
import threading
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from fastmcp import Context, FastMCP

from .config import get_config
from .indexer import CodeContextIndex, QueryRequest
from .progress import ProgressTracker, run_heartbeat

logger = logging.getLogger(__name__)

_config = get_config()

_INDEX: CodeContextIndex | None = None
_INDEX_LOCK = threading.Lock()

mcp = FastMCP(
    name=_config.server_name,
    instructions=(
        "Semantic code search over git repositories. Call query_repo with a "
        "repository URL and a natural language query; the repository is cloned, "
        "chunked and embedded on first use and kept in sync on later calls."
    ),
)


def _get_index() -> CodeContextIndex:
    """Lazily build the process-wide index from the global config."""
    global _INDEX
    with _INDEX_LOCK:
        if _INDEX is None:
            logger.info("Opening index at %s", _config.db_path)
            _INDEX = CodeContextIndex(config=_config)
        return _INDEX


def _configure_logging() -> None:
    """Send logs to stderr (stdout carries the stdio transport) and optionally a file."""
    root = logging.getLogger()
    if getattr(root, "_code_context_configured", False):
        return
    level = getattr(logging, str(_config.log_level).upper(), logging.INFO)
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setFormatter(formatter)
    root.addHandler(stderr_handler)

    log_file = _config.log_file
    if log_file:
        path = Path(log_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(path, maxBytes=10 * 1024 * 1024, backupCount=3)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    root.setLevel(level)
    root._code_context_configured = True  # type: ignore[attr-defined]


def _log_send_failure(future: concurrent.futures.Future) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.debug("Progress notification failed", exc_info=exc)


def _run_query(request: QueryRequest, tracker: ProgressTracker) -> dict[str, Any]:
    try:
        index = _get_index()
    except Exception as exc:
        logger.exception("Failed to open index: %s", exc)
        return {"error": {"message": f"Failed to open index: {exc}"}}
    return index.query_repo(request, tracker)


@mcp.tool()
async def query_repo(
    repoUrl: str,
    ctx: Context,
    semanticSearch: str = "",
    keywordsSearch: list[str] | None = None,
    filePatterns: list[str] | None = None,
    excludePatterns: list[str] | None = None,
    branch: str | None = None,
    limit: int | None = None,
) -> dict[str, Any]:
    """Search a git repository for the code chunks most relevant to a query.

    Args:
        repoUrl: Git repository URL (or local path)
        semanticSearch: Natural language query; matching is by meaning, not exact text
        keywordsSearch: Keep only chunks containing at least one of these keywords
        filePatterns: Glob patterns a file path must match (e.g. '**/*.ts')
        excludePatterns: Glob patterns that exclude files (e.g. '**/node_modules/**')
        branch: Branch to query; defaults to the repository's default branch
        limit: Maximum number of results (default 10)
    """
    request = QueryRequest(
        repo_url=repoUrl,
        semantic_search=semanticSearch or None,
        keywords_search=keywordsSearch or [],
        file_patterns=filePatterns or [],
        exclude_patterns=excludePatterns or [],
        branch=branch or None,
        limit=limit,
    )
    loop = asyncio.get_running_loop()

    async def _send(progress: float, total: float) -> None:
        await ctx.report_progress(progress=progress, total=total)

    def _sink(progress: float, total: float) -> None:
        future = asyncio.run_coroutine_threadsafe(_send(progress, total), loop)
        future.add_done_callback(_log_send_failure)

    tracker = ProgressTracker(sink=_sink)
    stop = asyncio.Event()
    heartbeat = asyncio.create_task(
        run_heartbeat(tracker, _send, _config.heartbeat_seconds, stop)
    )
    try:
        return await asyncio.to_thread(_run_query, request, tracker)
    finally:
        stop.set()
        await heartbeat


def main() -> None:
    _configure_logging()
    transport = _config.server_transport
    kwargs: dict[str, Any] = {}
    if transport != "stdio":
        kwargs["host"] = _config.server_host
        kwargs["port"] = _config.server_port
    logger.info("Starting %s (%s transport, mode=%s)", _config.server_name, transport, _config.mode)
    try:
        mcp.run(transport=transport, **kwargs)
    finally:
        if _INDEX is not None:
            _INDEX.close()


if __name__ == "__main__":
    main()
