# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""Git working-copy access through the ``git`` command line."""

from __future__ import annotations

import logging
import os
import re
import subprocess
from pathlib import Path
from urllib.parse import urlsplit, urlunsplit

from .errors import InputValidationError, VCSError
from .schema import ListedFile

logger = logging.getLogger(__name__)

_URL_SCHEMES = ("http", "https", "ssh", "git", "file")
_SCP_LIKE = re.compile(r"^(?P<user>[\w.-]+)@(?P<host>[\w.-]+):(?P<path>[^/].*)$")
_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def _strip_suffixes(path: str) -> str:
    path = path.rstrip("/")
    if path.endswith(".git"):
        path = path[: -len(".git")]
    return path.rstrip("/")


def normalize_location(location: str) -> str:
    """
    Canonical identity for a repository location.

    URLs get a lower-cased scheme and host and lose trailing slashes and a
    ``.git`` suffix; scp-style remotes are kept as-is apart from the suffix;
    local directories become absolute paths.

    Raises:
        InputValidationError: when the location is empty or cannot be parsed.
    """
    raw = (location or "").strip()
    if not raw:
        raise InputValidationError("repo_url is required")

    if "://" in raw:
        parts = urlsplit(raw)
        scheme = parts.scheme.lower()
        if scheme not in _URL_SCHEMES:
            raise InputValidationError(f"Unsupported repository URL scheme: {parts.scheme!r}")
        if scheme != "file" and not parts.hostname:
            raise InputValidationError(f"Repository URL has no host: {raw!r}")
        path = _strip_suffixes(parts.path)
        if scheme != "file" and not path.strip("/"):
            raise InputValidationError(f"Repository URL has no path: {raw!r}")
        netloc = parts.netloc.lower() if "@" not in parts.netloc else parts.netloc
        return urlunsplit((scheme, netloc, path, "", ""))

    m = _SCP_LIKE.match(raw)
    if m:
        return f"{m.group('user')}@{m.group('host').lower()}:{_strip_suffixes(m.group('path'))}"

    local = Path(raw).expanduser()
    if local.is_dir():
        return str(local.resolve())

    raise InputValidationError(f"Unparseable repository location: {raw!r}")


def repository_name(location: str) -> str:
    """Display name: last path component of the location."""
    tail = re.split(r"[/:]", location.rstrip("/"))[-1]
    return _strip_suffixes(tail) or "repository"


def working_copy_dir(cache_dir: Path, location: str) -> Path:
    """Stable cache directory for a normalized location."""
    slug = _UNSAFE_CHARS.sub("_", location).strip("_")
    return cache_dir / (slug or "repository")


class GitClient:
    """Thin wrapper over git subprocess calls; every failure raises VCSError."""

    def __init__(self, git_binary: str = "git", timeout: float = 300.0):
        self.git_binary = git_binary
        self.timeout = timeout

    def _run(self, args: list[str], cwd: Path | None = None, *, binary: bool = False):
        env = dict(os.environ)
        env["GIT_TERMINAL_PROMPT"] = "0"
        try:
            proc = subprocess.run(
                [self.git_binary, "--no-pager", *args],
                cwd=str(cwd) if cwd else None,
                capture_output=True,
                timeout=self.timeout,
                env=env,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            raise VCSError(f"git {args[0]} timed out after {self.timeout:.0f}s") from exc
        except OSError as exc:
            raise VCSError(f"Failed to run git: {exc}") from exc
        if proc.returncode != 0:
            stderr = proc.stderr.decode("utf-8", errors="replace").strip()
            raise VCSError(f"git {args[0]} failed: {stderr or proc.returncode}")
        if binary:
            return proc.stdout
        return proc.stdout.decode("utf-8", errors="replace")

    def ensure_clone(self, location: str, working_copy: Path) -> bool:
        """Clone ``location`` into ``working_copy`` or fetch if it already exists.

        Returns True when a fresh clone was made.
        """
        if (working_copy / ".git").exists():
            logger.info("Fetching %s into %s", location, working_copy)
            self._run(["fetch", "--prune", "--quiet", "origin"], cwd=working_copy)
            return False
        working_copy.parent.mkdir(parents=True, exist_ok=True)
        logger.info("Cloning %s into %s", location, working_copy)
        self._run(["clone", "--quiet", location, str(working_copy)])
        return True

    def default_branch_name(self, working_copy: Path) -> str:
        """Remote default branch, else the clone's current branch, else ``main``."""
        try:
            ref = self._run(
                ["symbolic-ref", "--short", "refs/remotes/origin/HEAD"], cwd=working_copy
            ).strip()
            if ref:
                return ref.split("/", 1)[1] if ref.startswith("origin/") else ref
        except VCSError:
            logger.debug("No origin/HEAD in %s", working_copy, exc_info=True)
        try:
            ref = self._run(["rev-parse", "--abbrev-ref", "HEAD"], cwd=working_copy).strip()
            if ref and ref != "HEAD":
                return ref
        except VCSError:
            logger.debug("Cannot read HEAD in %s", working_copy, exc_info=True)
        return "main"

    def resolve_ref(self, working_copy: Path, ref: str) -> str:
        """Prefer the remote-tracking ref so a cached clone follows upstream."""
        for candidate in (f"origin/{ref}", ref):
            try:
                self._run(
                    ["rev-parse", "--verify", "--quiet", f"{candidate}^{{commit}}"],
                    cwd=working_copy,
                )
                return candidate
            except VCSError:
                continue
        raise VCSError(f"Branch {ref!r} not found in {working_copy}")

    def checkout(self, working_copy: Path, ref: str) -> None:
        resolved = self.resolve_ref(working_copy, ref)
        self._run(["checkout", "--quiet", "--force", "-B", ref, resolved], cwd=working_copy)

    def head_commit(self, working_copy: Path, ref: str) -> str:
        resolved = self.resolve_ref(working_copy, ref)
        return self._run(["rev-parse", f"{resolved}^{{commit}}"], cwd=working_copy).strip()

    def list_files(self, working_copy: Path, ref: str) -> tuple[list[ListedFile], str]:
        """List every blob in the tree of ``ref`` with its blob sha, plus the commit sha."""
        resolved = self.resolve_ref(working_copy, ref)
        commit = self._run(["rev-parse", f"{resolved}^{{commit}}"], cwd=working_copy).strip()
        out = self._run(["ls-tree", "-r", "-z", "--full-tree", commit], cwd=working_copy)
        files: list[ListedFile] = []
        for entry in out.split("\0"):
            if not entry:
                continue
            try:
                meta, path = entry.split("\t", 1)
                _mode, obj_type, sha = meta.split()
            except ValueError:
                logger.debug("Skipping malformed ls-tree entry %r", entry)
                continue
            if obj_type != "blob":
                continue
            files.append(ListedFile(path=path, sha=sha))
        return files, commit

    def read_blob(self, working_copy: Path, sha: str) -> bytes:
        return self._run(["cat-file", "blob", sha], cwd=working_copy, binary=True)
