# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""
Pytest configuration and shared fixtures for the code context tests.
"""

# ruff: noqa: E402
import hashlib
import os
import shutil
import tempfile
from pathlib import Path

import numpy as np
import pytest

# Keep the global config (built at import by the server module) away from ~
TEST_HOME = Path(tempfile.mkdtemp(prefix="code_context_"))
os.environ.setdefault("CODE_CONTEXT_MODE", "test")
os.environ.setdefault("CODE_CONTEXT_DATA_DIR", str(TEST_HOME / "data"))
os.environ.setdefault("CODE_CONTEXT_REPO_CACHE_DIR", str(TEST_HOME / "repos"))

import code_context.config as cc_config
from code_context.errors import VCSError
from code_context.schema import ListedFile
from code_context.storage import MetadataStore, Store

DIM = 768


def _seeded_vector(text: str, dim: int = DIM) -> np.ndarray:
    from numpy.random import default_rng

    digest = hashlib.sha256(text.encode("utf-8")).digest()
    seed_int = int.from_bytes(digest[:8], "big", signed=False)
    return default_rng(seed_int).standard_normal(dim).astype("float32")


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    tmpdir = tempfile.mkdtemp()
    yield Path(tmpdir)
    shutil.rmtree(tmpdir, ignore_errors=True)


@pytest.fixture
def store():
    """In-memory store with the schema applied."""
    db = Store(":memory:")
    yield db
    db.close()


@pytest.fixture
def metadata(store):
    return MetadataStore(store)


@pytest.fixture
def dummy_embed_fn():
    """Create a deterministic embedding function for testing."""

    calls: list[list[str]] = []

    def embed_fn(texts):
        calls.append(list(texts))
        embeddings = np.empty((len(texts), DIM), dtype="float32")
        for i, text in enumerate(texts):
            embeddings[i] = _seeded_vector(text)
        norms = np.linalg.norm(embeddings, axis=1, keepdims=True)
        return embeddings / (norms + 1e-8)

    embed_fn.calls = calls  # type: ignore[attr-defined]
    return embed_fn


class FakeVCS:
    """In-memory stand-in for GitClient.

    Branches map paths to file contents; blob shas are sha1 of the content so
    identical content on two branches shares a sha, as it does in git.
    """

    def __init__(self):
        self.trees: dict[str, dict[str, str]] = {}
        self.blobs: dict[str, bytes] = {}
        self.default_branch = "main"
        self.clones: list[str] = []
        self.reads: list[str] = []
        self.unreadable: set[str] = set()

    @staticmethod
    def blob_sha(content: str | bytes) -> str:
        data = content.encode("utf-8") if isinstance(content, str) else content
        return hashlib.sha1(data).hexdigest()

    def set_files(self, branch: str, files: dict[str, str]) -> None:
        self.trees[branch] = dict(files)
        for content in files.values():
            self.blobs[self.blob_sha(content)] = content.encode("utf-8")

    def ensure_clone(self, location: str, working_copy: Path) -> bool:
        self.clones.append(location)
        fresh = not working_copy.exists()
        working_copy.mkdir(parents=True, exist_ok=True)
        return fresh

    def default_branch_name(self, working_copy: Path) -> str:
        return self.default_branch

    def checkout(self, working_copy: Path, ref: str) -> None:
        if ref not in self.trees:
            raise VCSError(f"Branch {ref!r} not found")

    def head_commit(self, working_copy: Path, ref: str) -> str:
        tree = self.trees[ref]
        listing = "\n".join(f"{p}:{self.blob_sha(c)}" for p, c in sorted(tree.items()))
        return hashlib.sha1(listing.encode("utf-8")).hexdigest()

    def list_files(self, working_copy: Path, ref: str):
        self.checkout(working_copy, ref)
        files = [ListedFile(path=p, sha=self.blob_sha(c)) for p, c in self.trees[ref].items()]
        return files, self.head_commit(working_copy, ref)

    def read_blob(self, working_copy: Path, sha: str) -> bytes:
        self.reads.append(sha)
        if sha in self.unreadable or sha not in self.blobs:
            raise VCSError(f"blob {sha} not found")
        return self.blobs[sha]


@pytest.fixture
def fake_vcs():
    vcs = FakeVCS()
    vcs.set_files(
        "main",
        {
            "src/calculator.py": (
                "class Calculator:\n"
                "    def add(self, a, b):\n"
                "        return a + b\n"
            ),
            "src/greeting.ts": "export function greet(name: string) {\n  return `hi ${name}`;\n}\n",
            "README.md": "# Widgets\n\nA small widget library.\n",
            "assets/logo.png": "not really a png",
        },
    )
    return vcs


@pytest.fixture
def test_config(temp_dir, monkeypatch):
    """Global config pointed at a temporary data directory."""
    cfg = cc_config.Config(temp_dir / "missing-config.json")
    cfg.config_data["mode"] = "test"
    cfg.config_data["index"] = {
        "data_dir": str(temp_dir / "data"),
        "repo_cache_dir": str(temp_dir / "repos"),
    }
    cfg.config_data["embeddings"] = {
        "provider": "ollama",
        "model": "test-model",
        "dimension": DIM,
        "batch_size": 2,
        "placeholder_on_failure": False,
    }
    monkeypatch.setattr(cc_config, "_config", cfg)
    return cfg
