# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""Tests for repository locations and the git subprocess client."""

import shutil
import subprocess
from pathlib import Path

import pytest

from code_context.errors import InputValidationError, VCSError
from code_context.vcs import GitClient, normalize_location, repository_name, working_copy_dir

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


def _git(cwd, *args):
    subprocess.run(
        ["git", "-c", "user.email=dev@example.com", "-c", "user.name=Dev", *args],
        cwd=str(cwd),
        check=True,
        capture_output=True,
    )


def _commit(repo: Path, files: dict, message: str) -> None:
    for rel, content in files.items():
        target = repo / rel
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content)
    _git(repo, "add", "-A")
    _git(repo, "commit", "-q", "-m", message)


@pytest.fixture
def origin(tmp_path):
    repo = tmp_path / "origin"
    repo.mkdir()
    _git(repo, "init", "-q")
    _git(repo, "checkout", "-q", "-b", "main")
    _commit(repo, {"app.py": "print('hi')\n", "docs/guide.md": "# Guide\n"}, "initial")
    return repo


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("https://GitHub.com/acme/widgets.git", "https://github.com/acme/widgets"),
        ("HTTPS://github.com/acme/widgets/", "https://github.com/acme/widgets"),
        ("  https://github.com/acme/widgets  ", "https://github.com/acme/widgets"),
        ("git@GitHub.com:acme/widgets.git", "git@github.com:acme/widgets"),
        ("ssh://git@host.example/acme/widgets.git", "ssh://git@host.example/acme/widgets"),
    ],
)
def test_normalize_location(raw, expected):
    assert normalize_location(raw) == expected


@pytest.mark.parametrize(
    "raw", ["", "   ", "ftp://example.com/acme/widgets", "https://example.com/", "no such place"]
)
def test_normalize_location_rejects(raw):
    with pytest.raises(InputValidationError):
        normalize_location(raw)


def test_local_directory_becomes_absolute(tmp_path):
    assert normalize_location(str(tmp_path)) == str(tmp_path.resolve())


def test_names_and_cache_dirs():
    assert repository_name("git@github.com:acme/widgets") == "widgets"
    assert repository_name("https://github.com/acme/widgets") == "widgets"
    path = working_copy_dir(Path("/cache"), "https://github.com/acme/widgets")
    assert path == Path("/cache/https_github.com_acme_widgets")


@requires_git
def test_clone_list_and_read(origin, tmp_path):
    client = GitClient()
    working_copy = tmp_path / "cache" / "wc"

    assert client.ensure_clone(str(origin), working_copy) is True
    assert client.default_branch_name(working_copy) == "main"

    files, commit = client.list_files(working_copy, "main")
    assert sorted(f.path for f in files) == ["app.py", "docs/guide.md"]
    app = [f for f in files if f.path == "app.py"][0]
    assert client.read_blob(working_copy, app.sha) == b"print('hi')\n"
    assert client.head_commit(working_copy, "main") == commit


@requires_git
def test_fetch_follows_new_commits(origin, tmp_path):
    client = GitClient()
    working_copy = tmp_path / "wc"
    client.ensure_clone(str(origin), working_copy)
    before = client.head_commit(working_copy, "main")

    _commit(origin, {"app.py": "print('bye')\n"}, "second")
    assert client.ensure_clone(str(origin), working_copy) is False
    client.checkout(working_copy, "main")

    assert client.head_commit(working_copy, "main") != before
    assert (working_copy / "app.py").read_text() == "print('bye')\n"


@requires_git
def test_unknown_branch_and_blob(origin, tmp_path):
    client = GitClient()
    working_copy = tmp_path / "wc"
    client.ensure_clone(str(origin), working_copy)

    with pytest.raises(VCSError):
        client.checkout(working_copy, "does-not-exist")
    with pytest.raises(VCSError):
        client.read_blob(working_copy, "0" * 40)


def test_missing_git_binary(tmp_path):
    client = GitClient(git_binary=str(tmp_path / "no-git-here"))
    with pytest.raises(VCSError):
        client.ensure_clone("https://example.com/a/b", tmp_path / "wc")
