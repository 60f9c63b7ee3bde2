# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

from unittest.mock import MagicMock, patch

import pytest
from starlette.testclient import TestClient

import code_context.admin_api as admin_api
from code_context.admin_api import app
from code_context.indexer import CodeContextIndex

REPO_URL = "https://example.com/acme/widgets.git"


def _base_cfg():
    return {
        "enabled": True,
        "host": "127.0.0.1",
        "port": 8765,
        "api_key": None,
        "allowed_ips": ["127.0.0.1", "testclient"],
    }


@pytest.fixture
def index(test_config, store, fake_vcs, dummy_embed_fn):
    return CodeContextIndex(
        config=test_config,
        store=store,
        vcs=fake_vcs,
        embed_fn=dummy_embed_fn,
        embed_model="test-model",
    )


@pytest.fixture
def client(index, test_config, monkeypatch):
    monkeypatch.setattr(admin_api, "_config", test_config)
    with patch("code_context.admin_api._get_admin_cfg") as mock_cfg, patch(
        "code_context.admin_api._get_index"
    ) as mock_index:
        mock_cfg.return_value = _base_cfg()
        mock_index.return_value = index
        yield TestClient(app)


def test_admin_api_disabled():
    with patch("code_context.admin_api._get_admin_cfg") as mock_cfg:
        mock_cfg.return_value = {"enabled": False}
        client = TestClient(app)
        response = client.get("/admin/status")
        assert response.status_code == 503
        assert response.json() == {"error": "admin_disabled"}


def test_admin_api_ip_not_allowed():
    with patch("code_context.admin_api._get_admin_cfg") as mock_cfg:
        cfg = _base_cfg()
        cfg["allowed_ips"] = ["127.0.0.1"]
        mock_cfg.return_value = cfg
        client = TestClient(app)
        response = client.get("/admin/branches")
        assert response.status_code == 403
        assert response.json()["reason"] == "ip_not_allowed"


def test_admin_api_auth_required(client):
    cfg = _base_cfg()
    cfg["api_key"] = "secret"
    admin_api._get_admin_cfg.return_value = cfg

    # No key
    response = client.get("/admin/status")
    assert response.status_code == 401

    # Wrong key
    response = client.get("/admin/status", headers={"X-Admin-Key": "wrong"})
    assert response.status_code == 401

    # Correct key
    response = client.get("/admin/status", headers={"X-Admin-Key": "secret"})
    assert response.status_code == 200


def test_admin_api_status(client):
    response = client.get("/admin/status")
    assert response.status_code == 200
    data = response.json()
    assert data["admin"]["enabled"] is True
    assert data["mode"] == "test"
    assert data["index"]["db_path"] == ":memory:"
    assert data["index"]["embed_model"] == "test-model"
    assert data["index"]["similarity"] == "cosine"
    assert data["index"]["repositories"] == 0


def test_admin_branches_and_stats(client, index):
    index.query_repo({"repoUrl": REPO_URL, "semanticSearch": "greet"})

    branches = client.get("/admin/branches").json()["branches"]
    assert [(b["repository"], b["branch"]) for b in branches] == [
        ("https://example.com/acme/widgets", "main")
    ]

    stats = client.get("/admin/index/stats", params={"repo_url": REPO_URL}).json()
    assert stats["name"] == "widgets"
    assert stats["chunks"] == 3

    missing = client.get("/admin/index/stats", params={"repo_url": "https://example.com/x/y"})
    assert missing.json()["error"] == "Repository not found"


def test_admin_embed_requires_repo_and_branch(client):
    response = client.post("/admin/embed", json={"repo_url": REPO_URL})
    assert response.status_code == 400
    response = client.post("/admin/embed", content=b"not json")
    assert response.status_code == 400


def test_admin_embed_runs_for_indexed_branch(client, index):
    index.query_repo({"repoUrl": REPO_URL, "semanticSearch": "greet"})
    response = client.post("/admin/embed", json={"repo_url": REPO_URL, "branch": "main"})
    assert response.status_code == 200
    assert response.json()["branch"] == "main"


def test_admin_embed_unknown_branch_is_internal_error(client):
    response = client.post("/admin/embed", json={"repo_url": REPO_URL, "branch": "main"})
    assert response.status_code == 500
    assert response.json()["error"] == "internal_error"
    assert "not indexed" in response.json()["detail"]


def test_admin_status_index_failure():
    with patch("code_context.admin_api._get_admin_cfg") as mock_cfg, patch(
        "code_context.admin_api._get_index"
    ) as mock_index:
        mock_cfg.return_value = _base_cfg()
        broken = MagicMock()
        broken.get_index_stats.side_effect = RuntimeError("db locked")
        mock_index.return_value = broken
        response = TestClient(app).get("/admin/status")
        assert response.status_code == 500
        assert response.json()["detail"] == "db locked"


def test_admin_config_view_redacts_secrets(client, test_config):
    test_config.config_data["embeddings"]["api_key"] = "sk-live"
    test_config.config_data["admin"] = {"api_key": "admin-secret", "port": 8765}

    response = client.get("/admin/config")
    assert response.status_code == 200
    config_data = response.json()
    assert config_data["embeddings"]["api_key"] == "***"
    assert config_data["admin"] == {"api_key": "***", "port": 8765}
    assert config_data["embeddings"]["model"] == "test-model"
    # the live config is untouched
    assert test_config.config_data["embeddings"]["api_key"] == "sk-live"


def test_admin_logs_tail(client, test_config, temp_dir, monkeypatch):
    monkeypatch.delenv("CODE_CONTEXT_LOG_FILE", raising=False)
    response = client.get("/admin/logs/tail")
    assert response.status_code == 404

    log_path = temp_dir / "server.log"
    log_path.write_text("".join(f"line {i}\n" for i in range(10)))
    test_config.config_data["server"] = {"log_file": str(log_path)}

    response = client.get("/admin/logs/tail", params={"n": 3})
    assert response.status_code == 200
    assert response.json()["lines"] == ["line 7\n", "line 8\n", "line 9\n"]
