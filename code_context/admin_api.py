# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""Local HTTP admin API: index status, per-branch stats and manual embedding runs."""

from __future__ import annotations

import asyncio
import copy
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from starlette.applications import Starlette
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from .config import get_config
from .server import _get_index

logger = logging.getLogger("code_context_admin")

_config = get_config()

_SECRET_KEYS = ("api_key",)


def _get_admin_cfg() -> Dict[str, Any]:
    return {
        "enabled": _config.admin_enabled,
        "host": _config.admin_host,
        "port": _config.admin_port,
        "api_key": _config.admin_api_key,
        "allowed_ips": _config.admin_allowed_ips,
    }


def _is_allowed_ip(ip: Optional[str]) -> bool:
    if not ip:
        return False
    cfg = _get_admin_cfg()
    allowed = set(cfg["allowed_ips"] or ["127.0.0.1", "::1"])
    return ip in allowed


async def require_admin(request: Request) -> Optional[JSONResponse]:
    """
    Common gate for all admin endpoints.

    - Enforce local-only IP (admin.allowed_ips)
    - Enforce X-Admin-Key header if admin.api_key is set
    """
    client = request.client
    client_ip = client.host if client else None
    cfg = _get_admin_cfg()

    if not cfg["enabled"]:
        logger.warning("Admin API called but admin.enabled=false")
        return JSONResponse({"error": "admin_disabled"}, status_code=503)

    if not _is_allowed_ip(client_ip):
        logger.warning("Admin access denied from IP %r", client_ip)
        return JSONResponse(
            {"error": "forbidden", "reason": "ip_not_allowed"},
            status_code=403,
        )

    api_key = cfg["api_key"]
    if api_key and request.headers.get("x-admin-key") != api_key:
        logger.warning("Admin access denied due to invalid API key")
        return JSONResponse({"error": "unauthorized"}, status_code=401)

    return None


def _internal_error(name: str, exc: Exception) -> JSONResponse:
    logger.exception("%s failed: %s", name, exc)
    return JSONResponse(
        {"error": "internal_error", "detail": str(exc)},
        status_code=500,
    )


async def admin_status(request: Request) -> Response:
    if (resp := await require_admin(request)) is not None:
        return resp

    cfg = _get_admin_cfg()
    try:
        index = _get_index()
        counts = await asyncio.to_thread(index.get_index_stats)
    except Exception as exc:
        return _internal_error("admin_status", exc)

    payload: Dict[str, Any] = {
        "admin": {
            "host": cfg["host"],
            "port": cfg["port"],
            "enabled": cfg["enabled"],
        },
        "mode": _config.mode,
        "index": {
            "db_path": str(index.store.db_path),
            "repo_cache_dir": str(index.config.repo_cache_dir),
            "embed_model": index.embed_model,
            "similarity": index.retrieval.metric,
            **counts,
        },
    }
    return JSONResponse(payload)


async def admin_branches(request: Request) -> Response:
    if (resp := await require_admin(request)) is not None:
        return resp

    try:
        branches = await asyncio.to_thread(_get_index().list_branches)
    except Exception as exc:
        return _internal_error("admin_branches", exc)
    return JSONResponse({"branches": branches})


async def admin_index_stats(request: Request) -> Response:
    if (resp := await require_admin(request)) is not None:
        return resp

    repo_url = request.query_params.get("repo_url")
    try:
        result = await asyncio.to_thread(_get_index().get_index_stats, repo_url)
    except Exception as exc:
        return _internal_error("admin_index_stats", exc)
    return JSONResponse(result)


async def admin_embed(request: Request) -> Response:
    if (resp := await require_admin(request)) is not None:
        return resp

    try:
        body = await request.json()
    except ValueError:
        body = None
    if not isinstance(body, dict) or not body.get("repo_url") or not body.get("branch"):
        return JSONResponse(
            {"error": "bad_request", "detail": "repo_url and branch are required"},
            status_code=400,
        )

    try:
        result = await asyncio.to_thread(
            _get_index().embed_branch_op, str(body["repo_url"]), str(body["branch"])
        )
    except Exception as exc:
        return _internal_error("admin_embed", exc)
    return JSONResponse(result)


async def admin_logs_tail(request: Request) -> Response:
    if (resp := await require_admin(request)) is not None:
        return resp

    n_param = request.query_params.get("n", "200")
    try:
        n = max(1, min(int(n_param), 2000))
    except ValueError:
        n = 200

    log_file = _config.log_file
    if not log_file:
        return JSONResponse(
            {"error": "not_found", "detail": "no log file configured"},
            status_code=404,
        )
    log_path = Path(log_file).expanduser()
    if not log_path.exists():
        return JSONResponse(
            {"error": "not_found", "detail": f"log file not found: {log_path}"},
            status_code=404,
        )

    try:
        with log_path.open("r", encoding="utf-8", errors="ignore") as f:
            lines = f.readlines()
    except OSError as exc:
        return _internal_error("admin_logs_tail", exc)

    return JSONResponse({"path": str(log_path), "lines": lines[-n:]})


def _redact(data: Any) -> Any:
    if isinstance(data, dict):
        return {
            key: ("***" if key in _SECRET_KEYS and value else _redact(value))
            for key, value in data.items()
        }
    if isinstance(data, list):
        return [_redact(item) for item in data]
    return data


async def admin_config_view(request: Request) -> Response:
    if (resp := await require_admin(request)) is not None:
        return resp

    return JSONResponse(_redact(copy.deepcopy(_config.config_data)))


routes = [
    Route("/admin/status", admin_status, methods=["GET"]),
    Route("/admin/branches", admin_branches, methods=["GET"]),
    Route("/admin/index/stats", admin_index_stats, methods=["GET"]),
    Route("/admin/embed", admin_embed, methods=["POST"]),
    Route("/admin/logs/tail", admin_logs_tail, methods=["GET"]),
    Route("/admin/config", admin_config_view, methods=["GET"]),
]

app = Starlette(debug=False, routes=routes)

# CORS for a locally served dashboard
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:5173",
        "http://127.0.0.1:5173",
    ],
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)
