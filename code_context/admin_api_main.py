# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

import logging

import uvicorn

from .admin_api import app as admin_app
from .config import get_config

logger = logging.getLogger("code_context_admin_main")


def main() -> None:
    cfg = get_config()

    if not cfg.admin_enabled:
        logger.warning("Admin API is disabled in config (admin.enabled=false)")
        return

    host = cfg.admin_host
    port = cfg.admin_port

    logger.info("Starting code context admin API on %s:%s", host, port)
    if host not in ("127.0.0.1", "::1", "localhost"):
        logger.warning("Admin API bound to non-loopback host %s; rely on admin.allowed_ips", host)

    uvicorn.run(
        admin_app,
        host=host,
        port=port,
        log_level=str(cfg.log_level).lower(),
    )


if __name__ == "__main__":
    main()
