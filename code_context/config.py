# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""
Configuration loader for the code context MCP server.

Loads configuration from config.json file with fallback to environment variables.
"""

import os
import json
from pathlib import Path
from typing import Dict, Any, Optional
import logging

logger = logging.getLogger(__name__)

VALID_MODES = ("dev", "test", "prod")
VALID_SIMILARITY = ("cosine", "dot")

DEFAULT_HOME = Path("~/.codeContextMcp")


def _parse_csv_list(raw_value: Optional[str]) -> list[str]:
    """Parse comma-separated environment variable values into a list."""
    if not raw_value:
        return []
    return [item.strip() for item in raw_value.split(",") if item.strip()]


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Config:
    """Configuration manager for the code context MCP server."""

    def __init__(self, config_path: Optional[Path] = None):
        """
        Initialize configuration.

        Args:
            config_path: Path to config.json file. If None, searches in:
                1. ./config.json (current directory)
                2. ~/.codeContextMcp/config.json
                3. Falls back to environment variables
        """
        self.config_data: Dict[str, Any] = {}
        self._load_config(config_path)
        self._validate_embeddings_dimension()

    def _load_config(self, config_path: Optional[Path] = None):
        """Load configuration from file or environment."""
        if config_path:
            if config_path.exists():
                self._load_from_file(config_path)
                return
            logger.info(
                "Config path %s does not exist, using environment variables",
                config_path,
            )
            self._load_from_env()
            return

        local_config = Path("config.json")
        if local_config.exists():
            self._load_from_file(local_config)
            return

        user_config = DEFAULT_HOME.expanduser() / "config.json"
        if user_config.exists():
            self._load_from_file(user_config)
            return

        logger.info("No config.json found, using environment variables")
        self._load_from_env()

    def _validate_embeddings_dimension(self) -> None:
        """Validate the configured embeddings dimension and fall back to 768."""
        dimension_value = self.get("embeddings.dimension")
        if dimension_value is None:
            self.config_data.setdefault("embeddings", {}).setdefault("dimension", 768)
            return

        try:
            dimension = int(dimension_value)
        except (TypeError, ValueError):
            logger.warning(
                "Invalid embeddings.dimension '%s', defaulting to 768", dimension_value
            )
            dimension = 768

        if dimension <= 0:
            logger.warning(
                "Non-positive embeddings.dimension %s, defaulting to 768", dimension
            )
            dimension = 768

        self.config_data.setdefault("embeddings", {})["dimension"] = dimension

    def _load_from_file(self, path: Path):
        """Load configuration from JSON file."""
        try:
            with open(path, "r") as f:
                self.config_data = json.load(f)
            logger.info("Loaded configuration from %s", path)
        except Exception as e:
            logger.error("Error loading config from %s: %s", path, e)
            self._load_from_env()

    def _load_from_env(self):
        """Load configuration from environment variables."""
        self.config_data = {
            "server": {
                "name": os.getenv("CODE_CONTEXT_NAME", "code-context-mcp"),
                "transport": os.getenv("CODE_CONTEXT_TRANSPORT", "stdio"),
                "log_level": os.getenv("CODE_CONTEXT_LOG_LEVEL", "INFO"),
                "host": os.getenv("CODE_CONTEXT_HOST", "127.0.0.1"),
                "port": os.getenv("CODE_CONTEXT_PORT", "8000"),
            },
            "index": {
                "data_dir": os.getenv(
                    "CODE_CONTEXT_DATA_DIR", str(DEFAULT_HOME / "data")
                ),
                "db_file": os.getenv("CODE_CONTEXT_DB_FILE", "code_context.db"),
                "repo_cache_dir": os.getenv(
                    "CODE_CONTEXT_REPO_CACHE_DIR", str(DEFAULT_HOME / "repos")
                ),
            },
            "embeddings": {
                "provider": os.getenv("CODE_CONTEXT_EMBEDDINGS_PROVIDER", "ollama"),
                "model": os.getenv(
                    "CODE_CONTEXT_EMBEDDINGS_MODEL",
                    "unclemusclez/jina-embeddings-v2-base-code",
                ),
            },
            "search": {
                "similarity": os.getenv("CODE_CONTEXT_SIMILARITY", "cosine"),
            },
            "admin": self._load_admin_from_env(),
        }
        dimension = os.getenv("CODE_CONTEXT_EMBEDDINGS_DIMENSION")
        if dimension:
            self.config_data["embeddings"]["dimension"] = dimension
        base_url = os.getenv("CODE_CONTEXT_EMBEDDINGS_URL")
        if base_url:
            self.config_data["embeddings"]["base_url"] = base_url
        batch_size = os.getenv("CODE_CONTEXT_EMBEDDINGS_BATCH_SIZE")
        if batch_size:
            self.config_data["embeddings"]["batch_size"] = batch_size

    def _load_admin_from_env(self) -> Dict[str, Any]:
        """Load admin config from environment variables."""
        allowed_ips_raw = os.getenv("CODE_CONTEXT_ADMIN_ALLOWED_IPS", "127.0.0.1,::1")
        return {
            "enabled": _env_bool("CODE_CONTEXT_ADMIN_ENABLED", "true"),
            "host": os.getenv("CODE_CONTEXT_ADMIN_HOST", "127.0.0.1"),
            "port": int(os.getenv("CODE_CONTEXT_ADMIN_PORT", "8765")),
            "api_key": os.getenv("CODE_CONTEXT_ADMIN_API_KEY") or None,
            "allowed_ips": _parse_csv_list(allowed_ips_raw),
        }

    # Getters for easy access
    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value by dot-notation key."""
        keys = key.split(".")
        value = self.config_data
        for k in keys:
            if isinstance(value, dict):
                value = value.get(k)
            else:
                return default
        return value if value is not None else default

    def _get_int(self, key: str, default: int) -> int:
        value = self.get(key, default)
        try:
            return int(value)
        except (TypeError, ValueError):
            logger.warning("Invalid %s '%s', defaulting to %s", key, value, default)
            return default

    def _get_float(self, key: str, default: float) -> float:
        value = self.get(key, default)
        try:
            return float(value)
        except (TypeError, ValueError):
            logger.warning("Invalid %s '%s', defaulting to %s", key, value, default)
            return default

    @property
    def mode(self) -> str:
        """Runtime mode: dev, test or prod. Environment overrides the file."""
        raw = (
            os.getenv("CODE_CONTEXT_MODE")
            or self.get("mode")
            or os.getenv("NODE_ENV")
            or "dev"
        )
        value = str(raw).strip().lower()
        if value == "production":
            value = "prod"
        if value not in VALID_MODES:
            logger.warning("Unknown mode '%s', defaulting to dev", raw)
            return "dev"
        return value

    @property
    def server_name(self) -> str:
        return self.get("server.name", "code-context-mcp")

    @property
    def server_transport(self) -> str:
        return self.get("server.transport", "stdio")

    @property
    def server_host(self) -> str:
        return self.get("server.host", "127.0.0.1")

    @property
    def server_port(self) -> int:
        return self._get_int("server.port", 8000)

    @property
    def log_level(self) -> str:
        return self.get("server.log_level", "INFO")

    @property
    def log_file(self) -> Optional[str]:
        """Get log file path from config or environment."""
        env_log_file = os.getenv("CODE_CONTEXT_LOG_FILE")
        if env_log_file:
            return env_log_file
        return self.get("server.log_file") or None

    # --- Storage ---

    @property
    def data_dir(self) -> Path:
        path_str = self.get("index.data_dir", str(DEFAULT_HOME / "data"))
        return Path(path_str).expanduser().resolve()

    @property
    def db_path(self) -> Path:
        return self.data_dir / self.get("index.db_file", "code_context.db")

    @property
    def repo_cache_dir(self) -> Path:
        path_str = self.get("index.repo_cache_dir", str(DEFAULT_HOME / "repos"))
        return Path(path_str).expanduser().resolve()

    @property
    def busy_timeout_ms(self) -> int:
        return self._get_int("index.busy_timeout_ms", 60000)

    # --- Chunking ---

    @property
    def chunk_size_tokens(self) -> int:
        return self._get_int("chunking.chunk_size_tokens", 7000)

    @property
    def chunk_overlap_tokens(self) -> int:
        return self._get_int("chunking.chunk_overlap_tokens", 200)

    @property
    def chars_per_token(self) -> float:
        return self._get_float("chunking.chars_per_token", 3.25)

    @property
    def chunk_size_chars(self) -> int:
        return int(self.chunk_size_tokens * self.chars_per_token)

    @property
    def chunk_overlap_chars(self) -> int:
        return int(self.chunk_overlap_tokens * self.chars_per_token)

    @property
    def max_content_chars(self) -> int:
        return self._get_int("chunking.max_content_chars", 1_000_000)

    # --- Embeddings ---

    @property
    def embeddings_provider(self) -> str:
        """Get embedding provider name."""
        return self.get("embeddings.provider", "ollama")

    @property
    def embeddings_model(self) -> str:
        """Get embedding model name."""
        return self.get("embeddings.model", "unclemusclez/jina-embeddings-v2-base-code")

    @property
    def embeddings_dimension(self) -> int:
        """Get embedding dimension."""
        return self._get_int("embeddings.dimension", 768)

    @property
    def embeddings_base_url(self) -> str:
        if self.embeddings_provider == "ollama":
            default = "http://localhost:11434"
        else:
            default = "https://api.openai.com/v1"
        return self.get("embeddings.base_url", default)

    @property
    def embeddings_context_size(self) -> int:
        return self._get_int("embeddings.context_size", 8192)

    @property
    def embeddings_batch_size(self) -> int:
        value = self._get_int("embeddings.batch_size", 100)
        if value < 1:
            logger.warning("embeddings.batch_size must be >= 1, defaulting to 100")
            return 100
        return value

    @property
    def embeddings_timeout(self) -> float:
        return self._get_float("embeddings.timeout_seconds", 120.0)

    @property
    def embeddings_api_key(self) -> Optional[str]:
        """Get embeddings API key (for OpenAI-compatible providers)."""
        api_key = self.get("embeddings.api_key")
        if not api_key:
            api_key = os.getenv("OPENAI_API_KEY")
        return api_key

    @property
    def embeddings_placeholder_on_failure(self) -> bool:
        """Substitute placeholder vectors when the embedder fails (test mode only by default)."""
        value = self.get("embeddings.placeholder_on_failure")
        if value is None:
            return self.mode == "test"
        return bool(value)

    # --- Search ---

    @property
    def search_default_limit(self) -> int:
        return max(1, self._get_int("search.default_limit", 10))

    @property
    def search_similarity(self) -> str:
        value = str(self.get("search.similarity", "cosine")).lower()
        if value not in VALID_SIMILARITY:
            logger.warning("Unknown search.similarity '%s', defaulting to cosine", value)
            return "cosine"
        return value

    @property
    def heartbeat_seconds(self) -> float:
        return self._get_float("search.heartbeat_seconds", 2.0)

    @property
    def embed_on_sync(self) -> bool:
        return bool(self.get("pipeline.embed_on_sync", True))

    # --- VCS ---

    @property
    def git_binary(self) -> str:
        return self.get("vcs.git_binary", "git")

    @property
    def vcs_timeout(self) -> float:
        return self._get_float("vcs.timeout_seconds", 300.0)

    # --- Admin API configuration ---

    @property
    def admin_enabled(self) -> bool:
        return self.get("admin.enabled", True)

    @property
    def admin_host(self) -> str:
        return self.get("admin.host", "127.0.0.1")

    @property
    def admin_port(self) -> int:
        return int(self.get("admin.port", 8765))

    @property
    def admin_api_key(self) -> Optional[str]:
        return self.get("admin.api_key")

    @property
    def admin_allowed_ips(self) -> list[str]:
        return self.get("admin.allowed_ips", ["127.0.0.1", "::1"])


# Global config instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get or create global configuration instance."""
    global _config
    if _config is None:
        _config = Config()
    return _config


def load_config(config_path: Optional[Path] = None):
    """Load configuration from specified path."""
    global _config
    _config = Config(config_path)
    return _config
