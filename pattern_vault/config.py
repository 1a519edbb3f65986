"""
Configuration: loads settings from .pattern_vault.yaml, environment variables,
and built-in defaults (in that priority order: CLI args > env > YAML > defaults).
"""

import os

import yaml


_DEFAULTS = {
    "data_dir": os.path.join("~", ".pattern_vault"),
    "llm_provider": "ollama",
    "llm_model": "qwen2.5-coder:1.5b",
    "llm_endpoint": "http://localhost:11434",
    "embedding_provider": "ollama",
    "embedding_model": "nomic-embed-text",
    "openai_api_key": "",
    "openai_base_url": "https://api.openai.com/v1",
    "llm_timeout": 2.0,
    "intent_timeout": 5.0,
    "llm_max_retries": 1,
    "llm_retry_delay": 0.5,
    "min_chunk_chars": 50,
    "dedup_distance": 0.05,
    "similar_distance": 0.2,
    "risk_distance": 0.2,
    "cluster_similarity": 0.85,
    "query_distance": 0.4,
    "query_top_k": 10,
    "query_cache_ttl": 300.0,
    "embedding_cache_size": 100,
    "unstable_failure_count": 3,
    "churn_window_minutes": 10,
    "failure_message_chars": 1000,
    "similar_failures_k": 5,
    "failure_link_max_distance": None,
    "max_workers": 4,
    "excluded_paths": [],
}

# Config file search locations
_CONFIG_FILENAMES = [".pattern_vault.yaml", ".pattern_vault.yml"]


def _find_config_file(explicit_path: str | None = None) -> str | None:
    """Find the config file. Checks explicit path, CWD, then user home."""
    if explicit_path:
        if os.path.isfile(explicit_path):
            return explicit_path
        return None

    search_dirs = [os.getcwd(), os.path.expanduser("~")]
    for d in search_dirs:
        for name in _CONFIG_FILENAMES:
            path = os.path.join(d, name)
            if os.path.isfile(path):
                return path
    return None


def _load_yaml(path: str) -> dict:
    """Load YAML file, returns empty dict on failure."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
        return data if isinstance(data, dict) else {}
    except (OSError, yaml.YAMLError):
        return {}


class Config:
    """Vault configuration.

    Settings are resolved in priority order:
    1. CLI arguments (handled by caller)
    2. Environment variables
    3. .pattern_vault.yaml config file
    4. Built-in defaults

    Every threshold used by the engine lives here so it can be tuned
    without code changes.
    """

    def __init__(self, yaml_data: dict | None = None):
        yd = yaml_data or {}

        # Helper: env var > yaml > default
        def _get(env_key: str, yaml_key: str, cast=str):
            default = _DEFAULTS[yaml_key]
            env_val = os.getenv(env_key)
            if env_val is not None and env_val != "":
                return cast(env_val)
            yaml_val = yd.get(yaml_key)
            if yaml_val is not None:
                return cast(yaml_val)
            return default

        self.DATA_DIR = os.path.expanduser(
            _get("PATTERN_VAULT_DATA_DIR", "data_dir"))

        # Providers
        self.LLM_PROVIDER = _get("PATTERN_VAULT_LLM_PROVIDER", "llm_provider").lower()
        self.LLM_MODEL = _get("PATTERN_VAULT_LLM_MODEL", "llm_model")
        self.LLM_ENDPOINT = _get("PATTERN_VAULT_LLM_ENDPOINT", "llm_endpoint")
        self.EMBEDDING_PROVIDER = _get("PATTERN_VAULT_EMBEDDING_PROVIDER",
                                       "embedding_provider").lower()
        self.EMBEDDING_MODEL = _get("PATTERN_VAULT_EMBEDDING_MODEL",
                                    "embedding_model")

        openai_section = yd.get("openai", {}) if isinstance(yd.get("openai"), dict) else {}
        self.OPENAI_API_KEY = os.getenv("OPENAI_API_KEY") or openai_section.get(
            "api_key", _DEFAULTS["openai_api_key"])
        self.OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL") or openai_section.get(
            "base_url", _DEFAULTS["openai_base_url"])

        self.LLM_TIMEOUT = _get("PATTERN_VAULT_LLM_TIMEOUT", "llm_timeout", cast=float)
        self.INTENT_TIMEOUT = _get("PATTERN_VAULT_INTENT_TIMEOUT", "intent_timeout",
                                   cast=float)
        self.LLM_MAX_RETRIES = _get("PATTERN_VAULT_LLM_MAX_RETRIES",
                                    "llm_max_retries", cast=int)
        self.LLM_RETRY_DELAY = _get("PATTERN_VAULT_LLM_RETRY_DELAY",
                                    "llm_retry_delay", cast=float)

        # Ingestion
        self.MIN_CHUNK_CHARS = _get("PATTERN_VAULT_MIN_CHUNK_CHARS",
                                    "min_chunk_chars", cast=int)
        self.DEDUP_DISTANCE = _get("PATTERN_VAULT_DEDUP_DISTANCE",
                                   "dedup_distance", cast=float)
        self.SIMILAR_DISTANCE = _get("PATTERN_VAULT_SIMILAR_DISTANCE",
                                     "similar_distance", cast=float)
        self.RISK_DISTANCE = _get("PATTERN_VAULT_RISK_DISTANCE",
                                  "risk_distance", cast=float)
        self.MAX_WORKERS = _get("PATTERN_VAULT_MAX_WORKERS", "max_workers", cast=int)

        # Clustering
        self.CLUSTER_SIMILARITY = _get("PATTERN_VAULT_CLUSTER_SIMILARITY",
                                       "cluster_similarity", cast=float)

        # Query
        self.QUERY_DISTANCE = _get("PATTERN_VAULT_QUERY_DISTANCE",
                                   "query_distance", cast=float)
        self.QUERY_TOP_K = _get("PATTERN_VAULT_QUERY_TOP_K", "query_top_k", cast=int)
        self.QUERY_CACHE_TTL = _get("PATTERN_VAULT_QUERY_CACHE_TTL",
                                    "query_cache_ttl", cast=float)
        self.EMBEDDING_CACHE_SIZE = _get("PATTERN_VAULT_EMBEDDING_CACHE_SIZE",
                                         "embedding_cache_size", cast=int)

        # Failures
        self.UNSTABLE_FAILURE_COUNT = _get("PATTERN_VAULT_UNSTABLE_FAILURE_COUNT",
                                           "unstable_failure_count", cast=int)
        self.CHURN_WINDOW_MINUTES = _get("PATTERN_VAULT_CHURN_WINDOW_MINUTES",
                                         "churn_window_minutes", cast=float)
        self.FAILURE_MESSAGE_CHARS = _get("PATTERN_VAULT_FAILURE_MESSAGE_CHARS",
                                          "failure_message_chars", cast=int)
        self.SIMILAR_FAILURES_K = _get("PATTERN_VAULT_SIMILAR_FAILURES_K",
                                       "similar_failures_k", cast=int)
        self.FAILURE_LINK_MAX_DISTANCE = _get(
            "PATTERN_VAULT_FAILURE_LINK_MAX_DISTANCE",
            "failure_link_max_distance", cast=float)

        # Exclusions
        excluded = yd.get("excluded_paths") or []
        self.EXCLUDED_PATHS: list[str] = (
            [str(p) for p in excluded] if isinstance(excluded, list) else [])

    @property
    def db_path(self) -> str:
        return os.path.join(self.DATA_DIR, "vault.db")

    @property
    def log_dir(self) -> str:
        return os.path.join(self.DATA_DIR, "logs")

    @classmethod
    def load(cls, config_path: str | None = None) -> "Config":
        """Load config from YAML file (if found) + env vars + defaults."""
        path = _find_config_file(config_path)
        yaml_data = _load_yaml(path) if path else {}
        return cls(yaml_data)
