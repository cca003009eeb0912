import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from dotenv import load_dotenv

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "DEEPSEARCH_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}
MASK = "********"

logger = logging.getLogger("uvicorn.error")


class AppSettings(BaseModel):
    # OpenAI-compatible chat endpoint (LM Studio by default)
    model_base_url: str = "http://127.0.0.1:1234/v1"
    model_id: str = "qwen/qwen3-8b"
    model_api_key: Optional[str] = None
    max_output_tokens: Optional[int] = None
    temperature: float = 0.2
    model_timeout_s: float = 120.0

    tavily_api_key: Optional[str] = None
    search_result_count: int = 10
    extract_depth: str = "basic"
    crawl_max_attempts: int = 3
    crawl_concurrency: int = 5
    crawl_retry_delay_s: float = 0.5

    max_steps: int = 10
    title_max_length: int = 50

    database_path: str = "deepsearch.db"
    host: str = "0.0.0.0"
    port: int = 8000
    # bearer token -> user id
    api_tokens: Dict[str, str] = Field(default_factory=dict)

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        for key in ("tavily_api_key", "model_api_key"):
            if data.get(key):
                data[key] = MASK
        # Tokens are credentials; expose only which users are configured.
        data["api_tokens"] = sorted(set(self.api_tokens.values()))
        return data

    model_config = {"protected_namespaces": ()}


def parse_api_tokens(raw: Optional[str]) -> Dict[str, str]:
    """Parse `token:user,token2:user2` into a token -> user id map."""
    tokens: Dict[str, str] = {}
    if not raw:
        return tokens
    for chunk in raw.split(","):
        token, sep, user_id = chunk.strip().partition(":")
        if not sep or not token.strip() or not user_id.strip():
            continue
        tokens[token.strip()] = user_id.strip()
    return tokens


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "model_base_url": os.getenv("MODEL_BASE_URL"),
        "model_id": os.getenv("MODEL_ID"),
        "model_api_key": os.getenv("MODEL_API_KEY"),
        "max_output_tokens": os.getenv("MAX_OUTPUT_TOKENS"),
        "temperature": os.getenv("MODEL_TEMPERATURE"),
        "model_timeout_s": os.getenv("MODEL_TIMEOUT_S"),
        "tavily_api_key": os.getenv("TAVILY_API_KEY"),
        "search_result_count": os.getenv("SEARCH_RESULT_COUNT"),
        "extract_depth": os.getenv("EXTRACT_DEPTH"),
        "crawl_max_attempts": os.getenv("CRAWL_MAX_ATTEMPTS"),
        "crawl_concurrency": os.getenv("CRAWL_CONCURRENCY"),
        "crawl_retry_delay_s": os.getenv("CRAWL_RETRY_DELAY_S"),
        "max_steps": os.getenv("MAX_STEPS"),
        "title_max_length": os.getenv("TITLE_MAX_LENGTH"),
        "database_path": os.getenv("DATABASE_PATH"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
        "api_tokens": os.getenv("DEEPSEARCH_API_TOKENS"),
    }
    cleaned: Dict[str, Any] = {k: v for k, v in env_map.items() if v not in (None, "")}
    for key in (
        "max_output_tokens",
        "search_result_count",
        "crawl_max_attempts",
        "crawl_concurrency",
        "max_steps",
        "title_max_length",
        "port",
    ):
        if key in cleaned:
            cleaned[key] = int(cleaned[key])
    for key in ("temperature", "model_timeout_s", "crawl_retry_delay_s"):
        if key in cleaned:
            cleaned[key] = float(cleaned[key])
    if "api_tokens" in cleaned:
        cleaned["api_tokens"] = parse_api_tokens(cleaned["api_tokens"])
    return cleaned


def _env_overrides_config() -> bool:
    return str(os.getenv(ENV_OVERRIDE_KEY, "")).strip().lower() in ENV_OVERRIDE_TRUE


def load_settings(config_path: Optional[Path] = None) -> AppSettings:
    env_data = _load_from_env()
    path = config_path or CONFIG_PATH
    file_data: Dict[str, Any] = {}
    if path.exists():
        try:
            file_data = json.loads(path.read_text())
        except ValueError as exc:
            logger.warning("Ignoring unreadable config file %s: %s", path, exc)
            file_data = {}
    # Config wins by default; allow env overrides only when explicitly enabled.
    if _env_overrides_config():
        merged = {**file_data, **env_data}
    else:
        merged = {**env_data, **file_data}
    for secret in ("tavily_api_key", "model_api_key"):
        if not merged.get(secret) and env_data.get(secret):
            merged[secret] = env_data[secret]
    return AppSettings(**merged)

