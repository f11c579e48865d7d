import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel

from dotenv import load_dotenv

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "APAI_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}

_INT_FIELDS = ("max_tokens", "port", "max_turns", "concurrency_limit", "max_calls_per_tool")
_FLOAT_FIELDS = ("model_timeout_s", "tool_timeout_s")


class AppSettings(BaseModel):
    anthropic_api_key: Optional[str] = None
    anthropic_base_url: str = "https://api.anthropic.com"
    model: str = "claude-3-5-sonnet-20240620"
    max_tokens: int = 1000

    # Remote MCP tool server
    apai_server_name: str = "apai"
    apai_url: str = "http://localhost:9000/sse"

    host: str = "0.0.0.0"
    port: int = 3010
    database_path: str = "apai_agent.db"

    # Run loop policy
    max_turns: int = 20
    model_timeout_s: float = 90.0
    tool_timeout_s: float = 60.0
    max_calls_per_tool: int = 1

    # Host-side serialization of runs sharing a key
    concurrency_limit: int = 1
    default_concurrency_key: str = "apai-agent"

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        if data.get("anthropic_api_key"):
            data["anthropic_api_key"] = "********"
        return data

    model_config = {"protected_namespaces": ()}


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "anthropic_api_key": os.getenv("ANTHROPIC_API_KEY"),
        "anthropic_base_url": os.getenv("ANTHROPIC_BASE_URL"),
        "model": os.getenv("APAI_MODEL"),
        "max_tokens": os.getenv("APAI_MAX_TOKENS"),
        "apai_url": os.getenv("APAI_URL"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
        "database_path": os.getenv("DATABASE_PATH"),
        "max_turns": os.getenv("MAX_TURNS"),
        "model_timeout_s": os.getenv("MODEL_TIMEOUT_S"),
        "tool_timeout_s": os.getenv("TOOL_TIMEOUT_S"),
        "max_calls_per_tool": os.getenv("MAX_CALLS_PER_TOOL"),
        "concurrency_limit": os.getenv("CONCURRENCY_LIMIT"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    for key in _INT_FIELDS:
        if key in cleaned:
            cleaned[key] = int(cleaned[key])
    for key in _FLOAT_FIELDS:
        if key in cleaned:
            cleaned[key] = float(cleaned[key])
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
        except json.JSONDecodeError:
            file_data = {}
    # Config wins by default; allow env overrides only when explicitly enabled.
    if _env_overrides_config():
        merged = {**file_data, **env_data}
    else:
        merged = {**env_data, **file_data}
    # The API key falls back to the environment when config.json omits it.
    if not merged.get("anthropic_api_key") and env_data.get("anthropic_api_key"):
        merged["anthropic_api_key"] = env_data["anthropic_api_key"]
    return AppSettings(**merged)


def save_settings(settings: AppSettings, config_path: Optional[Path] = None) -> None:
    path = config_path or CONFIG_PATH
    path.write_text(settings.model_dump_json(indent=2))
