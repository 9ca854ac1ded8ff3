import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field


logger = logging.getLogger("uvicorn.error")

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "MEETPREP_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}
SECRET_FIELDS = ("model_api_key", "tavily_api_key")


class AppSettings(BaseModel):
    # Model endpoint (any OpenAI-compatible chat completions API)
    model_base_url: str = "https://api.openai.com/v1"
    model_api_key: Optional[str] = None
    model_id: str = "gpt-4.1"
    model_temperature: float = 0.3
    model_max_tokens: int = 4096

    # Research
    tavily_api_key: Optional[str] = None
    research_search_depth: str = "advanced"
    research_max_results: int = 5

    # Run limits
    max_steps: int = Field(default=10, ge=1)
    run_timeout_s: float = Field(default=300.0, gt=0)
    tool_timeout_s: float = Field(default=60.0, gt=0)
    model_timeout_s: float = Field(default=120.0, gt=0)
    heartbeat_interval_s: float = Field(default=25.0, ge=0)
    watchdog_grace_s: float = Field(default=5.0, ge=0)
    notes_max_chars: int = Field(default=50_000, ge=0)
    stream_partials: bool = True

    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "info"

    model_config = {"protected_namespaces": ()}

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        for key in SECRET_FIELDS:
            if data.get(key):
                data[key] = "********"
        return data


_INT_KEYS = ("model_max_tokens", "research_max_results", "max_steps", "notes_max_chars", "port")
_FLOAT_KEYS = (
    "model_temperature",
    "run_timeout_s",
    "tool_timeout_s",
    "model_timeout_s",
    "heartbeat_interval_s",
    "watchdog_grace_s",
)
_BOOL_KEYS = ("stream_partials",)


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "model_base_url": os.getenv("MODEL_BASE_URL") or os.getenv("OPENAI_BASE_URL"),
        "model_api_key": os.getenv("MODEL_API_KEY") or os.getenv("OPENAI_API_KEY"),
        "model_id": os.getenv("MODEL_ID"),
        "model_temperature": os.getenv("MODEL_TEMPERATURE"),
        "model_max_tokens": os.getenv("MODEL_MAX_TOKENS"),
        "tavily_api_key": os.getenv("TAVILY_API_KEY"),
        "research_search_depth": os.getenv("RESEARCH_SEARCH_DEPTH"),
        "research_max_results": os.getenv("RESEARCH_MAX_RESULTS"),
        "max_steps": os.getenv("MAX_STEPS"),
        "run_timeout_s": os.getenv("RUN_TIMEOUT_S"),
        "tool_timeout_s": os.getenv("TOOL_TIMEOUT_S"),
        "model_timeout_s": os.getenv("MODEL_TIMEOUT_S"),
        "heartbeat_interval_s": os.getenv("HEARTBEAT_INTERVAL_S"),
        "watchdog_grace_s": os.getenv("WATCHDOG_GRACE_S"),
        "notes_max_chars": os.getenv("NOTES_MAX_CHARS"),
        "stream_partials": os.getenv("STREAM_PARTIALS"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
        "log_level": os.getenv("LOG_LEVEL"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    for key in _INT_KEYS:
        if key in cleaned:
            cleaned[key] = int(cleaned[key])
    for key in _FLOAT_KEYS:
        if key in cleaned:
            cleaned[key] = float(cleaned[key])
    for key in _BOOL_KEYS:
        if key in cleaned:
            cleaned[key] = str(cleaned[key]).strip().lower() in ENV_OVERRIDE_TRUE
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
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable config file %s: %s", path, exc)
            file_data = {}
    # Config wins by default; allow env overrides only when explicitly enabled.
    if _env_overrides_config():
        merged = {**file_data, **env_data}
    else:
        merged = {**env_data, **file_data}
    for key in SECRET_FIELDS:
        if not merged.get(key) and env_data.get(key):
            merged[key] = env_data[key]
    return AppSettings(**merged)


def save_settings(settings: AppSettings, config_path: Optional[Path] = None) -> None:
    path = config_path or CONFIG_PATH
    path.write_text(settings.model_dump_json(indent=2))
