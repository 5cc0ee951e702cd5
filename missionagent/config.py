import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from dotenv import load_dotenv

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "MISSIONAGENT_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}
SECRET_FIELDS = ("tavily_api_key", "serper_api_key", "gemini_api_key")


class AppSettings(BaseModel):
    tavily_api_key: Optional[str] = None
    serper_api_key: Optional[str] = None
    gemini_api_key: Optional[str] = None
    gemini_model: str = "gemini-1.5-flash"
    # LLM-assisted decisions also need a Gemini key; without one the rules run alone.
    llm_decisions: bool = True
    database_path: str = "missions.db"
    host: str = "0.0.0.0"
    port: int = 8000
    api_base_url: str = "http://127.0.0.1:8000"
    poll_interval_s: float = 10.0
    engine_autostart: bool = False
    log_level: str = "INFO"

    def available_providers(self) -> List[str]:
        providers: List[str] = []
        if self.tavily_api_key:
            providers.append("tavily")
        if self.serper_api_key:
            providers.append("serper")
        if self.gemini_api_key:
            providers.append("gemini")
        return providers

    @property
    def llm_enabled(self) -> bool:
        return bool(self.llm_decisions and self.gemini_api_key)

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        for key in SECRET_FIELDS:
            if data.get(key):
                data[key] = "********"
        return data

    model_config = {"protected_namespaces": ()}


def _as_bool(value: Any) -> bool:
    return str(value).strip().lower() in ENV_OVERRIDE_TRUE


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "tavily_api_key": os.getenv("TAVILY_API_KEY"),
        "serper_api_key": os.getenv("SERPER_API_KEY"),
        "gemini_api_key": os.getenv("GEMINI_API_KEY"),
        "gemini_model": os.getenv("GEMINI_MODEL"),
        "llm_decisions": os.getenv("LLM_DECISIONS"),
        "database_path": os.getenv("DATABASE_PATH"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
        "api_base_url": os.getenv("MISSIONAGENT_API_BASE"),
        "poll_interval_s": os.getenv("POLL_INTERVAL_S"),
        "engine_autostart": os.getenv("ENGINE_AUTOSTART"),
        "log_level": os.getenv("LOG_LEVEL"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    if "port" in cleaned:
        cleaned["port"] = int(cleaned["port"])
    if "poll_interval_s" in cleaned:
        cleaned["poll_interval_s"] = float(cleaned["poll_interval_s"])
    if "llm_decisions" in cleaned:
        cleaned["llm_decisions"] = _as_bool(cleaned["llm_decisions"])
    if "engine_autostart" in cleaned:
        cleaned["engine_autostart"] = _as_bool(cleaned["engine_autostart"])
    return cleaned


def _env_overrides_config() -> bool:
    return _as_bool(os.getenv(ENV_OVERRIDE_KEY, ""))


def load_settings(config_path: Optional[Path] = None) -> AppSettings:
    env_data = _load_from_env()
    path = config_path or CONFIG_PATH
    file_data: Dict[str, Any] = {}
    if path.exists():
        try:
            file_data = json.loads(path.read_text())
        except ValueError:
            file_data = {}
    # Config wins by default; allow env overrides only when explicitly enabled.
    if _env_overrides_config():
        merged = {**file_data, **env_data}
    else:
        merged = {**env_data, **file_data}
    # An empty key in config.json should not hide a key exported in the environment.
    for key in SECRET_FIELDS:
        if not merged.get(key) and env_data.get(key):
            merged[key] = env_data[key]
    return AppSettings(**merged)


def save_settings(settings: AppSettings, config_path: Optional[Path] = None) -> None:
    path = config_path or CONFIG_PATH
    path.write_text(settings.model_dump_json(indent=2))
