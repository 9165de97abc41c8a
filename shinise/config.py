import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel

from dotenv import load_dotenv

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "SHINISE_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}
SECRET_FIELDS = ("gemini_api_key", "google_access_token", "google_maps_api_key")


class AppSettings(BaseModel):
    # Generative AI (Gemini API key, or Vertex project + access token)
    gemini_api_key: Optional[str] = None
    google_cloud_project: Optional[str] = None
    google_access_token: Optional[str] = None
    vertex_location: str = "global"
    model_id: str = "gemini-3-pro-preview"
    image_model_id: str = "gemini-3-pro-image-preview"
    model_timeout_s: float = 120.0

    # Places / geocoding
    google_maps_api_key: Optional[str] = None
    search_radius_m: int = 1000
    places_language: str = "ja"

    # Agent orchestration
    agent_concurrency: int = 3
    agent_max_retries: int = 5
    agent_base_delay_s: float = 2.0
    agent_jitter_s: float = 1.0

    # Discovery & scoring
    ai_score_limit: int = 10
    keyword_score_limit: int = 5

    # Cache
    cache_ttl_days: int = 90
    search_cache_version: str = "v2"

    # Transport
    keep_alive_interval_s: float = 1.0
    allowed_origin: str = "http://localhost:3000"

    database_path: str = "shinise.db"
    host: str = "0.0.0.0"
    port: int = 8000

    @property
    def ai_enabled(self) -> bool:
        return bool(self.gemini_api_key or (self.google_cloud_project and self.google_access_token))

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        for key in SECRET_FIELDS:
            if data.get(key):
                data[key] = "********"
        return data

    model_config = {"protected_namespaces": ()}


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "gemini_api_key": os.getenv("GEMINI_API_KEY"),
        "google_cloud_project": os.getenv("GOOGLE_CLOUD_PROJECT") or os.getenv("FIREBASE_PROJECT_ID"),
        "google_access_token": os.getenv("GOOGLE_ACCESS_TOKEN"),
        "vertex_location": os.getenv("VERTEX_LOCATION"),
        "model_id": os.getenv("MODEL_ID"),
        "image_model_id": os.getenv("IMAGE_MODEL_ID"),
        "google_maps_api_key": os.getenv("GOOGLE_MAPS_API_KEY"),
        "search_radius_m": os.getenv("SEARCH_RADIUS_M"),
        "agent_concurrency": os.getenv("AGENT_CONCURRENCY"),
        "agent_max_retries": os.getenv("AGENT_MAX_RETRIES"),
        "agent_base_delay_s": os.getenv("AGENT_BASE_DELAY_S"),
        "cache_ttl_days": os.getenv("CACHE_TTL_DAYS"),
        "keep_alive_interval_s": os.getenv("KEEP_ALIVE_INTERVAL_S"),
        "allowed_origin": os.getenv("ALLOWED_ORIGIN") or os.getenv("NEXT_PUBLIC_BASE_URL"),
        "database_path": os.getenv("DATABASE_PATH"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    for key in ("search_radius_m", "agent_concurrency", "agent_max_retries", "cache_ttl_days", "port"):
        if key in cleaned:
            cleaned[key] = int(cleaned[key])
    for key in ("agent_base_delay_s", "keep_alive_interval_s"):
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
        except (OSError, ValueError):
            file_data = {}
    # Config wins by default; allow env overrides only when explicitly enabled.
    if _env_overrides_config():
        merged = {**file_data, **env_data}
    else:
        merged = {**env_data, **file_data}
    # Secrets left empty in config.json fall back to the environment.
    for key in SECRET_FIELDS:
        if not merged.get(key) and env_data.get(key):
            merged[key] = env_data[key]
    return AppSettings(**merged)


def save_settings(settings: AppSettings, config_path: Optional[Path] = None) -> None:
    path = config_path or CONFIG_PATH
    path.write_text(settings.model_dump_json(indent=2))
