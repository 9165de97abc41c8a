import json

import pytest

from shinise.config import AppSettings, load_settings, save_settings


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for key in ("GEMINI_API_KEY", "GOOGLE_MAPS_API_KEY", "MODEL_ID", "CACHE_TTL_DAYS", "SHINISE_ENV_OVERRIDES_CONFIG"):
        monkeypatch.delenv(key, raising=False)


def test_safe_dict_masks_only_present_secrets():
    settings = AppSettings(gemini_api_key="secret", google_maps_api_key="")
    data = settings.to_safe_dict()
    assert data["gemini_api_key"] == "********"
    assert data["google_maps_api_key"] == ""
    assert data["model_id"] == settings.model_id


def test_ai_enabled_with_key_or_vertex_credentials():
    assert not AppSettings().ai_enabled
    assert AppSettings(gemini_api_key="k").ai_enabled
    assert not AppSettings(google_cloud_project="p").ai_enabled
    assert AppSettings(google_cloud_project="p", google_access_token="t").ai_enabled


def test_config_precedence_configjson_wins_by_default(tmp_path, monkeypatch):
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"model_id": "from-config"}))
    monkeypatch.setenv("MODEL_ID", "from-env")
    settings = load_settings(config_path=config_path)
    assert settings.model_id == "from-config"


def test_env_override_when_flag_set(tmp_path, monkeypatch):
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"model_id": "from-config", "cache_ttl_days": 30}))
    monkeypatch.setenv("MODEL_ID", "from-env")
    monkeypatch.setenv("CACHE_TTL_DAYS", "7")
    monkeypatch.setenv("SHINISE_ENV_OVERRIDES_CONFIG", "1")
    settings = load_settings(config_path=config_path)
    assert settings.model_id == "from-env"
    assert settings.cache_ttl_days == 7


def test_empty_secret_in_config_falls_back_to_env(tmp_path, monkeypatch):
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"gemini_api_key": "", "google_maps_api_key": None}))
    monkeypatch.setenv("GEMINI_API_KEY", "env-key")
    monkeypatch.setenv("GOOGLE_MAPS_API_KEY", "env-maps")
    settings = load_settings(config_path=config_path)
    assert settings.gemini_api_key == "env-key"
    assert settings.google_maps_api_key == "env-maps"


def test_unreadable_config_is_ignored(tmp_path):
    config_path = tmp_path / "config.json"
    config_path.write_text("{not json")
    settings = load_settings(config_path=config_path)
    assert settings.cache_ttl_days == 90


def test_save_settings_round_trips(tmp_path):
    config_path = tmp_path / "saved.json"
    save_settings(AppSettings(search_radius_m=500, agent_concurrency=2), config_path)
    loaded = load_settings(config_path=config_path)
    assert loaded.search_radius_m == 500
    assert loaded.agent_concurrency == 2
