from pathlib import Path

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from shinise.config import AppSettings
from shinise.main import create_app
from tests.fakes import FakeGeminiClient, FakePlacesClient


def make_settings(tmp_path: Path, **overrides) -> AppSettings:
    settings = AppSettings(
        gemini_api_key="test-key",
        google_maps_api_key="maps-key",
        agent_base_delay_s=0.0,
        agent_jitter_s=0.0,
        keep_alive_interval_s=0.05,
        database_path=str(tmp_path / "test.db"),
        allowed_origin="https://shinise.example",
        host="127.0.0.1",
        port=8000,
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(
        *,
        fake_llm: FakeGeminiClient | None = None,
        fake_places: FakePlacesClient | None = None,
        **settings_overrides,
    ):
        settings = make_settings(tmp_path, **settings_overrides)
        llm_client = fake_llm or FakeGeminiClient()
        places_client = fake_places or FakePlacesClient()
        app = create_app(settings, llm_client=llm_client, places_client=places_client)
        return app, llm_client, places_client

    return _factory


@pytest.fixture
async def client(app_factory):
    app, llm_client, places_client = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.fake_llm = llm_client  # type: ignore[attr-defined]
            http_client.fake_places = places_client  # type: ignore[attr-defined]
            yield http_client
