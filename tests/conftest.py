from datetime import datetime, timezone
from pathlib import Path

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from switchboard.config import AppSettings
from switchboard.main import create_app
from tests.fakes import FakeHomeClient, FakeProviderClient, FakeWeatherClient


def make_settings(tmp_path: Path, **overrides) -> AppSettings:
    settings = AppSettings(
        openai_api_key="sk-openai-test",
        anthropic_api_key="sk-anthropic-test",
        perplexity_api_key="pplx-test",
        google_api_key="google-test",
        xai_api_key="xai-test",
        database_path=str(tmp_path / "test.db"),
        host="127.0.0.1",
        port=8000,
        default_timezone="UTC",
        memory_extraction_enabled=False,
        response_cache_enabled=False,
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


class FakeClock:
    def __init__(self, start: datetime = datetime(2025, 3, 4, 15, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def app_factory(tmp_path: Path, clock: FakeClock):
    def _factory(
        *,
        fake_lm: FakeProviderClient | None = None,
        fake_home: FakeHomeClient | None = None,
        fake_weather: FakeWeatherClient | None = None,
        config_path: Path | None = None,
        **settings_overrides,
    ):
        settings = make_settings(tmp_path, **settings_overrides)
        lm_client = fake_lm or FakeProviderClient()
        home_client = fake_home or FakeHomeClient()
        weather_client = fake_weather or FakeWeatherClient()
        cfg_path = config_path or (tmp_path / "config.json")
        app = create_app(
            settings,
            lm_client=lm_client,
            home_client=home_client,
            weather_client=weather_client,
            config_path=cfg_path,
            clock=clock,
        )
        return app, cfg_path, lm_client

    return _factory


@pytest.fixture
async def client(app_factory):
    app, config_path, lm_client = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.config_path = config_path  # type: ignore[attr-defined]
            http_client.fake_lm = lm_client  # type: ignore[attr-defined]
            yield http_client
