from pathlib import Path

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from apai_agent.config import AppSettings
from apai_agent.main import create_app
from tests.fakes import FakeRemoteExecutor, ScriptedModelClient


def make_settings(tmp_path: Path, **overrides) -> AppSettings:
    settings = AppSettings(
        anthropic_api_key="test-key",
        anthropic_base_url="http://anthropic.test",
        model="test-model",
        apai_url="http://apai.test/sse",
        database_path=str(tmp_path / "test.db"),
        host="127.0.0.1",
        port=3010,
        max_turns=20,
        model_timeout_s=5.0,
        tool_timeout_s=5.0,
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


@pytest.fixture
def settings(tmp_path: Path) -> AppSettings:
    return make_settings(tmp_path)


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(
        *,
        model: ScriptedModelClient | None = None,
        remote: FakeRemoteExecutor | None = None,
        **settings_overrides,
    ):
        settings = make_settings(tmp_path, **settings_overrides)
        model_client = model or ScriptedModelClient()
        remote_executor = remote or FakeRemoteExecutor()
        app = create_app(settings, model=model_client, remote=remote_executor)
        return app, model_client, remote_executor

    return _factory


@pytest.fixture
async def client(app_factory):
    app, model_client, remote_executor = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.fake_model = model_client  # type: ignore[attr-defined]
            http_client.fake_remote = remote_executor  # type: ignore[attr-defined]
            yield http_client
