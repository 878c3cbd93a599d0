from pathlib import Path
from typing import Optional

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from agentflow.config import AppSettings
from agentflow.main import create_app
from agentflow.tools import ToolRegistry
from tests.fakes import TEST_TIERS, FakeChatClient, FakeRetriever


def make_settings(tmp_path: Path, **overrides) -> AppSettings:
    settings = AppSettings(
        llm_base_url="http://llm.test/v1",
        llm_api_key="test-key",
        classification_models=TEST_TIERS["classification"],
        planning_models=TEST_TIERS["planning"],
        fast_models=TEST_TIERS["fast"],
        vision_models=TEST_TIERS["vision"],
        transcription_models=["whisper-a", "whisper-b"],
        call_timeout_s=5.0,
        workflow_deadline_s=10.0,
        sweep_interval_s=3600.0,
        retrieval_url=None,
        database_path=str(tmp_path / "test.db"),
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
        fake_chat: Optional[FakeChatClient] = None,
        fake_retriever: Optional[FakeRetriever] = None,
        tools: Optional[ToolRegistry] = None,
        config_path: Optional[Path] = None,
        **settings_overrides,
    ):
        settings = make_settings(tmp_path, **settings_overrides)
        chat = fake_chat or FakeChatClient()
        retriever = fake_retriever or FakeRetriever()
        cfg_path = config_path or (tmp_path / "config.json")
        app = create_app(settings, chat_client=chat, retriever=retriever, tools=tools, config_path=cfg_path)
        return app, cfg_path, chat, retriever

    return _factory


@pytest.fixture
async def client(app_factory):
    app, config_path, chat, retriever = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.fake_chat = chat  # type: ignore[attr-defined]
            http_client.fake_retriever = retriever  # type: ignore[attr-defined]
            yield http_client
