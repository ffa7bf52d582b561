import asyncio
import json
from typing import Callable, List, Optional
from unittest.mock import Mock

import httpx
import pytest
from sqlalchemy.orm import sessionmaker

from weixin_relay.config import Settings
from weixin_relay.database import build_engine, init_db
from weixin_relay.services.llm.base import LLMProvider, LLMResponse
from weixin_relay.services.result import Result
from weixin_relay.services.token_cache import TokenCache
from weixin_relay.services.weixin_service import WeixinService


@pytest.fixture
def db_session():
    """Mock database session."""
    return Mock()


@pytest.fixture
def session_factory(tmp_path):
    """Real SQLite sessions, one connection per session."""
    engine = build_engine(f"sqlite:///{tmp_path / 'relay.db'}")
    init_db(bind=engine)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    yield factory
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def test_settings():
    return Settings(
        openai_api_key="test-key",
        weixin_app_id="wx-test-app",
        weixin_secret="wx-test-secret",
        weixin_api_base="https://weixin.test/cgi-bin",
        default_persona="You are a test persona.",
        typing_interval_seconds=5.0,
        watchdog_delay_seconds=5.0,
        admin_token="admin-secret",
    )


class WeixinRecorder:
    """httpx.MockTransport handler that records Weixin API calls."""

    def __init__(self, responder: Optional[Callable[[httpx.Request], httpx.Response]] = None):
        self.requests: List[httpx.Request] = []
        self.responder = responder

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.responder is not None:
            return self.responder(request)
        return httpx.Response(200, json={"errcode": 0, "errmsg": "ok"})

    def payloads(self, path_suffix: str) -> List[dict]:
        return [json.loads(r.content) for r in self.requests if r.url.path.endswith(path_suffix)]

    @property
    def sent_texts(self) -> List[str]:
        return [p["text"]["content"] for p in self.payloads("/message/custom/send") if p["msgtype"] == "text"]

    @property
    def sent_images(self) -> List[str]:
        return [p["image"]["media_id"] for p in self.payloads("/message/custom/send") if p["msgtype"] == "image"]

    @property
    def typing_count(self) -> int:
        return len(self.payloads("/message/custom/typing"))


@pytest.fixture
def weixin_api():
    return WeixinRecorder()


@pytest.fixture
def token_cache():
    return TokenCache("test-token")


@pytest.fixture
def weixin(weixin_api, token_cache, test_settings):
    client = httpx.AsyncClient(transport=httpx.MockTransport(weixin_api))
    return WeixinService(
        client,
        token_cache,
        api_base=test_settings.weixin_api_base,
        typing_interval=test_settings.typing_interval_seconds,
    )


class FakeLLM(LLMProvider):
    """In-memory provider recording every call."""

    def __init__(self, reply: str = "AI reply", delay: float = 0.0, error: Optional[Exception] = None):
        self.reply = reply
        self.delay = delay
        self.error = error
        self.calls: List[List[dict]] = []
        self.image_prompts: List[str] = []
        self.image_result: Result[str] = Result.success("https://images.test/cat.png")

    async def generate(self, messages, model=None, temperature=None) -> LLMResponse:
        self.calls.append(messages)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return LLMResponse(content=self.reply, model="fake")

    async def image_generation(self, prompt: str) -> Result[str]:
        self.image_prompts.append(prompt)
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.image_result


@pytest.fixture
def fake_llm():
    return FakeLLM()


@pytest.fixture
def make_context(weixin, fake_llm, session_factory, test_settings):
    from weixin_relay.services.command_service import build_default_registry
    from weixin_relay.services.reply_context import ReplyContext

    def _make(message, registry=None, session_factory_override=None):
        return ReplyContext(
            message=message,
            weixin=weixin,
            llm=fake_llm,
            session_factory=session_factory_override or session_factory,
            settings=test_settings,
            registry=registry or build_default_registry(image_generation_enabled=True),
        )

    return _make
