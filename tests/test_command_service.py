from datetime import datetime, timezone
from unittest.mock import Mock

import httpx
import pytest
from sqlalchemy.exc import OperationalError

from weixin_relay.models import Image
from weixin_relay.schemas.weixin import TextMessage
from weixin_relay.services.command_service import (
    IMAGE_USAGE,
    IMAGE_WATCHDOG_NOTICE,
    SETTING_FAILURE,
    SETTING_SUCCESS,
    Command,
    CommandRegistry,
    build_default_registry,
)
from weixin_relay.services.conversation_service import get_init
from weixin_relay.services.reply_context import SYSTEM_MESSAGE_PREFIX
from weixin_relay.services.result import Result


def _text(content: str) -> TextMessage:
    return TextMessage(user_id="user-1", created_at=datetime.now(timezone.utc), content=content)


async def _noop(ctx, args):
    return None


class TestCommandMatching:
    def test_exact_prefix_matches(self):
        command = Command("/help", _noop, "help")
        assert command.matches("/help")

    def test_prefix_followed_by_space_matches(self):
        command = Command("/init", _noop, "init")
        assert command.matches("/init role user")
        assert command.arguments("/init role user") == "role user"

    def test_longer_word_does_not_match(self):
        command = Command("/image", _noop, "image")
        assert not command.matches("/images of cats")
        assert not command.matches("show /image")

    def test_registry_returns_first_match(self):
        first = Command("/init", _noop, "first")
        second = Command("/init", _noop, "second")
        registry = CommandRegistry([first, second])
        assert registry.match("/init role user") is first

    def test_registry_ignores_surrounding_whitespace(self):
        registry = build_default_registry()
        assert registry.match("  /help  ").prefix == "/help"

    def test_no_match_for_plain_text(self):
        assert build_default_registry().match("你好") is None


class TestDefaultRegistry:
    def test_image_command_is_optional(self):
        with_image = [c.prefix for c in build_default_registry(image_generation_enabled=True)]
        without_image = [c.prefix for c in build_default_registry(image_generation_enabled=False)]
        assert with_image == ["/help", "/init", "/image"]
        assert without_image == ["/help", "/init"]

    def test_help_text_joins_entries_with_blank_lines(self):
        registry = CommandRegistry([Command("/a", _noop, "A help"), Command("/b", _noop, "B help")])
        assert registry.help_text() == "A help\n\nB help"


class TestHelpCommand:
    @pytest.mark.asyncio
    async def test_replies_with_help_text(self, make_context, weixin_api):
        ctx = make_context(_text("/help"))

        await ctx.registry.match("/help").handler(ctx, "")

        assert weixin_api.sent_texts == [ctx.registry.help_text()]
        assert "/image" in weixin_api.sent_texts[0]


class TestInitCommand:
    @pytest.mark.asyncio
    async def test_sets_role(self, make_context, weixin_api, session_factory):
        ctx = make_context(_text("/init role user"))
        command = ctx.registry.match("/init role user")

        await command.handler(ctx, command.arguments("/init role user"))

        assert weixin_api.sent_texts == [SETTING_SUCCESS]
        with session_factory() as db:
            assert get_init(db, "user-1") == {"role": "user", "content": None}

    @pytest.mark.asyncio
    async def test_sets_content_with_spaces(self, make_context, weixin_api, session_factory):
        ctx = make_context(_text("/init content You are a pirate. Speak like one."))

        await ctx.registry.match("/init").handler(ctx, "content You are a pirate. Speak like one.")

        assert weixin_api.sent_texts == [SETTING_SUCCESS]
        with session_factory() as db:
            assert get_init(db, "user-1")["content"] == "You are a pirate. Speak like one."

    @pytest.mark.asyncio
    @pytest.mark.parametrize("args", ["badfield x", "role", ""])
    async def test_rejects_without_touching_storage(self, make_context, weixin_api, args):
        factory = Mock()
        ctx = make_context(_text(f"/init {args}"), session_factory_override=factory)

        await ctx.registry.match("/init").handler(ctx, args)

        assert weixin_api.sent_texts == [SETTING_FAILURE]
        factory.assert_not_called()

    @pytest.mark.asyncio
    async def test_persistence_error_replies_failure(self, make_context, weixin_api):
        session = Mock()
        session.query.side_effect = OperationalError("SELECT", {}, Exception("down"))
        ctx = make_context(_text("/init role user"), session_factory_override=lambda: session)

        await ctx.registry.match("/init").handler(ctx, "role user")

        assert weixin_api.sent_texts == [SETTING_FAILURE]


def _image_responder(request: httpx.Request) -> httpx.Response:
    if request.url.host == "images.test":
        return httpx.Response(200, content=b"png-bytes", headers={"content-type": "image/png"})
    if request.url.path.endswith("/media/upload"):
        return httpx.Response(200, json={"type": "image", "media_id": "media-7"})
    return httpx.Response(200, json={"errcode": 0, "errmsg": "ok"})


class TestImageCommand:
    @pytest.mark.asyncio
    async def test_generates_records_and_sends(self, make_context, weixin_api, fake_llm, session_factory):
        weixin_api.responder = _image_responder
        ctx = make_context(_text("/image a cat on the moon"))

        await ctx.registry.match("/image").handler(ctx, "a cat on the moon")

        assert fake_llm.image_prompts == ["a cat on the moon"]
        assert weixin_api.sent_texts == [f"{SYSTEM_MESSAGE_PREFIX}图片已生成：https://images.test/cat.png"]
        assert weixin_api.sent_images == ["media-7"]
        with session_factory() as db:
            image = db.query(Image).one()
            assert image.prompt == "a cat on the moon"

    @pytest.mark.asyncio
    async def test_provider_error_is_relayed(self, make_context, weixin_api, fake_llm):
        fake_llm.image_result = Result.failure("Your request was rejected by the safety system", "upstream_error")
        ctx = make_context(_text("/image something"))

        await ctx.registry.match("/image").handler(ctx, "something")

        assert weixin_api.sent_texts == [
            f"{SYSTEM_MESSAGE_PREFIX}图片生成失败：Your request was rejected by the safety system"
        ]
        assert weixin_api.sent_images == []

    @pytest.mark.asyncio
    async def test_empty_prompt_shows_usage(self, make_context, weixin_api, fake_llm):
        ctx = make_context(_text("/image"))

        await ctx.registry.match("/image").handler(ctx, "")

        assert weixin_api.sent_texts == [f"{SYSTEM_MESSAGE_PREFIX}{IMAGE_USAGE}"]
        assert fake_llm.image_prompts == []

    @pytest.mark.asyncio
    async def test_failed_record_does_not_stop_delivery(self, make_context, weixin_api):
        weixin_api.responder = _image_responder
        session = Mock()
        session.commit.side_effect = OperationalError("INSERT", {}, Exception("down"))
        ctx = make_context(_text("/image a cat"), session_factory_override=lambda: session)

        await ctx.registry.match("/image").handler(ctx, "a cat")

        assert len(weixin_api.sent_texts) == 1
        assert weixin_api.sent_images == ["media-7"]

    @pytest.mark.asyncio
    async def test_failed_upload_keeps_link_message(self, make_context, weixin_api):
        def responder(request):
            if request.url.host == "images.test":
                return httpx.Response(500)
            return httpx.Response(200, json={"errcode": 0, "errmsg": "ok"})

        weixin_api.responder = responder
        ctx = make_context(_text("/image a cat"))

        await ctx.registry.match("/image").handler(ctx, "a cat")

        assert weixin_api.sent_texts == [f"{SYSTEM_MESSAGE_PREFIX}图片已生成：https://images.test/cat.png"]
        assert weixin_api.sent_images == []

    @pytest.mark.asyncio
    async def test_slow_generation_sends_notice(self, make_context, weixin_api, fake_llm, test_settings):
        weixin_api.responder = _image_responder
        test_settings.watchdog_delay_seconds = 0.01
        fake_llm.delay = 0.05
        ctx = make_context(_text("/image a cat"))

        await ctx.registry.match("/image").handler(ctx, "a cat")

        assert weixin_api.sent_texts[0] == IMAGE_WATCHDOG_NOTICE
        assert weixin_api.sent_texts.count(IMAGE_WATCHDOG_NOTICE) == 1
