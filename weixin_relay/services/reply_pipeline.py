"""Ordered reply stages for one inbound message.

Stages run in ``STAGES`` order and the first one returning ``True`` claims
the message. ``ai_turn_stage`` is the fallback and always claims.
"""

import asyncio
from datetime import datetime, timezone
from typing import Awaitable, Callable, List, Optional, Sequence

import httpx
from sqlalchemy.orm import Session

from weixin_relay.config import Settings, get_settings
from weixin_relay.exceptions import UpstreamError
from weixin_relay.logging_config import get_logger
from weixin_relay.schemas.weixin import EventMessage, InboundMessage, OtherMessage, TextMessage
from weixin_relay.services.command_service import CommandRegistry, build_default_registry
from weixin_relay.services.conversation_service import append_exchange, get_init, recent_turns
from weixin_relay.services.llm import LLMProvider, OpenAIProvider
from weixin_relay.services.reply_context import ReplyContext
from weixin_relay.services.token_cache import TokenCache, token_cache
from weixin_relay.services.weixin_service import WeixinService

logger = get_logger("reply_pipeline")

WELCOME_TEXT = "感谢关注！我是你的 AI 助手，直接发送文字就可以和我聊天。发送 /help 查看可用命令。"
UNSUPPORTED_TEXT = "抱歉，我暂时只能处理文字消息。"
AI_WATCHDOG_NOTICE = "AI 正在思考中，回复可能需要一点时间，请稍候…"
AI_FAILURE_TEXT = "抱歉，AI 服务暂时不可用，请稍后再试。"

Stage = Callable[[ReplyContext], Awaitable[bool]]


def build_system_turn(init: Optional[dict], default_persona: str) -> dict:
    """Leading turn: the user's /init override where set, the default persona otherwise."""
    init = init or {}
    return {
        "role": init.get("role") or "system",
        "content": init.get("content") or default_persona,
    }


async def platform_event_stage(ctx: ReplyContext) -> bool:
    message = ctx.message
    if isinstance(message, TextMessage):
        return False
    if isinstance(message, EventMessage):
        if message.event_name == "subscribe":
            await ctx.reply(WELCOME_TEXT)
        else:
            ctx.log.debug(f"Ignoring event {message.event_name}")
        return True
    if isinstance(message, OtherMessage):
        await ctx.reply(UNSUPPORTED_TEXT)
        return True
    raise TypeError(f"Unhandled inbound message: {type(message).__name__}")


async def command_stage(ctx: ReplyContext) -> bool:
    message = ctx.message
    if not isinstance(message, TextMessage):
        return False
    command = ctx.registry.match(message.content)
    if command is None:
        return False

    ctx.log.info(f"Running command {command.prefix}")
    await command.handler(ctx, command.arguments(message.content.strip()))
    return True


async def _load_context(ctx: ReplyContext) -> tuple[Optional[dict], List[dict]]:
    settings = ctx.settings
    init, history = await asyncio.gather(
        ctx.run_in_session(get_init, ctx.user_id),
        ctx.run_in_session(recent_turns, ctx.user_id, settings.context_window_seconds, settings.context_limit),
        return_exceptions=True,
    )
    if isinstance(init, Exception):
        ctx.log.warning(f"Failed to load init override: {init}")
        init = None
    if isinstance(history, Exception):
        ctx.log.warning(f"Failed to load history: {history}")
        history = []
    return init, history


async def ai_turn_stage(ctx: ReplyContext) -> bool:
    message = ctx.message
    settings = ctx.settings

    async with ctx.weixin.typing(ctx.user_id):
        init, history = await _load_context(ctx)
        system_turn = build_system_turn(init, settings.default_persona)

        watchdog = ctx.weixin.watchdog(ctx.user_id, AI_WATCHDOG_NOTICE, settings.watchdog_delay_seconds)
        try:
            reply = await ctx.llm.chat_completion(system_turn, history, message.content)
        except UpstreamError as e:
            ctx.log.error(f"Chat completion failed: {e}", context={"status_code": e.status_code})
            reply = None
        else:
            if not reply or not reply.strip():
                ctx.log.error("Chat completion returned empty content")
                reply = None
        finally:
            watchdog.cancel()
        if watchdog.fired:
            await watchdog.wait()

    if reply is None:
        await ctx.reply(AI_FAILURE_TEXT)
        return True

    # Platform clock may run ahead of ours; the reply must never sort before its question.
    replied_at = max(datetime.now(timezone.utc), message.created_at)
    persisted, _ = await asyncio.gather(
        ctx.run_in_session(
            append_exchange,
            ctx.user_id,
            message.content,
            message.created_at,
            reply,
            replied_at,
        ),
        ctx.reply(reply),
        return_exceptions=True,
    )
    if isinstance(persisted, Exception):
        ctx.log.error(f"Failed to persist exchange: {persisted}")
    return True


STAGES: List[Stage] = [platform_event_stage, command_stage, ai_turn_stage]


async def run_pipeline(ctx: ReplyContext, stages: Sequence[Stage] = STAGES) -> Optional[str]:
    """Run stages until one claims the message. Returns the claiming stage's name."""
    for stage in stages:
        if await stage(ctx):
            ctx.log.info(f"Message claimed by {stage.__name__}")
            return stage.__name__
    return None


_registry: Optional[CommandRegistry] = None


def get_registry(settings: Settings) -> CommandRegistry:
    global _registry
    if _registry is None:
        _registry = build_default_registry(settings.image_generation_enabled)
    return _registry


async def handle_inbound(
    message: InboundMessage,
    *,
    session_factory: Optional[Callable[[], Session]] = None,
    settings: Optional[Settings] = None,
    cache: Optional[TokenCache] = None,
    llm: Optional[LLMProvider] = None,
    registry: Optional[CommandRegistry] = None,
) -> Optional[str]:
    """Background entry point for one inbound message. Never raises."""
    settings = settings or get_settings()
    if session_factory is None:
        from weixin_relay.database import SessionLocal

        session_factory = SessionLocal

    async with httpx.AsyncClient(timeout=settings.request_timeout_seconds) as http_client:
        ctx = ReplyContext(
            message=message,
            weixin=WeixinService(
                http_client,
                cache or token_cache,
                api_base=settings.weixin_api_base,
                typing_interval=settings.typing_interval_seconds,
            ),
            llm=llm
            or OpenAIProvider(
                api_key=settings.openai_api_key,
                default_model=settings.chat_model,
                base_url=settings.openai_base_url,
                temperature=settings.chat_temperature,
                timeout_seconds=settings.request_timeout_seconds,
                http_client=http_client,
            ),
            session_factory=session_factory,
            settings=settings,
            registry=registry or get_registry(settings),
        )
        try:
            return await run_pipeline(ctx)
        except Exception as e:
            logger.error(
                f"Reply pipeline failed: {e}",
                exc_info=True,
                extra={"context": {"user_id": message.user_id, "kind": message.kind}},
            )
            return None
