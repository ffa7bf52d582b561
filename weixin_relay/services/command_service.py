"""Slash commands recognised ahead of the AI turn."""

from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, Iterator, List, Optional

from weixin_relay.exceptions import PersistenceError, UpstreamError
from weixin_relay.services.conversation_service import INIT_FIELDS, record_image, upsert_init
from weixin_relay.services.reply_context import ReplyContext

SETTING_SUCCESS = "设置成功"
SETTING_FAILURE = "设置失败"
IMAGE_USAGE = "请在 /image 后输入图片描述，例如：/image 一只在月球上的猫"
IMAGE_WATCHDOG_NOTICE = "图片生成中，可能需要一点时间，请稍候…"

CommandHandler = Callable[[ReplyContext, str], Awaitable[None]]


@dataclass(frozen=True)
class Command:
    prefix: str
    handler: CommandHandler
    help_text: str

    def matches(self, content: str) -> bool:
        if not content.startswith(self.prefix):
            return False
        rest = content[len(self.prefix) :]
        return not rest or rest[0].isspace()

    def arguments(self, content: str) -> str:
        return content[len(self.prefix) :].strip()


class CommandRegistry:
    """Ordered commands; the first whose prefix matches wins."""

    def __init__(self, commands: Iterable[Command] = ()):
        self._commands: List[Command] = list(commands)

    def register(self, command: Command) -> None:
        self._commands.append(command)

    def match(self, content: str) -> Optional[Command]:
        content = content.strip()
        for command in self._commands:
            if command.matches(content):
                return command
        return None

    def help_text(self) -> str:
        return "\n\n".join(command.help_text for command in self._commands)

    def __iter__(self) -> Iterator[Command]:
        return iter(self._commands)


async def help_command(ctx: ReplyContext, args: str) -> None:
    await ctx.reply(ctx.registry.help_text())


async def init_command(ctx: ReplyContext, args: str) -> None:
    """/init role <value> | /init content <value>"""
    parts = args.split(maxsplit=1)
    if len(parts) != 2 or parts[0] not in INIT_FIELDS:
        ctx.log.info("Rejected /init", context={"args": args})
        await ctx.reply(SETTING_FAILURE)
        return

    field, value = parts[0], parts[1].strip()
    try:
        result = await ctx.run_in_session(upsert_init, ctx.user_id, field, value)
    except PersistenceError as e:
        ctx.log.error(f"Failed to save init {field}: {e}")
        await ctx.reply(SETTING_FAILURE)
        return

    await ctx.reply(SETTING_SUCCESS if result.ok else SETTING_FAILURE)


async def image_command(ctx: ReplyContext, prompt: str) -> None:
    """/image <prompt>"""
    if not prompt:
        await ctx.send_system_message(IMAGE_USAGE)
        return

    watchdog = ctx.weixin.watchdog(ctx.user_id, IMAGE_WATCHDOG_NOTICE, ctx.settings.watchdog_delay_seconds)
    try:
        result = await ctx.llm.image_generation(prompt)
    finally:
        watchdog.cancel()
    if watchdog.fired:
        await watchdog.wait()

    if not result.ok:
        ctx.log.warning(f"Image generation failed: {result.error}")
        await ctx.send_system_message(f"图片生成失败：{result.error}")
        return

    url = result.value
    # Not atomic: each step is attempted regardless of the others.
    try:
        await ctx.run_in_session(record_image, ctx.user_id, prompt, url)
    except PersistenceError as e:
        ctx.log.error(f"Failed to record image: {e}", context={"url": url})

    await ctx.send_system_message(f"图片已生成：{url}")

    try:
        media_id = await ctx.weixin.upload_image(url)
    except UpstreamError as e:
        ctx.log.error(f"Failed to upload image: {e}", context={"url": url})
        return
    await ctx.weixin.send_image(ctx.user_id, media_id)


def build_default_registry(image_generation_enabled: bool = True) -> CommandRegistry:
    registry = CommandRegistry(
        [
            Command("/help", help_command, "/help - 查看所有可用命令"),
            Command(
                "/init",
                init_command,
                "/init role <角色> - 设置对话开头消息的角色，例如 system\n"
                "/init content <内容> - 设置对话开头消息的内容（AI 的人设）",
            ),
        ]
    )
    if image_generation_enabled:
        registry.register(Command("/image", image_command, "/image <描述> - 根据描述生成一张图片"))
    return registry
