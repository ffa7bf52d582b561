import asyncio
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from weixin_relay.config import Settings
from weixin_relay.exceptions import PersistenceError
from weixin_relay.logging_config import UserLogger, get_logger
from weixin_relay.schemas.weixin import InboundMessage
from weixin_relay.services.llm import LLMProvider
from weixin_relay.services.weixin_service import WeixinService

if TYPE_CHECKING:
    from weixin_relay.services.command_service import CommandRegistry

logger = get_logger("reply")

SYSTEM_MESSAGE_PREFIX = "【系统消息】"


async def run_in_session(session_factory: Callable[[], Session], fn: Callable[..., Any], *args, **kwargs) -> Any:
    """Run a store function on its own session in a worker thread and commit it."""

    def _call():
        db = session_factory()
        try:
            result = fn(db, *args, **kwargs)
            db.commit()
            return result
        except SQLAlchemyError as e:
            db.rollback()
            raise PersistenceError(str(e)) from e
        finally:
            db.close()

    return await asyncio.to_thread(_call)


@dataclass
class ReplyContext:
    """Everything one pipeline run needs to answer one inbound message."""

    message: InboundMessage
    weixin: WeixinService
    llm: LLMProvider
    session_factory: Callable[[], Session]
    settings: Settings
    registry: "CommandRegistry"
    log: UserLogger = field(init=False)

    def __post_init__(self):
        self.log = UserLogger(logger, self.message.user_id, kind=self.message.kind)

    @property
    def user_id(self) -> str:
        return self.message.user_id

    async def run_in_session(self, fn: Callable[..., Any], *args, **kwargs) -> Any:
        return await run_in_session(self.session_factory, fn, *args, **kwargs)

    async def reply(self, text: str) -> dict:
        return await self.weixin.send_text(self.user_id, text)

    async def send_system_message(self, text: str) -> dict:
        return await self.weixin.send_text(self.user_id, f"{SYSTEM_MESSAGE_PREFIX}{text}")
