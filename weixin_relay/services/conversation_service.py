"""Conversation history and per-user settings.

Functions take a SQLAlchemy ``Session`` and only ``flush``; the caller owns the
transaction, so ``append_exchange`` commits both turns together or neither.
"""

from datetime import datetime, timedelta, timezone
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from weixin_relay.logging_config import get_logger
from weixin_relay.models import Image, Message, UserSettings
from weixin_relay.services.result import INVALID_ARGUMENT, PERSISTENCE_ERROR, Result

logger = get_logger("conversation_service")

CONTEXT_WINDOW_SECONDS = 180
CONTEXT_LIMIT = 6

# /init field name -> UserSettings column
INIT_FIELDS = {
    "role": "init_message_role",
    "content": "init_message_content",
}


def append_exchange(
    db: Session,
    open_id: str,
    user_content: str,
    user_created_at: datetime,
    assistant_content: str,
    assistant_created_at: datetime,
) -> List[Message]:
    """Record one completed user/assistant exchange."""
    turns = [
        Message(open_id=open_id, role="user", content=user_content, created_at=user_created_at),
        Message(open_id=open_id, role="assistant", content=assistant_content, created_at=assistant_created_at),
    ]
    db.add_all(turns)
    db.flush()
    return turns


def recent_turns(
    db: Session,
    open_id: str,
    window_seconds: int = CONTEXT_WINDOW_SECONDS,
    limit: int = CONTEXT_LIMIT,
    now: Optional[datetime] = None,
) -> List[dict]:
    """Most recent turns within the window, oldest first."""
    since = (now or datetime.now(timezone.utc)) - timedelta(seconds=window_seconds)
    messages = (
        db.query(Message)
        .filter(Message.open_id == open_id, Message.created_at >= since)
        .order_by(Message.created_at.desc(), Message.id.desc())
        .limit(limit)
        .all()
    )

    # Reverse to get chronological order
    return [{"role": msg.role, "content": msg.content} for msg in reversed(messages)]


def get_init(db: Session, open_id: str) -> Optional[dict]:
    """Per-user override of the leading system turn."""
    user_settings = db.query(UserSettings).filter(UserSettings.open_id == open_id).first()
    if not user_settings:
        return None
    return {
        "role": user_settings.init_message_role,
        "content": user_settings.init_message_content,
    }


def get_or_create_settings(db: Session, open_id: str) -> UserSettings:
    """Find the user's settings row or create an empty one."""
    user_settings = db.query(UserSettings).filter(UserSettings.open_id == open_id).first()

    if not user_settings:
        user_settings = UserSettings(open_id=open_id, created_at=datetime.now(timezone.utc))
        db.add(user_settings)
        db.flush()

    return user_settings


def upsert_init(db: Session, open_id: str, field: str, value: str) -> Result[UserSettings]:
    """Set ``role`` or ``content`` of the user's init override."""
    column = INIT_FIELDS.get(field)
    if column is None:
        return Result.failure(f"Unknown init field: {field}", INVALID_ARGUMENT)

    try:
        user_settings = get_or_create_settings(db, open_id)
        setattr(user_settings, column, value)
        db.flush()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to update init {field}: {e}", extra={"context": {"open_id": open_id}})
        return Result.failure(str(e), PERSISTENCE_ERROR)

    return Result.success(user_settings)


def record_image(db: Session, open_id: str, prompt: str, url: str) -> Image:
    """Audit record of a generated image."""
    image = Image(open_id=open_id, prompt=prompt, url=url, created_at=datetime.now(timezone.utc))
    db.add(image)
    db.flush()
    return image
