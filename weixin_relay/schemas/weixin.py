from datetime import datetime, timezone
from typing import Annotated, Literal, Optional, Union
from xml.etree import ElementTree

from pydantic import BaseModel, Field, TypeAdapter


class InboundHeader(BaseModel):
    user_id: str  # FromUserName (openid)
    created_at: datetime


class TextMessage(InboundHeader):
    kind: Literal["text"] = "text"
    content: str


class EventMessage(InboundHeader):
    kind: Literal["event"] = "event"
    event_name: str  # subscribe, unsubscribe, click, ...


class OtherMessage(InboundHeader):
    kind: Literal["other"] = "other"
    msg_type: str  # image, voice, video, shortvideo, location, link


InboundMessage = Annotated[Union[TextMessage, EventMessage, OtherMessage], Field(discriminator="kind")]

_inbound_adapter = TypeAdapter(InboundMessage)


class AccessTokenResponse(BaseModel):
    access_token: Optional[str] = None
    expires_in: Optional[int] = None
    errcode: Optional[int] = None
    errmsg: Optional[str] = None


class MediaUploadResponse(BaseModel):
    media_id: Optional[str] = None
    type: Optional[str] = None
    created_at: Optional[int] = None
    errcode: Optional[int] = None
    errmsg: Optional[str] = None


def _created_at(value: Optional[str]) -> datetime:
    if value and value.strip().isdigit():
        return datetime.fromtimestamp(int(value.strip()), tz=timezone.utc)
    return datetime.now(timezone.utc)


def build_inbound_message(fields: dict) -> InboundMessage:
    """Map raw Weixin payload fields onto exactly one InboundMessage variant."""
    user_id = (fields.get("FromUserName") or "").strip()
    if not user_id:
        raise ValueError("FromUserName is missing")

    msg_type = (fields.get("MsgType") or "").strip().lower()
    header = {"user_id": user_id, "created_at": _created_at(fields.get("CreateTime"))}

    if msg_type == "text":
        data = {**header, "kind": "text", "content": fields.get("Content") or ""}
    elif msg_type == "event":
        data = {**header, "kind": "event", "event_name": (fields.get("Event") or "").strip().lower()}
    else:
        data = {**header, "kind": "other", "msg_type": msg_type or "unknown"}

    return _inbound_adapter.validate_python(data)


def parse_inbound_xml(raw: Union[bytes, str]) -> InboundMessage:
    """Parse the XML body Weixin posts to the webhook."""
    try:
        root = ElementTree.fromstring(raw)
    except ElementTree.ParseError as e:
        raise ValueError(f"Invalid Weixin XML payload: {e}") from e

    fields = {child.tag: (child.text or "") for child in root}
    return build_inbound_message(fields)
