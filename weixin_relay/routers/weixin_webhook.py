from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Request
from fastapi.responses import PlainTextResponse

from weixin_relay.logging_config import get_logger
from weixin_relay.schemas.weixin import parse_inbound_xml
from weixin_relay.services.reply_pipeline import handle_inbound

logger = get_logger("weixin_webhook")

router = APIRouter()


@router.get("/weixin", response_class=PlainTextResponse)
async def verify_webhook(echostr: Optional[str] = None):
    """Server verification: echo ``echostr`` back to the platform."""
    return echostr or ""


@router.post("/weixin", response_class=PlainTextResponse)
async def handle_weixin_webhook(request: Request, background_tasks: BackgroundTasks):
    """
    Accept one inbound message and acknowledge immediately.
    The reply is produced by the pipeline after the response is sent.
    """
    raw = await request.body()
    try:
        message = parse_inbound_xml(raw)
    except ValueError as e:
        logger.warning(f"Dropping unparseable Weixin payload: {e}")
        return ""

    logger.info(
        "Weixin message received",
        extra={"context": {"user_id": message.user_id, "kind": message.kind}},
    )
    background_tasks.add_task(handle_inbound, message)
    return ""
