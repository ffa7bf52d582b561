"""Endpoints for externally scheduled jobs."""

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, status
from pydantic import BaseModel

from weixin_relay.config import Settings, get_settings
from weixin_relay.exceptions import UpstreamError
from weixin_relay.logging_config import get_logger
from weixin_relay.services.token_cache import refresh_access_token, token_cache

logger = get_logger("tasks")

router = APIRouter()


class RefreshTokenResponse(BaseModel):
    success: bool
    message: str


def _require_admin_token(provided: Optional[str], settings: Settings) -> None:
    expected = settings.admin_token
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="ADMIN_TOKEN not configured",
        )
    if not provided or provided != expected:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid admin token")


@router.post("/tasks/refresh-token", response_model=RefreshTokenResponse)
async def refresh_token(
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
    settings: Settings = Depends(get_settings),
):
    _require_admin_token(x_admin_token, settings)
    try:
        await refresh_access_token(token_cache, settings)
    except UpstreamError as e:
        logger.error(f"Access token refresh failed: {e}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))
    return RefreshTokenResponse(success=True, message="Access token refreshed")
