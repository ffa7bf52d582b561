"""Process-wide cache for the Weixin access token.

Reads never hit the network. The token is replaced by ``refresh_access_token``,
which the periodic trigger (``POST /tasks/refresh-token`` or the in-process
refresh loop) calls roughly every two hours.
"""

from typing import Optional

import httpx

from weixin_relay.config import Settings
from weixin_relay.exceptions import UpstreamError
from weixin_relay.logging_config import get_logger
from weixin_relay.schemas.weixin import AccessTokenResponse

logger = get_logger("token_cache")


class TokenCache:
    """Holds at most one access token. Single writer, many readers, staleness tolerated."""

    def __init__(self, token: Optional[str] = None):
        self._token = token

    def get(self) -> Optional[str]:
        return self._token

    def set(self, token: str) -> None:
        self._token = token


token_cache = TokenCache()


async def refresh_access_token(
    cache: TokenCache,
    settings: Settings,
    http_client: Optional[httpx.AsyncClient] = None,
) -> str:
    """Fetch a fresh token from the platform and store it in ``cache``."""
    params = {
        "grant_type": "client_credential",
        "appid": settings.weixin_app_id,
        "secret": settings.weixin_secret,
    }
    url = f"{settings.weixin_api_base}/token"

    try:
        if http_client is not None:
            response = await http_client.get(url, params=params)
        else:
            async with httpx.AsyncClient(timeout=30.0) as client:
                response = await client.get(url, params=params)
    except httpx.HTTPError as e:
        raise UpstreamError(f"Access token request failed: {e}") from e

    if response.status_code != 200:
        raise UpstreamError(f"Access token request failed: {response.status_code}", status_code=response.status_code)

    try:
        body = AccessTokenResponse.model_validate(response.json())
    except ValueError as e:
        raise UpstreamError(f"Malformed access token response: {e}") from e
    if not body.access_token:
        raise UpstreamError(f"Access token missing: {body.errcode} {body.errmsg}", errcode=body.errcode)

    cache.set(body.access_token)
    logger.info("Access token refreshed", extra={"context": {"expires_in": body.expires_in}})
    return body.access_token
