import asyncio
import json
import math
from contextlib import asynccontextmanager
from pathlib import PurePosixPath
from typing import AsyncIterator, Optional
from urllib.parse import urlparse

import httpx

from weixin_relay.exceptions import UpstreamError
from weixin_relay.logging_config import get_logger
from weixin_relay.schemas.weixin import MediaUploadResponse
from weixin_relay.services.token_cache import TokenCache

logger = get_logger("weixin_service")

# errcode returned by message/custom/send when the text exceeds the (undocumented) size ceiling
OVERSIZE_ERRCODE = 45002
MAX_CHUNK_SIZE = 500
TYPING_INTERVAL_SECONDS = 15.0


def split_content(content: str) -> list[str]:
    """Split oversized text into chunks of ``min(500, ceil(len / 2))`` characters."""
    if not content:
        return []
    size = min(MAX_CHUNK_SIZE, math.ceil(len(content) / 2))
    return [content[i : i + size] for i in range(0, len(content), size)]


class WeixinService:
    """Outbound calls to the Weixin customer-service API.

    One instance serves one pipeline run: the access token is read from the
    cache on first use and reused for every call the instance makes.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        cache: TokenCache,
        api_base: str = "https://api.weixin.qq.com/cgi-bin",
        typing_interval: float = TYPING_INTERVAL_SECONDS,
    ):
        self.http_client = http_client
        self.cache = cache
        self.api_base = api_base.rstrip("/")
        self.typing_interval = typing_interval
        self._token: Optional[str] = None
        self._token_loaded = False

    def _access_token(self) -> str:
        if not self._token_loaded:
            self._token = self.cache.get()
            self._token_loaded = True
            if not self._token:
                logger.warning("No access token cached, sending with empty token")
        return self._token or ""

    async def _make_request(
        self,
        path: str,
        data: Optional[dict] = None,
        files: Optional[dict] = None,
        params: Optional[dict] = None,
    ) -> dict:
        """POST to the Weixin API. Transport failures come back as an errcode, not an exception."""
        url = f"{self.api_base}/{path}"
        query = {"access_token": self._access_token(), **(params or {})}
        try:
            if files:
                response = await self.http_client.post(url, params=query, files=files)
            else:
                # Weixin expects raw UTF-8, not \u escapes
                body = json.dumps(data or {}, ensure_ascii=False).encode("utf-8")
                response = await self.http_client.post(
                    url,
                    params=query,
                    content=body,
                    headers={"Content-Type": "application/json; charset=utf-8"},
                )
            return response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Weixin API error: {e}", extra={"context": {"path": path}})
            return {"errcode": -1, "errmsg": str(e)}

    async def send_text(self, user_id: str, content: str) -> dict:
        """Send a text message, resending in halves when the platform says it is too large."""
        result = await self._make_request(
            "message/custom/send",
            {"touser": user_id, "msgtype": "text", "text": {"content": content}},
        )
        errcode = result.get("errcode", 0)

        if errcode == OVERSIZE_ERRCODE:
            chunks = split_content(content)
            logger.info(
                "Text too large, resending in chunks",
                extra={"context": {"user_id": user_id, "length": len(content), "chunks": len(chunks)}},
            )
            for chunk in chunks:
                await self.send_text(user_id, chunk)
        elif errcode != 0:
            logger.warning(
                f"Failed to send text: {result.get('errmsg')}",
                extra={"context": {"user_id": user_id, "errcode": errcode}},
            )

        return result

    async def send_image(self, user_id: str, media_id: str) -> dict:
        """Send a previously uploaded image."""
        result = await self._make_request(
            "message/custom/send",
            {"touser": user_id, "msgtype": "image", "image": {"media_id": media_id}},
        )
        if result.get("errcode", 0) != 0:
            logger.warning(
                f"Failed to send image: {result.get('errmsg')}",
                extra={"context": {"user_id": user_id, "errcode": result.get("errcode")}},
            )
        return result

    async def upload_image(self, url: str) -> str:
        """Download ``url`` and upload it as temporary media. Returns the media_id."""
        try:
            response = await self.http_client.get(url)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise UpstreamError(f"Image download failed: {e}") from e

        filename = PurePosixPath(urlparse(url).path).name or "image.png"
        if "." not in filename:
            filename = f"{filename}.png"
        content_type = response.headers.get("content-type", "image/png")

        result = await self._make_request(
            "media/upload",
            files={"media": (filename, response.content, content_type)},
            params={"type": "image"},
        )
        body = MediaUploadResponse.model_validate(result)
        if not body.media_id:
            raise UpstreamError(f"Media upload failed: {body.errcode} {body.errmsg}", errcode=body.errcode)
        return body.media_id

    async def set_typing(self, user_id: str) -> dict:
        """Show the "typing" state to the user once."""
        return await self._make_request("message/custom/typing", {"touser": user_id, "command": "Typing"})

    @asynccontextmanager
    async def typing(self, user_id: str) -> AsyncIterator["TypingIndicator"]:
        """Keep the typing indicator alive for the duration of the block."""
        indicator = TypingIndicator(self, user_id, self.typing_interval)
        indicator.start()
        try:
            yield indicator
        finally:
            await indicator.stop()

    def watchdog(self, user_id: str, message: str, delay_seconds: float) -> "Watchdog":
        """Arm a one-shot notice sent to ``user_id`` unless cancelled within ``delay_seconds``."""
        return Watchdog(self, user_id, message, delay_seconds)


class TypingIndicator:
    """Re-sends the typing command every ``interval`` seconds until stopped."""

    def __init__(self, weixin: WeixinService, user_id: str, interval: float):
        self._weixin = weixin
        self._user_id = user_id
        self._interval = interval
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _run(self) -> None:
        while True:
            await self._weixin.set_typing(self._user_id)
            await asyncio.sleep(self._interval)


class Watchdog:
    """One-shot "still working" notice, cancelled when the awaited call completes."""

    def __init__(self, weixin: WeixinService, user_id: str, message: str, delay_seconds: float):
        self._weixin = weixin
        self._user_id = user_id
        self._message = message
        self._delay = delay_seconds
        self.fired = False
        self._task = asyncio.create_task(self._run())

    async def _run(self) -> None:
        await asyncio.sleep(self._delay)
        self.fired = True
        logger.info("Watchdog fired", extra={"context": {"user_id": self._user_id, "delay": self._delay}})
        await self._weixin.send_text(self._user_id, self._message)

    def cancel(self) -> bool:
        """Suppress the notice. Returns False when it has already fired."""
        if self.fired or self._task.done():
            return False
        self._task.cancel()
        return True

    async def wait(self) -> None:
        """Wait for the notice task to settle (sent or cancelled)."""
        try:
            await self._task
        except asyncio.CancelledError:
            pass
