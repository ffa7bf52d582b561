import asyncio

from fastapi import FastAPI

from weixin_relay.config import settings
from weixin_relay.database import init_db
from weixin_relay.exceptions import UpstreamError
from weixin_relay.logging_config import get_logger, setup_logging
from weixin_relay.routers import tasks, weixin_webhook
from weixin_relay.services.token_cache import refresh_access_token, token_cache

setup_logging(settings.log_level)

app = FastAPI(
    title="Weixin Relay",
    description="Relays Weixin official account messages to an AI chat provider",
    version="0.1.0",
)

app.include_router(weixin_webhook.router)
app.include_router(tasks.router)

token_logger = get_logger("token_refresh")
_token_refresh_task: asyncio.Task | None = None


async def _token_refresh_loop() -> None:
    while True:
        try:
            await refresh_access_token(token_cache, settings)
        except asyncio.CancelledError:
            break
        except UpstreamError as exc:
            token_logger.error(
                "Token refresh failed",
                extra={"context": {"error": str(exc)}},
            )
        try:
            await asyncio.sleep(max(settings.token_refresh_interval_seconds, 1.0))
        except asyncio.CancelledError:
            break


@app.on_event("startup")
async def startup() -> None:
    global _token_refresh_task
    init_db()
    if not settings.token_refresh_enabled:
        return
    if _token_refresh_task is None or _token_refresh_task.done():
        _token_refresh_task = asyncio.create_task(_token_refresh_loop())
        token_logger.info("Token refresh loop started")


@app.on_event("shutdown")
async def shutdown() -> None:
    global _token_refresh_task
    if _token_refresh_task is None:
        return
    _token_refresh_task.cancel()
    try:
        await _token_refresh_task
    except asyncio.CancelledError:
        pass
    _token_refresh_task = None


@app.get("/health")
async def health():
    return {"status": "ok", "access_token_cached": token_cache.get() is not None}
