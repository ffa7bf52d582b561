from typing import List, Optional

import httpx

from weixin_relay.exceptions import UpstreamError
from weixin_relay.logging_config import get_logger
from weixin_relay.services.llm.base import LLMProvider, LLMResponse
from weixin_relay.services.result import UPSTREAM_ERROR, Result

logger = get_logger("llm.openai")


class OpenAIProvider(LLMProvider):
    """OpenAI-compatible chat completions and image generations."""

    def __init__(
        self,
        api_key: str,
        default_model: str = "gpt-3.5-turbo",
        base_url: str = "https://api.openai.com/v1",
        temperature: float = 0.7,
        timeout_seconds: float = 60.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key
        self.default_model = default_model
        self.base_url = base_url.rstrip("/")
        self.temperature = temperature
        self.timeout_seconds = timeout_seconds
        self.http_client = http_client

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    async def _post(self, path: str, payload: dict) -> httpx.Response:
        url = f"{self.base_url}/{path}"
        if self.http_client is not None:
            return await self.http_client.post(url, headers=self._headers(), json=payload, timeout=self.timeout_seconds)
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            return await client.post(url, headers=self._headers(), json=payload)

    async def generate(
        self,
        messages: List[dict],
        model: Optional[str] = None,
        temperature: Optional[float] = None,
    ) -> LLMResponse:
        """Generate response from OpenAI."""
        model = model or self.default_model
        payload = {
            "model": model,
            "messages": messages,
            "temperature": self.temperature if temperature is None else temperature,
        }
        logger.debug(f"OpenAI request: model={model}, messages_count={len(messages)}")

        try:
            response = await self._post("chat/completions", payload)
        except httpx.HTTPError as e:
            logger.error(f"OpenAI request failed: {e}")
            raise UpstreamError(f"OpenAI request failed: {e}") from e

        logger.debug(f"OpenAI response status: {response.status_code}")

        if response.status_code != 200:
            logger.error(f"OpenAI error: {response.text}")
            raise UpstreamError(
                f"OpenAI API error: {response.status_code} - {response.text}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
            content = data["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            logger.error(f"Malformed OpenAI response: {response.text[:500]}")
            raise UpstreamError(f"Malformed OpenAI response: {e}") from e

        if not isinstance(content, str):
            raise UpstreamError("Malformed OpenAI response: content is not text")

        return LLMResponse(
            content=content,
            model=data.get("model", model),
            usage=data.get("usage"),
        )

    async def image_generation(self, prompt: str) -> Result[str]:
        """Generate one image; provider errors are returned, not raised."""
        try:
            response = await self._post("images/generations", {"prompt": prompt})
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"OpenAI image request failed: {e}")
            return Result.from_exception(e, UPSTREAM_ERROR)

        error = data.get("error") if isinstance(data, dict) else None
        if error:
            message = error.get("message") if isinstance(error, dict) else str(error)
            logger.warning(f"OpenAI image error: {message}")
            return Result.failure(message or "image generation failed", UPSTREAM_ERROR)

        try:
            url = data["data"][0]["url"]
        except (KeyError, IndexError, TypeError):
            logger.error(f"Malformed OpenAI image response: {response.text[:500]}")
            return Result.failure(f"Malformed image response ({response.status_code})", UPSTREAM_ERROR)

        return Result.success(url)
