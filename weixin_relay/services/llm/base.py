from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional

from weixin_relay.services.result import Result


@dataclass
class LLMResponse:
    content: str
    model: str
    usage: Optional[dict] = None


class LLMProvider(ABC):
    """Abstract base class for chat and image providers."""

    @abstractmethod
    async def generate(
        self,
        messages: List[dict],
        model: Optional[str] = None,
        temperature: Optional[float] = None,
    ) -> LLMResponse:
        """Run a chat completion over ``messages``."""

    async def chat_completion(self, system_turn: dict, history_turns: List[dict], user_content: str) -> str:
        """Reply to ``user_content`` given a leading system turn and prior turns (oldest first)."""
        messages = [system_turn, *history_turns, {"role": "user", "content": user_content}]
        response = await self.generate(messages)
        return response.content

    @abstractmethod
    async def image_generation(self, prompt: str) -> Result[str]:
        """Generate an image. Success carries the URL, failure the provider's message."""
