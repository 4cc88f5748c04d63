from abc import ABC, abstractmethod
import logging
from typing import Any, Literal

import httpx
from pydantic import BaseModel

from util import env_var

logger = logging.getLogger(__name__)


class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str


class ChatRequest(BaseModel):
    messages: list[ChatMessage]
    tools: list[dict[str, Any]] | None = None
    temperature: float = 0.7
    max_tokens: int = 1000


class ToolCall(BaseModel):
    id: str
    name: str
    arguments: str


class ChatResponse(BaseModel):
    content: str = ""
    tool_calls: list[ToolCall] = []


class LLMClient(ABC):
    """A chat-completion capability. Consumers treat its absence as normal."""

    @abstractmethod
    async def chat(self, request: ChatRequest) -> ChatResponse:
        pass


class OpenAIChatClient(LLMClient):
    """Calls an OpenAI-compatible /chat/completions endpoint."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
        model: str = "gpt-4o-mini",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._model = model
        self._timeout = timeout
        self._transport = transport

    async def chat(self, request: ChatRequest) -> ChatResponse:
        payload: dict[str, Any] = {
            "model": self._model,
            "messages": [m.model_dump() for m in request.messages],
            "temperature": request.temperature,
            "max_tokens": request.max_tokens,
        }
        if request.tools:
            payload["tools"] = request.tools
            payload["tool_choice"] = "auto"

        async with httpx.AsyncClient(
            timeout=self._timeout, transport=self._transport
        ) as client:
            resp = await client.post(
                f"{self._base_url}/chat/completions",
                headers={"Authorization": f"Bearer {self._api_key}"},
                json=payload,
            )
        resp.raise_for_status()

        message = resp.json()["choices"][0]["message"]
        return ChatResponse(
            content=message.get("content") or "",
            tool_calls=[
                ToolCall(
                    id=call["id"],
                    name=call["function"]["name"],
                    arguments=call["function"]["arguments"],
                )
                for call in message.get("tool_calls") or []
            ],
        )


def llm_from_env() -> LLMClient | None:
    """Builds the chat client when OPENAI_API_KEY is configured, else None."""
    api_key = env_var("OPENAI_API_KEY", allow_null=True)
    if not api_key:
        logger.info("OPENAI_API_KEY not set; natural-language parsing uses patterns only")
        return None
    return OpenAIChatClient(
        api_key,
        base_url=env_var("OPENAI_BASE_URL", default="https://api.openai.com/v1"),
        model=env_var("OPENAI_MODEL", default="gpt-4o-mini"),
    )
