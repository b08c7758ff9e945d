from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional

import httpx


class LLMProviderError(RuntimeError):
    """Raised when a chat completion request fails at the transport level."""


@dataclass(frozen=True)
class LLMMessage:
    role: str
    content: str


@dataclass(frozen=True)
class LLMUsage:
    prompt_tokens: int = 0
    cached_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


@dataclass(frozen=True)
class LLMCompletion:
    content: str
    finish_reason: Optional[str] = None
    usage: LLMUsage = field(default_factory=LLMUsage)


class LLMProvider(ABC):
    """Provider-agnostic LLM interface."""

    @abstractmethod
    async def generate(
        self,
        messages: List[LLMMessage],
        model: str,
        max_completion_tokens: Optional[int] = None,
    ) -> LLMCompletion:
        raise NotImplementedError


class OpenAIChatProvider(LLMProvider):
    """Minimal OpenAI-compatible chat completions provider."""

    def __init__(self, api_key: str, base_url: str, timeout: float = 60.0) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def generate(
        self,
        messages: List[LLMMessage],
        model: str,
        max_completion_tokens: Optional[int] = None,
    ) -> LLMCompletion:
        url = f"{self.base_url}/chat/completions"
        payload = {
            "model": model,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
        }
        if max_completion_tokens is not None:
            payload["max_completion_tokens"] = max_completion_tokens
        headers = {"Authorization": f"Bearer {self.api_key}"}
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(url, json=payload, headers=headers)
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as exc:
            raise LLMProviderError(
                f"Chat completion failed with status {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            raise LLMProviderError(f"Chat completion request failed: {exc}") from exc

        choice = (data.get("choices") or [{}])[0]
        message = choice.get("message") or {}
        return LLMCompletion(
            content=message.get("content") or "",
            finish_reason=choice.get("finish_reason"),
            usage=_parse_usage(data.get("usage") or {}),
        )


def _parse_usage(usage: dict) -> LLMUsage:
    details = usage.get("prompt_tokens_details") or {}
    return LLMUsage(
        prompt_tokens=int(usage.get("prompt_tokens") or 0),
        cached_tokens=int(details.get("cached_tokens") or 0),
        completion_tokens=int(usage.get("completion_tokens") or 0),
    )
