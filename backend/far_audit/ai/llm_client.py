"""Chat-completion client used by the LLM re-evaluator.

The re-evaluator only needs `chat(messages, ...) -> str`; this module adapts
Anthropic's Messages API to that shape and records usage for the AI call log.
"""
import json
import logging
import time
from dataclasses import dataclass
from typing import Protocol

from far_audit.core.config import settings
from far_audit.core.errors import LLMError

logger = logging.getLogger(__name__)

JSON_MODE_INSTRUCTION = (
    "Respond with a single JSON object only. Do not wrap it in markdown and do not add commentary."
)


@dataclass
class ChatUsage:
    model: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    latency_ms: int = 0


class ChatClient(Protocol):
    async def chat(
        self,
        messages: list[dict[str, str]],
        *,
        temperature: float,
        max_tokens: int,
        json_mode: bool = False,
    ) -> str: ...


def split_system(messages: list[dict[str, str]]) -> tuple[str, list[dict[str, str]]]:
    """Claude takes the system prompt as a parameter, not a message."""
    system_parts = [m["content"] for m in messages if m.get("role") == "system"]
    rest = [
        {"role": m["role"], "content": m["content"]}
        for m in messages
        if m.get("role") != "system"
    ]
    return "\n\n".join(system_parts), rest


def strip_json_fences(text: str) -> str:
    """Drop ```json ... ``` fences the model sometimes adds despite instructions."""
    text = text.strip()
    if text.startswith("```"):
        lines = text.split("\n")
        inner = [line for line in lines if not line.startswith("```")]
        text = "\n".join(inner).strip()
    return text


class AnthropicChatClient:
    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        timeout: float | None = None,
    ):
        self.api_key = settings.ANTHROPIC_API_KEY if api_key is None else api_key
        self.model = model or settings.ANTHROPIC_MODEL
        self.timeout = timeout or settings.LLM_TIMEOUT_SECONDS
        self.last_usage: ChatUsage | None = None
        self._client = None

    def _get_client(self):
        if not self.api_key:
            raise LLMError("ANTHROPIC_API_KEY is not configured")
        if self._client is None:
            import anthropic  # lazy import keeps start-up cheap when review is unused

            self._client = anthropic.AsyncAnthropic(api_key=self.api_key, timeout=self.timeout)
        return self._client

    async def chat(
        self,
        messages: list[dict[str, str]],
        *,
        temperature: float,
        max_tokens: int,
        json_mode: bool = False,
    ) -> str:
        import anthropic

        client = self._get_client()
        system, conversation = split_system(messages)
        if json_mode:
            system = f"{system}\n\n{JSON_MODE_INSTRUCTION}" if system else JSON_MODE_INSTRUCTION

        start = time.monotonic()
        try:
            message = await client.messages.create(
                model=self.model,
                max_tokens=max_tokens,
                temperature=temperature,
                system=system,
                messages=conversation,
            )
        except anthropic.APIError as exc:
            raise LLMError(f"Anthropic API error: {exc}") from exc
        latency_ms = int((time.monotonic() - start) * 1000)

        text = "".join(
            block.text for block in message.content if getattr(block, "type", "") == "text"
        )
        self.last_usage = ChatUsage(
            model=self.model,
            prompt_tokens=message.usage.input_tokens if message.usage else 0,
            completion_tokens=message.usage.output_tokens if message.usage else 0,
            latency_ms=latency_ms,
        )
        logger.info(
            "LLM chat: model=%s prompt_tokens=%d completion_tokens=%d latency_ms=%d",
            self.model, self.last_usage.prompt_tokens, self.last_usage.completion_tokens, latency_ms,
        )
        return strip_json_fences(text) if json_mode else text

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None


def truncate_for_log(payload, limit: int = 4000) -> str:
    text = payload if isinstance(payload, str) else json.dumps(payload, default=str)
    return text if len(text) <= limit else text[:limit] + "…"
