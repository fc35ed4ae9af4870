"""Groq provider implementation."""

from __future__ import annotations

from typing import Any

import httpx

from polyllm.config import GroqConfig, RetrySettings
from polyllm.images import ImageNormalizer
from polyllm.providers.base import BaseProvider, ModelCapabilities
from polyllm.providers.openai import parse_chat_completion, serialize_tool_choice, serialize_tools
from polyllm.retry import LinearBackoff, RetryPolicy, RetryState
from polyllm.types import GenericMessage, GenericRequest, ParsedResponseMessage

_CHAT_PATH = "/chat/completions"


class GroqProvider(BaseProvider):
    """Async wrapper for Groq's OpenAI-compatible chat completions (non-streaming)."""

    name = "groq"

    def __init__(
        self,
        config: GroqConfig,
        *,
        image_normalizer: ImageNormalizer | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(
            base_url=config.base_url,
            timeout_s=config.timeout_s,
            image_normalizer=image_normalizer,
            transport=transport,
        )
        self.config = config
        self._headers = {
            "Authorization": f"Bearer {config.api_key}",
            "Content-Type": "application/json",
        }

    @property
    def capabilities(self) -> ModelCapabilities:
        return ModelCapabilities(images=False)

    def retry_policy(self, settings: RetrySettings, attempts: int | None = None) -> RetryPolicy:
        return LinearBackoff(
            settings.groq_attempts if attempts is None else attempts,
            provider="Groq",
            step_s=settings.linear_backoff_s,
        )

    async def build_payload(self, identifier: str, req: GenericRequest) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": req.model.value,
            "messages": [self._serialize_message(identifier, m) for m in req.messages],
        }
        if req.temperature is not None:
            payload["temperature"] = req.temperature
        if req.functions:
            payload["tools"] = serialize_tools(req.functions)
            payload["tool_choice"] = serialize_tool_choice(req.function_call or "auto")
        return payload

    async def send(self, identifier: str, state: RetryState) -> ParsedResponseMessage:
        data = await self._post_json(_CHAT_PATH, headers=self._headers, payload=state.payload)
        state.last_response = data
        return self.parse_response(identifier, data)

    def parse_response(self, identifier: str, data: dict[str, Any]) -> ParsedResponseMessage:
        return parse_chat_completion(self.name, identifier, data)

    def _serialize_message(self, identifier: str, message: GenericMessage) -> dict[str, Any]:
        # text only; attachments are logged and dropped
        self.usable_files(identifier, message)
        return {"role": message.role, "content": message.content}
