"""Google Generative AI (Gemini) provider implementation."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from polyllm.accumulator import parse_arguments
from polyllm.config import GoogleConfig, RetrySettings
from polyllm.errors import ProtocolViolationError
from polyllm.images import ImageNormalizer, normalize_to_png
from polyllm.providers.base import BaseProvider, ModelCapabilities
from polyllm.retry import LinearBackoff, RetryPolicy, RetryState
from polyllm.types import FunctionCall, FunctionChoice, GenericMessage, GenericRequest, ParsedResponseMessage

_ROLES = {"user": "user", "assistant": "model"}
_CALLING_MODES = {"none": "NONE", "auto": "AUTO"}


class GoogleProvider(BaseProvider):
    """Async wrapper for the Gemini ``generateContent`` endpoint."""

    name = "google"
    _logger = logging.getLogger(__name__)

    def __init__(
        self,
        config: GoogleConfig,
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
        self._headers = {"x-goog-api-key": config.api_key, "Content-Type": "application/json"}

    @property
    def capabilities(self) -> ModelCapabilities:
        return ModelCapabilities(images=True)

    def retry_policy(self, settings: RetrySettings, attempts: int | None = None) -> RetryPolicy:
        return LinearBackoff(
            settings.google_attempts if attempts is None else attempts,
            provider="Google",
            step_s=settings.linear_backoff_s,
        )

    async def build_payload(self, identifier: str, req: GenericRequest) -> dict[str, Any]:
        system_parts: list[str] = []
        contents: list[dict[str, Any]] = []
        for message in req.messages:
            if message.role == "system":
                system_parts.append(message.content)
                continue
            contents.append(
                {
                    "role": _ROLES[message.role],
                    "parts": await self._serialize_parts(identifier, message),
                }
            )

        payload: dict[str, Any] = {"model": req.model.value, "contents": contents}
        if system_parts:
            payload["systemInstruction"] = {"parts": [{"text": "\n".join(system_parts)}]}
        if req.temperature is not None:
            payload["generationConfig"] = {"temperature": req.temperature}
        if req.functions:
            payload["tools"] = [
                {
                    "functionDeclarations": [
                        f.model_dump(exclude_none=True) for f in req.functions
                    ]
                }
            ]
            if req.function_call is not None:
                payload["toolConfig"] = {"functionCallingConfig": _calling_config(req.function_call)}
        return payload

    async def send(self, identifier: str, state: RetryState) -> ParsedResponseMessage:
        body = dict(state.payload)
        model = body.pop("model")
        data = await self._post_json(
            f"/models/{model}:generateContent",
            headers=self._headers,
            payload=body,
        )
        state.last_response = data
        return self.parse_response(identifier, data)

    def parse_response(self, identifier: str, data: dict[str, Any]) -> ParsedResponseMessage:
        candidates = data.get("candidates") or []
        candidate = candidates[0] if isinstance(candidates, list) and candidates else None
        body = candidate.get("content") if isinstance(candidate, dict) else None
        parts = body.get("parts") if isinstance(body, dict) else None
        if not parts or not isinstance(parts, list):
            self._logger.error("%s Missing answer in Google API: %s", identifier, data)
            raise ProtocolViolationError("Missing answer in Google API")

        texts: list[str] = []
        function_call = None
        for part in parts:
            if not isinstance(part, dict):
                self._logger.error("%s Malformed answer part in Google API: %s", identifier, part)
                raise ProtocolViolationError("Malformed answer part in Google API")
            if "text" in part:
                if not isinstance(part["text"], str):
                    raise ProtocolViolationError("Malformed text part in Google API")
                texts.append(part["text"])
            elif "functionCall" in part:
                call = part["functionCall"]
                name = call.get("name") if isinstance(call, dict) else None
                if not name or not isinstance(name, str):
                    self._logger.error("%s Missing function name in Google API: %s", identifier, part)
                    raise ProtocolViolationError("Missing function name in Google API")
                if function_call is None:
                    function_call = FunctionCall(name=name, arguments=parse_arguments(call.get("args")))
            else:
                self._logger.error("%s Unrecognized answer part in Google API: %s", identifier, part)
                raise ProtocolViolationError("Missing answer type in Google API")

        content = "".join(texts) or None
        if content is None and function_call is None:
            raise ProtocolViolationError("Missing text & fns in Google API response")
        return ParsedResponseMessage(content=content, function_call=function_call)

    async def _serialize_parts(self, identifier: str, message: GenericMessage) -> list[dict[str, Any]]:
        parts: list[dict[str, Any]] = [{"text": message.content}]
        for file in self.usable_files(identifier, message):
            data = await normalize_to_png(self.image_normalizer, file)
            parts.append({"inlineData": {"mimeType": "image/png", "data": data}})
        return parts

    @staticmethod
    def error_code(error: dict[str, Any]) -> str | None:
        code = error.get("status") or error.get("code")
        return str(code) if code is not None else None


def _calling_config(choice: str | FunctionChoice) -> dict[str, Any]:
    if isinstance(choice, FunctionChoice):
        return {"mode": "ANY", "allowedFunctionNames": [choice.name]}
    return {"mode": _CALLING_MODES[choice]}
