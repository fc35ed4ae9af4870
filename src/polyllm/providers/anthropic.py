"""Anthropic provider implementation, direct or through AWS Bedrock."""

from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Any

import httpx

from polyllm.accumulator import parse_arguments
from polyllm.config import AnthropicConfig, NormalizerConfig, RetrySettings
from polyllm.errors import ProtocolViolationError, ProviderError, TransportError, ValidationError
from polyllm.images import ImageNormalizer, normalize_to_png
from polyllm.normalize import normalize_messages
from polyllm.providers.base import BaseProvider, ModelCapabilities
from polyllm.retry import AnthropicRemediation, RetryPolicy, RetryState
from polyllm.types import (
    FunctionCall,
    FunctionChoice,
    FunctionDefinition,
    GenericMessage,
    GenericRequest,
    ParsedResponseMessage,
)

_MESSAGES_PATH = "/v1/messages"

_THINKING_SECTION = re.compile(r"<thinking>.*?</thinking>", re.DOTALL)
_ANSWER_TAGS = re.compile(r"<answer>|</answer>")
_ALL_TAGS = re.compile(r"<thinking>|</thinking>|<answer>|</answer>")


class AnthropicProvider(BaseProvider):
    """Async wrapper for the Anthropic Messages API (non-streaming).

    Messages are repaired with :func:`normalize_messages` before sending,
    since the API insists on strictly alternating user/assistant turns.
    """

    name = "anthropic"
    _logger = logging.getLogger(__name__)

    def __init__(
        self,
        config: AnthropicConfig,
        *,
        normalizer: NormalizerConfig | None = None,
        image_normalizer: ImageNormalizer | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        bedrock_client: Any = None,
    ) -> None:
        super().__init__(
            base_url=config.base_url,
            timeout_s=config.timeout_s,
            image_normalizer=image_normalizer,
            transport=transport,
        )
        self.config = config
        self.normalizer = normalizer or NormalizerConfig()
        self._bedrock = bedrock_client
        self._headers = {
            "content-type": "application/json",
            "x-api-key": config.api_key,
            "anthropic-version": config.api_version,
        }
        if config.beta:
            self._headers["anthropic-beta"] = config.beta

    @property
    def capabilities(self) -> ModelCapabilities:
        return ModelCapabilities(images=True)

    def retry_policy(self, settings: RetrySettings, attempts: int | None = None) -> RetryPolicy:
        return AnthropicRemediation(
            settings.anthropic_attempts if attempts is None else attempts,
            step_s=settings.linear_backoff_s,
        )

    def initial_state(self, payload: dict[str, Any]) -> RetryState:
        return RetryState(payload=payload, service=self.config.service)

    async def build_payload(self, identifier: str, req: GenericRequest) -> dict[str, Any]:
        messages = [await self._serialize_message(identifier, m) for m in req.messages]
        payload: dict[str, Any] = {
            "model": req.model.value,
            "messages": normalize_messages(messages, self.normalizer),
            "max_tokens": self.config.max_tokens,
        }
        if req.temperature is not None:
            payload["temperature"] = req.temperature
        if req.functions and req.function_call != "none":
            payload["tools"] = serialize_tools(req.functions)
            if isinstance(req.function_call, FunctionChoice):
                payload["tool_choice"] = {"type": "tool", "name": req.function_call.name}
        return payload

    async def send(self, identifier: str, state: RetryState) -> ParsedResponseMessage:
        self._logger.info(
            "%s Calling Anthropic API: %s %s",
            identifier,
            state.payload["model"],
            [tool["name"] for tool in state.payload.get("tools", ())],
        )
        if state.service == "bedrock":
            data = await self._invoke_bedrock(state.payload)
        else:
            data = await self._post_json(_MESSAGES_PATH, headers=self._headers, payload=state.payload)
        state.last_response = data
        return self.parse_response(identifier, data)

    def parse_response(self, identifier: str, data: dict[str, Any]) -> ParsedResponseMessage:
        answers = data.get("content") or []
        if not isinstance(answers, list):
            self._logger.error("%s Malformed answers in Anthropic API: %s", identifier, data)
            raise ProtocolViolationError("Malformed answers in Anthropic API")
        self._logger.debug("%s Anthropic API answers: %s", identifier, json.dumps(answers))
        if not answers:
            self._logger.error("%s Missing answer in Anthropic API: %s", identifier, data)
            raise ProtocolViolationError("Missing answer in Anthropic API")

        text_response = ""
        function_calls: list[FunctionCall] = []
        for answer in answers:
            kind = answer.get("type") if isinstance(answer, dict) else None
            if not kind:
                self._logger.error("%s Missing answer type in Anthropic API: %s", identifier, data)
                raise ProtocolViolationError("Missing answer type in Anthropic API")

            if kind == "text":
                raw_text = answer.get("text") or ""
                if not isinstance(raw_text, str):
                    raise ProtocolViolationError("Malformed text answer in Anthropic API")
                text = strip_reasoning(raw_text)
                text_response = f"{text_response}\n\n{text}" if text_response else text
            elif kind == "tool_use":
                name = answer.get("name")
                if not name or not isinstance(name, str):
                    self._logger.error("%s Missing tool name in Anthropic API: %s", identifier, answer)
                    raise ProtocolViolationError("Missing tool name in Anthropic API")
                function_calls.append(FunctionCall(name=name, arguments=parse_arguments(answer.get("input"))))

        if not text_response and not function_calls:
            self._logger.error(
                "%s Missing text & fns in Anthropic API response: %s", identifier, json.dumps(data)
            )
            raise ProtocolViolationError("Missing text & fns in Anthropic API response")

        return ParsedResponseMessage(
            content=text_response or None,
            function_call=function_calls[0] if function_calls else None,
        )

    async def _serialize_message(self, identifier: str, message: GenericMessage) -> dict[str, Any]:
        files = self.usable_files(identifier, message)
        if not files:
            return {"role": message.role, "content": message.content}

        blocks: list[dict[str, Any]] = [{"type": "text", "text": message.content}]
        for file in files:
            data = await normalize_to_png(self.image_normalizer, file)
            blocks.append(
                {
                    "type": "image",
                    "source": {"type": "base64", "media_type": "image/png", "data": data},
                }
            )
        return {"role": message.role, "content": blocks}

    async def _invoke_bedrock(self, payload: dict[str, Any]) -> dict[str, Any]:
        client = self._get_bedrock_client()
        body = {key: value for key, value in payload.items() if key != "model"}
        body["anthropic_version"] = self.config.bedrock_version

        from botocore.exceptions import BotoCoreError, ClientError

        try:
            raw = await asyncio.to_thread(
                _invoke_and_read,
                client,
                contentType="application/json",
                body=json.dumps(body),
                modelId=self.config.bedrock_model_id,
            )
        except ClientError as exc:
            error = exc.response.get("Error", {})
            raise ProviderError(
                "bedrock",
                error.get("Message") or str(exc),
                status_code=exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode"),
                code=error.get("Code"),
                data=exc.response,
            ) from exc
        except BotoCoreError as exc:
            raise TransportError(f"bedrock: {exc}") from exc

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ProtocolViolationError("bedrock: response is not JSON") from exc
        if not isinstance(data, dict):
            raise ProtocolViolationError("bedrock: unexpected response body")
        return data

    def _get_bedrock_client(self) -> Any:
        """Lazily create the Bedrock runtime client."""
        if self._bedrock is None:
            try:
                import boto3
            except ImportError as exc:
                raise ValidationError(
                    "boto3 is required for the bedrock service; install polyllm[bedrock]"
                ) from exc
            self._bedrock = boto3.client("bedrock-runtime", region_name=self.config.bedrock_region)
        return self._bedrock

    @staticmethod
    def error_code(error: dict[str, Any]) -> str | None:
        # Anthropic reports the machine-readable code as error.type
        kind = error.get("type")
        return str(kind) if kind is not None else None


def _invoke_and_read(client: Any, **kwargs: Any) -> bytes:
    # reading the streaming body blocks on the socket as well
    response = client.invoke_model(**kwargs)
    return response["body"].read()


def serialize_tools(functions: list[FunctionDefinition]) -> list[dict[str, Any]]:
    return [
        {
            "name": f.name,
            "description": f.description or "",
            "input_schema": f.parameters,
        }
        for f in functions
    ]


def strip_reasoning(text: str) -> str:
    """Drop ``<thinking>`` sections and ``<answer>`` tags from a text answer.

    When nothing is left, the text inside the tags is returned instead.
    """
    cleaned = _ANSWER_TAGS.sub("", _THINKING_SECTION.sub("", text)).strip()
    if cleaned:
        return cleaned
    return _ALL_TAGS.sub("", text)
