"""OpenAI and Azure OpenAI provider implementation."""

from __future__ import annotations

import copy
import logging
from typing import Any

import httpx

from polyllm.accumulator import parse_arguments
from polyllm.config import OpenAIConfig, RetrySettings
from polyllm.errors import PolyLLMError, ProtocolViolationError, ProviderError, TransportError, ValidationError
from polyllm.images import ImageNormalizer, is_heic_image, normalize_to_png, validate_image_mime_type
from polyllm.providers.base import BaseProvider, ModelCapabilities
from polyllm.retry import AZURE_DEPLOYMENT_MISSING, OpenAIRemediation, RetryPolicy, RetryState
from polyllm.streaming import StreamReader
from polyllm.types import (
    File,
    FunctionCall,
    FunctionChoice,
    FunctionDefinition,
    GenericMessage,
    GenericRequest,
    GPTModel,
    ParsedResponseMessage,
)

_CHAT_PATH = "/chat/completions"


class OpenAIProvider(BaseProvider):
    """Streamed chat completions against OpenAI or an Azure deployment."""

    name = "openai"
    _logger = logging.getLogger(__name__)

    def __init__(
        self,
        config: OpenAIConfig,
        *,
        chunk_timeout_s: float = 15.0,
        timeout_s: float = 60.0,
        image_normalizer: ImageNormalizer | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(timeout_s=timeout_s, image_normalizer=image_normalizer, transport=transport)
        self.config = config
        self.chunk_timeout_s = chunk_timeout_s

    def with_options(
        self,
        *,
        config: OpenAIConfig | None = None,
        chunk_timeout_s: float | None = None,
    ) -> OpenAIProvider:
        """Return a view of this provider sharing its HTTP client."""
        clone = copy.copy(self)
        if config is not None:
            clone.config = config
        if chunk_timeout_s is not None:
            clone.chunk_timeout_s = chunk_timeout_s
        return clone

    @property
    def capabilities(self) -> ModelCapabilities:
        return ModelCapabilities(images=True, extra_mime_prefixes=("audio/",))

    def retry_policy(self, settings: RetrySettings, attempts: int | None = None) -> RetryPolicy:
        retries = settings.openai_retries if attempts is None else attempts
        return OpenAIRemediation(retries, delay=settings.openai_delay_s)

    def initial_state(self, payload: dict[str, Any]) -> RetryState:
        return RetryState(payload=payload, service=self.config.service)

    async def build_payload(self, identifier: str, req: GenericRequest) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": req.model.value,
            "messages": [await self._serialize_message(identifier, m) for m in req.messages],
        }
        if req.temperature is not None:
            payload["temperature"] = req.temperature
        if req.functions:
            payload["tools"] = serialize_tools(req.functions)
            if req.function_call is not None:
                payload["tool_choice"] = serialize_tool_choice(req.function_call)
        return payload

    async def send(self, identifier: str, state: RetryState) -> ParsedResponseMessage:
        payload = state.payload
        url, headers = self._endpoint(identifier, state.service, payload["model"])
        allowed = {tool["function"]["name"] for tool in payload.get("tools", ())} or None

        try:
            async with self._client.stream(
                "POST",
                url,
                headers=headers,
                json={**payload, "stream": True},
            ) as response:
                if response.status_code >= 400:
                    body = await response.aread()
                    raise self._error_from_body(
                        response.status_code,
                        body.decode(errors="replace"),
                        response.reason_phrase,
                    )
                reader = StreamReader(
                    identifier,
                    response,
                    chunk_timeout_s=self.chunk_timeout_s,
                    allowed_function_names=allowed,
                )
                return await reader.read()
        except PolyLLMError:
            raise
        except httpx.HTTPError as exc:
            raise TransportError(f"Stream error: {exc}") from exc

    def parse_response(self, identifier: str, data: dict[str, Any]) -> ParsedResponseMessage:
        """Unwrap a non-streamed chat completion body."""
        return parse_chat_completion(self.name, identifier, data)

    def _endpoint(self, identifier: str, service: str | None, model: str) -> tuple[str, dict[str, str]]:
        config = self.config
        if service == "azure":
            self._logger.info("%s Using Azure OpenAI service %s", identifier, model)
            if not config.model_config_map:
                raise ValidationError(
                    "OpenAI config model_config_map is required when using Azure OpenAI service."
                )
            try:
                deployment = config.model_config_map[GPTModel(model)]
            except (KeyError, ValueError) as exc:
                # retryable: remediation may still move the call to the direct service
                raise ProviderError(
                    "azure",
                    f"No Azure deployment configured for model {model}",
                    code=AZURE_DEPLOYMENT_MISSING,
                ) from exc
            url = config.azure_endpoint.format(
                resource=deployment.resource,
                deployment=deployment.deployment,
            )
            headers = {"Content-Type": "application/json", "api-key": deployment.api_key}
            return f"{url}?api-version={deployment.api_version}", headers

        self._logger.info("%s Using OpenAI service %s", identifier, model)
        headers = {
            "Authorization": f"Bearer {config.api_key}",
            "Content-Type": "application/json",
        }
        if config.org_id:
            self._logger.info("%s Using orgId %s", identifier, config.org_id)
            headers["OpenAI-Organization"] = config.org_id
        return config.base_url.rstrip("/") + _CHAT_PATH, headers

    async def _serialize_message(self, identifier: str, message: GenericMessage) -> dict[str, Any]:
        files = self.usable_files(identifier, message)
        if not files:
            return {"role": message.role, "content": message.content}

        blocks: list[dict[str, Any]] = [{"type": "text", "text": message.content}]
        for file in files:
            blocks.append(await self._serialize_file(file))
        return {"role": message.role, "content": blocks}

    async def _serialize_file(self, file: File) -> dict[str, Any]:
        if not file.is_image:
            return {"type": "audio_url", "audio_url": {"url": _file_url(file, file.mime_type)}}
        if file.data is not None and is_heic_image(mime=file.mime_type):
            png = await normalize_to_png(self.image_normalizer, file)
            return {"type": "image_url", "image_url": {"url": f"data:image/png;base64,{png}"}}
        if file.data is not None:
            validate_image_mime_type(file.mime_type)
        return {"type": "image_url", "image_url": {"url": _file_url(file, file.mime_type.lower())}}


def serialize_tools(functions: list[FunctionDefinition]) -> list[dict[str, Any]]:
    return [
        {
            "type": "function",
            "function": {
                "name": f.name,
                "description": f.description or "",
                "parameters": f.parameters,
            },
        }
        for f in functions
    ]


def serialize_tool_choice(choice: str | FunctionChoice) -> str | dict[str, Any]:
    if isinstance(choice, FunctionChoice):
        return {"type": "function", "function": {"name": choice.name}}
    return choice


def _file_url(file: File, mime_type: str) -> str:
    if file.url is not None:
        return file.url
    return f"data:{mime_type};base64,{file.data}"


def parse_chat_completion(provider: str, identifier: str, data: dict[str, Any]) -> ParsedResponseMessage:
    """Unwrap a non-streamed OpenAI-compatible chat completion body."""
    choices = data.get("choices") or []
    if not choices:
        raise ProtocolViolationError(f"Missing answer in {provider} API response")

    if not isinstance(choices, list) or not isinstance(choices[0], dict):
        raise ProtocolViolationError(f"Malformed choices in {provider} API response")
    message = choices[0].get("message") or {}
    if not isinstance(message, dict):
        raise ProtocolViolationError(f"Malformed message in {provider} API response")

    function_call = None
    tool_calls = message.get("tool_calls") or []
    if not isinstance(tool_calls, list) or (tool_calls and not isinstance(tool_calls[0], dict)):
        raise ProtocolViolationError(f"Malformed tool_calls in {provider} API response")
    raw_call = tool_calls[0].get("function") if tool_calls else message.get("function_call")
    if raw_call:
        if not isinstance(raw_call, dict) or not isinstance(raw_call.get("name"), str):
            raise ProtocolViolationError(f"Malformed function call in {provider} API response")
        if raw_call["name"]:
            function_call = FunctionCall(
                name=raw_call["name"],
                arguments=parse_arguments(raw_call.get("arguments")),
            )

    content = message.get("content") or None
    if content is not None and not isinstance(content, str):
        raise ProtocolViolationError(f"Malformed content in {provider} API response")
    if content is None and function_call is None:
        raise ProtocolViolationError(f"Missing text & fns in {provider} API response")
    return ParsedResponseMessage(content=content, function_call=function_call)
