"""Fold streamed completion deltas into one assistant message."""

from __future__ import annotations

import json
import logging
from collections.abc import Collection
from dataclasses import dataclass
from typing import Any

from polyllm.errors import ProtocolViolationError, ProviderError
from polyllm.types import FunctionCall, ParsedResponseMessage

_logger = logging.getLogger(__name__)


@dataclass
class StreamAccumulator:
    """Append-only state of one streamed response.

    Only the first tool-call slot (index 0) is tracked. Responses carrying
    several parallel tool calls keep the first one and ignore the rest.
    """

    identifier: str = ""
    text: str = ""
    function_name: str = ""
    function_arguments: str = ""
    record_count: int = 0
    chunk_count: int = 0
    _ignored_tool_slots: bool = False

    def apply(self, record: dict[str, Any]) -> None:
        self.record_count += 1

        choices = record.get("choices")
        if not choices:
            error = record.get("error")
            if error:
                _logger.error("%s Stream error: provider error: %s", self.identifier, error)
                code = error.get("code") if isinstance(error, dict) else None
                raise ProviderError("openai", "stream error", code=code, data=error)
            if self.record_count != 1:
                _logger.error("%s Stream error: no choices in JSON: %s", self.identifier, record)
            return

        if not isinstance(choices, list) or not isinstance(choices[0], dict):
            raise ProtocolViolationError(f"Stream error: malformed choices in record: {record!r}")
        delta = choices[0].get("delta") or {}
        if not isinstance(delta, dict):
            raise ProtocolViolationError(f"Stream error: malformed delta in record: {record!r}")

        legacy_call = delta.get("function_call")
        if legacy_call:
            self._append_call(legacy_call)

        tool_calls = delta.get("tool_calls") or []
        if not isinstance(tool_calls, list):
            raise ProtocolViolationError(f"Stream error: malformed tool_calls in record: {record!r}")
        for tool_call in tool_calls:
            if not isinstance(tool_call, dict):
                raise ProtocolViolationError(f"Stream error: malformed tool call delta: {tool_call!r}")
            if tool_call.get("index", 0) != 0:
                if not self._ignored_tool_slots:
                    _logger.debug("%s Ignoring parallel tool calls beyond the first", self.identifier)
                    self._ignored_tool_slots = True
                continue
            self._append_call(tool_call.get("function") or {})

        content = delta.get("content")
        if isinstance(content, str):
            self.text += content

    def _append_call(self, fragment: Any) -> None:
        if not isinstance(fragment, dict):
            raise ProtocolViolationError(f"Stream error: malformed function call delta: {fragment!r}")
        name = fragment.get("name")
        arguments = fragment.get("arguments")
        if not isinstance(name or "", str) or not isinstance(arguments or "", str):
            raise ProtocolViolationError(f"Stream error: malformed function call delta: {fragment!r}")
        if name:
            self.function_name += name
        if arguments:
            self.function_arguments += arguments

    def finalize(self, allowed_names: Collection[str] | None = None) -> ParsedResponseMessage:
        """Produce the final message; raises when the stream carried nothing usable."""
        function_call = None
        if self.function_name:
            if allowed_names is not None and self.function_name not in allowed_names:
                raise ProtocolViolationError(
                    f"Stream error: received function call with unknown name: {self.function_name}"
                )
            function_call = FunctionCall(
                name=self.function_name,
                arguments=parse_arguments(self.function_arguments),
            )

        if not self.text and function_call is None:
            _logger.error(
                "%s Stream error: received message without content or function_call, raw: %s",
                self.identifier,
                json.dumps(
                    {
                        "paragraph": self.text,
                        "function_name": self.function_name,
                        "function_arguments": self.function_arguments,
                    }
                ),
            )
            raise ProtocolViolationError(
                "Stream error: received message without content or function_call"
            )

        return ParsedResponseMessage(content=self.text or None, function_call=function_call)


def parse_arguments(raw: str | dict[str, Any] | None) -> dict[str, Any]:
    """Normalize function-call arguments to a mapping.

    OpenAI-compatible APIs send a JSON string; Anthropic and Google send
    structured data already.
    """
    if raw is None or raw == "":
        return {}
    if isinstance(raw, dict):
        return raw
    if not isinstance(raw, str):
        raise ProtocolViolationError(f"Function call arguments are not an object: {raw!r}")
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ProtocolViolationError(f"Malformed function call arguments: {raw!r}") from exc
    if not isinstance(parsed, dict):
        raise ProtocolViolationError(f"Function call arguments are not an object: {raw!r}")
    return parsed
