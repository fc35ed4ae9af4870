"""Bounded retries with provider-specific payload remediation."""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from polyllm.errors import PolyLLMError, ProviderError, RetriesExhaustedError, ValidationError
from polyllm.types import ClaudeModel, GPTModel

T = TypeVar("T")

_logger = logging.getLogger(__name__)

CONTENT_POLICY_VIOLATION = "content_policy_violation"
CONTENT_FILTER = "content_filter"
RATE_LIMIT_ERROR = "rate_limit_error"
AZURE_DEPLOYMENT_MISSING = "deployment_not_configured"


@dataclass
class RetryState:
    """Mutable state of one call-with-retries invocation.

    Remediation rewrites ``payload`` and ``service`` in place; changes carry
    over to every later attempt.
    """

    payload: dict[str, Any]
    service: str | None = None
    attempt: int = 0
    last_response: Any = None


class RetryPolicy(ABC):
    """Decides how many attempts to make and how to repair between them."""

    provider: str = ""

    def __init__(self, max_attempts: int) -> None:
        if max_attempts < 1:
            raise ValidationError(f"max_attempts must be >= 1, got {max_attempts}")
        self.max_attempts = max_attempts

    def before_attempt(self, identifier: str, state: RetryState) -> None:
        """Hook run right before each attempt."""

    @abstractmethod
    def after_failure(self, identifier: str, state: RetryState, error: PolyLLMError) -> None:
        """Mutate ``state`` in response to a failed attempt."""

    @abstractmethod
    def delay_s(self, attempt: int) -> float:
        """Seconds to wait after ``attempt`` failed."""

    def exhausted_message(self, identifier: str) -> str:
        return f"{identifier}: Failed to call {self.provider} API after {self.max_attempts} attempts"


class OpenAIRemediation(RetryPolicy):
    """Retry policy for the streamed OpenAI/Azure path.

    Every failure downgrades the model and raises the temperature. Content
    policy rejections strip non-text content. Azure is abandoned for the
    direct API on a persistent content filter (third attempt onward) and
    unconditionally on the fourth. The fifth attempt disables tool use.
    """

    provider = "OpenAI"

    def __init__(
        self,
        retries: int = 5,
        *,
        fallback_model: str = GPTModel.GPT4_1106_PREVIEW.value,
        fallback_temperature: float = 0.8,
        delay: float = 0.25,
    ) -> None:
        super().__init__(retries + 1)
        self.retries = retries
        self.fallback_model = fallback_model
        self.fallback_temperature = fallback_temperature
        self.delay = delay

    def after_failure(self, identifier: str, state: RetryState, error: PolyLLMError) -> None:
        i = state.attempt
        payload = state.payload
        code = error.code if isinstance(error, ProviderError) else None
        if code:
            _logger.error(
                "%s Retry #%d failed with API error: %s %s",
                identifier,
                i,
                code,
                json.dumps({"data": getattr(error, "data", None)}, default=str),
            )

        # context length issues and truncated JSON tend to clear up on a larger model
        payload["model"] = self.fallback_model
        payload["temperature"] = self.fallback_temperature

        if code == CONTENT_POLICY_VIOLATION:
            _logger.warning("%s Stripping non-text content after content policy violation", identifier)
            payload["messages"] = strip_non_text_content(payload.get("messages", []))

        if i >= 2 and state.service == "azure" and code == CONTENT_FILTER:
            _logger.warning("%s Switching to OpenAI service due to content filter error", identifier)
            state.service = "openai"

        if i == 3 and state.service == "azure":
            _logger.warning("%s Switching to OpenAI service after repeated Azure failures", identifier)
            state.service = "openai"

        if i == 4 and payload.get("tools"):
            # e.g. a model stuck on calling the same function
            payload["tool_choice"] = "none"

        _logger.error(
            "%s Retrying due to error: received bad response from OpenAI API [%s-%s]: %s",
            identifier,
            state.service,
            payload.get("model"),
            error,
        )

    def delay_s(self, attempt: int) -> float:
        return self.delay

    def exhausted_message(self, identifier: str) -> str:
        return (
            f"{identifier}: Failed to call OpenAI API after {self.retries} attempts. "
            "Please lookup OpenAI status for active issues."
        )


class LinearBackoff(RetryPolicy):
    """Pure retry: no payload changes, delay grows with the attempt index."""

    def __init__(self, max_attempts: int = 5, *, provider: str = "", step_s: float = 0.125) -> None:
        super().__init__(max_attempts)
        self.provider = provider
        self.step_s = step_s

    def after_failure(self, identifier: str, state: RetryState, error: PolyLLMError) -> None:
        _logger.error(
            "%s Retrying due to error: received bad response from %s API: %s",
            identifier,
            self.provider,
            error,
        )

    def delay_s(self, attempt: int) -> float:
        return self.step_s * attempt


class AnthropicRemediation(LinearBackoff):
    """Fall back to the Sonnet tier on rate limits and for the final attempt."""

    def __init__(
        self,
        max_attempts: int = 5,
        *,
        fallback_model: str = ClaudeModel.SONNET.value,
        step_s: float = 0.125,
    ) -> None:
        super().__init__(max_attempts, provider="Anthropic", step_s=step_s)
        self.fallback_model = fallback_model

    def before_attempt(self, identifier: str, state: RetryState) -> None:
        if state.attempt == self.max_attempts - 1:
            state.payload["model"] = self.fallback_model

    def after_failure(self, identifier: str, state: RetryState, error: PolyLLMError) -> None:
        super().after_failure(identifier, state, error)
        if isinstance(error, ProviderError) and error.code == RATE_LIMIT_ERROR:
            _logger.warning("%s Rate limited, switching to %s", identifier, self.fallback_model)
            state.payload["model"] = self.fallback_model


class RetryRunner(Generic[T]):
    """Run ``call`` until it succeeds or the policy gives up."""

    def __init__(
        self,
        policy: RetryPolicy,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.policy = policy
        self._sleep = sleep

    async def run(
        self,
        identifier: str,
        call: Callable[[RetryState], Awaitable[T]],
        state: RetryState,
    ) -> T:
        policy = self.policy
        last_error: PolyLLMError | None = None
        for attempt in range(policy.max_attempts):
            state.attempt = attempt
            policy.before_attempt(identifier, state)
            try:
                return await call(state)
            except PolyLLMError as exc:
                if not exc.retryable:
                    raise
                last_error = exc
                if isinstance(exc, ProviderError) and exc.data is not None:
                    state.last_response = exc.data
                policy.after_failure(identifier, state, exc)

            if attempt < policy.max_attempts - 1:
                await self._sleep(policy.delay_s(attempt))

        message = policy.exhausted_message(identifier)
        _logger.error("%s", message)
        raise RetriesExhaustedError(
            message,
            attempts=policy.max_attempts,
            last_error=last_error,
            last_response=state.last_response,
        ) from last_error


def strip_non_text_content(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Drop every non-text block from OpenAI-shaped messages."""
    stripped: list[dict[str, Any]] = []
    for message in messages:
        content = message.get("content")
        if isinstance(content, list):
            texts = [block for block in content if block.get("type") == "text"]
            message = {**message, "content": texts}
        stripped.append(message)
    return stripped
