"""Provider-agnostic base interfaces and helpers."""

from __future__ import annotations

import asyncio
import functools
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import httpx

from polyllm.config import RetrySettings
from polyllm.errors import ProtocolViolationError, ProviderError, TransportError
from polyllm.images import ImageNormalizer
from polyllm.retry import RetryPolicy, RetryRunner, RetryState
from polyllm.types import File, GenericMessage, GenericRequest, ParsedResponseMessage

_logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModelCapabilities:
    """Describes what a provider accepts in a request."""

    images: bool
    # non-image attachments accepted, by mime prefix
    extra_mime_prefixes: tuple[str, ...] = ()


class BaseProvider(ABC):
    """Abstract base class for provider implementations.

    A provider translates a :class:`GenericRequest` into its wire payload,
    performs one attempt per :meth:`send` and unwraps the answer into a
    :class:`ParsedResponseMessage`. :meth:`complete` wraps the attempts in
    the provider's retry policy.
    """

    name: str

    def __init__(
        self,
        *,
        base_url: str = "",
        timeout_s: float = 60.0,
        image_normalizer: ImageNormalizer | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(base_url=base_url, timeout=timeout_s, transport=transport)
        self.image_normalizer = image_normalizer

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    @property
    @abstractmethod
    def capabilities(self) -> ModelCapabilities:
        """Return capability flags for this provider."""
        raise NotImplementedError

    @abstractmethod
    def retry_policy(self, settings: RetrySettings, attempts: int | None = None) -> RetryPolicy:
        """Return the retry policy for one call."""
        raise NotImplementedError

    @abstractmethod
    async def build_payload(self, identifier: str, req: GenericRequest) -> dict[str, Any]:
        """Translate a generic request into this provider's request body."""
        raise NotImplementedError

    @abstractmethod
    async def send(self, identifier: str, state: RetryState) -> ParsedResponseMessage:
        """Perform a single attempt with the current retry state."""
        raise NotImplementedError

    @abstractmethod
    def parse_response(self, identifier: str, data: dict[str, Any]) -> ParsedResponseMessage:
        """Unwrap the provider response envelope."""
        raise NotImplementedError

    def initial_state(self, payload: dict[str, Any]) -> RetryState:
        return RetryState(payload=payload)

    async def complete(
        self,
        identifier: str,
        req: GenericRequest,
        policy: RetryPolicy,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> ParsedResponseMessage:
        """Build the payload once and send it until the policy gives up."""
        payload = await self.build_payload(identifier, req)
        state = self.initial_state(payload)
        runner: RetryRunner[ParsedResponseMessage] = RetryRunner(policy, sleep=sleep)
        return await runner.run(identifier, functools.partial(self.send, identifier), state)

    def usable_files(self, identifier: str, message: GenericMessage) -> list[File]:
        """Attachments this provider can carry; the rest are skipped with a warning."""
        caps = self.capabilities
        kept: list[File] = []
        for file in message.files:
            if file.is_image and caps.images:
                kept.append(file)
            elif not file.is_image and file.mime_type.lower().startswith(caps.extra_mime_prefixes):
                kept.append(file)
            else:
                _logger.warning(
                    "%s Skipping %s attachment unsupported by %s",
                    identifier,
                    file.mime_type,
                    self.name,
                )
        return kept

    async def _post_json(
        self,
        url: str,
        *,
        headers: dict[str, str],
        payload: dict[str, Any],
        timeout_s: float | None = None,
    ) -> dict[str, Any]:
        kwargs: dict[str, Any] = {"headers": headers, "json": payload}
        if timeout_s is not None:
            kwargs["timeout"] = timeout_s
        try:
            response = await self._client.post(url, **kwargs)
        except httpx.HTTPError as exc:
            raise TransportError(f"{self.name}: {exc}") from exc
        return self._json_or_error(response)

    def _json_or_error(self, response: httpx.Response) -> dict[str, Any]:
        if response.status_code >= 400:
            raise self._error_from_body(response.status_code, response.text, response.reason_phrase)
        try:
            data = response.json()
        except json.JSONDecodeError as exc:
            raise ProtocolViolationError(f"{self.name}: response is not JSON") from exc
        if not isinstance(data, dict):
            raise ProtocolViolationError(f"{self.name}: unexpected response body")
        return data

    def _error_from_body(self, status_code: int, text: str, reason: str) -> ProviderError:
        data: Any = None
        try:
            data = json.loads(text) if text else None
        except json.JSONDecodeError:
            data = None
        error = data.get("error") if isinstance(data, dict) else None
        code = self.error_code(error) if isinstance(error, dict) else None
        message = error.get("message") if isinstance(error, dict) else None
        return ProviderError(
            self.name,
            message or text or reason,
            status_code=status_code,
            code=code,
            data=data,
        )

    @staticmethod
    def error_code(error: dict[str, Any]) -> str | None:
        """Extract the machine-readable code from an ``error`` object."""
        code = error.get("code")
        return str(code) if code is not None else None
