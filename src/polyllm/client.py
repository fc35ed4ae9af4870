"""Async client routing generic requests to the configured providers."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from polyllm.config import OpenAIConfig, RetrySettings
from polyllm.errors import UnsupportedProviderError
from polyllm.images import ImageNormalizer
from polyllm.providers.anthropic import AnthropicProvider
from polyllm.providers.base import BaseProvider
from polyllm.providers.google import GoogleProvider
from polyllm.providers.groq import GroqProvider
from polyllm.providers.openai import OpenAIProvider
from polyllm.types import GenericRequest, ParsedResponseMessage, Provider, resolve_provider

_logger = logging.getLogger(__name__)


class LLMClient:
    """High-level coordinator for calling configured providers with retries."""

    def __init__(
        self,
        *,
        openai: OpenAIProvider | None = None,
        anthropic: AnthropicProvider | None = None,
        groq: GroqProvider | None = None,
        google: GoogleProvider | None = None,
        retry: RetrySettings | None = None,
        image_normalizer: ImageNormalizer | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._providers: dict[Provider, BaseProvider] = {}
        for key, provider in (
            (Provider.OPENAI, openai),
            (Provider.ANTHROPIC, anthropic),
            (Provider.GROQ, groq),
            (Provider.GOOGLE, google),
        ):
            if provider is not None:
                self._providers[key] = provider
        self._openai = openai
        self.retry = retry or RetrySettings()
        self.image_normalizer = image_normalizer
        self._sleep = sleep

    async def aclose(self) -> None:
        """Close every provider's HTTP client."""
        for provider in self._providers.values():
            await provider.aclose()

    def get_provider(self, provider: Provider) -> BaseProvider:
        """Return a provider by its registered name."""
        try:
            return self._providers[provider]
        except KeyError as exc:
            raise UnsupportedProviderError(provider.value) from exc

    async def call_with_retries(
        self,
        identifier: str,
        req: GenericRequest,
        *,
        openai_config: OpenAIConfig | None = None,
        retries: int | None = None,
        chunk_timeout_s: float | None = None,
    ) -> ParsedResponseMessage:
        """Send ``req`` to the provider serving its model and return the reply.

        ``retries`` overrides the provider's default bound: retries beyond the
        first try for OpenAI, total attempts for the other providers.
        ``openai_config`` and ``chunk_timeout_s`` only apply to OpenAI models.
        Raises :class:`~polyllm.errors.RetriesExhaustedError` once the bound
        is used up.
        """
        target = resolve_provider(req.model)
        _logger.info("%s Calling %s API with retries: %s", identifier, target.value, req.model.value)

        if target is Provider.OPENAI:
            return await self._call_openai(identifier, req, openai_config, retries, chunk_timeout_s)

        provider = self.get_provider(target)
        policy = provider.retry_policy(self.retry, retries)
        return await provider.complete(identifier, req, policy, sleep=self._sleep)

    async def _call_openai(
        self,
        identifier: str,
        req: GenericRequest,
        config: OpenAIConfig | None,
        retries: int | None,
        chunk_timeout_s: float | None,
    ) -> ParsedResponseMessage:
        registered = self._openai
        if registered is None:
            if config is None:
                raise UnsupportedProviderError(Provider.OPENAI.value)
            provider = OpenAIProvider(
                config,
                chunk_timeout_s=chunk_timeout_s or self.retry.chunk_timeout_s,
                image_normalizer=self.image_normalizer,
            )
            try:
                return await provider.complete(
                    identifier, req, provider.retry_policy(self.retry, retries), sleep=self._sleep
                )
            finally:
                await provider.aclose()

        provider = registered.with_options(config=config, chunk_timeout_s=chunk_timeout_s)
        policy = provider.retry_policy(self.retry, retries)
        return await provider.complete(identifier, req, policy, sleep=self._sleep)
