"""Drive a streamed completion from first byte to final message."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Collection
from enum import Enum

import httpx

from polyllm.accumulator import StreamAccumulator
from polyllm.errors import StreamEndedError, StreamTimeoutError, TransportError
from polyllm.sse import SSEFramer
from polyllm.types import ParsedResponseMessage

_logger = logging.getLogger(__name__)


class StreamPhase(str, Enum):
    AWAITING_FIRST_CHUNK = "awaiting_first_chunk"
    ACCUMULATING = "accumulating"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class StreamReader:
    """Read one streamed response with a timeout on every chunk.

    The only clean end of a stream is the ``[DONE]`` record; transport EOF
    before it is a failure. A chunk that takes longer than
    ``chunk_timeout_s`` aborts the request.
    """

    def __init__(
        self,
        identifier: str,
        response: httpx.Response,
        *,
        chunk_timeout_s: float,
        allowed_function_names: Collection[str] | None = None,
    ) -> None:
        self.identifier = identifier
        self.response = response
        self.chunk_timeout_s = chunk_timeout_s
        self.allowed_function_names = allowed_function_names
        self.framer = SSEFramer()
        self.accumulator = StreamAccumulator(identifier=identifier)
        self.phase = StreamPhase.AWAITING_FIRST_CHUNK

    async def read(self) -> ParsedResponseMessage:
        try:
            message = await self._read()
        except BaseException:
            self.phase = StreamPhase.FAILED
            raise
        self.phase = StreamPhase.SUCCEEDED
        return message

    async def _read(self) -> ParsedResponseMessage:
        chunks = self.response.aiter_bytes()
        while True:
            raw = await self._next_chunk(chunks)
            if raw is None:
                acc = self.accumulator
                _logger.error(
                    "%s Stream error: ended after %d chunks via reader done flag. %r %r %r",
                    self.identifier,
                    acc.chunk_count,
                    acc.text,
                    acc.function_name,
                    acc.function_arguments,
                )
                raise StreamEndedError(acc.chunk_count)

            self.accumulator.chunk_count += 1
            self.phase = StreamPhase.ACCUMULATING

            for record in self.framer.feed(raw):
                self.accumulator.apply(record)

            if self.framer.done:
                _logger.info(
                    "%s Stream explicitly marked as done after %d chunks.",
                    self.identifier,
                    self.accumulator.chunk_count,
                )
                return self.accumulator.finalize(self.allowed_function_names)

    async def _next_chunk(self, chunks: AsyncIterator[bytes]) -> bytes | None:
        try:
            return await asyncio.wait_for(anext(chunks), timeout=self.chunk_timeout_s)
        except StopAsyncIteration:
            return None
        except asyncio.TimeoutError:
            _logger.error(
                "%s Stream error: aborted due to timeout after %s s. %r",
                self.identifier,
                self.chunk_timeout_s,
                self.accumulator.text,
            )
            await self.response.aclose()
            raise StreamTimeoutError(self.chunk_timeout_s, self.accumulator.text) from None
        except httpx.HTTPError as exc:
            raise TransportError(f"Stream error: {exc}") from exc
