import asyncio
import unittest
from collections.abc import AsyncIterator

import httpx

from polyllm.errors import ProviderError, StreamEndedError, StreamTimeoutError
from polyllm.streaming import StreamPhase, StreamReader


def _chunks(*parts: bytes, stall_after: int | None = None) -> AsyncIterator[bytes]:
    async def _gen() -> AsyncIterator[bytes]:
        for index, part in enumerate(parts):
            if stall_after is not None and index == stall_after:
                await asyncio.sleep(10)
            yield part

    return _gen()


async def _read(*parts: bytes, timeout: float = 1.0, stall_after: int | None = None, allowed=None):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=_chunks(*parts, stall_after=stall_after))

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        async with client.stream("POST", "https://example.test/chat") as response:
            reader = StreamReader(
                "test",
                response,
                chunk_timeout_s=timeout,
                allowed_function_names=allowed,
            )
            try:
                return await reader.read(), reader
            except Exception as exc:
                exc.reader = reader  # type: ignore[attr-defined]
                raise


class StreamReaderTests(unittest.IsolatedAsyncioTestCase):
    async def test_hello_scenario(self) -> None:
        message, reader = await _read(
            b'data: {"choices":[{"delta":{"content":"Hel"}}]}\n',
            b'data: {"choices":[{"delta":{"content":"lo"}}]}\n',
            b"data: [DONE]\n",
        )
        self.assertEqual(message.content, "Hello")
        self.assertIsNone(message.function_call)
        self.assertEqual(reader.phase, StreamPhase.SUCCEEDED)
        self.assertEqual(reader.accumulator.chunk_count, 3)

    async def test_record_split_across_reads(self) -> None:
        message, _ = await _read(
            b'data: {"choices":[{"delta":{"function_call":{"name":"get_capital","argu',
            b'ments":"{\\"country_name\\": \\"France\\"}"}}}]}\n\ndata: [DO',
            b"NE]\n\n",
            allowed={"get_capital"},
        )
        self.assertEqual(message.function_call.name, "get_capital")
        self.assertEqual(message.function_call.arguments, {"country_name": "France"})

    async def test_eof_without_sentinel_fails(self) -> None:
        with self.assertLogs("polyllm.streaming", level="ERROR"):
            with self.assertRaises(StreamEndedError) as ctx:
                await _read(b'data: {"choices":[{"delta":{"content":"partial"}}]}\n')
        self.assertEqual(ctx.exception.reader.phase, StreamPhase.FAILED)

    async def test_chunk_timeout_aborts(self) -> None:
        with self.assertLogs("polyllm.streaming", level="ERROR"):
            with self.assertRaises(StreamTimeoutError) as ctx:
                await _read(
                    b'data: {"choices":[{"delta":{"content":"so far"}}]}\n',
                    b"data: [DONE]\n",
                    timeout=0.05,
                    stall_after=1,
                )
        self.assertEqual(ctx.exception.partial_text, "so far")
        self.assertTrue(ctx.exception.reader.response.is_closed)

    async def test_in_stream_error_record(self) -> None:
        with self.assertLogs("polyllm.accumulator", level="ERROR"):
            with self.assertRaises(ProviderError) as ctx:
                await _read(b'data: {"error":{"code":"content_filter","message":"no"}}\n')
        self.assertEqual(ctx.exception.code, "content_filter")


if __name__ == "__main__":
    unittest.main()
