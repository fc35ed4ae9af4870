import json
import unittest

import httpx

from polyllm.client import LLMClient
from polyllm.config import (
    AnthropicConfig,
    AzureDeployment,
    GoogleConfig,
    GroqConfig,
    OpenAIConfig,
    RetrySettings,
)
from polyllm.errors import RetriesExhaustedError, UnsupportedProviderError, ValidationError
from polyllm.providers.anthropic import AnthropicProvider
from polyllm.providers.google import GoogleProvider
from polyllm.providers.groq import GroqProvider
from polyllm.providers.openai import OpenAIProvider
from polyllm.types import (
    ClaudeModel,
    FunctionDefinition,
    GeminiModel,
    GenericMessage,
    GenericRequest,
    GPTModel,
    GroqModel,
)

HELLO_STREAM = (
    b'data: {"choices":[{"delta":{"content":"Hel"}}]}\n',
    b'data: {"choices":[{"delta":{"content":"lo"}}]}\n',
    b"data: [DONE]\n",
)


class Recorder:
    """MockTransport handler that records requests and replays scripted responses."""

    def __init__(self, *responses) -> None:
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        respond = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        return respond(request)

    @property
    def bodies(self) -> list[dict]:
        return [json.loads(r.content) for r in self.requests]


def _stream_response(*parts: bytes) -> httpx.Response:
    async def _gen():
        for part in parts:
            yield part

    return httpx.Response(200, content=_gen())


def _json(status: int, body: dict):
    return lambda request: httpx.Response(status, json=body)


def _connect_error(request: httpx.Request) -> httpx.Response:
    raise httpx.ConnectError("connection refused", request=request)


class _Sleeps:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def _hello_request(model=GPTModel.GPT4O, **kwargs) -> GenericRequest:
    return GenericRequest(
        model=model,
        messages=[GenericMessage(role="user", content="Tell me a joke.")],
        **kwargs,
    )


class OpenAIClientTests(unittest.IsolatedAsyncioTestCase):
    async def test_streamed_hello(self) -> None:
        recorder = Recorder(lambda request: _stream_response(*HELLO_STREAM))
        provider = OpenAIProvider(
            OpenAIConfig(api_key="sk-test", org_id="org-1"),
            transport=httpx.MockTransport(recorder),
        )
        client = LLMClient(openai=provider, sleep=_Sleeps())

        answer = await client.call_with_retries("test5", _hello_request())
        await client.aclose()

        self.assertEqual(answer.content, "Hello")
        self.assertIsNone(answer.function_call)
        request = recorder.requests[0]
        self.assertEqual(str(request.url), "https://api.openai.com/v1/chat/completions")
        self.assertEqual(request.headers["authorization"], "Bearer sk-test")
        self.assertEqual(request.headers["openai-organization"], "org-1")
        self.assertTrue(recorder.bodies[0]["stream"])

    async def test_transport_failures_exhaust_retries(self) -> None:
        recorder = Recorder(_connect_error)
        sleeps = _Sleeps()
        provider = OpenAIProvider(OpenAIConfig(api_key="k"), transport=httpx.MockTransport(recorder))
        client = LLMClient(openai=provider, sleep=sleeps)

        with self.assertLogs("polyllm", level="ERROR"):
            with self.assertRaises(RetriesExhaustedError) as ctx:
                await client.call_with_retries("test", _hello_request(temperature=0.1), retries=5)
        await client.aclose()

        bodies = recorder.bodies
        self.assertEqual(len(bodies), 6)
        self.assertEqual((bodies[0]["model"], bodies[0]["temperature"]), ("gpt-4o", 0.1))
        for body in bodies[1:]:
            self.assertEqual((body["model"], body["temperature"]), ("gpt-4-1106-preview", 0.8))
        self.assertEqual(ctx.exception.attempts, 6)
        self.assertEqual(sleeps.delays, [0.25] * 5)

    async def test_azure_content_filter_moves_to_openai(self) -> None:
        filtered = _json(400, {"error": {"code": "content_filter", "message": "filtered"}})
        recorder = Recorder(
            filtered,
            filtered,
            filtered,
            lambda request: _stream_response(*HELLO_STREAM),
        )
        deployment = AzureDeployment(resource="res", deployment="dep", api_version="2024-02-01", api_key="az")
        config = OpenAIConfig(
            service="azure",
            api_key="k",
            model_config_map={
                GPTModel.GPT4O: deployment,
                GPTModel.GPT4_1106_PREVIEW: deployment,
            },
        )
        provider = OpenAIProvider(config, transport=httpx.MockTransport(recorder))
        client = LLMClient(openai=provider, sleep=_Sleeps())

        with self.assertLogs("polyllm", level="WARNING"):
            answer = await client.call_with_retries("test", _hello_request())
        await client.aclose()

        hosts = [r.url.host for r in recorder.requests]
        self.assertEqual(hosts, ["res.openai.azure.com"] * 3 + ["api.openai.com"])
        self.assertEqual(recorder.requests[0].headers["api-key"], "az")
        self.assertEqual(recorder.requests[0].url.params["api-version"], "2024-02-01")
        self.assertEqual(answer.content, "Hello")
        self.assertEqual(config.service, "azure")

    async def test_fallback_model_without_azure_deployment_reaches_openai(self) -> None:
        recorder = Recorder(
            _json(500, {"error": {"message": "server error"}}),
            lambda request: _stream_response(*HELLO_STREAM),
        )
        sleeps = _Sleeps()
        deployment = AzureDeployment(resource="res", deployment="dep", api_version="2024-02-01", api_key="az")
        config = OpenAIConfig(service="azure", api_key="k", model_config_map={GPTModel.GPT4O: deployment})
        provider = OpenAIProvider(config, transport=httpx.MockTransport(recorder))
        client = LLMClient(openai=provider, sleep=sleeps)

        with self.assertLogs("polyllm", level="WARNING"):
            answer = await client.call_with_retries("test", _hello_request())
        await client.aclose()

        self.assertEqual(answer.content, "Hello")
        self.assertEqual([r.url.host for r in recorder.requests], ["res.openai.azure.com", "api.openai.com"])
        self.assertEqual(recorder.bodies[1]["model"], GPTModel.GPT4_1106_PREVIEW.value)
        self.assertEqual(sleeps.delays, [0.25] * 4)

    async def test_openai_without_provider_or_config(self) -> None:
        client = LLMClient()
        with self.assertRaises(UnsupportedProviderError):
            await client.call_with_retries("test", _hello_request())

    async def test_azure_without_deployment_map_is_not_retried(self) -> None:
        recorder = Recorder(lambda request: _stream_response(*HELLO_STREAM))
        provider = OpenAIProvider(OpenAIConfig(), transport=httpx.MockTransport(recorder))
        client = LLMClient(openai=provider, sleep=_Sleeps())
        with self.assertRaises(ValidationError):
            await client.call_with_retries(
                "test", _hello_request(), openai_config=OpenAIConfig(service="azure")
            )
        await client.aclose()
        self.assertEqual(recorder.requests, [])


class AnthropicClientTests(unittest.IsolatedAsyncioTestCase):
    async def test_messages_are_normalized_on_the_wire(self) -> None:
        recorder = Recorder(
            _json(
                200,
                {"content": [{"type": "tool_use", "name": "generate_sonnet", "input": {"topic": "nature"}}]},
            )
        )
        provider = AnthropicProvider(AnthropicConfig(api_key="ak"), transport=httpx.MockTransport(recorder))
        client = LLMClient(anthropic=provider, sleep=_Sleeps())
        req = GenericRequest(
            model=ClaudeModel.HAIKU,
            messages=[GenericMessage(role="assistant", content="hi")],
            functions=[FunctionDefinition(name="generate_sonnet", parameters={"type": "object"})],
        )

        answer = await client.call_with_retries("test3", req)
        await client.aclose()

        self.assertEqual(answer.function_call.arguments, {"topic": "nature"})
        body = recorder.bodies[0]
        self.assertEqual([m["role"] for m in body["messages"]], ["user", "assistant", "user"])
        request = recorder.requests[0]
        self.assertEqual(str(request.url), "https://api.anthropic.com/v1/messages")
        self.assertEqual(request.headers["x-api-key"], "ak")
        self.assertEqual(request.headers["anthropic-version"], "2023-06-01")

    async def test_rate_limit_then_success_on_sonnet(self) -> None:
        recorder = Recorder(
            _json(429, {"error": {"type": "rate_limit_error", "message": "slow"}}),
            _json(200, {"content": [{"type": "text", "text": "done"}]}),
        )
        sleeps = _Sleeps()
        provider = AnthropicProvider(AnthropicConfig(api_key="ak"), transport=httpx.MockTransport(recorder))
        client = LLMClient(anthropic=provider, sleep=sleeps)

        with self.assertLogs("polyllm.retry", level="WARNING"):
            answer = await client.call_with_retries("test", _hello_request(ClaudeModel.HAIKU))
        await client.aclose()

        self.assertEqual(answer.content, "done")
        self.assertEqual([b["model"] for b in recorder.bodies], [ClaudeModel.HAIKU.value, ClaudeModel.SONNET.value])
        self.assertEqual(sleeps.delays, [0.0])

    async def test_malformed_answer_is_retried(self) -> None:
        recorder = Recorder(
            _json(200, {"content": [{"type": "tool_use", "input": {}}]}),
            _json(200, {"content": [{"type": "text", "text": "done"}]}),
        )
        sleeps = _Sleeps()
        provider = AnthropicProvider(AnthropicConfig(api_key="ak"), transport=httpx.MockTransport(recorder))
        client = LLMClient(anthropic=provider, sleep=sleeps)

        with self.assertLogs("polyllm", level="ERROR"):
            answer = await client.call_with_retries("test", _hello_request(ClaudeModel.HAIKU))
        await client.aclose()

        self.assertEqual(answer.content, "done")
        self.assertEqual(len(recorder.requests), 2)
        self.assertEqual(sleeps.delays, [0.0])

    async def test_exhaustion_keeps_last_response(self) -> None:
        recorder = Recorder(_json(200, {"content": []}))
        provider = AnthropicProvider(AnthropicConfig(api_key="ak"), transport=httpx.MockTransport(recorder))
        client = LLMClient(anthropic=provider, retry=RetrySettings(anthropic_attempts=3), sleep=_Sleeps())

        with self.assertLogs("polyllm", level="ERROR"):
            with self.assertRaises(RetriesExhaustedError) as ctx:
                await client.call_with_retries("test", _hello_request(ClaudeModel.HAIKU))
        await client.aclose()

        self.assertEqual(ctx.exception.attempts, 3)
        self.assertEqual(ctx.exception.last_response, {"content": []})
        self.assertEqual(recorder.bodies[-1]["model"], ClaudeModel.SONNET.value)


class GroqAndGoogleClientTests(unittest.IsolatedAsyncioTestCase):
    async def test_groq_retries_without_mutation(self) -> None:
        recorder = Recorder(
            _json(503, {"error": {"code": "service_unavailable"}}),
            _json(200, {"choices": [{"message": {"content": "joke"}}]}),
        )
        provider = GroqProvider(GroqConfig(api_key="gk"), transport=httpx.MockTransport(recorder))
        client = LLMClient(groq=provider, sleep=_Sleeps())

        with self.assertLogs("polyllm.retry", level="ERROR"):
            answer = await client.call_with_retries("test4", _hello_request(GroqModel.LLAMA_3_70B_8192))
        await client.aclose()

        self.assertEqual(answer.content, "joke")
        self.assertEqual(recorder.bodies[0], recorder.bodies[1])
        self.assertEqual(str(recorder.requests[0].url), "https://api.groq.com/openai/v1/chat/completions")

    async def test_explicit_attempt_bound_is_honoured(self) -> None:
        recorder = Recorder(_json(503, {"error": {"code": "service_unavailable"}}))
        sleeps = _Sleeps()
        provider = GroqProvider(GroqConfig(api_key="gk"), transport=httpx.MockTransport(recorder))
        client = LLMClient(groq=provider, sleep=sleeps)
        req = _hello_request(GroqModel.LLAMA_3_70B_8192)

        with self.assertLogs("polyllm.retry", level="ERROR"):
            with self.assertRaises(RetriesExhaustedError) as ctx:
                await client.call_with_retries("test", req, retries=1)
        self.assertEqual(ctx.exception.attempts, 1)
        self.assertEqual(len(recorder.requests), 1)
        self.assertEqual(sleeps.delays, [])

        with self.assertRaises(ValidationError):
            await client.call_with_retries("test", req, retries=0)
        await client.aclose()
        self.assertEqual(len(recorder.requests), 1)

    async def test_google_generate_content(self) -> None:
        recorder = Recorder(
            _json(200, {"candidates": [{"content": {"parts": [{"text": "Rome"}]}}]})
        )
        provider = GoogleProvider(GoogleConfig(api_key="gk"), transport=httpx.MockTransport(recorder))
        client = LLMClient(google=provider, sleep=_Sleeps())

        answer = await client.call_with_retries("test", _hello_request(GeminiModel.GEMINI_15_PRO))
        await client.aclose()

        self.assertEqual(answer.content, "Rome")
        request = recorder.requests[0]
        self.assertTrue(str(request.url).endswith("/models/gemini-1.5-pro-latest:generateContent"))
        self.assertEqual(request.headers["x-goog-api-key"], "gk")
        self.assertNotIn("model", recorder.bodies[0])

    async def test_unconfigured_provider(self) -> None:
        client = LLMClient()
        with self.assertRaises(UnsupportedProviderError):
            await client.call_with_retries("test", _hello_request(GroqModel.LLAMA_3_70B_8192))

    def test_plain_string_model_resolves(self) -> None:
        req = GenericRequest(model="claude-3-haiku-20240307", messages=[])
        self.assertIs(req.model, ClaudeModel.HAIKU)


if __name__ == "__main__":
    unittest.main()
