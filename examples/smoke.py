import asyncio

from polyllm.client import LLMClient
from polyllm.config import GroqConfig, OpenAIConfig
from polyllm.errors import PolyLLMError
from polyllm.providers.groq import GroqProvider
from polyllm.providers.openai import OpenAIProvider
from polyllm.types import FunctionDefinition, GenericMessage, GenericRequest, GeminiModel, GPTModel


async def main() -> None:
    client = LLMClient(
        openai=OpenAIProvider(OpenAIConfig(api_key="DUMMY")),
        groq=GroqProvider(GroqConfig(api_key="DUMMY")),
    )

    req = GenericRequest(
        model=GPTModel.GPT4O,
        messages=[GenericMessage(role="user", content="What is the capital of France?")],
        functions=[
            FunctionDefinition(
                name="get_capital",
                parameters={
                    "type": "object",
                    "properties": {"country_name": {"type": "string"}},
                },
            )
        ],
        function_call="auto",
    )

    # A dummy key fails every attempt, so this walks the whole remediation path.
    try:
        print(await client.call_with_retries("smoke", req, retries=1))
    except PolyLLMError as e:
        print("Expected error:", type(e).__name__, e)

    # Gemini is not configured here.
    try:
        await client.call_with_retries(
            "smoke", req.model_copy(update={"model": GeminiModel.GEMINI_15_PRO})
        )
    except PolyLLMError as e:
        print("Expected error:", type(e).__name__, e)
    finally:
        await client.aclose()


if __name__ == "__main__":
    asyncio.run(main())
