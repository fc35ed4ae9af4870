"""Call OpenAI, Anthropic, Groq and Gemini models through one request shape."""

from polyllm.client import LLMClient
from polyllm.config import (
    AnthropicConfig,
    AzureDeployment,
    GoogleConfig,
    GroqConfig,
    NormalizerConfig,
    OpenAIConfig,
    RetrySettings,
)
from polyllm.errors import (
    ErrorKind,
    PolyLLMError,
    ProtocolViolationError,
    ProviderError,
    RetriesExhaustedError,
    TransportError,
    ValidationError,
)
from polyllm.types import (
    ClaudeModel,
    File,
    FunctionCall,
    FunctionDefinition,
    GeminiModel,
    GenericMessage,
    GenericRequest,
    GPTModel,
    GroqModel,
    ParsedResponseMessage,
)

__all__ = [
    "LLMClient",
    "AnthropicConfig",
    "AzureDeployment",
    "GoogleConfig",
    "GroqConfig",
    "NormalizerConfig",
    "OpenAIConfig",
    "RetrySettings",
    "ErrorKind",
    "PolyLLMError",
    "ProtocolViolationError",
    "ProviderError",
    "RetriesExhaustedError",
    "TransportError",
    "ValidationError",
    "ClaudeModel",
    "File",
    "FunctionCall",
    "FunctionDefinition",
    "GeminiModel",
    "GenericMessage",
    "GenericRequest",
    "GPTModel",
    "GroqModel",
    "ParsedResponseMessage",
]
