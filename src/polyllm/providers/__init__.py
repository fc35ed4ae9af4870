"""Provider definitions for polyllm."""

from .anthropic import AnthropicProvider
from .base import BaseProvider, ModelCapabilities
from .google import GoogleProvider
from .groq import GroqProvider
from .openai import OpenAIProvider

__all__ = [
    "BaseProvider",
    "ModelCapabilities",
    "OpenAIProvider",
    "AnthropicProvider",
    "GroqProvider",
    "GoogleProvider",
]
