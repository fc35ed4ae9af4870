"""Typed configuration consumed by providers and the retry controller."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

from polyllm.types import GPTModel

OpenAIService = Literal["openai", "azure"]
AnthropicService = Literal["anthropic", "bedrock"]


class AzureDeployment(BaseModel):
    """Where a single GPT model is deployed on Azure."""

    resource: str
    deployment: str
    api_version: str
    api_key: str


class OpenAIConfig(BaseModel):
    service: OpenAIService = "openai"
    api_key: str = ""
    base_url: str = "https://api.openai.com/v1"
    org_id: str | None = None
    azure_endpoint: str = (
        "https://{resource}.openai.azure.com/openai/deployments/{deployment}/chat/completions"
    )
    model_config_map: dict[GPTModel, AzureDeployment] | None = None


class AnthropicConfig(BaseModel):
    service: AnthropicService = "anthropic"
    api_key: str = ""
    base_url: str = "https://api.anthropic.com"
    api_version: str = "2023-06-01"
    beta: str | None = "tools-2024-04-04"
    max_tokens: int = 4096
    timeout_s: float = 60.0
    bedrock_region: str = "us-east-1"
    bedrock_model_id: str = "anthropic.claude-3-haiku-20240307-v1:0"
    bedrock_version: str = "bedrock-2023-05-31"


class GroqConfig(BaseModel):
    api_key: str = ""
    base_url: str = "https://api.groq.com/openai/v1"
    timeout_s: float = 60.0


class GoogleConfig(BaseModel):
    api_key: str = ""
    base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    timeout_s: float = 60.0


class NormalizerConfig(BaseModel):
    """How the Anthropic message sequence is repaired."""

    system_mode: Literal["fold", "drop"] = "fold"
    alternation_mode: Literal["insert", "merge"] = "insert"
    placeholder: str = "..."
    merge_separator: str = "\n---\n"


class RetrySettings(BaseModel):
    # openai_retries counts retries beyond the first try; the others count attempts.
    openai_retries: int = Field(default=5, ge=0)
    anthropic_attempts: int = Field(default=5, ge=1)
    groq_attempts: int = Field(default=5, ge=1)
    google_attempts: int = Field(default=5, ge=1)
    openai_delay_s: float = 0.25
    linear_backoff_s: float = 0.125
    chunk_timeout_s: float = 15.0
