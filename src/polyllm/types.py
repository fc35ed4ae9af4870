"""Provider-agnostic request/response models."""

from __future__ import annotations

from enum import Enum
from typing import Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from polyllm.errors import ValidationError

Role = Literal["system", "user", "assistant"]


class GPTModel(str, Enum):
    GPT35_0613 = "gpt-3.5-turbo-0613"
    GPT35_0613_16K = "gpt-3.5-turbo-16k-0613"
    GPT35_0125 = "gpt-3.5-turbo-0125"
    GPT4_1106_PREVIEW = "gpt-4-1106-preview"
    GPT4_0125_PREVIEW = "gpt-4-0125-preview"
    GPT4_0409 = "gpt-4-turbo-2024-04-09"
    GPT4O = "gpt-4o"


class ClaudeModel(str, Enum):
    HAIKU = "claude-3-haiku-20240307"
    SONNET = "claude-3-sonnet-20240229"
    OPUS = "claude-3-opus-20240229"


class GroqModel(str, Enum):
    LLAMA_3_70B_8192 = "llama3-70b-8192"


class GeminiModel(str, Enum):
    GEMINI_15_PRO = "gemini-1.5-pro-latest"


ModelName = Union[GPTModel, ClaudeModel, GroqModel, GeminiModel]


class Provider(str, Enum):
    """Which wire protocol a model is served over."""

    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GROQ = "groq"
    GOOGLE = "google"


_PROVIDER_BY_ENUM: dict[type[Enum], Provider] = {
    GPTModel: Provider.OPENAI,
    ClaudeModel: Provider.ANTHROPIC,
    GroqModel: Provider.GROQ,
    GeminiModel: Provider.GOOGLE,
}


def resolve_provider(model: ModelName | str) -> Provider:
    """Return the provider serving ``model``.

    Plain strings are matched against every model enumeration.
    """
    for enum_cls, provider in _PROVIDER_BY_ENUM.items():
        if isinstance(model, enum_cls):
            return provider
    for enum_cls, provider in _PROVIDER_BY_ENUM.items():
        try:
            enum_cls(model)
        except ValueError:
            continue
        return provider
    raise ValidationError(f"Unknown model: {model!r}")


class File(BaseModel):
    """Attachment carried alongside a message."""

    model_config = ConfigDict(populate_by_name=True)

    mime_type: str = Field(alias="mimeType")
    url: str | None = None
    data: str | None = None

    @model_validator(mode="after")
    def _exactly_one_source(self) -> File:
        if (self.url is None) == (self.data is None):
            raise ValueError("File needs exactly one of url or data")
        return self

    @property
    def is_image(self) -> bool:
        return self.mime_type.lower().startswith("image/")


class FunctionCall(BaseModel):
    """A function invocation requested by the model."""

    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)


class GenericMessage(BaseModel):
    """Single chat message."""

    role: Role
    content: str
    timestamp: str | None = None
    files: list[File] = Field(default_factory=list)
    function_calls: list[FunctionCall] = Field(default_factory=list)


class FunctionDefinition(BaseModel):
    """JSON-schema function definition."""

    name: str
    description: str | None = None
    parameters: dict[str, Any] = Field(default_factory=dict)


class FunctionChoice(BaseModel):
    name: str


class GenericRequest(BaseModel):
    """Normalized request shared by all providers."""

    model_config = ConfigDict(frozen=True)

    model: ModelName
    messages: list[GenericMessage]
    functions: list[FunctionDefinition] | None = None
    function_call: Literal["none", "auto"] | FunctionChoice | None = None
    temperature: float | None = None

    @property
    def provider(self) -> Provider:
        return resolve_provider(self.model)


class ParsedResponseMessage(BaseModel):
    """Assistant reply normalized across providers."""

    role: Literal["assistant"] = "assistant"
    content: str | None = None
    function_call: FunctionCall | None = None

    @model_validator(mode="after")
    def _has_payload(self) -> ParsedResponseMessage:
        if not self.content and self.function_call is None:
            raise ValueError("response carries neither content nor function_call")
        return self
