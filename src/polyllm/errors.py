"""Package specific exception hierarchy."""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Coarse failure classification inspected by the retry controller."""

    TRANSPORT = "transport"
    PROVIDER = "provider"
    PROTOCOL = "protocol"
    VALIDATION = "validation"
    EXHAUSTED = "exhausted"


class PolyLLMError(Exception):
    """Base exception for polyllm package."""

    kind: ErrorKind = ErrorKind.PROTOCOL
    retryable: bool = True


class TransportError(PolyLLMError):
    """Network failure, timeout or aborted request."""

    kind = ErrorKind.TRANSPORT


class StreamTimeoutError(TransportError):
    """Raised when a single chunk read exceeds the per-chunk timeout."""

    def __init__(self, timeout_s: float, partial_text: str = "") -> None:
        super().__init__(f"Stream error: aborted due to timeout after {timeout_s} s.")
        self.timeout_s = timeout_s
        self.partial_text = partial_text


class StreamEndedError(TransportError):
    """Raised when the transport reports EOF before the terminal sentinel."""

    def __init__(self, chunks: int) -> None:
        super().__init__("Stream error: ended prematurely")
        self.chunks = chunks


class ProviderError(PolyLLMError):
    """Represents provider-specific HTTP or API errors."""

    kind = ErrorKind.PROVIDER

    def __init__(
        self,
        provider: str,
        message: str,
        status_code: int | None = None,
        *,
        code: str | None = None,
        data: Any = None,
    ) -> None:
        suffix = f" (status {status_code})" if status_code is not None else ""
        super().__init__(f"{provider}: {message}{suffix}")
        self.provider = provider
        self.status_code = status_code
        self.code = code
        self.data = data


class ProtocolViolationError(PolyLLMError):
    """The provider answered with something that is not a usable message."""

    kind = ErrorKind.PROTOCOL


class ValidationError(PolyLLMError):
    """Deterministic input or configuration error; never retried."""

    kind = ErrorKind.VALIDATION
    retryable = False


class UnsupportedProviderError(ValidationError):
    """Raised when a provider has not been configured."""

    def __init__(self, provider: str) -> None:
        super().__init__(f"Provider '{provider}' is not available.")
        self.provider = provider


class RetriesExhaustedError(PolyLLMError):
    """All attempts of a call-with-retries invocation failed."""

    kind = ErrorKind.EXHAUSTED
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        attempts: int,
        last_error: BaseException | None = None,
        last_response: Any = None,
    ) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error
        self.last_response = last_response
