"""
Generation Providers
====================

A provider turns one rendered episode or artifact prompt into text.
Everything above this module (pipeline, tracing, retry policy) talks to
GenerationProvider only.

RULES:
- invoke() returns a ProviderResponse for every outcome, including
  transport failures
- the seed and temperature sent are echoed back on the response so a
  trace can be replayed
"""

from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import FrozenSet, Optional
from enum import Enum


class ProviderErrorCode(Enum):
    """Why a provider call produced no usable text."""
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    INVALID_RESPONSE = "invalid_response"
    CONTENT_FILTERED = "content_filtered"
    API_ERROR = "api_error"
    NETWORK_ERROR = "network_error"


# Failures worth an explicit operator retry; the rest are fatal
RETRYABLE_ERRORS: FrozenSet[ProviderErrorCode] = frozenset({
    ProviderErrorCode.TIMEOUT,
    ProviderErrorCode.RATE_LIMITED,
    ProviderErrorCode.API_ERROR,
    ProviderErrorCode.NETWORK_ERROR,
})


@dataclass(frozen=True)
class ProviderVersion:
    """Identity of the backend and model, recorded on every trace."""
    provider_id: str       # "http" | "mock"
    model_id: str
    api_version: str
    supports_seed: bool


@dataclass(frozen=True)
class ProviderResponse:
    """
    Result of one provider call.

    A successful response carries content; a failed one carries an
    error_code. Construction rejects anything in between.
    """
    success: bool
    content: Optional[str] = None

    error_code: Optional[ProviderErrorCode] = None
    error_message: Optional[str] = None

    provider_version: Optional[ProviderVersion] = None
    invoked_at: Optional[datetime] = None
    latency_ms: float = 0.0

    seed_used: Optional[int] = None
    temperature_used: float = 1.0

    def __post_init__(self):
        if self.success and self.content is None:
            raise ValueError("Successful response must have content")
        if not self.success and self.error_code is None:
            raise ValueError("Failed response must have error_code")


@dataclass(frozen=True)
class InvocationParams:
    """Sampling settings for one call; the seed is derived from the request."""
    seed: int
    temperature: float = 0.0
    max_tokens: int = 8192
    timeout_seconds: float = 120.0


class GenerationProvider(ABC):
    """Backend that writes episode and artifact text."""

    @abstractmethod
    def invoke(self, prompt: str, params: InvocationParams) -> ProviderResponse:
        """Send prompt to the backend. Failures come back as responses, never exceptions."""

    @abstractmethod
    def get_version(self) -> ProviderVersion:
        pass

    @property
    @abstractmethod
    def provider_id(self) -> str:
        pass
