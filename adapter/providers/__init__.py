"""
Generation Providers Package
============================

Provider implementations for generation backend invocation.

Available providers:
- MockProvider: Deterministic mock for testing
- HTTPProvider: Chat-completions style gateway over httpx
"""

from .base import (
    GenerationProvider,
    ProviderVersion,
    ProviderResponse,
    ProviderErrorCode,
    InvocationParams,
    RETRYABLE_ERRORS,
)
from .mock import MockProvider
from .http import HTTPProvider

__all__ = [
    'GenerationProvider',
    'ProviderVersion',
    'ProviderResponse',
    'ProviderErrorCode',
    'InvocationParams',
    'RETRYABLE_ERRORS',
    'MockProvider',
    'HTTPProvider',
]
