"""
HTTP Generation Provider
========================

Calls a chat-completions style gateway over HTTP.

GUARANTEES:
- Never raises; transport and protocol failures become error responses
- Seed and temperature are forwarded on every call
- HTTP 429 maps to RATE_LIMITED, 5xx to API_ERROR, other 4xx to
  INVALID_RESPONSE
"""

from __future__ import annotations
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx

from .base import (
    GenerationProvider,
    ProviderVersion,
    ProviderResponse,
    ProviderErrorCode,
    InvocationParams,
)


class HTTPProvider(GenerationProvider):
    """
    Provider backed by an OpenAI-compatible /chat/completions endpoint.
    """

    def __init__(
        self,
        base_url: str,
        model_id: str,
        api_key: Optional[str] = None,
        user_agent: str = "EpisodePipeline/1.0",
        transport: Optional[httpx.BaseTransport] = None
    ):
        self._base_url = base_url.rstrip("/")
        self._model_id = model_id
        self._api_key = api_key
        self._user_agent = user_agent
        self._transport = transport
        self._version = ProviderVersion(
            provider_id="http",
            model_id=model_id,
            api_version="chat-completions/1",
            supports_seed=True
        )

    @property
    def provider_id(self) -> str:
        return "http"

    def get_version(self) -> ProviderVersion:
        return self._version

    def invoke(
        self,
        prompt: str,
        params: InvocationParams
    ) -> ProviderResponse:
        invoked_at = datetime.now(timezone.utc)
        started = time.monotonic()

        try:
            with httpx.Client(timeout=params.timeout_seconds, transport=self._transport) as client:
                response = client.post(
                    f"{self._base_url}/chat/completions",
                    headers=self._headers(),
                    json=self._body(prompt, params),
                )
        except httpx.TimeoutException:
            return self._failure(
                ProviderErrorCode.TIMEOUT,
                f"Gateway timed out after {params.timeout_seconds}s",
                invoked_at, started, params
            )
        except httpx.HTTPError as e:
            return self._failure(
                ProviderErrorCode.NETWORK_ERROR, str(e), invoked_at, started, params
            )

        if response.status_code == 429:
            return self._failure(
                ProviderErrorCode.RATE_LIMITED, "HTTP 429", invoked_at, started, params
            )
        if response.status_code >= 500:
            return self._failure(
                ProviderErrorCode.API_ERROR, f"HTTP {response.status_code}", invoked_at, started, params
            )
        if response.status_code != 200:
            return self._failure(
                ProviderErrorCode.INVALID_RESPONSE, f"HTTP {response.status_code}", invoked_at, started, params
            )

        try:
            data = response.json()
            choice = data["choices"][0]
            content = choice["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            return self._failure(
                ProviderErrorCode.INVALID_RESPONSE, f"Unparseable response: {e}", invoked_at, started, params
            )

        if choice.get("finish_reason") == "content_filter":
            return self._failure(
                ProviderErrorCode.CONTENT_FILTERED, "Blocked by content filter", invoked_at, started, params
            )
        if not isinstance(content, str):
            return self._failure(
                ProviderErrorCode.INVALID_RESPONSE, "Response content is not text", invoked_at, started, params
            )

        return ProviderResponse(
            success=True,
            content=content,
            provider_version=self._version,
            invoked_at=invoked_at,
            latency_ms=(time.monotonic() - started) * 1000,
            seed_used=params.seed,
            temperature_used=params.temperature
        )

    def _headers(self) -> Dict[str, str]:
        headers = {"User-Agent": self._user_agent}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _body(self, prompt: str, params: InvocationParams) -> Dict[str, Any]:
        return {
            "model": self._model_id,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": params.temperature,
            "max_tokens": params.max_tokens,
            "seed": params.seed,
        }

    def _failure(
        self,
        code: ProviderErrorCode,
        message: str,
        invoked_at: datetime,
        started: float,
        params: InvocationParams
    ) -> ProviderResponse:
        return ProviderResponse(
            success=False,
            error_code=code,
            error_message=message,
            provider_version=self._version,
            invoked_at=invoked_at,
            latency_ms=(time.monotonic() - started) * 1000,
            seed_used=params.seed,
            temperature_used=params.temperature
        )
