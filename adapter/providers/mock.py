"""
Mock Generation Provider
========================

Deterministic mock provider for testing.

GUARANTEES:
- Same (prompt, seed) -> identical response
- Explicit failure modes can be triggered, globally or per call
- No external dependencies
"""

from __future__ import annotations
import hashlib
import json
import re
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

from ..prompts import extract_payload, extract_task
from .base import (
    GenerationProvider,
    ProviderVersion,
    ProviderResponse,
    ProviderErrorCode,
    InvocationParams,
)


Responder = Callable[[str, Dict[str, Any]], Optional[str]]

_WORD = re.compile(r"[a-z0-9]+")


class MockProvider(GenerationProvider):
    """
    Deterministic mock provider for testing.

    Response content is derived from the request payload and a hash of
    prompt + seed. A responder may override content per call.
    """

    def __init__(
        self,
        latency_ms: float = 0.0,
        failure_mode: Optional[ProviderErrorCode] = None,
        scripted_failures: Optional[Sequence[Optional[ProviderErrorCode]]] = None,
        responder: Optional[Responder] = None
    ):
        """
        Args:
            latency_ms: Simulated latency
            failure_mode: If set, all invocations fail with this error
            scripted_failures: Consumed one per invocation; None entries succeed
            responder: (task, payload) -> content, or None for the default
        """
        self._latency_ms = latency_ms
        self._failure_mode = failure_mode
        self._scripted = list(scripted_failures or [])
        self._responder = responder
        self._prompts: List[str] = []
        self._version = ProviderVersion(
            provider_id="mock",
            model_id="mock-deterministic-v1",
            api_version="1.0.0",
            supports_seed=True
        )

    @property
    def provider_id(self) -> str:
        return "mock"

    @property
    def invocation_count(self) -> int:
        return len(self._prompts)

    @property
    def prompts(self) -> List[str]:
        return list(self._prompts)

    def get_version(self) -> ProviderVersion:
        return self._version

    def set_failure_mode(self, failure_mode: Optional[ProviderErrorCode]):
        self._failure_mode = failure_mode

    def invoke(
        self,
        prompt: str,
        params: InvocationParams
    ) -> ProviderResponse:
        invoked_at = datetime.now(timezone.utc)
        self._prompts.append(prompt)

        if self._latency_ms:
            time.sleep(self._latency_ms / 1000.0)

        failure = self._scripted.pop(0) if self._scripted else None
        failure = failure or self._failure_mode
        if failure is not None:
            return ProviderResponse(
                success=False,
                error_code=failure,
                error_message=f"Mock provider configured to fail: {failure.value}",
                provider_version=self._version,
                invoked_at=invoked_at,
                latency_ms=self._latency_ms,
                seed_used=params.seed,
                temperature_used=params.temperature
            )

        task = extract_task(prompt) or ""
        payload = extract_payload(prompt) or {}
        content = None
        if self._responder is not None:
            content = self._responder(task, payload)
        if content is None:
            content = self._default_response(task, payload, prompt, params.seed)

        return ProviderResponse(
            success=True,
            content=content,
            provider_version=self._version,
            invoked_at=invoked_at,
            latency_ms=self._latency_ms,
            seed_used=params.seed,
            temperature_used=params.temperature
        )

    def _default_response(self, task: str, payload: Dict[str, Any], prompt: str, seed: int) -> str:
        digest = hashlib.sha256(f"{prompt}|{seed}".encode()).hexdigest()[:16]

        if task == "unit_generation":
            index = payload.get("unit_index")
            lines = [
                "STATUS: complete",
                f"EPISODE {index}: {payload.get('unit_title')}",
            ]
            previous = payload.get("previous")
            if previous:
                lines.append(f"Previously: {previous.get('closing_line')}")
            lines.append(f"Scene 1. Draft {digest}.")
            lines.append(f"END OF EPISODE {index}")
            return "\n".join(lines)

        if task == "artifact_generation":
            return f"# {payload.get('kind')}\nDraft {digest}."

        if task == "impact_analysis":
            return json.dumps(self._keyword_impact(payload), sort_keys=True)

        if task == "patch_proposal":
            return f"{payload.get('current_content', '')}\n[Revised: {payload.get('summary', '')}]"

        return f"Mock response {digest}"

    @staticmethod
    def _keyword_impact(payload: Dict[str, Any]) -> Dict[str, Any]:
        """Flag candidates sharing a significant word with the summary."""
        summary_words = {w for w in _WORD.findall(str(payload.get("summary", "")).lower()) if len(w) >= 5}
        affected = []
        for candidate in payload.get("candidates", []):
            text = f"{candidate.get('title', '')} {candidate.get('excerpt', '')}".lower()
            shared = sorted(summary_words & set(_WORD.findall(text)))
            if shared:
                affected.append({
                    "unit_index": candidate["unit_index"],
                    "reason": "mentions " + ", ".join(shared),
                })
        return {"affected": affected}
