"""
Generation Invocation Pipeline

Deterministic call path from pipeline -> adapter -> generation backend.

BOUNDARY ENFORCEMENT:
=====================
- No side effects on pipeline state
- Time-indexed invocation trace for every call
- Explicit error handling (no silent retries)
- Never raises: every exception becomes a typed failure outcome

WHY THIS PIPELINE EXISTS:
========================
Direct engine->backend coupling violates separation of concerns.
This pipeline enforces:
1. All calls go through typed contracts
2. All calls are traced and replayable
3. All failures are explicit and classified retryable or fatal
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, List, Optional, Tuple
import threading

from .contracts import (
    ArtifactGenerationRequest,
    GenerationOutcome,
    ImpactAnalysisOutcome,
    ImpactAnalysisRequest,
    OutcomeKind,
    PatchProposalRequest,
    UnitGenerationRequest,
)
from .prompts import CanonicalPrompt, parse_impact_response, parse_unit_response
from .providers.base import (
    GenerationProvider,
    InvocationParams,
    ProviderErrorCode,
    ProviderResponse,
    RETRYABLE_ERRORS,
)


INTERNAL_ERROR = "internal_error"
INVALID_INPUT = "invalid_input"


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass(frozen=True)
class InvocationConfig:
    """
    Configuration for backend invocation.

    WHY FROZEN:
    Config should not change during invocation.
    Changes require new config instance.
    """
    timeout_seconds: float = 120.0
    random_seed: int = 42
    temperature: float = 0.0
    max_tokens: int = 8192
    enable_tracing: bool = True


# =============================================================================
# INVOCATION TRACE
# =============================================================================

@dataclass(frozen=True)
class InvocationTrace:
    """
    Complete trace of a backend invocation.

    WHY THIS EXISTS:
    Every invocation must be fully traceable for replay verification,
    audit logging and debugging.
    """
    trace_id: str
    task_type: str
    request_id: str
    request_hash: str
    prompt_hash: str
    started_at: datetime
    completed_at: Optional[datetime]
    provider_id: str
    model_id: str
    outcome: OutcomeKind
    error_code: Optional[str] = None

    def duration_ms(self) -> float:
        if self.completed_at and self.started_at:
            return (self.completed_at - self.started_at).total_seconds() * 1000
        return 0.0


# =============================================================================
# GENERATION PIPELINE
# =============================================================================

class GenerationPipeline:
    """
    Deterministic invocation pipeline.

    GUARANTEES:
    ===========
    1. Every invocation is traced
    2. Every invocation uses the explicit provider version
    3. No side effects on inputs
    4. Failures are explicit, never silent
    5. No retries; retry is always a new, explicit caller action
    """

    def __init__(
        self,
        provider: GenerationProvider,
        config: Optional[InvocationConfig] = None
    ):
        self._provider = provider
        self._config = config or InvocationConfig()
        self._traces: List[InvocationTrace] = []
        self._lock = threading.Lock()

    @property
    def provider(self) -> GenerationProvider:
        return self._provider

    # -------------------------------------------------------------------------
    # Task entry points
    # -------------------------------------------------------------------------

    def generate_unit(self, request: UnitGenerationRequest) -> Tuple[GenerationOutcome, InvocationTrace]:
        if request.unit_index < 1 or not request.fact_hash:
            return self._invalid(request, "unit_index >= 1 and fact_hash are required")
        return self._text_task(request, parse_status=True)

    def generate_artifact(self, request: ArtifactGenerationRequest) -> Tuple[GenerationOutcome, InvocationTrace]:
        if not request.kind:
            return self._invalid(request, "kind is required")
        return self._text_task(request, parse_status=False)

    def propose_patch(self, request: PatchProposalRequest) -> Tuple[GenerationOutcome, InvocationTrace]:
        if not request.summary.strip():
            return self._invalid(request, "summary is required")
        return self._text_task(request, parse_status=False)

    def analyze_impact(self, request: ImpactAnalysisRequest) -> Tuple[ImpactAnalysisOutcome, InvocationTrace]:
        started_at = datetime.now(timezone.utc)
        prompt = CanonicalPrompt.create(request)
        response, error = self._call(prompt)

        if error is not None:
            trace = self._trace(request, prompt, started_at, OutcomeKind.FATAL_FAILURE, INTERNAL_ERROR)
            return ImpactAnalysisOutcome(
                kind=OutcomeKind.FATAL_FAILURE, request_id=request.request_id,
                error_code=INTERNAL_ERROR, message=error, trace_id=trace.trace_id
            ), trace

        if not response.success:
            kind = self._classify(response.error_code)
            trace = self._trace(request, prompt, started_at, kind, response.error_code.value)
            return ImpactAnalysisOutcome(
                kind=kind, request_id=request.request_id,
                error_code=response.error_code.value,
                message=response.error_message or "", trace_id=trace.trace_id
            ), trace

        try:
            verdicts = parse_impact_response(response.content)
        except ValueError as e:
            code = ProviderErrorCode.INVALID_RESPONSE.value
            trace = self._trace(request, prompt, started_at, OutcomeKind.FATAL_FAILURE, code)
            return ImpactAnalysisOutcome(
                kind=OutcomeKind.FATAL_FAILURE, request_id=request.request_id,
                error_code=code, message=str(e), trace_id=trace.trace_id
            ), trace

        trace = self._trace(request, prompt, started_at, OutcomeKind.SUCCESS)
        return ImpactAnalysisOutcome(
            kind=OutcomeKind.SUCCESS, request_id=request.request_id,
            verdicts=verdicts, trace_id=trace.trace_id
        ), trace

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _text_task(self, request: Any, parse_status: bool) -> Tuple[GenerationOutcome, InvocationTrace]:
        started_at = datetime.now(timezone.utc)
        prompt = CanonicalPrompt.create(request)
        response, error = self._call(prompt)

        if error is not None:
            trace = self._trace(request, prompt, started_at, OutcomeKind.FATAL_FAILURE, INTERNAL_ERROR)
            return GenerationOutcome.fatal(
                request.request_id, INTERNAL_ERROR, error, trace_id=trace.trace_id
            ), trace

        if not response.success:
            kind = self._classify(response.error_code)
            trace = self._trace(request, prompt, started_at, kind, response.error_code.value)
            factory = GenerationOutcome.retryable if kind == OutcomeKind.RETRYABLE_FAILURE else GenerationOutcome.fatal
            return factory(
                request.request_id,
                response.error_code.value,
                response.error_message or response.error_code.value,
                trace_id=trace.trace_id,
                latency_ms=response.latency_ms,
            ), trace

        content, needs_revision = response.content, False
        if parse_status:
            try:
                content, needs_revision = parse_unit_response(response.content)
            except ValueError as e:
                code = ProviderErrorCode.INVALID_RESPONSE.value
                trace = self._trace(request, prompt, started_at, OutcomeKind.FATAL_FAILURE, code)
                return GenerationOutcome.fatal(
                    request.request_id, code, str(e), trace_id=trace.trace_id
                ), trace

        trace = self._trace(request, prompt, started_at, OutcomeKind.SUCCESS)
        return GenerationOutcome.success(
            request.request_id,
            content,
            needs_revision=needs_revision,
            trace_id=trace.trace_id,
            latency_ms=response.latency_ms,
        ), trace

    def _call(self, prompt: CanonicalPrompt) -> Tuple[Optional[ProviderResponse], Optional[str]]:
        params = InvocationParams(
            seed=self._config.random_seed,
            temperature=self._config.temperature,
            max_tokens=self._config.max_tokens,
            timeout_seconds=self._config.timeout_seconds,
        )
        try:
            return self._provider.invoke(prompt.prompt_text, params), None
        except Exception as e:
            # Providers must not raise; a raising provider is treated as fatal
            return None, f"{type(e).__name__}: {e}"

    @staticmethod
    def _classify(code: Optional[ProviderErrorCode]) -> OutcomeKind:
        if code in RETRYABLE_ERRORS:
            return OutcomeKind.RETRYABLE_FAILURE
        return OutcomeKind.FATAL_FAILURE

    def _invalid(self, request: Any, message: str) -> Tuple[GenerationOutcome, InvocationTrace]:
        started_at = datetime.now(timezone.utc)
        prompt = CanonicalPrompt.create(request)
        trace = self._trace(request, prompt, started_at, OutcomeKind.FATAL_FAILURE, INVALID_INPUT)
        return GenerationOutcome.fatal(
            request.request_id, INVALID_INPUT, message, trace_id=trace.trace_id
        ), trace

    def _trace(
        self,
        request: Any,
        prompt: CanonicalPrompt,
        started_at: datetime,
        outcome: OutcomeKind,
        error_code: Optional[str] = None
    ) -> InvocationTrace:
        version = self._provider.get_version()
        trace = InvocationTrace(
            trace_id=f"trace_{prompt.request_hash[:12]}_{int(started_at.timestamp() * 1000)}",
            task_type=prompt.task_type.value,
            request_id=request.request_id,
            request_hash=prompt.request_hash,
            prompt_hash=prompt.prompt_hash,
            started_at=started_at,
            completed_at=datetime.now(timezone.utc),
            provider_id=version.provider_id,
            model_id=version.model_id,
            outcome=outcome,
            error_code=error_code,
        )
        if self._config.enable_tracing:
            with self._lock:
                self._traces.append(trace)
        return trace

    def get_traces(self) -> List[InvocationTrace]:
        """Get all recorded traces (read-only)."""
        return list(self._traces)

    def verify_replay(self, original_trace: InvocationTrace, request: Any) -> bool:
        """Replaying the same request must reproduce the same prompt hash."""
        return CanonicalPrompt.create(request).prompt_hash == original_trace.prompt_hash
