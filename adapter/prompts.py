"""
Canonical Prompt Generation
===========================

Pure functions rendering adapter requests into prompts, and parsing
backend responses back into typed values.

INVARIANT: Same request -> same prompt_hash
No runtime state, no wall-clock time.

PROMPT ENVELOPE:
================
    TASK: <task type>
    CONTRACT: <contract version>
    <instructions>
    PAYLOAD: <canonical JSON of the request>

Providers may read the PAYLOAD line; the instructions are for models.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple
import hashlib
import json

from .contracts import (
    ArtifactGenerationRequest,
    ImpactAnalysisRequest,
    ImpactVerdict,
    PatchProposalRequest,
    TaskType,
    UnitGenerationRequest,
)


STATUS_PREFIX = "STATUS:"
NEEDS_REVISION = "needs_revision"


@dataclass(frozen=True)
class CanonicalPrompt:
    """
    Frozen prompt with hash for deterministic tracking.

    INVARIANT: Same request -> same prompt_hash
    """
    task_type: TaskType
    request_hash: str
    prompt_text: str
    prompt_hash: str

    @staticmethod
    def create(request: Any) -> CanonicalPrompt:
        """Factory method for creating canonical prompts."""
        prompt_text = PromptTemplates.render(request)
        return CanonicalPrompt(
            task_type=request.task_type,
            request_hash=request.content_hash(),
            prompt_text=prompt_text,
            prompt_hash=hashlib.sha256(prompt_text.encode()).hexdigest(),
        )


class PromptTemplates:
    """Prompt templates for each task type."""

    @staticmethod
    def render(request: Any) -> str:
        if isinstance(request, UnitGenerationRequest):
            body = PromptTemplates._unit_prompt(request)
        elif isinstance(request, ArtifactGenerationRequest):
            body = PromptTemplates._artifact_prompt(request)
        elif isinstance(request, ImpactAnalysisRequest):
            body = PromptTemplates._impact_prompt(request)
        elif isinstance(request, PatchProposalRequest):
            body = PromptTemplates._patch_prompt(request)
        else:
            raise ValueError(f"Unknown request type: {type(request).__name__}")

        payload = json.dumps(request.payload(), sort_keys=True, separators=(",", ":"))
        return "\n".join([
            f"TASK: {request.task_type.value}",
            f"CONTRACT: {request.contract_version}",
            body,
            f"PAYLOAD: {payload}",
        ])

    @staticmethod
    def _facts(facts: Tuple[Tuple[str, Any], ...]) -> str:
        return "\n".join(f"- {k}: {v}" for k, v in facts)

    @staticmethod
    def _unit_prompt(request: UnitGenerationRequest) -> str:
        lines = [
            f"Write episode {request.unit_index} ({request.unit_title}).",
            "Qualifications:",
            PromptTemplates._facts(request.facts),
        ]
        if request.context_artifacts:
            lines.append("Canon documents:")
            for artifact in request.context_artifacts:
                lines.append(f"## {artifact.kind}\n{artifact.content}")
        if request.previous_continuity:
            prev = request.previous_continuity
            lines.append(f"Previous episode {prev.unit_index} ended with:\n{prev.tail_excerpt}")
        if request.template:
            lines.append(f"Match the style of episode {request.template.unit_index} ({request.template.title}).")
        lines.append(
            f"Begin with '{STATUS_PREFIX} complete' or '{STATUS_PREFIX} {NEEDS_REVISION}' on its own line."
        )
        return "\n".join(lines)

    @staticmethod
    def _artifact_prompt(request: ArtifactGenerationRequest) -> str:
        lines = [
            f"Write the {request.kind} document.",
            "Qualifications:",
            PromptTemplates._facts(request.facts),
        ]
        for artifact in request.upstream:
            lines.append(f"## {artifact.kind}\n{artifact.content}")
        return "\n".join(lines)

    @staticmethod
    def _impact_prompt(request: ImpactAnalysisRequest) -> str:
        lines = [
            "A change to established canon was declared:",
            request.summary,
            "For each locked episode below decide whether it contradicts the change.",
        ]
        for candidate in request.candidates:
            lines.append(f"## Episode {candidate.unit_index}: {candidate.title}\n{candidate.excerpt}")
        lines.append(
            'Answer with JSON: {"affected": [{"unit_index": <int>, "reason": <str>}]}'
        )
        return "\n".join(lines)

    @staticmethod
    def _patch_prompt(request: PatchProposalRequest) -> str:
        return "\n".join([
            f"Revise episode {request.target_index} ({request.title}) to reflect this change:",
            request.summary,
            "Keep everything else intact. Current text:",
            request.current_content,
        ])


# =============================================================================
# RESPONSE PARSING
# =============================================================================

def extract_payload(prompt_text: str) -> Optional[Dict[str, Any]]:
    """Recover the request payload from a rendered prompt."""
    for line in reversed(prompt_text.splitlines()):
        if line.startswith("PAYLOAD: "):
            return json.loads(line[len("PAYLOAD: "):])
    return None


def extract_task(prompt_text: str) -> Optional[str]:
    first = prompt_text.split("\n", 1)[0]
    return first[len("TASK: "):] if first.startswith("TASK: ") else None


def parse_unit_response(content: str) -> Tuple[str, bool]:
    """
    Split an optional status line off a unit response.

    Returns (content, needs_revision). Raises ValueError on empty content.
    """
    text = content.strip("\n")
    needs_revision = False
    first, _, rest = text.partition("\n")
    if first.strip().upper().startswith(STATUS_PREFIX):
        status = first.strip()[len(STATUS_PREFIX):].strip().lower()
        needs_revision = status == NEEDS_REVISION
        text = rest.lstrip("\n")
    if not text.strip():
        raise ValueError("Empty unit content")
    return text, needs_revision


def parse_impact_response(content: str) -> Tuple[ImpactVerdict, ...]:
    """Parse the impact JSON. Raises ValueError when malformed."""
    data = json.loads(content)
    affected = data.get("affected") if isinstance(data, dict) else None
    if not isinstance(affected, list):
        raise ValueError("Impact response must contain an 'affected' list")
    verdicts = []
    for item in affected:
        if not isinstance(item, dict) or not isinstance(item.get("unit_index"), int):
            raise ValueError(f"Malformed impact entry: {item!r}")
        verdicts.append(ImpactVerdict(
            unit_index=item["unit_index"],
            reason=str(item.get("reason", "")),
        ))
    return tuple(verdicts)
