"""
Pipeline Test Fixtures

Versioned, explicit fixtures for deterministic testing.
No random generation; every helper asserts its own success so a broken
setup fails at the line that broke.
"""

import json
from typing import Iterable, Optional

from adapter.audit import AuditGate
from adapter.providers import MockProvider
from episode_engine import EpisodePipelineBackend, PipelineConfig
from episode_engine.qualifications import UNIT_COUNT, UNIT_DURATION


FIXTURE_VERSION = "1.0.0"

PROJECT_ID = "proj_glass_harbor"
PROJECT_TITLE = "Glass Harbor"
SERIES_FORMAT = "vertical-drama"


# =============================================================================
# PROVIDERS
# =============================================================================

def impact_responder(indices: Iterable[int], reason: str = "contradicts the retcon"):
    """MockProvider responder flagging exactly the given unit indices."""
    affected = [{"unit_index": i, "reason": reason} for i in indices]

    def respond(task, payload):
        if task == "impact_analysis":
            return json.dumps({"affected": affected})
        return None
    return respond


def fixed_unit_responder(body: str, status: str = "complete"):
    """MockProvider responder returning the same unit body for every episode."""
    def respond(task, payload):
        if task == "unit_generation":
            return f"STATUS: {status}\n{body}"
        return None
    return respond


# =============================================================================
# BACKENDS
# =============================================================================

def series_fields(duration: int = 60, count: int = 3):
    return {UNIT_DURATION: duration, UNIT_COUNT: count}


def create_backend(
    provider: Optional[MockProvider] = None,
    audit_gate: Optional[AuditGate] = None,
    config: Optional[PipelineConfig] = None
) -> EpisodePipelineBackend:
    return EpisodePipelineBackend(
        config=config,
        provider=provider or MockProvider(),
        audit_gate=audit_gate,
    )


def register_series(
    backend: EpisodePipelineBackend,
    project_id: str = PROJECT_ID,
    duration: int = 60,
    count: int = 3
):
    result = backend.register_project(
        project_id, PROJECT_TITLE,
        format_subtype=SERIES_FORMAT,
        project_fields=series_fields(duration, count),
    )
    assert result.is_success, result.error
    return result.value


def prepared_backend(
    count: int = 3,
    duration: int = 60,
    provider: Optional[MockProvider] = None,
    audit_gate: Optional[AuditGate] = None,
    config: Optional[PipelineConfig] = None
) -> EpisodePipelineBackend:
    """Registered series project with an active snapshot and its units."""
    backend = create_backend(provider, audit_gate, config)
    register_series(backend, duration=duration, count=count)
    snapshot = backend.create_or_relock_snapshot(PROJECT_ID)
    assert snapshot.is_success, snapshot.error
    units = backend.create_units(PROJECT_ID)
    assert units.is_success, units.error
    return backend


def generate_and_lock(backend: EpisodePipelineBackend, index: int, project_id: str = PROJECT_ID):
    generated = backend.generate_unit(project_id, index)
    assert generated.is_success, generated.error
    locked = backend.lock_unit(project_id, index)
    assert locked.is_success, locked.error
    return locked.value


def lock_through(backend: EpisodePipelineBackend, last_index: int, project_id: str = PROJECT_ID):
    return [generate_and_lock(backend, i, project_id) for i in range(1, last_index + 1)]


def unit(backend: EpisodePipelineBackend, index: int, project_id: str = PROJECT_ID):
    return backend.repository.get_unit(project_id, index)


def content_of(backend: EpisodePipelineBackend, index: int, project_id: str = PROJECT_ID) -> str:
    current = unit(backend, index, project_id)
    return backend.repository.get_content_version(current.content_version_id).content
