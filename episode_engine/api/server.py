"""
Episode Pipeline: Operator API Server
=====================================

HTTP surface over EpisodePipelineBackend. Every endpoint maps to one
engine operation; engine errors become HTTP errors with a
{code, message, context} detail.

Error status mapping:
- 404: unknown project, unit, artifact, retcon, patch or batch
- 409: an invariant blocked the operation
- 422: invalid input (missing facts, empty reason, bad token)
- 502: the generation backend failed
- 500: internal error

Usage:
    uvicorn episode_engine.api.server:app --reload
"""
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Header, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from ..engine import EpisodePipelineBackend, PipelineConfig
from .mapper import to_dto, unwrap


# =============================================================================
# REQUEST MODELS
# =============================================================================

class ProjectRequest(BaseModel):
    project_id: str
    title: str
    production_type: Optional[str] = None
    format_subtype: Optional[str] = None
    project_fields: Dict[str, Any] = Field(default_factory=dict)
    overrides: Dict[str, Any] = Field(default_factory=dict)
    guardrail_overrides: Dict[str, Any] = Field(default_factory=dict)


class QualificationUpdate(BaseModel):
    project_fields: Optional[Dict[str, Any]] = None
    overrides: Optional[Dict[str, Any]] = None
    guardrail_overrides: Optional[Dict[str, Any]] = None
    production_type: Optional[str] = None
    format_subtype: Optional[str] = None


class ArtifactRequest(BaseModel):
    kind: str
    content: str


class UnitsRequest(BaseModel):
    count: Optional[int] = None


class GenerateRequest(BaseModel):
    context_set_id: Optional[str] = None
    include_artifact_ids: Optional[List[str]] = None


class TemplateRequest(BaseModel):
    expected_current: Optional[int] = None


class ContentRequest(BaseModel):
    content: str


class ReasonRequest(BaseModel):
    reason: Optional[str] = None


class HardDeleteRequest(BaseModel):
    confirmation_token: Optional[str] = None


class ContextSetRequest(BaseModel):
    name: str
    artifact_ids: List[str] = Field(default_factory=list)
    is_default: bool = False


class BatchRequest(BaseModel):
    from_index: int = 1
    max_units_per_tick: Optional[int] = None
    auto_lock: bool = False
    stop_on_first_fail: bool = False
    context_set_id: Optional[str] = None


class RetconRequest(BaseModel):
    summary: str
    changed_artifact_kind: Optional[str] = None


class PatchTargets(BaseModel):
    indices: Optional[List[int]] = None


# =============================================================================
# APPLICATION
# =============================================================================

def create_app(backend: Optional[EpisodePipelineBackend] = None) -> FastAPI:
    """
    Build the API app.

    With no backend given, one is created on startup from
    PipelineConfig.from_env() and closed on shutdown.
    """
    state: Dict[str, Optional[EpisodePipelineBackend]] = {"backend": backend}

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = state["backend"] is None
        if owned:
            state["backend"] = EpisodePipelineBackend(PipelineConfig.from_env())
        yield
        if owned:
            state["backend"].close()
            state["backend"] = None

    app = FastAPI(
        title="Episode Pipeline API",
        version="0.1.0",
        description="Operator surface for the episode generation pipeline",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "PATCH"],
        allow_headers=["*"],
    )

    def engine() -> EpisodePipelineBackend:
        if state["backend"] is None:
            raise HTTPException(status_code=503, detail="Backend not initialized")
        return state["backend"]

    # -------------------------------------------------------------------------
    # Health and audit
    # -------------------------------------------------------------------------

    @app.get("/health")
    def health_check():
        engine()
        return {"status": "online"}

    @app.get("/api/v1/audit/report")
    def audit_report():
        return to_dto(engine().get_audit_report())

    # -------------------------------------------------------------------------
    # Projects, qualifications, artifacts
    # -------------------------------------------------------------------------

    @app.post("/api/v1/projects", status_code=201)
    def register_project(body: ProjectRequest, x_actor: str = Header("operator")):
        return unwrap(engine().register_project(
            body.project_id, body.title,
            production_type=body.production_type,
            format_subtype=body.format_subtype,
            project_fields=body.project_fields,
            overrides=body.overrides,
            guardrail_overrides=body.guardrail_overrides,
            actor=x_actor,
        ))

    @app.get("/api/v1/projects/{project_id}/qualifications")
    def resolve_qualifications(project_id: str):
        return unwrap(engine().resolve_qualifications(project_id))

    @app.patch("/api/v1/projects/{project_id}/qualifications")
    def update_qualifications(project_id: str, body: QualificationUpdate,
                              x_actor: str = Header("operator")):
        return unwrap(engine().update_qualifications(
            project_id,
            project_fields=body.project_fields,
            overrides=body.overrides,
            guardrail_overrides=body.guardrail_overrides,
            production_type=body.production_type,
            format_subtype=body.format_subtype,
            actor=x_actor,
        ))

    @app.post("/api/v1/projects/{project_id}/artifacts", status_code=201)
    def record_artifact(project_id: str, body: ArtifactRequest, x_actor: str = Header("operator")):
        return unwrap(engine().record_artifact(project_id, body.kind, body.content, actor=x_actor))

    @app.post("/api/v1/projects/{project_id}/artifacts/{kind}/generate", status_code=201)
    def generate_artifact(project_id: str, kind: str, x_actor: str = Header("operator")):
        return unwrap(engine().generate_artifact(project_id, kind, actor=x_actor))

    @app.get("/api/v1/projects/{project_id}/staleness")
    def staleness_report(project_id: str):
        return unwrap(engine().staleness_report(project_id))

    @app.post("/api/v1/projects/{project_id}/context-sets", status_code=201)
    def define_context_set(project_id: str, body: ContextSetRequest, x_actor: str = Header("operator")):
        return unwrap(engine().define_context_set(
            project_id, body.name, body.artifact_ids, is_default=body.is_default, actor=x_actor
        ))

    @app.get("/api/v1/projects/{project_id}/context")
    def resolve_context(project_id: str, context_set_id: Optional[str] = None,
                        include: Optional[List[str]] = Query(None)):
        return unwrap(engine().resolve_context(project_id, context_set_id, include))

    @app.get("/api/v1/projects/{project_id}/exports")
    def list_exports(project_id: str):
        return unwrap(engine().list_exports(project_id))

    # -------------------------------------------------------------------------
    # Snapshots and units
    # -------------------------------------------------------------------------

    @app.post("/api/v1/projects/{project_id}/snapshots", status_code=201)
    def create_snapshot(project_id: str, x_actor: str = Header("operator")):
        return unwrap(engine().create_or_relock_snapshot(project_id, actor=x_actor))

    @app.get("/api/v1/projects/{project_id}/snapshots")
    def list_snapshots(project_id: str):
        return unwrap(engine().list_snapshots(project_id))

    @app.post("/api/v1/projects/{project_id}/units", status_code=201)
    def create_units(project_id: str, body: UnitsRequest, x_actor: str = Header("operator")):
        return unwrap(engine().create_units(project_id, body.count, actor=x_actor))

    @app.get("/api/v1/projects/{project_id}/units")
    def list_units(project_id: str, include_deleted: bool = False):
        return unwrap(engine().list_units(project_id, include_deleted=include_deleted))

    @app.get("/api/v1/projects/{project_id}/units/{index}")
    def get_unit(project_id: str, index: int):
        return unwrap(engine().get_unit(project_id, index))

    @app.get("/api/v1/projects/{project_id}/units/{index}/content")
    def get_unit_content(project_id: str, index: int):
        return unwrap(engine().get_unit_content(project_id, index))

    @app.post("/api/v1/projects/{project_id}/units/{index}/generate")
    def generate_unit(project_id: str, index: int, body: GenerateRequest,
                      x_actor: str = Header("operator")):
        return unwrap(engine().generate_unit(
            project_id, index,
            context_set_id=body.context_set_id,
            include_artifact_ids=body.include_artifact_ids,
            actor=x_actor,
        ))

    @app.post("/api/v1/projects/{project_id}/units/{index}/lock")
    def lock_unit(project_id: str, index: int, x_actor: str = Header("operator")):
        return unwrap(engine().lock_unit(project_id, index, actor=x_actor))

    @app.post("/api/v1/projects/{project_id}/units/{index}/template")
    def set_template(project_id: str, index: int, body: TemplateRequest,
                     x_actor: str = Header("operator")):
        return unwrap(engine().set_template(project_id, index, expected_current=body.expected_current,
                                            actor=x_actor))

    @app.post("/api/v1/projects/{project_id}/units/{index}/revise")
    def revise_unit(project_id: str, index: int, body: ContentRequest, x_actor: str = Header("operator")):
        return unwrap(engine().revise_unit(project_id, index, body.content, actor=x_actor))

    @app.post("/api/v1/projects/{project_id}/units/{index}/recover")
    def recover_stuck_unit(project_id: str, index: int, body: ReasonRequest,
                           x_actor: str = Header("operator")):
        return unwrap(engine().recover_stuck_unit(project_id, index, reason=body.reason or "",
                                                  actor=x_actor))

    @app.post("/api/v1/projects/{project_id}/units/{index}/delete")
    def soft_delete_unit(project_id: str, index: int, body: ReasonRequest,
                         x_actor: str = Header("operator")):
        return unwrap(engine().soft_delete_unit(project_id, index, reason=body.reason, actor=x_actor))

    @app.post("/api/v1/projects/{project_id}/units/{index}/restore")
    def restore_unit(project_id: str, index: int, x_actor: str = Header("operator")):
        return unwrap(engine().restore_unit(project_id, index, actor=x_actor))

    @app.post("/api/v1/projects/{project_id}/units/{index}/hard-delete/request")
    def request_hard_delete(project_id: str, index: int, x_actor: str = Header("operator")):
        return unwrap(engine().request_hard_delete(project_id, index, actor=x_actor))

    @app.post("/api/v1/projects/{project_id}/units/{index}/hard-delete")
    def hard_delete_unit(project_id: str, index: int, body: HardDeleteRequest,
                         x_actor: str = Header("operator")):
        return unwrap(engine().hard_delete_unit(project_id, index, body.confirmation_token,
                                                actor=x_actor))

    # -------------------------------------------------------------------------
    # Batches
    # -------------------------------------------------------------------------

    @app.post("/api/v1/projects/{project_id}/batches", status_code=201)
    def generate_batch(project_id: str, body: BatchRequest, x_actor: str = Header("operator")):
        return unwrap(engine().generate_batch(
            project_id,
            from_index=body.from_index,
            max_units_per_tick=body.max_units_per_tick,
            auto_lock=body.auto_lock,
            stop_on_first_fail=body.stop_on_first_fail,
            context_set_id=body.context_set_id,
            actor=x_actor,
        ))

    @app.get("/api/v1/batches/{batch_id}")
    def get_batch(batch_id: str):
        return unwrap(engine().get_batch(batch_id))

    @app.post("/api/v1/batches/{batch_id}/tick")
    def tick_batch(batch_id: str):
        return unwrap(engine().tick_batch(batch_id))

    @app.post("/api/v1/batches/{batch_id}/stop")
    def stop_batch(batch_id: str, x_actor: str = Header("operator")):
        return unwrap(engine().stop_batch(batch_id, actor=x_actor))

    @app.post("/api/v1/batches/{batch_id}/resume")
    def resume_batch(batch_id: str, x_actor: str = Header("operator")):
        return unwrap(engine().resume_batch(batch_id, actor=x_actor))

    # -------------------------------------------------------------------------
    # Retcons and patches
    # -------------------------------------------------------------------------

    @app.post("/api/v1/projects/{project_id}/retcons", status_code=201)
    def declare_retcon(project_id: str, body: RetconRequest, x_actor: str = Header("operator")):
        return unwrap(engine().declare_retcon(project_id, body.summary,
                                              changed_artifact_kind=body.changed_artifact_kind,
                                              actor=x_actor))

    @app.post("/api/v1/retcons/{event_id}/analyze")
    def analyze_retcon(event_id: str, x_actor: str = Header("operator")):
        return unwrap(engine().analyze_retcon(event_id, actor=x_actor))

    @app.post("/api/v1/retcons/{event_id}/patches")
    def propose_patches(event_id: str, body: PatchTargets, x_actor: str = Header("operator")):
        return unwrap(engine().propose_patches(event_id, body.indices, actor=x_actor))

    @app.get("/api/v1/projects/{project_id}/patches")
    def list_patches(project_id: str, event_id: Optional[str] = None):
        return unwrap(engine().list_patches(project_id, event_id))

    @app.post("/api/v1/patches/{patch_id}/apply")
    def apply_patch(patch_id: str, x_actor: str = Header("operator")):
        return unwrap(engine().apply_patch(patch_id, actor=x_actor))

    @app.post("/api/v1/patches/{patch_id}/reject")
    def reject_patch(patch_id: str, body: ReasonRequest, x_actor: str = Header("operator")):
        return unwrap(engine().reject_patch(patch_id, body.reason or "", actor=x_actor))

    return app


app = create_app()
