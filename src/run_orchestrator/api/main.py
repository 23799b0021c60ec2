"""FastAPI ops surface for creating, resuming and inspecting runs."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, Literal
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel, Field

from run_orchestrator.config.settings import Settings, get_settings
from run_orchestrator.queue.name_generation import (
    RUN_NAME_GENERATION_QUEUE,
    RunNameGenerationMessage,
)
from run_orchestrator.queue.run_process import enqueue_run_process
from run_orchestrator.runs.context import OrchestratorContext, RunStorage, build_context
from run_orchestrator.runs.job_results import persist_job_result
from run_orchestrator.runs.messages import human, message_to_dict
from run_orchestrator.storage.base import RunQueue
from run_orchestrator.storage.models import JobRecord, RunRecord

logger = logging.getLogger(__name__)


class CreateRunRequest(BaseModel):
    initial_prompt: str = Field(min_length=1, alias="initialPrompt")
    model_identifier: str | None = Field(default=None, alias="modelIdentifier")
    result_schema: dict[str, Any] | None = Field(default=None, alias="resultSchema")
    attached_functions: list[str] = Field(default_factory=list, alias="attachedFunctions")
    reasoning_traces: bool = Field(default=True, alias="reasoningTraces")
    enable_summarization: bool = Field(default=False, alias="enableSummarization")
    system_prompt: str | None = Field(default=None, alias="systemPrompt")
    on_status_change: str | None = Field(default=None, alias="onStatusChange")
    test: bool = False
    test_mocks: dict[str, dict[str, Any]] = Field(default_factory=dict, alias="testMocks")
    context: dict[str, Any] | None = None
    tags: dict[str, str] = Field(default_factory=dict)
    name: str | None = None


class JobResultRequest(BaseModel):
    result: Any = None
    result_type: Literal["resolution", "rejection", "interrupt"] = Field(
        default="resolution", alias="resultType"
    )


def _ensure_runtime_state(
    app: FastAPI,
    *,
    settings: Settings,
    storage_override: RunStorage | None,
    queue_override: RunQueue | None,
) -> None:
    if not hasattr(app.state, "orchestrator"):
        app.state.orchestrator = build_context(
            settings, storage=storage_override, queue=queue_override
        )
    if not hasattr(app.state, "settings"):
        app.state.settings = settings


def create_app(
    *,
    storage: RunStorage | None = None,
    queue: RunQueue | None = None,
    settings_override: Settings | None = None,
) -> FastAPI:
    settings = settings_override or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logging.basicConfig(level=logging.DEBUG if settings.app_debug else logging.INFO)
        _ensure_runtime_state(
            app, settings=settings, storage_override=storage, queue_override=queue
        )
        yield

    app_lifespan = lifespan if storage is None else None
    app = FastAPI(title=settings.app_name, lifespan=app_lifespan)

    # Test clients may not run the lifespan.
    if storage is not None:
        _ensure_runtime_state(
            app, settings=settings, storage_override=storage, queue_override=queue
        )

    def _get_context(request: Request) -> OrchestratorContext:
        if not hasattr(request.app.state, "orchestrator"):
            _ensure_runtime_state(
                request.app, settings=settings, storage_override=storage, queue_override=queue
            )
        return request.app.state.orchestrator

    def _get_run_or_404(ctx: OrchestratorContext, cluster_id: str, run_id: str) -> RunRecord:
        run = ctx.store.get_run(cluster_id, run_id)
        if run is None:
            raise HTTPException(status_code=404, detail="Run not found")
        return run

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "service": settings.app_name}

    @app.post("/clusters/{cluster_id}/runs", response_model=RunRecord)
    def create_run(cluster_id: str, payload: CreateRunRequest, request: Request) -> RunRecord:
        ctx = _get_context(request)
        record = ctx.store.create_run(
            RunRecord(
                id=str(uuid4()),
                cluster_id=cluster_id,
                name=payload.name,
                model_identifier=payload.model_identifier,
                result_schema=payload.result_schema,
                attached_functions=payload.attached_functions,
                reasoning_traces=payload.reasoning_traces,
                enable_summarization=payload.enable_summarization,
                system_prompt=payload.system_prompt,
                on_status_change=payload.on_status_change,
                test=payload.test,
                test_mocks=payload.test_mocks,
                context=payload.context,
            ),
            tags=payload.tags,
        )
        ctx.store.insert_run_message(cluster_id, record.id, human(payload.initial_prompt))
        enqueue_run_process(ctx, run_id=record.id, cluster_id=cluster_id)
        if not record.name:
            ctx.queue.send(
                RUN_NAME_GENERATION_QUEUE,
                RunNameGenerationMessage(
                    run_id=record.id, cluster_id=cluster_id, content=payload.initial_prompt
                ).to_body(),
            )
        logger.info("api event=run_created run_id=%s cluster_id=%s", record.id, cluster_id)
        return record

    @app.post("/clusters/{cluster_id}/runs/{run_id}/process")
    def process(cluster_id: str, run_id: str, request: Request) -> dict[str, str]:
        ctx = _get_context(request)
        _get_run_or_404(ctx, cluster_id, run_id)
        enqueue_run_process(ctx, run_id=run_id, cluster_id=cluster_id)
        return {"status": "queued", "runId": run_id}

    @app.post("/clusters/{cluster_id}/jobs/{job_id}/result", response_model=JobRecord)
    def job_result(
        cluster_id: str, job_id: str, payload: JobResultRequest, request: Request
    ) -> JobRecord:
        ctx = _get_context(request)
        try:
            return persist_job_result(
                ctx,
                cluster_id=cluster_id,
                job_id=job_id,
                result=payload.result,
                result_type=payload.result_type,
            )
        except KeyError as exc:
            raise HTTPException(status_code=404, detail="Job not found") from exc

    @app.get("/clusters/{cluster_id}/runs/{run_id}", response_model=RunRecord)
    def get_run(cluster_id: str, run_id: str, request: Request) -> RunRecord:
        return _get_run_or_404(_get_context(request), cluster_id, run_id)

    @app.get("/clusters/{cluster_id}/runs/{run_id}/messages")
    def get_messages(
        cluster_id: str,
        run_id: str,
        request: Request,
        after: str | None = None,
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        ctx = _get_context(request)
        _get_run_or_404(ctx, cluster_id, run_id)
        messages = ctx.store.get_run_messages(cluster_id, run_id, after=after, limit=limit)
        return [message_to_dict(message) for message in messages]

    return app


app = create_app()
