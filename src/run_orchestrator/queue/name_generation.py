"""Queue handler that names a run after its first message."""

from __future__ import annotations

import logging
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from run_orchestrator.runs.context import OrchestratorContext
from run_orchestrator.runs.titles import TITLE_MODEL_IDENTIFIER, generate_title

logger = logging.getLogger(__name__)

RUN_NAME_GENERATION_QUEUE = "generateName"


class RunNameGenerationMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    run_id: str = Field(alias="runId")
    cluster_id: str = Field(alias="clusterId")
    content: str

    def to_body(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


def name_generation_lock_key(run_id: str) -> str:
    return f"run-name-generation-{run_id}"


def handle_run_name_generation_message(
    message: RunNameGenerationMessage, ctx: OrchestratorContext
) -> str | None:
    run = ctx.store.get_run(message.cluster_id, message.run_id)
    if run is None:
        logger.error("run_name event=unknown_run run_id=%s", message.run_id)
        return None
    if run.name:
        return run.name

    key = name_generation_lock_key(message.run_id)
    if not ctx.lock.try_acquire(key):
        logger.warning("run_name event=lock_busy run_id=%s", message.run_id)
        return None

    try:
        model = ctx.model_factory.build(
            TITLE_MODEL_IDENTIFIER,
            purpose="agent_loop.generate_title",
            cluster_id=run.cluster_id,
            run_id=run.id,
        )
        title = generate_title(message.content, model=model)
        if not title.summary:
            return None
        ctx.store.update_run_name(run.cluster_id, run.id, title.summary)
        logger.info("run_name event=generated run_id=%s", run.id)
        return title.summary
    finally:
        ctx.lock.release(key)
