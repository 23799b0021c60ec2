"""Queue handler that executes a run under a per-run lock."""

from __future__ import annotations

import logging
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from run_orchestrator.runs.context import OrchestratorContext
from run_orchestrator.runs.process import process_run

logger = logging.getLogger(__name__)

RUN_PROCESS_QUEUE = "runProcess"
TERMINAL_STATUSES = frozenset({"done", "failed"})


class RunProcessMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    run_id: str = Field(alias="runId")
    cluster_id: str = Field(alias="clusterId")
    lock_attempts: int = Field(default=0, alias="lockAttempts", ge=0)

    def to_body(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


def process_lock_key(run_id: str) -> str:
    return f"run-process-{run_id}"


def enqueue_run_process(
    ctx: OrchestratorContext,
    *,
    run_id: str,
    cluster_id: str,
    lock_attempts: int = 0,
    delay_s: float = 0.0,
) -> None:
    message = RunProcessMessage(run_id=run_id, cluster_id=cluster_id, lock_attempts=lock_attempts)
    ctx.queue.send(RUN_PROCESS_QUEUE, message.to_body(), delay_s=delay_s)


def handle_run_process_message(message: RunProcessMessage, ctx: OrchestratorContext) -> None:
    key = process_lock_key(message.run_id)
    max_attempts = ctx.settings.max_process_lock_attempts

    if not ctx.lock.try_acquire(key):
        if message.lock_attempts < max_attempts:
            delay_s = float(5**message.lock_attempts)
            enqueue_run_process(
                ctx,
                run_id=message.run_id,
                cluster_id=message.cluster_id,
                lock_attempts=message.lock_attempts + 1,
                delay_s=delay_s,
            )
            logger.info(
                "run_process event=lock_busy run_id=%s attempts=%d retry_in_s=%.0f",
                message.run_id,
                message.lock_attempts,
                delay_s,
            )
        else:
            logger.warning(
                "run_process event=lock_abandoned run_id=%s attempts=%d",
                message.run_id,
                message.lock_attempts,
            )
        return

    try:
        run = ctx.store.get_run(message.cluster_id, message.run_id)
        if run is None:
            logger.error(
                "run_process event=unknown_run run_id=%s cluster_id=%s",
                message.run_id,
                message.cluster_id,
            )
            return
        if run.status in TERMINAL_STATUSES:
            logger.info(
                "run_process event=skipped run_id=%s status=%s", message.run_id, run.status
            )
            return
        tags = ctx.store.get_run_tags(message.cluster_id, message.run_id)
        try:
            process_run(run, ctx, tags=tags)
        except Exception as exc:
            # A recorded failure is final; anything else is redelivered.
            current = ctx.store.get_run(message.cluster_id, message.run_id)
            if current is None or current.status != "failed":
                raise
            logger.warning(
                "run_process event=failed_not_retried run_id=%s error_type=%s",
                message.run_id,
                type(exc).__name__,
            )
    finally:
        ctx.lock.release(key)
