"""Job completion: store a service-function result and resume its run."""

from __future__ import annotations

import logging
from typing import Any

from run_orchestrator.queue.run_process import enqueue_run_process
from run_orchestrator.runs.context import OrchestratorContext
from run_orchestrator.storage.models import JobRecord

logger = logging.getLogger(__name__)


def persist_job_result(
    ctx: OrchestratorContext,
    *,
    cluster_id: str,
    job_id: str,
    result: Any,
    result_type: str = "resolution",
    status: str = "success",
) -> JobRecord:
    """Complete ``job_id`` and queue a run-process message for the run that is waiting on it.

    Raises ``KeyError`` when the job does not exist.
    """
    job = ctx.jobs.complete_job(
        cluster_id, job_id, status=status, result=result, result_type=result_type
    )
    logger.info(
        "job_result event=persisted job_id=%s target_fn=%s result_type=%s run_id=%s",
        job.id,
        job.target_fn,
        result_type,
        job.run_id,
    )
    if job.run_id:
        enqueue_run_process(ctx, run_id=job.run_id, cluster_id=cluster_id)
    return job
