"""Status-change notifications delivered as jobs for a registered function."""

from __future__ import annotations

import logging
from typing import Any

from run_orchestrator.storage.base import JobStore, RunStore
from run_orchestrator.storage.models import RunRecord, RunStatus

logger = logging.getLogger(__name__)


def notify_status_change(
    *,
    run: RunRecord,
    status: RunStatus,
    result: Any,
    store: RunStore,
    jobs: JobStore,
) -> str | None:
    """Create a job for ``run.on_status_change``. Returns the job id, if one was created.

    ``run`` is the record as it was before this execution, so an unchanged
    status is detected by comparing against it.
    """
    if not run.on_status_change:
        return None
    if run.status == status:
        return None

    try:
        payload = {
            "runId": run.id,
            "status": status,
            "metadata": store.get_run_tags(run.cluster_id, run.id),
            "result": result,
        }
        job = jobs.create_job(
            cluster_id=run.cluster_id,
            target_fn=run.on_status_change,
            target_args=payload,
        )
    except Exception as exc:  # noqa: BLE001
        logger.error(
            "run_notify event=failed run_id=%s target_fn=%s reason=%s",
            run.id,
            run.on_status_change,
            exc,
        )
        return None

    logger.info(
        "run_notify event=job_created run_id=%s status=%s job_id=%s", run.id, status, job.id
    )
    return job.id
