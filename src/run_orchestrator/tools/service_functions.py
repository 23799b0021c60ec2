"""Tools backed by functions registered by external workers.

Executing one of these tools creates (or re-finds) the job for the
invocation's ``tool_call_id``. A job that is still outstanding pauses the
run instead of blocking it; the run resumes once the job completes.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable

from run_orchestrator.storage.base import JobStore
from run_orchestrator.storage.models import JobRecord, RunRecord, ServiceFunctionRecord
from run_orchestrator.tools.agent_tool import JOB_TIMEOUT, AgentTool, outcome

logger = logging.getLogger(__name__)

MAX_DESCRIPTION_CHARS = 1024
OUTSTANDING_JOB_STATUSES = ("pending", "running")

Summarize = Callable[[Any, str], Any]


def _noop(tool_input: dict[str, Any]) -> str:
    raise NotImplementedError("Abstract service function tools are not executable")


def build_abstract_service_function_tool(function: ServiceFunctionRecord) -> AgentTool:
    """Tool definition used for the model prompt only."""
    return AgentTool(
        name=function.name,
        description=(function.description or f"{function.name} function")[:MAX_DESCRIPTION_CHARS],
        schema=function.schema_json,
        func=_noop,
    )


def build_service_function_tool(
    *,
    function: ServiceFunctionRecord,
    run: RunRecord,
    tool_call_id: str,
    jobs: JobStore,
    summarize: Summarize | None = None,
    poll_timeout_s: float = 0.0,
    poll_interval_s: float = 0.25,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> AgentTool:
    abstract = build_abstract_service_function_tool(function)

    def handler(tool_input: dict[str, Any]) -> str:
        job = jobs.create_job(
            cluster_id=run.cluster_id,
            target_fn=function.name,
            target_args=tool_input,
            run_id=run.id,
            tool_call_id=tool_call_id,
        )
        job = _wait_for_job(
            jobs,
            job,
            timeout_s=poll_timeout_s,
            interval_s=poll_interval_s,
            sleep=sleep,
            clock=clock,
        )

        if job.status in OUTSTANDING_JOB_STATUSES:
            logger.info(
                "service_function event=job_outstanding run_id=%s job_id=%s target_fn=%s",
                run.id,
                job.id,
                function.name,
            )
            return outcome(json.dumps([job.id]), JOB_TIMEOUT, "success")

        if not job.result_type or job.result is None:
            logger.warning(
                "service_function event=empty_result run_id=%s job_id=%s", run.id, job.id
            )
            return outcome({"message": "Job did not return a result."}, "rejection", "failure")

        result = job.result
        if run.enable_summarization and summarize is not None:
            result = summarize(result, function.name)
        return outcome(result, job.result_type, job.status)

    return AgentTool(
        name=abstract.name,
        description=abstract.description,
        schema=abstract.schema,
        func=handler,
    )


def _wait_for_job(
    jobs: JobStore,
    job: JobRecord,
    *,
    timeout_s: float,
    interval_s: float,
    sleep: Callable[[float], None],
    clock: Callable[[], float],
) -> JobRecord:
    deadline = clock() + timeout_s
    while job.status in OUTSTANDING_JOB_STATUSES and clock() < deadline:
        sleep(interval_s)
        refreshed = jobs.get_job(job.cluster_id, job.id)
        if refreshed is None:
            break
        job = refreshed
    return job
