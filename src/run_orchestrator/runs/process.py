"""Execute a run from its most recently persisted state."""

from __future__ import annotations

import logging
from functools import partial

from run_orchestrator.graph.machine import RunStateMachine
from run_orchestrator.graph.nodes.model_call import handle_model_call
from run_orchestrator.graph.nodes.tool_call import handle_tool_calls
from run_orchestrator.graph.state import RunGraphState, initial_state
from run_orchestrator.runs.context import OrchestratorContext
from run_orchestrator.runs.notify import notify_status_change
from run_orchestrator.storage.models import RunRecord
from run_orchestrator.tools.search import find_relevant_tools

logger = logging.getLogger(__name__)

DEFAULT_MODEL_IDENTIFIER = "claude-3-5-sonnet"
UNKNOWN_FAILURE_REASON = "An unknown error occurred during Run processing."


def process_run(
    run: RunRecord,
    ctx: OrchestratorContext,
    *,
    tags: dict[str, str] | None = None,
) -> RunGraphState:
    """Drive ``run`` until it is done, paused or failed.

    Messages produced by each step are written before the next step starts,
    so a crash at any point resumes from the last completed step. Any error
    marks the run failed and is re-raised.
    """
    logger.info(
        "run_process event=start run_id=%s cluster_id=%s status=%s tags=%s",
        run.id,
        run.cluster_id,
        run.status,
        ",".join(sorted(tags or {})),
    )

    try:
        ctx.store.update_run_status(run.cluster_id, run.id, status="running")
        additional_context = build_additional_context(run, ctx)
        all_available_tools = list(run.attached_functions) or [
            function.name for function in ctx.registry.list_functions(run.cluster_id)
        ]
        messages = ctx.store.get_run_messages(run.cluster_id, run.id)
        waiting_jobs = ctx.store.get_waiting_job_ids(run.cluster_id, run.id)

        model = ctx.model_factory.build(
            run.model_identifier or DEFAULT_MODEL_IDENTIFIER,
            purpose="agent_loop.reasoning",
            cluster_id=run.cluster_id,
            run_id=run.id,
        )
        machine = RunStateMachine(
            model_node=partial(
                handle_model_call,
                model=model,
                find_relevant_tools=partial(
                    find_relevant_tools,
                    registry=ctx.registry,
                    internal_tools=ctx.internal_tools,
                    tool_search=ctx.tool_search,
                    limit=ctx.settings.tool_search_limit,
                ),
                validator=ctx.validator,
                estimator=ctx.estimator,
                default_context_window=ctx.settings.default_context_window,
            ),
            tool_node=partial(
                handle_tool_calls,
                resolve_tool=ctx.resolver.resolve,
                max_concurrency=ctx.settings.tool_max_concurrency,
            ),
            post_step_save=partial(save_new_messages, ctx=ctx, run=run),
        )

        final = machine.invoke(
            initial_state(
                run,
                messages=messages,
                waiting_jobs=waiting_jobs,
                all_available_tools=all_available_tools,
                additional_context=additional_context,
                status="running" if run.status == "pending" else run.status,
            )
        )
    except Exception as exc:
        failure_reason = str(exc) or UNKNOWN_FAILURE_REASON
        logger.warning(
            "run_process event=failed run_id=%s error_type=%s reason=%s",
            run.id,
            type(exc).__name__,
            failure_reason,
        )
        ctx.store.update_run_status(
            run.cluster_id, run.id, status="failed", failure_reason=failure_reason
        )
        notify_status_change(
            run=run, status="failed", result=None, store=ctx.store, jobs=ctx.jobs
        )
        raise

    status = final["status"]
    ctx.store.update_run_status(run.cluster_id, run.id, status=status)
    if final["result"] is not None:
        ctx.store.update_run_result(run.cluster_id, run.id, final["result"])
    notify_status_change(
        run=run, status=status, result=final["result"], store=ctx.store, jobs=ctx.jobs
    )

    if status == "paused":
        logger.info(
            "run_process event=paused run_id=%s waiting_jobs=%s",
            run.id,
            ",".join(final["waiting_jobs"]),
        )
    else:
        logger.info("run_process event=completed run_id=%s status=%s", run.id, status)
    return final


def save_new_messages(
    state: RunGraphState, *, ctx: OrchestratorContext, run: RunRecord
) -> RunGraphState:
    """Persist unsaved messages one by one, in production order."""
    for message in state["messages"]:
        if message.persisted:
            continue
        ctx.store.insert_run_message(run.cluster_id, run.id, message)
        message.persisted = True
    return state


def build_additional_context(run: RunRecord, ctx: OrchestratorContext) -> str:
    parts: list[str] = []
    cluster_context = ctx.internal_tools.cluster_settings(run.cluster_id).additional_context
    if cluster_context:
        parts.append(cluster_context)
    base_url = ctx.settings.app_base_url.rstrip("/")
    parts.append(f"Current run URL: {base_url}/clusters/{run.cluster_id}/runs/{run.id}")
    if run.system_prompt:
        parts.append(run.system_prompt)
    return "\n".join(parts)
