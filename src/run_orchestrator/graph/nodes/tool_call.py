"""Tool node: dispatch unresolved invocations from the latest agent message."""

from __future__ import annotations

import json
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable

from run_orchestrator.errors import AgentError, AgentToolInputError, NotFoundError
from run_orchestrator.graph.state import RunGraphState, StateUpdate
from run_orchestrator.runs.messages import (
    AgentMessage,
    Invocation,
    InvocationResultData,
    InvocationResultMessage,
    has_invocations,
)
from run_orchestrator.storage.models import RunRecord
from run_orchestrator.tools.agent_tool import (
    INTERRUPT,
    JOB_TIMEOUT,
    AgentTool,
    parse_function_response,
)

logger = logging.getLogger(__name__)

ToolLookup = Callable[[str, str, RunRecord], AgentTool]


def handle_tool_calls(
    state: RunGraphState,
    *,
    resolve_tool: ToolLookup,
    max_concurrency: int = 8,
) -> StateUpdate:
    messages = state["messages"]
    resolved_ids: set[str] = set()
    index = len(messages) - 1
    while index >= 0 and isinstance(messages[index], InvocationResultMessage):
        resolved_ids.add(messages[index].data.id)
        index -= 1

    agent_message = messages[index] if index >= 0 else None
    if not isinstance(agent_message, AgentMessage) or not has_invocations(agent_message):
        raise AgentError("Expected a tool call")

    pending = [
        invocation
        for invocation in agent_message.data.invocations or []
        if invocation.id not in resolved_ids
    ]
    skipped = len(agent_message.data.invocations or []) - len(pending)
    if skipped:
        logger.info(
            "tool_call event=skip_resolved run_id=%s skipped=%d pending=%d",
            state["run"].id,
            skipped,
            len(pending),
        )
    if not pending:
        return {"status": "running"}

    with ThreadPoolExecutor(max_workers=max(1, min(max_concurrency, len(pending)))) as pool:
        futures = [
            pool.submit(_handle_tool_call, invocation, state["run"], resolve_tool)
            for invocation in pending
        ]
        updates = [future.result() for future in futures]

    combined: StateUpdate = {"messages": [], "waiting_jobs": [], "status": "running"}
    for update in updates:
        combined["messages"].extend(update.get("messages", []))
        combined["waiting_jobs"].extend(update.get("waiting_jobs", []))
        if update.get("status") == "paused":
            combined["status"] = "paused"
    return combined


def _handle_tool_call(
    invocation: Invocation,
    run: RunRecord,
    resolve_tool: ToolLookup,
) -> StateUpdate:
    tool_call_id = invocation.id or ""
    tool_name = invocation.tool_name
    started_at = time.perf_counter()

    try:
        tool = resolve_tool(tool_name, tool_call_id, run)
    except NotFoundError as exc:
        logger.warning(
            "tool_call event=not_found run_id=%s tool=%s reason=%s", run.id, tool_name, exc
        )
        return _result_update(
            tool_call_id,
            tool_name,
            {
                "message": (
                    f"Failed to find tool: {tool_name}. This might mean that the service "
                    "that provides this tool is down. Human must be notified."
                ),
                "error": str(exc),
            },
        )

    try:
        response = parse_function_response(tool.execute(invocation.input))
    except AgentToolInputError as exc:
        logger.info(
            "tool_call event=input_invalid run_id=%s tool=%s errors=%d",
            run.id,
            tool_name,
            len(exc.validation_errors),
        )
        return _result_update(
            tool_call_id,
            tool_name,
            {
                "message": f"Provided input did not match schema for {tool_name}, check your input",
                "parseResult": exc.validation_errors,
            },
        )
    except Exception as exc:  # noqa: BLE001
        logger.error(
            "tool_call event=failed run_id=%s tool=%s reason=%s", run.id, tool_name, exc
        )
        return _result_update(
            tool_call_id,
            tool_name,
            {"message": f"Failed to invoke {tool_name}", "error": str(exc)},
        )

    logger.info(
        "tool_call event=completed run_id=%s tool=%s result_type=%s duration_ms=%.2f",
        run.id,
        tool_name,
        response.result_type,
        (time.perf_counter() - started_at) * 1000.0,
    )

    if response.result_type == JOB_TIMEOUT:
        return {"status": "paused", "waiting_jobs": list(response.result)}
    if response.result_type == INTERRUPT:
        return {"status": "paused"}

    return {
        "messages": [
            InvocationResultMessage(
                data=InvocationResultData(
                    id=tool_call_id,
                    result={tool_call_id: response.model_dump(mode="json", by_alias=True)},
                    result_type=response.result_type,
                    tool_name=tool_name,
                )
            )
        ]
    }


def _result_update(tool_call_id: str, tool_name: str, rejection: dict[str, Any]) -> StateUpdate:
    payload = {"result": rejection, "resultType": "rejection", "status": "failure"}
    # Coerce non-JSON values in error details to strings.
    payload = json.loads(json.dumps(payload, default=str))
    return {
        "messages": [
            InvocationResultMessage(
                data=InvocationResultData(
                    id=tool_call_id,
                    result={tool_call_id: payload},
                    result_type="rejection",
                    tool_name=tool_name,
                )
            )
        ]
    }
