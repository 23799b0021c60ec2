"""Edge decisions for the run state machine.

Each function inspects a state snapshot and names the next node. None of them
mutate state or perform I/O; persistence happens in the machine before the
post-step edges are evaluated.
"""

from __future__ import annotations

import logging
from typing import Literal

from run_orchestrator.graph.state import RunGraphState
from run_orchestrator.runs.messages import (
    AgentMessage,
    InvocationResultMessage,
    RunMessage,
    SupervisorMessage,
    has_invocations,
)

logger = logging.getLogger(__name__)

MODEL_NODE = "model"
TOOL_NODE = "tool"
END = "end"

NextNode = Literal["model", "tool", "end"]


def post_start(state: RunGraphState) -> NextNode:
    if state["waiting_jobs"]:
        return END

    last = _last_message(state["messages"])
    if has_invocations(last):
        return TOOL_NODE

    # Resume a parallel batch that was interrupted part way through.
    if unresolved_invocation_ids(state["messages"]):
        return TOOL_NODE

    if isinstance(last, AgentMessage):
        return END

    return MODEL_NODE


def post_model(state: RunGraphState) -> NextNode:
    if state["status"] != "running":
        return END

    last = _last_message(state["messages"])
    if has_invocations(last):
        return TOOL_NODE
    if isinstance(last, SupervisorMessage):
        return MODEL_NODE
    if isinstance(last, AgentMessage):
        logger.warning(
            "run_graph event=agent_without_invocations run_id=%s message_id=%s",
            state["run"].id,
            last.id,
        )
    return END


def post_tool(state: RunGraphState) -> NextNode:
    if state["status"] in ("done", "paused"):
        return END
    return MODEL_NODE


def unresolved_invocation_ids(messages: list[RunMessage]) -> list[str]:
    """Invocation ids from agent messages with no matching invocation-result."""
    resolved = {m.data.id for m in messages if isinstance(m, InvocationResultMessage)}
    outstanding: list[str] = []
    for message in messages:
        if not isinstance(message, AgentMessage):
            continue
        for invocation in message.data.invocations or []:
            if invocation.id and invocation.id not in resolved:
                outstanding.append(invocation.id)
    return outstanding


def _last_message(messages: list[RunMessage]) -> RunMessage | None:
    return messages[-1] if messages else None
