"""Typed state contract for the run state machine."""

from __future__ import annotations

from typing import Any, TypedDict

from run_orchestrator.runs.messages import RunMessage
from run_orchestrator.storage.models import RunRecord, RunStatus


class RunGraphState(TypedDict):
    run: RunRecord
    status: RunStatus
    messages: list[RunMessage]
    waiting_jobs: list[str]
    all_available_tools: list[str]
    additional_context: str
    result: Any


class StateUpdate(TypedDict, total=False):
    """Partial update returned by a node. Lists are appended, scalars overwritten."""

    status: RunStatus
    messages: list[RunMessage]
    waiting_jobs: list[str]
    result: Any


def initial_state(
    run: RunRecord,
    *,
    messages: list[RunMessage] | None = None,
    waiting_jobs: list[str] | None = None,
    all_available_tools: list[str] | None = None,
    additional_context: str = "",
    status: RunStatus = "running",
) -> RunGraphState:
    return {
        "run": run,
        "status": status,
        "messages": list(messages or []),
        "waiting_jobs": list(waiting_jobs or []),
        "all_available_tools": list(all_available_tools or []),
        "additional_context": additional_context,
        "result": None,
    }


def apply_update(state: RunGraphState, update: StateUpdate) -> RunGraphState:
    next_state: RunGraphState = {
        **state,
        "messages": [*state["messages"], *update.get("messages", [])],
        "waiting_jobs": [*state["waiting_jobs"], *update.get("waiting_jobs", [])],
    }
    if "status" in update:
        next_state["status"] = update["status"]
    if "result" in update:
        next_state["result"] = update["result"]
    return next_state
