"""Explicit finite-state machine that drives a run through model and tool steps."""

from __future__ import annotations

import logging
from typing import Callable

from run_orchestrator.graph.edges import (
    END,
    MODEL_NODE,
    TOOL_NODE,
    post_model,
    post_start,
    post_tool,
)
from run_orchestrator.graph.state import RunGraphState, StateUpdate, apply_update

logger = logging.getLogger(__name__)

Node = Callable[[RunGraphState], StateUpdate]
StepSaver = Callable[[RunGraphState], RunGraphState]


class RunStateMachine:
    """Two nodes (``model`` and ``tool``) and three edges.

    Every step's messages go through ``post_step_save`` before the next edge
    is evaluated, so a crash between steps never loses produced messages.
    """

    def __init__(
        self,
        *,
        model_node: Node,
        tool_node: Node,
        post_step_save: StepSaver | None = None,
    ) -> None:
        self.model_node = model_node
        self.tool_node = tool_node
        self.post_step_save = post_step_save or (lambda state: state)

    def invoke(self, state: RunGraphState) -> RunGraphState:
        run_id = state["run"].id
        next_node = post_start(state)
        steps = 0
        logger.info("run_graph event=start run_id=%s next=%s", run_id, next_node)

        while next_node != END:
            steps += 1
            if next_node == MODEL_NODE:
                state = self._step(state, self.model_node)
                next_node = post_model(state)
            elif next_node == TOOL_NODE:
                state = self._step(state, self.tool_node)
                next_node = post_tool(state)
            else:  # pragma: no cover
                raise ValueError(f"Unknown node: {next_node}")
            logger.info(
                "run_graph event=step run_id=%s step=%d status=%s next=%s",
                run_id,
                steps,
                state["status"],
                next_node,
            )

        logger.info(
            "run_graph event=end run_id=%s steps=%d status=%s", run_id, steps, state["status"]
        )
        return state

    def _step(self, state: RunGraphState, node: Node) -> RunGraphState:
        update = node(state)
        return self.post_step_save(apply_update(state, update))
