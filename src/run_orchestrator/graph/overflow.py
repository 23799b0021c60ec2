"""Context window handling for the model-facing view of a run's messages."""

from __future__ import annotations

import json
import logging
import math
from typing import Callable

from run_orchestrator.errors import AgentError
from run_orchestrator.runs.messages import RunMessage, to_anthropic_message

logger = logging.getLogger(__name__)

TOTAL_CONTEXT_THRESHOLD = 0.95
SYSTEM_PROMPT_THRESHOLD = 0.7
DEFAULT_CONTEXT_WINDOW = 100_000

TokenEstimator = Callable[[str], int]


def estimate_tokens(text: str) -> int:
    """Rough estimate of four characters per token."""
    return math.ceil(len(text) / 4)


def render_message(message: RunMessage) -> str:
    return json.dumps(to_anthropic_message(message))


def handle_context_window_overflow(
    *,
    messages: list[RunMessage],
    system_prompt: str,
    model_context_window: int | None = None,
    estimator: TokenEstimator = estimate_tokens,
    render: Callable[[RunMessage], str] = render_message,
) -> list[RunMessage]:
    """Return the suffix of ``messages`` that fits the model's context window.

    The input list is left untouched. The returned view always starts with a
    ``human`` or ``template`` message.
    """
    if not model_context_window:
        logger.warning(
            "context_window event=default_window window=%d", DEFAULT_CONTEXT_WINDOW
        )
    window = model_context_window or DEFAULT_CONTEXT_WINDOW

    system_prompt_limit = math.floor(window * SYSTEM_PROMPT_THRESHOLD)
    system_prompt_tokens = estimator(system_prompt)
    if system_prompt_tokens > system_prompt_limit:
        raise AgentError(f"System prompt can not exceed {system_prompt_limit} tokens")

    total_limit = window * TOTAL_CONTEXT_THRESHOLD
    remaining = list(messages)
    removed: list[RunMessage] = []

    def total_tokens() -> int:
        return system_prompt_tokens + estimator("".join(render(m) for m in remaining))

    while remaining and total_tokens() > total_limit:
        if len(remaining) == 1:
            raise AgentError("Run state is invalid")
        removed.append(remaining.pop(0))

    while remaining and remaining[0].type not in ("human", "template"):
        if len(remaining) == 1:
            raise AgentError("Run state is invalid")
        removed.append(remaining.pop(0))

    if removed:
        logger.info(
            "context_window event=truncated removed=%d kept=%d removed_ids=%s",
            len(removed),
            len(remaining),
            ",".join(message.id for message in removed),
        )
    return remaining
