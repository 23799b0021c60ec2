"""Shrink oversized job results before they reach the model context."""

from __future__ import annotations

import json
import logging
from typing import Any

from run_orchestrator.graph.overflow import estimate_tokens
from run_orchestrator.models.base import Model

logger = logging.getLogger(__name__)

MAX_RESULT_CHAR_COUNT = 10_000
SUMMARIZER_MODEL_IDENTIFIER = "claude-3-haiku"


def needs_summarizing(result: Any, *, threshold: int = MAX_RESULT_CHAR_COUNT) -> bool:
    if isinstance(result, str):
        return len(result) > threshold
    if not result:
        return False
    return len(json.dumps(result, default=str)) > threshold


def summarize_job_result_if_necessary(
    result: Any,
    *,
    model: Model,
    target_fn: str,
    invocation_purpose: str | None = None,
    threshold: int = MAX_RESULT_CHAR_COUNT,
) -> Any:
    """Return ``result`` unchanged, or ``{summary, originalResultSize, summarySize}``."""
    if not needs_summarizing(result, threshold=threshold):
        return result

    logger.info("summarizer event=start target_fn=%s", target_fn)
    purpose = f" for the purpose of {invocation_purpose}." if invocation_purpose else "."
    serialized = json.dumps(result, default=str)
    prompt = (
        "This following is a json result from a job.\n\n"
        "Summarize the result in a way that it preserves the most important "
        f"information{purpose}\n\n"
        f"<JOB_RESULT>\n{serialized}\n</JOB_RESULT>\n"
    )

    response = model.call(messages=[{"role": "user", "content": prompt}])
    content = response["content"]
    if len(content) != 1 or content[0].get("type") != "text":
        raise ValueError("Unexpected content blocks in summarizer response")

    summary = str(content[0].get("text", ""))
    logger.info(
        "summarizer event=done target_fn=%s original_chars=%d summary_chars=%d",
        target_fn,
        len(serialized),
        len(summary),
    )
    return {
        "summary": summary,
        "originalResultSize": estimate_tokens(serialized),
        "summarySize": estimate_tokens(summary),
    }
