"""Short run titles generated from the first message."""

from __future__ import annotations

import logging

from pydantic import BaseModel, ValidationError

from run_orchestrator.errors import RetryableError
from run_orchestrator.models.base import Model

logger = logging.getLogger(__name__)

TITLE_MODEL_IDENTIFIER = "claude-3-haiku"


class TitleOutput(BaseModel):
    summary: str


def title_system_prompt(words: int) -> str:
    return (
        "You are a title generation assistant that is capable of succinctly summarizing a set "
        f"of messages in a single sentence. The title should be no more than {words} words. "
        "Generate title for the following messages. Use identifying information such as names, "
        "dates, and locations if necessary. Good examples:\n"
        "  - Ticket information for Bob\n"
        "  - Refund request for Alice\n"
        "  - List of capabilities for the assistant\n"
        "Bad examples:\n"
        "  - I am capable of generating titles for messages"
    )


def generate_title(content: str, *, model: Model, words: int = 10) -> TitleOutput:
    response = model.structured(
        messages=[{"role": "user", "content": [{"type": "text", "text": content}]}],
        system=title_system_prompt(words),
        schema=TitleOutput.model_json_schema(),
    )
    try:
        return TitleOutput.model_validate(response["structured"])
    except ValidationError as exc:
        logger.error("run_title event=invalid_output errors=%s", exc.errors())
        raise RetryableError("Invalid title output from model") from exc
