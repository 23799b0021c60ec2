"""Model node: ask the model for the next step and interpret its structured answer."""

from __future__ import annotations

import json
import logging
from typing import Any, Callable

from run_orchestrator.errors import AgentError
from run_orchestrator.graph.model_output import (
    build_model_schema,
    extra_tool_calls,
    rescue_stringified_result,
)
from run_orchestrator.graph.overflow import (
    TokenEstimator,
    estimate_tokens,
    handle_context_window_overflow,
)
from run_orchestrator.graph.state import RunGraphState, StateUpdate
from run_orchestrator.graph.system_prompt import build_system_prompt
from run_orchestrator.models.base import Model
from run_orchestrator.runs.messages import (
    AgentInvalidMessage,
    AgentMessage,
    AgentMessageData,
    GenericMessageData,
    Invocation,
    RunMessage,
    new_message_id,
    supervisor,
    to_anthropic_messages,
)
from run_orchestrator.tools.agent_tool import AgentTool
from run_orchestrator.validation import JsonSchemaValidator, SchemaValidator, format_errors

logger = logging.getLogger(__name__)

MAX_RUN_MESSAGES = 100
CYCLE_WINDOW = 10

RelevantToolLookup = Callable[[RunGraphState], list[AgentTool]]

INVALID_OUTPUT_PROMPT = "Provided object was invalid, check your input"
MISSING_INVOCATION_PROMPT = (
    "If you are not done, please provide an invocation, otherwise return done."
)
MISSING_RESULT_PROMPT = "Please provide a final result or a reason for stopping."


def handle_model_call(
    state: RunGraphState,
    *,
    model: Model,
    find_relevant_tools: RelevantToolLookup,
    validator: SchemaValidator | None = None,
    estimator: TokenEstimator = estimate_tokens,
    default_context_window: int | None = None,
) -> StateUpdate:
    detect_cycle(state["messages"])
    validator = validator or JsonSchemaValidator()
    run = state["run"]

    relevant_tools = find_relevant_tools(state)

    if run.result_schema:
        schema_errors = validator.check_schema(run.result_schema)
        if schema_errors:
            raise AgentError(f"Result schema is not valid: {format_errors(schema_errors)}")

    schema = build_model_schema(
        state=state,
        relevant_tools=relevant_tools,
        result_schema=run.result_schema,
    )
    system_prompt = build_system_prompt(state, relevant_tools)

    truncated = handle_context_window_overflow(
        messages=state["messages"],
        system_prompt=system_prompt + json.dumps(schema),
        model_context_window=model.context_window or default_context_window,
        estimator=estimator,
    )

    response = model.structured(
        messages=to_anthropic_messages(truncated),
        system=system_prompt,
        schema=schema,
    )
    return interpret_model_response(
        state,
        raw=response["raw"],
        structured=response["structured"],
        schema=schema,
        validator=validator,
    )


def interpret_model_response(
    state: RunGraphState,
    *,
    raw: dict[str, Any],
    structured: Any,
    schema: dict[str, Any],
    validator: SchemaValidator,
) -> StateUpdate:
    """Turn a structured model answer into state updates.

    Invalid or incomplete answers never fail the run. They produce an
    ``agent-invalid`` record of what the model said and a ``supervisor``
    correction, and the machine loops back to the model.
    """
    run = state["run"]
    tool_calls = extra_tool_calls(raw)
    data = rescue_stringified_result(structured)

    errors = validator.validate(data, schema)
    if errors:
        logger.warning(
            "model_call event=invalid_output run_id=%s errors=%s",
            run.id,
            format_errors(errors),
        )
        return _correction(
            details=data if isinstance(data, dict) else {"value": data},
            prompt=INVALID_OUTPUT_PROMPT,
            prompt_details={"errors": errors},
        )

    invocations: list[dict[str, Any]] = list(data.get("invocations") or [])
    for call in tool_calls:
        if not call.get("name"):
            continue
        extracted: dict[str, Any] = {
            "toolName": call.get("name"),
            "input": call.get("input") or {},
        }
        if run.reasoning_traces:
            extracted["reasoning"] = "Extracted from tool calls"
        invocations.append(extracted)
    if tool_calls:
        logger.info(
            "model_call event=extra_tool_calls run_id=%s tools=%s",
            run.id,
            ",".join(str(call.get("name")) for call in tool_calls),
        )

    done = bool(data.get("done"))
    result = data.get("result")
    message = data.get("message")

    if done and invocations:
        logger.info("model_call event=done_with_invocations run_id=%s", run.id)
        done = False
        result = None
        message = None

    if not done and not invocations:
        logger.info("model_call event=missing_invocations run_id=%s", run.id)
        return _correction(details=data, prompt=MISSING_INVOCATION_PROMPT)

    if done and result is None and not message:
        logger.info("model_call event=missing_result run_id=%s", run.id)
        return _correction(details=data, prompt=MISSING_RESULT_PROMPT)

    agent_message = AgentMessage(
        data=AgentMessageData(
            done=done,
            result=result,
            message=message if isinstance(message, str) else None,
            issue=data.get("issue"),
            invocations=[
                Invocation(
                    id=new_message_id(),
                    tool_name=item["toolName"],
                    input=item.get("input") or {},
                    reasoning=item.get("reasoning"),
                )
                for item in invocations
            ]
            or None,
        )
    )
    return {
        "messages": [agent_message],
        "status": "done" if done else "running",
        "result": result,
    }


def detect_cycle(messages: list[RunMessage]) -> None:
    if len(messages) >= MAX_RUN_MESSAGES:
        raise AgentError("Maximum Run message length exceeded.")

    if len(messages) >= CYCLE_WINDOW:
        recent = messages[-CYCLE_WINDOW:]
        if not any(m.type in ("invocation-result", "human") for m in recent):
            raise AgentError("Detected cycle in Run.")


def _correction(
    *,
    details: dict[str, Any],
    prompt: str,
    prompt_details: dict[str, Any] | None = None,
) -> StateUpdate:
    return {
        "messages": [
            AgentInvalidMessage(
                data=GenericMessageData(message="Invalid model response.", details=details)
            ),
            supervisor(prompt, details=prompt_details),
        ],
        "status": "running",
    }
