"""JSON schema for the forced ``extract`` tool and helpers to read the model's answer."""

from __future__ import annotations

import json
from typing import Any

from run_orchestrator.graph.state import RunGraphState
from run_orchestrator.tools.agent_tool import AgentTool


def build_model_schema(
    *,
    state: RunGraphState,
    relevant_tools: list[AgentTool],
    result_schema: dict[str, Any] | None,
) -> dict[str, Any]:
    properties: dict[str, Any] = {
        "done": {
            "type": "boolean",
            "description": "Whether the agent is done",
        },
        "issue": {
            "type": "string",
            "description": (
                "Describe any issues you have encountered in this step. "
                "Specifically related to the tools you are using."
            ),
        },
    }

    if result_schema:
        properties["result"] = {
            **result_schema,
            "description": (
                "Result of the agent's operation. This should be in the format "
                "specified in the final_result_schema."
            ),
        }
    else:
        properties["message"] = {
            "type": "string",
            "description": "A message describing the current state or next steps",
        }

    tool_names = _unique([tool.name for tool in relevant_tools] + state["all_available_tools"])
    tool_name_property: dict[str, Any] = {"type": "string"}
    if tool_names:
        tool_name_property["enum"] = tool_names

    invocation_properties: dict[str, Any] = {
        "toolName": tool_name_property,
        "input": {
            "type": "object",
            "additionalProperties": True,
            "description": "Arbitrary input for the tool call, as defined by the tool's schema",
        },
    }
    if state["run"].reasoning_traces:
        invocation_properties["reasoning"] = {
            "type": "string",
            "description": "Reasoning trace for why this invocation is needed",
        }

    properties["invocations"] = {
        "type": "array",
        "description": "Any tool calls you need to make",
        "items": {
            "type": "object",
            "properties": invocation_properties,
            "required": ["toolName", "input"],
            "additionalProperties": False,
        },
    }

    return {
        "type": "object",
        "properties": properties,
        "additionalProperties": False,
    }


def rescue_stringified_result(structured: Any) -> Any:
    """Models sometimes return ``result`` as a JSON string; decode it in place."""
    if not isinstance(structured, dict):
        return structured
    result = structured.get("result")
    if isinstance(result, str):
        try:
            structured["result"] = json.loads(result)
        except json.JSONDecodeError:
            pass
    return structured


def extra_tool_calls(raw: Any) -> list[dict[str, Any]]:
    """``tool_use`` blocks emitted alongside the forced ``extract`` call."""
    content = raw.get("content", []) if isinstance(raw, dict) else []
    return [
        block
        for block in content
        if isinstance(block, dict)
        and block.get("type") == "tool_use"
        and block.get("name") != "extract"
    ]


def _unique(names: list[str]) -> list[str]:
    seen: set[str] = set()
    output: list[str] = []
    for name in names:
        if name in seen:
            continue
        seen.add(name)
        output.append(name)
    return output
