"""System prompt assembly for the model node."""

from __future__ import annotations

import json

from run_orchestrator.graph.state import RunGraphState
from run_orchestrator.tools.agent_tool import AgentTool

FINAL_RESULT_SCHEMA_TAG_NAME = "final_result_schema"

_DIRECTIVES = (
    "You are a helpful assistant with access to a set of tools designed to assist in completing tasks.",
    "You do not respond to greetings or small talk, and instead, you return 'done'.",
    "Use the tools at your disposal to achieve the task requested.",
    "If you cannot complete a task with the given tools, return 'done' and explain the issue clearly.",
    "If there is nothing left to do, return 'done' and provide the final result.",
    "If you encounter invocation errors (e.g., incorrect tool name, missing input), retry based on the error message.",
    "When possible, return multiple invocations to trigger them in parallel.",
    "Provide concise and clear responses. Use **bold** to highlight important words.",
)


def build_system_prompt(state: RunGraphState, relevant_tools: list[AgentTool]) -> str:
    run = state["run"]
    lines = list(_DIRECTIVES)

    if run.result_schema:
        lines.append(
            "Once all tasks have been completed, return the final result as a structured "
            f"object in the format described by <{FINAL_RESULT_SCHEMA_TAG_NAME}>."
        )
        lines.append(
            f"<{FINAL_RESULT_SCHEMA_TAG_NAME}>{json.dumps(run.result_schema)}"
            f"</{FINAL_RESULT_SCHEMA_TAG_NAME}>"
        )
    else:
        lines.append(
            "Once all tasks have been completed, return the final result in markdown "
            "as your message."
        )

    if state["additional_context"]:
        lines.append(state["additional_context"])

    relevant_names = {tool.name for tool in relevant_tools}
    lines.append("<TOOLS_SCHEMAS>")
    for tool in relevant_tools:
        lines.append(f"{tool.name} - {tool.description} {tool.schema_json()}")
    lines.append("</TOOLS_SCHEMAS>")

    other_tools = [name for name in state["all_available_tools"] if name not in relevant_names]
    lines.append("<OTHER_AVAILABLE_TOOLS>")
    lines.extend(other_tools)
    lines.append("</OTHER_AVAILABLE_TOOLS>")

    return "\n".join(lines)
