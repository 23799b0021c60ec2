"""Run message contract: a discriminated union persisted in creation order."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Annotated, Any, Literal, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

MessageType = Literal[
    "human",
    "template",
    "supervisor",
    "agent",
    "agent-invalid",
    "invocation-result",
]


def new_message_id() -> str:
    return str(uuid4())


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class Invocation(_WireModel):
    id: str | None = None
    tool_name: str = Field(alias="toolName")
    input: dict[str, Any] = Field(default_factory=dict)
    reasoning: str | None = None


class GenericMessageData(_WireModel):
    message: str
    details: dict[str, Any] | None = None


class AgentMessageData(_WireModel):
    done: bool | None = None
    result: Any = None
    message: str | None = None
    issue: str | None = None
    invocations: list[Invocation] | None = None


class InvocationResultData(_WireModel):
    id: str
    result: dict[str, Any]
    result_type: str | None = Field(default=None, alias="resultType")
    tool_name: str | None = Field(default=None, alias="toolName")


class _MessageBase(_WireModel):
    id: str = Field(default_factory=new_message_id)
    created_at: datetime | None = None
    # Set once the message has been written to the run store.
    persisted: bool = False


class HumanMessage(_MessageBase):
    type: Literal["human"] = "human"
    data: GenericMessageData


class TemplateMessage(_MessageBase):
    type: Literal["template"] = "template"
    data: GenericMessageData


class SupervisorMessage(_MessageBase):
    type: Literal["supervisor"] = "supervisor"
    data: GenericMessageData


class AgentInvalidMessage(_MessageBase):
    type: Literal["agent-invalid"] = "agent-invalid"
    data: GenericMessageData


class AgentMessage(_MessageBase):
    type: Literal["agent"] = "agent"
    data: AgentMessageData


class InvocationResultMessage(_MessageBase):
    type: Literal["invocation-result"] = "invocation-result"
    data: InvocationResultData


RunMessage = Annotated[
    Union[
        HumanMessage,
        TemplateMessage,
        SupervisorMessage,
        AgentInvalidMessage,
        AgentMessage,
        InvocationResultMessage,
    ],
    Field(discriminator="type"),
]

_RUN_MESSAGE_ADAPTER: TypeAdapter[RunMessage] = TypeAdapter(RunMessage)


def parse_message(raw: dict[str, Any]) -> RunMessage:
    return _RUN_MESSAGE_ADAPTER.validate_python(raw)


def message_data(message: RunMessage) -> dict[str, Any]:
    """JSON-ready payload for the message's ``data`` column."""
    return message.data.model_dump(mode="json", by_alias=True, exclude_none=True)


def message_to_dict(message: RunMessage) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "id": message.id,
        "type": message.type,
        "data": message_data(message),
    }
    if message.created_at is not None:
        payload["createdAt"] = message.created_at.isoformat()
    return payload


def human(text: str, *, details: dict[str, Any] | None = None) -> HumanMessage:
    return HumanMessage(data=GenericMessageData(message=text, details=details))


def supervisor(text: str, *, details: dict[str, Any] | None = None) -> SupervisorMessage:
    return SupervisorMessage(data=GenericMessageData(message=text, details=details))


def has_invocations(message: RunMessage | None) -> bool:
    if not isinstance(message, AgentMessage):
        return False
    return bool(message.data.invocations)


def to_anthropic_message(message: RunMessage) -> dict[str, Any]:
    if isinstance(message, AgentMessage):
        text_payload = message.data.model_dump(
            mode="json", by_alias=True, exclude_none=True, exclude={"invocations"}
        )
        content: list[dict[str, Any]] = [{"type": "text", "text": json.dumps(text_payload)}]
        for invocation in message.data.invocations or []:
            if not invocation.id:
                raise ValueError("Invocation is missing id")
            content.append(
                {
                    "type": "tool_use",
                    "id": invocation.id,
                    "name": invocation.tool_name,
                    "input": invocation.input,
                }
            )
        return {"role": "assistant", "content": content}

    if isinstance(message, AgentInvalidMessage):
        return {
            "role": "assistant",
            "content": [{"type": "text", "text": json.dumps(message_data(message))}],
        }

    if isinstance(message, InvocationResultMessage):
        return {
            "role": "user",
            "content": [
                {
                    "type": "tool_result",
                    "tool_use_id": message.data.id,
                    "content": [{"type": "text", "text": json.dumps(message.data.result)}],
                }
            ],
        }

    text = json.dumps(message_data(message)) if message.data.details else message.data.message
    return {"role": "user", "content": [{"type": "text", "text": text}]}


def to_anthropic_messages(messages: list[RunMessage]) -> list[dict[str, Any]]:
    """Render messages for the provider, merging consecutive turns of the same role."""
    output: list[dict[str, Any]] = []
    for message in messages:
        rendered = to_anthropic_message(message)
        if output and output[-1]["role"] == rendered["role"]:
            output[-1]["content"].extend(rendered["content"])
            continue
        output.append(rendered)
    return output
