"""Schema-validated tool wrapper handed to the model and the tool dispatcher."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from run_orchestrator.errors import AgentError, AgentToolInputError
from run_orchestrator.validation import JsonSchemaValidator, SchemaValidator

logger = logging.getLogger(__name__)

EMPTY_OBJECT_SCHEMA: dict[str, Any] = {"type": "object", "properties": {}}

# A pause signal: the backing job is still pending, not a timeout.
JOB_TIMEOUT = "jobTimeout"
INTERRUPT = "interrupt"
ResultType = Literal["resolution", "rejection", "interrupt", "jobTimeout"]

ToolFunc = Callable[[dict[str, Any]], str]


@dataclass(frozen=True)
class AgentTool:
    """A callable tool. ``func`` returns a JSON-encoded ``{result, resultType, status}``."""

    name: str
    description: str
    func: ToolFunc
    schema: dict[str, Any] | None = None
    validator: SchemaValidator = field(default_factory=JsonSchemaValidator, repr=False)

    def execute(self, tool_input: Any) -> str:
        schema = self.schema or EMPTY_OBJECT_SCHEMA
        errors = self.validator.validate(tool_input, schema)
        if errors:
            raise AgentToolInputError(
                f"Provided input did not match schema for {self.name}", errors
            )
        return self.func(tool_input)

    def schema_json(self) -> str:
        return json.dumps(self.schema or EMPTY_OBJECT_SCHEMA)


def outcome(result: Any, result_type: str = "resolution", status: str = "success") -> str:
    return json.dumps({"result": result, "resultType": result_type, "status": status})


class FunctionResponse(BaseModel):
    """Decoded tool outcome."""

    model_config = ConfigDict(populate_by_name=True)

    result: Any = None
    result_type: ResultType = Field(alias="resultType")
    status: str

    @model_validator(mode="after")
    def _job_timeout_carries_job_ids(self) -> FunctionResponse:
        if self.result_type == JOB_TIMEOUT and not (
            isinstance(self.result, list) and all(isinstance(item, str) for item in self.result)
        ):
            raise ValueError("jobTimeout result must be a list of job ids")
        return self


def parse_function_response(response: str) -> FunctionResponse:
    if not isinstance(response, str):
        raise AgentError(f"Expected response to be a string, got {type(response).__name__}")

    try:
        parsed: Any = json.loads(response)
    except json.JSONDecodeError as exc:
        logger.error("tool_response event=not_json response=%s", response[:400])
        raise AgentError(f"Failed to parse tool response: {exc}") from exc

    if isinstance(parsed, dict) and isinstance(parsed.get("result"), str):
        try:
            parsed["result"] = json.loads(parsed["result"])
        except json.JSONDecodeError:
            # A string result that is not JSON stays as text.
            pass

    try:
        return FunctionResponse.model_validate(parsed)
    except ValidationError as exc:
        logger.error("tool_response event=parse_failed response=%s error=%s", response[:400], exc)
        raise AgentError(f"Failed to parse tool response: {exc}") from exc
