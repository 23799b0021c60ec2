"""Storage models shared by the orchestrator and persistence backends."""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

RunStatus = Literal["pending", "running", "paused", "done", "failed"]
JobStatus = Literal["pending", "running", "success", "failure"]
JobResultType = Literal["resolution", "rejection", "interrupt"]


class RunRecord(BaseModel):
    """Run configuration plus lifecycle fields."""

    id: str
    cluster_id: str
    status: RunStatus = "pending"
    failure_reason: str | None = None
    name: str | None = None
    model_identifier: str | None = None
    result_schema: dict[str, Any] | None = None
    attached_functions: list[str] = Field(default_factory=list)
    reasoning_traces: bool = True
    enable_summarization: bool = False
    system_prompt: str | None = None
    context: dict[str, Any] | None = None
    auth_context: dict[str, Any] | None = None
    on_status_change: str | None = None
    test: bool = False
    test_mocks: dict[str, dict[str, Any]] = Field(default_factory=dict)
    result: Any = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class JobRecord(BaseModel):
    """Asynchronous unit of work backing a service-function invocation."""

    id: str
    cluster_id: str
    run_id: str | None = None
    tool_call_id: str | None = None
    target_fn: str
    target_args: dict[str, Any] = Field(default_factory=dict)
    status: JobStatus = "pending"
    result: Any = None
    result_type: JobResultType | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class ServiceFunctionRecord(BaseModel):
    """A callable registered by an external worker."""

    cluster_id: str
    name: str
    description: str | None = None
    schema_json: dict[str, Any] | None = None


class ClusterSettings(BaseModel):
    cluster_id: str
    enable_knowledgebase: bool = False
    additional_context: str | None = None
