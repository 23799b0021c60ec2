"""Storage interfaces for run orchestration."""

from __future__ import annotations

from typing import Any, Protocol

from run_orchestrator.runs.messages import RunMessage
from run_orchestrator.storage.models import (
    ClusterSettings,
    JobRecord,
    RunRecord,
    RunStatus,
    ServiceFunctionRecord,
)


class RunStore(Protocol):
    def migrate(self) -> None: ...

    def create_run(self, run: RunRecord, *, tags: dict[str, str] | None = None) -> RunRecord: ...

    def get_run(self, cluster_id: str, run_id: str) -> RunRecord | None: ...

    def get_run_tags(self, cluster_id: str, run_id: str) -> dict[str, str]: ...

    def get_run_messages(
        self,
        cluster_id: str,
        run_id: str,
        *,
        after: str | None = None,
        limit: int = 1000,
    ) -> list[RunMessage]: ...

    def insert_run_message(self, cluster_id: str, run_id: str, message: RunMessage) -> str: ...

    def get_waiting_job_ids(self, cluster_id: str, run_id: str) -> list[str]: ...

    def update_run_status(
        self,
        cluster_id: str,
        run_id: str,
        *,
        status: RunStatus,
        failure_reason: str | None = None,
    ) -> RunRecord: ...

    def update_run_result(self, cluster_id: str, run_id: str, result: Any) -> None: ...

    def update_run_name(self, cluster_id: str, run_id: str, name: str) -> None: ...

    def get_cluster_settings(self, cluster_id: str) -> ClusterSettings: ...


class JobStore(Protocol):
    def create_job(
        self,
        *,
        cluster_id: str,
        target_fn: str,
        target_args: dict[str, Any],
        run_id: str | None = None,
        tool_call_id: str | None = None,
    ) -> JobRecord: ...

    def get_job(self, cluster_id: str, job_id: str) -> JobRecord | None: ...

    def complete_job(
        self,
        cluster_id: str,
        job_id: str,
        *,
        status: str,
        result: Any,
        result_type: str | None,
    ) -> JobRecord: ...


class FunctionRegistry(Protocol):
    def upsert_function(self, record: ServiceFunctionRecord) -> None: ...

    def get_function(self, cluster_id: str, name: str) -> ServiceFunctionRecord | None: ...

    def list_functions(self, cluster_id: str) -> list[ServiceFunctionRecord]: ...


class RunLock(Protocol):
    def try_acquire(self, key: str) -> bool: ...

    def release(self, key: str) -> None: ...


class RunQueue(Protocol):
    def send(self, queue_name: str, body: dict[str, Any], *, delay_s: float = 0.0) -> None: ...

    def receive(self, queue_name: str, *, max_messages: int) -> list[tuple[str, dict[str, Any]]]: ...

    def ack(self, queue_name: str, receipt: str) -> None: ...

    def release(self, queue_name: str, receipt: str) -> None: ...
