"""In-memory storage backends for tests and local runs."""

from __future__ import annotations

import threading
import time
from datetime import UTC, datetime
from typing import Any, Callable
from uuid import uuid4

from run_orchestrator.runs.messages import RunMessage
from run_orchestrator.storage.models import (
    ClusterSettings,
    JobRecord,
    RunRecord,
    RunStatus,
    ServiceFunctionRecord,
)


class InMemoryRunStore:
    """Runs, messages, jobs and registered functions kept in process memory."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._runs: dict[tuple[str, str], RunRecord] = {}
        self._tags: dict[tuple[str, str], dict[str, str]] = {}
        self._messages: dict[tuple[str, str], list[RunMessage]] = {}
        self._jobs: dict[tuple[str, str], JobRecord] = {}
        self._jobs_by_call: dict[tuple[str, str], str] = {}
        self._functions: dict[tuple[str, str], ServiceFunctionRecord] = {}
        self._cluster_settings: dict[str, ClusterSettings] = {}

    def migrate(self) -> None:
        return None

    # Runs

    def create_run(self, run: RunRecord, *, tags: dict[str, str] | None = None) -> RunRecord:
        now = datetime.now(UTC)
        record = run.model_copy(update={"created_at": now, "updated_at": now})
        with self._lock:
            self._runs[(run.cluster_id, run.id)] = record
            self._tags[(run.cluster_id, run.id)] = dict(tags or {})
        return record

    def get_run(self, cluster_id: str, run_id: str) -> RunRecord | None:
        with self._lock:
            record = self._runs.get((cluster_id, run_id))
        return record.model_copy(deep=True) if record else None

    def get_run_tags(self, cluster_id: str, run_id: str) -> dict[str, str]:
        with self._lock:
            return dict(self._tags.get((cluster_id, run_id), {}))

    def update_run_status(
        self,
        cluster_id: str,
        run_id: str,
        *,
        status: RunStatus,
        failure_reason: str | None = None,
    ) -> RunRecord:
        return self._update_run(
            cluster_id, run_id, {"status": status, "failure_reason": failure_reason}
        )

    def update_run_result(self, cluster_id: str, run_id: str, result: Any) -> None:
        self._update_run(cluster_id, run_id, {"result": result})

    def update_run_name(self, cluster_id: str, run_id: str, name: str) -> None:
        self._update_run(cluster_id, run_id, {"name": name})

    def _update_run(self, cluster_id: str, run_id: str, update: dict[str, Any]) -> RunRecord:
        with self._lock:
            current = self._runs.get((cluster_id, run_id))
            if current is None:
                raise KeyError(f"Run {run_id} does not exist")
            updated = current.model_copy(update={**update, "updated_at": datetime.now(UTC)})
            self._runs[(cluster_id, run_id)] = updated
        return updated

    # Messages

    def get_run_messages(
        self,
        cluster_id: str,
        run_id: str,
        *,
        after: str | None = None,
        limit: int = 1000,
    ) -> list[RunMessage]:
        with self._lock:
            messages = list(self._messages.get((cluster_id, run_id), []))
        if after is not None:
            ids = [message.id for message in messages]
            messages = messages[ids.index(after) + 1 :] if after in ids else []
        return [message.model_copy(deep=True) for message in messages[:limit]]

    def insert_run_message(self, cluster_id: str, run_id: str, message: RunMessage) -> str:
        stored = message.model_copy(
            deep=True,
            update={"persisted": True, "created_at": message.created_at or datetime.now(UTC)},
        )
        with self._lock:
            bucket = self._messages.setdefault((cluster_id, run_id), [])
            if any(existing.id == stored.id for existing in bucket):
                raise ValueError(f"Message {stored.id} already exists")
            bucket.append(stored)
        return stored.id

    def get_waiting_job_ids(self, cluster_id: str, run_id: str) -> list[str]:
        with self._lock:
            return [
                job.id
                for job in self._jobs.values()
                if job.cluster_id == cluster_id
                and job.run_id == run_id
                and job.status in ("pending", "running")
            ]

    # Jobs

    def create_job(
        self,
        *,
        cluster_id: str,
        target_fn: str,
        target_args: dict[str, Any],
        run_id: str | None = None,
        tool_call_id: str | None = None,
    ) -> JobRecord:
        with self._lock:
            if run_id and tool_call_id:
                existing_id = self._jobs_by_call.get((run_id, tool_call_id))
                if existing_id is not None:
                    return self._jobs[(cluster_id, existing_id)].model_copy(deep=True)
            now = datetime.now(UTC)
            job = JobRecord(
                id=str(uuid4()),
                cluster_id=cluster_id,
                run_id=run_id,
                tool_call_id=tool_call_id,
                target_fn=target_fn,
                target_args=target_args,
                created_at=now,
                updated_at=now,
            )
            self._jobs[(cluster_id, job.id)] = job
            if run_id and tool_call_id:
                self._jobs_by_call[(run_id, tool_call_id)] = job.id
        return job.model_copy(deep=True)

    def get_job(self, cluster_id: str, job_id: str) -> JobRecord | None:
        with self._lock:
            job = self._jobs.get((cluster_id, job_id))
        return job.model_copy(deep=True) if job else None

    def complete_job(
        self,
        cluster_id: str,
        job_id: str,
        *,
        status: str,
        result: Any,
        result_type: str | None,
    ) -> JobRecord:
        with self._lock:
            current = self._jobs.get((cluster_id, job_id))
            if current is None:
                raise KeyError(f"Job {job_id} does not exist")
            updated = current.model_copy(
                update={
                    "status": status,
                    "result": result,
                    "result_type": result_type,
                    "updated_at": datetime.now(UTC),
                }
            )
            self._jobs[(cluster_id, job_id)] = updated
        return updated

    def list_jobs(self, cluster_id: str, *, target_fn: str | None = None) -> list[JobRecord]:
        with self._lock:
            jobs = [job for job in self._jobs.values() if job.cluster_id == cluster_id]
        if target_fn is not None:
            jobs = [job for job in jobs if job.target_fn == target_fn]
        return jobs

    # Function registry and cluster settings

    def upsert_function(self, record: ServiceFunctionRecord) -> None:
        with self._lock:
            self._functions[(record.cluster_id, record.name)] = record

    def get_function(self, cluster_id: str, name: str) -> ServiceFunctionRecord | None:
        with self._lock:
            return self._functions.get((cluster_id, name))

    def list_functions(self, cluster_id: str) -> list[ServiceFunctionRecord]:
        with self._lock:
            return [
                record
                for (record_cluster, _), record in self._functions.items()
                if record_cluster == cluster_id
            ]

    def set_cluster_settings(self, settings: ClusterSettings) -> None:
        with self._lock:
            self._cluster_settings[settings.cluster_id] = settings

    def get_cluster_settings(self, cluster_id: str) -> ClusterSettings:
        with self._lock:
            return self._cluster_settings.get(cluster_id) or ClusterSettings(cluster_id=cluster_id)


class InMemoryRunLock:
    """Process-local mutex keyed by string."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._held: set[str] = set()

    def try_acquire(self, key: str) -> bool:
        with self._lock:
            if key in self._held:
                return False
            self._held.add(key)
            return True

    def release(self, key: str) -> None:
        with self._lock:
            self._held.discard(key)

    def is_held(self, key: str) -> bool:
        with self._lock:
            return key in self._held


class InMemoryRunQueue:
    """Delay-aware queue with receipt-based ack/release."""

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, list[dict[str, Any]]] = {}

    def send(self, queue_name: str, body: dict[str, Any], *, delay_s: float = 0.0) -> None:
        with self._lock:
            self._entries.setdefault(queue_name, []).append(
                {
                    "receipt": str(uuid4()),
                    "body": dict(body),
                    "available_at": self._clock() + max(delay_s, 0.0),
                    "delay_s": delay_s,
                    "in_flight": False,
                }
            )

    def receive(self, queue_name: str, *, max_messages: int) -> list[tuple[str, dict[str, Any]]]:
        now = self._clock()
        output: list[tuple[str, dict[str, Any]]] = []
        with self._lock:
            for entry in self._entries.get(queue_name, []):
                if len(output) >= max_messages:
                    break
                if entry["in_flight"] or entry["available_at"] > now:
                    continue
                entry["in_flight"] = True
                output.append((entry["receipt"], dict(entry["body"])))
        return output

    def ack(self, queue_name: str, receipt: str) -> None:
        with self._lock:
            entries = self._entries.get(queue_name, [])
            self._entries[queue_name] = [e for e in entries if e["receipt"] != receipt]

    def release(self, queue_name: str, receipt: str) -> None:
        with self._lock:
            for entry in self._entries.get(queue_name, []):
                if entry["receipt"] == receipt:
                    entry["in_flight"] = False

    def pending(self, queue_name: str) -> list[dict[str, Any]]:
        """Snapshot of queued entries, including delayed ones."""
        with self._lock:
            return [dict(entry) for entry in self._entries.get(queue_name, [])]
