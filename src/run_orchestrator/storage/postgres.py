"""PostgreSQL-backed run store, advisory lock and queue with automatic table migration."""

from __future__ import annotations

import json
import threading
import uuid
from datetime import UTC, datetime
from typing import Any

from run_orchestrator.runs.messages import RunMessage, message_data, parse_message
from run_orchestrator.storage.models import (
    ClusterSettings,
    JobRecord,
    RunRecord,
    RunStatus,
    ServiceFunctionRecord,
)

_RUN_CONFIG_FIELDS = (
    "model_identifier",
    "result_schema",
    "attached_functions",
    "reasoning_traces",
    "enable_summarization",
    "system_prompt",
    "context",
    "auth_context",
    "on_status_change",
    "test",
    "test_mocks",
)


def _load_psycopg() -> tuple[Any, Any, Any]:
    try:
        import psycopg
        from psycopg.rows import dict_row
        from psycopg.types.json import Json
    except ImportError as exc:  # pragma: no cover
        raise RuntimeError(
            "PostgreSQL storage requires psycopg. "
            'Install with: python -m pip install "psycopg[binary]>=3.2,<4.0"'
        ) from exc
    return psycopg, dict_row, Json


class PostgresRunStore:
    """Persist runs, messages, jobs and registered functions in PostgreSQL."""

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise ValueError("RUN_ORCHESTRATOR_DATABASE_URL is required")
        self.database_url = database_url
        self._lock = threading.Lock()
        self._psycopg, self._dict_row, self._json_wrapper = _load_psycopg()

    def migrate(self) -> None:
        with self._lock, self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS runs (
                    id TEXT NOT NULL,
                    cluster_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    failure_reason TEXT,
                    name TEXT,
                    config_json JSONB NOT NULL DEFAULT '{}'::jsonb,
                    result_json JSONB,
                    created_at TIMESTAMPTZ NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL,
                    PRIMARY KEY (cluster_id, id)
                )
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS run_tags (
                    cluster_id TEXT NOT NULL,
                    run_id TEXT NOT NULL,
                    key TEXT NOT NULL,
                    value TEXT NOT NULL,
                    PRIMARY KEY (cluster_id, run_id, key)
                )
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS run_messages (
                    seq BIGSERIAL PRIMARY KEY,
                    id TEXT NOT NULL UNIQUE,
                    cluster_id TEXT NOT NULL,
                    run_id TEXT NOT NULL,
                    type TEXT NOT NULL,
                    data JSONB NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_run_messages_run
                ON run_messages(cluster_id, run_id, seq)
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS jobs (
                    id TEXT PRIMARY KEY,
                    cluster_id TEXT NOT NULL,
                    run_id TEXT,
                    tool_call_id TEXT,
                    target_fn TEXT NOT NULL,
                    target_args JSONB NOT NULL DEFAULT '{}'::jsonb,
                    status TEXT NOT NULL,
                    result JSONB,
                    result_type TEXT,
                    created_at TIMESTAMPTZ NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL,
                    UNIQUE (run_id, tool_call_id)
                )
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_jobs_run_status
                ON jobs(cluster_id, run_id, status)
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS service_functions (
                    cluster_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    description TEXT,
                    schema_json JSONB,
                    PRIMARY KEY (cluster_id, name)
                )
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS cluster_settings (
                    cluster_id TEXT PRIMARY KEY,
                    enable_knowledgebase BOOLEAN NOT NULL DEFAULT FALSE,
                    additional_context TEXT
                )
                """)
            conn.commit()

    # Runs

    def create_run(self, run: RunRecord, *, tags: dict[str, str] | None = None) -> RunRecord:
        now = datetime.now(tz=UTC)
        config = run.model_dump(mode="json", include=set(_RUN_CONFIG_FIELDS))
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO runs (
                    id, cluster_id, status, failure_reason, name,
                    config_json, result_json, created_at, updated_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    run.id,
                    run.cluster_id,
                    run.status,
                    run.failure_reason,
                    run.name,
                    self._json_wrapper(config),
                    None,
                    now,
                    now,
                ),
            )
            for key, value in (tags or {}).items():
                conn.execute(
                    "INSERT INTO run_tags (cluster_id, run_id, key, value) VALUES (%s, %s, %s, %s)",
                    (run.cluster_id, run.id, key, value),
                )
            conn.commit()
        created = self.get_run(run.cluster_id, run.id)
        if created is None:
            raise RuntimeError("Failed to load created run")
        return created

    def get_run(self, cluster_id: str, run_id: str) -> RunRecord | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM runs WHERE cluster_id = %s AND id = %s",
                (cluster_id, run_id),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_run(row)

    def get_run_tags(self, cluster_id: str, run_id: str) -> dict[str, str]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                "SELECT key, value FROM run_tags WHERE cluster_id = %s AND run_id = %s",
                (cluster_id, run_id),
            ).fetchall()
        return {str(row["key"]): str(row["value"]) for row in rows}

    def update_run_status(
        self,
        cluster_id: str,
        run_id: str,
        *,
        status: RunStatus,
        failure_reason: str | None = None,
    ) -> RunRecord:
        self._update_run_columns(
            cluster_id,
            run_id,
            "status = %s, failure_reason = %s",
            (status, failure_reason),
        )
        refreshed = self.get_run(cluster_id, run_id)
        if refreshed is None:
            raise KeyError(f"Run {run_id} does not exist")
        return refreshed

    def update_run_result(self, cluster_id: str, run_id: str, result: Any) -> None:
        self._update_run_columns(
            cluster_id,
            run_id,
            "result_json = %s",
            (self._json_wrapper(result) if result is not None else None,),
        )

    def update_run_name(self, cluster_id: str, run_id: str, name: str) -> None:
        self._update_run_columns(cluster_id, run_id, "name = %s", (name,))

    def _update_run_columns(
        self, cluster_id: str, run_id: str, assignments: str, values: tuple[Any, ...]
    ) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                f"UPDATE runs SET {assignments}, updated_at = %s WHERE cluster_id = %s AND id = %s",
                (*values, datetime.now(tz=UTC), cluster_id, run_id),
            )
            conn.commit()

    # Messages

    def get_run_messages(
        self,
        cluster_id: str,
        run_id: str,
        *,
        after: str | None = None,
        limit: int = 1000,
    ) -> list[RunMessage]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                """
                SELECT id, type, data, created_at
                FROM run_messages
                WHERE cluster_id = %s
                  AND run_id = %s
                  AND seq > COALESCE(
                      (SELECT seq FROM run_messages WHERE id = %s), 0
                  )
                ORDER BY seq ASC
                LIMIT %s
                """,
                (cluster_id, run_id, after, limit),
            ).fetchall()
        return [
            parse_message(
                {
                    "id": row["id"],
                    "type": row["type"],
                    "data": _parse_json(row["data"]),
                    "created_at": row["created_at"],
                    "persisted": True,
                }
            )
            for row in rows
        ]

    def insert_run_message(self, cluster_id: str, run_id: str, message: RunMessage) -> str:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO run_messages (id, cluster_id, run_id, type, data, created_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                RETURNING id
                """,
                (
                    message.id,
                    cluster_id,
                    run_id,
                    message.type,
                    self._json_wrapper(message_data(message)),
                    message.created_at or datetime.now(tz=UTC),
                ),
            ).fetchone()
            conn.commit()
        if row is None:
            raise RuntimeError("Failed to persist run message")
        return str(row["id"])

    def get_waiting_job_ids(self, cluster_id: str, run_id: str) -> list[str]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                """
                SELECT id FROM jobs
                WHERE cluster_id = %s AND run_id = %s AND status IN ('pending', 'running')
                ORDER BY created_at ASC
                """,
                (cluster_id, run_id),
            ).fetchall()
        return [str(row["id"]) for row in rows]

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
        now = datetime.now(tz=UTC)
        with self._lock, self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO jobs (
                    id, cluster_id, run_id, tool_call_id, target_fn,
                    target_args, status, created_at, updated_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, 'pending', %s, %s)
                ON CONFLICT (run_id, tool_call_id) DO NOTHING
                RETURNING *
                """,
                (
                    str(uuid.uuid4()),
                    cluster_id,
                    run_id,
                    tool_call_id,
                    target_fn,
                    self._json_wrapper(target_args),
                    now,
                    now,
                ),
            ).fetchone()
            if row is None:
                row = conn.execute(
                    "SELECT * FROM jobs WHERE run_id = %s AND tool_call_id = %s",
                    (run_id, tool_call_id),
                ).fetchone()
            conn.commit()
        if row is None:
            raise RuntimeError("Failed to persist job")
        return self._row_to_job(row)

    def get_job(self, cluster_id: str, job_id: str) -> JobRecord | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM jobs WHERE cluster_id = %s AND id = %s",
                (cluster_id, job_id),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_job(row)

    def complete_job(
        self,
        cluster_id: str,
        job_id: str,
        *,
        status: str,
        result: Any,
        result_type: str | None,
    ) -> JobRecord:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                """
                UPDATE jobs
                SET status = %s, result = %s, result_type = %s, updated_at = %s
                WHERE cluster_id = %s AND id = %s
                RETURNING *
                """,
                (
                    status,
                    self._json_wrapper(result) if result is not None else None,
                    result_type,
                    datetime.now(tz=UTC),
                    cluster_id,
                    job_id,
                ),
            ).fetchone()
            conn.commit()
        if row is None:
            raise KeyError(f"Job {job_id} does not exist")
        return self._row_to_job(row)

    # Function registry and cluster settings

    def upsert_function(self, record: ServiceFunctionRecord) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO service_functions (cluster_id, name, description, schema_json)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (cluster_id, name)
                DO UPDATE SET description = EXCLUDED.description,
                              schema_json = EXCLUDED.schema_json
                """,
                (
                    record.cluster_id,
                    record.name,
                    record.description,
                    self._json_wrapper(record.schema_json) if record.schema_json else None,
                ),
            )
            conn.commit()

    def get_function(self, cluster_id: str, name: str) -> ServiceFunctionRecord | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM service_functions WHERE cluster_id = %s AND name = %s",
                (cluster_id, name),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_function(row)

    def list_functions(self, cluster_id: str) -> list[ServiceFunctionRecord]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM service_functions WHERE cluster_id = %s ORDER BY name",
                (cluster_id,),
            ).fetchall()
        return [self._row_to_function(row) for row in rows]

    def get_cluster_settings(self, cluster_id: str) -> ClusterSettings:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM cluster_settings WHERE cluster_id = %s",
                (cluster_id,),
            ).fetchone()
        if row is None:
            return ClusterSettings(cluster_id=cluster_id)
        return ClusterSettings(
            cluster_id=cluster_id,
            enable_knowledgebase=bool(row["enable_knowledgebase"]),
            additional_context=row["additional_context"],
        )

    def _connect(self) -> Any:
        return self._psycopg.connect(self.database_url, row_factory=self._dict_row)

    @staticmethod
    def _row_to_run(row: Any) -> RunRecord:
        config = _parse_json(row.get("config_json")) or {}
        return RunRecord(
            id=str(row["id"]),
            cluster_id=str(row["cluster_id"]),
            status=row["status"],
            failure_reason=row["failure_reason"],
            name=row["name"],
            result=row.get("result_json"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            **{key: value for key, value in config.items() if key in _RUN_CONFIG_FIELDS},
        )

    @staticmethod
    def _row_to_job(row: Any) -> JobRecord:
        return JobRecord(
            id=str(row["id"]),
            cluster_id=str(row["cluster_id"]),
            run_id=row["run_id"],
            tool_call_id=row["tool_call_id"],
            target_fn=row["target_fn"],
            target_args=_parse_json(row["target_args"]) or {},
            status=row["status"],
            result=row["result"],
            result_type=row["result_type"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_function(row: Any) -> ServiceFunctionRecord:
        return ServiceFunctionRecord(
            cluster_id=str(row["cluster_id"]),
            name=str(row["name"]),
            description=row["description"],
            schema_json=_parse_json(row["schema_json"]),
        )


class PostgresAdvisoryLock:
    """Session-scoped ``pg_try_advisory_lock`` held on a dedicated connection per key."""

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise ValueError("RUN_ORCHESTRATOR_DATABASE_URL is required")
        self.database_url = database_url
        self._lock = threading.Lock()
        self._connections: dict[str, Any] = {}
        self._psycopg, self._dict_row, _ = _load_psycopg()

    def try_acquire(self, key: str) -> bool:
        conn = self._psycopg.connect(
            self.database_url, row_factory=self._dict_row, autocommit=True
        )
        row = conn.execute(
            "SELECT pg_try_advisory_lock(hashtext(%s)) AS acquired", (key,)
        ).fetchone()
        if not (row and row.get("acquired")):
            conn.close()
            return False
        with self._lock:
            self._connections[key] = conn
        return True

    def release(self, key: str) -> None:
        with self._lock:
            conn = self._connections.pop(key, None)
        if conn is None:
            return
        try:
            conn.execute("SELECT pg_advisory_unlock(hashtext(%s))", (key,))
        finally:
            conn.close()


class PostgresRunQueue:
    """Delayed work queue backed by a table and ``FOR UPDATE SKIP LOCKED``."""

    def __init__(self, database_url: str, *, visibility_timeout_s: float = 300.0) -> None:
        if not database_url:
            raise ValueError("RUN_ORCHESTRATOR_DATABASE_URL is required")
        self.database_url = database_url
        self.visibility_timeout_s = visibility_timeout_s
        self._psycopg, self._dict_row, self._json_wrapper = _load_psycopg()

    def migrate(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS run_queue (
                    id BIGSERIAL PRIMARY KEY,
                    queue_name TEXT NOT NULL,
                    body JSONB NOT NULL,
                    available_at TIMESTAMPTZ NOT NULL,
                    receive_count INTEGER NOT NULL DEFAULT 0
                )
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_run_queue_available
                ON run_queue(queue_name, available_at)
                """)
            conn.commit()

    def send(self, queue_name: str, body: dict[str, Any], *, delay_s: float = 0.0) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO run_queue (queue_name, body, available_at)
                VALUES (%s, %s, now() + make_interval(secs => %s))
                """,
                (queue_name, self._json_wrapper(body), max(delay_s, 0.0)),
            )
            conn.commit()

    def receive(self, queue_name: str, *, max_messages: int) -> list[tuple[str, dict[str, Any]]]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                WITH picked AS (
                    SELECT id
                    FROM run_queue
                    WHERE queue_name = %s AND available_at <= now()
                    ORDER BY available_at, id
                    LIMIT %s
                    FOR UPDATE SKIP LOCKED
                )
                UPDATE run_queue AS q
                SET available_at = now() + make_interval(secs => %s),
                    receive_count = q.receive_count + 1
                FROM picked
                WHERE q.id = picked.id
                RETURNING q.id, q.body
                """,
                (queue_name, max_messages, self.visibility_timeout_s),
            ).fetchall()
            conn.commit()
        return [(str(row["id"]), _parse_json(row["body"]) or {}) for row in rows]

    def ack(self, queue_name: str, receipt: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM run_queue WHERE queue_name = %s AND id = %s",
                (queue_name, int(receipt)),
            )
            conn.commit()

    def release(self, queue_name: str, receipt: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE run_queue SET available_at = now() WHERE queue_name = %s AND id = %s",
                (queue_name, int(receipt)),
            )
            conn.commit()

    def _connect(self) -> Any:
        return self._psycopg.connect(self.database_url, row_factory=self._dict_row)


def _parse_json(raw: Any) -> Any:
    if isinstance(raw, str):
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            return raw
    return raw
