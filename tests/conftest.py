from __future__ import annotations

from typing import Any

import pytest

from run_orchestrator.config.settings import Settings
from run_orchestrator.storage.memory import InMemoryRunStore
from run_orchestrator.storage.models import ServiceFunctionRecord

ECHO_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {"text": {"type": "string"}},
    "required": ["text"],
}


@pytest.fixture
def settings() -> Settings:
    return Settings(
        app_base_url="https://app.test",
        database_url="",
        job_poll_timeout_s=0.0,
        enable_knowledgebase=False,
        enable_tool_vector_search=False,
        tool_max_concurrency=1,
    )


@pytest.fixture
def store() -> InMemoryRunStore:
    storage = InMemoryRunStore()
    storage.upsert_function(
        ServiceFunctionRecord(
            cluster_id="cluster-1",
            name="echo",
            description="Echo the provided text back",
            schema_json=ECHO_SCHEMA,
        )
    )
    return storage
