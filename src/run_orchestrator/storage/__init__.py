"""Storage backends and models."""

from run_orchestrator.storage.base import FunctionRegistry, JobStore, RunLock, RunQueue, RunStore
from run_orchestrator.storage.memory import InMemoryRunLock, InMemoryRunQueue, InMemoryRunStore
from run_orchestrator.storage.models import (
    ClusterSettings,
    JobRecord,
    RunRecord,
    ServiceFunctionRecord,
)
from run_orchestrator.storage.postgres import (
    PostgresAdvisoryLock,
    PostgresRunQueue,
    PostgresRunStore,
)

__all__ = [
    "ClusterSettings",
    "FunctionRegistry",
    "InMemoryRunLock",
    "InMemoryRunQueue",
    "InMemoryRunStore",
    "JobRecord",
    "JobStore",
    "PostgresAdvisoryLock",
    "PostgresRunQueue",
    "PostgresRunStore",
    "RunLock",
    "RunQueue",
    "RunRecord",
    "RunStore",
    "ServiceFunctionRecord",
]
