"""Explicit wiring of the collaborators a run execution needs."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

from run_orchestrator.config.cache import TTLCache
from run_orchestrator.config.settings import Settings, get_settings
from run_orchestrator.graph.overflow import TokenEstimator, estimate_tokens
from run_orchestrator.models.base import Model
from run_orchestrator.models.router import ModelFactory
from run_orchestrator.storage.base import FunctionRegistry, JobStore, RunLock, RunQueue, RunStore
from run_orchestrator.storage.memory import InMemoryRunLock, InMemoryRunQueue
from run_orchestrator.storage.models import RunRecord
from run_orchestrator.storage.postgres import (
    PostgresAdvisoryLock,
    PostgresRunQueue,
    PostgresRunStore,
)
from run_orchestrator.tools.resolvers import (
    InternalToolResolver,
    MockToolResolver,
    ServiceFunctionResolver,
    ToolResolverChain,
)
from run_orchestrator.tools.search import ChromaToolSearch, KeywordToolSearch, ToolSearch
from run_orchestrator.tools.service_functions import Summarize
from run_orchestrator.tools.stdlib import ChromaKnowledgeBase, KnowledgeBase
from run_orchestrator.tools.summarizer import (
    SUMMARIZER_MODEL_IDENTIFIER,
    summarize_job_result_if_necessary,
)
from run_orchestrator.validation import JsonSchemaValidator, SchemaValidator

logger = logging.getLogger(__name__)


class ModelBuilder(Protocol):
    def build(
        self,
        identifier: str,
        *,
        purpose: str,
        cluster_id: str | None = None,
        run_id: str | None = None,
    ) -> Model: ...


class RunStorage(RunStore, JobStore, FunctionRegistry, Protocol):
    """A backend implementing every persistence protocol."""


@dataclass
class OrchestratorContext:
    settings: Settings
    store: RunStore
    jobs: JobStore
    registry: FunctionRegistry
    model_factory: ModelBuilder
    cache: TTLCache[Any]
    validator: SchemaValidator
    internal_tools: InternalToolResolver
    resolver: ToolResolverChain
    tool_search: ToolSearch
    lock: RunLock
    queue: RunQueue
    estimator: TokenEstimator = estimate_tokens


def build_context(
    settings: Settings | None = None,
    *,
    storage: RunStorage | None = None,
    lock: RunLock | None = None,
    queue: RunQueue | None = None,
    model_factory: ModelBuilder | None = None,
    tool_search: ToolSearch | None = None,
    knowledge_base: KnowledgeBase | None = None,
    cache: TTLCache[Any] | None = None,
    validator: SchemaValidator | None = None,
) -> OrchestratorContext:
    """Build a context. Without ``storage`` the Postgres backends are used."""
    settings = settings or get_settings()

    if storage is None:
        database_url = settings.resolved_database_url()
        if not database_url:
            raise RuntimeError(
                "Missing database URL. Set RUN_ORCHESTRATOR_DATABASE_URL "
                "or ORCHESTRATOR_DATABASE_URL."
            )
        storage = PostgresRunStore(database_url)
        storage.migrate()
        lock = lock or PostgresAdvisoryLock(database_url)
        if queue is None:
            postgres_queue = PostgresRunQueue(
                database_url, visibility_timeout_s=settings.queue_visibility_timeout_s
            )
            postgres_queue.migrate()
            queue = postgres_queue

    cache = cache if cache is not None else TTLCache()
    validator = validator or JsonSchemaValidator()
    model_factory = model_factory or ModelFactory.from_settings(settings)

    if knowledge_base is None and settings.enable_knowledgebase:
        knowledge_base = ChromaKnowledgeBase(settings.chroma_path)
    if tool_search is None:
        tool_search = (
            ChromaToolSearch(settings.chroma_path, storage)
            if settings.enable_tool_vector_search
            else KeywordToolSearch(storage)
        )

    internal_tools = InternalToolResolver(
        store=storage,
        cache=cache,
        knowledge_base=knowledge_base,
        settings_ttl_s=settings.cluster_settings_ttl_s,
    )

    def summarizer_for(run: RunRecord) -> Summarize:
        model = model_factory.build(
            SUMMARIZER_MODEL_IDENTIFIER,
            purpose="agent_loop.summarize_result",
            cluster_id=run.cluster_id,
            run_id=run.id,
        )
        return lambda result, target_fn: summarize_job_result_if_necessary(
            result,
            model=model,
            target_fn=target_fn,
            threshold=settings.summarization_threshold_chars,
        )

    resolver = ToolResolverChain(
        [
            MockToolResolver(storage),
            internal_tools,
            ServiceFunctionResolver(
                registry=storage,
                jobs=storage,
                summarizer_factory=summarizer_for,
                poll_timeout_s=settings.job_poll_timeout_s,
            ),
        ]
    )

    return OrchestratorContext(
        settings=settings,
        store=storage,
        jobs=storage,
        registry=storage,
        model_factory=model_factory,
        cache=cache,
        validator=validator,
        internal_tools=internal_tools,
        resolver=resolver,
        tool_search=tool_search,
        lock=lock or InMemoryRunLock(),
        queue=queue or InMemoryRunQueue(),
    )
