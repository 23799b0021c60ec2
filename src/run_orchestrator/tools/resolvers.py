"""Prioritized chain of resolvers turning an invocation into an executable tool."""

from __future__ import annotations

import logging
from typing import Any, Callable, Protocol

from run_orchestrator.config.cache import TTLCache, cache_key
from run_orchestrator.errors import AgentError, NotFoundError
from run_orchestrator.storage.base import FunctionRegistry, JobStore, RunStore
from run_orchestrator.storage.models import ClusterSettings, RunRecord
from run_orchestrator.tools.agent_tool import AgentTool, outcome
from run_orchestrator.tools.service_functions import (
    Summarize,
    build_abstract_service_function_tool,
    build_service_function_tool,
)
from run_orchestrator.tools.stdlib import (
    ACCESS_KNOWLEDGE_ARTIFACTS_TOOL_NAME,
    CALCULATOR_TOOL_NAME,
    CURRENT_DATE_TIME_TOOL_NAME,
    GET_URL_TOOL_NAME,
    KnowledgeBase,
    build_access_knowledge_artifacts_tool,
    build_calculator_tool,
    build_current_date_time_tool,
    build_get_url_tool,
)

logger = logging.getLogger(__name__)

INTERNAL_TOOL_PREFIX = "inferable_"
CLUSTER_SETTINGS_TTL_S = 120.0

InternalToolBuilder = Callable[[RunRecord], AgentTool]
SummarizerFactory = Callable[[RunRecord], Summarize]


class ToolResolver(Protocol):
    def resolve(self, tool_name: str, tool_call_id: str, run: RunRecord) -> AgentTool | None: ...


def internal_tool_name(tool_name: str) -> str:
    if tool_name.lower().startswith(INTERNAL_TOOL_PREFIX):
        return tool_name[len(INTERNAL_TOOL_PREFIX) :]
    return tool_name


class MockToolResolver:
    """Returns the configured mock output for test runs."""

    def __init__(self, registry: FunctionRegistry) -> None:
        self.registry = registry

    def resolve(self, tool_name: str, tool_call_id: str, run: RunRecord) -> AgentTool | None:
        if not run.test_mocks:
            return None
        if not run.test:
            logger.warning(
                "mock_tools event=ignored run_id=%s reason=run_not_marked_test", run.id
            )
            return None

        mock = run.test_mocks.get(tool_name)
        if mock is None:
            return None
        if "output" not in mock or mock["output"] is None:
            logger.warning("mock_tools event=invalid_output run_id=%s tool=%s", run.id, tool_name)
            return None

        function = self.registry.get_function(run.cluster_id, tool_name)
        if function is None:
            logger.warning(
                "mock_tools event=function_not_found run_id=%s tool=%s", run.id, tool_name
            )
            return None

        mock_result = mock["output"]
        abstract = build_abstract_service_function_tool(function)

        def handler(tool_input: dict[str, Any]) -> str:
            logger.info("mock_tools event=call run_id=%s tool=%s", run.id, tool_name)
            return outcome(mock_result)

        return AgentTool(
            name=abstract.name,
            description=abstract.description,
            schema=abstract.schema,
            func=handler,
        )


class InternalToolResolver:
    """Built-in tools, gated by cluster settings read through a TTL cache."""

    def __init__(
        self,
        *,
        store: RunStore,
        cache: TTLCache[Any],
        knowledge_base: KnowledgeBase | None = None,
        settings_ttl_s: float = CLUSTER_SETTINGS_TTL_S,
    ) -> None:
        self.store = store
        self.cache = cache
        self.knowledge_base = knowledge_base
        self.settings_ttl_s = settings_ttl_s

    def cluster_settings(self, cluster_id: str) -> ClusterSettings:
        return self.cache.get_or_set(
            cache_key("cluster-settings", cluster_id),
            lambda: self.store.get_cluster_settings(cluster_id),
            self.settings_ttl_s,
        )

    def available_tools(self, cluster_id: str) -> dict[str, InternalToolBuilder]:
        tools: dict[str, InternalToolBuilder] = {
            CALCULATOR_TOOL_NAME: lambda run: build_calculator_tool(),
            CURRENT_DATE_TIME_TOOL_NAME: lambda run: build_current_date_time_tool(),
            GET_URL_TOOL_NAME: lambda run: build_get_url_tool(),
        }
        knowledge_base = self.knowledge_base
        if knowledge_base is not None and self.cluster_settings(cluster_id).enable_knowledgebase:
            tools[ACCESS_KNOWLEDGE_ARTIFACTS_TOOL_NAME] = (
                lambda run: build_access_knowledge_artifacts_tool(run, knowledge_base)
            )
        return tools

    def build(self, tool_name: str, run: RunRecord) -> AgentTool | None:
        builder = self.available_tools(run.cluster_id).get(internal_tool_name(tool_name))
        return builder(run) if builder is not None else None

    def resolve(self, tool_name: str, tool_call_id: str, run: RunRecord) -> AgentTool | None:
        return self.build(tool_name, run)


class ServiceFunctionResolver:
    def __init__(
        self,
        *,
        registry: FunctionRegistry,
        jobs: JobStore,
        summarizer_factory: SummarizerFactory | None = None,
        poll_timeout_s: float = 0.0,
    ) -> None:
        self.registry = registry
        self.jobs = jobs
        self.summarizer_factory = summarizer_factory
        self.poll_timeout_s = poll_timeout_s

    def resolve(self, tool_name: str, tool_call_id: str, run: RunRecord) -> AgentTool | None:
        function = self.registry.get_function(run.cluster_id, tool_name)
        if function is None:
            return None
        summarize = None
        if run.enable_summarization and self.summarizer_factory is not None:
            summarize = self.summarizer_factory(run)
        return build_service_function_tool(
            function=function,
            run=run,
            tool_call_id=tool_call_id,
            jobs=self.jobs,
            summarize=summarize,
            poll_timeout_s=self.poll_timeout_s,
        )


class ToolResolverChain:
    """First resolver returning a tool wins."""

    def __init__(self, resolvers: list[ToolResolver]) -> None:
        self.resolvers = list(resolvers)

    def resolve(self, tool_name: str, tool_call_id: str, run: RunRecord) -> AgentTool:
        if not tool_call_id:
            raise AgentError("Can not return tool without call ID")
        for resolver in self.resolvers:
            tool = resolver.resolve(tool_name, tool_call_id, run)
            if tool is not None:
                return tool
        raise NotFoundError(f"Tool not found: {tool_name}")
