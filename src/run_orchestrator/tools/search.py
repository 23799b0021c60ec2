"""Select the tools shown to the model for the next step."""

from __future__ import annotations

import json
import logging
import re
import time
from typing import Protocol

import chromadb

from run_orchestrator.errors import AgentError
from run_orchestrator.graph.state import RunGraphState
from run_orchestrator.runs.messages import message_data
from run_orchestrator.storage.base import FunctionRegistry
from run_orchestrator.storage.models import ServiceFunctionRecord
from run_orchestrator.tools.agent_tool import AgentTool
from run_orchestrator.tools.resolvers import INTERNAL_TOOL_PREFIX, InternalToolResolver
from run_orchestrator.tools.service_functions import build_abstract_service_function_tool

logger = logging.getLogger(__name__)

TOOL_SEARCH_LIMIT = 30
SERVICE_FUNCTION_COLLECTION_NAME = "service-functions"

_TOKEN_RE = re.compile(r"[a-z0-9]+")


class ToolSearch(Protocol):
    def search(self, cluster_id: str, query: str, *, limit: int) -> list[ServiceFunctionRecord]: ...


class KeywordToolSearch:
    """Rank registered functions by token overlap with the query."""

    def __init__(self, registry: FunctionRegistry) -> None:
        self.registry = registry

    def search(self, cluster_id: str, query: str, *, limit: int) -> list[ServiceFunctionRecord]:
        query_tokens = _tokens(query)
        if not query_tokens:
            return []

        scored: list[tuple[int, str, ServiceFunctionRecord]] = []
        for function in self.registry.list_functions(cluster_id):
            haystack = _tokens(
                " ".join([_split_identifier(function.name), function.description or ""])
            )
            score = len(query_tokens & haystack)
            if score > 0:
                scored.append((score, function.name, function))

        scored.sort(key=lambda item: (-item[0], item[1]))
        return [function for _, _, function in scored[:limit]]


class ChromaToolSearch:
    """Similarity search over function descriptions indexed in chromadb."""

    def __init__(
        self,
        path: str,
        registry: FunctionRegistry,
        *,
        collection_name: str = SERVICE_FUNCTION_COLLECTION_NAME,
    ) -> None:
        self.registry = registry
        self.client = chromadb.PersistentClient(path=path)
        self.collection = self.client.get_or_create_collection(name=collection_name)

    def index(self, function: ServiceFunctionRecord) -> None:
        self.collection.upsert(
            ids=[f"{function.cluster_id}:{function.name}"],
            documents=[_function_document(function)],
            metadatas=[{"cluster_id": function.cluster_id, "name": function.name}],
        )

    def search(self, cluster_id: str, query: str, *, limit: int) -> list[ServiceFunctionRecord]:
        if not query.strip():
            return []
        raw = self.collection.query(
            query_texts=[query],
            n_results=max(limit, 1),
            where={"cluster_id": cluster_id},
            include=["metadatas"],
        )
        metadatas = raw.get("metadatas") or [[]]
        functions: list[ServiceFunctionRecord] = []
        for metadata in metadatas[0] or []:
            name = (metadata or {}).get("name")
            if not name:
                continue
            function = self.registry.get_function(cluster_id, str(name))
            if function is not None:
                functions.append(function)
        return functions


def find_relevant_tools(
    state: RunGraphState,
    *,
    registry: FunctionRegistry,
    internal_tools: InternalToolResolver,
    tool_search: ToolSearch,
    limit: int = TOOL_SEARCH_LIMIT,
) -> list[AgentTool]:
    """Attached functions when the run names them, otherwise a search over the transcript."""
    started_at = time.perf_counter()
    run = state["run"]
    tools: list[AgentTool] = []

    if run.attached_functions:
        for name in run.attached_functions:
            if name.lower().startswith(INTERNAL_TOOL_PREFIX):
                internal = internal_tools.build(name, run)
                if internal is not None:
                    tools.append(internal)
                    continue

            function = registry.get_function(run.cluster_id, name)
            if function is None:
                raise AgentError(f"Tool {name} not found in cluster {run.cluster_id}")
            tools.append(build_abstract_service_function_tool(function))
    else:
        query = " ".join(json.dumps(message_data(message)) for message in state["messages"])
        found = tool_search.search(run.cluster_id, query, limit=limit)
        tools.extend(build_abstract_service_function_tool(function) for function in found)
        tools.extend(
            builder(run) for builder in internal_tools.available_tools(run.cluster_id).values()
        )

    logger.info(
        "tool_search event=completed run_id=%s tools=%s duration_ms=%.2f",
        run.id,
        ",".join(tool.name for tool in tools),
        (time.perf_counter() - started_at) * 1000.0,
    )
    return tools


def _tokens(text: str) -> set[str]:
    return {token for token in _TOKEN_RE.findall(text.lower()) if len(token) > 2}


def _split_identifier(name: str) -> str:
    spaced = re.sub(r"([a-z0-9])([A-Z])", r"\1 \2", name)
    return spaced.replace("_", " ").replace("-", " ")


def _function_document(function: ServiceFunctionRecord) -> str:
    parts = [_split_identifier(function.name), function.description or ""]
    if function.schema_json:
        parts.append(json.dumps(function.schema_json))
    return "\n".join(part for part in parts if part)
