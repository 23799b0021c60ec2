"""Built-in tools available to every cluster."""

from __future__ import annotations

import ast
import logging
import operator
import re
from datetime import datetime, timezone
from typing import Any, Callable, Protocol
from urllib import error, request

import chromadb

from run_orchestrator.storage.models import RunRecord
from run_orchestrator.tools.agent_tool import AgentTool, outcome

logger = logging.getLogger(__name__)

CALCULATOR_TOOL_NAME = "calculator"
CURRENT_DATE_TIME_TOOL_NAME = "currentDateTime"
GET_URL_TOOL_NAME = "getUrl"
ACCESS_KNOWLEDGE_ARTIFACTS_TOOL_NAME = "accessKnowledgeArtifacts"

KNOWLEDGE_COLLECTION_NAME = "knowledge-artifacts"
MAX_URL_CONTENT_CHARS = 20_000

_BINARY_OPERATORS: dict[type, Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}
_UNARY_OPERATORS: dict[type, Callable[[Any], Any]] = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
}
_MAX_EXPONENT = 1_000


def evaluate_expression(expression: str) -> int | float:
    """Evaluate plain arithmetic. Names, calls and attribute access are rejected."""
    tree = ast.parse(expression.strip(), mode="eval")
    return _evaluate(tree.body)


def _evaluate(node: ast.AST) -> int | float:
    if isinstance(node, ast.Constant) and isinstance(node.value, (int, float)):
        if isinstance(node.value, bool):
            raise ValueError("Booleans are not supported")
        return node.value
    if isinstance(node, ast.BinOp) and type(node.op) in _BINARY_OPERATORS:
        left = _evaluate(node.left)
        right = _evaluate(node.right)
        if isinstance(node.op, ast.Pow) and abs(right) > _MAX_EXPONENT:
            raise ValueError("Exponent is too large")
        value = _BINARY_OPERATORS[type(node.op)](left, right)
        if isinstance(value, complex):
            raise ValueError("Result is not a real number")
        return value
    if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY_OPERATORS:
        return _UNARY_OPERATORS[type(node.op)](_evaluate(node.operand))
    raise ValueError(f"Unsupported expression element: {type(node).__name__}")


def build_calculator_tool() -> AgentTool:
    def handler(tool_input: dict[str, Any]) -> str:
        expression = tool_input["expression"]
        try:
            value = evaluate_expression(expression)
        except (SyntaxError, ValueError, ZeroDivisionError, OverflowError) as exc:
            return outcome({"message": f"Could not evaluate expression: {exc}"}, "rejection", "failure")
        return outcome({"expression": expression, "value": value})

    return AgentTool(
        name=CALCULATOR_TOOL_NAME,
        description=(
            "Evaluates an arithmetic expression. Supports + - * / // % ** and parentheses. "
            "Use this for any calculation instead of computing the answer yourself."
        ),
        schema={
            "type": "object",
            "properties": {
                "expression": {"type": "string", "description": "e.g. (12.5 * 4) / 3"}
            },
            "required": ["expression"],
            "additionalProperties": False,
        },
        func=handler,
    )


def build_current_date_time_tool(
    clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
) -> AgentTool:
    def handler(tool_input: dict[str, Any]) -> str:
        now = clock()
        return outcome(
            {
                "iso8601": now.isoformat(),
                "unixTimestamp": int(now.timestamp()),
                "timezone": "UTC",
            }
        )

    return AgentTool(
        name=CURRENT_DATE_TIME_TOOL_NAME,
        description="Get the current date and time in ISO 8601 format (UTC).",
        schema={"type": "object", "properties": {}, "additionalProperties": False},
        func=handler,
    )


def build_get_url_tool(
    *,
    timeout_s: float = 15.0,
    max_chars: int = MAX_URL_CONTENT_CHARS,
) -> AgentTool:
    def handler(tool_input: dict[str, Any]) -> str:
        url = tool_input["url"]
        req = request.Request(
            url=url,
            method="GET",
            headers={"User-Agent": "run-orchestrator/0.1", "Accept": "text/html,text/plain,*/*"},
        )
        try:
            with request.urlopen(req, timeout=timeout_s) as response:
                content_type = response.headers.get("Content-Type", "")
                body = response.read().decode("utf-8", errors="replace")
        except error.HTTPError as exc:
            return outcome(
                {"message": f"Request failed with status {exc.code}", "url": url},
                "rejection",
                "failure",
            )
        except (error.URLError, TimeoutError, ValueError) as exc:
            return outcome(
                {"message": f"Request failed: {exc}", "url": url}, "rejection", "failure"
            )

        text = _html_to_text(body) if "html" in content_type else body
        return outcome(
            {
                "url": url,
                "content": text[:max_chars],
                "truncated": len(text) > max_chars,
            }
        )

    return AgentTool(
        name=GET_URL_TOOL_NAME,
        description="Fetch a URL over HTTP(S) and return its text content.",
        schema={
            "type": "object",
            "properties": {
                "url": {"type": "string", "pattern": "^https?://", "description": "Absolute URL"}
            },
            "required": ["url"],
            "additionalProperties": False,
        },
        func=handler,
    )


_SCRIPT_STYLE_RE = re.compile(r"<(script|style)[^>]*>.*?</\1>", re.IGNORECASE | re.DOTALL)
_TAG_RE = re.compile(r"<[^>]+>")


def _html_to_text(html: str) -> str:
    stripped = _TAG_RE.sub(" ", _SCRIPT_STYLE_RE.sub(" ", html))
    return " ".join(stripped.split())


class KnowledgeBase(Protocol):
    def search(
        self, cluster_id: str, query: str, *, tag: str | None = None, limit: int = 5
    ) -> list[dict[str, Any]]: ...

    def tags(self, cluster_id: str) -> list[str]: ...


class ChromaKnowledgeBase:
    """Knowledge artifacts stored in a persistent chromadb collection.

    Documents carry ``cluster_id``, ``title`` and an optional ``tag`` in
    their metadata.
    """

    def __init__(self, path: str, *, collection_name: str = KNOWLEDGE_COLLECTION_NAME) -> None:
        self.client = chromadb.PersistentClient(path=path)
        self.collection = self.client.get_or_create_collection(name=collection_name)

    def search(
        self, cluster_id: str, query: str, *, tag: str | None = None, limit: int = 5
    ) -> list[dict[str, Any]]:
        where: dict[str, Any] = {"cluster_id": cluster_id}
        if tag:
            where = {"$and": [{"cluster_id": cluster_id}, {"tag": tag}]}
        raw = self.collection.query(
            query_texts=[query],
            n_results=max(limit, 1),
            where=where,
            include=["documents", "metadatas", "distances"],
        )

        ids = _first_list(raw.get("ids"))
        documents = _first_list(raw.get("documents"))
        metadatas = _first_list(raw.get("metadatas"))
        distances = _first_list(raw.get("distances"))

        artifacts: list[dict[str, Any]] = []
        for idx, item_id in enumerate(ids):
            metadata = metadatas[idx] if idx < len(metadatas) and metadatas[idx] else {}
            distance = float(distances[idx]) if idx < len(distances) else 1.0
            artifacts.append(
                {
                    "id": item_id,
                    "title": metadata.get("title", ""),
                    "tag": metadata.get("tag"),
                    "data": documents[idx] if idx < len(documents) else "",
                    "similarity": round(1.0 / (1.0 + max(distance, 0.0)), 4),
                }
            )
        return artifacts

    def tags(self, cluster_id: str) -> list[str]:
        raw = self.collection.get(where={"cluster_id": cluster_id}, include=["metadatas"])
        found = {
            str(metadata["tag"])
            for metadata in raw.get("metadatas") or []
            if metadata and metadata.get("tag")
        }
        return sorted(found)


def _first_list(value: Any) -> list[Any]:
    if isinstance(value, list) and value and isinstance(value[0], list):
        return value[0]
    return []


def build_access_knowledge_artifacts_tool(
    run: RunRecord, knowledge_base: KnowledgeBase
) -> AgentTool:
    tags = knowledge_base.tags(run.cluster_id)
    properties: dict[str, Any] = {
        "query": {"type": "string", "description": "The query to search for knowledge artifacts"}
    }
    if tags:
        properties["tag"] = {
            "type": "string",
            "enum": tags,
            "description": (
                "The tag to filter the knowledge artifacts by. "
                "If not provided, all artifacts are returned."
            ),
        }

    def handler(tool_input: dict[str, Any]) -> str:
        logger.info(
            "knowledge_artifacts event=search run_id=%s tag=%s", run.id, tool_input.get("tag")
        )
        try:
            artifacts = knowledge_base.search(
                run.cluster_id, tool_input["query"], tag=tool_input.get("tag")
            )
        except Exception as exc:  # noqa: BLE001
            logger.error("knowledge_artifacts event=failed run_id=%s reason=%s", run.id, exc)
            return outcome("Internal error, please try again.", "rejection", "error")
        return outcome(artifacts)

    return AgentTool(
        name=ACCESS_KNOWLEDGE_ARTIFACTS_TOOL_NAME,
        description="Retrieves relevant knowledge artifacts based on a given query.",
        schema={
            "type": "object",
            "properties": properties,
            "required": ["query"],
            "additionalProperties": False,
        },
        func=handler,
    )
