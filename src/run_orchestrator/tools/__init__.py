"""Tool layer: schema-validated tools, resolver chain and tool search."""

from run_orchestrator.tools.agent_tool import AgentTool, FunctionResponse, parse_function_response
from run_orchestrator.tools.resolvers import (
    InternalToolResolver,
    MockToolResolver,
    ServiceFunctionResolver,
    ToolResolverChain,
)
from run_orchestrator.tools.search import (
    ChromaToolSearch,
    KeywordToolSearch,
    ToolSearch,
    find_relevant_tools,
)

__all__ = [
    "AgentTool",
    "ChromaToolSearch",
    "FunctionResponse",
    "InternalToolResolver",
    "KeywordToolSearch",
    "MockToolResolver",
    "ServiceFunctionResolver",
    "ToolResolverChain",
    "ToolSearch",
    "find_relevant_tools",
    "parse_function_response",
]
