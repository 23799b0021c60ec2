"""Canned-response model for tests and load runs."""

from __future__ import annotations

import copy
import json
import threading
from typing import Any

from run_orchestrator.models.base import CallResponse, StructuredResponse


class MockModel:
    """Replays structured responses in order.

    ``response_count`` is the number of responses already consumed, normally
    the count of ``agent`` messages in the run, so a resumed run picks up
    where the previous execution stopped. Responses may be dicts or JSON
    strings. A dict with a ``tool_calls`` key also returns those as extra
    ``tool_use`` blocks in the raw response.
    """

    identifier = "mock"

    def __init__(
        self,
        responses: list[dict[str, Any] | str],
        *,
        response_count: int = 0,
        context_window: int | None = None,
    ) -> None:
        self.responses = list(responses)
        self.response_count = response_count
        self.context_window = context_window
        self.calls: list[dict[str, Any]] = []
        self._lock = threading.Lock()

    def structured(
        self,
        *,
        messages: list[dict[str, Any]],
        system: str,
        schema: dict[str, Any],
        tools: list[dict[str, Any]] | None = None,
    ) -> StructuredResponse:
        with self._lock:
            self.calls.append(
                {"messages": copy.deepcopy(messages), "system": system, "schema": schema}
            )
            if self.response_count >= len(self.responses):
                raise RuntimeError("Mock model ran out of responses")
            response = self.responses[self.response_count]
            self.response_count += 1

        data = json.loads(response) if isinstance(response, str) else copy.deepcopy(response)
        tool_calls = data.pop("tool_calls", []) if isinstance(data, dict) else []
        content = [
            {"type": "tool_use", "id": f"mock_{index}", "name": call["name"], "input": call.get("input", {})}
            for index, call in enumerate(tool_calls)
        ]
        content.append({"type": "tool_use", "id": "mock_extract", "name": "extract", "input": data})
        return {"raw": {"content": content}, "structured": data}

    def call(
        self,
        *,
        messages: list[dict[str, Any]],
        system: str | None = None,
        tools: list[dict[str, Any]] | None = None,
        max_tokens: int | None = None,
    ) -> CallResponse:
        raise NotImplementedError("MockModel only supports structured calls")

    def embed_query(self, text: str) -> list[float]:
        raise NotImplementedError("MockModel does not embed")
