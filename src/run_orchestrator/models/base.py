"""Model collaborator interface."""

from __future__ import annotations

from typing import Any, Protocol, TypedDict


class CallResponse(TypedDict):
    content: list[dict[str, Any]]
    usage: dict[str, Any]
    raw: dict[str, Any]


class StructuredResponse(TypedDict):
    raw: dict[str, Any]
    structured: Any


class Model(Protocol):
    identifier: str
    context_window: int | None

    def call(
        self,
        *,
        messages: list[dict[str, Any]],
        system: str | None = None,
        tools: list[dict[str, Any]] | None = None,
        max_tokens: int | None = None,
    ) -> CallResponse: ...

    def structured(
        self,
        *,
        messages: list[dict[str, Any]],
        system: str,
        schema: dict[str, Any],
        tools: list[dict[str, Any]] | None = None,
    ) -> StructuredResponse: ...

    def embed_query(self, text: str) -> list[float]: ...
