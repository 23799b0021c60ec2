"""Routed model: provider rotation, retries, soft rate limiting and structured output."""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable, Protocol, TypeVar

from run_orchestrator.config.settings import Settings
from run_orchestrator.errors import RetryableError, is_retryable_error
from run_orchestrator.models.base import CallResponse, StructuredResponse
from run_orchestrator.models.providers import HttpProviderClient, ProviderClient
from run_orchestrator.models.rate_limiter import ClusterRateLimiter
from run_orchestrator.models.routing import Route, default_routing_table

logger = logging.getLogger(__name__)

T = TypeVar("T")

EXTRACT_TOOL_NAME = "extract"
DEFAULT_MAX_TOKENS = 2048
DEFAULT_TEMPERATURE = 0.5
EMBEDDING_IDENTIFIER = "embed-english-v3"


class Routing(Protocol):
    def get_routing(self, identifier: str, index: int) -> Route: ...

    def context_window(self, identifier: str) -> int | None: ...


class RoutedModel:
    """A logical model whose requests fail over across an ordered list of routes.

    Attempt ``n`` (1-indexed) goes to route ``(n - 1) mod len(routes)``. A
    retryable failure waits ``n * backoff_s`` before the next attempt; any
    other failure is raised immediately.
    """

    def __init__(
        self,
        *,
        identifier: str,
        routing: Routing,
        client: ProviderClient,
        purpose: str,
        cluster_id: str | None = None,
        run_id: str | None = None,
        rate_limiter: ClusterRateLimiter | None = None,
        max_attempts: int = 5,
        backoff_s: float = 0.5,
        temperature: float = DEFAULT_TEMPERATURE,
        is_retryable: Callable[[BaseException], bool] = is_retryable_error,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.identifier = identifier
        self.routing = routing
        self.client = client
        self.purpose = purpose
        self.cluster_id = cluster_id
        self.run_id = run_id
        self.rate_limiter = rate_limiter
        self.max_attempts = max(1, max_attempts)
        self.backoff_s = backoff_s
        self.temperature = temperature
        self.is_retryable = is_retryable
        self.sleep = sleep

    @property
    def context_window(self) -> int | None:
        return self.routing.context_window(self.identifier)

    def call(
        self,
        *,
        messages: list[dict[str, Any]],
        system: str | None = None,
        tools: list[dict[str, Any]] | None = None,
        max_tokens: int | None = None,
    ) -> CallResponse:
        body: dict[str, Any] = {
            "messages": messages,
            "max_tokens": max_tokens or DEFAULT_MAX_TOKENS,
            "temperature": self.temperature,
        }
        if system:
            body["system"] = system
        if tools:
            body["tools"] = tools

        self._check_rate_limit(messages)
        raw = self._with_retry(self.identifier, lambda route: self.client.send(route, body))
        self._record_usage(messages)
        return {"content": raw.get("content", []), "usage": raw.get("usage", {}), "raw": raw}

    def structured(
        self,
        *,
        messages: list[dict[str, Any]],
        system: str,
        schema: dict[str, Any],
        tools: list[dict[str, Any]] | None = None,
    ) -> StructuredResponse:
        body: dict[str, Any] = {
            "messages": messages,
            "system": system,
            "max_tokens": DEFAULT_MAX_TOKENS,
            "temperature": self.temperature,
            "tool_choice": {"type": "tool", "name": EXTRACT_TOOL_NAME},
            "tools": [
                *(tools or []),
                {
                    "name": EXTRACT_TOOL_NAME,
                    "description": "Return the structured response",
                    "input_schema": schema,
                },
            ],
        }

        def attempt(route: Route) -> StructuredResponse:
            raw = self.client.send(route, body)
            extracted = next(
                (
                    block
                    for block in raw.get("content", [])
                    if block.get("type") == "tool_use" and block.get("name") == EXTRACT_TOOL_NAME
                ),
                None,
            )
            if extracted is None:
                raise RetryableError("Model did not return structured output")
            return {"raw": raw, "structured": extracted.get("input")}

        self._check_rate_limit(messages)
        response = self._with_retry(self.identifier, attempt)
        self._record_usage(messages)
        return response

    def embed_query(self, text: str) -> list[float]:
        return self._with_retry(EMBEDDING_IDENTIFIER, lambda route: self.client.embed(route, text))

    def _with_retry(self, identifier: str, fn: Callable[[Route], T]) -> T:
        for attempt in range(1, self.max_attempts + 1):
            route = self.routing.get_routing(identifier, attempt - 1)
            try:
                return fn(route)
            except Exception as exc:
                if not self.is_retryable(exc):
                    logger.error(
                        "model_call event=failed purpose=%s identifier=%s route=%s "
                        "attempt=%d/%d reason=%s",
                        self.purpose,
                        identifier,
                        route.label,
                        attempt,
                        self.max_attempts,
                        exc,
                    )
                    raise
                if attempt == self.max_attempts:
                    raise
                logger.warning(
                    "model_call event=retry purpose=%s identifier=%s route=%s "
                    "attempt=%d/%d reason=%s",
                    self.purpose,
                    identifier,
                    route.label,
                    attempt,
                    self.max_attempts,
                    exc,
                )
                self.sleep(attempt * self.backoff_s)
        raise RuntimeError("Model request failed")  # pragma: no cover

    def _check_rate_limit(self, messages: list[dict[str, Any]]) -> None:
        if self.rate_limiter is None or self.cluster_id is None:
            return
        if not self.rate_limiter.allowed(self.cluster_id, _usage_size(messages)):
            logger.warning(
                "Rate limit exceeded. (Just logged, not preventing request) "
                "cluster_id=%s run_id=%s purpose=%s",
                self.cluster_id,
                self.run_id,
                self.purpose,
            )

    def _record_usage(self, messages: list[dict[str, Any]]) -> None:
        if self.rate_limiter is None or self.cluster_id is None:
            return
        self.rate_limiter.record(self.cluster_id, _usage_size(messages))


class ModelFactory:
    """Builds routed models sharing one provider client, routing table and rate limiter."""

    def __init__(
        self,
        *,
        client: ProviderClient,
        routing: Routing | None = None,
        rate_limiter: ClusterRateLimiter | None = None,
        max_attempts: int = 5,
        backoff_s: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.client = client
        self.routing = routing or default_routing_table()
        self.rate_limiter = rate_limiter
        self.max_attempts = max_attempts
        self.backoff_s = backoff_s
        self.sleep = sleep

    @classmethod
    def from_settings(cls, settings: Settings) -> ModelFactory:
        anthropic_key = settings.resolved_anthropic_api_key()
        bedrock_key = settings.resolved_bedrock_api_key()
        configured = {
            name for name, key in (("anthropic", anthropic_key), ("bedrock", bedrock_key)) if key
        }
        routing = default_routing_table()
        if configured:
            routing = routing.restricted_to(configured)
        return cls(
            client=HttpProviderClient(
                anthropic_api_key=anthropic_key,
                anthropic_base_url=settings.anthropic_base_url,
                bedrock_api_key=bedrock_key,
                bedrock_base_url_template=settings.bedrock_base_url_template,
                timeout_s=settings.model_timeout_s,
            ),
            routing=routing,
            rate_limiter=ClusterRateLimiter(
                per_minute=settings.rate_limit_per_minute,
                per_hour=settings.rate_limit_per_hour,
            ),
            max_attempts=settings.model_max_attempts,
            backoff_s=settings.model_retry_backoff_s,
        )

    def build(
        self,
        identifier: str,
        *,
        purpose: str,
        cluster_id: str | None = None,
        run_id: str | None = None,
        temperature: float = DEFAULT_TEMPERATURE,
    ) -> RoutedModel:
        return RoutedModel(
            identifier=identifier,
            routing=self.routing,
            client=self.client,
            purpose=purpose,
            cluster_id=cluster_id,
            run_id=run_id,
            rate_limiter=self.rate_limiter,
            max_attempts=self.max_attempts,
            backoff_s=self.backoff_s,
            temperature=temperature,
            sleep=self.sleep,
        )


def _usage_size(messages: list[dict[str, Any]]) -> int:
    return len(json.dumps(messages).encode("utf-8"))
